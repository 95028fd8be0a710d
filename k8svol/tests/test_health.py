from __future__ import annotations

import threading
import time
import urllib.error
import urllib.request

import pytest

from k8svol.src import health
from k8svol.src.health import start_health_server


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class StubCache:
    def __init__(self, resource: str, synced: bool = False) -> None:
        self.resource = resource
        self.synced = synced

    def has_synced(self) -> bool:
        return self.synced


class TestHealthServerWithCaches:
    """Readiness requires the controller to be ready and every cache to be synced."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.nodes = StubCache("nodes")
        self.rsync_sources = StubCache("rsyncsources")
        self.server = start_health_server(
            ready=self.ready, port=0, caches=[self.rsync_sources, self.nodes]
        )
        self.port = self.server.server_address[1]
        self.base_url = f"http://127.0.0.1:{self.port}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_readyz_returns_503_when_not_ready(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert "ready=false" in body

    def test_readyz_returns_503_while_a_cache_is_pending(self) -> None:
        self.ready.set()
        self.rsync_sources.synced = True
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert "rsyncsources=synced" in body
        assert "nodes=pending" in body

    def test_readyz_returns_200_when_ready_and_synced(self) -> None:
        self.ready.set()
        self.rsync_sources.synced = True
        self.nodes.synced = True
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "ready=true rsyncsources=synced nodes=synced"

    def test_readyz_returns_503_after_cache_loses_sync(self) -> None:
        self.ready.set()
        self.rsync_sources.synced = True
        self.nodes.synced = True
        status, _ = _get(f"{self.base_url}/readyz")
        assert status == 200

        self.nodes.synced = False
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert "nodes=pending" in body

    def test_metrics_exposes_controller_series(self) -> None:
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "k8svol_workqueue_depth" in body

    def test_404_for_unknown_path(self) -> None:
        status, _ = _get(f"{self.base_url}/unknown")
        assert status == 404

    def test_healthz_stays_responsive_during_slow_metrics_scrape(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        original_generate_latest = health.generate_latest
        metrics_started = threading.Event()

        def slow_generate_latest() -> bytes:
            metrics_started.set()
            time.sleep(1.2)
            return original_generate_latest()

        monkeypatch.setattr(health, "generate_latest", slow_generate_latest)

        metrics_result: dict[str, object] = {}

        def _scrape_metrics() -> None:
            try:
                status, _ = _get(f"{self.base_url}/metrics", timeout=3)
                metrics_result["status"] = status
            except Exception as exc:
                metrics_result["error"] = exc

        metrics_thread = threading.Thread(target=_scrape_metrics)
        metrics_thread.start()

        assert metrics_started.wait(timeout=1)
        status, body = _get(f"{self.base_url}/healthz", timeout=1)

        metrics_thread.join(timeout=4)
        assert not metrics_thread.is_alive()
        assert "error" not in metrics_result
        assert metrics_result.get("status") == 200
        assert status == 200
        assert body == "ok"


class TestHealthServerWithoutCaches:
    """Without caches, readiness only depends on the ready event."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.server = start_health_server(ready=self.ready, port=0)
        self.port = self.server.server_address[1]
        self.base_url = f"http://127.0.0.1:{self.port}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_readyz_returns_200_when_ready(self) -> None:
        self.ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "ready=true"

    def test_readyz_returns_503_when_not_ready(self) -> None:
        status, _ = _get(f"{self.base_url}/readyz")
        assert status == 503

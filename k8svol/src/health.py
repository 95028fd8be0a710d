from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Protocol

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class SyncReporter(Protocol):
    resource: str

    def has_synced(self) -> bool: ...


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints."""

    ready_event: threading.Event
    caches: Sequence[SyncReporter]

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readiness(self) -> tuple[bool, str]:
        ready = self.ready_event.is_set()
        parts = [f"ready={'true' if ready else 'false'}"]
        for cache in self.caches:
            synced = cache.has_synced()
            ready = ready and synced
            parts.append(f"{cache.resource}={'synced' if synced else 'pending'}")
        return ready, " ".join(parts)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            ready, detail = self._readiness()
            self._respond(200 if ready else 503, detail.encode())
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("k8svol.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, caches: Sequence[SyncReporter] = ()
) -> type[_HealthHandler]:
    """Return a handler class bound to the controller's readiness state.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    _BoundHealthHandler.caches = tuple(caches)
    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, caches: Sequence[SyncReporter] = ()
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, caches=caches)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server

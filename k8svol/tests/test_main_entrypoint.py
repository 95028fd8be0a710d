from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from collections.abc import Iterator
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from k8svol.src.__main__ import (
    JSONFormatter,
    install_signal_handlers,
    main,
    redact_sensitive_text,
)
from k8svol.src.errors import CacheSyncError


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "error" not in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg=(
                "token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi "
                "url=/healthz?access_token=qwerty"
            )
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "hunter2" not in message
        assert "abc.def.ghi" not in message
        assert "access_token=qwerty" not in message

    def test_format_redacts_sensitive_values_in_exception_text(self) -> None:
        try:
            raise ValueError("token=abc123")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "[REDACTED]" in parsed["error"]
        assert "abc123" not in parsed["error"]


def test_redaction_covers_rendered_spec_dicts() -> None:
    rendered = str({"username": "user", "password": "hunter2"})

    redacted = redact_sensitive_text(rendered)

    assert "hunter2" not in redacted
    assert "'username': 'user'" in redacted


class TestSignalHandlers:
    @pytest.fixture
    def handlers(self) -> Iterator[dict[int, object]]:
        registered: dict[int, object] = {}

        def _capture(signum: int, handler: object) -> None:
            registered[signum] = handler

        with patch("k8svol.src.__main__.signal.signal", side_effect=_capture):
            yield registered

    def test_first_signal_requests_shutdown(self, handlers: dict[int, object]) -> None:
        shutdown = threading.Event()
        install_signal_handlers(shutdown)

        assert set(handlers) == {signal.SIGTERM, signal.SIGINT}
        handlers[signal.SIGTERM](signal.SIGTERM, None)  # type: ignore[operator]

        assert shutdown.is_set()

    def test_second_signal_exits_immediately(self, handlers: dict[int, object]) -> None:
        shutdown = threading.Event()
        install_signal_handlers(shutdown)
        handlers[signal.SIGTERM](signal.SIGTERM, None)  # type: ignore[operator]

        with patch("k8svol.src.__main__.os._exit") as mock_exit:
            handlers[signal.SIGINT](signal.SIGINT, None)  # type: ignore[operator]

        mock_exit.assert_called_once_with(1)


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    @pytest.fixture(autouse=True)
    def _quiet_logging(self, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        handlers = list(logging.root.handlers)
        level = logging.root.level
        yield
        logging.root.handlers[:] = handlers
        logging.root.setLevel(level)

    def _controller(self) -> MagicMock:
        controller = MagicMock()
        controller.ready = threading.Event()
        controller.caches = []

        def fake_run(shutdown_event: threading.Event | None = None) -> None:
            if shutdown_event is not None:
                shutdown_event.set()

        controller.run.side_effect = fake_run
        return controller

    def test_main_runs_rsync_source_controller_by_default(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("CONTROLLER", raising=False)
        controller = self._controller()

        with (
            patch("k8svol.src.__main__.load_kube_configuration"),
            patch(
                "k8svol.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace(), SimpleNamespace()),
            ),
            patch(
                "k8svol.src.__main__.build_rsync_source_controller",
                return_value=controller,
            ) as mock_build,
            patch("k8svol.src.__main__.build_volume_source_controller") as mock_volume,
            patch("k8svol.src.__main__.install_signal_handlers"),
            patch("k8svol.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            main()

        mock_build.assert_called_once()
        mock_volume.assert_not_called()
        controller.run.assert_called_once()
        assert mock_health.call_args.kwargs["ready"] is controller.ready
        assert mock_health.call_args.kwargs["port"] == 8080
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_runs_volume_source_controller_when_selected(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CONTROLLER", "volume-source")
        monkeypatch.setenv("HEALTH_PORT", "9090")
        controller = self._controller()

        with (
            patch("k8svol.src.__main__.load_kube_configuration"),
            patch(
                "k8svol.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace(), SimpleNamespace()),
            ),
            patch("k8svol.src.__main__.build_rsync_source_controller") as mock_rsync,
            patch(
                "k8svol.src.__main__.build_volume_source_controller",
                return_value=controller,
            ) as mock_build,
            patch("k8svol.src.__main__.install_signal_handlers"),
            patch("k8svol.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            main()

        mock_rsync.assert_not_called()
        assert mock_build.call_args.kwargs["config"].controller == "volume-source"
        assert mock_health.call_args.kwargs["port"] == 9090

    def test_main_exits_nonzero_when_caches_do_not_sync(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("CONTROLLER", raising=False)
        controller = self._controller()
        controller.run.side_effect = CacheSyncError("caches did not sync")

        with (
            patch("k8svol.src.__main__.load_kube_configuration"),
            patch(
                "k8svol.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace(), SimpleNamespace()),
            ),
            patch(
                "k8svol.src.__main__.build_rsync_source_controller",
                return_value=controller,
            ),
            patch("k8svol.src.__main__.install_signal_handlers"),
            patch("k8svol.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == 1
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_rejects_invalid_health_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HEALTH_PORT", "70000")

        with (
            patch("k8svol.src.__main__.load_kube_configuration") as mock_load,
            pytest.raises(ValueError, match="HEALTH_PORT must be <= 65535, got: 70000"),
        ):
            main()

        mock_load.assert_not_called()

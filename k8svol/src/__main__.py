from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from k8svol.src.config import CONTROLLER_VOLUME_SOURCE, load_config
from k8svol.src.controller import Controller
from k8svol.src.errors import CacheSyncError
from k8svol.src.health import start_health_server
from k8svol.src.kube import build_clients, load_kube_configuration
from k8svol.src.metrics import METRICS
from k8svol.src.rsync_source import build_rsync_source_controller
from k8svol.src.volume_source import build_volume_source_controller

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b['\"]?\s*[:=]\s*['\"]?)([^\s,;'\"}]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger(__name__)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def install_signal_handlers(shutdown_event: threading.Event) -> None:
    """First SIGTERM/SIGINT starts a graceful shutdown; a second exits immediately."""

    def _handle_signal(signum: int, frame: object) -> None:
        if shutdown_event.is_set():
            LOGGER.warning("Received second signal %d, exiting immediately", signum)
            os._exit(1)
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)


def main() -> None:
    """Controller entrypoint: configure logging, build the selected controller, and run it."""
    configure_logging()
    config = load_config()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
            "controller": config.controller,
        }
    )

    load_kube_configuration()
    core_api, apps_api, custom_api = build_clients()

    controller: Controller
    if config.controller == CONTROLLER_VOLUME_SOURCE:
        controller = build_volume_source_controller(
            core_api=core_api, custom_api=custom_api, config=config
        )
    else:
        controller = build_rsync_source_controller(
            core_api=core_api, apps_api=apps_api, custom_api=custom_api, config=config
        )

    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        caches=controller.caches,
    )

    shutdown_event = threading.Event()
    install_signal_handlers(shutdown_event)

    try:
        controller.run(shutdown_event=shutdown_event)
    except CacheSyncError:
        LOGGER.exception("Controller failed to start")
        raise SystemExit(1) from None
    finally:
        health_server.shutdown()
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from k8svol.src.errors import ConfigError

CONTROLLER_RSYNC_SOURCE = "rsync-source"
CONTROLLER_VOLUME_SOURCE = "volume-source"
_CONTROLLERS = (CONTROLLER_RSYNC_SOURCE, CONTROLLER_VOLUME_SOURCE)


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable process configuration loaded once at startup.

    Attributes:
        controller:           Which controller this process runs
                              (``rsync-source`` or ``volume-source``).
        namespace:            Namespace that per-node intent objects are created in.
        rsync_daemon_image:   Container image placed on derived intent objects.
        kubelet_pod_dir_path: Host-path base directory mirrored from each node.
        rsync_username:       Daemon user placed on derived intent objects.
        rsync_password:       Daemon password placed on derived intent objects.
        workers:              Number of parallel worker loops.
        resync_period_seconds: Snapshot cache watch window and resync interval.
        cache_sync_timeout_seconds: Startup barrier timeout for the caches.
        queue_base_delay_seconds / queue_max_delay_seconds:
                              Per-item exponential backoff bounds.
        queue_qps / queue_burst: Overall token-bucket limiter settings.
        health_port:          Port for ``/healthz``, ``/readyz`` and ``/metrics``.
    """

    controller: str = CONTROLLER_RSYNC_SOURCE
    namespace: str = "k8svol"
    rsync_daemon_image: str = "ghcr.io/k8svol/rsync-daemon:ci"
    kubelet_pod_dir_path: str = "/var/lib/kubelet/pods"
    rsync_username: str = "user"
    rsync_password: str = "pass"
    workers: int = 1
    resync_period_seconds: int = 30
    cache_sync_timeout_seconds: int = 120
    queue_base_delay_seconds: float = 0.005
    queue_max_delay_seconds: float = 1000.0
    queue_qps: float = 10.0
    queue_burst: int = 100
    health_port: int = 8080


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _env_str(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Build a :class:`ControllerConfig` from environment variables.

    Environment variables (with defaults):
        ``CONTROLLER``           : ``rsync-source`` or ``volume-source`` (``rsync-source``).
        ``WATCH_NAMESPACE``      : namespace for per-node intent objects (``k8svol``).
        ``RSYNC_DAEMON_IMAGE``   : daemon image (``ghcr.io/k8svol/rsync-daemon:ci``).
        ``KUBELET_POD_DIR_PATH`` : host-path base directory (``/var/lib/kubelet/pods``).
        ``RSYNC_USERNAME`` / ``RSYNC_PASSWORD``: daemon credentials (``user`` / ``pass``).
        ``WORKERS``              : parallel worker loops (``1``).
        ``RESYNC_PERIOD_SECONDS``: cache resync period (``30``).
        ``CACHE_SYNC_TIMEOUT_SECONDS``: startup cache-sync barrier (``120``).
        ``WORKQUEUE_BASE_DELAY_MS`` / ``WORKQUEUE_MAX_DELAY_SECONDS``: backoff (``5`` / ``1000``).
        ``WORKQUEUE_QPS`` / ``WORKQUEUE_BURST``: token bucket (``10`` / ``100``).
        ``HEALTH_PORT``          : health server port (``8080``).
    """
    values = env if env is not None else os.environ

    controller = values.get("CONTROLLER", CONTROLLER_RSYNC_SOURCE).strip().lower()
    if controller not in _CONTROLLERS:
        raise ConfigError(
            f"CONTROLLER must be one of {', '.join(_CONTROLLERS)}, got: {controller!r}"
        )

    base_delay_ms = env_int("WORKQUEUE_BASE_DELAY_MS", 5, minimum=1, env=values)
    max_delay_seconds = env_int("WORKQUEUE_MAX_DELAY_SECONDS", 1000, minimum=1, env=values)
    if base_delay_ms / 1000.0 > max_delay_seconds:
        raise ConfigError(
            "WORKQUEUE_BASE_DELAY_MS must not exceed WORKQUEUE_MAX_DELAY_SECONDS"
        )

    return ControllerConfig(
        controller=controller,
        namespace=_env_str(values, "WATCH_NAMESPACE", "k8svol"),
        rsync_daemon_image=_env_str(
            values, "RSYNC_DAEMON_IMAGE", "ghcr.io/k8svol/rsync-daemon:ci"
        ),
        kubelet_pod_dir_path=_env_str(values, "KUBELET_POD_DIR_PATH", "/var/lib/kubelet/pods"),
        rsync_username=_env_str(values, "RSYNC_USERNAME", "user"),
        rsync_password=_env_str(values, "RSYNC_PASSWORD", "pass"),
        workers=env_int("WORKERS", 1, minimum=1, env=values),
        resync_period_seconds=env_int("RESYNC_PERIOD_SECONDS", 30, minimum=1, env=values),
        cache_sync_timeout_seconds=env_int(
            "CACHE_SYNC_TIMEOUT_SECONDS", 120, minimum=1, env=values
        ),
        queue_base_delay_seconds=base_delay_ms / 1000.0,
        queue_max_delay_seconds=float(max_delay_seconds),
        queue_qps=float(env_int("WORKQUEUE_QPS", 10, minimum=1, env=values)),
        queue_burst=env_int("WORKQUEUE_BURST", 100, minimum=1, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
    )

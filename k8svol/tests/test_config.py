from __future__ import annotations

import pytest

from k8svol.src.config import (
    CONTROLLER_RSYNC_SOURCE,
    CONTROLLER_VOLUME_SOURCE,
    ControllerConfig,
    env_int,
    load_config,
)
from k8svol.src.errors import ConfigError


def test_defaults_when_environment_is_empty() -> None:
    config = load_config({})

    assert config == ControllerConfig()
    assert config.controller == CONTROLLER_RSYNC_SOURCE
    assert config.queue_base_delay_seconds == 0.005
    assert config.queue_max_delay_seconds == 1000.0
    assert config.queue_qps == 10.0
    assert config.queue_burst == 100


def test_environment_overrides() -> None:
    config = load_config(
        {
            "CONTROLLER": " Volume-Source ",
            "WATCH_NAMESPACE": "storage",
            "RSYNC_DAEMON_IMAGE": "registry.local/rsync:1.2",
            "KUBELET_POD_DIR_PATH": "/data/kubelet/pods",
            "RSYNC_USERNAME": "mirror",
            "RSYNC_PASSWORD": "s3cret",
            "WORKERS": "4",
            "RESYNC_PERIOD_SECONDS": "60",
            "CACHE_SYNC_TIMEOUT_SECONDS": "10",
            "WORKQUEUE_BASE_DELAY_MS": "50",
            "WORKQUEUE_MAX_DELAY_SECONDS": "300",
            "WORKQUEUE_QPS": "20",
            "WORKQUEUE_BURST": "200",
            "HEALTH_PORT": "9090",
        }
    )

    assert config.controller == CONTROLLER_VOLUME_SOURCE
    assert config.namespace == "storage"
    assert config.rsync_daemon_image == "registry.local/rsync:1.2"
    assert config.kubelet_pod_dir_path == "/data/kubelet/pods"
    assert config.rsync_username == "mirror"
    assert config.rsync_password == "s3cret"
    assert config.workers == 4
    assert config.resync_period_seconds == 60
    assert config.cache_sync_timeout_seconds == 10
    assert config.queue_base_delay_seconds == 0.05
    assert config.queue_max_delay_seconds == 300.0
    assert config.queue_qps == 20.0
    assert config.queue_burst == 200
    assert config.health_port == 9090


def test_unknown_controller_is_rejected() -> None:
    with pytest.raises(ConfigError, match="CONTROLLER must be one of"):
        load_config({"CONTROLLER": "pod-source"})


@pytest.mark.parametrize("name", ["WATCH_NAMESPACE", "RSYNC_DAEMON_IMAGE", "RSYNC_PASSWORD"])
def test_blank_strings_are_rejected(name: str) -> None:
    with pytest.raises(ConfigError, match=name):
        load_config({name: "   "})


def test_base_delay_must_not_exceed_max_delay() -> None:
    with pytest.raises(ConfigError, match="WORKQUEUE_BASE_DELAY_MS"):
        load_config({"WORKQUEUE_BASE_DELAY_MS": "5000", "WORKQUEUE_MAX_DELAY_SECONDS": "1"})


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({"HEALTH_PORT": "70000"}, "HEALTH_PORT must be <= 65535, got: 70000"),
        ({"HEALTH_PORT": "0"}, "HEALTH_PORT must be >= 1, got: 0"),
        ({"WORKERS": "0"}, "WORKERS must be >= 1, got: 0"),
        ({"WORKERS": "many"}, "WORKERS must be an integer"),
    ],
)
def test_integer_settings_are_validated(env: dict[str, str], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        load_config(env)


def test_env_int_reads_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("K8SVOL_TEST_INT", "7")
    monkeypatch.delenv("K8SVOL_TEST_MISSING", raising=False)

    assert env_int("K8SVOL_TEST_INT", 1) == 7
    assert env_int("K8SVOL_TEST_MISSING", 3) == 3

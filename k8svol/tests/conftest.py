from __future__ import annotations

import pytest

from k8svol.src.config import ControllerConfig
from k8svol.src.workqueue import RateLimitingQueue, default_controller_rate_limiter

from fakes import FakeAppsApi, FakeCluster, FakeCoreApi, FakeCustomObjectsApi


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def core_api(cluster: FakeCluster) -> FakeCoreApi:
    return FakeCoreApi(cluster)


@pytest.fixture
def apps_api(cluster: FakeCluster) -> FakeAppsApi:
    return FakeAppsApi(cluster)


@pytest.fixture
def custom_api(cluster: FakeCluster) -> FakeCustomObjectsApi:
    return FakeCustomObjectsApi(cluster)


@pytest.fixture
def config() -> ControllerConfig:
    return ControllerConfig(
        controller="volume-source",
        namespace="k8svol",
        rsync_daemon_image="rsync:ci",
        kubelet_pod_dir_path="/var/lib/kubelet/pods",
    )


@pytest.fixture
def queue() -> RateLimitingQueue:
    return RateLimitingQueue(
        default_controller_rate_limiter(base_delay=0.001, max_delay=0.01, qps=1000, burst=1000)
    )

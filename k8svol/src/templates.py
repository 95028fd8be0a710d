from __future__ import annotations

from dataclasses import dataclass

from kubernetes.client import (
    V1ConfigMap,
    V1ConfigMapVolumeSource,
    V1Container,
    V1ContainerPort,
    V1Deployment,
    V1DeploymentSpec,
    V1EnvVar,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
    V1Volume,
    V1VolumeMount,
)

from k8svol.src.config import ControllerConfig
from k8svol.src.constants import (
    APP_LABEL,
    CREATED_BY_LABEL,
    HOSTNAME_LABEL,
    MANAGED_BY_LABEL,
    NAME_LABEL,
    RSYNC_DAEMON_CONTAINER,
    RSYNC_DAEMON_PORT,
    RSYNC_SOURCE_CONTROLLER,
    VOLUME_SOURCE_CONTROLLER,
)
from k8svol.src.model import RsyncSource, RsyncSourceSpec

RSYNCD_CONF_KEY = "rsyncd.conf"
RSYNCD_CONF_PATH = "/etc/rsyncd.conf"
RSYNCD_SECRETS_PATH = "/etc/rsyncd.secrets"
DATA_MOUNT_PATH = "/data"
CONFIG_VOLUME_NAME = "config"
KUBELET_POD_DIR_VOLUME = "kubelet-pod-dir"

_RSYNCD_CONF = """\
# /etc/rsyncd.conf
# Minimal configuration file for rsync daemon
# See rsync(1) and rsyncd.conf(5) man pages for help
pid file = /var/run/rsyncd.pid
uid = 0
gid = 0
use chroot = yes
reverse lookup = no
[data]
    hosts deny = *
    hosts allow = 0.0.0.0/0
    read only = false
    path = {data_path}
    auth users = {username}:rw
    secrets file = {secrets_path}
    timeout = 600
    transfer logging = true
"""


def render_rsyncd_conf(username: str) -> str:
    return _RSYNCD_CONF.format(
        data_path=DATA_MOUNT_PATH,
        username=username,
        secrets_path=RSYNCD_SECRETS_PATH,
    )


@dataclass(frozen=True)
class TemplateConfig:
    """Builds the config, workload and network objects derived from one RsyncSource.

    Every object is named after the RsyncSource and carries the
    rsync-source controller's created-by and managed-by labels, which is what
    later grants the controller the right to delete it.
    """

    name: str
    namespace: str
    source: RsyncSourceSpec

    @classmethod
    def from_rsync_source(cls, rsync_source: RsyncSource) -> TemplateConfig:
        return cls(
            name=rsync_source.name, namespace=rsync_source.namespace, source=rsync_source.spec
        )

    def _labels(self, *, app: bool = False) -> dict[str, str]:
        labels = {
            CREATED_BY_LABEL: RSYNC_SOURCE_CONTROLLER,
            MANAGED_BY_LABEL: RSYNC_SOURCE_CONTROLLER,
            NAME_LABEL: self.name,
        }
        if app:
            labels[APP_LABEL] = self.name
        return labels

    def _selector(self) -> dict[str, str]:
        return {NAME_LABEL: self.name, APP_LABEL: self.name}

    def config_map(self) -> V1ConfigMap:
        return V1ConfigMap(
            api_version="v1",
            kind="ConfigMap",
            metadata=V1ObjectMeta(name=self.name, namespace=self.namespace, labels=self._labels()),
            data={RSYNCD_CONF_KEY: render_rsyncd_conf(self.source.username)},
        )

    def deployment(self) -> V1Deployment:
        container = V1Container(
            name=RSYNC_DAEMON_CONTAINER,
            image=self.source.image,
            image_pull_policy="Always",
            env=[
                V1EnvVar(name="RSYNC_USERNAME", value=self.source.username),
                V1EnvVar(name="RSYNC_PASSWORD", value=self.source.password),
            ],
            ports=[V1ContainerPort(name=RSYNC_DAEMON_CONTAINER, container_port=RSYNC_DAEMON_PORT)],
            volume_mounts=[
                V1VolumeMount(
                    name=self.source.volume["name"],
                    mount_path=DATA_MOUNT_PATH,
                    read_only=True,
                    mount_propagation="HostToContainer",
                ),
                V1VolumeMount(
                    name=CONFIG_VOLUME_NAME,
                    mount_path=RSYNCD_CONF_PATH,
                    sub_path=RSYNCD_CONF_KEY,
                ),
            ],
        )
        # User volume in API form. Newer clients coerce it to V1Volume; the wire form is unchanged.
        volumes = [
            self.source.volume,
            V1Volume(
                name=CONFIG_VOLUME_NAME,
                config_map=V1ConfigMapVolumeSource(name=self.name),
            ),
        ]
        node_selector = {HOSTNAME_LABEL: self.source.host_name} if self.source.host_name else None
        return V1Deployment(
            api_version="apps/v1",
            kind="Deployment",
            metadata=V1ObjectMeta(
                name=self.name, namespace=self.namespace, labels=self._labels(app=True)
            ),
            spec=V1DeploymentSpec(
                replicas=self.source.replicas,
                selector=V1LabelSelector(match_labels=self._selector()),
                template=V1PodTemplateSpec(
                    metadata=V1ObjectMeta(labels=self._labels(app=True)),
                    spec=V1PodSpec(
                        containers=[container],
                        volumes=volumes,
                        node_selector=node_selector,
                    ),
                ),
            ),
        )

    def service(self) -> V1Service:
        return V1Service(
            api_version="v1",
            kind="Service",
            metadata=V1ObjectMeta(name=self.name, namespace=self.namespace, labels=self._labels()),
            spec=V1ServiceSpec(
                ports=[
                    V1ServicePort(
                        name=RSYNC_DAEMON_CONTAINER,
                        port=RSYNC_DAEMON_PORT,
                        protocol="TCP",
                    )
                ],
                selector=self._selector(),
            ),
        )


def rsync_source_for_node(node_name: str, host_name: str, config: ControllerConfig) -> RsyncSource:
    """Return the canonical per-node RsyncSource owned by the volume-source controller."""
    return RsyncSource(
        namespace=config.namespace,
        name=node_name,
        spec=RsyncSourceSpec(
            image=config.rsync_daemon_image,
            replicas=1,
            volume={
                "name": KUBELET_POD_DIR_VOLUME,
                "hostPath": {"path": config.kubelet_pod_dir_path},
            },
            username=config.rsync_username,
            password=config.rsync_password,
            host_name=host_name,
        ),
        labels={
            CREATED_BY_LABEL: VOLUME_SOURCE_CONTROLLER,
            NAME_LABEL: node_name,
            APP_LABEL: node_name,
        },
    )

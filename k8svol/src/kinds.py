from __future__ import annotations

from typing import Any

from kubernetes.client import AppsV1Api, CoreV1Api, CustomObjectsApi

from k8svol.src.constants import (
    API_REQUEST_TIMEOUT_SECONDS,
    GROUP_DEMO_IO,
    RSYNC_SOURCE_PLURAL,
    VERSION_V1,
)
from k8svol.src.ensure import ObjectKind
from k8svol.src.model import RsyncSource


def _containers(deployment: Any) -> list[Any]:
    spec = getattr(deployment, "spec", None)
    template = getattr(spec, "template", None)
    pod_spec = getattr(template, "spec", None)
    return list(getattr(pod_spec, "containers", None) or [])


def deployment_requires_recreate(current: Any, desired: Any) -> bool:
    """Return True when the running Deployment no longer matches the desired one.

    The fingerprint is the replica count plus, when both sides run exactly
    one container, that container's image. Any other container count is
    treated as a mismatch.
    """
    current_replicas = getattr(getattr(current, "spec", None), "replicas", None)
    desired_replicas = getattr(getattr(desired, "spec", None), "replicas", None)
    if current_replicas is not None and desired_replicas is not None:
        if current_replicas != desired_replicas:
            return True

    current_containers = _containers(current)
    desired_containers = _containers(desired)
    if len(current_containers) != 1 or len(desired_containers) != 1:
        return True
    return current_containers[0].image != desired_containers[0].image


def config_map_kind(core_api: CoreV1Api) -> ObjectKind:
    return ObjectKind(
        name="ConfigMap",
        read=lambda namespace, name: core_api.read_namespaced_config_map(
            name=name, namespace=namespace, _request_timeout=API_REQUEST_TIMEOUT_SECONDS
        ),
        create=lambda namespace, body: core_api.create_namespaced_config_map(
            namespace=namespace, body=body, _request_timeout=API_REQUEST_TIMEOUT_SECONDS
        ),
        delete=lambda namespace, name: core_api.delete_namespaced_config_map(
            name=name, namespace=namespace, _request_timeout=API_REQUEST_TIMEOUT_SECONDS
        ),
    )


def deployment_kind(apps_api: AppsV1Api) -> ObjectKind:
    return ObjectKind(
        name="Deployment",
        read=lambda namespace, name: apps_api.read_namespaced_deployment(
            name=name, namespace=namespace, _request_timeout=API_REQUEST_TIMEOUT_SECONDS
        ),
        create=lambda namespace, body: apps_api.create_namespaced_deployment(
            namespace=namespace, body=body, _request_timeout=API_REQUEST_TIMEOUT_SECONDS
        ),
        delete=lambda namespace, name: apps_api.delete_namespaced_deployment(
            name=name, namespace=namespace, _request_timeout=API_REQUEST_TIMEOUT_SECONDS
        ),
        requires_recreate=deployment_requires_recreate,
    )


def service_kind(core_api: CoreV1Api) -> ObjectKind:
    return ObjectKind(
        name="Service",
        read=lambda namespace, name: core_api.read_namespaced_service(
            name=name, namespace=namespace, _request_timeout=API_REQUEST_TIMEOUT_SECONDS
        ),
        create=lambda namespace, body: core_api.create_namespaced_service(
            namespace=namespace, body=body, _request_timeout=API_REQUEST_TIMEOUT_SECONDS
        ),
        delete=lambda namespace, name: core_api.delete_namespaced_service(
            name=name, namespace=namespace, _request_timeout=API_REQUEST_TIMEOUT_SECONDS
        ),
    )


def rsync_source_kind(custom_api: CustomObjectsApi) -> ObjectKind:
    """RsyncSource objects, as created and retired by the volume-source controller."""

    def _create(namespace: str, body: RsyncSource) -> Any:
        return custom_api.create_namespaced_custom_object(
            group=GROUP_DEMO_IO,
            version=VERSION_V1,
            namespace=namespace,
            plural=RSYNC_SOURCE_PLURAL,
            body=body.to_dict(),
            _request_timeout=API_REQUEST_TIMEOUT_SECONDS,
        )

    return ObjectKind(
        name="RsyncSource",
        read=lambda namespace, name: custom_api.get_namespaced_custom_object(
            group=GROUP_DEMO_IO,
            version=VERSION_V1,
            namespace=namespace,
            plural=RSYNC_SOURCE_PLURAL,
            name=name,
            _request_timeout=API_REQUEST_TIMEOUT_SECONDS,
        ),
        create=_create,
        delete=lambda namespace, name: custom_api.delete_namespaced_custom_object(
            group=GROUP_DEMO_IO,
            version=VERSION_V1,
            namespace=namespace,
            plural=RSYNC_SOURCE_PLURAL,
            name=name,
            _request_timeout=API_REQUEST_TIMEOUT_SECONDS,
        ),
        name_of=lambda rsync_source: rsync_source.name,
    )

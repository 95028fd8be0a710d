from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api, CustomObjectsApi]:
    """Return CoreV1, AppsV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api(), client.CustomObjectsApi()


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


def _metadata(obj: Any) -> Any:
    if isinstance(obj, dict):
        return obj.get("metadata") or {}
    return getattr(obj, "metadata", None)


def _meta_field(metadata: Any, attr: str, key: str) -> Any:
    if isinstance(metadata, dict):
        return metadata.get(key)
    return getattr(metadata, attr, None)


def object_name(obj: Any) -> str | None:
    """Return ``metadata.name`` of a typed client model or a custom-object dict."""
    return _meta_field(_metadata(obj), "name", "name")


def object_namespace(obj: Any) -> str | None:
    return _meta_field(_metadata(obj), "namespace", "namespace")


def object_labels(obj: Any) -> dict[str, str]:
    labels = _meta_field(_metadata(obj), "labels", "labels")
    if not isinstance(labels, dict):
        return {}
    return labels


def object_resource_version(obj: Any) -> str | None:
    return _meta_field(_metadata(obj), "resource_version", "resourceVersion")


def meta_namespace_key(obj: Any) -> str:
    """Return ``<namespace>/<name>``, or just ``<name>`` for cluster-scoped objects.

    Raises ``ValueError`` when the object carries no name.
    """
    name = object_name(obj)
    if not name:
        raise ValueError(f"{type(obj).__name__} object has no metadata.name")
    namespace = object_namespace(obj)
    if namespace:
        return f"{namespace}/{name}"
    return name

from __future__ import annotations

import copy
import enum
import logging
from typing import Any

from kubernetes.client import ApiException, CustomObjectsApi

from k8svol.src.constants import (
    API_REQUEST_TIMEOUT_SECONDS,
    GROUP_DEMO_IO,
    RSYNC_SOURCE_PLURAL,
    RSYNC_SOURCE_PROTECTION_FINALIZER,
    VERSION_V1,
)
from k8svol.src.kube import is_not_found
from k8svol.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class FinalizerState(enum.Enum):
    LIVE = "live"
    PROTECTED = "protected"
    FINALIZING = "finalizing"
    # Terminating with the token already gone; the API server removes it next.
    RELEASED = "released"


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("metadata") or {}


def is_terminating(obj: dict[str, Any]) -> bool:
    return _metadata(obj).get("deletionTimestamp") is not None


def has_finalizer(obj: dict[str, Any]) -> bool:
    return RSYNC_SOURCE_PROTECTION_FINALIZER in (_metadata(obj).get("finalizers") or [])


def finalizer_state(obj: dict[str, Any]) -> FinalizerState:
    protected = has_finalizer(obj)
    if is_terminating(obj):
        return FinalizerState.FINALIZING if protected else FinalizerState.RELEASED
    return FinalizerState.PROTECTED if protected else FinalizerState.LIVE


def ensure_finalizer(custom_api: CustomObjectsApi, want: bool, obj: dict[str, Any]) -> bool:
    """Add or remove the protection finalizer on an RsyncSource dict.

    Returns True when the object was updated. The object is written back as
    read, ``resourceVersion`` included, so a concurrent change surfaces as
    ``409 Conflict`` and the item is retried against fresh state. Other
    finalizers keep their order. The cached *obj* itself is never modified.
    """
    metadata = _metadata(obj)
    namespace = metadata.get("namespace")
    name = metadata.get("name")
    current = list(metadata.get("finalizers") or [])
    remaining = [f for f in current if f != RSYNC_SOURCE_PROTECTION_FINALIZER]
    found = len(remaining) != len(current)
    if found == want:
        return False
    if want:
        remaining.append(RSYNC_SOURCE_PROTECTION_FINALIZER)

    body = copy.deepcopy(obj)
    body.setdefault("metadata", {})["finalizers"] = remaining
    try:
        custom_api.replace_namespaced_custom_object(
            group=GROUP_DEMO_IO,
            version=VERSION_V1,
            namespace=namespace,
            plural=RSYNC_SOURCE_PLURAL,
            name=name,
            body=body,
            _request_timeout=API_REQUEST_TIMEOUT_SECONDS,
        )
    except ApiException as exc:
        if want or not is_not_found(exc):
            raise
        LOGGER.debug("RsyncSource %s/%s disappeared before finalizer removal", namespace, name)
        return False

    METRICS.finalizer_transitions_total.labels(transition="added" if want else "removed").inc()
    LOGGER.info(
        "Finalizer %s %s RsyncSource %s/%s",
        RSYNC_SOURCE_PROTECTION_FINALIZER,
        "added to" if want else "removed from",
        namespace,
        name,
    )
    return True

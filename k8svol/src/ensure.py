from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from k8svol.src.constants import CREATED_BY_LABEL
from k8svol.src.errors import NotOwnedError
from k8svol.src.kube import is_not_found, object_labels, object_name
from k8svol.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class Transition(enum.Enum):
    """What ``ensure`` must do for a given (want, found) pair."""

    KEEP = "keep"
    CREATE = "create"
    DELETE = "delete"
    NOOP = "noop"


_TRANSITIONS: dict[tuple[bool, bool], Transition] = {
    (True, True): Transition.KEEP,
    (True, False): Transition.CREATE,
    (False, True): Transition.DELETE,
    (False, False): Transition.NOOP,
}


def plan(want: bool, found: bool) -> Transition:
    return _TRANSITIONS[(want, found)]


class EnsureResult(enum.Enum):
    UNCHANGED = "unchanged"
    CREATED = "created"
    DELETED = "deleted"
    # Deleted because its content drifted; the next reconcile recreates it.
    RECREATE_PENDING = "recreate_pending"


@dataclass(frozen=True)
class ObjectKind:
    """Describes how to fetch, create and delete one kind of managed object.

    ``requires_recreate(current, desired)`` is only consulted when the object
    is both wanted and present; kinds without one are never replaced.
    """

    name: str
    read: Callable[[str, str], Any]
    create: Callable[[str, Any], Any]
    delete: Callable[[str, str], Any]
    name_of: Callable[[Any], str | None] = object_name
    requires_recreate: Callable[[Any, Any], bool] | None = None


def fetch(kind: ObjectKind, namespace: str, name: str) -> Any | None:
    """Read an object from the live API, returning ``None`` when it does not exist."""
    try:
        return kind.read(namespace, name)
    except ApiException as exc:
        if is_not_found(exc):
            return None
        raise


def ensure(
    kind: ObjectKind,
    want: bool,
    namespace: str,
    desired: Any,
    owner: str,
) -> EnsureResult:
    """Converge the existence of *desired* in *namespace* towards *want*.

    1. Read the current object by name from the live API (never the cache).
    2. If it exists but its created-by label is not *owner*, raise
       :class:`NotOwnedError` without touching it.
    3. Apply the transition for ``(want, found)``: create, delete, or nothing.
       When wanted and found, a kind with ``requires_recreate`` whose check
       reports drift is deleted and :attr:`EnsureResult.RECREATE_PENDING`
       returned so the caller can requeue for the create.

    Repeated calls with the same arguments against a stable backend reach a
    fixed point after which every call returns :attr:`EnsureResult.UNCHANGED`.
    """
    name = kind.name_of(desired)
    if not name:
        raise ValueError(f"desired {kind.name} has no name")

    current = fetch(kind, namespace, name)
    found = current is not None

    if found:
        created_by = object_labels(current).get(CREATED_BY_LABEL)
        if created_by != owner:
            raise NotOwnedError(kind.name, namespace, name, created_by)

    transition = plan(want, found)
    if transition is Transition.KEEP:
        if kind.requires_recreate is not None and kind.requires_recreate(current, desired):
            LOGGER.info(
                "%s %s/%s drifted from desired state; deleting for recreate",
                kind.name,
                namespace,
                name,
            )
            _delete(kind, namespace, name)
            METRICS.ensure_actions_total.labels(kind=kind.name, action="recreate").inc()
            return EnsureResult.RECREATE_PENDING
        METRICS.ensure_actions_total.labels(kind=kind.name, action="noop").inc()
        return EnsureResult.UNCHANGED

    if transition is Transition.CREATE:
        kind.create(namespace, desired)
        LOGGER.info("Created %s %s/%s", kind.name, namespace, name)
        METRICS.ensure_actions_total.labels(kind=kind.name, action="create").inc()
        return EnsureResult.CREATED

    if transition is Transition.DELETE:
        _delete(kind, namespace, name)
        METRICS.ensure_actions_total.labels(kind=kind.name, action="delete").inc()
        return EnsureResult.DELETED

    METRICS.ensure_actions_total.labels(kind=kind.name, action="noop").inc()
    return EnsureResult.UNCHANGED


def _delete(kind: ObjectKind, namespace: str, name: str) -> None:
    try:
        kind.delete(namespace, name)
    except ApiException as exc:
        if not is_not_found(exc):
            raise
        LOGGER.debug("%s %s/%s already gone", kind.name, namespace, name)
        return
    LOGGER.info("Deleted %s %s/%s", kind.name, namespace, name)

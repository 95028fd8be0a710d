from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when the process configuration is invalid."""


class CacheSyncError(RuntimeError):
    """Raised when snapshot caches do not finish their initial list in time."""


class ReconcileError(Exception):
    """A reconcile attempt failed and the work item should be retried."""


class PermanentError(ReconcileError):
    """A reconcile failure that retrying cannot fix.

    The worker reports it and forgets the item instead of requeueing it.
    """


class InvalidKeyError(PermanentError):
    """A work-queue key could not be decoded."""


class InvalidObjectError(PermanentError):
    """A watched object is missing fields required to reconcile it."""


class MissingLabelError(PermanentError):
    """A node has no ``kubernetes.io/hostname`` label."""


class AmbiguousMappingError(PermanentError):
    """More than one node carries the host-name label an intent targets."""


class NotOwnedError(PermanentError):
    """An object with the desired name exists but was created by someone else."""

    def __init__(self, kind: str, namespace: str, name: str, owner: str | None) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.owner = owner
        super().__init__(
            f"{kind} {namespace}/{name} found but not created by this controller "
            f"(created-by={owner!r})"
        )


class RequeueRequest(Exception):
    """Signal the worker to requeue an item with backoff without reporting an error."""

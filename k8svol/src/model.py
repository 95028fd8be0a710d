from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from k8svol.src.constants import (
    CREATED_BY_LABEL,
    RSYNC_SOURCE_API_VERSION,
    RSYNC_SOURCE_KIND,
)
from k8svol.src.errors import InvalidObjectError


@dataclass(frozen=True)
class RsyncSourceSpec:
    """Desired state of one mirrored volume.

    ``volume`` is a core/v1 ``Volume`` in API (camelCase) form and is placed
    on the daemon pod unchanged.
    """

    image: str
    replicas: int
    volume: dict[str, Any]
    username: str = ""
    password: str = field(default="", repr=False)
    host_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "image": self.image,
            "replicas": self.replicas,
            "volume": copy.deepcopy(self.volume),
            "username": self.username,
            "password": self.password,
            "hostName": self.host_name,
        }


@dataclass(frozen=True)
class RsyncSource:
    """Typed view of a ``demo.io/v1`` RsyncSource custom object.

    ``raw`` keeps the object exactly as read so it can be written back with
    its ``resourceVersion`` intact.
    """

    namespace: str
    name: str
    spec: RsyncSourceSpec
    labels: dict[str, str] = field(default_factory=dict)
    finalizers: tuple[str, ...] = ()
    deletion_timestamp: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def terminating(self) -> bool:
        return self.deletion_timestamp is not None

    @property
    def created_by(self) -> str | None:
        return self.labels.get(CREATED_BY_LABEL)

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> RsyncSource:
        """Convert a custom-object dict, raising :class:`InvalidObjectError` on bad input."""
        if not isinstance(obj, dict):
            raise InvalidObjectError(f"expected RsyncSource dict, got {type(obj).__name__}")
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        namespace = metadata.get("namespace")
        if not name or not namespace:
            raise InvalidObjectError("RsyncSource is missing metadata.name or metadata.namespace")

        raw_spec = obj.get("spec") or {}
        if not isinstance(raw_spec, dict):
            raise InvalidObjectError(f"RsyncSource {namespace}/{name} has a non-object spec")

        image = raw_spec.get("image")
        if not isinstance(image, str) or not image:
            raise InvalidObjectError(f"RsyncSource {namespace}/{name} is missing spec.image")

        replicas = raw_spec.get("replicas", 1)
        if isinstance(replicas, bool) or not isinstance(replicas, int) or replicas < 0:
            raise InvalidObjectError(
                f"RsyncSource {namespace}/{name} has invalid spec.replicas: {replicas!r}"
            )

        volume = raw_spec.get("volume") or {}
        if not isinstance(volume, dict) or not volume.get("name"):
            raise InvalidObjectError(f"RsyncSource {namespace}/{name} is missing spec.volume.name")

        labels = metadata.get("labels") or {}
        return cls(
            namespace=namespace,
            name=name,
            spec=RsyncSourceSpec(
                image=image,
                replicas=replicas,
                volume=volume,
                username=str(raw_spec.get("username") or ""),
                password=str(raw_spec.get("password") or ""),
                host_name=str(raw_spec.get("hostName") or ""),
            ),
            labels=dict(labels) if isinstance(labels, dict) else {},
            finalizers=tuple(metadata.get("finalizers") or ()),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            raw=obj,
        )

    def to_dict(self) -> dict[str, Any]:
        """Render a creatable custom-object body (no server-populated metadata)."""
        metadata: dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "labels": dict(self.labels),
        }
        if self.finalizers:
            metadata["finalizers"] = list(self.finalizers)
        return {
            "apiVersion": RSYNC_SOURCE_API_VERSION,
            "kind": RSYNC_SOURCE_KIND,
            "metadata": metadata,
            "spec": self.spec.to_dict(),
        }

"""Work-queue key encoding.

Single-collection controllers queue ``<namespace>/<name>``. Controllers that
watch several collections prefix a type tag, giving ``intent/<namespace>/<name>``
and ``node//<name>``. Nodes are cluster-scoped, so their namespace segment is
empty. The short ``node/<name>`` spelling is also accepted on decode.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from k8svol.src.errors import InvalidKeyError
from k8svol.src.kube import object_name, object_namespace


@dataclass(frozen=True)
class IntentKey:
    namespace: str
    name: str

    tag: ClassVar[str] = "intent"


@dataclass(frozen=True)
class NodeKey:
    name: str

    tag: ClassVar[str] = "node"


WorkKey = IntentKey | NodeKey


def encode_key(key: WorkKey, *, tagged: bool = True) -> str:
    if isinstance(key, NodeKey):
        if not tagged:
            raise ValueError("node keys are only valid on tagged queues")
        return f"{NodeKey.tag}//{key.name}"
    if tagged:
        return f"{IntentKey.tag}/{key.namespace}/{key.name}"
    return f"{key.namespace}/{key.name}"


def decode_key(raw: object, *, tagged: bool = True) -> WorkKey:
    """Decode a queued key, raising :class:`InvalidKeyError` when it is malformed."""
    if not isinstance(raw, str):
        raise InvalidKeyError(f"expected string in workqueue but got {raw!r}")

    parts = raw.split("/")
    if not tagged:
        if len(parts) != 2 or not all(parts):
            raise InvalidKeyError(f"invalid resource key: {raw}")
        return IntentKey(namespace=parts[0], name=parts[1])

    tag = parts[0]
    if tag == IntentKey.tag:
        if len(parts) != 3 or not parts[1] or not parts[2]:
            raise InvalidKeyError(f"invalid key {raw}")
        return IntentKey(namespace=parts[1], name=parts[2])
    if tag == NodeKey.tag:
        if len(parts) == 2 and parts[1]:
            return NodeKey(name=parts[1])
        if len(parts) == 3 and not parts[1] and parts[2]:
            return NodeKey(name=parts[2])
        raise InvalidKeyError(f"invalid key {raw}")
    raise InvalidKeyError(f"invalid resource key: {raw}")


def intent_key_for(obj: Any) -> IntentKey:
    name = object_name(obj)
    namespace = object_namespace(obj)
    if not name or not namespace:
        raise ValueError("RsyncSource event without metadata.name or metadata.namespace")
    return IntentKey(namespace=namespace, name=name)


def node_key_for(obj: Any) -> NodeKey:
    name = object_name(obj)
    if not name:
        raise ValueError("Node event without metadata.name")
    return NodeKey(name=name)

from __future__ import annotations

import logging

from kubernetes.client import CoreV1Api, CustomObjectsApi

from k8svol.src.cache import SnapshotCache
from k8svol.src.config import ControllerConfig
from k8svol.src.constants import (
    API_REQUEST_TIMEOUT_SECONDS,
    CREATED_BY_LABEL,
    HOSTNAME_LABEL,
    VOLUME_SOURCE_CONTROLLER,
)
from k8svol.src.controller import Controller, build_queue, build_rsync_source_cache
from k8svol.src.ensure import ensure
from k8svol.src.errors import AmbiguousMappingError, MissingLabelError
from k8svol.src.finalizer import is_terminating
from k8svol.src.keys import IntentKey, NodeKey, intent_key_for, node_key_for
from k8svol.src.kinds import rsync_source_kind
from k8svol.src.kube import object_labels, object_name
from k8svol.src.metrics import METRICS
from k8svol.src.templates import rsync_source_for_node
from k8svol.src.workqueue import RateLimitingQueue


class VolumeSourceController(Controller):
    """Keeps one RsyncSource per cluster node, keyed by the node's host-name label.

    Node events ensure the node's RsyncSource exists. RsyncSource events
    retire objects this controller created whose host name no longer matches
    any node. Both sources share one queue, distinguished by key tag.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        nodes: SnapshotCache,
        rsync_sources: SnapshotCache,
        queue: RateLimitingQueue,
        config: ControllerConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(
            name=VOLUME_SOURCE_CONTROLLER,
            queue=queue,
            caches=[rsync_sources, nodes],
            tagged=True,
            workers=config.workers,
            cache_sync_timeout_seconds=config.cache_sync_timeout_seconds,
            logger=logger or logging.getLogger(__name__),
        )
        self.core_api = core_api
        self.config = config
        self.nodes = nodes
        self.rsync_sources = rsync_sources
        self.rsync_source_kind = rsync_source_kind(custom_api)
        self.reconcilers[IntentKey] = self.sync_rsync_source
        self.reconcilers[NodeKey] = self.sync_node
        self.watch(rsync_sources, intent_key_for)
        self.watch(nodes, node_key_for)

    def sync_node(self, key: NodeKey) -> None:
        node = self.nodes.get(key.name)
        if node is None:
            # The node's RsyncSource is named after it; check whether it must go.
            self.logger.info(
                "Node '%s' in work queue no longer exists; re-checking its RsyncSource",
                key.name,
            )
            self.enqueue(IntentKey(namespace=self.config.namespace, name=key.name))
            return

        host_name = object_labels(node).get(HOSTNAME_LABEL)
        if not host_name:
            raise MissingLabelError(
                f"error processing node `{key.name}` sync: missing {HOSTNAME_LABEL} label"
            )

        ensure(
            self.rsync_source_kind,
            True,
            self.config.namespace,
            rsync_source_for_node(key.name, host_name, self.config),
            VOLUME_SOURCE_CONTROLLER,
        )

    def sync_rsync_source(self, key: IntentKey) -> None:
        obj = self.rsync_sources.get_by_name(key.namespace, key.name)
        if obj is None:
            self.logger.info(
                "RsyncSource '%s/%s' in work queue no longer exists", key.namespace, key.name
            )
            return

        if object_labels(obj).get(CREATED_BY_LABEL) != VOLUME_SOURCE_CONTROLLER:
            return
        if is_terminating(obj):
            return

        spec = obj.get("spec") or {}
        host_name = spec.get("hostName") if isinstance(spec, dict) else None
        if not host_name:
            return

        selector = f"{HOSTNAME_LABEL}={host_name}"
        matching = self.core_api.list_node(
            label_selector=selector, _request_timeout=API_REQUEST_TIMEOUT_SECONDS
        ).items or []
        if not matching:
            self.logger.info(
                "No node carries %s; retiring RsyncSource %s/%s",
                selector,
                key.namespace,
                key.name,
            )
            ensure(
                self.rsync_source_kind,
                False,
                key.namespace,
                rsync_source_for_node(key.name, host_name, self.config),
                VOLUME_SOURCE_CONTROLLER,
            )
            return

        if len(matching) > 1:
            METRICS.ambiguous_mappings_total.inc()
            node_names = sorted(object_name(node) or "<unknown>" for node in matching)
            raise AmbiguousMappingError(
                f"RsyncSource {key.namespace}/{key.name}: {len(matching)} nodes carry "
                f"{selector} ({', '.join(node_names)}); refusing to guess"
            )


def build_volume_source_controller(
    core_api: CoreV1Api,
    custom_api: CustomObjectsApi,
    config: ControllerConfig,
) -> VolumeSourceController:
    """Wire the node and RsyncSource caches, shared queue and controller from *config*."""
    nodes = SnapshotCache(
        resource="nodes",
        list_fn=core_api.list_node,
        resync_period_seconds=config.resync_period_seconds,
    )
    return VolumeSourceController(
        core_api=core_api,
        custom_api=custom_api,
        nodes=nodes,
        rsync_sources=build_rsync_source_cache(custom_api, config),
        queue=build_queue(config),
        config=config,
    )

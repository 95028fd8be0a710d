from __future__ import annotations

import logging
from typing import Any

from kubernetes.client import AppsV1Api, CoreV1Api, CustomObjectsApi

from k8svol.src.cache import SnapshotCache
from k8svol.src.config import ControllerConfig
from k8svol.src.constants import RSYNC_SOURCE_CONTROLLER
from k8svol.src.controller import Controller, build_queue, build_rsync_source_cache
from k8svol.src.ensure import EnsureResult, ObjectKind, ensure
from k8svol.src.errors import RequeueRequest
from k8svol.src.finalizer import ensure_finalizer, is_terminating
from k8svol.src.keys import IntentKey, intent_key_for
from k8svol.src.kinds import config_map_kind, deployment_kind, service_kind
from k8svol.src.model import RsyncSource
from k8svol.src.templates import TemplateConfig
from k8svol.src.workqueue import RateLimitingQueue


class RsyncSourceController(Controller):
    """Materializes every RsyncSource into a ConfigMap, Deployment and Service.

    Live objects get the protection finalizer first, then each derived object
    is ensured present. Terminating objects have their derived objects torn
    down in the same order, and only once all three deletions succeed is the
    finalizer removed, letting the API server delete the RsyncSource.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        custom_api: CustomObjectsApi,
        rsync_sources: SnapshotCache,
        queue: RateLimitingQueue,
        workers: int = 1,
        cache_sync_timeout_seconds: float = 120,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(
            name=RSYNC_SOURCE_CONTROLLER,
            queue=queue,
            caches=[rsync_sources],
            tagged=False,
            workers=workers,
            cache_sync_timeout_seconds=cache_sync_timeout_seconds,
            logger=logger or logging.getLogger(__name__),
        )
        self.custom_api = custom_api
        self.rsync_sources = rsync_sources
        self.config_maps = config_map_kind(core_api)
        self.deployments = deployment_kind(apps_api)
        self.services = service_kind(core_api)
        self.reconcilers[IntentKey] = self.sync_rsync_source
        self.watch(rsync_sources, intent_key_for)

    @property
    def derived_kinds(self) -> tuple[ObjectKind, ObjectKind, ObjectKind]:
        return self.config_maps, self.deployments, self.services

    def sync_rsync_source(self, key: IntentKey) -> None:
        obj = self.rsync_sources.get_by_name(key.namespace, key.name)
        if obj is None:
            self.logger.info(
                "RsyncSource '%s/%s' in work queue no longer exists", key.namespace, key.name
            )
            return

        if is_terminating(obj):
            self.finalize(key.namespace, key.name, obj)
            return

        rsync_source = RsyncSource.from_dict(obj)
        ensure_finalizer(self.custom_api, True, obj)

        templates = TemplateConfig.from_rsync_source(rsync_source)
        desired = (
            (self.config_maps, templates.config_map()),
            (self.deployments, templates.deployment()),
            (self.services, templates.service()),
        )
        recreating: list[str] = []
        for kind, body in desired:
            result = ensure(kind, True, rsync_source.namespace, body, RSYNC_SOURCE_CONTROLLER)
            if result is EnsureResult.RECREATE_PENDING:
                recreating.append(kind.name)

        if recreating:
            raise RequeueRequest(
                f"recreating {', '.join(recreating)} for RsyncSource "
                f"{rsync_source.namespace}/{rsync_source.name}"
            )

    def finalize(self, namespace: str, name: str, obj: dict[str, Any]) -> None:
        """Tear down derived objects, then release the finalizer.

        Only names are needed for deletion, so a terminating object whose spec
        no longer parses is still cleaned up. Any failed deletion propagates
        before the finalizer is touched.
        """
        for kind in self.derived_kinds:
            ensure(kind, False, namespace, {"metadata": {"name": name}}, RSYNC_SOURCE_CONTROLLER)
        ensure_finalizer(self.custom_api, False, obj)


def build_rsync_source_controller(
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    custom_api: CustomObjectsApi,
    config: ControllerConfig,
) -> RsyncSourceController:
    """Wire the RsyncSource cache, rate-limited queue and controller from *config*."""
    return RsyncSourceController(
        core_api=core_api,
        apps_api=apps_api,
        custom_api=custom_api,
        rsync_sources=build_rsync_source_cache(custom_api, config),
        queue=build_queue(config),
        workers=config.workers,
        cache_sync_timeout_seconds=config.cache_sync_timeout_seconds,
    )

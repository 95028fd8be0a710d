from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from typing import Any

from kubernetes.client import ApiException, CustomObjectsApi

from k8svol.src.cache import SnapshotCache, wait_for_cache_sync
from k8svol.src.config import ControllerConfig
from k8svol.src.constants import GROUP_DEMO_IO, RSYNC_SOURCE_PLURAL, VERSION_V1
from k8svol.src.errors import (
    CacheSyncError,
    InvalidKeyError,
    PermanentError,
    ReconcileError,
    RequeueRequest,
)
from k8svol.src.keys import WorkKey, decode_key, encode_key
from k8svol.src.metrics import METRICS
from k8svol.src.workqueue import RateLimitingQueue, default_controller_rate_limiter

Reconciler = Callable[[Any], None]


class Controller:
    """Watch → queue → worker pipeline shared by both controllers.

    Subclasses register their snapshot caches with :meth:`watch`, mapping each
    watched object to a typed work key, and fill :attr:`reconcilers` with one
    reconcile function per key type. Event handlers only enqueue; all API
    work happens on the worker threads.

    Worker protocol for each dequeued key:

    - malformed key, or a :class:`PermanentError` from the reconciler:
      reported to :meth:`handle_error` and forgotten, never requeued;
    - :class:`RequeueRequest`: requeued with rate-limited backoff, no error;
    - any other exception: reported and requeued with rate-limited backoff;
    - success: forgotten, resetting the key's backoff.

    The queue hands a key to at most one worker at a time, which is the only
    thing preventing concurrent reconciles of the same object.
    """

    def __init__(
        self,
        name: str,
        queue: RateLimitingQueue,
        caches: Sequence[SnapshotCache],
        tagged: bool,
        workers: int = 1,
        cache_sync_timeout_seconds: float = 120,
        worker_stop_timeout_seconds: float = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.name = name
        self.queue = queue
        self.caches = list(caches)
        self.tagged = tagged
        self.workers = workers
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.worker_stop_timeout_seconds = worker_stop_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.reconcilers: dict[type, Reconciler] = {}
        self.ready = threading.Event()
        self._worker_threads: list[threading.Thread] = []

    def enqueue(self, key: WorkKey) -> None:
        self.queue.add(encode_key(key, tagged=self.tagged))
        METRICS.queue_depth.labels(controller=self.name).set(len(self.queue))

    def watch(self, cache: SnapshotCache, key_for: Callable[[Any], WorkKey]) -> None:
        """Enqueue ``key_for(obj)`` on every add, update and delete seen by *cache*.

        Updates enqueue the new object's key only.
        """

        def _enqueue(obj: Any) -> None:
            try:
                key = key_for(obj)
            except ValueError as exc:
                self.handle_error(exc, f"computing {cache.resource} key")
                return
            self.enqueue(key)

        cache.add_event_handler(
            on_add=_enqueue,
            on_update=lambda old, new: _enqueue(new),
            on_delete=_enqueue,
        )

    def handle_error(self, exc: BaseException, context: str) -> None:
        """Process-wide error sink: log and count, never raise."""
        METRICS.errors_total.labels(controller=self.name).inc()
        expected = isinstance(exc, ReconcileError | ApiException)
        self.logger.error(
            "%s: %s",
            context,
            exc,
            exc_info=None if expected else (type(exc), exc, exc.__traceback__),
        )

    def process_next_work_item(self) -> bool:
        """Handle one queued key. Returns False once the queue has shut down."""
        raw, shutdown = self.queue.get()
        if shutdown:
            return False
        try:
            self._process(raw)
        finally:
            self.queue.done(raw)
            METRICS.queue_depth.labels(controller=self.name).set(len(self.queue))
        return True

    def _process(self, raw: str) -> None:
        try:
            key = decode_key(raw, tagged=self.tagged)
        except InvalidKeyError as exc:
            self.queue.forget(raw)
            METRICS.dropped_items_total.labels(controller=self.name).inc()
            self.handle_error(exc, "decoding work key")
            return

        reconcile = self.reconcilers.get(type(key))
        if reconcile is None:
            self.queue.forget(raw)
            METRICS.dropped_items_total.labels(controller=self.name).inc()
            self.handle_error(InvalidKeyError(f"no reconciler for key {raw}"), "dispatching")
            return

        started = time.monotonic()
        result = "success"
        try:
            reconcile(key)
        except RequeueRequest as req:
            result = "requeue"
            self.logger.info("Requeueing '%s': %s", raw, req)
            self.queue.add_rate_limited(raw)
            METRICS.requeues_total.labels(controller=self.name).inc()
        except PermanentError as exc:
            result = "dropped"
            self.queue.forget(raw)
            METRICS.dropped_items_total.labels(controller=self.name).inc()
            self.handle_error(exc, f"error syncing '{raw}', dropping")
        except Exception as exc:
            result = "error"
            self.queue.add_rate_limited(raw)
            METRICS.requeues_total.labels(controller=self.name).inc()
            self.handle_error(exc, f"error syncing '{raw}', requeuing")
        else:
            self.queue.forget(raw)
        finally:
            METRICS.reconcile_total.labels(
                controller=self.name, kind=key.tag, result=result
            ).inc()
            METRICS.reconcile_duration_seconds.labels(
                controller=self.name, kind=key.tag
            ).observe(time.monotonic() - started)

    def run_worker(self) -> None:
        while True:
            try:
                if not self.process_next_work_item():
                    return
            except Exception as exc:
                self.handle_error(exc, "worker loop")

    def request_stop(self) -> None:
        """Stop handing out work and interrupt every cache's watch stream."""
        self.queue.shut_down()
        for cache in self.caches:
            cache.request_stop()

    def run(self, shutdown_event: threading.Event | None = None) -> None:
        """Start caches, wait for them to sync, then run workers until shutdown.

        Raises :class:`CacheSyncError` when the caches have not synced within
        ``cache_sync_timeout_seconds``. On shutdown the queue is closed so
        idle workers exit; in-flight reconciles are given
        ``worker_stop_timeout_seconds`` to finish.
        """
        stop = shutdown_event or threading.Event()
        self.logger.info("Starting %s with %d worker(s)", self.name, self.workers)
        for cache in self.caches:
            cache.start(stop)

        if not wait_for_cache_sync(stop, self.caches, self.cache_sync_timeout_seconds):
            self.request_stop()
            if stop.is_set():
                return
            raise CacheSyncError(f"{self.name}: failed to wait for caches to sync")

        self._worker_threads = [
            threading.Thread(target=self.run_worker, name=f"{self.name}-worker-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for thread in self._worker_threads:
            thread.start()
        self.ready.set()
        self.logger.info("Caches synced; %s workers started", self.name)

        stop.wait()

        self.ready.clear()
        self.request_stop()
        deadline = time.monotonic() + self.worker_stop_timeout_seconds
        for thread in self._worker_threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                self.logger.warning("Worker %s still busy at shutdown", thread.name)
        self.logger.info("%s stopped", self.name)


def build_queue(config: ControllerConfig) -> RateLimitingQueue:
    return RateLimitingQueue(
        default_controller_rate_limiter(
            base_delay=config.queue_base_delay_seconds,
            max_delay=config.queue_max_delay_seconds,
            qps=config.queue_qps,
            burst=config.queue_burst,
        )
    )


def build_rsync_source_cache(
    custom_api: CustomObjectsApi, config: ControllerConfig
) -> SnapshotCache:
    """Cache of RsyncSource objects across all namespaces."""
    return SnapshotCache(
        resource="rsyncsources",
        list_fn=custom_api.list_cluster_custom_object,
        list_kwargs={
            "group": GROUP_DEMO_IO,
            "version": VERSION_V1,
            "plural": RSYNC_SOURCE_PLURAL,
        },
        resync_period_seconds=config.resync_period_seconds,
    )

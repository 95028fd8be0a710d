from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from k8svol.src.kube import meta_namespace_key, object_resource_version
from k8svol.src.metrics import METRICS


@dataclass(frozen=True)
class ResourceEventHandler:
    """Callbacks invoked for cache changes. They run on the watch thread and must not block."""

    on_add: Callable[[Any], None] | None = None
    on_update: Callable[[Any, Any], None] | None = None
    on_delete: Callable[[Any], None] | None = None


def _list_items(listing: Any) -> list[Any]:
    if isinstance(listing, dict):
        return list(listing.get("items") or [])
    return list(getattr(listing, "items", None) or [])


class SnapshotCache:
    """Eventually-consistent local view of one watched resource collection.

    The cache lists the collection once, marks itself synced, then streams
    watch events from the list's ``resourceVersion``. Each watch window lasts
    ``resync_period_seconds``; when a window closes normally every cached
    object is re-delivered to the update handlers so reconcilers get a
    periodic chance to correct drift they were never notified about.

    ``410 Gone`` (etcd compacted past our resourceVersion) triggers a re-list
    whose result is diffed against the cache, emitting add/update/delete
    events for whatever changed while the watch was disconnected. A re-list
    that fails keeps the previous snapshot and is retried. ``401`` and ``403``
    are configuration errors: the loop stops and the cache reports itself
    unsynced. Any other error backs off with jitter, capped at 30 s.

    Objects are stored exactly as the API returns them: typed client models
    for built-in kinds, plain dicts for custom resources. Callers must treat
    returned objects as read-only.
    """

    def __init__(
        self,
        resource: str,
        list_fn: Callable[..., Any],
        list_kwargs: dict[str, Any] | None = None,
        resync_period_seconds: int = 30,
        logger: logging.Logger | None = None,
        watch_factory: Callable[[], Any] = watch.Watch,
    ) -> None:
        if resync_period_seconds < 1:
            raise ValueError("resync_period_seconds must be >= 1")
        self.resource = resource
        self.list_fn = list_fn
        self.list_kwargs = dict(list_kwargs or {})
        self.resync_period_seconds = resync_period_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.watch_factory = watch_factory

        self._items: dict[str, Any] = {}
        self._items_lock = threading.Lock()
        self._handlers: list[ResourceEventHandler] = []
        self._synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: Any = None
        self._watcher_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    def add_event_handler(
        self,
        on_add: Callable[[Any], None] | None = None,
        on_update: Callable[[Any, Any], None] | None = None,
        on_delete: Callable[[Any], None] | None = None,
    ) -> None:
        self._handlers.append(
            ResourceEventHandler(on_add=on_add, on_update=on_update, on_delete=on_delete)
        )

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def get(self, key: str) -> Any | None:
        with self._items_lock:
            return self._items.get(key)

    def get_by_name(self, namespace: str | None, name: str) -> Any | None:
        return self.get(f"{namespace}/{name}" if namespace else name)

    def list(self) -> list[Any]:
        with self._items_lock:
            return list(self._items.values())

    def __len__(self) -> int:
        with self._items_lock:
            return len(self._items)

    def _dispatch(self, action: str, *objs: Any) -> None:
        for handler in self._handlers:
            callback = getattr(handler, f"on_{action}")
            if callback is None:
                continue
            try:
                callback(*objs)
            except Exception:
                self.logger.exception("%s %s handler failed", self.resource, action)

    def replace(self, items: Iterable[Any]) -> None:
        """Replace the cache contents with a fresh listing and emit the difference."""
        fresh: dict[str, Any] = {}
        for obj in items:
            try:
                fresh[meta_namespace_key(obj)] = obj
            except ValueError:
                self.logger.warning("Skipping %s without a name in listing", self.resource)

        with self._items_lock:
            previous = self._items
            self._items = fresh

        for key, old in previous.items():
            if key not in fresh:
                self._dispatch("delete", old)
        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._dispatch("add", obj)
            else:
                self._dispatch("update", old, obj)

    def apply_event(self, event_type: str, obj: Any) -> None:
        """Apply a single watch event to the cache and notify handlers."""
        try:
            key = meta_namespace_key(obj)
        except ValueError:
            self.logger.warning("Ignoring %s %s event without a name", self.resource, event_type)
            return

        if event_type in {"ADDED", "MODIFIED"}:
            with self._items_lock:
                old = self._items.get(key)
                self._items[key] = obj
            if old is None:
                self._dispatch("add", obj)
            else:
                self._dispatch("update", old, obj)
        elif event_type == "DELETED":
            with self._items_lock:
                self._items.pop(key, None)
            self._dispatch("delete", obj)

    def resync(self) -> None:
        """Re-deliver every cached object to the update handlers."""
        METRICS.cache_resyncs_total.labels(resource=self.resource).inc()
        for obj in self.list():
            self._dispatch("update", obj, obj)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _access_denied(self, exc: ApiException, phase: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            phase,
            self.resource,
            exc.status,
        )
        METRICS.watch_errors_total.labels(resource=self.resource).inc()
        self._synced.clear()
        return True

    def _backoff(self, stop: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)

    def _list(self) -> str | None:
        listing = self.list_fn(**self.list_kwargs)
        self.replace(_list_items(listing))
        return object_resource_version(listing)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List-then-watch loop. Blocks until stopped or access is denied."""
        stop = stop_event or threading.Event()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list()
                self._synced.set()
                self.logger.info(
                    "Synced %d %s; watching from resourceVersion %s",
                    len(self),
                    self.resource,
                    resource_version,
                )
                break
            except ApiException as exc:
                if self._access_denied(exc, "initial list"):
                    return
                self.logger.exception("Initial %s list failed", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()

            startup_backoff_seconds = self._backoff(stop, startup_backoff_seconds)

        backoff_seconds = 1
        watch_stream_count = 0
        last_resync = time.monotonic()
        relist = False

        while not self._should_stop(stop):
            if relist:
                try:
                    resource_version = self._list()
                    relist = False
                except ApiException as exc:
                    if self._access_denied(exc, "410 re-list"):
                        return
                    self.logger.exception("Failed to re-list %s after 410", self.resource)
                    METRICS.watch_errors_total.labels(resource=self.resource).inc()
                    backoff_seconds = self._backoff(stop, backoff_seconds)
                    continue
                except Exception:
                    self.logger.exception("Unexpected error re-listing %s", self.resource)
                    METRICS.watch_errors_total.labels(resource=self.resource).inc()
                    backoff_seconds = self._backoff(stop, backoff_seconds)
                    continue

            watcher = self.watch_factory()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=self.resource).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.resync_period_seconds,
                    **self.list_kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    observed_version = object_resource_version(obj)
                    if observed_version:
                        resource_version = observed_version

                    event_type = str(event.get("type", ""))
                    if event_type == "BOOKMARK":
                        continue
                    self.apply_event(event_type, obj)

                backoff_seconds = 1
                if (
                    not self._should_stop(stop)
                    and time.monotonic() - last_resync >= self.resync_period_seconds
                ):
                    self.resync()
                    last_resync = time.monotonic()
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "%s watch resource version expired, re-listing", self.resource
                    )
                    relist = True
                    continue

                if self._access_denied(exc, "watch"):
                    return

                self.logger.exception("Kubernetes API watch error for %s", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

    def start(self, stop_event: threading.Event) -> threading.Thread:
        """Run :meth:`run` on a daemon thread and return the thread."""
        self._external_stop.clear()
        self._thread = threading.Thread(
            target=self.run,
            kwargs={"stop_event": stop_event},
            name=f"cache-{self.resource}",
            daemon=True,
        )
        self._thread.start()
        return self._thread


def wait_for_cache_sync(
    stop_event: threading.Event,
    caches: Iterable[SnapshotCache],
    timeout_seconds: float,
    poll_interval_seconds: float = 0.1,
) -> bool:
    """Block until every cache has synced.

    Returns ``False`` when *timeout_seconds* elapse or *stop_event* is set first.
    """
    pending = list(caches)
    deadline = time.monotonic() + timeout_seconds
    while not stop_event.is_set():
        if all(cache.has_synced() for cache in pending):
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        stop_event.wait(timeout=min(poll_interval_seconds, remaining))
    return False

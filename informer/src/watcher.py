from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException

from informer.src.kube import ResourceTypeNotFoundError
from informer.src.metrics import METRICS
from informer.src.models import GVR, EventType, ResourceKey, WatchEvent, key_for_object, object_metadata

# API statuses that retrying cannot fix: auth/RBAC failures and a resource
# type that is no longer served.
PERMANENT_STATUSES = frozenset({401, 403, 404})

_WATCH_EVENT_TYPES = {
    "ADDED": EventType.ADDED,
    "MODIFIED": EventType.UPDATED,
    "DELETED": EventType.DELETED,
}


class WatchFailedError(RuntimeError):
    """A watch stopped for good; the informer owning it should be retired."""

    def __init__(self, watch_name: str, reason: str) -> None:
        super().__init__(f"Watch {watch_name} failed permanently: {reason}")
        self.watch_name = watch_name
        self.reason = reason


@dataclass(frozen=True)
class WatchTarget:
    """One server-side watch request planned for a GVR.

    ``namespace=None`` watches the whole cluster (or every namespace).
    """

    namespace: str | None = None
    field_selector: str | None = None
    label_selector: str | None = None

    def describe(self) -> str:
        parts = [f"namespace={self.namespace or '*'}"]
        parts.append(f"fieldSelector={self.field_selector or '<none>'}")
        parts.append(f"labelSelector={self.label_selector or '<none>'}")
        return " ".join(parts)


class ResourceClientLike(Protocol):
    def list(
        self,
        gvr: GVR,
        namespace: str | None = None,
        field_selector: str | None = None,
        label_selector: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]: ...

    def watch(self, gvr: GVR, watcher: watch.Watch, **kwargs: Any) -> Any: ...


class Watcher(Protocol):
    """What the registry needs from a running watch."""

    name: str
    synced: threading.Event

    def seed(self, objects: Mapping[ResourceKey, dict[str, Any]]) -> None: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def join(self, timeout: float | None = None) -> None: ...

    def is_alive(self) -> bool: ...


class ResourceWatcher:
    """List-then-watch loop for one :class:`WatchTarget`, run in a daemon thread.

    1. Lists the target with exponential backoff until it succeeds, emitting
       ``ADDED`` for every object (or only the difference from objects passed
       to :meth:`seed`) and setting ``synced``.
    2. Streams a watch from the list's ``resourceVersion``, emitting events.
    3. On ``410 Gone`` re-lists and diffs against the local store, so changes
       missed while disconnected still surface (vanished objects become
       ``DELETED`` tombstones carrying their last known state).
    4. Transient errors back off with jitter (1 s doubling to a 30 s cap).
    5. ``401``/``403``/``404`` or an unknown resource type end the loop and
       report a :class:`WatchFailedError` through ``on_failure``.
    """

    def __init__(
        self,
        client: ResourceClientLike,
        gvr: GVR,
        target: WatchTarget,
        on_event: Callable[[WatchEvent], None],
        on_failure: Callable[[WatchFailedError], None],
        stop_event: threading.Event,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.gvr = gvr
        self.target = target
        self.on_event = on_event
        self.on_failure = on_failure
        self.stop_event = stop_event
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.name = f"{gvr}@{target.namespace or '*'}"

        self.synced = threading.Event()
        self._store: dict[ResourceKey, dict[str, Any]] = {}
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    def seed(self, objects: Mapping[ResourceKey, dict[str, Any]]) -> None:
        """Preload the store with objects known from an earlier watch.

        The first listing is then diffed against them, so objects deleted
        while no watch was running surface as ``DELETED``.
        """
        self._store = dict(objects)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self.run, name=f"watch-{self.name}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _should_stop(self) -> bool:
        return self.stop_event.is_set() or self._external_stop.is_set()

    def _wait(self, seconds: float) -> None:
        # Wake early on either stop signal.
        deadline = time.monotonic() + seconds
        while not self._should_stop():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self.stop_event.wait(timeout=min(remaining, 0.5))

    def _emit(self, event_type: EventType, key: ResourceKey, obj: dict[str, Any] | None) -> None:
        METRICS.events_total.labels(gvr=str(self.gvr), event_type=event_type.value).inc()
        METRICS.last_event_timestamp.labels(gvr=str(self.gvr)).set(time.time())
        try:
            self.on_event(WatchEvent(event_type=event_type, key=key, obj=obj))
        except Exception:
            self.logger.exception("Event callback failed for %s %s", event_type.value, key)

    def _fail(self, reason: str) -> None:
        self.logger.error("Watch %s stopped permanently: %s", self.name, reason)
        METRICS.watch_errors_total.labels(gvr=str(self.gvr)).inc()
        self.on_failure(WatchFailedError(self.name, reason))

    def _list(self) -> str | None:
        items, resource_version = self.client.list(
            self.gvr,
            namespace=self.target.namespace,
            field_selector=self.target.field_selector,
            label_selector=self.target.label_selector,
        )
        return self._sync_store_from_list(items, resource_version)

    def _sync_store_from_list(
        self, items: list[dict[str, Any]], resource_version: str | None
    ) -> str | None:
        """Replace the local store with a listing, emitting the difference."""
        fresh: dict[ResourceKey, dict[str, Any]] = {}
        for obj in items:
            key = key_for_object(self.gvr, obj)
            if key is not None:
                fresh[key] = obj

        for key, obj in fresh.items():
            previous = self._store.get(key)
            if previous is None:
                self._emit(EventType.ADDED, key, obj)
            elif object_metadata(previous).get("resourceVersion") != object_metadata(obj).get(
                "resourceVersion"
            ):
                self._emit(EventType.UPDATED, key, obj)

        for key in [key for key in self._store if key not in fresh]:
            self._emit(EventType.DELETED, key, self._store[key])

        self._store = fresh
        return resource_version

    def _handle_watch_event(self, event: dict[str, Any], resource_version: str | None) -> str | None:
        raw_type = str(event.get("type", ""))
        obj = event.get("object")
        if not isinstance(obj, dict):
            return resource_version

        if raw_type == "ERROR":
            code = obj.get("code")
            raise ApiException(status=code if isinstance(code, int) else 500, reason=obj.get("message"))

        new_version = object_metadata(obj).get("resourceVersion") or resource_version
        if raw_type == "BOOKMARK":
            return new_version

        event_type = _WATCH_EVENT_TYPES.get(raw_type)
        key = key_for_object(self.gvr, obj)
        if event_type is None or key is None:
            return new_version

        if event_type is EventType.DELETED:
            self._store.pop(key, None)
        else:
            self._store[key] = obj
        self._emit(event_type, key, obj)
        return new_version

    def run(self) -> None:
        """Main loop; returns when stopped or after a permanent failure."""
        sync_started = time.monotonic()
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop():
            try:
                resource_version = self._list()
                self.synced.set()
                METRICS.sync_duration_seconds.labels(gvr=str(self.gvr)).observe(
                    time.monotonic() - sync_started
                )
                self.logger.info(
                    "Watch %s synced %d object(s) (%s)",
                    self.name,
                    len(self._store),
                    self.target.describe(),
                )
                break
            except ResourceTypeNotFoundError as exc:
                self._fail(str(exc))
                return
            except ApiException as exc:
                if exc.status in PERMANENT_STATUSES:
                    self._fail(f"initial list returned status {exc.status}")
                    return
                self.logger.exception("Initial list for %s failed", self.name)
                METRICS.watch_errors_total.labels(gvr=str(self.gvr)).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial list for %s", self.name)
                METRICS.watch_errors_total.labels(gvr=str(self.gvr)).inc()

            self._wait(startup_backoff_seconds * (0.5 + random.random()))  # noqa: S311
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop():
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(gvr=str(self.gvr)).inc()
                watch_stream_count += 1
                stream = self.client.watch(
                    self.gvr,
                    watcher=watcher,
                    namespace=self.target.namespace,
                    field_selector=self.target.field_selector,
                    label_selector=self.target.label_selector,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                )
                for event in stream:
                    if self._should_stop():
                        break
                    resource_version = self._handle_watch_event(event, resource_version)
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("Watch %s resource version expired, re-listing", self.name)
                    try:
                        resource_version = self._list()
                    except ApiException as relist_exc:
                        if relist_exc.status in PERMANENT_STATUSES:
                            self._fail(f"re-list returned status {relist_exc.status}")
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.name)
                        METRICS.watch_errors_total.labels(gvr=str(self.gvr)).inc()
                        resource_version = None
                    continue

                if exc.status in PERMANENT_STATUSES:
                    self._fail(f"watch returned status {exc.status}")
                    return

                self.logger.exception("Kubernetes API watch error for %s", self.name)
                METRICS.watch_errors_total.labels(gvr=str(self.gvr)).inc()
                self._wait(backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            except ResourceTypeNotFoundError as exc:
                self._fail(str(exc))
                return
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.name)
                METRICS.watch_errors_total.labels(gvr=str(self.gvr)).inc()
                self._wait(backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.logger.info("Watch %s stopped", self.name)

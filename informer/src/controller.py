from __future__ import annotations

import copy
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from informer.src.config import ConfigError, ControllerSettings, validate_specs
from informer.src.export import ExportSink, build_json_event, log_export_sink
from informer.src.filters import CompiledFilter, compile_filter
from informer.src.metrics import METRICS
from informer.src.models import (
    GVR,
    EventType,
    MatchedEvent,
    ResourceKey,
    ResourceWatchSpec,
    WatchEvent,
    object_labels,
    object_metadata,
)
from informer.src.registry import CacheSyncError, InformerRegistry, WatcherFactory, plan_watches
from informer.src.state import ResourceStateCache
from informer.src.watcher import ResourceClientLike, ResourceWatcher, WatchFailedError, WatchTarget
from informer.src.workqueue import RateLimiter, RateLimitingQueue, default_rate_limiter


class ControllerState(str, Enum):
    CREATED = "Created"
    STARTING = "Starting"
    READY = "Ready"
    RUNNING = "Running"
    STOPPING = "Stopping"
    STOPPED = "Stopped"


class ControllerError(RuntimeError):
    """Raised when the controller is used in a state that does not allow it."""


class ControllerStartError(ControllerError):
    """``start`` could not sync a single informer; the API is unreachable or forbidden."""


class HandlerError(RuntimeError):
    """An event handler raised while processing an event."""

    def __init__(self, handler: str, cause: Exception) -> None:
        super().__init__(f"handler {handler} failed: {cause}")
        self.handler = handler
        self.cause = cause


class EventHandler(Protocol):
    def on_matched(self, event: MatchedEvent) -> None: ...


class JSONMiddleware(Protocol):
    def process_before_json(
        self,
        event_type: str,
        gvr: str,
        namespace: str,
        name: str,
        uid: str,
        obj: dict[str, Any],
    ) -> tuple[dict[str, Any], bool]: ...


def utc_now() -> datetime:
    return datetime.now(UTC)


def _flatten_specs(
    specs: Mapping[GVR, Iterable[ResourceWatchSpec]] | Iterable[ResourceWatchSpec],
) -> list[ResourceWatchSpec]:
    if isinstance(specs, Mapping):
        return [spec for group in specs.values() for spec in group]
    return list(specs)


def _reconstruct_object(
    key: ResourceKey, uid: str, labels: Mapping[str, str], resource_version: str = ""
) -> dict[str, Any]:
    """Best-effort object for a resource known only from tracked state."""
    metadata: dict[str, Any] = {"name": key.name}
    if key.namespace:
        metadata["namespace"] = key.namespace
    if uid:
        metadata["uid"] = uid
    if labels:
        metadata["labels"] = dict(labels)
    if resource_version:
        metadata["resourceVersion"] = resource_version
    return {"apiVersion": key.gvr.api_version, "metadata": metadata}


def _fill_tombstone(
    obj: dict[str, Any], uid: str, labels: Mapping[str, str]
) -> dict[str, Any]:
    """Copy of a deletion's last state with tracked UID and labels filled in where missing."""
    metadata = dict(object_metadata(obj))
    if uid and not metadata.get("uid"):
        metadata["uid"] = uid
    if labels and not metadata.get("labels"):
        metadata["labels"] = dict(labels)
    return {**obj, "metadata": metadata}


class Controller:
    """Informer/controller runtime for arbitrary GVRs.

    Watches feed raw events into a per-key FIFO and enqueue the key on a
    rate-limited work queue. A fixed pool of workers takes one key at a time
    (the queue never hands the same key to two workers), processes the oldest
    pending event for it, and only removes that event after every handler
    succeeded or retries ran out. This keeps ADDED -> UPDATED -> DELETED in
    order per key while different keys are processed in parallel.

    Lifecycle: ``Created -> Starting -> Ready -> Running -> Stopping -> Stopped``.
    """

    def __init__(
        self,
        client: ResourceClientLike | None,
        specs: Mapping[GVR, Iterable[ResourceWatchSpec]] | Iterable[ResourceWatchSpec] = (),
        settings: ControllerSettings | None = None,
        watcher_factory: WatcherFactory | None = None,
        export_sink: ExportSink = log_export_sink,
        rate_limiter: RateLimiter | None = None,
        now_fn: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        if client is None and watcher_factory is None:
            raise ValueError("Controller needs a resource client or a watcher factory")
        self.client = client
        self.settings = settings or ControllerSettings()
        self.export_sink = export_sink
        self.now_fn = now_fn
        self.logger = logger or logging.getLogger(__name__)

        self._state = ControllerState.CREATED
        self._state_lock = threading.Lock()
        self._lifecycle_lock = threading.RLock()

        self._specs_lock = threading.Lock()
        self._specs: dict[GVR, list[ResourceWatchSpec]] = {}
        self._filters: dict[GVR, list[CompiledFilter]] = {}
        self._initial_gvrs: set[GVR] = set()
        self._warned_matchers: set[tuple[GVR, str]] = set()
        self._merge_specs(_flatten_specs(specs))

        self._handlers_lock = threading.Lock()
        self._handlers: list[EventHandler] = []
        self._middleware: list[JSONMiddleware] = []

        self.state_cache = ResourceStateCache()
        self.queue = RateLimitingQueue(
            rate_limiter
            or default_rate_limiter(
                base_delay=self.settings.retry_base_delay_seconds,
                max_delay=self.settings.retry_max_delay_seconds,
                qps=self.settings.queue_qps,
                burst=self.settings.queue_burst,
            )
        )
        self._pending_lock = threading.Lock()
        self._pending: dict[ResourceKey, deque[WatchEvent]] = {}

        self.registry = InformerRegistry(
            watcher_factory=watcher_factory or self._build_watcher,
            on_event=self._enqueue,
            logger=logging.getLogger("informer.src.registry"),
            known_objects=self._known_objects,
        )

        self._stop = threading.Event()
        self._workers: list[threading.Thread] = []

        self.ready = threading.Event()
        self.startup_error: Exception | None = None
        self._ready_lock = threading.Lock()
        self._ready_callback: Callable[[], None] | None = None
        self._ready_callback_fired = False

    # -- registration -------------------------------------------------------

    def add_event_handler(self, handler: EventHandler) -> None:
        with self._handlers_lock:
            self._handlers.append(handler)

    def add_json_middleware(self, middleware: JSONMiddleware) -> None:
        with self._handlers_lock:
            self._middleware.append(middleware)

    def set_ready_callback(self, callback: Callable[[], None]) -> None:
        """Register the readiness callback.

        The callback runs exactly once: when the controller becomes ready,
        or immediately if it already is.
        """
        with self._ready_lock:
            self._ready_callback = callback
            fire_now = self.ready.is_set()
            self._ready_callback_fired = fire_now
        if fire_now:
            self._invoke_ready_callback(callback)

    def is_ready(self) -> bool:
        return self.ready.is_set()

    @property
    def current_state(self) -> ControllerState:
        with self._state_lock:
            return self._state

    def get_active_informers(self) -> tuple[int, int]:
        """Return ``(config_driven, dynamic)`` counts of active informers."""
        return self.registry.counts()

    def specs_for(self, gvr: GVR) -> list[ResourceWatchSpec]:
        with self._specs_lock:
            return list(self._specs.get(gvr, ()))

    # -- spec bookkeeping ---------------------------------------------------

    def _merge_specs(self, specs: list[ResourceWatchSpec]) -> set[GVR]:
        """Add *specs* to the spec set and return the GVRs they touched."""
        touched: set[GVR] = set()
        with self._specs_lock:
            for spec in specs:
                self._specs.setdefault(spec.gvr, []).append(spec)
                self._filters.setdefault(spec.gvr, []).append(compile_filter(spec))
                touched.add(spec.gvr)
        return touched

    def _all_specs(self) -> list[ResourceWatchSpec]:
        with self._specs_lock:
            return [spec for group in self._specs.values() for spec in group]

    def _filters_for(self, gvr: GVR) -> list[CompiledFilter]:
        with self._specs_lock:
            return list(self._filters.get(gvr, ()))

    def _warn_unsupported(self, filters: Iterable[CompiledFilter]) -> None:
        for compiled in filters:
            for matcher in compiled.unsupported_matchers:
                marker = (compiled.spec.gvr, matcher)
                with self._specs_lock:
                    if marker in self._warned_matchers:
                        continue
                    self._warned_matchers.add(marker)
                self.logger.warning(
                    "Server-side filtering unavailable for %s: %s (client-side policy %s)",
                    compiled.spec.gvr,
                    compiled.reason,
                    compiled.client_side_policy.value,
                )

    def _ensure_watches(self, gvrs: Iterable[GVR]) -> None:
        for gvr in sorted(gvrs):
            filters = self._filters_for(gvr)
            if not filters:
                continue
            self._warn_unsupported(filters)
            existing = self.registry.get(gvr)
            handle = self.registry.ensure_watch(
                gvr,
                filters[0].spec.scope,
                filters,
                dynamic=gvr not in self._initial_gvrs,
            )
            if existing is not None and not handle.covers(plan_watches(handle.scope, filters)):
                self.logger.warning(
                    "Informer for %s keeps its current watch; call restart_informers() "
                    "to widen it for the added specs",
                    gvr,
                )

    def _build_watcher(
        self,
        gvr: GVR,
        target: WatchTarget,
        on_event: Callable[[WatchEvent], None],
        on_failure: Callable[[WatchFailedError], None],
        stop_event: threading.Event,
    ) -> ResourceWatcher:
        if self.client is None:
            raise ControllerError(f"No resource client to watch {gvr}")
        return ResourceWatcher(
            client=self.client,
            gvr=gvr,
            target=target,
            on_event=on_event,
            on_failure=on_failure,
            stop_event=stop_event,
            watch_timeout_seconds=self.settings.watch_timeout_seconds,
        )

    def _known_objects(
        self, gvr: GVR, target: WatchTarget
    ) -> dict[ResourceKey, dict[str, Any]]:
        """Tracked resources a new watch on *target* would list if they still existed."""
        name = None
        if target.field_selector and target.field_selector.startswith("metadata.name="):
            name = target.field_selector.split("=", 1)[1]
        known: dict[ResourceKey, dict[str, Any]] = {}
        for key, tracked in self.state_cache.entries(gvr):
            if target.namespace is not None and key.namespace != target.namespace:
                continue
            if name is not None and key.name != name:
                continue
            known[key] = _reconstruct_object(
                key, tracked.uid, tracked.labels, tracked.last_seen_resource_version
            )
        return known

    # -- lifecycle ----------------------------------------------------------

    def _transition(self, allowed: Iterable[ControllerState], target: ControllerState) -> None:
        with self._state_lock:
            if self._state not in set(allowed):
                raise ControllerError(
                    f"Cannot move controller from {self._state.value} to {target.value}"
                )
            self._state = target

    def start(self) -> None:
        """Start workers and informers, wait for cache sync, then mark ready.

        Raises :class:`ConfigError` for invalid specs (the controller stays
        ``Created``) and :class:`ControllerStartError` when no informer could
        sync at all. A partial sync still makes the controller ready, with the
        sync failure recorded in ``startup_error``.
        """
        self._transition([ControllerState.CREATED], ControllerState.STARTING)
        try:
            validate_specs(self._all_specs())
        except ConfigError:
            with self._state_lock:
                self._state = ControllerState.CREATED
            raise

        self.logger.info(
            "Starting controller with %d worker(s) for %d GVR(s)",
            self.settings.workers,
            len(self._specs),
        )
        self._start_workers()

        with self._lifecycle_lock:
            with self._specs_lock:
                self._initial_gvrs = set(self._specs)
            self._ensure_watches(self._initial_gvrs)
            try:
                self.registry.start_all(timeout=self.settings.cache_sync_timeout_seconds)
            except CacheSyncError as exc:
                if exc.nothing_synced:
                    self.logger.error("No informer synced during startup: %s", exc)
                    self.stop()
                    raise ControllerStartError(str(exc)) from exc
                self.startup_error = exc
                self.logger.error("Controller ready with incomplete cache sync: %s", exc)

        self._mark_ready()

    def _start_workers(self) -> None:
        for index in range(self.settings.workers):
            worker = threading.Thread(
                target=self._run_worker,
                name=f"informer-worker-{index}",
                daemon=True,
            )
            self._workers.append(worker)
            worker.start()

    def _mark_ready(self) -> None:
        with self._state_lock:
            if self._state is not ControllerState.STARTING:
                return
            self._state = ControllerState.READY
        self.ready.set()
        config_driven, dynamic = self.get_active_informers()
        self.logger.info(
            "Controller ready (%d config-driven, %d dynamic informer(s))",
            config_driven,
            dynamic,
        )

        with self._ready_lock:
            callback = None if self._ready_callback_fired else self._ready_callback
            self._ready_callback_fired = True
        if callback is not None:
            self._invoke_ready_callback(callback)

        with self._state_lock:
            if self._state is ControllerState.READY:
                self._state = ControllerState.RUNNING

    def _invoke_ready_callback(self, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            self.logger.exception("Readiness callback failed")

    def add_resources(self, specs: Iterable[ResourceWatchSpec]) -> None:
        """Merge *specs* into the spec set, watching new GVRs when running.

        Existing informers keep their watch; a warning is logged when the new
        specs would need :meth:`restart_informers` to be fully served.
        """
        new_specs = list(specs)
        if not new_specs:
            return
        state = self.current_state
        if state in (ControllerState.STOPPING, ControllerState.STOPPED):
            raise ControllerError(f"Cannot add resources while {state.value}")
        validate_specs(self._all_specs() + new_specs)

        touched = self._merge_specs(new_specs)
        self.logger.info(
            "Added %d spec(s) for %s", len(new_specs), ", ".join(str(g) for g in sorted(touched))
        )
        if state in (ControllerState.READY, ControllerState.RUNNING):
            with self._lifecycle_lock:
                self._ensure_watches(touched)
                self._start_pending()

    def remove_resources(self, gvrs: Iterable[GVR]) -> list[GVR]:
        """Forget every spec for *gvrs* and stop their informers; return the ones removed.

        Tracked state and events still pending for those GVRs are discarded.
        """
        removed: list[GVR] = []
        with self._lifecycle_lock:
            for gvr in gvrs:
                with self._specs_lock:
                    had_specs = self._specs.pop(gvr, None) is not None
                    self._filters.pop(gvr, None)
                handle = self.registry.get(gvr)
                if handle is not None:
                    self.registry.release(gvr, references=handle.ref_count)
                self._discard_gvr(gvr)
                if had_specs or handle is not None:
                    removed.append(gvr)
        if removed:
            self.logger.info("Removed resources: %s", ", ".join(str(g) for g in removed))
        return removed

    def _discard_gvr(self, gvr: GVR) -> None:
        with self._pending_lock:
            stale = [key for key in self._pending if key.gvr == gvr]
            for key in stale:
                del self._pending[key]
        for key in stale:
            self.queue.forget(key)
        evicted = self.state_cache.evict_gvr(gvr)
        if stale or evicted:
            self.logger.debug(
                "Discarded %d pending key(s) and %d tracked resource(s) for %s",
                len(stale),
                evicted,
                gvr,
            )

    def start_informers(self) -> None:
        """Create and start informers for every GVR in the spec set that has none.

        This also brings back informers that were retired after a watch
        failure. Raises :class:`CacheSyncError` if any of them did not sync.
        """
        state = self.current_state
        if state not in (ControllerState.READY, ControllerState.RUNNING):
            raise ControllerError(f"Cannot start informers while {state.value}")
        with self._lifecycle_lock:
            with self._specs_lock:
                missing = [gvr for gvr in self._specs if gvr not in self.registry]
            self._ensure_watches(missing)
            self.registry.start_all(timeout=self.settings.cache_sync_timeout_seconds)

    def _start_pending(self) -> None:
        try:
            self.registry.start_all(timeout=self.settings.cache_sync_timeout_seconds)
        except CacheSyncError as exc:
            self.logger.error("Informers added at runtime did not sync: %s", exc)

    def restart_informers(self) -> None:
        """Stop every watch and recreate it from the current spec set.

        Events already queued are still delivered. Each new watch is seeded
        with the resources already tracked for its target, so objects removed
        while no watch was running surface as DELETED.
        """
        state = self.current_state
        if state not in (ControllerState.READY, ControllerState.RUNNING):
            raise ControllerError(f"Cannot restart informers while {state.value}")
        with self._lifecycle_lock:
            abandoned = self.registry.stop_all(timeout=self.settings.shutdown_timeout_seconds)
            if abandoned:
                self.logger.warning("Restart left %d watch(es) running", len(abandoned))
            with self._specs_lock:
                gvrs = set(self._specs)
            self._ensure_watches(gvrs)
            self._start_pending()
        self.logger.info("Restarted informers for %d GVR(s)", len(gvrs))

    def stop(self, timeout: float | None = None) -> list[str]:
        """Stop watches and workers, waiting at most *timeout* seconds.

        Returns the names of watches and workers abandoned after the grace
        period. Safe to call more than once.
        """
        with self._state_lock:
            if self._state in (ControllerState.STOPPING, ControllerState.STOPPED):
                return []
            if self._state is ControllerState.CREATED:
                self._state = ControllerState.STOPPED
                return []
            self._state = ControllerState.STOPPING

        grace = self.settings.shutdown_timeout_seconds if timeout is None else timeout
        deadline = time.monotonic() + grace
        self.logger.info("Stopping controller (grace period %.1fs)", grace)

        self._stop.set()
        self.ready.clear()
        abandoned = self.registry.stop_all(timeout=grace)
        self.queue.shut_down()

        for worker in self._workers:
            worker.join(timeout=max(0.0, deadline - time.monotonic()))
            if worker.is_alive():
                abandoned.append(worker.name)

        if abandoned:
            self.logger.warning(
                "Controller stopped with %d task(s) abandoned: %s",
                len(abandoned),
                ", ".join(abandoned),
            )
        with self._state_lock:
            self._state = ControllerState.STOPPED
        self.logger.info("Controller stopped")
        return abandoned

    # -- event pipeline -----------------------------------------------------

    def _enqueue(self, event: WatchEvent) -> None:
        with self._pending_lock:
            self._pending.setdefault(event.key, deque()).append(event)
            # A key in backoff is re-added by its scheduled retry.
            backing_off = self.queue.num_requeues(event.key) > 0
        if not backing_off:
            self.queue.add(event.key)

    def pending_events(self, key: ResourceKey) -> int:
        with self._pending_lock:
            return len(self._pending.get(key, ()))

    def _run_worker(self) -> None:
        while True:
            key, shutdown = self.queue.get()
            if shutdown:
                return
            try:
                self._process_key(key)  # type: ignore[arg-type]
            except Exception:
                self.logger.exception("Unexpected error processing %s", key)
            finally:
                self.queue.done(key)

    def _process_key(self, key: ResourceKey) -> None:
        with self._pending_lock:
            events = self._pending.get(key)
            if not events:
                self.queue.forget(key)
                return
            event = events[0]

        try:
            self._process_event(event)
        except Exception as exc:
            retries = self.queue.num_requeues(key)
            if retries < self.settings.max_retries and not self._stop.is_set():
                METRICS.retry_total.labels(gvr=str(key.gvr)).inc()
                delay = self.queue.add_rate_limited(key)
                self.logger.debug(
                    "Retrying %s event for %s in %.3fs (retry %d/%d): %s",
                    event.event_type.value,
                    key,
                    delay,
                    retries + 1,
                    self.settings.max_retries,
                    exc,
                    exc_info=True,
                )
                return
            METRICS.dropped_total.labels(gvr=str(key.gvr)).inc()
            self.logger.error(
                "Dropping %s event for %s after %d retries: %s",
                event.event_type.value,
                key,
                retries,
                exc,
                exc_info=exc,
            )

        self._complete(key, event)

    def _complete(self, key: ResourceKey, event: WatchEvent) -> None:
        """Remove the processed head event and schedule the next one, if any."""
        if event.event_type is EventType.DELETED:
            self.state_cache.evict(key)
        self.queue.forget(key)
        with self._pending_lock:
            events = self._pending.get(key)
            if events and events[0] is event:
                events.popleft()
            has_more = bool(events)
            if not has_more:
                self._pending.pop(key, None)
        if has_more:
            self.queue.add(key)

    def _matching_specs(
        self, key: ResourceKey, labels: Mapping[str, str]
    ) -> tuple[ResourceWatchSpec, ...]:
        return tuple(
            compiled.spec
            for compiled in self._filters_for(key.gvr)
            if compiled.matches(key.namespace, key.name, labels)
        )

    def _process_event(self, event: WatchEvent) -> None:
        """Re-check, dispatch and export one event; raises if a handler fails."""
        key = event.key
        metadata = object_metadata(event.obj)

        if event.event_type is EventType.DELETED:
            tracked = self.state_cache.lookup(key)
            uid = (tracked.uid if tracked else "") or str(metadata.get("uid") or "")
            labels = tracked.labels if tracked else object_labels(event.obj)
            matched = self._matching_specs(key, labels)
        else:
            uid = str(metadata.get("uid") or "")
            labels = object_labels(event.obj)
            matched = self._matching_specs(key, labels)
            if matched:
                self.state_cache.observe(
                    key, uid, labels, str(metadata.get("resourceVersion") or "")
                )
            else:
                self.state_cache.evict(key)

        if not matched:
            self.logger.debug("No spec matches %s %s; dropping", event.event_type.value, key)
            return

        if event.obj is None:
            obj = _reconstruct_object(key, uid, labels)
        elif event.event_type is EventType.DELETED:
            obj = _fill_tombstone(event.obj, uid, labels)
        else:
            obj = event.obj
        matched_event = MatchedEvent(
            event_type=event.event_type,
            gvr=key.gvr,
            namespace=key.namespace,
            name=key.name,
            key=str(key),
            uid=uid,
            labels=dict(labels),
            obj=obj,
            timestamp=self.now_fn(),
            matched_specs=matched,
        )

        with self._handlers_lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler.on_matched(matched_event)
            except Exception as exc:
                METRICS.handler_errors_total.labels(gvr=str(key.gvr)).inc()
                raise HandlerError(type(handler).__name__, exc) from exc

        METRICS.dispatched_total.labels(gvr=str(key.gvr), event_type=event.event_type.value).inc()
        self._export(matched_event)

    def _export(self, event: MatchedEvent) -> None:
        with self._handlers_lock:
            middleware = list(self._middleware)

        obj = copy.deepcopy(event.obj)
        for transform in middleware:
            try:
                obj, keep = transform.process_before_json(
                    event.event_type.value,
                    str(event.gvr),
                    event.namespace,
                    event.name,
                    event.uid,
                    obj,
                )
            except Exception:
                self.logger.exception(
                    "JSON middleware %s failed for %s; event not exported",
                    type(transform).__name__,
                    event.key,
                )
                return
            if not keep:
                return

        try:
            self.export_sink(build_json_event(event, obj))
        except Exception:
            self.logger.exception("Export sink failed for %s", event.key)

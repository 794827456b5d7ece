from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from informer.src.filters import CompiledFilter
from informer.src.metrics import METRICS
from informer.src.models import GVR, ResourceKey, Scope, WatchEvent
from informer.src.watcher import WatchFailedError, Watcher, WatchTarget

WatcherFactory = Callable[
    [GVR, WatchTarget, Callable[[WatchEvent], None], Callable[[WatchFailedError], None], threading.Event],
    Watcher,
]
KnownObjects = Callable[[GVR, WatchTarget], Mapping[ResourceKey, dict[str, Any]]]


class CacheSyncError(RuntimeError):
    """Raised by :meth:`InformerRegistry.start_all` when informers did not sync in time."""

    def __init__(self, unsynced: Sequence[GVR], failed: Sequence[GVR], total: int) -> None:
        self.unsynced = list(unsynced)
        self.failed = list(failed)
        self.total = total
        details = []
        if self.unsynced:
            details.append("not synced in time: " + ", ".join(str(g) for g in self.unsynced))
        if self.failed:
            details.append("failed: " + ", ".join(str(g) for g in self.failed))
        super().__init__("Informer cache sync incomplete (" + "; ".join(details) + ")")

    @property
    def nothing_synced(self) -> bool:
        return self.total > 0 and len(self.unsynced) + len(self.failed) >= self.total


@dataclass
class InformerHandle:
    """The single informer owned by the registry for one GVR.

    An informer may run several watches (one per literal namespace) but is
    always counted, started and stopped as one unit.
    """

    gvr: GVR
    scope: Scope
    targets: tuple[WatchTarget, ...]
    dynamic: bool = False
    ref_count: int = 1
    started: bool = False
    failed: bool = False
    watchers: list[Watcher] = field(default_factory=list)
    created_at: float = field(default_factory=time.monotonic)

    def has_synced(self) -> bool:
        return bool(self.watchers) and all(w.synced.is_set() for w in self.watchers)

    def covers(self, targets: Sequence[WatchTarget]) -> bool:
        """Return True if *targets* would not widen what this informer watches."""
        return set(targets) <= set(self.targets)


def _common_value(values: Sequence[str | None]) -> str | None:
    distinct = set(values)
    if len(distinct) == 1:
        return next(iter(distinct))
    return None


def _target_for(namespace: str | None, filters: Sequence[CompiledFilter]) -> WatchTarget:
    name = _common_value([f.literal_name for f in filters])
    label_selector = _common_value([f.label_selector for f in filters])
    return WatchTarget(
        namespace=namespace,
        field_selector=f"metadata.name={name}" if name is not None else None,
        label_selector=label_selector,
    )


def plan_watches(scope: Scope, filters: Sequence[CompiledFilter]) -> tuple[WatchTarget, ...]:
    """Choose the server-side watches needed to serve *filters* for one GVR.

    Cluster-scoped resources get a single cluster watch. Namespaced
    resources get one watch per literal namespace when every spec names
    literal namespaces, otherwise one watch across all namespaces. A name
    field selector or label selector is pushed down only when every spec
    served by that watch agrees on it.
    """
    if not filters:
        return (WatchTarget(),)

    if scope is Scope.CLUSTER:
        return (_target_for(None, filters),)

    if all(f.literal_namespaces for f in filters):
        namespaces = sorted({ns for f in filters for ns in f.literal_namespaces or ()})
        return tuple(
            _target_for(ns, [f for f in filters if ns in (f.literal_namespaces or ())])
            for ns in namespaces
        )

    return (_target_for(None, filters),)


class InformerRegistry:
    """Owns exactly one informer per GVR and the lifecycle of its watches."""

    def __init__(
        self,
        watcher_factory: WatcherFactory,
        on_event: Callable[[WatchEvent], None],
        logger: logging.Logger | None = None,
        known_objects: KnownObjects | None = None,
    ) -> None:
        self.watcher_factory = watcher_factory
        self.on_event = on_event
        self.known_objects = known_objects
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._informers: dict[GVR, InformerHandle] = {}
        self._stop_event = threading.Event()
        self._failed_count = 0

    def _refresh_status_metrics_locked(self) -> None:
        syncing = sum(1 for h in self._informers.values() if not h.has_synced())
        METRICS.informers.labels(status="syncing").set(syncing)
        METRICS.informers.labels(status="active").set(len(self._informers) - syncing)
        METRICS.informers.labels(status="failed").set(self._failed_count)

    def ensure_watch(
        self,
        gvr: GVR,
        scope: Scope,
        filters: Sequence[CompiledFilter] = (),
        *,
        dynamic: bool = False,
    ) -> InformerHandle:
        """Return the informer for *gvr*, creating it if needed.

        Each call adds one reference per filter (at least one). An existing
        informer keeps its watch plan; widening it requires a restart.
        """
        references = max(1, len(filters))
        with self._lock:
            handle = self._informers.get(gvr)
            if handle is not None:
                handle.ref_count += references
                return handle

            handle = InformerHandle(
                gvr=gvr,
                scope=scope,
                targets=plan_watches(scope, filters),
                dynamic=dynamic,
                ref_count=references,
            )
            self._informers[gvr] = handle
            self._refresh_status_metrics_locked()

        self.logger.info(
            "Registered informer for %s with %d watch(es): %s",
            gvr,
            len(handle.targets),
            "; ".join(t.describe() for t in handle.targets),
        )
        return handle

    def _start_handle(self, handle: InformerHandle) -> None:
        def on_failure(error: WatchFailedError) -> None:
            self._retire(handle, error)

        for target in handle.targets:
            watcher = self.watcher_factory(
                handle.gvr, target, self.on_event, on_failure, self._stop_event
            )
            if self.known_objects is not None:
                watcher.seed(self.known_objects(handle.gvr, target))
            handle.watchers.append(watcher)
        handle.started = True
        for watcher in list(handle.watchers):
            watcher.start()

    def _retire(self, handle: InformerHandle, error: WatchFailedError) -> None:
        """Remove an informer whose watch failed permanently."""
        with self._lock:
            if handle.failed:
                return
            handle.failed = True
            if self._informers.get(handle.gvr) is handle:
                del self._informers[handle.gvr]
            self._failed_count += 1
            self._refresh_status_metrics_locked()
        self.logger.error("Removed informer for %s from the active set: %s", handle.gvr, error)
        for watcher in handle.watchers:
            watcher.stop()

    def start_all(self, timeout: float) -> list[InformerHandle]:
        """Start every registered informer that is not running and wait for sync.

        Returns the handles that were started. Raises :class:`CacheSyncError`
        if any of them failed or did not sync within *timeout*; the ones that
        did sync keep running.
        """
        with self._lock:
            pending = [h for h in self._informers.values() if not h.started]
        for handle in pending:
            self._start_handle(handle)

        deadline = time.monotonic() + timeout
        while True:
            waiting = [h for h in pending if not h.failed and not h.has_synced()]
            if not waiting or self._stop_event.is_set():
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            self._stop_event.wait(timeout=min(remaining, 0.05))

        with self._lock:
            self._refresh_status_metrics_locked()

        failed = [h.gvr for h in pending if h.failed]
        unsynced = [h.gvr for h in pending if not h.failed and not h.has_synced()]
        for handle in pending:
            if handle.has_synced():
                self.logger.info("Informer for %s synced", handle.gvr)
        if failed or unsynced:
            raise CacheSyncError(unsynced=unsynced, failed=failed, total=len(pending))
        return pending

    def release(self, gvr: GVR, references: int = 1) -> bool:
        """Drop references to *gvr*; stop and remove its informer at zero.

        Returns True when the informer was removed.
        """
        with self._lock:
            handle = self._informers.get(gvr)
            if handle is None:
                return False
            handle.ref_count -= references
            if handle.ref_count > 0:
                return False
            del self._informers[gvr]
            self._refresh_status_metrics_locked()
        for watcher in handle.watchers:
            watcher.stop()
        self.logger.info("Stopped informer for %s (no remaining references)", gvr)
        return True

    def stop_all(self, timeout: float) -> list[str]:
        """Stop every watch and wait up to *timeout* for them to exit.

        Returns the names of watches still running after the timeout. The
        registry is empty afterwards and ready to register new informers.
        """
        with self._lock:
            handles = list(self._informers.values())
            self._informers.clear()
            stop_event = self._stop_event
            self._stop_event = threading.Event()
            self._refresh_status_metrics_locked()

        stop_event.set()
        watchers = [w for h in handles for w in h.watchers]
        for watcher in watchers:
            watcher.stop()

        deadline = time.monotonic() + timeout
        abandoned: list[str] = []
        for watcher in watchers:
            watcher.join(timeout=max(0.0, deadline - time.monotonic()))
            if watcher.is_alive():
                abandoned.append(watcher.name)

        if abandoned:
            self.logger.warning(
                "Abandoned %d watch(es) still running after %.1fs: %s",
                len(abandoned),
                timeout,
                ", ".join(abandoned),
            )
        return abandoned

    def get(self, gvr: GVR) -> InformerHandle | None:
        with self._lock:
            return self._informers.get(gvr)

    def __contains__(self, gvr: object) -> bool:
        with self._lock:
            return gvr in self._informers

    def active(self) -> list[InformerHandle]:
        with self._lock:
            return list(self._informers.values())

    def counts(self) -> tuple[int, int]:
        """Return ``(config_driven, dynamic)`` informer counts."""
        with self._lock:
            dynamic = sum(1 for h in self._informers.values() if h.dynamic)
            return len(self._informers) - dynamic, dynamic

from __future__ import annotations

import threading
from collections.abc import Mapping

from informer.src.metrics import METRICS
from informer.src.models import GVR, ResourceKey, TrackedResource


class ResourceStateCache:
    """Last-known identity of every resource seen by the workers.

    Deletion notifications from a watch may carry only a key (or a stale last
    state), so the UID and labels recorded here on ADDED/UPDATED are what make
    a DELETED event complete. Entries are evicted once the DELETED event for
    the key has been dispatched.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resources: dict[ResourceKey, TrackedResource] = {}

    def observe(
        self,
        key: ResourceKey,
        uid: str,
        labels: Mapping[str, str],
        resource_version: str = "",
    ) -> TrackedResource:
        with self._lock:
            tracked = self._resources.get(key)
            if tracked is None:
                tracked = TrackedResource(
                    uid=uid,
                    labels=dict(labels),
                    last_seen_resource_version=resource_version,
                )
                self._resources[key] = tracked
                METRICS.tracked_resources.labels(gvr=str(key.gvr)).inc()
            else:
                tracked.uid = uid or tracked.uid
                tracked.labels = dict(labels)
                tracked.last_seen_resource_version = resource_version
            return TrackedResource(
                uid=tracked.uid,
                labels=dict(tracked.labels),
                last_seen_resource_version=tracked.last_seen_resource_version,
            )

    def lookup(self, key: ResourceKey) -> TrackedResource | None:
        """Return a copy of the tracked state for *key*, or ``None`` if never observed."""
        with self._lock:
            tracked = self._resources.get(key)
            if tracked is None:
                METRICS.uid_resolution_total.labels(gvr=str(key.gvr), status="cache_miss").inc()
                return None
            METRICS.uid_resolution_total.labels(gvr=str(key.gvr), status="success").inc()
            return TrackedResource(
                uid=tracked.uid,
                labels=dict(tracked.labels),
                last_seen_resource_version=tracked.last_seen_resource_version,
            )

    def evict(self, key: ResourceKey) -> None:
        with self._lock:
            if self._resources.pop(key, None) is not None:
                METRICS.tracked_resources.labels(gvr=str(key.gvr)).dec()

    def entries(self, gvr: GVR) -> list[tuple[ResourceKey, TrackedResource]]:
        """Return copies of every tracked resource of *gvr*."""
        with self._lock:
            return [
                (
                    key,
                    TrackedResource(
                        uid=tracked.uid,
                        labels=dict(tracked.labels),
                        last_seen_resource_version=tracked.last_seen_resource_version,
                    ),
                )
                for key, tracked in self._resources.items()
                if key.gvr == gvr
            ]

    def evict_gvr(self, gvr: GVR) -> int:
        """Forget every tracked resource of *gvr*; return how many were removed."""
        with self._lock:
            stale = [key for key in self._resources if key.gvr == gvr]
            for key in stale:
                del self._resources[key]
        if stale:
            METRICS.tracked_resources.labels(gvr=str(gvr)).dec(len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._resources

from __future__ import annotations

import threading

from informer.src.models import GVR, ResourceKey
from informer.src.state import ResourceStateCache

CONFIGMAPS = GVR(group="", version="v1", resource="configmaps")
PODS = GVR(group="", version="v1", resource="pods")


def _key(name: str = "cfg-1", namespace: str = "team-a") -> ResourceKey:
    return ResourceKey(gvr=CONFIGMAPS, namespace=namespace, name=name)


def test_lookup_of_unknown_key_returns_none() -> None:
    cache = ResourceStateCache()

    assert cache.lookup(_key()) is None
    assert len(cache) == 0


def test_observe_then_lookup_returns_tracked_state() -> None:
    cache = ResourceStateCache()

    cache.observe(_key(), uid="abc", labels={"app": "web"}, resource_version="1")
    tracked = cache.lookup(_key())

    assert tracked is not None
    assert tracked.uid == "abc"
    assert tracked.labels == {"app": "web"}
    assert tracked.last_seen_resource_version == "1"
    assert _key() in cache


def test_observe_updates_existing_entry() -> None:
    cache = ResourceStateCache()
    cache.observe(_key(), uid="abc", labels={"app": "web"}, resource_version="1")

    cache.observe(_key(), uid="abc", labels={"app": "api"}, resource_version="2")

    tracked = cache.lookup(_key())
    assert tracked is not None
    assert tracked.labels == {"app": "api"}
    assert tracked.last_seen_resource_version == "2"
    assert len(cache) == 1


def test_observe_keeps_known_uid_when_update_has_none() -> None:
    cache = ResourceStateCache()
    cache.observe(_key(), uid="abc", labels={})

    cache.observe(_key(), uid="", labels={"x": "y"})

    tracked = cache.lookup(_key())
    assert tracked is not None
    assert tracked.uid == "abc"


def test_lookup_returns_copy() -> None:
    cache = ResourceStateCache()
    cache.observe(_key(), uid="abc", labels={"app": "web"})

    tracked = cache.lookup(_key())
    assert tracked is not None
    tracked.labels["app"] = "mutated"

    again = cache.lookup(_key())
    assert again is not None
    assert again.labels == {"app": "web"}


def test_evict_removes_entry_and_is_idempotent() -> None:
    cache = ResourceStateCache()
    cache.observe(_key(), uid="abc", labels={})

    cache.evict(_key())
    cache.evict(_key())

    assert cache.lookup(_key()) is None
    assert len(cache) == 0


def test_entries_lists_copies_for_one_gvr() -> None:
    cache = ResourceStateCache()
    cache.observe(_key(), uid="abc", labels={"app": "web"}, resource_version="3")
    cache.observe(ResourceKey(PODS, "team-a", "web"), uid="pod", labels={})

    entries = cache.entries(CONFIGMAPS)

    assert [key for key, _ in entries] == [_key()]
    entries[0][1].labels["app"] = "mutated"
    tracked = cache.lookup(_key())
    assert tracked is not None
    assert tracked.labels == {"app": "web"}


def test_evict_gvr_removes_only_that_gvr() -> None:
    cache = ResourceStateCache()
    cache.observe(_key("cfg-1"), uid="a", labels={})
    cache.observe(_key("cfg-2"), uid="b", labels={})
    pod = ResourceKey(PODS, "team-a", "web")
    cache.observe(pod, uid="c", labels={})

    assert cache.evict_gvr(CONFIGMAPS) == 2
    assert cache.evict_gvr(CONFIGMAPS) == 0
    assert len(cache) == 1
    assert pod in cache


def test_concurrent_observe_and_evict_leave_consistent_size() -> None:
    cache = ResourceStateCache()

    def worker(prefix: str) -> None:
        for index in range(200):
            key = _key(name=f"{prefix}-{index}")
            cache.observe(key, uid=f"{prefix}{index}", labels={})
            if index % 2:
                cache.evict(key)

    threads = [threading.Thread(target=worker, args=(f"t{n}",)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(cache) == 4 * 100

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Scope(str, Enum):
    """Whether a resource type lives at cluster level or inside namespaces."""

    CLUSTER = "Cluster"
    NAMESPACED = "Namespaced"


class EventType(str, Enum):
    ADDED = "ADDED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"


@dataclass(frozen=True, order=True)
class GVR:
    """Group/Version/Resource identifier of a watched resource type.

    The core group is represented by an empty ``group`` and renders as
    ``v1/<resource>``; every other group renders as ``<group>/<version>/<resource>``.
    """

    group: str
    version: str
    resource: str

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    def __str__(self) -> str:
        return f"{self.api_version}/{self.resource}"


@dataclass(frozen=True)
class ResourceWatchSpec:
    """One normalized watch intent for a GVR.

    ``namespaces`` and ``name`` hold either literal values or patterns; an
    empty ``name`` (or an empty namespace entry) means "any".
    """

    gvr: GVR
    scope: Scope
    namespaces: tuple[str, ...] = ()
    name: str = ""
    label_selector: str = ""


@dataclass(frozen=True, order=True)
class ResourceKey:
    gvr: GVR
    namespace: str
    name: str

    def __str__(self) -> str:
        if not self.namespace:
            return f"{self.gvr}/{self.name}"
        return f"{self.gvr}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class WatchEvent:
    """A raw change delivered by a watch.

    For ``DELETED`` events ``obj`` may be ``None`` (key-only tombstone) or the
    last state known to the watch, which can be stale or incomplete.
    """

    event_type: EventType
    key: ResourceKey
    obj: dict[str, Any] | None = None


@dataclass
class TrackedResource:
    uid: str
    labels: dict[str, str]
    last_seen_resource_version: str


@dataclass(frozen=True)
class MatchedEvent:
    """Notification handed to event handlers.

    The ``obj`` mapping is shared by every handler of the event; handlers
    must copy it before making changes.
    """

    event_type: EventType
    gvr: GVR
    namespace: str
    name: str
    key: str
    uid: str
    labels: dict[str, str]
    obj: dict[str, Any]
    timestamp: datetime
    matched_specs: tuple[ResourceWatchSpec, ...] = field(default_factory=tuple)


def object_metadata(obj: dict[str, Any] | None) -> dict[str, Any]:
    """Return the ``metadata`` mapping of a raw object, or an empty dict."""
    if not isinstance(obj, dict):
        return {}
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict):
        return {}
    return metadata


def object_labels(obj: dict[str, Any] | None) -> dict[str, str]:
    labels = object_metadata(obj).get("labels")
    if not isinstance(labels, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in labels.items()
        if isinstance(k, str)
    }


def key_for_object(gvr: GVR, obj: dict[str, Any]) -> ResourceKey | None:
    """Build the ResourceKey of a raw object; ``None`` when it has no name."""
    metadata = object_metadata(obj)
    name = metadata.get("name")
    if not name:
        return None
    return ResourceKey(gvr=gvr, namespace=str(metadata.get("namespace") or ""), name=str(name))

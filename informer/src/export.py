from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from typing import Any

from informer.src.models import MatchedEvent, object_labels, object_metadata

EXPORT_LOGGER = logging.getLogger("informer.export")

ExportSink = Callable[[Mapping[str, Any]], None]


def format_timestamp(event: MatchedEvent) -> str:
    """Render the event time as RFC 3339 UTC with a ``Z`` suffix."""
    return event.timestamp.isoformat().replace("+00:00", "Z")


def build_json_event(event: MatchedEvent, obj: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Build the exported JSON record for *event*.

    *obj* is the object after the JSON middleware chain; labels and
    annotations are read from it when present so middleware can redact them.
    Empty ``namespace``, ``uid``, ``labels`` and ``annotations`` are omitted.
    """
    processed = dict(obj) if obj is not None else event.obj
    labels = object_labels(processed) if object_metadata(processed) else dict(event.labels)

    record: dict[str, Any] = {
        "timestamp": format_timestamp(event),
        "eventType": event.event_type.value,
        "gvr": str(event.gvr),
    }
    if event.namespace:
        record["namespace"] = event.namespace
    record["name"] = event.name
    if event.uid:
        record["uid"] = event.uid
    if labels:
        record["labels"] = labels
    annotations = object_metadata(processed).get("annotations")
    if isinstance(annotations, dict) and annotations:
        record["annotations"] = {str(k): str(v) for k, v in annotations.items()}
    return record


def log_export_sink(record: Mapping[str, Any]) -> None:
    """Default sink: one JSON line per event at DEBUG on ``informer.export``."""
    if EXPORT_LOGGER.isEnabledFor(logging.DEBUG):
        EXPORT_LOGGER.debug(json.dumps(record, sort_keys=True))


class LoggingEventHandler:
    """Event handler that writes a human-readable line per matched event."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("informer.events")

    def on_matched(self, event: MatchedEvent) -> None:
        if event.namespace:
            self.logger.info(
                "CONFIG [%s] %s %s/%s (UID: %s)",
                event.event_type.value,
                event.gvr,
                event.namespace,
                event.name,
                event.uid or "unknown",
            )
        else:
            self.logger.info(
                "CONFIG [%s] %s %s (UID: %s)",
                event.event_type.value,
                event.gvr,
                event.name,
                event.uid or "unknown",
            )

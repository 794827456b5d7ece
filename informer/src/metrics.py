from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the informer runtime on ``/metrics``.

    Per-GVR series use the ``gvr`` label only (no namespace) to keep
    cardinality bounded on clusters with many namespaces.
    """

    informers: Gauge = field(
        default_factory=lambda: Gauge(
            "informer_informers",
            "Current number of informers by status",
            ["status"],
        )
    )
    events_total: Counter = field(
        default_factory=lambda: Counter(
            "informer_events_total",
            "Total watch events received per GVR and event type",
            ["gvr", "event_type"],
        )
    )
    dispatched_total: Counter = field(
        default_factory=lambda: Counter(
            "informer_dispatched_events_total",
            "Total matched events delivered to every registered handler",
            ["gvr", "event_type"],
        )
    )
    sync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "informer_sync_duration_seconds",
            "Seconds taken by an informer to complete its initial sync",
            ["gvr"],
            buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, float("inf")),
        )
    )
    tracked_resources: Gauge = field(
        default_factory=lambda: Gauge(
            "informer_tracked_resources",
            "Resources currently held in the resource state cache",
            ["gvr"],
        )
    )
    uid_resolution_total: Counter = field(
        default_factory=lambda: Counter(
            "informer_uid_resolution_total",
            "State cache lookups for deleted resources by outcome",
            ["gvr", "status"],
        )
    )
    last_event_timestamp: Gauge = field(
        default_factory=lambda: Gauge(
            "informer_last_event_timestamp_seconds",
            "Unix timestamp of the last watch event received per GVR",
            ["gvr"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "informer_work_queue_depth",
            "Keys currently waiting in the work queue",
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "informer_retry_total",
            "Total event retries scheduled after handler failures",
            ["gvr"],
        )
    )
    dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "informer_dropped_events_total",
            "Total events dropped after exhausting retries",
            ["gvr"],
        )
    )
    handler_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "informer_handler_errors_total",
            "Total exceptions raised by event handlers",
            ["gvr"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "informer_watch_errors_total",
            "Total Kubernetes watch errors",
            ["gvr"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "informer_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["gvr"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "informer",
            "Build information for the informer runtime",
        )
    )


METRICS = ControllerMetrics()

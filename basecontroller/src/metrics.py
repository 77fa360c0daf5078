from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Work queue metrics carry a ``queue`` label so several controllers in one
    process can be told apart.
    """

    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "basecontroller_workqueue_depth",
            "Current number of keys waiting in the work queue",
            ["queue"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "basecontroller_workqueue_adds_total",
            "Total keys added to the work queue (after deduplication)",
            ["queue"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "basecontroller_workqueue_retries_total",
            "Total rate-limited re-adds scheduled by the work queue",
            ["queue"],
        )
    )
    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "basecontroller_reconciles_total",
            "Total processed keys by outcome",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "basecontroller_reconcile_duration_seconds",
            "Seconds spent processing a single key",
            buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30, float("inf")),
        )
    )
    dropped_keys_total: Counter = field(
        default_factory=lambda: Counter(
            "basecontroller_dropped_keys_total",
            "Total keys forgotten after exceeding the retry bound",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "basecontroller_watch_errors_total",
            "Total event source list/watch errors",
        )
    )
    relists_total: Counter = field(
        default_factory=lambda: Counter(
            "basecontroller_relists_total",
            "Total full listings performed by the informer",
        )
    )
    cache_objects: Gauge = field(
        default_factory=lambda: Gauge(
            "basecontroller_cache_objects",
            "Current number of objects held in the local cache",
        )
    )
    cache_synced: Gauge = field(
        default_factory=lambda: Gauge(
            "basecontroller_cache_synced",
            "Whether the local cache completed its initial sync (1=yes, 0=no)",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "basecontroller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()

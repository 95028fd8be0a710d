from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by both controllers on ``/metrics``.

    Reconcile series carry a ``controller`` label so the rsync-source and
    volume-source processes can share dashboards and alerts.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "k8svol_reconcile_total",
            "Total reconcile attempts by outcome",
            ["controller", "kind", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "k8svol_reconcile_duration_seconds",
            "Seconds spent in a single reconcile attempt",
            ["controller", "kind"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    errors_total: Counter = field(
        default_factory=lambda: Counter(
            "k8svol_errors_total",
            "Total errors reported to the process-wide error sink",
            ["controller"],
        )
    )
    requeues_total: Counter = field(
        default_factory=lambda: Counter(
            "k8svol_requeues_total",
            "Total work items requeued with rate-limited backoff",
            ["controller"],
        )
    )
    dropped_items_total: Counter = field(
        default_factory=lambda: Counter(
            "k8svol_dropped_items_total",
            "Total work items dropped because retrying cannot succeed",
            ["controller"],
        )
    )
    ensure_actions_total: Counter = field(
        default_factory=lambda: Counter(
            "k8svol_ensure_actions_total",
            "Total convergence actions taken per derived object kind",
            ["kind", "action"],
        )
    )
    finalizer_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "k8svol_finalizer_transitions_total",
            "Total protection finalizer additions and removals",
            ["transition"],
        )
    )
    ambiguous_mappings_total: Counter = field(
        default_factory=lambda: Counter(
            "k8svol_ambiguous_hostname_mappings_total",
            "Total intent objects whose host name matched more than one node",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "k8svol_workqueue_depth",
            "Current number of keys waiting in the work queue",
            ["controller"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "k8svol_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "k8svol_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    cache_resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "k8svol_cache_resyncs_total",
            "Total periodic snapshot cache resyncs",
            ["resource"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "k8svol",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()

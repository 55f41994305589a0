from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``."""

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "haegress_reconcile_total",
            "Policy reconciliations by result",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "haegress_reconcile_duration_seconds",
            "Seconds spent reconciling a single policy",
        )
    )
    derived_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "haegress_derived_writes_total",
            "Creates and patches of derived objects",
            ["kind", "action"],
        )
    )
    foreign_objects_total: Counter = field(
        default_factory=lambda: Counter(
            "haegress_foreign_objects_total",
            "Derived objects found but not controlled by their policy",
            ["kind"],
        )
    )
    sync_total: Counter = field(
        default_factory=lambda: Counter(
            "haegress_sync_total",
            "Feedback synchronizations by outcome",
            ["outcome"],
        )
    )
    sweep_ticks_total: Counter = field(
        default_factory=lambda: Counter(
            "haegress_sweep_ticks_total",
            "Background sweep ticks by outcome",
            ["outcome"],
        )
    )
    sweep_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "haegress_sweep_failures_total",
            "Per-policy failures during background sweeps",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "haegress_queue_depth",
            "Requests waiting in the work queue, including delayed requeues",
        )
    )
    requeue_total: Counter = field(
        default_factory=lambda: Counter(
            "haegress_requeue_total",
            "Requests requeued after a failure",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "haegress_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "haegress_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "haegress_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "haegress_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "haegress",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()

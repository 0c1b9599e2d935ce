from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Decision counters carry a ``trigger`` label (``edge`` when the managed or
    class annotation changed, ``resync`` otherwise) so a write storm driven by
    resyncs is distinguishable from real user edits.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "certificate_controller_reconcile_total",
            "Total reconcile decisions by action",
            ["action", "trigger"],
        )
    )
    annotation_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "certificate_controller_annotation_writes_total",
            "Total successful managed annotation writes",
            ["action"],
        )
    )
    annotation_write_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "certificate_controller_annotation_write_errors_total",
            "Total managed annotation writes rejected by the API server",
            ["action"],
        )
    )
    write_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "certificate_controller_write_retries_total",
            "Total write retries scheduled after failed annotation updates",
        )
    )
    dropped_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "certificate_controller_dropped_retries_total",
            "Total pending write retries abandoned after the retry limit",
        )
    )
    pending_retries: Gauge = field(
        default_factory=lambda: Gauge(
            "certificate_controller_pending_retries",
            "Current number of Services waiting for a write retry",
        )
    )
    cached_services: Gauge = field(
        default_factory=lambda: Gauge(
            "certificate_controller_cached_services",
            "Number of Services held in the local watch cache",
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "certificate_controller_resyncs_total",
            "Total periodic resync passes over the watch cache",
        )
    )
    event_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "certificate_controller_event_errors_total",
            "Total events whose handling raised an unexpected error",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "certificate_controller_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "certificate_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "certificate_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()

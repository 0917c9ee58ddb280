from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info

NAMESPACE = "auth_operator"


@dataclass(frozen=True)
class DiscoveryMetrics:
    """Prometheus metrics exported by the discovery tracker on ``/metrics``."""

    api_discovery_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "api_discovery_duration_seconds",
            "Duration of full API discovery passes in seconds",
            namespace=NAMESPACE,
            buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
        )
    )
    api_discovery_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "api_discovery_errors_total",
            "Total API discovery errors",
            namespace=NAMESPACE,
        )
    )
    rebuilds_total: Counter = field(
        default_factory=lambda: Counter(
            "api_resource_rebuilds_total",
            "Total API resource snapshot rebuild attempts by outcome",
            ["outcome"],
            namespace=NAMESPACE,
        )
    )
    subscriber_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "api_resource_subscriber_errors_total",
            "Total errors returned by API resource change subscribers",
            namespace=NAMESPACE,
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "crd_watch_errors_total",
            "Total CustomResourceDefinition watch errors",
            namespace=NAMESPACE,
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "crd_watch_reconnects_total",
            "Total CRD watch stream reconnects after the initial connection",
            namespace=NAMESPACE,
        )
    )
    tracked_group_versions: Gauge = field(
        default_factory=lambda: Gauge(
            "tracked_group_versions",
            "Number of group-versions in the current API resource snapshot",
            namespace=NAMESPACE,
        )
    )
    tracked_crds: Gauge = field(
        default_factory=lambda: Gauge(
            "tracked_crds",
            "Number of CustomResourceDefinition identities currently known",
            namespace=NAMESPACE,
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "discovery_tracker",
            "Build information for the discovery tracker",
            namespace=NAMESPACE,
        )
    )


METRICS = DiscoveryMetrics()

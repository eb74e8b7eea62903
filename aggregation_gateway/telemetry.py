"""Self-monitoring metrics for the gateway, kept apart from the aggregate."""
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class GatewayMetrics:
    """Self-monitoring metrics for the aggregation gateway."""

    def __init__(self, registry=None, prefix="gateway_"):
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry

        self.pushes_total = Counter(
            f"{prefix}pushes_total",
            "Total number of accepted pushes",
            registry=registry
        )

        self.push_errors_total = Counter(
            f"{prefix}push_errors_total",
            "Total number of rejected pushes",
            ["reason"],
            registry=registry
        )

        self.resets_total = Counter(
            f"{prefix}resets_total",
            "Total number of aggregate resets",
            registry=registry
        )

        self.dropped_series_total = Counter(
            f"{prefix}dropped_series_total",
            "Summary series dropped because they cannot be merged",
            ["family"],
            registry=registry
        )

        self.families = Gauge(
            f"{prefix}families",
            "Number of metric families currently aggregated",
            registry=registry
        )

        self.next_reset_timestamp = Gauge(
            f"{prefix}next_reset_timestamp_seconds",
            "Unix time of the next aggregate reset",
            registry=registry
        )

        self.ingest_duration_seconds = Histogram(
            f"{prefix}ingest_duration_seconds",
            "Time spent decoding and merging a push",
            buckets=[0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
            registry=registry
        )

    def record_push(self, duration: float, families: int):
        """Record an accepted push."""
        self.pushes_total.inc()
        self.ingest_duration_seconds.observe(duration)
        self.families.set(families)

    def record_rejection(self, reason: str):
        """Record a rejected push, labelled by error class."""
        self.push_errors_total.labels(reason=reason).inc()

    def record_dropped(self, family: str, metric=None):
        self.dropped_series_total.labels(family=family).inc()

    def record_reset(self, window):
        """Record a window reset."""
        self.resets_total.inc()
        self.families.set(0)
        self.next_reset_timestamp.set(window.next_reset_timestamp)

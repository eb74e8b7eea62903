"""Shared fixtures and builders for the gateway tests."""
import pytest

from aggregation_gateway.labels import canonicalize
from aggregation_gateway.series import (
    Bucket, HistogramPayload, Metric, MetricFamily, MetricType,
    Quantile, SummaryPayload, ValuePayload
)
from aggregation_gateway.store import AggregateStore, WindowState
from aggregation_gateway.window import Scheduler, WindowController


class ManualScheduler(Scheduler):
    """Scheduler fired by hand, one cron period of `step` seconds at a time."""

    def __init__(self, first_fire: int = 1_000_000, step: int = 300):
        self.next = first_fire
        self.step = step
        self.callbacks = []

    def on_tick(self, callback):
        self.callbacks.append(callback)

    def next_fire_time(self) -> int:
        return self.next

    def fire(self):
        self.next += self.step
        for callback in self.callbacks:
            callback(self.next)


def value_family(name, metric_type, *series, help=""):
    """Build a family from (labels dict, value) tuples."""
    return MetricFamily(
        name=name,
        type=metric_type,
        help=help,
        metrics=tuple(Metric(canonicalize(labels), ValuePayload(value)) for labels, value in series),
    )


def counter(name, *series):
    return value_family(name, MetricType.COUNTER, *series)


def gauge(name, *series):
    return value_family(name, MetricType.GAUGE, *series)


def histogram(name, labels, count, total, buckets):
    """Single-series histogram with buckets given as {upper_bound: count}."""
    payload = HistogramPayload(
        sample_count=count,
        sample_sum=total,
        buckets=tuple(Bucket(ub, c) for ub, c in sorted(buckets.items())),
    )
    return MetricFamily(
        name=name,
        type=MetricType.HISTOGRAM,
        metrics=(Metric(canonicalize(labels), payload),),
    )


def summary(name, labels, count, total, quantiles=None):
    payload = SummaryPayload(
        sample_count=count,
        sample_sum=total,
        quantiles=tuple(Quantile(q, v) for q, v in sorted((quantiles or {}).items())),
    )
    return MetricFamily(
        name=name,
        type=MetricType.SUMMARY,
        metrics=(Metric(canonicalize(labels), payload),),
    )


def values_of(family):
    """Map of label tuples to scalar values."""
    return {tuple((p.name, p.value) for p in m.labels): m.value for m in family.metrics}


@pytest.fixture
def store():
    return AggregateStore(window=WindowState(next_reset_timestamp=0, publish_buffer_s=30))


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def window(store, scheduler):
    return WindowController(store, scheduler)

"""Data structures for metric families and their series."""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Tuple, Union


class MetricType(str, Enum):
    """Declared type of a metric family."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    UNTYPED = "untyped"
    SUMMARY = "summary"


@dataclass(frozen=True)
class LabelPair:
    """A single label name/value pair."""
    name: str
    value: str


LabelSet = Tuple[LabelPair, ...]


@dataclass(frozen=True)
class Bucket:
    """Cumulative histogram bucket."""
    upper_bound: float
    cumulative_count: int


@dataclass(frozen=True)
class Quantile:
    """A single summary quantile."""
    quantile: float
    value: float


@dataclass(frozen=True)
class ValuePayload:
    """Payload for counter, gauge and untyped series."""
    value: float


@dataclass(frozen=True)
class HistogramPayload:
    """Payload for histogram series."""
    sample_count: int
    sample_sum: float
    buckets: Tuple[Bucket, ...] = ()


@dataclass(frozen=True)
class SummaryPayload:
    """Payload for summary series. Kept for pass-through, never merged."""
    sample_count: int
    sample_sum: float
    quantiles: Tuple[Quantile, ...] = ()


Payload = Union[ValuePayload, HistogramPayload, SummaryPayload]


@dataclass(frozen=True)
class Metric:
    """A single series within a family."""
    labels: LabelSet
    payload: Payload

    @property
    def value(self) -> Optional[float]:
        """Scalar value for counter, gauge and untyped series."""
        if isinstance(self.payload, ValuePayload):
            return self.payload.value
        return None

    def label_dict(self) -> dict:
        return {pair.name: pair.value for pair in self.labels}


@dataclass(frozen=True)
class MetricFamily:
    """A named group of series sharing a type and help text."""
    name: str
    type: MetricType
    help: str = ""
    metrics: Tuple[Metric, ...] = field(default_factory=tuple)

    def with_metrics(self, metrics) -> "MetricFamily":
        """Copy of this family holding the given series."""
        return replace(self, metrics=tuple(metrics))

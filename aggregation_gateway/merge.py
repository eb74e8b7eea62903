"""Type-aware merging of metric family snapshots."""
from typing import Callable, List, Optional, Sequence
import logging

from aggregation_gateway.errors import TypeMismatchError
from aggregation_gateway.labels import compare
from aggregation_gateway.series import (
    Bucket, HistogramPayload, Metric, MetricFamily, MetricType, ValuePayload
)

logger = logging.getLogger(__name__)

# Called with (family name, dropped series) whenever a pair of series cannot be merged
UnmergeableHandler = Callable[[str, Metric], None]


def log_dropped(family_name: str, metric: Metric) -> None:
    """Default handler for series merge_metric cannot combine."""
    logger.warning(
        f"Dropping unmergeable summary series '{family_name}' {metric.label_dict()}: "
        f"summaries cannot be aggregated"
    )


def merge_buckets(a: Sequence[Bucket], b: Sequence[Bucket]) -> List[Bucket]:
    """Merge two ascending bucket sequences, summing counts of equal bounds."""
    output: List[Bucket] = []
    i, j = 0, 0
    while i < len(a) and j < len(b):
        if a[i].upper_bound < b[j].upper_bound:
            output.append(a[i])
            i += 1
        elif a[i].upper_bound > b[j].upper_bound:
            output.append(b[j])
            j += 1
        else:
            output.append(Bucket(
                upper_bound=a[i].upper_bound,
                cumulative_count=a[i].cumulative_count + b[j].cumulative_count,
            ))
            i += 1
            j += 1
    output.extend(a[i:])
    output.extend(b[j:])
    return output


def merge_metric(metric_type: MetricType, a: Metric, b: Metric) -> Optional[Metric]:
    """
    Combine two series with equal label sets.

    Returns:
        The merged series, or None for summaries, which have no meaningful merge.
    """
    if metric_type in (MetricType.COUNTER, MetricType.UNTYPED):
        return Metric(a.labels, ValuePayload(a.payload.value + b.payload.value))

    if metric_type == MetricType.GAUGE:
        # Summing is only an approximation for gauges. It holds when producers
        # push once per reset window.
        return Metric(a.labels, ValuePayload(a.payload.value + b.payload.value))

    if metric_type == MetricType.HISTOGRAM:
        return Metric(a.labels, HistogramPayload(
            sample_count=a.payload.sample_count + b.payload.sample_count,
            sample_sum=a.payload.sample_sum + b.payload.sample_sum,
            buckets=tuple(merge_buckets(a.payload.buckets, b.payload.buckets)),
        ))

    return None


def merge_families(
    existing: MetricFamily,
    incoming: MetricFamily,
    on_unmergeable: Optional[UnmergeableHandler] = None,
) -> MetricFamily:
    """
    Merge two label-sorted snapshots of the same family.

    Args:
        existing: Family currently held in the aggregate
        incoming: Newly pushed family, already label-sorted and validated
        on_unmergeable: Called for each series pair that merge_metric drops.
            Defaults to log_dropped; may raise to reject the merge.

    Returns:
        A new family whose series are still sorted and duplicate-free

    Raises:
        TypeMismatchError: if the declared types differ
    """
    if existing.type != incoming.type:
        raise TypeMismatchError(existing.name, existing.type.value, incoming.type.value)

    handler = on_unmergeable or log_dropped
    a, b = existing.metrics, incoming.metrics
    output: List[Metric] = []

    i, j = 0, 0
    while i < len(a) and j < len(b):
        order = compare(a[i].labels, b[j].labels)
        if order < 0:
            output.append(a[i])
            i += 1
        elif order > 0:
            output.append(b[j])
            j += 1
        else:
            merged = merge_metric(existing.type, a[i], b[j])
            if merged is None:
                handler(existing.name, b[j])
            else:
                output.append(merged)
            i += 1
            j += 1
    output.extend(a[i:])
    output.extend(b[j:])

    return existing.with_metrics(output)

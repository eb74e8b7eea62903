"""Exposition text codec built on prometheus_client."""
from typing import Dict, Iterable, List, Sequence
import logging
import math
import re

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.metrics_core import Metric as PromMetric
from prometheus_client.parser import text_string_to_metric_families
from prometheus_client.utils import floatToGoString

from aggregation_gateway.errors import EncodingError, ParseError
from aggregation_gateway.labels import canonicalize
from aggregation_gateway.series import (
    Bucket, HistogramPayload, Metric, MetricFamily, MetricType,
    Quantile, SummaryPayload, ValuePayload
)

logger = logging.getLogger(__name__)

COUNTER_SUFFIX = "_total"

_TYPE_NAMES = {
    "counter": MetricType.COUNTER,
    "gauge": MetricType.GAUGE,
    "histogram": MetricType.HISTOGRAM,
    "summary": MetricType.SUMMARY,
    "untyped": MetricType.UNTYPED,
    "unknown": MetricType.UNTYPED,
}

_COUNTER_TYPE_RE = re.compile(r"^#\s*TYPE\s+(\S+)\s+counter\s*$", re.MULTILINE)


def _label_key(labels: Dict[str, str], drop: str) -> tuple:
    return tuple(sorted((k, v) for k, v in labels.items() if k != drop))


def _count(value, what: str) -> int:
    """Sample and bucket counts must be finite whole numbers."""
    value = float(value)
    if not value.is_integer():
        raise ParseError(f"Invalid count {floatToGoString(value)} for {what}")
    return int(value)


def _decode_values(prom: PromMetric) -> List[Metric]:
    return [
        Metric(canonicalize(s.labels), ValuePayload(float(s.value)))
        for s in prom.samples
    ]


def _decode_histograms(prom: PromMetric) -> List[Metric]:
    """Group _bucket/_count/_sum samples into one histogram per label set."""
    groups: Dict[tuple, dict] = {}
    for s in prom.samples:
        key = _label_key(s.labels, "le")
        group = groups.setdefault(key, {"buckets": {}, "count": None, "sum": 0.0, "inf": None})

        if s.name == prom.name + "_bucket":
            if "le" not in s.labels:
                raise ParseError(f"Histogram bucket of '{prom.name}' has no 'le' label")
            bound = float(s.labels["le"])
            if math.isinf(bound) and bound > 0:
                group["inf"] = _count(s.value, s.name)
                continue
            if bound in group["buckets"]:
                raise ParseError(f"Duplicate bucket le={s.labels['le']} in '{prom.name}'")
            group["buckets"][bound] = _count(s.value, s.name)
        elif s.name == prom.name + "_count":
            if group["count"] is not None:
                raise ParseError(f"Duplicate _count sample in '{prom.name}' for {dict(key)}")
            group["count"] = _count(s.value, s.name)
        elif s.name == prom.name + "_sum":
            group["sum"] = float(s.value)
        else:
            raise ParseError(f"Unexpected sample '{s.name}' in histogram '{prom.name}'")

    metrics = []
    for key, group in groups.items():
        count = group["count"]
        if count is None:
            count = group["inf"] or 0
        buckets = tuple(Bucket(ub, c) for ub, c in sorted(group["buckets"].items()))
        metrics.append(Metric(canonicalize(key), HistogramPayload(count, group["sum"], buckets)))
    return metrics


def _decode_summaries(prom: PromMetric) -> List[Metric]:
    groups: Dict[tuple, dict] = {}
    for s in prom.samples:
        key = _label_key(s.labels, "quantile")
        group = groups.setdefault(key, {"quantiles": {}, "count": 0, "sum": 0.0})
        if s.name == prom.name and "quantile" in s.labels:
            group["quantiles"][float(s.labels["quantile"])] = float(s.value)
        elif s.name == prom.name + "_count":
            group["count"] = _count(s.value, s.name)
        elif s.name == prom.name + "_sum":
            group["sum"] = float(s.value)
        else:
            raise ParseError(f"Unexpected sample '{s.name}' in summary '{prom.name}'")

    return [
        Metric(canonicalize(key), SummaryPayload(
            sample_count=group["count"],
            sample_sum=group["sum"],
            quantiles=tuple(Quantile(q, v) for q, v in sorted(group["quantiles"].items())),
        ))
        for key, group in groups.items()
    ]


def _family_from_prom(prom: PromMetric, declared_counters=frozenset()) -> MetricFamily:
    metric_type = _TYPE_NAMES.get(prom.type)
    if metric_type is None:
        raise ParseError(f"Unsupported metric type '{prom.type}' for '{prom.name}'")

    name = prom.name
    if metric_type == MetricType.COUNTER:
        # The parser strips the counter suffix, so restore the name the producer declared
        if name not in declared_counters or name + COUNTER_SUFFIX in declared_counters:
            name += COUNTER_SUFFIX
        metrics = _decode_values(prom)
    elif metric_type == MetricType.HISTOGRAM:
        metrics = _decode_histograms(prom)
    elif metric_type == MetricType.SUMMARY:
        metrics = _decode_summaries(prom)
    else:
        metrics = _decode_values(prom)

    return MetricFamily(name=name, type=metric_type, help=prom.documentation, metrics=tuple(metrics))


def decode(text: str) -> List[MetricFamily]:
    """
    Parse exposition text into metric families.

    Blocks of the same family that appear more than once are concatenated,
    so repeated series surface later as duplicates.

    Raises:
        ParseError: if the text is malformed or a family changes type
    """
    families: Dict[str, MetricFamily] = {}
    declared_counters = frozenset(_COUNTER_TYPE_RE.findall(text))
    try:
        for prom in text_string_to_metric_families(text):
            family = _family_from_prom(prom, declared_counters)
            existing = families.get(family.name)
            if existing is None:
                families[family.name] = family
                continue
            if existing.type != family.type:
                raise ParseError(
                    f"Metric '{family.name}' declared as both {existing.type.value} and {family.type.value}"
                )
            families[family.name] = existing.with_metrics(existing.metrics + family.metrics)
    except ParseError:
        raise
    except (ValueError, TypeError, IndexError, KeyError, OverflowError) as e:
        raise ParseError(f"Failed to parse metrics: {e}") from e

    logger.debug(f"Decoded {len(families)} families")
    return list(families.values())


def _prom_from_family(family: MetricFamily) -> PromMetric:
    if family.type == MetricType.COUNTER:
        base = family.name
        if base.endswith(COUNTER_SUFFIX):
            base = base[:-len(COUNTER_SUFFIX)]
        prom = PromMetric(base, family.help, "counter")
        for m in family.metrics:
            prom.add_sample(base + COUNTER_SUFFIX, m.label_dict(), m.payload.value)
        return prom

    if family.type == MetricType.HISTOGRAM:
        prom = PromMetric(family.name, family.help, "histogram")
        for m in family.metrics:
            labels = m.label_dict()
            for bucket in m.payload.buckets:
                prom.add_sample(
                    family.name + "_bucket",
                    dict(labels, le=floatToGoString(bucket.upper_bound)),
                    bucket.cumulative_count,
                )
            prom.add_sample(family.name + "_bucket", dict(labels, le="+Inf"), m.payload.sample_count)
            prom.add_sample(family.name + "_count", labels, m.payload.sample_count)
            prom.add_sample(family.name + "_sum", labels, m.payload.sample_sum)
        return prom

    if family.type == MetricType.SUMMARY:
        prom = PromMetric(family.name, family.help, "summary")
        for m in family.metrics:
            labels = m.label_dict()
            for q in m.payload.quantiles:
                prom.add_sample(family.name, dict(labels, quantile=floatToGoString(q.quantile)), q.value)
            prom.add_sample(family.name + "_count", labels, m.payload.sample_count)
            prom.add_sample(family.name + "_sum", labels, m.payload.sample_sum)
        return prom

    typ = "gauge" if family.type == MetricType.GAUGE else "unknown"
    prom = PromMetric(family.name, family.help, typ)
    for m in family.metrics:
        prom.add_sample(family.name, m.label_dict(), m.payload.value)
    return prom


class _SnapshotCollector:
    """Collector yielding a fixed sequence of families."""

    def __init__(self, families: Sequence[MetricFamily]):
        self.families = families

    def collect(self):
        for family in self.families:
            yield _prom_from_family(family)


def _restore_counter_name(text: str, name: str) -> str:
    """
    Rename an unsuffixed counter back to its declared name.

    generate_latest always exposes counters as <name>_total, which would
    change the family a producer pushed into.
    """
    rendered = name + COUNTER_SUFFIX
    lines = []
    for line in text.splitlines(keepends=True):
        for prefix in ("# HELP ", "# TYPE ", ""):
            head = prefix + rendered
            if line.startswith(head) and line[len(head):len(head) + 1] in (" ", "{"):
                line = prefix + name + line[len(head):]
                break
        lines.append(line)
    return "".join(lines)


def encode(families: Iterable[MetricFamily]) -> bytes:
    """
    Render families as exposition text, in the order given.

    Raises:
        EncodingError: if a family cannot be serialized
    """
    chunks = []
    try:
        for family in families:
            registry = CollectorRegistry()
            registry.register(_SnapshotCollector([family]))
            output = generate_latest(registry)
            if family.type == MetricType.COUNTER and not family.name.endswith(COUNTER_SUFFIX):
                output = _restore_counter_name(output.decode("utf-8"), family.name).encode("utf-8")
            chunks.append(output)
    except Exception as e:
        raise EncodingError(f"An error has occurred during metrics encoding: {e}") from e
    return b"".join(chunks)

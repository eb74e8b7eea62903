"""Label set canonicalization, ordering and fingerprinting."""
from typing import Iterable, Mapping, Tuple, Union
import hashlib
import re

from aggregation_gateway.errors import InvalidLabelError
from aggregation_gateway.series import LabelPair, LabelSet

METRIC_NAME_LABEL = "__name__"

LABEL_NAME_RE = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')
METRIC_NAME_RE = re.compile(r'^[a-zA-Z_:][a-zA-Z0-9_:]*$')

Fingerprint = Tuple[str, str]


def canonicalize(pairs: Union[Mapping[str, str], Iterable]) -> LabelSet:
    """
    Build a canonical label set, sorted by name then value.

    Accepts a mapping of name -> value, LabelPair objects, or (name, value)
    tuples.
    """
    if isinstance(pairs, Mapping):
        items = [LabelPair(str(k), str(v)) for k, v in pairs.items()]
    else:
        items = [
            p if isinstance(p, LabelPair) else LabelPair(str(p[0]), str(p[1]))
            for p in pairs
        ]
    return tuple(sorted(items, key=lambda p: (p.name, p.value)))


def compare(a: LabelSet, b: LabelSet) -> int:
    """
    Compare two canonical label sets.

    Pairs are compared element-wise by name, then value. When one set is a
    prefix of the other, the shorter one sorts first.

    Returns:
        -1, 0 or 1
    """
    for pa, pb in zip(a, b):
        if pa.name != pb.name:
            return -1 if pa.name < pb.name else 1
        if pa.value != pb.value:
            return -1 if pa.value < pb.value else 1
    if len(a) == len(b):
        return 0
    return -1 if len(a) < len(b) else 1


def sort_key(labels: LabelSet) -> Tuple[Tuple[str, str], ...]:
    """Key function ordering label sets the same way as compare()."""
    return tuple((p.name, p.value) for p in labels)


def fingerprint(family_name: str, labels: LabelSet) -> Fingerprint:
    """Stable key for a series within a family, used for duplicate detection."""
    parts = [f"{METRIC_NAME_LABEL}\x00{family_name}"]
    parts.extend(f"{p.name}\x00{p.value}" for p in labels)
    digest = hashlib.sha256("\xff".join(parts).encode("utf-8")).hexdigest()
    return family_name, digest


def validate_metric_name(name: str) -> None:
    """Metric names must match [a-zA-Z_:][a-zA-Z0-9_:]*"""
    if not name or not METRIC_NAME_RE.match(name):
        raise InvalidLabelError(f"Invalid metric name: {name!r}")


def validate_label_set(family_name: str, labels: LabelSet) -> None:
    """
    Check label names are Prometheus-safe.

    Label names must match [a-zA-Z_][a-zA-Z0-9_]* and may not reuse the
    reserved metric name label.

    Raises:
        InvalidLabelError: on the first offending label
    """
    seen = set()
    for pair in labels:
        if pair.name in seen:
            raise InvalidLabelError(
                f"Label {pair.name!r} repeated in metric '{family_name}'"
            )
        seen.add(pair.name)
        if pair.name == METRIC_NAME_LABEL:
            raise InvalidLabelError(
                f"Label {METRIC_NAME_LABEL}={pair.value!r} collides with metric name '{family_name}'"
            )
        if not pair.name or not LABEL_NAME_RE.match(pair.name):
            raise InvalidLabelError(
                f"Invalid label name {pair.name!r} in metric '{family_name}'"
            )

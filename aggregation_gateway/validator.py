"""Validation of incoming family snapshots."""
import logging

from aggregation_gateway.errors import DuplicateSeriesError
from aggregation_gateway.labels import fingerprint, validate_label_set, validate_metric_name
from aggregation_gateway.series import MetricFamily

logger = logging.getLogger(__name__)


def validate_family(family: MetricFamily) -> None:
    """
    Reject a family snapshot with malformed names or repeated series.

    Duplicate detection only covers this one snapshot, not what the store
    already holds for the family.

    Raises:
        InvalidLabelError: if the family or a label name is not well-formed
        DuplicateSeriesError: if two series share a label set
    """
    validate_metric_name(family.name)

    seen = set()
    for metric in family.metrics:
        validate_label_set(family.name, metric.labels)
        key = fingerprint(family.name, metric.labels)
        if key in seen:
            logger.debug(f"Duplicate series in '{family.name}': {metric.label_dict()}")
            raise DuplicateSeriesError(family.name, metric.label_dict())
        seen.add(key)

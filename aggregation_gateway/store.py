"""Concurrency-safe store holding the current aggregate."""
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple
import logging
import threading

from aggregation_gateway.errors import AggregationError, UnmergeableSeriesError
from aggregation_gateway.labels import canonicalize, sort_key
from aggregation_gateway.merge import log_dropped, merge_families
from aggregation_gateway.series import Metric, MetricFamily
from aggregation_gateway.validator import validate_family

logger = logging.getLogger(__name__)

BATCH_ATOMIC = "atomic"
BATCH_PARTIAL = "partial"

SUMMARY_DROP = "drop"
SUMMARY_REJECT = "reject"


class ReadWriteLock:
    """Readers/writer lock. Waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class WindowState:
    """Next reset instant and the buffer added before reporting it."""
    next_reset_timestamp: int
    publish_buffer_s: int = 30

    @property
    def deadline(self) -> int:
        """Instant after which new pushes belong to the next window."""
        return self.next_reset_timestamp + self.publish_buffer_s


def sort_family(family: MetricFamily) -> MetricFamily:
    """Return the family with canonical label sets, series in label order."""
    metrics = [Metric(canonicalize(m.labels), m.payload) for m in family.metrics]
    return family.with_metrics(sorted(metrics, key=lambda m: sort_key(m.labels)))


def prepare_family(family: MetricFamily) -> MetricFamily:
    """Canonicalize and validate an incoming family."""
    family = sort_family(family)
    validate_family(family)
    return family


class AggregateStore:
    """
    Mapping of family name to the merged family, plus the window state.

    Both are guarded by one readers/writer lock: pushes and resets take it
    exclusively, collections take it shared.
    """

    def __init__(
        self,
        window: Optional[WindowState] = None,
        batch_mode: str = BATCH_ATOMIC,
        summary_policy: str = SUMMARY_DROP,
        on_dropped: Optional[Callable[[str, Metric], None]] = None,
    ):
        if batch_mode not in (BATCH_ATOMIC, BATCH_PARTIAL):
            raise ValueError(f"Unknown batch mode: {batch_mode}")
        if summary_policy not in (SUMMARY_DROP, SUMMARY_REJECT):
            raise ValueError(f"Unknown summary policy: {summary_policy}")

        self.batch_mode = batch_mode
        self.summary_policy = summary_policy
        self.on_dropped = on_dropped

        self._lock = ReadWriteLock()
        self._families: Dict[str, MetricFamily] = {}
        self._window = window or WindowState(next_reset_timestamp=0)

    def ingest(self, families: Iterable[MetricFamily]) -> WindowState:
        """
        Validate and merge a pushed batch of families.

        In atomic mode every family is validated first and every merge is
        staged on a copy of the map, which replaces the live map only once
        the whole batch has succeeded. In partial mode families are
        validated and committed one at a time, so those before a failing
        family stay merged.

        Returns:
            The window state current at commit time

        Raises:
            InvalidLabelError, DuplicateSeriesError, TypeMismatchError,
            UnmergeableSeriesError: the batch (or its remainder) is rejected
        """
        dropped: List[Tuple[str, Metric]] = []

        def on_unmergeable(name: str, metric: Metric) -> None:
            if self.summary_policy == SUMMARY_REJECT:
                raise UnmergeableSeriesError(name, metric.label_dict())
            log_dropped(name, metric)
            dropped.append((name, metric))

        if self.batch_mode == BATCH_ATOMIC:
            prepared = [prepare_family(family) for family in families]
            with self._lock.write():
                staged = dict(self._families)
                for family in prepared:
                    staged[family.name] = self._merge_into(staged, family, on_unmergeable)
                self._families = staged
                window = self._window
        else:
            prepared = []
            try:
                with self._lock.write():
                    for family in families:
                        family = prepare_family(family)
                        self._families[family.name] = self._merge_into(
                            self._families, family, on_unmergeable
                        )
                        prepared.append(family)
                    window = self._window
            except AggregationError:
                # Families merged before the failure stay committed
                self._report_dropped(dropped)
                raise

        logger.debug(f"Ingested {len(prepared)} families")
        self._report_dropped(dropped)
        return window

    def _report_dropped(self, dropped: List[Tuple[str, Metric]]) -> None:
        if self.on_dropped:
            for name, metric in dropped:
                self.on_dropped(name, metric)

    @staticmethod
    def _merge_into(families: Dict[str, MetricFamily], family: MetricFamily, on_unmergeable) -> MetricFamily:
        existing = families.get(family.name)
        if existing is None:
            return family
        return merge_families(existing, family, on_unmergeable)

    def snapshot(self) -> List[MetricFamily]:
        """Point-in-time view of all families, ordered by name."""
        with self._lock.read():
            return [self._families[name] for name in sorted(self._families)]

    def window(self) -> WindowState:
        with self._lock.read():
            return self._window

    def reset(self, next_reset_timestamp: int) -> WindowState:
        """Clear every family and move the window forward, as one write."""
        with self._lock.write():
            cleared = len(self._families)
            self._families = {}
            self._window = WindowState(
                next_reset_timestamp=next_reset_timestamp,
                publish_buffer_s=self._window.publish_buffer_s,
            )
            window = self._window
        logger.info(f"Cleared {cleared} families, next reset at {next_reset_timestamp}")
        return window

    def stats(self) -> Dict[str, int]:
        """Family and series counts plus window state, read consistently."""
        with self._lock.read():
            return {
                "families": len(self._families),
                "series": sum(len(f.metrics) for f in self._families.values()),
                "next_reset_timestamp": self._window.next_reset_timestamp,
                "deadline": self._window.deadline,
            }

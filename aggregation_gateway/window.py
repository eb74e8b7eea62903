"""Reset window control and the cron scheduler driving it."""
from datetime import datetime
from typing import Callable, List, Optional
import logging
import threading
import time

from croniter import croniter

from aggregation_gateway.store import AggregateStore, WindowState

logger = logging.getLogger(__name__)

TickCallback = Callable[[int], None]


class Scheduler:
    """Minimal scheduler capability used by the window controller."""

    def on_tick(self, callback: TickCallback) -> None:
        """Register a callback fired with the following fire time."""
        raise NotImplementedError

    def next_fire_time(self) -> int:
        """Epoch seconds of the next scheduled fire."""
        raise NotImplementedError


class CronScheduler(Scheduler):
    """Fires callbacks on a crontab schedule from a daemon thread."""

    def __init__(self, crontab: str, now: Optional[datetime] = None):
        if not croniter.is_valid(crontab):
            raise ValueError(f"Invalid crontab expression: {crontab!r}")
        self.crontab = crontab
        self._iter = croniter(crontab, now or datetime.now().astimezone())
        self._next = int(self._iter.get_next(float))
        self._callbacks: List[TickCallback] = []
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def on_tick(self, callback: TickCallback) -> None:
        self._callbacks.append(callback)

    def next_fire_time(self) -> int:
        return self._next

    def start(self):
        """Start the scheduler thread."""
        self._thread = threading.Thread(target=self.run, name="cron-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Cron scheduler started ({self.crontab}), next fire at {self._next}")

    def run(self):
        """Wait for each fire time and run the callbacks until stopped."""
        while not self._stop.is_set():
            delay = self._next - time.time()
            if delay > 0 and self._stop.wait(delay):
                break
            self._next = int(self._iter.get_next(float))
            self.fire()

    def fire(self):
        """Run every callback with the next fire time."""
        for callback in self._callbacks:
            try:
                callback(self._next)
            except Exception as e:
                logger.error(f"Scheduled callback failed: {e}", exc_info=True)

    def stop(self):
        """Stop the scheduler thread."""
        logger.info("Stopping cron scheduler")
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)


class WindowController:
    """
    Owns the reset cadence of an aggregate store.

    Each scheduler tick clears the store and records the scheduler's next
    fire time, under the same exclusive lock pushes use.
    """

    def __init__(self, store: AggregateStore, scheduler: Scheduler, on_reset: Optional[Callable[[WindowState], None]] = None):
        self.store = store
        self.scheduler = scheduler
        self.on_reset = on_reset
        self.resets = 0

        initial = scheduler.next_fire_time()
        self.store.reset(initial)
        logger.info(f"First reset scheduled at {initial}")

        scheduler.on_tick(self.on_tick)

    def current_deadline(self) -> int:
        """Next reset timestamp plus the publish buffer."""
        return self.store.window().deadline

    def on_tick(self, next_reset_timestamp: int) -> WindowState:
        """Clear the aggregate and start the next window."""
        previous = self.store.window()
        if next_reset_timestamp <= previous.next_reset_timestamp:
            logger.warning(
                f"Next reset {next_reset_timestamp} does not advance past {previous.next_reset_timestamp}"
            )
        window = self.store.reset(next_reset_timestamp)
        self.resets += 1
        logger.info(f"Window reset #{self.resets}, producers may push until {window.deadline}")
        if self.on_reset:
            self.on_reset(window)
        return window

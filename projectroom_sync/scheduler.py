"""
Periodic driver for the reconciliation engine.

Ticks run on one dedicated thread at a fixed rate. At most one tick is in
flight at any time: a tick that comes due while another is still running is
skipped, never queued. Nothing a tick raises can stop the loop.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from projectroom_sync.reconcile import TickSummary
from projectroom_sync.storage import utcnow

logger = logging.getLogger(__name__)

THREAD_NAME = 'reconciliation'


class Scheduler:
    """
    Runs ``engine.run_tick()`` every ``interval_seconds``.

    The stop event is shared with the engine, so stopping the scheduler also
    cancels a running tick before its next network call.
    """

    def __init__(self, engine, interval_seconds: float, run_on_start: bool = True,
                 on_tick: Optional[Callable[[TickSummary], None]] = None,
                 stop_event: Optional[threading.Event] = None,
                 clock: Callable[[], float] = time.monotonic):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self.engine = engine
        self.interval = interval_seconds
        self.run_on_start = run_on_start
        self.on_tick = on_tick
        self.stop_event = stop_event or getattr(engine, 'cancel_event', None) or threading.Event()
        self._clock = clock

        self._lock = threading.Lock()
        self._thread = None

        self.ticks_run = 0
        self.ticks_skipped = 0
        self.ticks_failed = 0
        self.consecutive_failures = 0
        self.last_successful_tick: Optional[datetime] = None
        self.last_summary: Optional[TickSummary] = None

    @classmethod
    def from_config(cls, engine, sync_config: Dict[str, Any],
                    on_tick: Optional[Callable[[TickSummary], None]] = None,
                    stop_event: Optional[threading.Event] = None) -> 'Scheduler':
        return cls(
            engine,
            interval_seconds=float(sync_config.get('interval_minutes', 10)) * 60,
            run_on_start=sync_config.get('run_on_start', True),
            on_tick=on_tick,
            stop_event=stop_event,
        )

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """
        Start the reconciliation thread.

        A stop requested before this call is honoured: the thread exits without running a tick.
        """
        if self.is_running:
            raise RuntimeError("Scheduler is already running")

        self._thread = threading.Thread(target=self._run, name=THREAD_NAME, daemon=False)
        self._thread.start()
        logger.info(f"Scheduler started, interval {self.interval:.0f} seconds")

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Stop the loop and cancel the running tick.

        Returns:
            True if the thread has finished
        """
        self.stop_event.set()
        if self._thread is None:
            return True

        self._thread.join(timeout)
        stopped = not self._thread.is_alive()
        if stopped:
            logger.info("Scheduler stopped")
        else:
            logger.warning(f"Reconciliation thread still running after {timeout} seconds")
        return stopped

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)

    def run_once(self) -> Optional[TickSummary]:
        """
        Run one tick unless another one is in flight.

        Returns:
            The tick summary, or None if the tick was skipped
        """
        if not self._lock.acquire(blocking=False):
            self.ticks_skipped += 1
            logger.warning("Previous tick still running, skipping this one")
            return None

        try:
            try:
                summary = self.engine.run_tick()
            except Exception as e:
                logger.error(f"Reconciliation tick crashed: {e}", exc_info=True)
                summary = TickSummary(started_at=utcnow(), finished_at=utcnow())
                summary.record_error('tick', e)

            self._record(summary)
            return summary
        finally:
            self._lock.release()

    def _record(self, summary: TickSummary):
        self.ticks_run += 1
        self.last_summary = summary

        if summary.ok:
            self.last_successful_tick = summary.finished_at
            self.consecutive_failures = 0
        elif not summary.cancelled:
            self.ticks_failed += 1
            self.consecutive_failures += 1
            logger.warning(f"Tick finished with {len(summary.errors)} errors "
                           f"({self.consecutive_failures} failed ticks in a row)")

        if self.on_tick:
            try:
                self.on_tick(summary)
            except Exception as e:
                logger.error(f"Tick callback failed: {e}", exc_info=True)

    def _run(self):
        next_run = self._clock()
        if not self.run_on_start:
            next_run += self.interval

        while not self.stop_event.is_set():
            delay = next_run - self._clock()
            if delay > 0 and self.stop_event.wait(delay):
                break

            self.run_once()

            next_run += self.interval
            now = self._clock()
            if next_run <= now:
                missed = int((now - next_run) // self.interval) + 1
                self.ticks_skipped += missed
                logger.warning(f"Tick overran the interval, skipping {missed} missed slots")
                next_run += missed * self.interval

        logger.info("Reconciliation loop exited")

    def status(self) -> Dict[str, Any]:
        """Observability snapshot of the scheduler."""
        return {
            'running': self.is_running,
            'interval_seconds': self.interval,
            'ticks_run': self.ticks_run,
            'ticks_skipped': self.ticks_skipped,
            'ticks_failed': self.ticks_failed,
            'consecutive_failures': self.consecutive_failures,
            'last_successful_tick': self.last_successful_tick.isoformat() if self.last_successful_tick else None,
            'last_summary_ok': self.last_summary.ok if self.last_summary else None,
        }

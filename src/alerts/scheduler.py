import logging
import threading
import time
from typing import Any, List, Optional

from alerts.models import Firing
from alerts.threshold_evaluator import AlertThresholdEvaluator
from utils.errors import DispatchError
from workers.notification_queue import NotificationJob

logger = logging.getLogger(__name__)


class AlertScheduler:
    """
    Runs the threshold check on a fixed interval.

    A tick that starts while the previous one is still running returns
    immediately; ticks are dropped, never queued.
    """

    def __init__(self, evaluator: AlertThresholdEvaluator, notification_queue: Any, interval_seconds: float = 60):
        self.evaluator = evaluator
        self.notification_queue = notification_queue
        self.interval_seconds = interval_seconds

        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.ticks_run = 0
        self.ticks_skipped = 0

    def _dispatch(self, firings: List[Firing]) -> None:
        for firing in firings:
            job = NotificationJob.from_firing(firing)
            try:
                self.notification_queue.enqueue(job.to_dict(), job_id=job.job_id)
                logger.info(f"Alert notification queued: {firing.rule_name} ({firing.log_count} logs)")
            except DispatchError as e:
                # The history row stays; the next firing is still deduplicated against it.
                logger.error(f"Failed to queue notification for {firing.rule_name!r} (history {firing.history_id}): {e}")

    def tick(self) -> Optional[List[Firing]]:
        if not self._tick_lock.acquire(blocking=False):
            self.ticks_skipped += 1
            logger.warning("Alert check already in progress, skipping")
            return None

        try:
            started = time.monotonic()
            firings = self.evaluator.check_all_rules()
            self._dispatch(firings)
            self.ticks_run += 1
            duration_ms = int((time.monotonic() - started) * 1000)
            if firings:
                logger.warning(f"{len(firings)} alert(s) triggered (check took {duration_ms}ms)")
            else:
                logger.debug(f"Alert check completed, no alerts triggered ({duration_ms}ms)")
            return firings
        except Exception as e:
            logger.error(f"Error checking alert rules: {e}", exc_info=True)
            return []
        finally:
            self._tick_lock.release()

    def _spawn_tick(self) -> None:
        threading.Thread(target=self.tick, name="AlertCheck", daemon=True).start()

    def _loop(self, run_immediately: bool) -> None:
        logger.info(f"Alert scheduler started (interval: {self.interval_seconds}s)")
        if run_immediately:
            self._spawn_tick()
        while not self._stop_event.wait(self.interval_seconds):
            self._spawn_tick()
        logger.info("Alert scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, run_immediately: bool = True) -> None:
        if self.is_running:
            logger.warning("Alert scheduler already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            args=(run_immediately,),
            name="AlertScheduler",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 10) -> None:
        if not self._thread:
            return

        self._stop_event.set()
        self._thread.join(timeout=timeout)
        self._thread = None

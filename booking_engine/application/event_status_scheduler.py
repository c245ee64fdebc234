import logging
import threading
from typing import Callable

from sqlalchemy.orm import Session

from booking_engine.application.event_status_service import EventStatusService, RecomputeSummary


logger = logging.getLogger(__name__)


class EventStatusScheduler:
    """
    Periodic event-status recomputation on a background thread.

    A tick that is still running when the next one is due causes that
    fire to be skipped. The interval is measured from the end of a tick.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        interval_seconds: float = 60.0,
    ):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="event-status-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("Event status scheduler started (interval %.1fs)", self.interval_seconds)

    def stop(self, timeout: float | None = None) -> None:
        """Stop scheduling; an in-flight tick is allowed to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Event status scheduler did not stop within %s seconds", timeout)
            else:
                self._thread = None
        logger.info("Event status scheduler stopped")

    def run_tick(self) -> bool:
        """
        Run one recomputation. Returns False when skipped because the
        previous tick is still in progress.
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous event status tick still running; skipping this one")
            return False
        try:
            summary = self._recompute()
            logger.info(
                "Event statuses updated: scanned=%s changed=%s failed=%s",
                summary.scanned,
                len(summary.changes),
                len(summary.failed),
            )
        except Exception:
            # A failed tick must not kill the scheduler; the next one starts fresh.
            logger.exception("Error updating event statuses")
        finally:
            self._tick_lock.release()
        return True

    def _recompute(self) -> RecomputeSummary:
        db = self.session_factory()
        try:
            return EventStatusService(db).recompute_event_statuses()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.run_tick()
            if self._stop_event.wait(self.interval_seconds):
                break

# campusride/sweeper.py
import logging
import threading
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .matching import MatchingEngine

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Periodically expires rides nobody accepted within the offer window."""

    def __init__(self, engine: MatchingEngine, interval: float = 15.0):
        self.engine = engine
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _worker(self):
        logger.info("Expiry sweeper running every %ss", self.interval)
        while not self._stop_event.is_set():
            try:
                self.engine.expire_overdue()
            except SQLAlchemyError:
                # the next tick retries; expiry is also applied lazily on access
                logger.exception("Expiry sweep failed")
            self._stop_event.wait(self.interval)
        logger.info("Expiry sweeper stopped")

    def start(self):
        if self.running:
            logger.warning("Expiry sweeper is already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._worker, name="expiry-sweeper", daemon=True)
        self._thread.start()

    def stop(self):
        if self._thread is None:
            return
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=10)
        self._thread = None

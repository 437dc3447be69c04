"""Periodic auto-sync trigger."""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class AutoSyncScheduler:
    """Call ``trigger`` every ``interval_seconds`` on a daemon thread.

    ``stop()`` wakes the thread immediately; ``reschedule()`` restarts the
    wait with the new interval.
    """

    def __init__(self, interval_seconds: float, trigger: Callable[[], None]):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        self._trigger = trigger
        self._lock = threading.Lock()
        self._stop: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            stop = threading.Event()
            self._stop = stop
            self._thread = threading.Thread(
                target=self._run,
                args=(stop, self.interval_seconds),
                name="loreweaver-autosync",
                daemon=True,
            )
            self._thread.start()
        logger.debug(f"Auto-sync started, every {self.interval_seconds:.0f}s")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        with self._lock:
            stop, thread = self._stop, self._thread
            self._stop = None
            self._thread = None
        if stop is None:
            return
        stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.debug("Auto-sync stopped")

    def reschedule(self, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        was_running = self.is_running
        self.stop()
        self.interval_seconds = interval_seconds
        if was_running:
            self.start()

    def _run(self, stop: threading.Event, interval: float) -> None:
        while not stop.wait(interval):
            try:
                self._trigger()
            except Exception as e:
                logger.error(f"Auto-sync trigger failed: {e}", exc_info=True)

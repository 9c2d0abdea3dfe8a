from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class RecurringJob:
    """Daemon thread that calls ``func`` every ``interval_seconds``.

    Exceptions from ``func`` are logged; the job keeps running.
    """

    def __init__(self, name: str, func: Callable[[], object], interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.runs = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=f"er-job-{self.name}", daemon=True)
        self._thread.start()
        logger.info("Recurring job %s started (every %.1fs)", self.name, self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)
            logger.info("Recurring job %s stopped", self.name)

    def run_once(self) -> None:
        try:
            self.func()
        except Exception:  # noqa: BLE001
            logger.exception("Recurring job %s failed", self.name)
        finally:
            self.runs += 1

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.run_once()

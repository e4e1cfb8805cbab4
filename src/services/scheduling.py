from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run `action` every `interval_seconds` on a daemon thread until stopped.

    Exceptions raised by `action` are logged and the loop keeps going.
    """

    def __init__(self, *, name: str, interval_seconds: float, action: Callable[[], object]) -> None:
        if interval_seconds <= 0:
            msg = "interval_seconds must be > 0"
            raise ValueError(msg)
        self.name = name
        self.interval_seconds = interval_seconds
        self._action = action
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.debug("Started %s every %.1fs", self.name, self.interval_seconds)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self._action()
            except Exception:
                logger.exception("Scheduled task %s failed", self.name)


__all__ = ["PeriodicTask"]

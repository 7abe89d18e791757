"""Background timer that runs a callback at a fixed interval."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Callable, Optional

__all__ = ["IntervalTimer"]

logger = logging.getLogger(__name__)


def _to_seconds(interval: float | timedelta) -> float:
    if isinstance(interval, timedelta):
        return interval.total_seconds()
    return float(interval)


class IntervalTimer:
    """Runs a callback in a background thread every ``interval`` seconds.

    Errors raised by the callback are logged and do not stop the timer.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def running(self) -> bool:
        """Whether the timer's worker thread is alive."""
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(
        self,
        interval: float | timedelta,
        callback: Callable[[], object],
        one_shot: bool = False,
    ) -> None:
        """Start calling ``callback`` every ``interval``; only once if ``one_shot``."""
        seconds = _to_seconds(interval)
        if seconds <= 0:
            raise ValueError(f"timer '{self.name}' interval must be positive, got {seconds}")
        with self._lock:
            if self.running:
                raise RuntimeError(f"timer '{self.name}' is already running")
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(seconds, callback, one_shot, self._stop_event),
                name=f"interval-timer-{self.name}",
                daemon=True,
            )
            self._thread.start()

    def _run(
        self,
        seconds: float,
        callback: Callable[[], object],
        one_shot: bool,
        stop_event: threading.Event,
    ) -> None:
        while not stop_event.wait(seconds):
            try:
                callback()
            except Exception:
                logger.exception("Timer '%s' callback failed", self.name)
            if one_shot:
                break

    def stop(self) -> None:
        """Signal the worker to stop; a callback already running is allowed to finish."""
        with self._lock:
            self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker to finish; return whether it has."""
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(timeout)
        return not thread.is_alive()
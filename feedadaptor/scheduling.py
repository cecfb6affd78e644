"""Guards and timers that drive recurring pushes."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class OneAtATime:
    """Runs ``func`` unless a previous call is still running.

    A second caller does not wait: ``already_running`` is invoked instead and
    the call returns ``False``.
    """

    def __init__(self, func: Callable[[], None], already_running: Optional[Callable[[], None]] = None) -> None:
        self._func = func
        self._already_running = already_running
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def __call__(self) -> bool:
        if not self._lock.acquire(blocking=False):
            if self._already_running is not None:
                self._already_running()
            return False
        try:
            self._func()
        finally:
            self._lock.release()
        return True

    def start_in_background(self, name: str) -> Optional[threading.Thread]:
        """Claim the guard now and run ``func`` on a new daemon thread.

        Returns ``None`` if a call is already running.
        """
        if not self._lock.acquire(blocking=False):
            if self._already_running is not None:
                self._already_running()
            return None

        def run() -> None:
            try:
                self._func()
            except Exception:
                logger.exception("Background task %s failed", name)
            finally:
                self._lock.release()

        thread = threading.Thread(target=run, name=name, daemon=True)
        thread.start()
        return thread


class PeriodicTask:
    """Calls ``func`` every ``interval`` seconds on a daemon thread."""

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], None],
        run_immediately: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self._interval = interval
        self._func = func
        self._run_immediately = run_immediately
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError(f"{self.name} already started")
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info("Scheduled %s every %.0fs", self.name, self._interval)

    def _loop(self) -> None:
        wait = 0.0 if self._run_immediately else self._interval
        while not self._stopped.wait(wait):
            try:
                self._func()
            except Exception:
                logger.exception("Scheduled task %s failed", self.name)
            wait = self._interval

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("%s did not stop within %ss", self.name, timeout)

"""Cooperative cancellation for long-running pushes.

Pushes check a :class:`CancellationToken` between batches and sleep on it
while backing off, so a shutdown request ends a push promptly without
interrupting a request that is on the wire.
"""

from __future__ import annotations

import threading

from .errors import PushInterrupted


class CancellationToken:
    """Thread-safe flag a push checks to learn it should stop."""

    def __init__(self) -> None:
        self._is_cancelled = threading.Event()

    def cancel(self) -> None:
        self._is_cancelled.set()

    def is_cancelled(self) -> bool:
        return self._is_cancelled.is_set()

    def reset(self) -> None:
        """Clear a previous cancellation so the token can be reused."""
        self._is_cancelled.clear()

    def raise_if_cancelled(self) -> None:
        if self._is_cancelled.is_set():
            raise PushInterrupted("push was cancelled")

    def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first.

        Raises:
            PushInterrupted: if the token is cancelled before or during the sleep.
        """
        if self._is_cancelled.wait(max(0.0, seconds)):
            raise PushInterrupted(f"cancelled while sleeping {seconds:.1f}s")

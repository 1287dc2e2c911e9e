"""
Cooperative cancellation.

A single token is created per run and passed to every component that can
block or loop: the controller polls it once per iteration, the generation
loop once per sampled token, and the recognizer through its abort predicate.
"""
from __future__ import annotations

import threading
from typing import Callable, Optional


class Cancelled(Exception):
    """Raised by raise_if_cancelled(); unwinds to the controller."""


class CancellationToken:
    """Thread-safe, one-way cancellation flag with a reason."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._lock = threading.Lock()

    def cancel(self, reason: str = "cancelled") -> None:
        # First reason wins
        with self._lock:
            if not self._event.is_set():
                self._reason = reason
                self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self._reason or "cancelled")

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; returns True early if cancelled."""
        return self._event.wait(timeout)

    def as_abort_predicate(self) -> Callable[[], bool]:
        """Callable for engines that poll an abort flag before each step."""
        return lambda: self._event.is_set()

"""
Concurrency utilities.

``synchronized`` serializes writers on an instance ``_lock``;
``CancellationToken`` is the cooperative cancellation flag handed to
dispatches and the retry loop.
"""

from __future__ import annotations

import threading
from functools import wraps
from typing import Callable


def synchronized(func: Callable) -> Callable:
    """Decorator that acquires ``self._lock`` if present on the instance.

    If no ``_lock`` attribute exists on ``self``, the function runs unlocked.
    """

    @wraps(func)
    def _wrapped(self, *args, **kwargs):
        lock = getattr(self, "_lock", None)
        if lock is None:
            return func(self, *args, **kwargs)
        with lock:
            return func(self, *args, **kwargs)

    return _wrapped


class CancellationToken:
    """Thread-safe cancellation flag. Once cancelled it stays cancelled."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return True as soon as the token is cancelled."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)

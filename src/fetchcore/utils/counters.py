"""
Thread-safe counters shared by the event loop and the processing pool threads.
"""

from __future__ import annotations

import threading


class AtomicCounter:
    """Integer counter whose updates are serialized by a lock."""

    def __init__(self, initial: int = 0) -> None:
        self._value = initial
        self._lock = threading.Lock()

    def increment(self, amount: int = 1) -> int:
        """Add ``amount`` and return the new value."""
        with self._lock:
            self._value += amount
            return self._value

    def get_and_increment(self) -> int:
        """Return the current value, then add one."""
        with self._lock:
            previous = self._value
            self._value += 1
            return previous

    def reset(self) -> None:
        with self._lock:
            self._value = 0

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def __int__(self) -> int:
        return self.value

    def __repr__(self) -> str:
        return f"AtomicCounter({self.value})"

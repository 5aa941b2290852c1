"""Thread-safe named counters."""

from __future__ import annotations

import threading


class Metrics:
    """A set of monotonically increasing named counters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}

    def inc(self, name: str) -> None:
        """Increase the named counter by one."""
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + 1

    def get(self, name: str) -> int:
        """Return the current value of a counter, 0 if never increased."""
        with self._lock:
            return self._counters.get(name, 0)

    def snapshot(self) -> dict[str, int]:
        """Return a copy of all counters."""
        with self._lock:
            return dict(self._counters)
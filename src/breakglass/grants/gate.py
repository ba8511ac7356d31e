"""Process-level switch that keeps write-through off until bootstrap finishes."""

from __future__ import annotations

import threading


class WriteGate:
    """Thread-safe boolean. Starts closed; bootstrap opens it."""

    def __init__(self, enabled: bool = False) -> None:
        self._lock = threading.Lock()
        self._enabled = enabled

    def enable(self) -> None:
        with self._lock:
            self._enabled = True

    def disable(self) -> None:
        with self._lock:
            self._enabled = False

    @property
    def enabled(self) -> bool:
        with self._lock:
            return self._enabled

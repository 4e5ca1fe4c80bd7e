"""Per-key request volume limiter with one-minute windows."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from tryon.errors import RateLimited

WINDOW_SECONDS = 60.0


@dataclass(slots=True)
class _Window:
    count: int
    reset_at: float


class RequestRateLimiter:
    """Allow at most ``requests_per_minute`` calls per key in each window."""

    def __init__(
        self,
        requests_per_minute: int = 60,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be at least 1")
        self._limit = requests_per_minute
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def check(self, key: str) -> int:
        """Count one request for ``key`` and return how many remain in the window."""

        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                self._windows[key] = _Window(count=1, reset_at=now + WINDOW_SECONDS)
                return self._limit - 1
            if window.count < self._limit:
                window.count += 1
                return self._limit - window.count
            retry_after = max(int(math.ceil(window.reset_at - now)), 1)
        raise RateLimited(key, retry_after)

    def cleanup(self) -> int:
        """Forget windows that have already reset."""

        now = self._clock()
        with self._lock:
            stale = [key for key, window in self._windows.items() if now >= window.reset_at]
            for key in stale:
                del self._windows[key]
        return len(stale)


__all__ = ["RequestRateLimiter", "WINDOW_SECONDS"]

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable

from .errors import RateLimited


@dataclass
class _Window:
    count: int
    reset_at: float


def _describe_window(seconds: float) -> str:
    hours = seconds / 3600
    if hours >= 1 and hours.is_integer():
        return f"{int(hours)} hour{'s' if hours != 1 else ''}"
    minutes = seconds / 60
    if minutes >= 1 and minutes.is_integer():
        return f"{int(minutes)} minute{'s' if minutes != 1 else ''}"
    return f"{int(math.ceil(seconds))} seconds"


class FixedWindowRateLimiter:
    """Per-key request counter that resets once its window has elapsed."""

    def __init__(
        self,
        *,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def check(self, key: str) -> None:
        now = self._clock()
        self._prune(now)
        window = self._windows.get(key)
        if window is None or now >= window.reset_at:
            self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
            return
        if window.count >= self.max_requests:
            retry_after = max(1, int(math.ceil(window.reset_at - now)))
            raise RateLimited(
                f"You have exceeded the limit of {self.max_requests} requests. "
                f"Please try again after {_describe_window(self.window_seconds)}.",
                retry_after=retry_after,
            )
        window.count += 1

    def _prune(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]

    def tracked_keys(self) -> int:
        return len(self._windows)

    def remaining(self, key: str) -> int:
        window = self._windows.get(key)
        if window is None or self._clock() >= window.reset_at:
            return self.max_requests
        return max(0, self.max_requests - window.count)

    def reset(self) -> None:
        self._windows.clear()

"""Sliding-window request gate for cloud providers."""

from __future__ import annotations

import math
import time
from collections import deque
from typing import Callable

from devark.core.exceptions import RateLimitExceededError


class RateLimiter:
    """Advisory limiter: rejects instead of sleeping and leaves backoff to callers."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        name: str,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self._timestamps: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    def throttle(self) -> None:
        now = self._clock()
        self._prune(now)
        if len(self._timestamps) >= self.max_requests:
            wait = self.window_seconds - (now - self._timestamps[0])
            raise RateLimitExceededError(self.name, max(1, math.ceil(wait)))
        self._timestamps.append(now)

    @property
    def remaining(self) -> int:
        self._prune(self._clock())
        return max(0, self.max_requests - len(self._timestamps))

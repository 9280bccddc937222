"""In-memory sliding-window rate limiting for the auth endpoints."""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterable, Tuple

from app.core.exceptions import RateLimitExceededError


@dataclass
class _Window:
    hits: Deque[float] = field(default_factory=deque)


class InMemoryRateLimiter:
    """Sliding-window limiter suitable for single-node deployments."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, _Window] = {}

    def _prune(self, key: str, now: float, window_seconds: int) -> _Window:
        window = self._windows.setdefault(key, _Window())
        cutoff = now - window_seconds
        while window.hits and window.hits[0] <= cutoff:
            window.hits.popleft()
        return window

    def hit(self, key: str, limit: int, window_seconds: int) -> float:
        """
        Record one attempt.

        Returns 0 when allowed, otherwise the number of seconds until the
        oldest attempt leaves the window.
        """
        now = self._clock()
        with self._lock:
            window = self._prune(key, now, window_seconds)
            if len(window.hits) >= limit:
                return max(0.0, window.hits[0] + window_seconds - now)
            window.hits.append(now)
            return 0.0

    def remaining(self, key: str, limit: int, window_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            window = self._prune(key, now, window_seconds)
            return max(0, limit - len(window.hits))

    def enforce(self, scope: str, client_key: str, rules: Iterable[Tuple[int, int]]) -> None:
        """
        Apply ``(limit, window_seconds)`` rules to one client.

        Raises:
            RateLimitExceededError: First rule that is exhausted
        """
        for limit, window_seconds in rules:
            retry_after = self.hit(f"{scope}:{window_seconds}:{client_key}", limit, window_seconds)
            if retry_after:
                raise RateLimitExceededError(
                    f"Too many {scope} attempts. Please try again later.",
                    retry_after=int(math.ceil(retry_after)),
                )

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


rate_limiter = InMemoryRateLimiter()

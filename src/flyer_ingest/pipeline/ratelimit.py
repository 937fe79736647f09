"""Sliding-window request limiter keyed by source (store code or model)."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from ..logging import get_logger

LOG = get_logger("pipeline-ratelimit")


class SlidingWindowLimiter:
    """Allow at most `max_requests` per `window_seconds` for each key."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_requests < 1 or window_seconds <= 0:
            raise ValueError("max_requests must be >= 1 and window_seconds > 0")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def _prune(self, key: str, now: float) -> Deque[float]:
        hits = self._hits.setdefault(key, deque())
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()
        return hits

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            now = self._clock()
            hits = self._prune(key, now)
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            return True

    def wait_time(self, key: str) -> float:
        """Seconds until the next request for key would be admitted (0 if now)."""
        with self._lock:
            now = self._clock()
            hits = self._prune(key, now)
            if len(hits) < self.max_requests:
                return 0.0
            return max(0.0, hits[0] + self.window_seconds - now)

    def remaining(self, key: str) -> int:
        with self._lock:
            hits = self._prune(key, self._clock())
            return max(0, self.max_requests - len(hits))

    def acquire(self, key: str, *, timeout: Optional[float] = None) -> bool:
        """Block until a slot is free. Returns False if timeout elapses first."""
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            if self.try_acquire(key):
                return True
            delay = self.wait_time(key)
            if deadline is not None:
                left = deadline - self._clock()
                if left <= 0:
                    LOG.debug(f"Rate limit wait for {key} timed out")
                    return False
                delay = min(delay, left)
            self._sleep(max(delay, 0.01))

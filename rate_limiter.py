"""Sliding-window rate limiter keyed by caller identity and request path.

Every call is recorded before the limit is checked, so rejected calls still
occupy a slot in the window. Per-process only: running several workers
multiplies the effective limit.
"""

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Tuple


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of an admission check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Max requests per window.
        remaining: Requests left in the current window (0 when blocked).
        retry_after_seconds: Suggested wait when blocked, None when allowed.
    """

    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: Optional[int] = None


class SlidingWindowRateLimiter:
    def __init__(
        self,
        *,
        limit: int = 15,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._history: Dict[Tuple[str, str], Deque[float]] = {}

    def __len__(self) -> int:
        return len(self._history)

    def _prune(self, history: Deque[float], now: float) -> None:
        while history and now - history[0] >= self.window_seconds:
            history.popleft()

    def admit(self, identity: str, path: str) -> RateLimitResult:
        """Record a request for (identity, path) and decide whether to serve it.

        The 16th request inside a 60 second window (with the default limit)
        is the first one denied.
        """
        if not identity:
            raise ValueError("identity must be a non-empty string")
        if not path:
            raise ValueError("path must be a non-empty string")

        now = self._clock()
        with self._lock:
            history = self._history.setdefault((identity, path), deque())
            history.append(now)
            self._prune(history, now)
            count = len(history)
            # A retry is admitted once all but limit - 1 recorded calls have
            # aged out, since the retry itself is recorded before the check
            release_at = None
            if count > self.limit:
                release_at = history[count - self.limit] + self.window_seconds

        if release_at is not None:
            retry_after = max(1, math.ceil(release_at - now))
            return RateLimitResult(
                allowed=False,
                limit=self.limit,
                remaining=0,
                retry_after_seconds=retry_after,
            )

        return RateLimitResult(
            allowed=True,
            limit=self.limit,
            remaining=self.limit - count,
        )

    def sweep(self) -> int:
        """Forget keys with no request inside the window. Returns keys removed."""
        now = self._clock()
        with self._lock:
            idle = []
            for key, history in self._history.items():
                self._prune(history, now)
                if not history:
                    idle.append(key)
            for key in idle:
                del self._history[key]
        return len(idle)

"""
Sliding window rate limiting with per-key tracking.

The same limiter serves two callers: the service enforces it on token
endpoints against the wall clock, and the offline rate-limit detector replays
request timestamps from the API exchange log through it (pass `now`).
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None


class RateLimiter:
    """
    Sliding window rate limiter.

    Thread-safe; one deque of hit timestamps per key.
    """

    def __init__(self, rpm: int, window_seconds: int = 60):
        """
        Args:
            rpm: Maximum requests per window
            window_seconds: Window size in seconds (default 60)
        """
        self._limit = max(1, rpm)
        self._window = window_seconds
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.RLock()
        self._next_cleanup = 0.0

    @property
    def limit(self) -> int:
        return self._limit

    def _expire(self, q: Deque[float], now: float) -> None:
        window_start = now - self._window
        while q and q[0] <= window_start:
            q.popleft()

    def allow(self, key: str, now: Optional[float] = None) -> bool:
        return self.check(key, now).allowed

    def check(self, key: str, now: Optional[float] = None) -> RateLimitResult:
        """
        Admit or refuse one request for `key`. Refused requests are not recorded.

        Args:
            key: Identifier for rate limiting (client id, client + endpoint)
            now: Request time in epoch seconds (defaults to time.time())
        """
        now = time.time() if now is None else now

        with self._lock:
            self._maybe_cleanup(now)
            q = self._hits[key]
            self._expire(q, now)

            current_count = len(q)
            reset_at = (q[0] + self._window) if q else (now + self._window)

            if current_count >= self._limit:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=max(0.0, q[0] + self._window - now)
                )

            q.append(now)
            return RateLimitResult(
                allowed=True,
                remaining=self._limit - current_count - 1,
                reset_at=reset_at
            )

    def hit(self, key: str, now: Optional[float] = None) -> int:
        """Record a request unconditionally and return how many fall in the current window."""
        now = time.time() if now is None else now
        with self._lock:
            self._maybe_cleanup(now)
            q = self._hits[key]
            q.append(now)
            self._expire(q, now)
            return len(q)

    def get_stats(self, key: str) -> Dict[str, int]:
        now = time.time()
        with self._lock:
            q = self._hits.get(key, deque())
            self._expire(q, now)
            return {
                "current": len(q),
                "limit": self._limit,
                "remaining": max(0, self._limit - len(q)),
                "window_seconds": self._window
            }

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key:
                self._hits.pop(key, None)
            else:
                self._hits.clear()

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def _maybe_cleanup(self, now: float) -> None:
        # Sweep at most once per window so idle keys do not accumulate.
        if now >= self._next_cleanup:
            self.cleanup_expired(now)
            self._next_cleanup = now + self._window

    def cleanup_expired(self, now: Optional[float] = None) -> int:
        """
        Remove expired entries from all keys, dropping keys left empty.

        Returns:
            Number of entries removed
        """
        now = time.time() if now is None else now
        removed = 0

        with self._lock:
            empty_keys = []
            for key, q in self._hits.items():
                before = len(q)
                self._expire(q, now)
                removed += before - len(q)
                if not q:
                    empty_keys.append(key)

            for key in empty_keys:
                del self._hits[key]

        return removed

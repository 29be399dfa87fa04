"""
Fixed-window rate limiter for entitlement-creating endpoints.

- In-memory, keyed by caller identifier (user_id preferred, else device_id).
- One instance per process, owned by the application (app.state), never a
  module global.
- Fail-open: state is not shared across processes or restarts, so the effective
  limit can only be higher than configured, never lower.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: Optional[int] = None


@dataclass
class RateWindow:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    def __init__(
        self,
        window_seconds: float = 60,
        max_requests: int = 5,
        time_fn: Callable[[], float] = time.monotonic,
        cleanup_every: int = 100,
    ):
        self.window_seconds = float(window_seconds)
        self.max_requests = max(1, int(max_requests))
        self.time_fn = time_fn
        self.cleanup_every = cleanup_every
        self.windows: Dict[str, RateWindow] = {}
        self._checks = 0
        self._lock = threading.Lock()

    def check(self, identifier: str) -> RateLimitResult:
        with self._lock:
            now = self.time_fn()
            self._checks += 1
            if self.cleanup_every and self._checks % self.cleanup_every == 0:
                self._cleanup_locked(now)

            window = self.windows.get(identifier)
            if window is None or window.reset_at <= now:
                self.windows[identifier] = RateWindow(count=1, reset_at=now + self.window_seconds)
                return RateLimitResult(allowed=True, remaining=self.max_requests - 1)

            if window.count >= self.max_requests:
                retry_after = max(1, math.ceil(window.reset_at - now))
                return RateLimitResult(allowed=False, remaining=0, retry_after=retry_after)

            window.count += 1
            return RateLimitResult(allowed=True, remaining=self.max_requests - window.count)

    def reset(self, identifier: str) -> None:
        with self._lock:
            self.windows.pop(identifier, None)

    def status(self, identifier: str) -> Optional[RateWindow]:
        with self._lock:
            return self.windows.get(identifier)

    def cleanup(self) -> int:
        """Drop expired windows. Memory hygiene only; check() never depends on it."""
        with self._lock:
            return self._cleanup_locked(self.time_fn())

    def _cleanup_locked(self, now: float) -> int:
        expired = [key for key, window in self.windows.items() if window.reset_at <= now]
        for key in expired:
            del self.windows[key]
        return len(expired)


def rate_limit_headers(result: RateLimitResult, limit: Optional[int] = None) -> Dict[str, str]:
    headers: Dict[str, str] = {"X-RateLimit-Remaining": str(result.remaining)}
    if limit is not None:
        headers["X-RateLimit-Limit"] = str(limit)
    if result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
        headers["X-RateLimit-Reset"] = str(result.retry_after)
    return headers


def build_rate_limiter_from_settings(cfg, time_fn: Callable[[], float] = time.monotonic) -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter(
        window_seconds=cfg.RATE_LIMIT_WINDOW_SECONDS,
        max_requests=cfg.RATE_LIMIT_MAX_REQUESTS,
        time_fn=time_fn,
    )

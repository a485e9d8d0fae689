from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from app.config import settings
from app.integrations.redis_client import RedisClient, RedisProtocolError


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_after_s: int
    reset_at_s: int


class RateLimiter(Protocol):
    def check(self, key: str, *, max_requests: int, window_s: int) -> RateLimitResult: ...

    def sweep(self) -> int: ...

    def reset(self) -> None: ...


class InMemoryRateLimiter:
    """Sliding-window limiter for a single process.

    Owned by the application instance. ``sweep`` drops buckets whose newest hit
    is older than the longest window seen, and runs on its own every
    ``sweep_interval_s`` during ``check`` so idle keys do not accumulate.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        *,
        sweep_interval_s: float = 60.0,
    ) -> None:
        self._clock = clock
        self._buckets: dict[str, list[float]] = {}
        self._max_window_s = 0
        self._sweep_interval_s = sweep_interval_s
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def check(self, key: str, *, max_requests: int, window_s: int) -> RateLimitResult:
        now = self._clock()
        if now - self._last_sweep >= self._sweep_interval_s:
            self.sweep()
        with self._lock:
            self._max_window_s = max(self._max_window_s, window_s)
            history = [value for value in self._buckets.get(key, []) if value > now - window_s]

            if len(history) >= max_requests:
                self._buckets[key] = history
                return _build_result(
                    allowed=False,
                    remaining=0,
                    now=now,
                    reset_deadline_s=history[0] + window_s,
                )

            history.append(now)
            self._buckets[key] = history
            return _build_result(
                allowed=True,
                remaining=max_requests - len(history),
                now=now,
                reset_deadline_s=history[0] + window_s,
            )

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            self._last_sweep = now
            cutoff = now - self._max_window_s
            stale = [key for key, hits in self._buckets.items() if not hits or hits[-1] <= cutoff]
            for key in stale:
                del self._buckets[key]
        return len(stale)

    def bucket_count(self) -> int:
        with self._lock:
            return len(self._buckets)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


class RedisRateLimiter:
    """Fixed-window counter shared by every API instance."""

    def __init__(self, client: RedisClient, clock: Callable[[], float] = time.time) -> None:
        self._client = client
        self._clock = clock

    def check(self, key: str, *, max_requests: int, window_s: int) -> RateLimitResult:
        now = self._clock()
        window_start = int(now // window_s) * window_s
        bucket = f"ratelimit:{key}:{window_start}"
        count, _ = self._client.pipeline(
            [("INCR", bucket), ("EXPIRE", bucket, str(max(window_s, 1)))]
        )
        if not isinstance(count, int):
            raise RedisProtocolError("Unexpected Redis INCR response")

        return _build_result(
            allowed=count <= max_requests,
            remaining=max(max_requests - count, 0),
            now=now,
            reset_deadline_s=window_start + window_s,
        )

    def sweep(self) -> int:
        # Redis expires buckets on its own.
        return 0

    def reset(self) -> None:
        return None


def _build_result(
    *,
    allowed: bool,
    remaining: int,
    now: float,
    reset_deadline_s: float,
) -> RateLimitResult:
    reset_after_s = max(1, math.ceil(reset_deadline_s - now))
    reset_at_s = max(math.ceil(reset_deadline_s), math.ceil(now))
    return RateLimitResult(
        allowed=allowed,
        remaining=remaining,
        reset_after_s=reset_after_s,
        reset_at_s=reset_at_s,
    )


def build_rate_limiter() -> RateLimiter:
    if settings.rate_limit_backend == "redis":
        if not settings.redis_url.strip():
            raise RuntimeError("REDIS_URL must be set when RATE_LIMIT_BACKEND=redis")
        return RedisRateLimiter(RedisClient(settings.redis_url))
    return InMemoryRateLimiter()

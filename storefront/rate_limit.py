"""
Fixed-window rate limiting for the public entry points.

The limiter is a best-effort abuse deterrent: its buckets live in the process
that serves the request. Several instances each enforce their own window, so the
effective limit is multiplied by the instance count. A shared store (e.g. Redis)
can be plugged in through the ``RateLimitStore`` interface.
"""

from __future__ import annotations

import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

from fastapi import Request


@dataclass(frozen=True)
class RateLimitConfig:
    window_ms: int
    max_requests: int
    key_prefix: str = "default"

    def __post_init__(self) -> None:
        if self.window_ms <= 0:
            raise ValueError("window_ms must be > 0")
        if self.max_requests <= 0:
            raise ValueError("max_requests must be > 0")


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: int  # epoch milliseconds
    retry_after: Optional[int] = None  # seconds


@dataclass
class RateLimitBucket:
    count: int
    reset_time: int


class RateLimitStore(Protocol):
    def get(self, key: str) -> Optional[RateLimitBucket]: ...

    def set(self, key: str, bucket: RateLimitBucket) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryRateLimitStore:
    """Bounded LRU map; the oldest key is evicted once max_entries is reached."""

    def __init__(self, max_entries: int = 10_000) -> None:
        self._max_entries = max_entries
        self._buckets: "OrderedDict[str, RateLimitBucket]" = OrderedDict()

    def get(self, key: str) -> Optional[RateLimitBucket]:
        return self._buckets.get(key)

    def set(self, key: str, bucket: RateLimitBucket) -> None:
        self._buckets[key] = bucket
        self._buckets.move_to_end(key)
        while len(self._buckets) > self._max_entries:
            self._buckets.popitem(last=False)

    def delete(self, key: str) -> None:
        self._buckets.pop(key, None)

    def __len__(self) -> int:
        return len(self._buckets)


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    def __init__(self, store: Optional[RateLimitStore] = None, clock: Callable[[], int] = _now_ms) -> None:
        self.store = store if store is not None else InMemoryRateLimitStore()
        self._clock = clock
        self._lock = threading.Lock()

    def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        bucket_key = f"{config.key_prefix}:{key}"

        with self._lock:
            now = self._clock()
            bucket = self.store.get(bucket_key)

            if bucket is None or now > bucket.reset_time:
                bucket = RateLimitBucket(count=1, reset_time=now + config.window_ms)
                self.store.set(bucket_key, bucket)
                return RateLimitResult(
                    allowed=True,
                    remaining=config.max_requests - 1,
                    reset_time=bucket.reset_time,
                )

            bucket.count += 1
            self.store.set(bucket_key, bucket)

            if bucket.count > config.max_requests:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_time=bucket.reset_time,
                    retry_after=math.ceil((bucket.reset_time - now) / 1000),
                )

            return RateLimitResult(
                allowed=True,
                remaining=config.max_requests - bucket.count,
                reset_time=bucket.reset_time,
            )

    def reset(self, key: str, config: RateLimitConfig) -> None:
        self.store.delete(f"{config.key_prefix}:{key}")


# auth is the strictest class, admin the most permissive.
RATE_LIMIT_CONFIGS: Dict[str, RateLimitConfig] = {
    "checkout": RateLimitConfig(window_ms=60 * 1000, max_requests=5, key_prefix="checkout"),
    "auth": RateLimitConfig(window_ms=15 * 60 * 1000, max_requests=5, key_prefix="auth"),
    "search": RateLimitConfig(window_ms=60 * 1000, max_requests=20, key_prefix="search"),
    "api": RateLimitConfig(window_ms=60 * 1000, max_requests=30, key_prefix="api"),
    "admin": RateLimitConfig(window_ms=60 * 1000, max_requests=60, key_prefix="admin"),
}


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    return {
        "Retry-After": str(result.retry_after or 60),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_time),
    }


_limiter = RateLimiter()


def get_rate_limiter() -> RateLimiter:
    return _limiter

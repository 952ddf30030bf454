"""
Fixed-window rate limiting for public and mutating endpoints.

The limiter is constructed explicitly and injected (held on ``app.state``) so
tests can replace or reset it. Counters live in a pluggable store:

- ``InMemoryRateLimitStore``: per-process map behind a mutex. Each instance
  enforces its own budget, so N stateless instances admit up to N times the
  configured limit.
- ``RedisRateLimitStore``: shared counter (``INCR`` + ``PEXPIRE``) for
  deployments where the limit must hold across instances.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Request budget: ``max_requests`` per ``window_seconds``."""

    max_requests: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check."""

    allowed: bool
    remaining: int
    reset_time: float  # epoch seconds when the window resets
    retry_after: int  # seconds until the window resets, 0 when allowed


class RATE_LIMITS:
    """Named request budgets."""

    PUBLIC = RateLimitConfig(max_requests=30, window_seconds=60)
    TOKEN_VALIDATION = RateLimitConfig(max_requests=10, window_seconds=60)
    CALL_START = RateLimitConfig(max_requests=5, window_seconds=60)
    # The provider, not an untrusted client, is the caller
    WEBHOOK = RateLimitConfig(max_requests=100, window_seconds=60)


class RateLimitStore(Protocol):
    """Counter backend used by :class:`RateLimiter`."""

    def hit(self, key: str, window_seconds: int, now: float) -> Tuple[int, float]:
        """Count one request for ``key``; return ``(count, reset_time)``."""
        ...

    def sweep(self, now: float) -> int:
        """Drop expired windows; return how many were removed."""
        ...

    def reset(self) -> None:
        """Forget all counters."""
        ...


class InMemoryRateLimitStore:
    """Process-local counter store, safe under concurrent access."""

    def __init__(self):
        self._entries: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, window_seconds: int, now: float) -> Tuple[int, float]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now >= entry[1]:
                # First request of a fresh window (lazy expiry)
                entry = (1, now + window_seconds)
            else:
                entry = (entry[0] + 1, entry[1])
            self._entries[key] = entry
            return entry

    def sweep(self, now: float) -> int:
        with self._lock:
            expired = [key for key, (_, reset_time) in self._entries.items() if now >= reset_time]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisRateLimitStore:
    """Shared fixed-window counters in Redis."""

    def __init__(self, client, key_prefix: str = "ratelimit:"):
        """
        Args:
            client: ``redis.Redis`` instance (``decode_responses`` irrelevant)
            key_prefix: Namespace for counter keys
        """
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisRateLimitStore":
        import redis

        return cls(redis.Redis.from_url(url, socket_timeout=2, decode_responses=True), **kwargs)

    def hit(self, key: str, window_seconds: int, now: float) -> Tuple[int, float]:
        redis_key = f"{self.key_prefix}{key}"
        pipe = self.client.pipeline()
        pipe.incr(redis_key)
        pipe.pttl(redis_key)
        count, ttl_ms = pipe.execute()
        count = int(count)
        ttl_ms = int(ttl_ms)

        if count == 1 or ttl_ms < 0:
            # New window, or a key that lost its expiry
            ttl_ms = window_seconds * 1000
            self.client.pexpire(redis_key, ttl_ms)

        return count, now + ttl_ms / 1000.0

    def sweep(self, now: float) -> int:
        # Redis expires keys on its own
        return 0

    def reset(self) -> None:
        for key in self.client.scan_iter(match=f"{self.key_prefix}*"):
            self.client.delete(key)


class RateLimiter:
    """Fixed-window rate limiter over a pluggable store."""

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        clock: Callable[[], float] = time.time,
        sweep_interval_seconds: float = 300.0
    ):
        self.store = store if store is not None else InMemoryRateLimitStore()
        self.clock = clock
        self.sweep_interval_seconds = sweep_interval_seconds
        self._last_sweep = clock()

    def check(self, identifier: str, config: RateLimitConfig) -> RateLimitResult:
        """
        Count a request for ``identifier`` and decide whether it is allowed.

        Never raises: a failing shared store admits the request and logs.

        Args:
            identifier: Bucket and caller, e.g. ``"call-start:203.0.113.7"``
            config: Request budget to enforce

        Returns:
            RateLimitResult for this request
        """
        now = self.clock()
        self._maybe_sweep(now)

        try:
            count, reset_time = self.store.hit(identifier, config.window_seconds, now)
        except Exception as e:
            logger.error(f"Rate limit store failed for {identifier}, admitting request: {e}")
            return RateLimitResult(
                allowed=True,
                remaining=config.max_requests,
                reset_time=now + config.window_seconds,
                retry_after=0
            )

        allowed = count <= config.max_requests
        remaining = max(0, config.max_requests - count)
        retry_after = 0 if allowed else max(1, math.ceil(reset_time - now))

        if not allowed:
            logger.warning(f"Rate limit exceeded for {identifier}: {count}/{config.max_requests}")

        return RateLimitResult(
            allowed=allowed,
            remaining=remaining,
            reset_time=reset_time,
            retry_after=retry_after
        )

    def reset(self) -> None:
        self.store.reset()

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep < self.sweep_interval_seconds:
            return
        self._last_sweep = now
        try:
            removed = self.store.sweep(now)
            if removed:
                logger.debug(f"Swept {removed} expired rate limit windows")
        except Exception as e:
            logger.warning(f"Rate limit sweep failed: {e}")


def build_rate_limiter(backend: str = "memory", redis_url: Optional[str] = None) -> RateLimiter:
    """Create a rate limiter for the configured backend."""
    if backend == "redis":
        if not redis_url:
            raise ValueError("REDIS_URL is required when RATE_LIMIT_BACKEND=redis")
        logger.info("Using Redis rate limit store")
        return RateLimiter(store=RedisRateLimitStore.from_url(redis_url))

    logger.info("Using in-memory rate limit store (per-instance limits)")
    return RateLimiter(store=InMemoryRateLimitStore())


_CLIENT_IP_HEADERS = (
    "x-real-ip",
    "x-forwarded-for",
    "cf-connecting-ip",
    "x-vercel-forwarded-for",
)


def get_client_ip(headers, peer: Optional[str] = None) -> str:
    """
    Resolve the client IP from proxy headers.

    Args:
        headers: Mapping with case-insensitive ``get`` (Starlette ``Headers``)
        peer: Socket peer address, used when no proxy header is present

    Returns:
        Client IP or ``"unknown"``
    """
    for name in _CLIENT_IP_HEADERS:
        value = headers.get(name)
        if value:
            # x-forwarded-for may carry a chain; the first hop is the client
            ip = value.split(",")[0].strip()
            if ip:
                return ip
    return peer or "unknown"

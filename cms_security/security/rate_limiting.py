"""
Fixed window rate limiting for the CMS security pipeline.

Counters live in a ``CounterStore``. The in-memory store enforces budgets per
process; the Redis store shares them across every instance pointing at the
same Redis.
"""

import asyncio
import itertools
import math
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..observability.logging import get_logger
from ..observability.metrics import MetricsRegistry
from .exceptions import EventStoreUnavailable

WRITE_METHODS = frozenset({"POST", "PUT", "PATCH"})

UNKNOWN_CLIENT = "unknown"


@dataclass(frozen=True)
class RateLimitTier:
    """Budget for one class of endpoints."""
    name: str
    window_ms: int
    max_requests: int
    skip_successful_requests: bool = False

    def __post_init__(self):
        if not self.name:
            raise ValueError("Tier name must not be empty")
        if self.window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if self.max_requests <= 0:
            raise ValueError("max_requests must be positive")


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of counting one request."""
    allowed: bool
    count: int
    limit: int
    remaining: int
    retry_after_seconds: int
    reset_after_ms: int
    window_id: str = ""

    def headers(self) -> Dict[str, str]:
        """Standard ``RateLimit-*`` response headers."""
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.retry_after_seconds),
        }


class WindowHit(NamedTuple):
    """A counted request and the window it landed in."""
    count: int
    ttl_ms: int
    window_id: str


class CounterStore(ABC):
    """Abstract storage for fixed window counters."""

    @abstractmethod
    async def increment(self, key: str, window_ms: int) -> WindowHit:
        """
        Atomically count a request.

        Returns:
            The count in the current window, the milliseconds until it expires
            and an identifier unique to that window
        """
        pass

    @abstractmethod
    async def decrement(self, key: str, window_id: str) -> None:
        """Give back one request, but only if ``window_id`` is still the open window."""
        pass

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Drop the window for a key."""
        pass

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


@dataclass
class _Window:
    count: int
    expires_at: float
    window_id: str


class MemoryCounterStore(CounterStore):
    """
    Single process counter store.

    There is no await between reading and writing a window, so increments are
    atomic on the event loop. Expired windows are swept every
    ``sweep_interval`` seconds.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval: float = 60.0):
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._window_ids = itertools.count(1)
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def __len__(self) -> int:
        return len(self._windows)

    async def increment(self, key: str, window_ms: int) -> WindowHit:
        now = self._clock()
        self._maybe_sweep(now)

        window = self._windows.get(key)
        if window is None or window.expires_at <= now:
            window = _Window(count=0, expires_at=now + window_ms / 1000,
                             window_id=str(next(self._window_ids)))
            self._windows[key] = window

        window.count += 1
        return WindowHit(window.count, math.ceil((window.expires_at - now) * 1000), window.window_id)

    async def decrement(self, key: str, window_id: str) -> None:
        window = self._windows.get(key)
        if (window and window.window_id == window_id
                and window.expires_at > self._clock() and window.count > 0):
            window.count -= 1

    async def reset(self, key: str) -> None:
        self._windows.pop(key, None)

    async def close(self) -> None:
        self._windows.clear()

    def _maybe_sweep(self, now: float):
        if now < self._next_sweep:
            return
        expired = [key for key, window in self._windows.items() if window.expires_at <= now]
        for key in expired:
            del self._windows[key]
        self._next_sweep = now + self._sweep_interval


class RedisCounterStore(CounterStore):
    """
    Redis backed counter store shared by every pipeline instance.

    Each key is a hash holding the window ``count`` and the ``window`` id set
    when the window opened.
    """

    # Atomic fixed window increment; the expiry and window id are set on the first hit only
    INCREMENT_SCRIPT = """
    local current = redis.call('HINCRBY', KEYS[1], 'count', 1)
    local ttl = redis.call('PTTL', KEYS[1])
    if current == 1 or ttl < 0 then
        redis.call('HSET', KEYS[1], 'window', ARGV[2])
        redis.call('PEXPIRE', KEYS[1], ARGV[1])
        ttl = tonumber(ARGV[1])
    end
    return {current, ttl, redis.call('HGET', KEYS[1], 'window')}
    """

    DECREMENT_SCRIPT = """
    if redis.call('HGET', KEYS[1], 'window') ~= ARGV[1] then
        return 0
    end
    local current = tonumber(redis.call('HGET', KEYS[1], 'count'))
    if current and current > 0 then
        return redis.call('HINCRBY', KEYS[1], 'count', -1)
    end
    return 0
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client
        self.logger = get_logger("rate_limit.redis")

    @classmethod
    def from_url(cls, url: str, **connection_kwargs) -> "RedisCounterStore":
        return cls(redis.from_url(url, **connection_kwargs))

    async def increment(self, key: str, window_ms: int) -> WindowHit:
        try:
            result = await self.redis.eval(self.INCREMENT_SCRIPT, 1, key, window_ms, uuid.uuid4().hex)
        except RedisError as e:
            self.logger.error("Rate limit counter increment failed", counter=key, error=str(e))
            raise EventStoreUnavailable(str(e)) from e

        window_id = result[2]
        if isinstance(window_id, bytes):
            window_id = window_id.decode("ascii")
        return WindowHit(int(result[0]), int(result[1]), window_id)

    async def decrement(self, key: str, window_id: str) -> None:
        try:
            await self.redis.eval(self.DECREMENT_SCRIPT, 1, key, window_id)
        except RedisError as e:
            self.logger.error("Rate limit counter refund failed", counter=key, error=str(e))
            raise EventStoreUnavailable(str(e)) from e

    async def reset(self, key: str) -> None:
        try:
            await self.redis.delete(key)
        except RedisError as e:
            self.logger.error("Rate limit counter reset failed", counter=key, error=str(e))
            raise EventStoreUnavailable(str(e)) from e

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as e:
            self.logger.warning("Redis ping failed", error=str(e))
            return False

    async def close(self) -> None:
        await self.redis.aclose()


def _matches_prefix(path: str, prefix: str) -> bool:
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


class RateLimiter:
    """Tiered fixed window rate limiter."""

    def __init__(self,
                 store: CounterStore,
                 tiers: Iterable[RateLimitTier] = (),
                 key_prefix: str = "rl:",
                 auth_path_prefix: str = "/api/auth",
                 api_path_prefix: str = "/api",
                 upload_path_prefixes: Iterable[str] = ("/api/media/upload", "/api/media"),
                 metrics: Optional[MetricsRegistry] = None):
        self.store = store
        self.tiers: Dict[str, RateLimitTier] = {tier.name: tier for tier in tiers}
        self.key_prefix = key_prefix
        self.auth_path_prefix = auth_path_prefix
        self.api_path_prefix = api_path_prefix
        self.upload_path_prefixes: List[str] = list(upload_path_prefixes)
        self.metrics = metrics
        self.logger = get_logger("rate_limiter")

    @classmethod
    def from_settings(cls, settings: Any, store: CounterStore,
                      metrics: Optional[MetricsRegistry] = None) -> "RateLimiter":
        """Build the auth, api, public and upload tiers from settings."""
        tiers = [
            RateLimitTier(
                name="auth",
                window_ms=settings.auth_rate_limit_window_seconds * 1000,
                max_requests=settings.auth_rate_limit_max_requests,
            ),
            RateLimitTier(
                name="api",
                window_ms=settings.api_rate_limit_window_seconds * 1000,
                max_requests=settings.api_rate_limit_max_requests,
                skip_successful_requests=settings.api_rate_limit_skip_successful,
            ),
            RateLimitTier(
                name="public",
                window_ms=settings.public_rate_limit_window_seconds * 1000,
                max_requests=settings.public_rate_limit_max_requests,
                skip_successful_requests=settings.public_rate_limit_skip_successful,
            ),
            RateLimitTier(
                name="upload",
                window_ms=settings.upload_rate_limit_window_seconds * 1000,
                max_requests=settings.upload_rate_limit_max_requests,
            ),
        ]
        return cls(
            store,
            tiers,
            key_prefix=settings.rate_limit_key_prefix,
            auth_path_prefix=settings.auth_path_prefix,
            api_path_prefix=settings.api_path_prefix,
            upload_path_prefixes=settings.upload_path_prefixes,
            metrics=metrics,
        )

    def get_tier(self, name: str) -> RateLimitTier:
        try:
            return self.tiers[name]
        except KeyError:
            raise ValueError(f"Unknown rate limit tier: {name}") from None

    def tier_for(self, method: str, path: str) -> Optional[RateLimitTier]:
        """Pick the tier that governs a request, by path prefix."""
        if _matches_prefix(path, self.auth_path_prefix):
            name = "auth"
        elif method.upper() in WRITE_METHODS and any(
            _matches_prefix(path, prefix) for prefix in self.upload_path_prefixes
        ):
            name = "upload"
        elif _matches_prefix(path, self.api_path_prefix):
            name = "api"
        else:
            name = "public"
        return self.tiers.get(name)

    def key_for(self, tier: RateLimitTier, client_key: str) -> str:
        return f"{self.key_prefix}{tier.name}:{client_key or UNKNOWN_CLIENT}"

    async def check_and_increment(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        """
        Count one request against ``key``.

        The first request opens a window of ``window_ms``; once the count in
        that window exceeds ``max_requests`` the result is not allowed until
        the window expires.

        Raises:
            ValueError: On an empty key or non-positive window or budget
            EventStoreUnavailable: If the counter store cannot be reached
        """
        if not key:
            raise ValueError("Rate limit key must not be empty")
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")

        # The increment completes even if the request task is cancelled
        count, ttl_ms, window_id = await asyncio.shield(self.store.increment(key, window_ms))
        if ttl_ms <= 0:
            ttl_ms = window_ms

        return RateLimitResult(
            allowed=count <= max_requests,
            count=count,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            retry_after_seconds=max(1, math.ceil(ttl_ms / 1000)),
            reset_after_ms=ttl_ms,
            window_id=window_id,
        )

    async def hit(self, tier_name: str, client_key: str) -> RateLimitResult:
        """Count a request from ``client_key`` against a tier."""
        tier = self.get_tier(tier_name)
        result = await self.check_and_increment(
            self.key_for(tier, client_key), tier.window_ms, tier.max_requests
        )
        if not result.allowed:
            self.logger.warning(
                "Rate limit exceeded",
                tier=tier.name,
                client_id=client_key,
                count=result.count,
                limit=result.limit,
                retry_after=result.retry_after_seconds,
            )
            if self.metrics:
                self.metrics.record_rate_limit_rejection(tier.name)
        return result

    async def refund(self, tier_name: str, client_key: str, window_id: str) -> None:
        """
        Give back a request that should not count against the budget.

        ``window_id`` comes from the ``RateLimitResult`` of the request; a
        window opened since then is left untouched.
        """
        tier = self.get_tier(tier_name)
        await asyncio.shield(self.store.decrement(self.key_for(tier, client_key), window_id))

    async def reset(self, tier_name: str, client_key: str) -> None:
        tier = self.get_tier(tier_name)
        await self.store.reset(self.key_for(tier, client_key))
        self.logger.info("Rate limit reset", tier=tier.name, client_id=client_key)


class SpeedLimiter:
    """
    Progressive delay instead of rejection.

    After ``delay_after`` requests in a window each further request is delayed
    by ``delay_ms`` more than the previous one, capped at ``max_delay_ms``.
    """

    def __init__(self,
                 store: CounterStore,
                 window_ms: int = 15 * 60 * 1000,
                 delay_after: int = 10,
                 delay_ms: int = 500,
                 max_delay_ms: int = 20_000,
                 key_prefix: str = "sd:",
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self.store = store
        self.window_ms = window_ms
        self.delay_after = delay_after
        self.delay_ms = delay_ms
        self.max_delay_ms = max_delay_ms
        self.key_prefix = key_prefix
        self._sleep = sleep
        self.logger = get_logger("speed_limiter")

    @classmethod
    def from_settings(cls, settings: Any, store: CounterStore) -> "SpeedLimiter":
        return cls(
            store,
            window_ms=settings.speed_limit_window_seconds * 1000,
            delay_after=settings.speed_limit_delay_after,
            delay_ms=settings.speed_limit_delay_ms,
            max_delay_ms=settings.speed_limit_max_delay_ms,
            key_prefix=settings.speed_limit_key_prefix,
        )

    def key_for(self, client_key: str) -> str:
        return f"{self.key_prefix}{client_key or UNKNOWN_CLIENT}"

    def delay_for(self, count: int) -> int:
        """Delay in milliseconds for the ``count``-th request of a window."""
        if count <= self.delay_after:
            return 0
        return min((count - self.delay_after) * self.delay_ms, self.max_delay_ms)

    async def throttle(self, client_key: str) -> Tuple[int, str]:
        """Count a request and sleep for its delay. Returns the delay applied and the window id."""
        count, _, window_id = await asyncio.shield(self.store.increment(self.key_for(client_key), self.window_ms))
        delay = self.delay_for(count)
        if delay:
            self.logger.debug("Delaying request", client_id=client_key, delay_ms=delay, count=count)
            await self._sleep(delay / 1000)
        return delay, window_id

    async def refund(self, client_key: str, window_id: str) -> None:
        await asyncio.shield(self.store.decrement(self.key_for(client_key), window_id))

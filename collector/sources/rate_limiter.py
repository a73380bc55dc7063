"""
Rate Limiter and Quota Tracker - keep provider request volume within quota.

Provides:
- Token bucket per source (capacity = hourly quota, continuous refill)
- Even-distribution mode that spaces requests across the window
- Fail-fast or bounded blocking consumption
- Usage statistics and low quota alerts

The buckets are the only state shared between concurrent searches; each
bucket is guarded by its own asyncio.Lock.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional

from collector.errors import SourceError, SourceErrorKind

logger = logging.getLogger(__name__)

DEFAULT_HOURLY_QUOTAS = {
    "unsplash": 50,
    "pixabay": 100,
    "pexels": 200,
}


class TokenBucket:
    """
    Token bucket for one source.

    Tokens refill continuously at capacity / duration per second. In
    even-distribution mode a token is also refused until duration / capacity
    seconds have passed since the previous grant, so a full bucket cannot be
    drained in one burst.
    """

    def __init__(
        self,
        capacity: int,
        duration: float = 3600.0,
        even_distribution: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if duration <= 0:
            raise ValueError("duration must be positive")

        self.capacity = capacity
        self.duration = duration
        self.even_distribution = even_distribution
        self._clock = clock
        self._tokens = float(capacity)
        self._updated_at = clock()
        self._last_grant: Optional[float] = None
        self.consumed = 0

    @property
    def refill_rate(self) -> float:
        """Tokens per second."""
        return self.capacity / self.duration

    @property
    def interval(self) -> float:
        """Minimum spacing between grants in even-distribution mode."""
        return self.duration / self.capacity

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.refill_rate)
        self._updated_at = now

    def try_consume(self) -> bool:
        """Take one token if available. Caller must hold the bucket lock."""
        self._refill()
        now = self._clock()

        if self.even_distribution and self._last_grant is not None:
            if now - self._last_grant < self.interval:
                return False

        if self._tokens < 1.0:
            return False

        self._tokens -= 1.0
        self._last_grant = now
        self.consumed += 1
        return True

    def wait_time(self) -> float:
        """Seconds until the next token could be granted."""
        self._refill()
        waits = [0.0]
        if self._tokens < 1.0:
            waits.append((1.0 - self._tokens) / self.refill_rate)
        if self.even_distribution and self._last_grant is not None:
            waits.append(self.interval - (self._clock() - self._last_grant))
        return max(waits)

    def is_spacing(self) -> bool:
        """True when a token is available but even spacing holds it back."""
        self._refill()
        return self.even_distribution and self._tokens >= 1.0

    @property
    def remaining(self) -> int:
        self._refill()
        return int(self._tokens)

    def reset(self) -> None:
        self._tokens = float(self.capacity)
        self._updated_at = self._clock()
        self._last_grant = None
        self.consumed = 0


class RateLimiter:
    """
    Per-source rate limiter shared by all source clients.

    Usage:
        limiter = RateLimiter({"unsplash": 50, "pexels": 200})
        if await limiter.consume("unsplash"):
            # Make API call
        else:
            # Skip this source for this search

    consume() fails fast on an exhausted quota by default. With block=True
    it waits for a token, but never longer than max_wait seconds. The
    even-distribution spacing is waited out in either mode, under the
    same max_wait ceiling.
    """

    def __init__(
        self,
        quotas: Optional[Dict[str, int]] = None,
        duration: float = 3600.0,
        even_distribution: bool = False,
        block: bool = False,
        max_wait: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize rate limiter.

        Args:
            quotas: Requests allowed per duration window, keyed by source
            duration: Window length in seconds (default one hour)
            even_distribution: Space requests evenly across the window
            block: Wait for a token instead of failing fast
            max_wait: Hard ceiling on any single wait (seconds)
            clock: Monotonic clock (injectable for tests)
            sleep: Awaitable sleep (injectable for tests)
        """
        quotas = quotas if quotas is not None else DEFAULT_HOURLY_QUOTAS
        self.duration = duration
        self.block = block
        self.max_wait = max_wait
        self._sleep = sleep
        self._buckets: Dict[str, TokenBucket] = {
            source: TokenBucket(capacity, duration, even_distribution, clock)
            for source, capacity in quotas.items()
        }
        self._locks: Dict[str, asyncio.Lock] = {source: asyncio.Lock() for source in quotas}

    @classmethod
    def from_settings(cls, settings_module=None, **kwargs) -> "RateLimiter":
        if settings_module is None:
            from config import settings as settings_module

        quotas = {
            "unsplash": getattr(settings_module, "UNSPLASH_HOURLY_QUOTA", DEFAULT_HOURLY_QUOTAS["unsplash"]),
            "pixabay": getattr(settings_module, "PIXABAY_HOURLY_QUOTA", DEFAULT_HOURLY_QUOTAS["pixabay"]),
            "pexels": getattr(settings_module, "PEXELS_HOURLY_QUOTA", DEFAULT_HOURLY_QUOTAS["pexels"]),
        }
        kwargs.setdefault("even_distribution", getattr(settings_module, "RATE_LIMIT_EVEN_DISTRIBUTION", False))
        kwargs.setdefault("max_wait", getattr(settings_module, "RATE_LIMIT_BLOCK_DURATION", 60.0))
        return cls(quotas, **kwargs)

    def has_source(self, source: str) -> bool:
        return source in self._buckets

    async def consume(self, source: str, block: Optional[bool] = None) -> bool:
        """
        Take one request token for a source.

        Sources without a configured quota are unlimited.

        Args:
            source: Provider name
            block: Override the limiter's blocking mode for this call

        Returns:
            True if the request may proceed, False if the quota is exhausted
        """
        bucket = self._buckets.get(source)
        if bucket is None:
            return True

        block = self.block if block is None else block
        lock = self._locks[source]
        waited = 0.0

        while True:
            async with lock:
                if bucket.try_consume():
                    return True
                wait = bucket.wait_time()
                spacing = bucket.is_spacing()

            # Even spacing is always waited out; only exhaustion fails fast.
            if not (block or spacing) or waited + wait > self.max_wait:
                logger.info(
                    "Rate limit reached for %s (remaining %d/%d)",
                    source,
                    bucket.remaining,
                    bucket.capacity,
                )
                return False

            logger.debug("Waiting %.2fs for %s rate limit token", wait, source)
            await self._sleep(wait)
            waited += wait

    async def acquire(self, source: str, block: Optional[bool] = None) -> None:
        """
        Like consume(), but raise SourceError(rate_limited) on exhaustion.

        The error is marked non-retryable so the search skips the source
        instead of hammering an exhausted quota.
        """
        if not await self.consume(source, block=block):
            raise SourceError(
                SourceErrorKind.RATE_LIMITED,
                f"Rate limit exceeded for {source}",
                source=source,
                retryable=False,
            )

    def remaining(self, source: str) -> Optional[int]:
        bucket = self._buckets.get(source)
        return bucket.remaining if bucket else None

    def reset(self, source: Optional[str] = None) -> None:
        targets = [source] if source else list(self._buckets)
        for name in targets:
            if name in self._buckets:
                self._buckets[name].reset()

    def get_usage_stats(self) -> Dict[str, Dict[str, int]]:
        """
        Get current usage statistics.

        Returns:
            Dict keyed by source with consumed, remaining and capacity
        """
        return {
            source: {
                "consumed": bucket.consumed,
                "remaining": bucket.remaining,
                "capacity": bucket.capacity,
            }
            for source, bucket in self._buckets.items()
        }


class QuotaTracker:
    """
    Track provider quota usage and provide alerts.

    Usage:
        tracker = QuotaTracker(limiter)
        for source in tracker.low_quota_sources():
            logger.warning("%s quota is running low", source)
    """

    def __init__(self, rate_limiter: RateLimiter):
        self.rate_limiter = rate_limiter

    def get_usage_stats(self) -> Dict[str, Dict[str, int]]:
        return self.rate_limiter.get_usage_stats()

    def is_quota_low(self, source: str, threshold: float = 0.1) -> bool:
        """
        Check if a source's quota is running low.

        Args:
            source: Provider name
            threshold: Fraction of quota considered "low" (default 0.1 = 10%)
        """
        stats = self.rate_limiter.get_usage_stats().get(source)
        if not stats:
            return False
        return stats["remaining"] < stats["capacity"] * threshold

    def low_quota_sources(self, threshold: float = 0.1):
        return [
            source
            for source in self.rate_limiter.get_usage_stats()
            if self.is_quota_low(source, threshold)
        ]

"""
API Rate Limiter
================

Throttle, short-lived cache and bounded polling for provider API calls.

    - execute(): cache lookup, then a slot in a sliding one-minute window,
      then the call; concurrent callers with the same key share one call
    - poll_until(): repeated fetches with backoff until a predicate holds
    - calculate_interval(): base * multiplier^(attempt-1) clamped to
      [min, max] plus jitter; the max interval while idle

Design Rules:
    - Waiters pass the throttle barrier in FIFO order
    - The cache is process local; expired entries are evicted on insert
    - Nothing is awaited while the cache map is being mutated
"""

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple, Type, TypeVar


logger = logging.getLogger(__name__)


T = TypeVar("T")


@dataclass
class CacheEntry:
    key: str
    value: Any
    fetched_at: float
    ttl: float

    def fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl


class ApiRateLimiter:
    """
    Sliding-window rate limiter with a TTL cache.

    Example:
        limiter = ApiRateLimiter(requests_per_minute=100, cache_seconds=5)
        body = await limiter.execute(lambda: fetch(), cache_key="broadcast:abc")
    """

    def __init__(
        self,
        requests_per_minute: int = 100,
        cache_seconds: float = 5.0,
        base_interval: float = 15.0,
        min_interval: float = 10.0,
        max_interval: float = 60.0,
        idle_threshold: float = 300.0,
        backoff_multiplier: float = 1.5,
        max_jitter: float = 5.0,
        enabled: bool = True,
        window_seconds: float = 60.0,
    ) -> None:
        self.requests_per_minute = requests_per_minute
        self.cache_seconds = cache_seconds
        self.base_interval = base_interval
        self.min_interval = min_interval
        self.max_interval = max_interval
        self.idle_threshold = idle_threshold
        self.backoff_multiplier = backoff_multiplier
        self.max_jitter = max_jitter
        self.enabled = enabled
        self.window_seconds = window_seconds

        self.total_requests: int = 0
        self.cache_hits: int = 0
        self.rate_limit_waits: int = 0

        self._cache: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._timestamps: Deque[float] = deque()
        self._barrier = asyncio.Lock()
        self._last_activity = time.monotonic()

    @classmethod
    def from_config(cls, polling) -> "ApiRateLimiter":
        return cls(
            requests_per_minute=polling.requests_per_minute,
            cache_seconds=polling.cache_seconds,
            base_interval=polling.base_interval_seconds,
            min_interval=polling.min_interval_seconds,
            max_interval=polling.max_interval_seconds,
            idle_threshold=polling.idle_threshold_minutes * 60.0,
            backoff_multiplier=polling.backoff_multiplier,
            max_jitter=polling.max_jitter_seconds,
            enabled=polling.enabled,
        )

    @property
    def idle(self) -> bool:
        return time.monotonic() - self._last_activity > self.idle_threshold

    # =========================================================================
    # Execute
    # =========================================================================

    async def execute(
        self,
        api_call: Callable[[], Awaitable[T]],
        cache_key: Optional[str] = None,
        ttl: Optional[float] = None,
    ) -> T:
        """
        Run api_call under the rate limit, serving from cache when fresh.

        Args:
            api_call: Zero-argument coroutine factory
            cache_key: Key for caching and in-flight sharing; None disables both
            ttl: Cache lifetime override in seconds
        """
        if not self.enabled:
            return await api_call()

        if cache_key is not None:
            entry = self._cache.get(cache_key)
            if entry is not None and entry.fresh(time.monotonic()):
                self.cache_hits += 1
                logger.debug(f"Cache hit for {cache_key}")
                return entry.value
            pending = self._inflight.get(cache_key)
            if pending is not None:
                self.cache_hits += 1
                return await asyncio.shield(pending)

        future: Optional[asyncio.Future] = None
        if cache_key is not None:
            future = asyncio.get_running_loop().create_future()
            self._inflight[cache_key] = future

        started = time.monotonic()
        try:
            await self._acquire_slot()
            result = await api_call()
        except BaseException as e:
            if future is not None:
                if isinstance(e, Exception):
                    future.set_exception(e)
                else:
                    future.cancel()
                # Mark retrieved so an unshared failure is not reported on GC
                if not future.cancelled():
                    future.exception()
            logger.debug(
                f"API call {cache_key or '<uncached>'} failed after "
                f"{(time.monotonic() - started) * 1000:.0f}ms: {e!r}"
            )
            raise
        finally:
            if cache_key is not None:
                self._inflight.pop(cache_key, None)

        self._last_activity = time.monotonic()
        if cache_key is not None:
            now = time.monotonic()
            self._evict_expired(now)
            self._cache[cache_key] = CacheEntry(
                key=cache_key,
                value=result,
                fetched_at=now,
                ttl=self.cache_seconds if ttl is None else ttl,
            )
            future.set_result(result)
        return result

    async def _acquire_slot(self) -> None:
        async with self._barrier:
            now = time.monotonic()
            self._prune(now)
            if len(self._timestamps) >= self.requests_per_minute:
                wait = self._timestamps[0] + self.window_seconds - now
                if wait > 0:
                    self.rate_limit_waits += 1
                    logger.warning(
                        f"Rate limit reached ({len(self._timestamps)} requests in window), "
                        f"waiting {wait:.1f}s"
                    )
                    await asyncio.sleep(wait)
                self._prune(time.monotonic())
            self._timestamps.append(time.monotonic())
            self.total_requests += 1

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, entry in self._cache.items() if not entry.fresh(now)]
        for key in expired:
            del self._cache[key]

    # =========================================================================
    # Polling
    # =========================================================================

    def calculate_interval(self, attempt: int = 1) -> float:
        if self.idle:
            interval = self.max_interval
        elif attempt <= 1:
            interval = self.base_interval
        else:
            interval = min(
                self.base_interval * self.backoff_multiplier ** (attempt - 1),
                self.max_interval,
            )
        interval = max(interval, self.min_interval)
        return interval + random.uniform(0, self.max_jitter)

    async def poll_until(
        self,
        fetch: Callable[[], Awaitable[T]],
        predicate: Callable[[T], bool],
        timeout: float,
        interval: Optional[float] = None,
        context: str = "poll",
        retry_on: Tuple[Type[Exception], ...] = (Exception,),
    ) -> Optional[T]:
        """
        Call fetch until predicate(result) holds or timeout elapses.

        Args:
            fetch: Zero-argument coroutine factory; wrap provider calls in
                execute() so they are throttled and cached
            predicate: Success condition on the fetched value
            timeout: Overall budget in seconds
            interval: Fixed spacing between attempts; None uses calculate_interval
            context: Label for logs
            retry_on: Exceptions logged and retried instead of propagated

        Returns:
            The first value satisfying predicate, else None.
        """
        deadline = time.monotonic() + timeout
        attempt = 0
        while time.monotonic() < deadline:
            attempt += 1
            try:
                value = await fetch()
                if predicate(value):
                    logger.info(f"Poll succeeded: {context} after {attempt} attempt(s)")
                    return value
            except retry_on as e:
                logger.warning(f"Poll error: {context} attempt {attempt}: {e}")

            delay = interval if interval is not None else self.calculate_interval(attempt)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(delay, remaining))

        logger.warning(f"Poll exhausted: {context} after {attempt} attempt(s)")
        return None

    # =========================================================================
    # Introspection
    # =========================================================================

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("Provider API cache cleared")

    def stats(self) -> dict:
        idle_minutes = (time.monotonic() - self._last_activity) / 60.0
        return {
            "total_requests": self.total_requests,
            "cache_hits": self.cache_hits,
            "rate_limit_waits": self.rate_limit_waits,
            "idle": self.idle,
            "idle_minutes": round(idle_minutes, 2),
            "cached_item_count": len(self._cache),
        }

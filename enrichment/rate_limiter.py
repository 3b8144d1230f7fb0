"""
Fixed-window token bucket keyed by identifier (client IP, user id, ...).

The bucket is refilled only when a full window has elapsed since the last
refill. Stale entries are swept lazily, at most once per minute, on the
back of regular calls; no background task is needed.

State lives in an injected :class:`RateLimitStore`. The in-memory store is
per-process: every instance of a multi-process deployment keeps its own
counters.
"""

import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from core.config import settings
from core.exceptions import ValidationError

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_MS = 60_000


@dataclass
class RateLimitEntry:
    tokens: int
    last_refill: int
    window_ms: int


@dataclass
class RateLimitResult:
    success: bool
    remaining: int
    reset: int  # epoch milliseconds


def _now_ms() -> int:
    return int(time.time() * 1000)


# ============================================================================
# Stores
# ============================================================================

class RateLimitStore(ABC):
    """Key/value store for bucket state with an atomic read-modify-write."""

    @abstractmethod
    async def update(
        self,
        identifier: str,
        fn: Callable[[Optional[RateLimitEntry]], Tuple[RateLimitEntry, RateLimitResult]],
    ) -> RateLimitResult:
        """Apply ``fn`` to the current entry and persist the entry it returns."""

    @abstractmethod
    async def evict_idle(self, now_ms: int) -> int:
        """Drop entries idle for more than twice their window. Returns count."""

    @abstractmethod
    async def clear(self) -> None:
        ...


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local store. ``update`` never suspends, so it is atomic under asyncio."""

    def __init__(self):
        self._entries: Dict[str, RateLimitEntry] = {}

    async def update(self, identifier, fn):
        entry, result = fn(self._entries.get(identifier))
        self._entries[identifier] = entry
        return result

    async def evict_idle(self, now_ms: int) -> int:
        stale = [
            key for key, entry in self._entries.items()
            if now_ms - entry.last_refill > entry.window_ms * 2
        ]
        for key in stale:
            del self._entries[key]
        return len(stale)

    async def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._entries


# ============================================================================
# Limiter
# ============================================================================

class TokenBucketLimiter:
    """
    Per-identifier fixed-window throttle.

    Usage:
        limiter = TokenBucketLimiter()
        result = await limiter.check_and_consume("203.0.113.7", limit=60, window_ms=60_000)
        if not result.success:
            ...  # reject, retry after result.reset
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        clock: Callable[[], int] = _now_ms,
        cleanup_interval_ms: int = CLEANUP_INTERVAL_MS,
    ):
        self.store = store or InMemoryRateLimitStore()
        self.clock = clock
        self.cleanup_interval_ms = cleanup_interval_ms
        self._last_cleanup = clock()

    async def _cleanup_if_needed(self, now: int) -> None:
        if now - self._last_cleanup < self.cleanup_interval_ms:
            return
        self._last_cleanup = now
        evicted = await self.store.evict_idle(now)
        if evicted:
            logger.debug(f"Rate limiter evicted {evicted} idle entries")

    async def check_and_consume(self, identifier: str, limit: int, window_ms: int) -> RateLimitResult:
        """
        Take one token for ``identifier``.

        Args:
            identifier: Client key
            limit: Requests allowed per window
            window_ms: Window length in milliseconds

        Returns:
            RateLimitResult with success flag, tokens left and reset time (ms)
        """
        if limit < 1 or window_ms < 1:
            raise ValidationError(
                "Rate limit and window must be positive",
                context={"limit": limit, "window_ms": window_ms}
            )

        now = self.clock()
        await self._cleanup_if_needed(now)

        def take(entry: Optional[RateLimitEntry]) -> Tuple[RateLimitEntry, RateLimitResult]:
            # First request, or a full window has passed: refill completely
            if entry is None or now - entry.last_refill >= window_ms:
                fresh = RateLimitEntry(tokens=limit - 1, last_refill=now, window_ms=window_ms)
                return fresh, RateLimitResult(True, fresh.tokens, now + window_ms)

            reset = entry.last_refill + window_ms
            if entry.tokens > 0:
                entry.tokens -= 1
                return entry, RateLimitResult(True, entry.tokens, reset)

            return entry, RateLimitResult(False, 0, reset)

        result = await self.store.update(identifier, take)
        if not result.success:
            logger.info(f"Rate limit exceeded for {identifier}")
        return result


# ============================================================================
# Pre-configured limiters
# ============================================================================

_default_limiter = TokenBucketLimiter()


async def auth_rate_limit(identifier: str) -> RateLimitResult:
    """Login attempts: 5 per 15 minutes by default."""
    return await _default_limiter.check_and_consume(
        f"auth:{identifier}", settings.AUTH_RATE_LIMIT, settings.AUTH_RATE_WINDOW_MS
    )


async def api_rate_limit(identifier: str) -> RateLimitResult:
    """General API traffic: 60 per minute by default."""
    return await _default_limiter.check_and_consume(
        f"api:{identifier}", settings.API_RATE_LIMIT, settings.API_RATE_WINDOW_MS
    )

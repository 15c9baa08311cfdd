"""Fixed-window request admission keyed by caller identity.

Each key (``route:client``) owns a counter that resets wholesale once its
window expires. Bursts of up to twice the limit are possible across a window
boundary; this is an abuse backstop, not a precise quota.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..config import runtime_config
from .stores import InMemoryStore, KeyValueStore

logger = logging.getLogger("verify.rate_limiter")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RateLimitWindow:
    count: int
    reset_at: int


@dataclass(frozen=True)
class RateLimitResult:
    limited: bool
    remaining: int


class FixedWindowRateLimiter:
    """In-process fixed-window limiter with bounded key cardinality."""

    def __init__(
        self,
        store: Optional[KeyValueStore[RateLimitWindow]] = None,
        *,
        clock: Callable[[], int] = _now_ms,
        gc_interval_ms: int = 60_000,
        high_water: int = 10_000,
        hard_cap: int = 8_000,
    ) -> None:
        self.store: KeyValueStore[RateLimitWindow] = store if store is not None else InMemoryStore()
        self._clock = clock
        self.gc_interval_ms = gc_interval_ms
        self.high_water = high_water
        self.hard_cap = min(hard_cap, high_water)
        self._last_gc = clock()

    def admit(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        self._maybe_collect()

        now = self._clock()
        window = self.store.get(key)
        if window is None or now > window.reset_at:
            self.store.set(key, RateLimitWindow(count=1, reset_at=now + window_ms))
            return RateLimitResult(limited=False, remaining=max(0, limit - 1))

        # Stop counting once over the limit so the stored count stays at limit + 1.
        if window.count <= limit:
            window.count += 1
            self.store.set(key, window)

        if window.count > limit:
            return RateLimitResult(limited=True, remaining=0)
        return RateLimitResult(limited=False, remaining=max(0, limit - window.count))

    def _maybe_collect(self) -> None:
        now = self._clock()
        if now - self._last_gc < self.gc_interval_ms and len(self.store) <= self.high_water:
            return
        self.collect(now)

    def collect(self, now: Optional[int] = None) -> int:
        """Purge expired windows, then evict the oldest until under the hard cap."""

        now = self._clock() if now is None else now
        self._last_gc = now
        removed = 0
        for key, window in self.store.items():
            if now > window.reset_at:
                self.store.delete(key)
                removed += 1

        overflow = len(self.store) - self.hard_cap
        if overflow > 0:
            oldest = sorted(self.store.items(), key=lambda item: item[1].reset_at)[:overflow]
            for key, _window in oldest:
                self.store.delete(key)
            removed += len(oldest)
            logger.warning(
                "rate limiter evicted %s live windows (cap=%s size=%s)",
                len(oldest),
                self.hard_cap,
                len(self.store),
            )
        return removed

    def reset(self) -> None:
        for key, _window in self.store.items():
            self.store.delete(key)
        self._last_gc = self._clock()


_default_limiter: FixedWindowRateLimiter | None = None


def get_rate_limiter() -> FixedWindowRateLimiter:
    global _default_limiter
    if _default_limiter is None:
        _default_limiter = FixedWindowRateLimiter(
            gc_interval_ms=runtime_config.rate_limit_gc_interval_ms,
            high_water=runtime_config.rate_limit_high_water,
            hard_cap=runtime_config.rate_limit_hard_cap,
        )
    return _default_limiter


def rate_limit(key: str, limit: int = 60, window_ms: int = 60_000) -> RateLimitResult:
    """Admission check against the process-wide limiter."""

    return get_rate_limiter().admit(key, limit, window_ms)


# Test helper to inject a limiter with a fake clock
def _set_rate_limiter_for_tests(limiter: FixedWindowRateLimiter | None) -> None:
    global _default_limiter
    _default_limiter = limiter

"""
Token bucket rate limiting per external service.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

import structlog

from pipeguard.config.config import RateLimitConfig

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

# Refill arithmetic drifts in the last bits; a bucket this close to a whole
# permit holds one.
TOKEN_EPSILON = 1e-9
MIN_WAIT_SECONDS = 1e-3


@dataclass(frozen=True)
class RateLimitResult:
    """Result of one acquire: whether a permit was granted and whether the caller had to wait for it."""

    allowed: bool
    deferred: bool = False
    waited: float = 0.0

    def __bool__(self) -> bool:
        return self.allowed


class ServiceRateLimiter:
    """
    Token bucket bounding the request rate to one service.

    The bucket refills at ``max_requests / window_seconds`` permits per second
    and holds at most ``max_requests + burst_allowance`` permits. It starts full.
    """

    def __init__(
        self,
        service_name: str,
        config: RateLimitConfig,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.service_name = service_name
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self._rate = config.max_requests / config.window_seconds
        self._capacity = float(config.max_requests + config.burst_allowance)
        self._tokens = self._capacity
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    @property
    def capacity(self) -> float:
        return self._capacity

    @property
    def available(self) -> float:
        return self._tokens

    def _refill(self) -> float:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._last_refill = now
        return now

    def _take(self) -> bool:
        if self._tokens < 1 - TOKEN_EPSILON:
            return False
        self._tokens = max(0.0, self._tokens - 1)
        return True

    async def try_acquire(self) -> bool:
        """Take a permit if one is available right now."""
        async with self._lock:
            self._refill()
            return self._take()

    async def acquire(self) -> RateLimitResult:
        """
        Take a permit according to the configured denial policy.

        With ``on_limit="wait"`` the caller is suspended until a permit frees
        up, for at most ``max_wait_seconds``. The lock is never held while
        sleeping. The result records whether the caller was deferred.
        """
        if self.config.on_limit == "reject":
            return RateLimitResult(allowed=await self.try_acquire())

        started = self._clock()
        deadline = started + self.config.max_wait_seconds
        deferred = False
        while True:
            async with self._lock:
                now = self._refill()
                if self._take():
                    return RateLimitResult(allowed=True, deferred=deferred, waited=now - started)
                wait_for = (1 - self._tokens) / self._rate
            if now + wait_for > deadline:
                logger.debug(
                    "Rate limit wait exceeds bound",
                    service=self.service_name,
                    wait_for=wait_for,
                    max_wait=self.config.max_wait_seconds,
                )
                return RateLimitResult(allowed=False, deferred=deferred, waited=now - started)
            deferred = True
            await self._sleep(max(wait_for, MIN_WAIT_SECONDS))


class RateLimiterRegistry:
    """Service-keyed registry of rate limiters. Services without a limit get none."""

    def __init__(self, factory: Callable[[str], Optional[ServiceRateLimiter]]) -> None:
        self._factory = factory
        self._limiters: Dict[str, Optional[ServiceRateLimiter]] = {}

    def get_limiter(self, service_name: str) -> Optional[ServiceRateLimiter]:
        if service_name not in self._limiters:
            self._limiters[service_name] = self._factory(service_name)
        return self._limiters[service_name]

    def clear(self) -> None:
        self._limiters.clear()

"""Per-target request rate limiting for fetch attempts."""
from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Mapping, Optional

import structlog

LOGGER = structlog.get_logger(__name__)

SLIDING = "sliding"
FIXED = "fixed"


@dataclass(frozen=True)
class RatePolicy:
    """Allowance for one target: ``max_requests`` per ``window`` seconds."""

    max_requests: int = 10
    window: float = 60.0
    kind: str = SLIDING


class RateLimitBucket:
    """Tracks the permits granted to one target.

    The bucket lock is held while a waiter sleeps, so waiters are served in
    arrival order and never overshoot the allowance.
    """

    def __init__(
        self,
        target: str,
        policy: RatePolicy,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if policy.kind not in (SLIDING, FIXED):
            raise ValueError(f"unknown rate policy: {policy.kind}")
        self.target = target
        self.policy = policy
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._stamps: Deque[float] = deque()
        self._window_start: Optional[float] = None
        self._window_count = 0

    async def acquire(self) -> float:
        """Wait for a permit and consume it, returning the seconds waited."""
        waited = 0.0
        async with self._lock:
            while True:
                delay = self._reserve(self._clock())
                if delay <= 0:
                    return waited
                waited += delay
                await self._sleep(delay)

    def _reserve(self, now: float) -> float:
        if self.policy.kind == FIXED:
            return self._reserve_fixed(now)
        return self._reserve_sliding(now)

    def _reserve_sliding(self, now: float) -> float:
        # eviction and the wait share one age computation
        window = self.policy.window
        while self._stamps and now - self._stamps[0] >= window:
            self._stamps.popleft()
        if len(self._stamps) < self.policy.max_requests:
            self._stamps.append(now)
            return 0.0
        return window - (now - self._stamps[0])

    def _reserve_fixed(self, now: float) -> float:
        if self._window_start is None or now - self._window_start >= self.policy.window:
            self._window_start = now
            self._window_count = 0
        if self._window_count < self.policy.max_requests:
            self._window_count += 1
            return 0.0
        return self.policy.window - (now - self._window_start)


class RateLimiter:
    """Hands out one shared bucket per target."""

    def __init__(
        self,
        *,
        default: RatePolicy = RatePolicy(),
        overrides: Optional[Mapping[str, RatePolicy]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._default = default
        self._overrides = dict(overrides or {})
        self._clock = clock
        self._sleep = sleep
        self._buckets: Dict[str, RateLimitBucket] = {}

    def policy_for(self, target: str) -> RatePolicy:
        return self._overrides.get(target, self._default)

    def bucket(self, target: str) -> RateLimitBucket:
        bucket = self._buckets.get(target)
        if bucket is None:
            bucket = RateLimitBucket(target, self.policy_for(target), clock=self._clock, sleep=self._sleep)
            self._buckets[target] = bucket
        return bucket

    async def acquire(self, target: str) -> float:
        """Suspend until ``target`` has capacity, then consume one permit."""
        waited = await self.bucket(target).acquire()
        if waited > 0:
            LOGGER.debug("rate_limit_wait", target=target, waited=round(waited, 3))
        return waited

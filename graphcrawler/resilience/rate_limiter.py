"""Per-endpoint token bucket rate limiter.

Each logical upstream endpoint gets its own bucket, created lazily on first
use, sized by a per-endpoint policy or the global default. A bucket holds
``burst_limit`` tokens and regains one token every spacing interval, where
spacing = floor(60000 / requests_per_minute) ms, widened by up to 20% random
jitter when enabled and never below the configured minimum interval.

Key behaviors:
- acquire_slot() suspends the caller until a token is available; admission
  into a bucket is FIFO
- slot() additionally holds the bucket's concurrency semaphore while the
  request is in flight
- waits longer than 100 ms are recorded as throttled
- pause_all() / resume_all() gate every bucket at once
- clock and sleep are injectable so timing is deterministic under test
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from graphcrawler.config.endpoint_policies import (
    DEFAULT_ENDPOINT,
    EndpointPolicy,
    load_endpoint_policies,
)
from graphcrawler.config.settings import CrawlerSettings

logger = logging.getLogger(__name__)

THROTTLE_THRESHOLD_SECONDS = 0.1
JITTER_FRACTION = 0.2
_ROLLING_WINDOW = 100


@dataclass
class RateBucket:
    """Token bucket state for a single endpoint."""

    endpoint: str
    capacity: int  # burst limit
    tokens: float
    spacing: float  # seconds per replenished token
    max_concurrent: int
    last_refill: float
    jitter: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    semaphore: asyncio.Semaphore | None = field(default=None, repr=False)
    in_flight: int = 0
    requests: int = 0
    throttled: int = 0
    total_wait: float = 0.0
    recent_waits: deque = field(default_factory=lambda: deque(maxlen=_ROLLING_WINDOW), repr=False)

    def __post_init__(self) -> None:
        if self.semaphore is None:
            self.semaphore = asyncio.Semaphore(self.max_concurrent)

    def refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed <= 0:
            return
        self.tokens = min(float(self.capacity), self.tokens + elapsed / self.spacing)
        self.last_refill = now


def spacing_ms(
    requests_per_minute: int,
    min_interval_ms: int,
    jitter: bool = False,
    rng: random.Random | None = None,
) -> float:
    """Minimum inter-request spacing in milliseconds for a policy."""
    base = float(math.floor(60000 / requests_per_minute))
    if jitter:
        base *= 1.0 + (rng or random).random() * JITTER_FRACTION
    return max(base, float(min_interval_ms))


class EndpointRateLimiter:
    """Per-endpoint token bucket rate limiter.

    Args:
        policies: Endpoint name to policy overrides.
        default_policy: Policy for endpoints without an override.
        max_concurrent: Default in-flight cap per endpoint.
        min_interval_ms: Floor for the inter-request spacing.
        randomize_delays: Widen spacing by up to 20% random jitter.
        clock: Monotonic time source in seconds.
        sleep: Coroutine used to wait.
        rng: Random source for jitter.
    """

    def __init__(
        self,
        policies: dict[str, EndpointPolicy] | None = None,
        *,
        default_policy: EndpointPolicy | None = None,
        max_concurrent: int = 5,
        min_interval_ms: int = 500,
        randomize_delays: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._policies = {k: v for k, v in (policies or {}).items() if k != DEFAULT_ENDPOINT}
        self._default_policy = default_policy or (policies or {}).get(DEFAULT_ENDPOINT) or EndpointPolicy()
        self._max_concurrent = max_concurrent
        self._min_interval_ms = min_interval_ms
        self._randomize = randomize_delays
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._buckets: dict[str, RateBucket] = {}
        self._running = asyncio.Event()
        self._running.set()
        self._global_waits: deque = deque(maxlen=_ROLLING_WINDOW)

    @classmethod
    def from_settings(cls, settings: CrawlerSettings, **kwargs) -> "EndpointRateLimiter":
        """Build a limiter whose global default comes from settings.

        Named endpoint overrides come from the endpoint policies YAML.
        """
        return cls(
            load_endpoint_policies(settings.endpoint_policies_path),
            default_policy=EndpointPolicy(
                requests_per_minute=settings.requests_per_minute,
                burst_limit=settings.burst_limit,
            ),
            max_concurrent=settings.concurrent_requests,
            min_interval_ms=settings.min_request_interval_ms,
            randomize_delays=settings.randomize_delays,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Buckets
    # ------------------------------------------------------------------

    def policy_for(self, endpoint: str) -> EndpointPolicy:
        return self._policies.get(endpoint, self._default_policy)

    def _get_or_create_bucket(self, endpoint: str) -> RateBucket:
        bucket = self._buckets.get(endpoint)
        if bucket is None:
            policy = self.policy_for(endpoint)
            spacing = spacing_ms(
                policy.requests_per_minute,
                self._min_interval_ms,
                jitter=self._randomize,
                rng=self._rng,
            )
            bucket = RateBucket(
                endpoint=endpoint,
                capacity=policy.burst_limit,
                tokens=float(policy.burst_limit),
                spacing=spacing / 1000.0,
                max_concurrent=policy.max_concurrent or self._max_concurrent,
                last_refill=self._clock(),
                jitter=self._randomize,
            )
            self._buckets[endpoint] = bucket
            logger.debug(
                "Created rate bucket for %s: burst %d, spacing %.0f ms",
                endpoint,
                bucket.capacity,
                spacing,
                extra={"endpoint": endpoint},
            )
        return bucket

    def load_policies(self, yaml_path: str) -> None:
        """Reload endpoint overrides; buckets for overridden endpoints are rebuilt."""
        policies = load_endpoint_policies(yaml_path)
        self._policies = {k: v for k, v in policies.items() if k != DEFAULT_ENDPOINT}
        for endpoint in list(self._buckets):
            if endpoint in self._policies and self._buckets[endpoint].in_flight == 0:
                del self._buckets[endpoint]
        logger.info("Loaded rate limit policies for %d endpoints from %s", len(self._policies), yaml_path)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def acquire_slot(self, endpoint: str) -> float:
        """Wait until the endpoint's bucket admits one request.

        Returns the time waited in seconds.
        """
        bucket = self._get_or_create_bucket(endpoint)
        started = self._clock()

        async with bucket.lock:
            while True:
                if not self._running.is_set():
                    await self._running.wait()
                now = self._clock()
                bucket.refill(now)
                if bucket.tokens >= 1.0:
                    bucket.tokens -= 1.0
                    break
                await self._sleep((1.0 - bucket.tokens) * bucket.spacing)

        waited = self._clock() - started
        self._record(bucket, waited)
        return waited

    @asynccontextmanager
    async def slot(self, endpoint: str) -> AsyncIterator[float]:
        """Acquire a token, then hold a concurrency slot for the request."""
        waited = await self.acquire_slot(endpoint)
        bucket = self._get_or_create_bucket(endpoint)
        async with bucket.semaphore:
            bucket.in_flight += 1
            try:
                yield waited
            finally:
                bucket.in_flight -= 1

    def _record(self, bucket: RateBucket, waited: float) -> None:
        bucket.requests += 1
        bucket.total_wait += waited
        bucket.recent_waits.append(waited)
        self._global_waits.append(waited)
        if waited > THROTTLE_THRESHOLD_SECONDS:
            bucket.throttled += 1
            logger.debug(
                "Request throttled on %s for %.0f ms",
                bucket.endpoint,
                waited * 1000,
                extra={"endpoint": bucket.endpoint, "duration_ms": round(waited * 1000)},
            )

    # ------------------------------------------------------------------
    # Global control
    # ------------------------------------------------------------------

    def pause_all(self) -> None:
        if self._running.is_set():
            self._running.clear()
            logger.warning("All rate limiter buckets paused")

    def resume_all(self) -> None:
        if not self._running.is_set():
            self._running.set()
            logger.info("All rate limiter buckets resumed")

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    @staticmethod
    def _bucket_stats(bucket: RateBucket) -> dict:
        waits = bucket.recent_waits
        return {
            "requests": bucket.requests,
            "throttled": bucket.throttled,
            "throttle_rate": bucket.throttled / bucket.requests if bucket.requests else 0.0,
            "average_wait_ms": (sum(waits) / len(waits) * 1000) if waits else 0.0,
            "in_flight": bucket.in_flight,
        }

    def get_stats(self) -> dict:
        """Global and per-endpoint request, throttle and wait statistics."""
        total = sum(b.requests for b in self._buckets.values())
        throttled = sum(b.throttled for b in self._buckets.values())
        waits = self._global_waits
        return {
            "paused": self.paused,
            "total_requests": total,
            "throttled_requests": throttled,
            "throttle_rate": throttled / total if total else 0.0,
            "average_wait_ms": (sum(waits) / len(waits) * 1000) if waits else 0.0,
            "endpoints": {name: self._bucket_stats(b) for name, b in self._buckets.items()},
        }

    def get_endpoint_info(self, endpoint: str) -> dict:
        """Configuration and live state for one endpoint.

        Endpoints that have not been used yet report their policy with a
        full reservoir.
        """
        policy = self.policy_for(endpoint)
        bucket = self._buckets.get(endpoint)
        if bucket is None:
            return {
                "endpoint": endpoint,
                "active": False,
                "requests_per_minute": policy.requests_per_minute,
                "capacity": policy.burst_limit,
                "tokens": float(policy.burst_limit),
                "spacing_ms": spacing_ms(policy.requests_per_minute, self._min_interval_ms),
                "max_concurrent": policy.max_concurrent or self._max_concurrent,
            }
        bucket.refill(self._clock())
        return {
            "endpoint": endpoint,
            "active": True,
            "requests_per_minute": policy.requests_per_minute,
            "capacity": bucket.capacity,
            "tokens": bucket.tokens,
            "spacing_ms": bucket.spacing * 1000,
            "max_concurrent": bucket.max_concurrent,
            **self._bucket_stats(bucket),
        }

    def reset_stats(self) -> None:
        for bucket in self._buckets.values():
            bucket.requests = 0
            bucket.throttled = 0
            bucket.total_wait = 0.0
            bucket.recent_waits.clear()
        self._global_waits.clear()

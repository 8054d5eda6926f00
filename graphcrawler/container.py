"""Component registry.

``build_components`` constructs every long-lived collaborator exactly once
from validated settings; the resulting ``CrawlerComponents`` is passed by
reference to whatever needs it. Nothing here is a module-level singleton.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import redis.asyncio as redis

from graphcrawler.api.client import UpstreamClient
from graphcrawler.checkpoint.store import CheckpointStore
from graphcrawler.config.settings import CrawlerSettings
from graphcrawler.dedup.deduplicator import Deduplicator
from graphcrawler.proxy.manager import ProxyPoolManager
from graphcrawler.resilience.rate_limiter import EndpointRateLimiter
from graphcrawler.resilience.retry import RetryPolicy
from graphcrawler.store import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass
class CrawlerComponents:
    settings: CrawlerSettings
    store: KeyValueStore
    proxy_manager: ProxyPoolManager
    rate_limiter: EndpointRateLimiter
    deduplicator: Deduplicator
    checkpoints: CheckpointStore
    client: UpstreamClient

    async def initialize(self) -> None:
        """Reach the store, register configured proxies, restore dedup filters."""
        if not await self.store.ping():
            logger.warning("Key-value store unreachable at startup; running with in-process state")
        result = await self.proxy_manager.initialize(self.settings.proxy_list)
        if result.errors:
            logger.warning("%d configured proxies were rejected", len(result.errors))
        await self.deduplicator.initialize()

    async def close(self) -> None:
        await self.deduplicator.save_filters()
        await self.store.close()


def build_components(
    settings: CrawlerSettings,
    redis_client: redis.Redis | None = None,
) -> CrawlerComponents:
    """Wire the crawler's collaborators from *settings*.

    *redis_client* overrides the connection built from ``settings.redis_url``.
    """
    if redis_client is None:
        store = KeyValueStore.from_url(
            settings.redis_url,
            prefix=settings.redis_key_prefix,
            timeout=settings.store_timeout_seconds,
        )
    else:
        store = KeyValueStore(
            redis_client,
            prefix=settings.redis_key_prefix,
            timeout=settings.store_timeout_seconds,
        )

    proxy_manager = ProxyPoolManager(
        store,
        failure_threshold=settings.proxy_failure_threshold,
        rate_limit_cooldown=settings.proxy_rate_limit_cooldown_seconds,
        probe_url=settings.proxy_probe_url,
        probe_timeout=settings.proxy_probe_timeout_seconds,
        health_check_interval=settings.proxy_health_check_interval_seconds,
        enabled=settings.proxy_rotation_enabled,
    )
    rate_limiter = EndpointRateLimiter.from_settings(settings)
    deduplicator = Deduplicator.from_settings(settings, store)
    checkpoints = CheckpointStore.from_settings(settings, store)
    client = UpstreamClient(
        settings,
        rate_limiter,
        proxy_manager,
        RetryPolicy.from_settings(settings),
    )

    return CrawlerComponents(
        settings=settings,
        store=store,
        proxy_manager=proxy_manager,
        rate_limiter=rate_limiter,
        deduplicator=deduplicator,
        checkpoints=checkpoints,
        client=client,
    )

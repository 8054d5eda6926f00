"""Upstream graph API client.

Every call is admitted by the endpoint's rate limiter bucket, then routed
through a proxy from the pool (or direct when none is healthy). Responses
are classified and fed back into proxy health:

- 2xx        success, proxy credited
- 429        ``RateLimitError``, proxy cooled down, request re-queued
- 407        proxy refused us; ``TransientNetworkError``, proxy penalized
- other 4xx  ``ClientError``, never retried, proxy untouched
- 5xx        ``TransientNetworkError``, proxy penalized, retried with backoff
- timeout / connection failure: same as 5xx

Retries follow ``decide_retry``; backoff sleeps happen outside the rate
limiter slot.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from graphcrawler.api.endpoints import (
    GET_PROFILE,
    MAX_PAGE_SIZE,
    SEARCH_ACTORS,
    EdgeDirection,
    xrpc_path,
)
from graphcrawler.api.models import (
    ActorProfile,
    ActorSearchPage,
    EdgePage,
    parse_edge_page,
    parse_profile,
    parse_search_page,
)
from graphcrawler.config.settings import CrawlerSettings
from graphcrawler.middleware.error_handler import (
    ClientError,
    RateLimitError,
    TransientNetworkError,
)
from graphcrawler.proxy.manager import ProxyPoolManager
from graphcrawler.proxy.types import ProxyRecord
from graphcrawler.resilience.rate_limiter import EndpointRateLimiter
from graphcrawler.resilience.retry import RetryPolicy, decide_retry

logger = logging.getLogger(__name__)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


class UpstreamClient:
    """Read-only client for profile lookup, edge listing and actor search.

    Parameters
    ----------
    settings:
        Source of base URL, timeouts, user agent and page size.
    rate_limiter:
        Per-endpoint limiter every request is admitted through.
    proxy_manager:
        Pool used for egress selection and health reporting.
    retry_policy:
        Defaults to the policy derived from *settings*.
    sleep:
        Coroutine used for backoff waits.
    """

    def __init__(
        self,
        settings: CrawlerSettings,
        rate_limiter: EndpointRateLimiter,
        proxy_manager: ProxyPoolManager,
        retry_policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._base_url = settings.api_base_url
        self._timeout = settings.request_timeout_seconds
        self._page_size = min(settings.page_size, MAX_PAGE_SIZE)
        self._headers = {"User-Agent": settings.user_agent, "Accept": "application/json"}
        self._rate_limiter = rate_limiter
        self._proxy_manager = proxy_manager
        self._retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self._sleep = sleep
        self._stats: dict[str, int] = {
            "requests": 0,
            "successes": 0,
            "rate_limited": 0,
            "client_errors": 0,
            "transient_errors": 0,
            "retries": 0,
            "failed": 0,
            "dropped_items": 0,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_profile(self, actor: str) -> ActorProfile:
        payload = await self._request(GET_PROFILE, {"actor": actor})
        return parse_profile(payload, context=f"{GET_PROFILE}:{actor}")

    async def list_edges(
        self,
        actor: str,
        direction: EdgeDirection | str,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> EdgePage:
        """One page of *actor*'s followers or follows."""
        direction = EdgeDirection(direction)
        params: dict[str, Any] = {"actor": actor, "limit": self._limit(limit)}
        if cursor:
            params["cursor"] = cursor
        payload = await self._request(direction.endpoint, params)
        page = parse_edge_page(payload, direction.items_key, context=f"{direction.endpoint}:{actor}")
        self._stats["dropped_items"] += page.dropped
        return page

    async def search_actors(
        self,
        query: str,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> ActorSearchPage:
        params: dict[str, Any] = {"q": query, "limit": self._limit(limit)}
        if cursor:
            params["cursor"] = cursor
        payload = await self._request(SEARCH_ACTORS, params)
        page = parse_search_page(payload, context=SEARCH_ACTORS)
        self._stats["dropped_items"] += page.dropped
        return page

    def get_stats(self) -> dict:
        stats = dict(self._stats)
        done = stats["successes"] + stats["failed"]
        stats["success_rate"] = stats["successes"] / done if done else 0.0
        return stats

    def _limit(self, limit: int | None) -> int:
        return max(1, min(limit or self._page_size, MAX_PAGE_SIZE))

    # ------------------------------------------------------------------
    # Request pipeline
    # ------------------------------------------------------------------

    async def _request(self, endpoint: str, params: dict[str, Any]) -> Any:
        transient_attempts = 0
        rate_limit_attempts = 0
        while True:
            try:
                return await self._attempt(endpoint, params)
            except (RateLimitError, TransientNetworkError) as exc:
                if isinstance(exc, RateLimitError):
                    rate_limit_attempts += 1
                    attempt = rate_limit_attempts
                else:
                    transient_attempts += 1
                    attempt = transient_attempts
                decision = decide_retry(attempt, exc, self._retry_policy)
                if not decision.should_retry:
                    self._stats["failed"] += 1
                    logger.error(
                        "Giving up on %s after %d attempts: %s",
                        endpoint,
                        transient_attempts + rate_limit_attempts,
                        exc.message,
                        extra={"endpoint": endpoint, "attempt": attempt, "error_reason": exc.message},
                    )
                    raise
                self._stats["retries"] += 1
                logger.warning(
                    "Retrying %s in %.1fs (%s, attempt %d)",
                    endpoint,
                    decision.delay,
                    exc.message,
                    attempt,
                    extra={"endpoint": endpoint, "attempt": attempt},
                )
                if decision.delay > 0:
                    await self._sleep(decision.delay)
            except ClientError:
                self._stats["failed"] += 1
                raise

    async def _attempt(self, endpoint: str, params: dict[str, Any]) -> Any:
        url = self._base_url + xrpc_path(endpoint)
        async with self._rate_limiter.slot(endpoint):
            proxy = await self._proxy_manager.acquire()
            self._stats["requests"] += 1
            started = time.monotonic()
            try:
                async with httpx.AsyncClient(
                    proxy=proxy.id if proxy is not None else None,
                    timeout=httpx.Timeout(self._timeout),
                    headers=self._headers,
                ) as client:
                    response = await client.get(url, params=params)
            except (httpx.HTTPError, OSError) as exc:
                reason = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
                await self._penalize(proxy, reason)
                raise TransientNetworkError(
                    "Upstream request failed",
                    endpoint=endpoint,
                    reason=type(exc).__name__,
                ) from exc
            elapsed_ms = (time.monotonic() - started) * 1000

        return await self._classify(endpoint, response, proxy, elapsed_ms)

    async def _classify(
        self,
        endpoint: str,
        response: httpx.Response,
        proxy: ProxyRecord | None,
        elapsed_ms: float,
    ) -> Any:
        status = response.status_code

        if 200 <= status < 300:
            try:
                payload = response.json()
            except ValueError as exc:
                await self._penalize(proxy, "non-JSON body")
                raise TransientNetworkError(
                    "Upstream returned a non-JSON body", endpoint=endpoint, status=status
                ) from exc
            if proxy is not None:
                await self._proxy_manager.report_success(proxy.id, elapsed_ms)
            self._stats["successes"] += 1
            return payload

        if status == 429:
            self._stats["rate_limited"] += 1
            cooldown = _retry_after(response)
            if proxy is not None:
                await self._proxy_manager.report_rate_limited(proxy.id, cooldown)
            raise RateLimitError(endpoint=endpoint, retry_after=cooldown)

        if status == 407:
            await self._penalize(proxy, "HTTP 407")
            raise TransientNetworkError("Proxy authentication required", endpoint=endpoint, status=status)

        if 400 <= status < 500:
            self._stats["client_errors"] += 1
            logger.warning(
                "Client error %d from %s",
                status,
                endpoint,
                extra={"endpoint": endpoint, "error_reason": f"HTTP {status}"},
            )
            raise ClientError(f"Upstream rejected the request: HTTP {status}", endpoint=endpoint, status=status)

        await self._penalize(proxy, f"HTTP {status}")
        raise TransientNetworkError(f"Upstream server error: HTTP {status}", endpoint=endpoint, status=status)

    async def _penalize(self, proxy: ProxyRecord | None, reason: str) -> None:
        self._stats["transient_errors"] += 1
        if proxy is not None:
            await self._proxy_manager.report_failure(proxy.id, reason)


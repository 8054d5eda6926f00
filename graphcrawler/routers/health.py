"""Health, readiness, and metrics endpoints.

These endpoints do NOT require X-Service-Key authentication.
- GET /health: service status + proxy pool and store state
- GET /readiness: 200 only when the store answers and egress is available
- GET /metrics: operational metrics
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Response

from graphcrawler.models.responses import ApiResponse


def create_health_router(
    *,
    store: Any = None,
    proxy_manager: Any = None,
    rate_limiter: Any = None,
    deduplicator: Any = None,
    client: Any = None,
    crawl_service: Any = None,
) -> APIRouter:
    """Factory that creates the health router with injected dependencies."""

    health_router = APIRouter(tags=["health"])

    @health_router.get("/health")
    async def health() -> dict:
        """Service health check with proxy pool statistics."""
        proxy_stats = proxy_manager.stats() if proxy_manager else {}

        return ApiResponse(
            success=True,
            data={
                "status": "healthy",
                "store_available": store.available if store else False,
                "proxy_pool": proxy_stats,
                "running_crawls": crawl_service.running_count() if crawl_service else 0,
            },
        ).model_dump()

    @health_router.get("/readiness")
    async def readiness(response: Response) -> dict:
        """Readiness probe.

        Ready iff the key-value store answers a ping AND either no proxies
        are registered (direct egress) or at least one proxy is healthy.
        """
        store_ok = await store.ping() if store else False
        proxy_stats = proxy_manager.stats() if proxy_manager else {"total": 0, "healthy": 0}

        proxies_total = proxy_stats.get("total", 0)
        proxy_healthy = proxy_stats.get("healthy", 0)
        egress_ok = proxies_total == 0 or proxy_healthy > 0

        is_ready = store_ok and egress_ok

        if not is_ready:
            response.status_code = 503

        return ApiResponse(
            success=is_ready,
            data={
                "ready": is_ready,
                "store_available": store_ok,
                "proxy_total": proxies_total,
                "proxy_healthy": proxy_healthy,
            },
            error=None if is_ready else "Service not ready",
        ).model_dump()

    @health_router.get("/metrics")
    async def metrics() -> dict:
        """Operational metrics endpoint."""
        return ApiResponse(
            success=True,
            data={
                "proxy_pool": proxy_manager.stats() if proxy_manager else {},
                "rate_limiter": rate_limiter.get_stats() if rate_limiter else {},
                "deduplication": deduplicator.get_stats() if deduplicator else {},
                "upstream": client.get_stats() if client else {},
                "crawls": {
                    "running": crawl_service.running_count() if crawl_service else 0,
                    "total": len(crawl_service.list()) if crawl_service else 0,
                },
            },
        ).model_dump()

    return health_router

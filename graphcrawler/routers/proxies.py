"""Proxy pool endpoints.

- GET  /api/v1/proxies: list proxies (optional ?status= filter)
- POST /api/v1/proxies: register proxy entries
- POST /api/v1/proxies/remove: remove proxies from the pool
- POST /api/v1/proxies/health-check: probe every proxy once
- GET  /api/v1/proxies/stats: aggregate pool statistics
- POST /api/v1/proxies/reset: zero counters and mark every proxy healthy
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from graphcrawler.models.requests import ProxyListRequest
from graphcrawler.models.responses import ApiResponse
from graphcrawler.proxy.types import ProxyStatus


def create_proxies_router(*, proxy_manager: Any) -> APIRouter:
    """Factory that creates the proxy router with an injected pool manager."""

    proxies_router = APIRouter(prefix="/api/v1/proxies", tags=["proxies"])

    @proxies_router.get("")
    async def list_proxies(status: ProxyStatus | None = None) -> dict:
        records = proxy_manager.list_proxies(status)
        return ApiResponse(
            success=True,
            data=[record.to_dict() for record in records],
            meta={"count": len(records)},
        ).model_dump()

    @proxies_router.post("")
    async def register_proxies(body: ProxyListRequest) -> dict:
        """Register proxies; malformed entries are reported, not fatal."""
        result = await proxy_manager.register(body.proxies)
        return ApiResponse(success=True, data=result.to_dict()).model_dump()

    @proxies_router.post("/remove")
    async def remove_proxies(body: ProxyListRequest) -> dict:
        removed = await proxy_manager.remove(body.proxies)
        return ApiResponse(
            success=True,
            data={"removed": removed},
            meta={"count": len(removed)},
        ).model_dump()

    @proxies_router.post("/health-check")
    async def health_check() -> dict:
        results = await proxy_manager.health_check()
        return ApiResponse(
            success=True,
            data=results,
            meta={"passed": sum(1 for ok in results.values() if ok), "total": len(results)},
        ).model_dump()

    @proxies_router.get("/stats")
    async def stats() -> dict:
        return ApiResponse(success=True, data=proxy_manager.stats()).model_dump()

    @proxies_router.post("/reset")
    async def reset_stats() -> dict:
        await proxy_manager.reset_stats()
        return ApiResponse(success=True, data=proxy_manager.stats()).model_dump()

    return proxies_router

"""Rate limiter endpoints.

- GET  /api/v1/rate-limits: global and per-endpoint statistics
- GET  /api/v1/rate-limits/{endpoint}: policy and live bucket state
- POST /api/v1/rate-limits/pause: stop issuing slots on every endpoint
- POST /api/v1/rate-limits/resume: resume issuing slots
- POST /api/v1/rate-limits/reset: reset statistics
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from graphcrawler.models.responses import ApiResponse


def create_rate_limits_router(*, rate_limiter: Any) -> APIRouter:
    """Factory that creates the rate limiter router."""

    limits_router = APIRouter(prefix="/api/v1/rate-limits", tags=["rate-limits"])

    @limits_router.get("")
    async def stats() -> dict:
        return ApiResponse(success=True, data=rate_limiter.get_stats()).model_dump()

    @limits_router.post("/pause")
    async def pause() -> dict:
        rate_limiter.pause_all()
        return ApiResponse(success=True, data={"paused": rate_limiter.paused}).model_dump()

    @limits_router.post("/resume")
    async def resume() -> dict:
        rate_limiter.resume_all()
        return ApiResponse(success=True, data={"paused": rate_limiter.paused}).model_dump()

    @limits_router.post("/reset")
    async def reset() -> dict:
        rate_limiter.reset_stats()
        return ApiResponse(success=True, data=rate_limiter.get_stats()).model_dump()

    @limits_router.get("/{endpoint}")
    async def endpoint_info(endpoint: str) -> dict:
        return ApiResponse(success=True, data=rate_limiter.get_endpoint_info(endpoint)).model_dump()

    return limits_router

"""Crawl endpoints.

- POST /api/v1/crawls: start (or resume) a crawl, returns 202
- GET  /api/v1/crawls: list crawl runs, newest first
- GET  /api/v1/crawls/{crawl_id}: status and live progress
- POST /api/v1/crawls/{crawl_id}/cancel: stop at the next node or page boundary
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from graphcrawler.models.requests import StartCrawlRequest
from graphcrawler.models.responses import ApiResponse


def create_crawls_router(*, crawl_service: Any) -> APIRouter:
    """Factory that creates the crawl router with an injected CrawlService."""

    crawls_router = APIRouter(prefix="/api/v1/crawls", tags=["crawls"])

    @crawls_router.post("")
    async def start_crawl(body: StartCrawlRequest) -> JSONResponse:
        run = crawl_service.start(body)
        return JSONResponse(
            status_code=202,
            content=ApiResponse(success=True, data=run.to_dict()).model_dump(),
        )

    @crawls_router.get("")
    async def list_crawls() -> dict:
        runs = crawl_service.list()
        return ApiResponse(
            success=True,
            data=[run.to_dict() for run in runs],
            meta={"count": len(runs)},
        ).model_dump()

    @crawls_router.get("/{crawl_id}")
    async def get_crawl(crawl_id: str) -> dict:
        run = crawl_service.get(crawl_id)
        return ApiResponse(success=True, data=run.to_dict()).model_dump()

    @crawls_router.post("/{crawl_id}/cancel")
    async def cancel_crawl(crawl_id: str) -> dict:
        run = crawl_service.cancel(crawl_id)
        return ApiResponse(success=True, data=run.to_dict()).model_dump()

    return crawls_router

"""Checkpoint endpoints.

- GET    /api/v1/checkpoints/{scraper_type}: list checkpoints, newest first
- GET    /api/v1/checkpoints/{scraper_type}/latest: latest usable checkpoint
- GET    /api/v1/checkpoints/{scraper_type}/{checkpoint_id}: one checkpoint with state
- DELETE /api/v1/checkpoints/{scraper_type}/{checkpoint_id}
- POST   /api/v1/checkpoints/{scraper_type}/prune: apply the retention count
- POST   /api/v1/checkpoints/{scraper_type}/export: write an export file
- POST   /api/v1/checkpoints/{scraper_type}/import: read an export file

Export files live under ``{output_dir}/checkpoint_exports``; requests name a
file, never a path.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import APIRouter

from graphcrawler.middleware.error_handler import CheckpointNotFoundError, ConfigurationError
from graphcrawler.models.requests import CheckpointFileRequest
from graphcrawler.models.responses import ApiResponse

EXPORT_DIRNAME = "checkpoint_exports"


def create_checkpoints_router(*, checkpoints: Any, output_dir: str | Path) -> APIRouter:
    """Factory that creates the checkpoint router."""

    checkpoints_router = APIRouter(prefix="/api/v1/checkpoints", tags=["checkpoints"])
    export_dir = Path(output_dir) / EXPORT_DIRNAME

    @checkpoints_router.get("/{scraper_type}")
    async def list_checkpoints(scraper_type: str) -> dict:
        found = await checkpoints.list_checkpoints(scraper_type)
        return ApiResponse(
            success=True,
            data=[checkpoint.summary() for checkpoint in found],
            meta={"count": len(found), "retention": checkpoints.retention},
        ).model_dump()

    @checkpoints_router.get("/{scraper_type}/latest")
    async def latest(scraper_type: str) -> dict:
        checkpoint = await checkpoints.load_latest(scraper_type)
        if checkpoint is None:
            raise CheckpointNotFoundError(scraper_type=scraper_type)
        return ApiResponse(success=True, data=checkpoint.summary()).model_dump()

    @checkpoints_router.post("/{scraper_type}/prune")
    async def prune(scraper_type: str) -> dict:
        pruned = await checkpoints.prune(scraper_type)
        return ApiResponse(success=True, data={"pruned": pruned}).model_dump()

    @checkpoints_router.post("/{scraper_type}/export")
    async def export(scraper_type: str, body: CheckpointFileRequest) -> dict:
        filename = body.filename or (
            f"{scraper_type}_{datetime.now(timezone.utc).strftime('%Y-%m-%d_%H-%M-%S')}.json"
        )
        count = await checkpoints.export(scraper_type, export_dir / filename)
        return ApiResponse(success=True, data={"filename": filename, "exported": count}).model_dump()

    @checkpoints_router.post("/{scraper_type}/import")
    async def import_(scraper_type: str, body: CheckpointFileRequest) -> dict:
        if body.filename is None:
            raise ConfigurationError("filename is required for import")
        count = await checkpoints.import_(export_dir / body.filename, scraper_type)
        return ApiResponse(success=True, data={"filename": body.filename, "imported": count}).model_dump()

    @checkpoints_router.get("/{scraper_type}/{checkpoint_id}")
    async def get_checkpoint(scraper_type: str, checkpoint_id: str) -> dict:
        checkpoint = await checkpoints.load(scraper_type, checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(checkpoint_id=checkpoint_id)
        return ApiResponse(
            success=True,
            data=checkpoint.model_dump(mode="json", by_alias=True),
        ).model_dump()

    @checkpoints_router.delete("/{scraper_type}/{checkpoint_id}")
    async def delete(scraper_type: str, checkpoint_id: str) -> dict:
        if not await checkpoints.delete(scraper_type, checkpoint_id):
            raise CheckpointNotFoundError(checkpoint_id=checkpoint_id)
        return ApiResponse(success=True, data={"deleted": checkpoint_id}).model_dump()

    return checkpoints_router

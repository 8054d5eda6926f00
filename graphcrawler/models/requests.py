"""Pydantic request models and in-memory state models for the control API."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from graphcrawler.crawler.frontier_crawler import CrawlResult, FrontierCrawler


class StartCrawlRequest(BaseModel):
    """Start (or resume) a crawl.

    Budget overrides are validated when the crawl is built, so an invalid
    budget is reported as a configuration error for this request only.
    """

    scraper_type: str = Field(default="relationships", min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")
    seeds: list[str] | None = Field(default=None, max_length=10_000)
    resume: bool = False
    max_depth: int | None = None
    max_nodes: int | None = None
    max_edges: int | None = None
    max_followers_per_node: int | None = None
    max_following_per_node: int | None = None
    min_follower_count: int | None = None
    seed_limit: int | None = None
    prioritize_popular: bool | None = None

    def budget_overrides(self) -> dict:
        return self.model_dump(
            exclude={"scraper_type", "seeds", "resume"},
            exclude_none=True,
        )


class ProxyListRequest(BaseModel):
    """A batch of proxy entries to register or remove."""

    proxies: list[str] = Field(..., min_length=1, max_length=10_000)


class CheckpointFileRequest(BaseModel):
    """Export / import file name, relative to the checkpoint exports directory."""

    filename: str | None = Field(default=None, min_length=1, max_length=255, pattern=r"^[A-Za-z0-9_.-]+\.json$")


class CrawlRunStatus(str, Enum):
    """Lifecycle of a crawl started through the control API."""

    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    BUDGET_EXHAUSTED = "budget_exhausted"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CrawlRun:
    """In-memory record of one crawl run."""

    id: str
    scraper_type: str
    status: CrawlRunStatus
    crawler: "FrontierCrawler"
    task: asyncio.Task | None = None
    result: "CrawlResult | None" = None
    error: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    finished_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "crawl_id": self.id,
            "scraper_type": self.scraper_type,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "progress": self.crawler.progress(),
            "result": self.result.to_dict() if self.result else None,
        }

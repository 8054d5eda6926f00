"""Control API request, state, and response models."""

from graphcrawler.models.requests import (
    CheckpointFileRequest,
    CrawlRun,
    CrawlRunStatus,
    ProxyListRequest,
    StartCrawlRequest,
)
from graphcrawler.models.responses import ApiResponse

__all__ = [
    "ApiResponse",
    "CheckpointFileRequest",
    "CrawlRun",
    "CrawlRunStatus",
    "ProxyListRequest",
    "StartCrawlRequest",
]

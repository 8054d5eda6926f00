"""Middleware package: error hierarchy, auth, and request ID."""

from graphcrawler.middleware.auth import ServiceKeyAuthMiddleware
from graphcrawler.middleware.error_handler import (
    AuthenticationError,
    CheckpointNotFoundError,
    ClientError,
    ConfigurationError,
    CrawlAlreadyRunningError,
    CrawlerError,
    CrawlNotFoundError,
    RateLimitError,
    StoreUnavailableError,
    TransientNetworkError,
    UpstreamError,
    ValidationError,
    register_error_handlers,
)
from graphcrawler.middleware.request_id import RequestIdMiddleware

__all__ = [
    "AuthenticationError",
    "CheckpointNotFoundError",
    "ClientError",
    "ConfigurationError",
    "CrawlAlreadyRunningError",
    "CrawlNotFoundError",
    "CrawlerError",
    "RateLimitError",
    "RequestIdMiddleware",
    "ServiceKeyAuthMiddleware",
    "StoreUnavailableError",
    "TransientNetworkError",
    "UpstreamError",
    "ValidationError",
    "register_error_handlers",
]

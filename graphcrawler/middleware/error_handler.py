"""Global error hierarchy and FastAPI exception handlers.

All crawler-specific errors extend CrawlerError. The crawl core raises and
handles the upstream / coordination errors (transient network, rate limit,
client, validation, configuration, store unavailable); the FastAPI exception
handlers catch the rest (plus Pydantic's RequestValidationError and unhandled
exceptions) and return a consistent JSON envelope: { success, data, error, meta }.
"""

from __future__ import annotations

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------


class CrawlerError(Exception):
    """Base error for all crawler-specific errors."""

    status_code: int = 500
    message: str = "Internal server error"

    def __init__(self, message: str | None = None, **kwargs: object) -> None:
        self.message = message or self.__class__.message
        self.details = kwargs
        super().__init__(self.message)


class UpstreamError(CrawlerError):
    """Base for failures talking to the upstream graph API."""

    status_code = 502
    message = "Upstream API request failed"


class TransientNetworkError(UpstreamError):
    """Timeout, connection reset or 5xx: retried with backoff, counted against the proxy."""

    status_code = 502
    message = "Transient network error"


class RateLimitError(UpstreamError):
    """Upstream answered 429: proxy cooled down, request re-queued behind the limiter."""

    status_code = 429
    message = "Upstream rate limit exceeded"


class ClientError(UpstreamError):
    """4xx other than 429: the target resource is at fault, never retried."""

    status_code = 502
    message = "Upstream rejected the request"


class ValidationError(CrawlerError):
    """Malformed entity payload: the entity is dropped and counted."""

    status_code = 422
    message = "Validation error"


class ConfigurationError(CrawlerError):
    """Malformed proxy entry, invalid budget or policy."""

    status_code = 400
    message = "Invalid configuration"


class StoreUnavailableError(CrawlerError):
    """The shared key-value store could not be reached."""

    status_code = 503
    message = "Key-value store unavailable"


class AuthenticationError(CrawlerError):
    """Invalid or missing service key."""

    status_code = 401
    message = "Invalid or missing service key"


class CrawlNotFoundError(CrawlerError):
    """Crawl not found."""

    status_code = 404
    message = "Crawl not found"


class CrawlAlreadyRunningError(CrawlerError):
    """A crawl of the same scraper type is already running."""

    status_code = 409
    message = "A crawl of this type is already running"


class CheckpointNotFoundError(CrawlerError):
    """Checkpoint not found."""

    status_code = 404
    message = "Checkpoint not found"


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------


def _envelope(
    status_code: int,
    error: str,
    meta: dict | None = None,
) -> JSONResponse:
    """Build a JSON envelope error response."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "data": None,
            "error": error,
            "meta": meta,
        },
    )


async def _crawler_error_handler(_request: Request, exc: CrawlerError) -> JSONResponse:
    """Handle CrawlerError subclasses."""
    meta = exc.details if exc.details else None
    return _envelope(exc.status_code, exc.message, meta=meta)


async def _validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle FastAPI / Pydantic RequestValidationError (422)."""
    field_errors = [
        {
            "field": " -> ".join(str(loc) for loc in err["loc"]),
            "message": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors()
    ]
    return _envelope(
        status_code=422,
        error="Validation error",
        meta={"fields": field_errors},
    )


async def _unhandled_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions: log traceback, return generic 500."""
    logger.error(
        "Unhandled exception: %s\n%s",
        exc,
        traceback.format_exc(),
    )
    return _envelope(status_code=500, error="Internal server error")


# ---------------------------------------------------------------------------
# Registration helper
# ---------------------------------------------------------------------------


def register_error_handlers(app: FastAPI) -> None:
    """Wire up all exception handlers on the FastAPI application."""
    app.add_exception_handler(CrawlerError, _crawler_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_error_handler)  # type: ignore[arg-type]

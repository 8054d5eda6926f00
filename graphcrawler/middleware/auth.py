"""X-Service-Key authentication for the crawler control API.

Health endpoints (/health, /readiness, /metrics) stay public so that
orchestrators can probe the service; every other route requires the key
configured in ``CrawlerSettings.service_key``. Keys are compared with
``hmac.compare_digest``.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from graphcrawler.middleware.error_handler import AuthenticationError, _envelope

logger = logging.getLogger(__name__)

_PUBLIC_PATHS: frozenset[str] = frozenset({"/health", "/readiness", "/metrics"})


class ServiceKeyAuthMiddleware(BaseHTTPMiddleware):
    """Reject control-API requests that lack a valid ``X-Service-Key``."""

    def __init__(self, app, service_key: str) -> None:  # noqa: ANN001
        super().__init__(app)
        self._service_key = service_key.encode("utf-8")

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in _PUBLIC_PATHS:
            return await call_next(request)

        provided = request.headers.get("x-service-key")
        if not provided:
            return self._reject(request, "missing_service_key")
        if not hmac.compare_digest(provided.encode("utf-8"), self._service_key):
            return self._reject(request, "invalid_service_key")

        return await call_next(request)

    @staticmethod
    def _reject(request: Request, reason: str) -> Response:
        logger.warning(
            "Rejected control API request: %s",
            reason,
            extra={
                "event": "auth_failure",
                "error_reason": reason,
                "source_ip": request.client.host if request.client else "unknown",
                "path": request.url.path,
                "request_id": getattr(request.state, "request_id", None),
            },
        )
        return _envelope(
            status_code=AuthenticationError.status_code,
            error=AuthenticationError.message,
        )

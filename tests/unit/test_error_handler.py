"""Unit tests for the error hierarchy, exception handlers and middleware."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel

from graphcrawler.middleware.auth import ServiceKeyAuthMiddleware
from graphcrawler.middleware.error_handler import (
    ClientError,
    ConfigurationError,
    CrawlAlreadyRunningError,
    CrawlerError,
    CrawlNotFoundError,
    RateLimitError,
    StoreUnavailableError,
    TransientNetworkError,
    UpstreamError,
    register_error_handlers,
)
from graphcrawler.middleware.request_id import REQUEST_ID_HEADER, RequestIdMiddleware


class _Body(BaseModel):
    count: int


def _make_app() -> FastAPI:
    app = FastAPI()
    register_error_handlers(app)

    @app.get("/health")
    async def health() -> dict:
        return {"success": True}

    @app.get("/raise/{kind}")
    async def raise_error(kind: str) -> dict:
        errors = {
            "not_found": CrawlNotFoundError("Crawl not found: abc"),
            "conflict": CrawlAlreadyRunningError(scraper_type="relationships"),
            "config": ConfigurationError("Invalid crawl budget"),
            "store": StoreUnavailableError(operation="get"),
        }
        if kind == "boom":
            raise RuntimeError("kaboom")
        raise errors[kind]

    @app.post("/echo")
    async def echo(body: _Body) -> dict:
        return {"success": True, "data": body.count}

    app.add_middleware(ServiceKeyAuthMiddleware, service_key="secret-key")
    app.add_middleware(RequestIdMiddleware)
    return app


@pytest.fixture
def client() -> TestClient:
    return TestClient(_make_app(), raise_server_exceptions=False)


_AUTH = {"X-Service-Key": "secret-key"}


class TestErrorHierarchy:
    def test_upstream_subclasses(self) -> None:
        for cls in (TransientNetworkError, RateLimitError, ClientError):
            assert issubclass(cls, UpstreamError)
            assert issubclass(cls, CrawlerError)

    def test_default_message_and_details(self) -> None:
        exc = RateLimitError(endpoint="app.bsky.graph.getFollowers", retry_after=3.0)
        assert exc.message == "Upstream rate limit exceeded"
        assert exc.status_code == 429
        assert exc.details == {"endpoint": "app.bsky.graph.getFollowers", "retry_after": 3.0}

    def test_custom_message(self) -> None:
        exc = ClientError("Upstream rejected the request: HTTP 404")
        assert str(exc) == "Upstream rejected the request: HTTP 404"


class TestExceptionHandlers:
    @pytest.mark.parametrize(
        ("kind", "status", "error"),
        [
            ("not_found", 404, "Crawl not found: abc"),
            ("conflict", 409, "A crawl of this type is already running"),
            ("config", 400, "Invalid crawl budget"),
            ("store", 503, "Key-value store unavailable"),
        ],
    )
    def test_crawler_errors_use_envelope(self, client: TestClient, kind: str, status: int, error: str) -> None:
        response = client.get(f"/raise/{kind}", headers=_AUTH)
        assert response.status_code == status
        body = response.json()
        assert body["success"] is False
        assert body["data"] is None
        assert body["error"] == error

    def test_details_become_meta(self, client: TestClient) -> None:
        body = client.get("/raise/conflict", headers=_AUTH).json()
        assert body["meta"] == {"scraper_type": "relationships"}

    def test_unhandled_error_is_generic_500(self, client: TestClient) -> None:
        response = client.get("/raise/boom", headers=_AUTH)
        assert response.status_code == 500
        assert response.json()["error"] == "Internal server error"
        assert "kaboom" not in response.text

    def test_request_validation_is_422_with_fields(self, client: TestClient) -> None:
        response = client.post("/echo", json={"count": "many"}, headers=_AUTH)
        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "Validation error"
        assert body["meta"]["fields"][0]["field"] == "body -> count"


class TestServiceKeyAuth:
    def test_health_is_public(self, client: TestClient) -> None:
        assert client.get("/health").status_code == 200

    def test_missing_key_rejected(self, client: TestClient) -> None:
        response = client.post("/echo", json={"count": 1})
        assert response.status_code == 401
        assert response.json()["error"] == "Invalid or missing service key"

    def test_wrong_key_rejected(self, client: TestClient) -> None:
        response = client.post("/echo", json={"count": 1}, headers={"X-Service-Key": "nope"})
        assert response.status_code == 401

    def test_valid_key_accepted(self, client: TestClient) -> None:
        response = client.post("/echo", json={"count": 1}, headers=_AUTH)
        assert response.status_code == 200
        assert response.json()["data"] == 1


class TestRequestId:
    def test_generated_when_absent(self, client: TestClient) -> None:
        response = client.get("/health")
        assert len(response.headers[REQUEST_ID_HEADER]) == 36

    def test_incoming_id_echoed(self, client: TestClient) -> None:
        response = client.get("/health", headers={REQUEST_ID_HEADER: "req-123"})
        assert response.headers[REQUEST_ID_HEADER] == "req-123"

    def test_rejected_requests_still_carry_id(self, client: TestClient) -> None:
        response = client.post("/echo", json={"count": 1}, headers={REQUEST_ID_HEADER: "req-401"})
        assert response.status_code == 401
        assert response.headers[REQUEST_ID_HEADER] == "req-401"

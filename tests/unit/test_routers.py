"""Unit tests for the control API routers."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from graphcrawler.checkpoint.store import CheckpointStore
from graphcrawler.middleware.auth import ServiceKeyAuthMiddleware
from graphcrawler.middleware.error_handler import (
    CrawlAlreadyRunningError,
    CrawlNotFoundError,
    register_error_handlers,
)
from graphcrawler.proxy.manager import ProxyPoolManager
from graphcrawler.resilience.rate_limiter import EndpointRateLimiter
from graphcrawler.routers.checkpoints import EXPORT_DIRNAME, create_checkpoints_router
from graphcrawler.routers.crawls import create_crawls_router
from graphcrawler.routers.health import create_health_router
from graphcrawler.routers.proxies import create_proxies_router
from graphcrawler.routers.rate_limits import create_rate_limits_router

SERVICE_KEY = "test-service-key"
HEADERS = {"X-Service-Key": SERVICE_KEY}


def _run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _client(router) -> TestClient:
    app = FastAPI()
    register_error_handlers(app)
    app.add_middleware(ServiceKeyAuthMiddleware, service_key=SERVICE_KEY)
    app.include_router(router)
    return TestClient(app)


def _store(ping: bool = True) -> MagicMock:
    store = MagicMock()
    store.ping = AsyncMock(return_value=ping)
    store.available = ping
    return store


def _proxies(total: int, healthy: int) -> MagicMock:
    manager = MagicMock()
    manager.stats.return_value = {"total": total, "healthy": healthy, "unhealthy": total - healthy}
    return manager


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestHealthRouter:
    @pytest.mark.parametrize(
        ("ping", "total", "healthy", "ready"),
        [
            (True, 0, 0, True),
            (True, 3, 1, True),
            (True, 3, 0, False),
            (False, 0, 0, False),
        ],
    )
    def test_readiness(self, ping: bool, total: int, healthy: int, ready: bool) -> None:
        client = _client(create_health_router(store=_store(ping), proxy_manager=_proxies(total, healthy)))

        response = client.get("/readiness")

        assert response.status_code == (200 if ready else 503)
        body = response.json()
        assert body["success"] is ready
        assert body["data"]["ready"] is ready
        assert body["data"]["store_available"] is ping

    def test_health_is_public(self) -> None:
        crawls = MagicMock()
        crawls.running_count.return_value = 2
        client = _client(
            create_health_router(store=_store(), proxy_manager=_proxies(2, 2), crawl_service=crawls)
        )

        body = client.get("/health").json()

        assert body["data"]["status"] == "healthy"
        assert body["data"]["running_crawls"] == 2
        assert body["data"]["proxy_pool"]["healthy"] == 2

    def test_metrics(self) -> None:
        limiter = MagicMock()
        limiter.get_stats.return_value = {"total_requests": 5}
        crawls = MagicMock()
        crawls.running_count.return_value = 0
        crawls.list.return_value = [object(), object()]
        client = _client(
            create_health_router(proxy_manager=_proxies(0, 0), rate_limiter=limiter, crawl_service=crawls)
        )

        data = client.get("/metrics").json()["data"]

        assert data["rate_limiter"] == {"total_requests": 5}
        assert data["crawls"] == {"running": 0, "total": 2}
        assert data["deduplication"] == {}


# ---------------------------------------------------------------------------
# Proxies
# ---------------------------------------------------------------------------


class TestProxiesRouter:
    def test_requires_service_key(self) -> None:
        client = _client(create_proxies_router(proxy_manager=ProxyPoolManager(None)))
        assert client.get("/api/v1/proxies").status_code == 401
        assert client.get("/api/v1/proxies", headers={"X-Service-Key": "wrong"}).status_code == 401

    def test_register_list_remove(self) -> None:
        manager = ProxyPoolManager(None)
        client = _client(create_proxies_router(proxy_manager=manager))

        registered = client.post(
            "/api/v1/proxies",
            json={"proxies": ["http://p1.test:8080", "socks5://u:pw@p2.test:1080", "nonsense"]},
            headers=HEADERS,
        ).json()["data"]
        assert len(registered["registered"]) == 2
        assert len(registered["errors"]) == 1

        listing = client.get("/api/v1/proxies", headers=HEADERS).json()
        assert listing["meta"]["count"] == 2
        assert "pw" not in str(listing["data"])

        healthy = client.get("/api/v1/proxies?status=healthy", headers=HEADERS).json()
        assert healthy["meta"]["count"] == 2

        removed = client.post(
            "/api/v1/proxies/remove", json={"proxies": ["http://p1.test:8080"]}, headers=HEADERS
        ).json()
        assert removed["meta"]["count"] == 1
        assert len(manager) == 1

    def test_empty_list_rejected(self) -> None:
        client = _client(create_proxies_router(proxy_manager=ProxyPoolManager(None)))
        response = client.post("/api/v1/proxies", json={"proxies": []}, headers=HEADERS)
        assert response.status_code == 422
        assert response.json()["error"] == "Validation error"

    def test_stats_and_reset(self) -> None:
        manager = ProxyPoolManager(None)
        _run_async(manager.register(["http://p1.test:8080"]))
        _run_async(manager.report_failure("http://p1.test:8080", "boom"))
        client = _client(create_proxies_router(proxy_manager=manager))

        assert client.get("/api/v1/proxies/stats", headers=HEADERS).json()["data"]["total_failures"] == 1
        reset = client.post("/api/v1/proxies/reset", headers=HEADERS).json()["data"]
        assert reset["total_failures"] == 0
        assert reset["healthy"] == 1

    def test_health_check(self) -> None:
        manager = MagicMock()
        manager.health_check = AsyncMock(return_value={"http://p1.test:8080": True, "http://p2.test:8080": False})
        client = _client(create_proxies_router(proxy_manager=manager))

        body = client.post("/api/v1/proxies/health-check", headers=HEADERS).json()

        assert body["meta"] == {"passed": 1, "total": 2}


# ---------------------------------------------------------------------------
# Rate limits
# ---------------------------------------------------------------------------


class TestRateLimitsRouter:
    def test_pause_resume(self) -> None:
        limiter = EndpointRateLimiter(randomize_delays=False)
        client = _client(create_rate_limits_router(rate_limiter=limiter))

        assert client.post("/api/v1/rate-limits/pause", headers=HEADERS).json()["data"] == {"paused": True}
        assert limiter.paused
        assert client.post("/api/v1/rate-limits/resume", headers=HEADERS).json()["data"] == {"paused": False}
        assert not limiter.paused

    def test_endpoint_info_and_stats(self) -> None:
        limiter = EndpointRateLimiter(randomize_delays=False, min_interval_ms=0)
        client = _client(create_rate_limits_router(rate_limiter=limiter))

        info = client.get("/api/v1/rate-limits/app.bsky.graph.getFollowers", headers=HEADERS).json()["data"]
        assert info["active"] is False
        assert info["spacing_ms"] == 1000

        stats = client.get("/api/v1/rate-limits", headers=HEADERS).json()["data"]
        assert stats["total_requests"] == 0
        assert client.post("/api/v1/rate-limits/reset", headers=HEADERS).json()["success"] is True


# ---------------------------------------------------------------------------
# Crawls
# ---------------------------------------------------------------------------


def _run(crawl_id: str = "c-1") -> MagicMock:
    run = MagicMock()
    run.to_dict.return_value = {"crawl_id": crawl_id, "status": "running"}
    return run


class TestCrawlsRouter:
    def test_start_returns_202(self) -> None:
        service = MagicMock()
        service.start.return_value = _run()
        client = _client(create_crawls_router(crawl_service=service))

        response = client.post(
            "/api/v1/crawls", json={"seeds": ["did:plc:a"], "max_depth": 2}, headers=HEADERS
        )

        assert response.status_code == 202
        assert response.json()["data"]["crawl_id"] == "c-1"
        request = service.start.call_args.args[0]
        assert request.seeds == ["did:plc:a"]
        assert request.budget_overrides() == {"max_depth": 2}

    def test_start_conflict(self) -> None:
        service = MagicMock()
        service.start.side_effect = CrawlAlreadyRunningError(crawl_id="c-0", scraper_type="relationships")
        client = _client(create_crawls_router(crawl_service=service))

        response = client.post("/api/v1/crawls", json={}, headers=HEADERS)

        assert response.status_code == 409
        assert response.json()["meta"]["crawl_id"] == "c-0"

    def test_invalid_scraper_type(self) -> None:
        client = _client(create_crawls_router(crawl_service=MagicMock()))
        response = client.post("/api/v1/crawls", json={"scraper_type": "../etc"}, headers=HEADERS)
        assert response.status_code == 422

    def test_get_list_cancel(self) -> None:
        service = MagicMock()
        service.list.return_value = [_run("c-2"), _run("c-1")]
        service.get.side_effect = CrawlNotFoundError("Crawl not found: nope")
        service.cancel.return_value = _run("c-2")
        client = _client(create_crawls_router(crawl_service=service))

        listing = client.get("/api/v1/crawls", headers=HEADERS).json()
        assert listing["meta"]["count"] == 2
        assert client.get("/api/v1/crawls/nope", headers=HEADERS).status_code == 404
        assert client.post("/api/v1/crawls/c-2/cancel", headers=HEADERS).json()["data"]["crawl_id"] == "c-2"
        service.cancel.assert_called_once_with("c-2")


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------


class TestCheckpointsRouter:
    def test_list_latest_get_delete(self, tmp_path) -> None:
        checkpoints = CheckpointStore(None, frequency=2)
        first = _run_async(checkpoints.save("relationships", {"n": 1}))
        second = _run_async(checkpoints.save("relationships", {"n": 2}))
        client = _client(create_checkpoints_router(checkpoints=checkpoints, output_dir=tmp_path))

        listing = client.get("/api/v1/checkpoints/relationships", headers=HEADERS).json()
        assert [c["id"] for c in listing["data"]] == [second, first]
        assert listing["meta"] == {"count": 2, "retention": 4}
        assert "state" not in listing["data"][0]

        latest = client.get("/api/v1/checkpoints/relationships/latest", headers=HEADERS).json()
        assert latest["data"]["sequence"] == 2

        full = client.get(f"/api/v1/checkpoints/relationships/{first}", headers=HEADERS).json()
        assert full["data"]["state"] == {"n": 1}
        assert full["data"]["scraperType"] == "relationships"

        assert client.delete(f"/api/v1/checkpoints/relationships/{first}", headers=HEADERS).status_code == 200
        assert client.get(f"/api/v1/checkpoints/relationships/{first}", headers=HEADERS).status_code == 404
        assert client.delete(f"/api/v1/checkpoints/relationships/{first}", headers=HEADERS).status_code == 404

    def test_latest_missing(self, tmp_path) -> None:
        client = _client(create_checkpoints_router(checkpoints=CheckpointStore(None), output_dir=tmp_path))
        response = client.get("/api/v1/checkpoints/relationships/latest", headers=HEADERS)
        assert response.status_code == 404
        assert response.json()["error"] == "Checkpoint not found"

    def test_export_then_import(self, tmp_path) -> None:
        source = CheckpointStore(None)
        _run_async(source.save("relationships", {"n": 1}))
        exporter = _client(create_checkpoints_router(checkpoints=source, output_dir=tmp_path))

        exported = exporter.post(
            "/api/v1/checkpoints/relationships/export", json={"filename": "cp.json"}, headers=HEADERS
        ).json()["data"]
        assert exported == {"filename": "cp.json", "exported": 1}
        assert (tmp_path / EXPORT_DIRNAME / "cp.json").exists()

        target = CheckpointStore(None)
        importer = _client(create_checkpoints_router(checkpoints=target, output_dir=tmp_path))
        imported = importer.post(
            "/api/v1/checkpoints/relationships/import", json={"filename": "cp.json"}, headers=HEADERS
        ).json()["data"]
        assert imported["imported"] == 1

    def test_export_default_filename(self, tmp_path) -> None:
        client = _client(create_checkpoints_router(checkpoints=CheckpointStore(None), output_dir=tmp_path))
        data = client.post("/api/v1/checkpoints/relationships/export", json={}, headers=HEADERS).json()["data"]
        assert data["filename"].startswith("relationships_")
        assert data["exported"] == 0

    def test_import_requires_plain_filename(self, tmp_path) -> None:
        client = _client(create_checkpoints_router(checkpoints=CheckpointStore(None), output_dir=tmp_path))
        assert client.post(
            "/api/v1/checkpoints/relationships/import", json={}, headers=HEADERS
        ).status_code == 400
        assert client.post(
            "/api/v1/checkpoints/relationships/import", json={"filename": "../secrets.json"}, headers=HEADERS
        ).status_code == 422
        assert client.post(
            "/api/v1/checkpoints/relationships/import", json={"filename": "missing.json"}, headers=HEADERS
        ).status_code == 400

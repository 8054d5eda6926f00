"""FastAPI application entry point with lifespan management.

Startup: configure logging, build crawler components from settings, register
configured proxies, restore dedup filters, start the proxy health check loop.
Shutdown: drain running crawls (each is cancelled and takes a final
checkpoint), stop background tasks, persist dedup filters, close the store.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import redis.asyncio as redis
import uvicorn
from fastapi import FastAPI

from graphcrawler import __version__
from graphcrawler.config.settings import CrawlerSettings
from graphcrawler.container import build_components
from graphcrawler.logging_config import configure_logging
from graphcrawler.middleware.auth import ServiceKeyAuthMiddleware
from graphcrawler.middleware.error_handler import register_error_handlers
from graphcrawler.middleware.request_id import RequestIdMiddleware
from graphcrawler.routers.checkpoints import create_checkpoints_router
from graphcrawler.routers.crawls import create_crawls_router
from graphcrawler.routers.health import create_health_router
from graphcrawler.routers.proxies import create_proxies_router
from graphcrawler.routers.rate_limits import create_rate_limits_router
from graphcrawler.services.crawl_service import CrawlService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown logic."""
    settings: CrawlerSettings = app.state.settings

    configure_logging(settings.log_level)
    logger.info("Starting graph crawler service on port %d", settings.port)

    components = build_components(settings, app.state.redis_client)
    await components.initialize()

    # Start proxy health check loop
    health_check_task = asyncio.create_task(components.proxy_manager.health_check_loop())

    crawl_service = CrawlService(components=components)

    # Mount routers
    app.include_router(
        create_health_router(
            store=components.store,
            proxy_manager=components.proxy_manager,
            rate_limiter=components.rate_limiter,
            deduplicator=components.deduplicator,
            client=components.client,
            crawl_service=crawl_service,
        )
    )
    app.include_router(create_crawls_router(crawl_service=crawl_service))
    app.include_router(create_proxies_router(proxy_manager=components.proxy_manager))
    app.include_router(create_rate_limits_router(rate_limiter=components.rate_limiter))
    app.include_router(
        create_checkpoints_router(
            checkpoints=components.checkpoints,
            output_dir=settings.output_dir,
        )
    )

    app.state.components = components
    app.state.crawl_service = crawl_service

    logger.info("Graph crawler service started successfully")

    yield

    # --- Shutdown ---
    logger.info("Shutting down graph crawler service…")

    await crawl_service.drain(timeout=settings.graceful_shutdown_seconds)

    health_check_task.cancel()
    try:
        await health_check_task
    except asyncio.CancelledError:
        pass

    await components.close()
    logger.info("Graph crawler service shut down")


def create_app(
    settings: CrawlerSettings | None = None,
    redis_client: redis.Redis | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Loads ``CrawlerSettings`` eagerly so that a missing ``CRAWLER_SERVICE_KEY``
    environment variable causes an immediate startup failure rather than
    silently falling back to a placeholder value.
    """
    if settings is None:
        settings = CrawlerSettings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Graph Crawler Service",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.redis_client = redis_client

    # Register error handlers
    register_error_handlers(app)

    # Middleware (order: request_id → auth → error_handler)
    # Note: Starlette middleware is applied in reverse order of add_middleware calls
    app.add_middleware(ServiceKeyAuthMiddleware, service_key=settings.service_key)
    app.add_middleware(RequestIdMiddleware)

    return app


app = create_app()


def run() -> None:
    """Serve the application with uvicorn on the configured port."""
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port, log_config=None)

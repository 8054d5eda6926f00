"""Crawl run lifecycle management.

The CrawlService starts frontier crawls as background asyncio tasks, tracks
their progress, and cancels them on request or at shutdown. At most one
crawl per scraper type runs at a time, because crawls of the same type share
one checkpoint series.

All run state is held in-memory; the durable part of a crawl (frontier,
dedup records, checkpoints) lives in the shared store, so a crawl interrupted
by a restart is picked up again by starting it with ``resume`` set.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from uuid import uuid4

from graphcrawler.config.budget import CrawlBudget
from graphcrawler.container import CrawlerComponents
from graphcrawler.crawler.frontier_crawler import CrawlStatus, FrontierCrawler
from graphcrawler.crawler.output import JsonLinesSink, OutputSink
from graphcrawler.crawler.seeds import (
    DiscoveredNodesSeedProvider,
    FirstAvailableSeedProvider,
    SearchSeedProvider,
    SeedProvider,
)
from graphcrawler.middleware.error_handler import (
    CrawlAlreadyRunningError,
    CrawlerError,
    CrawlNotFoundError,
)
from graphcrawler.models.requests import CrawlRun, CrawlRunStatus, StartCrawlRequest

logger = logging.getLogger(__name__)

SinkFactory = Callable[[str], OutputSink]

_RESULT_STATUS = {
    CrawlStatus.COMPLETED: CrawlRunStatus.COMPLETED,
    CrawlStatus.CANCELLED: CrawlRunStatus.CANCELLED,
    CrawlStatus.BUDGET_EXHAUSTED: CrawlRunStatus.BUDGET_EXHAUSTED,
}


class CrawlService:
    """Starts, tracks and cancels crawl runs.

    Parameters
    ----------
    components:
        Shared crawler components (upstream client, deduplicator, checkpoints).
    sink_factory:
        Builds the output sink for a crawl id. Defaults to JSON Lines files
        under ``settings.output_dir``.
    seed_provider:
        Seeds used when a start request carries none. Defaults to nodes
        discovered by earlier crawls under ``settings.output_dir``, falling
        back to actor search over ``settings.seed_search_terms`` when no
        discovery data exists.
    """

    def __init__(
        self,
        *,
        components: CrawlerComponents,
        sink_factory: SinkFactory | None = None,
        seed_provider: SeedProvider | None = None,
    ) -> None:
        settings = components.settings
        self._components = components
        self._sink_factory = sink_factory or (lambda crawl_id: JsonLinesSink(settings.output_dir, crawl_id))
        self._seed_provider = seed_provider or FirstAvailableSeedProvider(
            [
                DiscoveredNodesSeedProvider(settings.output_dir),
                SearchSeedProvider(
                    components.client,
                    settings.seed_search_terms,
                    max_pages=settings.seed_search_max_pages,
                    page_size=settings.page_size,
                ),
            ]
        )
        self._runs: dict[str, CrawlRun] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self, request: StartCrawlRequest) -> CrawlRun:
        """Build a crawler for *request* and run it in the background.

        Raises
        ------
        CrawlAlreadyRunningError
            If a crawl of the same scraper type is still running.
        ConfigurationError
            If the budget overrides are invalid.
        """
        for run in self._runs.values():
            if run.scraper_type == request.scraper_type and run.status == CrawlRunStatus.RUNNING:
                raise CrawlAlreadyRunningError(crawl_id=run.id, scraper_type=run.scraper_type)

        settings = self._components.settings
        budget = CrawlBudget.from_settings(settings, **request.budget_overrides())
        crawl_id = str(uuid4())
        sink = self._sink_factory(crawl_id)
        crawler = FrontierCrawler(
            self._components.client,
            self._components.deduplicator,
            self._components.checkpoints,
            sink,
            budget,
            seed_provider=self._seed_provider,
            scraper_type=request.scraper_type,
            crawl_id=crawl_id,
            checkpoint_every=settings.checkpoint_every_nodes,
            output_batch_size=settings.output_batch_size,
            page_size=settings.page_size,
        )
        run = CrawlRun(
            id=crawl_id,
            scraper_type=request.scraper_type,
            status=CrawlRunStatus.RUNNING,
            crawler=crawler,
        )
        self._runs[crawl_id] = run
        run.task = asyncio.create_task(
            self._execute(run, sink, request.seeds, request.resume),
            name=f"crawl-{crawl_id}",
        )

        logger.info(
            "Started crawl (type=%s, resume=%s, max_depth=%d)",
            request.scraper_type,
            request.resume,
            budget.max_depth,
            extra={"crawl_id": crawl_id, "scraper_type": request.scraper_type},
        )
        return run

    def get(self, crawl_id: str) -> CrawlRun:
        """Return a crawl run.

        Raises
        ------
        CrawlNotFoundError
            If the crawl ID is not found.
        """
        if crawl_id not in self._runs:
            raise CrawlNotFoundError(f"Crawl not found: {crawl_id}")
        return self._runs[crawl_id]

    def list(self) -> list[CrawlRun]:
        return sorted(self._runs.values(), key=lambda run: run.created_at, reverse=True)

    def cancel(self, crawl_id: str) -> CrawlRun:
        """Ask a running crawl to stop at its next node or page boundary."""
        run = self.get(crawl_id)
        if run.status == CrawlRunStatus.RUNNING:
            run.crawler.request_cancel()
        return run

    def running_count(self) -> int:
        return sum(1 for run in self._runs.values() if run.status == CrawlRunStatus.RUNNING)

    async def drain(self, timeout: float) -> None:
        """Cancel every running crawl and wait up to *timeout* seconds.

        Crawls still running after the timeout have their tasks cancelled;
        each one checkpoints on the way out.
        """
        tasks = [
            run.task
            for run in self._runs.values()
            if run.status == CrawlRunStatus.RUNNING and run.task is not None
        ]
        if not tasks:
            return

        for run in self._runs.values():
            if run.status == CrawlRunStatus.RUNNING:
                run.crawler.request_cancel()

        _done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Force-cancelled %d crawls after %.0fs drain timeout", len(pending), timeout)
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Background execution
    # ------------------------------------------------------------------

    async def _execute(
        self,
        run: CrawlRun,
        sink: OutputSink,
        seeds: list[str] | None,
        resume: bool,
    ) -> None:
        try:
            run.result = await run.crawler.run(seeds=seeds, resume=resume)
            run.status = _RESULT_STATUS[run.result.status]
        except asyncio.CancelledError:
            run.status = CrawlRunStatus.CANCELLED
            raise
        except CrawlerError as exc:
            run.status = CrawlRunStatus.FAILED
            run.error = exc.message
            logger.error(
                "Crawl failed: %s",
                exc.message,
                extra={"crawl_id": run.id, "error_reason": type(exc).__name__},
            )
        except Exception as exc:
            run.status = CrawlRunStatus.FAILED
            run.error = str(exc)
            logger.exception("Crawl failed unexpectedly", extra={"crawl_id": run.id})
        finally:
            run.finished_at = datetime.now(timezone.utc)
            await sink.close()

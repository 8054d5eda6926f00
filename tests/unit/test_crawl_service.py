"""Unit tests for the crawl run service."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from graphcrawler.container import CrawlerComponents
from graphcrawler.crawler.frontier_crawler import CrawlStatus
from graphcrawler.crawler.output import CollectingSink
from graphcrawler.middleware.error_handler import (
    ConfigurationError,
    CrawlAlreadyRunningError,
    CrawlNotFoundError,
)
from graphcrawler.models.requests import CrawlRunStatus, StartCrawlRequest
from graphcrawler.proxy.manager import ProxyPoolManager
from graphcrawler.resilience.rate_limiter import EndpointRateLimiter
from graphcrawler.services.crawl_service import CrawlService

S1 = "did:plc:seed1"


@pytest.fixture
def source(graph_source, make_profile):
    return graph_source(
        followers={S1: ["did:plc:a", "did:plc:b"]},
        profiles={S1: make_profile(S1, followers=2)},
    )


def _components(settings, store, deduplicator, checkpoint_store, client) -> CrawlerComponents:
    return CrawlerComponents(
        settings=settings,
        store=store,
        proxy_manager=ProxyPoolManager(store),
        rate_limiter=EndpointRateLimiter(randomize_delays=False),
        deduplicator=deduplicator,
        checkpoints=checkpoint_store,
        client=client,
    )


@pytest.fixture
def sinks() -> dict[str, CollectingSink]:
    return {}


@pytest.fixture
def service(settings, store, deduplicator, checkpoint_store, source, sinks) -> CrawlService:
    def factory(crawl_id: str) -> CollectingSink:
        sinks[crawl_id] = CollectingSink()
        return sinks[crawl_id]

    return CrawlService(
        components=_components(settings, store, deduplicator, checkpoint_store, source),
        sink_factory=factory,
    )


class TestStart:
    @pytest.mark.asyncio
    async def test_runs_to_completion(self, service, sinks) -> None:
        run = service.start(StartCrawlRequest(seeds=[S1], resume=False, max_depth=1))
        assert run.status == CrawlRunStatus.RUNNING
        assert service.running_count() == 1

        await run.task

        assert run.status == CrawlRunStatus.COMPLETED
        assert run.result.status is CrawlStatus.COMPLETED
        assert run.result.edges_emitted == 2
        assert len(sinks[run.id].edges) == 2
        assert run.finished_at is not None
        assert service.running_count() == 0

        data = run.to_dict()
        assert data["status"] == "completed"
        assert data["result"]["edges_emitted"] == 2
        assert data["progress"]["visited"] == 3

    @pytest.mark.asyncio
    async def test_one_running_crawl_per_type(self, service) -> None:
        first = service.start(StartCrawlRequest(seeds=[S1], resume=False))
        with pytest.raises(CrawlAlreadyRunningError):
            service.start(StartCrawlRequest(seeds=[S1], resume=False))
        other = service.start(StartCrawlRequest(scraper_type="other", seeds=[S1], resume=False))

        await asyncio.gather(first.task, other.task)
        again = service.start(StartCrawlRequest(seeds=[S1], resume=False))
        await again.task
        assert len(service.list()) == 3

    @pytest.mark.asyncio
    async def test_invalid_budget_rejected(self, service) -> None:
        with pytest.raises(ConfigurationError):
            service.start(StartCrawlRequest(seeds=[S1], max_depth=9))
        assert service.list() == []

    @pytest.mark.asyncio
    async def test_default_sink_writes_json_lines(
        self, settings, store, deduplicator, checkpoint_store, source
    ) -> None:
        service = CrawlService(components=_components(settings, store, deduplicator, checkpoint_store, source))

        run = service.start(StartCrawlRequest(seeds=[S1], resume=False, max_depth=1))
        await run.task

        edges = Path(settings.output_dir) / run.id / "edges.jsonl"
        assert len(edges.read_text().splitlines()) == 2

    @pytest.mark.asyncio
    async def test_seeds_default_to_earlier_discoveries(
        self, settings, store, deduplicator, checkpoint_store, source
    ) -> None:
        service = CrawlService(components=_components(settings, store, deduplicator, checkpoint_store, source))
        first = service.start(StartCrawlRequest(seeds=[S1], resume=False, max_depth=1))
        await first.task

        second = service.start(StartCrawlRequest(resume=False, max_depth=1))
        await second.task

        assert second.status == CrawlRunStatus.COMPLETED
        assert second.result.nodes_processed == 3
        assert second.result.edges_emitted == 0

    @pytest.mark.asyncio
    async def test_seeds_fall_back_to_search(
        self, settings, store, deduplicator, checkpoint_store, graph_source, make_profile, sinks
    ) -> None:
        source = graph_source(
            followers={S1: ["did:plc:a", "did:plc:b"]},
            profiles={S1: make_profile(S1, followers=2)},
            search_results={"rust": [S1]},
        )
        settings = settings.model_copy(update={"seed_search_terms": ["rust"]})

        def factory(crawl_id: str) -> CollectingSink:
            sinks[crawl_id] = CollectingSink()
            return sinks[crawl_id]

        service = CrawlService(
            components=_components(settings, store, deduplicator, checkpoint_store, source),
            sink_factory=factory,
        )
        run = service.start(StartCrawlRequest(max_depth=1))
        await run.task

        assert run.status == CrawlRunStatus.COMPLETED
        assert run.result.edges_emitted == 2
        seed = next(n for n in sinks[run.id].nodes if n.id == S1)
        assert seed.provenance.strategy == "search"
        assert ("search", "rust", None) in source.calls

    @pytest.mark.asyncio
    async def test_new_crawl_after_completion_starts_fresh(self, service, source, make_profile, sinks) -> None:
        assert StartCrawlRequest().resume is False
        first = service.start(StartCrawlRequest(seeds=[S1], max_depth=1))
        await first.task

        other = "did:plc:other"
        source.followers[other] = ["did:plc:c"]
        source.profiles[other] = make_profile(other, followers=1)
        second = service.start(StartCrawlRequest(seeds=[other], max_depth=1))
        await second.task

        assert second.result.resumed is False
        assert [(e.source, e.target) for e in sinks[second.id].edges] == [(other, "did:plc:c")]


class TestLookupAndCancel:
    def test_unknown_crawl(self, service) -> None:
        with pytest.raises(CrawlNotFoundError):
            service.get("missing")
        with pytest.raises(CrawlNotFoundError):
            service.cancel("missing")

    @pytest.mark.asyncio
    async def test_cancel_before_first_node(self, service) -> None:
        run = service.start(StartCrawlRequest(seeds=[S1], resume=False))
        assert service.cancel(run.id) is run

        await run.task

        assert run.status == CrawlRunStatus.CANCELLED
        assert run.result.nodes_processed == 0
        assert run.result.checkpoint_id is not None


class TestFailures:
    @pytest.mark.asyncio
    async def test_unexpected_error_marks_run_failed(
        self, settings, store, deduplicator, checkpoint_store, graph_source
    ) -> None:
        class Broken(graph_source):
            async def get_profile(self, actor):
                raise RuntimeError("boom")

        service = CrawlService(
            components=_components(settings, store, deduplicator, checkpoint_store, Broken()),
            sink_factory=lambda crawl_id: CollectingSink(),
        )

        run = service.start(StartCrawlRequest(seeds=[S1], resume=False))
        await run.task

        assert run.status == CrawlRunStatus.FAILED
        assert run.error == "boom"


class TestDrain:
    @pytest.mark.asyncio
    async def test_drain_cancels_stuck_crawls(
        self, settings, store, deduplicator, checkpoint_store, graph_source
    ) -> None:
        entered = asyncio.Event()

        class Stuck(graph_source):
            async def list_edges(self, actor, direction, cursor=None, limit=None):
                entered.set()
                await asyncio.Event().wait()

        service = CrawlService(
            components=_components(settings, store, deduplicator, checkpoint_store, Stuck()),
            sink_factory=lambda crawl_id: CollectingSink(),
        )
        run = service.start(StartCrawlRequest(seeds=[S1], resume=False))
        await entered.wait()

        await service.drain(timeout=0.05)

        assert run.task.done()
        assert run.status == CrawlRunStatus.CANCELLED
        assert await checkpoint_store.load_latest("relationships") is not None

    @pytest.mark.asyncio
    async def test_drain_without_crawls(self, service) -> None:
        await service.drain(timeout=0.01)

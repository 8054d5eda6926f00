"""Shared test fixtures for the crawler test suite."""

from __future__ import annotations

import os

# graphcrawler.main builds its app at import time and needs the service key.
os.environ.setdefault("CRAWLER_SERVICE_KEY", "test-key")

import fakeredis
import pytest

from graphcrawler.api.endpoints import EdgeDirection
from graphcrawler.api.models import ActorProfile, ActorSearchPage, EdgePage
from graphcrawler.checkpoint.store import CheckpointStore
from graphcrawler.config.settings import CrawlerSettings
from graphcrawler.dedup.deduplicator import Deduplicator
from graphcrawler.middleware.error_handler import ClientError
from graphcrawler.store import KeyValueStore


# ---------------------------------------------------------------------------
# Ensure required env vars are set for CrawlerSettings in tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set minimal env vars so CrawlerSettings can be instantiated in tests."""
    if "CRAWLER_SERVICE_KEY" not in os.environ:
        monkeypatch.setenv("CRAWLER_SERVICE_KEY", "test-key")


# ---------------------------------------------------------------------------
# Deterministic time
# ---------------------------------------------------------------------------

class FakeClock:
    """Manually advanced time source with a matching ``sleep`` coroutine."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Settings fixture
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path) -> CrawlerSettings:
    """Test settings with safe defaults."""
    return CrawlerSettings(
        service_key="test-key",
        output_dir=str(tmp_path / "data"),
        randomize_delays=False,
        min_request_interval_ms=0,
        retry_base_delay_seconds=0.01,
        retry_max_delay_seconds=0.05,
        bloom_expected_elements=10_000,
        edge_cardinality_factor=2,
        max_depth=2,
        min_follower_count=0,
    )


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server: fakeredis.FakeServer) -> fakeredis.aioredis.FakeRedis:
    return fakeredis.aioredis.FakeRedis(server=redis_server)


@pytest.fixture
def store(redis_client) -> KeyValueStore:
    return KeyValueStore(redis_client, prefix="test", timeout=1.0)


@pytest.fixture
def deduplicator(store: KeyValueStore) -> Deduplicator:
    return Deduplicator(store, expected_elements=10_000, false_positive_rate=0.01, edge_cardinality_factor=2)


@pytest.fixture
def checkpoint_store(store: KeyValueStore) -> CheckpointStore:
    return CheckpointStore(store, frequency=2, max_age_seconds=3600)


# ---------------------------------------------------------------------------
# Fake upstream graph
# ---------------------------------------------------------------------------

def profile(did: str, followers: int | None = None, follows: int | None = None) -> ActorProfile:
    return ActorProfile(
        did=did,
        handle=did.split(":")[-1] + ".test",
        followers_count=followers,
        follows_count=follows,
    )


class FakeGraphSource:
    """In-memory follow graph served with the upstream client's interface.

    ``followers`` / ``follows`` map an actor id to the list of ids on that
    side; ``profiles`` supplies counts. ``search_results`` maps a query to
    matching ids, returned without counts the way actor search does. Pages
    hold ``page_size`` items and cursors are stringified offsets.
    """

    def __init__(
        self,
        followers: dict[str, list[str]] | None = None,
        follows: dict[str, list[str]] | None = None,
        profiles: dict[str, ActorProfile] | None = None,
        page_size: int = 100,
        search_results: dict[str, list[str]] | None = None,
    ) -> None:
        self.followers = followers or {}
        self.follows = follows or {}
        self.profiles = profiles or {}
        self.search_results = search_results or {}
        self.page_size = page_size
        self.calls: list[tuple[str, str, str | None]] = []
        self.fail_for: set[str] = set()

    def _profile(self, did: str) -> ActorProfile:
        return self.profiles.get(did) or profile(did, followers=0)

    async def get_profile(self, actor: str) -> ActorProfile:
        if actor in self.fail_for:
            raise ClientError("Upstream rejected the request: HTTP 400", actor=actor)
        return self._profile(actor)

    async def list_edges(
        self,
        actor: str,
        direction: EdgeDirection | str,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> EdgePage:
        direction = EdgeDirection(direction)
        self.calls.append((actor, direction.value, cursor))
        if actor in self.fail_for:
            raise ClientError("Upstream rejected the request: HTTP 400", actor=actor)
        table = self.followers if direction is EdgeDirection.FOLLOWERS else self.follows
        ids = table.get(actor, [])
        start = int(cursor or 0)
        size = min(limit or self.page_size, self.page_size)
        chunk = ids[start:start + size]
        next_cursor = str(start + size) if start + size < len(ids) else None
        return EdgePage(items=[self._profile(i) for i in chunk], cursor=next_cursor)

    async def search_actors(
        self,
        query: str,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> ActorSearchPage:
        self.calls.append(("search", query, cursor))
        if query in self.fail_for:
            raise ClientError("Upstream rejected the request: HTTP 400", q=query)
        ids = self.search_results.get(query, [])
        start = int(cursor or 0)
        size = min(limit or self.page_size, self.page_size)
        chunk = ids[start:start + size]
        next_cursor = str(start + size) if start + size < len(ids) else None
        actors = [ActorProfile(did=i, handle=self._profile(i).handle) for i in chunk]
        return ActorSearchPage(actors=actors, cursor=next_cursor)


@pytest.fixture
def make_profile():
    return profile


@pytest.fixture
def graph_source():
    """Factory for FakeGraphSource instances."""
    return FakeGraphSource

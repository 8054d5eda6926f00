"""Seed sources for a crawl's depth-0 queue."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError as PydanticValidationError

from graphcrawler.api.models import ActorProfile, ActorSearchPage
from graphcrawler.crawler.output import STRATEGY_BFS, STRATEGY_SEARCH
from graphcrawler.middleware.error_handler import UpstreamError, ValidationError

logger = logging.getLogger(__name__)


class SeedProvider(ABC):
    """Supplies candidate seed actors.

    ``strategy`` is recorded as the provenance of the seed nodes it returns.
    """

    strategy: str = STRATEGY_BFS

    @abstractmethod
    async def load_seeds(self) -> list[ActorProfile]:
        ...


class DiscoveredNodesSeedProvider(SeedProvider):
    """Reads node records written by earlier crawls.

    Scans ``{output_dir}/*/nodes.jsonl`` (the ``JsonLinesSink`` layout) and
    also accepts plain JSON arrays of profiles in ``{output_dir}/*.json``.
    Later occurrences of the same actor replace earlier ones.
    """

    def __init__(self, output_dir: str | Path) -> None:
        self._output_dir = Path(output_dir)

    async def load_seeds(self) -> list[ActorProfile]:
        if not self._output_dir.exists():
            logger.warning("No discovery data at %s", self._output_dir)
            return []
        seeds = await asyncio.to_thread(self._read)
        logger.info("Loaded %d candidate seeds from %s", len(seeds), self._output_dir)
        return seeds

    def _read(self) -> list[ActorProfile]:
        seeds: dict[str, ActorProfile] = {}
        for path in sorted(self._output_dir.glob("*/nodes.jsonl")):
            with path.open(encoding="utf-8") as handle:
                for line in handle:
                    line = line.strip()
                    if line:
                        self._add(seeds, line, path)
        for path in sorted(self._output_dir.glob("*.json")):
            try:
                entries = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Skipping unreadable seed file %s: %s", path, exc)
                continue
            if isinstance(entries, list):
                for entry in entries:
                    self._add(seeds, entry, path)
        return list(seeds.values())

    @staticmethod
    def _add(seeds: dict[str, ActorProfile], entry: str | dict, path: Path) -> None:
        try:
            data = json.loads(entry) if isinstance(entry, str) else entry
            if isinstance(data, dict) and "did" not in data and "id" in data:
                data = {**data, "did": data["id"]}
            profile = ActorProfile.model_validate(data)
        except (json.JSONDecodeError, PydanticValidationError):
            logger.debug("Skipping malformed seed entry in %s", path)
            return
        seeds[profile.did] = profile


class SearchSource(Protocol):
    """The part of ``UpstreamClient`` used for search seeding."""

    async def search_actors(
        self,
        query: str,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> ActorSearchPage: ...

    async def get_profile(self, actor: str) -> ActorProfile: ...


class SearchSeedProvider(SeedProvider):
    """Discovers seed actors through free-text actor search.

    Each term is paged for at most *max_pages* pages. Search results usually
    omit follower counts, so actors without one are resolved through a
    profile lookup before they are handed to the crawler's admission filter.
    A term whose search fails is logged and skipped.
    """

    strategy = STRATEGY_SEARCH

    def __init__(
        self,
        source: SearchSource,
        terms: Sequence[str],
        *,
        max_pages: int = 10,
        page_size: int = 100,
    ) -> None:
        self._source = source
        self._terms = [t.strip() for t in terms if t.strip()]
        self._max_pages = max(1, max_pages)
        self._page_size = page_size

    async def load_seeds(self) -> list[ActorProfile]:
        if not self._terms:
            return []
        seeds: dict[str, ActorProfile] = {}
        for term in self._terms:
            found = await self._search(term, seeds)
            logger.info("Search term %r yielded %d new actors", term, found)

        for did, candidate in list(seeds.items()):
            if candidate.followers_count is not None:
                continue
            try:
                seeds[did] = await self._source.get_profile(did)
            except (UpstreamError, ValidationError) as exc:
                logger.warning(
                    "Dropping search result %s: %s",
                    did,
                    exc.message,
                    extra={"node": did, "error_reason": exc.message},
                )
                del seeds[did]

        logger.info("Loaded %d candidate seeds from %d search terms", len(seeds), len(self._terms))
        return list(seeds.values())

    async def _search(self, term: str, seeds: dict[str, ActorProfile]) -> int:
        found = 0
        cursor: str | None = None
        for _page in range(self._max_pages):
            try:
                page = await self._source.search_actors(term, cursor=cursor, limit=self._page_size)
            except (UpstreamError, ValidationError) as exc:
                logger.warning(
                    "Search for %r failed: %s",
                    term,
                    exc.message,
                    extra={"error_reason": exc.message},
                )
                break
            for actor in page.actors:
                if actor.did not in seeds:
                    seeds[actor.did] = actor
                    found += 1
            cursor = page.cursor
            if not cursor or not page.actors:
                break
        return found


class FirstAvailableSeedProvider(SeedProvider):
    """Asks each provider in turn and keeps the first non-empty answer."""

    def __init__(self, providers: Sequence[SeedProvider]) -> None:
        self._providers = list(providers)
        self.strategy = STRATEGY_BFS

    async def load_seeds(self) -> list[ActorProfile]:
        for provider in self._providers:
            seeds = await provider.load_seeds()
            if seeds:
                self.strategy = provider.strategy
                return seeds
        return []

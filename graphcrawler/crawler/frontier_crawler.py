"""Depth-bounded breadth-first crawl over the follow graph.

Algorithm
---------
1. One FIFO queue per depth 0..max_depth plus a session-wide visited set.
   Depth 0 is seeded from explicit identifiers or a ``SeedProvider``,
   optionally sorted by follower count.
2. Depths are processed in increasing order. A dequeued node already visited
   is skipped; otherwise it is marked visited *before* its edges are fetched.
3. Each listed edge ``(source, target, direction)`` is checked against the
   deduplicator. New edges are emitted; if the node is above max depth and
   the far end passes the follower-count admission filter, the far end is
   enqueued at depth + 1 (once per session).
4. The crawl stops when all queues drain, a node or edge budget is reached,
   or cancellation is requested. Cancellation is checked before every node
   and every page fetch; an in-flight fetch is always allowed to finish.
5. Every ``checkpoint_every`` nodes the output buffer is flushed, the dedup
   filters saved and the full frontier checkpointed. A final checkpoint is
   written on cancellation or budget exhaustion; a node interrupted half way
   goes back to the head of its queue so a resumed crawl lists it again.
   A completed crawl leaves a completion marker that is never resumed.
6. Nodes and edges are recorded in the deduplicator only once the sink has
   accepted the batch holding them, so records lost with an unwritten batch
   are emitted again by a later session.

Node-, edge- and proxy-level failures are counted and logged; they never
abort the crawl.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Protocol

from graphcrawler.api.endpoints import EdgeDirection
from graphcrawler.api.models import ActorProfile, EdgePage
from graphcrawler.checkpoint.store import CheckpointStore
from graphcrawler.config.budget import CrawlBudget
from graphcrawler.crawler.frontier import FrontierNode, FrontierState
from graphcrawler.crawler.output import (
    STRATEGY_BFS,
    DiscoveryBatch,
    EdgeRecord,
    NodeRecord,
    OutputBuffer,
    OutputSink,
    Provenance,
)
from graphcrawler.crawler.seeds import SeedProvider
from graphcrawler.dedup.deduplicator import DedupNamespace, Deduplicator
from graphcrawler.middleware.error_handler import ConfigurationError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_SCRAPER_TYPE = "relationships"


class GraphSource(Protocol):
    """The part of ``UpstreamClient`` the crawler depends on."""

    async def get_profile(self, actor: str) -> ActorProfile: ...

    async def list_edges(
        self,
        actor: str,
        direction: EdgeDirection | str,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> EdgePage: ...


class CrawlStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    BUDGET_EXHAUSTED = "budget_exhausted"


@dataclass
class CrawlResult:
    status: CrawlStatus
    nodes_processed: int
    edges_emitted: int
    duplicates_skipped: int
    errors: int
    elapsed_seconds: float
    final_depth: int
    resumed: bool = False
    checkpoint_id: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class FrontierCrawler:
    """Runs one breadth-first crawl session.

    Parameters
    ----------
    source:
        Upstream API (profile lookup and edge listing).
    deduplicator:
        Shared node / edge deduplicator.
    checkpoints:
        Checkpoint store used for resume and periodic snapshots.
    sink:
        Destination for discovery batches.
    budget:
        Depth, size and admission limits for this crawl.
    seed_provider:
        Used when ``run`` is called without explicit seeds.
    """

    def __init__(
        self,
        source: GraphSource,
        deduplicator: Deduplicator,
        checkpoints: CheckpointStore,
        sink: OutputSink,
        budget: CrawlBudget,
        *,
        seed_provider: SeedProvider | None = None,
        scraper_type: str = DEFAULT_SCRAPER_TYPE,
        crawl_id: str | None = None,
        checkpoint_every: int = 50,
        output_batch_size: int = 1000,
        page_size: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._dedup = deduplicator
        self._checkpoints = checkpoints
        self._budget = budget
        self._seed_provider = seed_provider
        self._scraper_type = scraper_type
        self.crawl_id = crawl_id or str(uuid.uuid4())
        self._checkpoint_every = max(1, checkpoint_every)
        self._page_size = page_size
        self._clock = clock
        self._output = OutputBuffer(sink, self.crawl_id, output_batch_size, on_written=self._commit_batch)
        self._cancel_requested = False
        self._state: FrontierState | None = None
        self._last_checkpoint_id: str | None = None
        self._in_flight: FrontierNode | None = None
        # Emitted this session but not yet accepted by the sink.
        self._uncommitted: set[tuple[DedupNamespace, str | tuple[str, str, str]]] = set()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def request_cancel(self) -> None:
        """Ask the crawl to stop at the next node or page boundary."""
        if not self._cancel_requested:
            logger.info("Cancellation requested", extra={"crawl_id": self.crawl_id})
        self._cancel_requested = True

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def state(self) -> FrontierState | None:
        return self._state

    def progress(self) -> dict:
        """Live counters for status reporting."""
        if self._state is None:
            return {"crawl_id": self.crawl_id, "started": False}
        state = self._state
        return {
            "crawl_id": self.crawl_id,
            "started": True,
            "current_depth": min(state.current_depth, self._budget.max_depth),
            "queue_sizes": state.queue_sizes(),
            "visited": len(state.visited),
            **asdict(state.counters),
        }

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, seeds: Sequence[str] | None = None, resume: bool = False) -> CrawlResult:
        """Crawl until the frontier drains, a budget is hit, or cancellation.

        With *resume*, the latest checkpoint for this scraper type is
        restored and *seeds* are ignored, unless that checkpoint is too old
        or marks a completed crawl; then the crawl starts fresh from *seeds*.
        """
        started = self._clock()
        state = await self._restore() if resume else None
        resumed = state is not None
        if state is None:
            state = FrontierState(max_depth=self._budget.max_depth, session_id=self.crawl_id)
            await self._seed(state, seeds)
        self._state = state

        logger.info(
            "Crawl %s: %d pending nodes, max depth %d",
            "resumed" if resumed else "started",
            state.pending(),
            self._budget.max_depth,
            extra={"crawl_id": self.crawl_id, "depth": state.current_depth},
        )

        try:
            status = await self._traverse(state)
        except BaseException:
            # Unexpected failure or task cancellation: persist what we have.
            self._requeue_in_flight(state)
            try:
                await self._checkpoint(state, final=True)
            except Exception:
                # Without a durable flush the previous checkpoint stays the resume point.
                logger.exception("Could not checkpoint failed crawl", extra={"crawl_id": self.crawl_id})
            raise

        await self._checkpoint(state, final=True, completed=status is CrawlStatus.COMPLETED)

        counters = state.counters
        result = CrawlResult(
            status=status,
            nodes_processed=counters.nodes_processed,
            edges_emitted=counters.edges_emitted,
            duplicates_skipped=counters.duplicates_skipped,
            errors=counters.errors,
            elapsed_seconds=round(self._clock() - started, 3),
            final_depth=counters.deepest_depth,
            resumed=resumed,
            checkpoint_id=self._last_checkpoint_id,
        )
        logger.info(
            "Crawl finished: %s (%d nodes, %d edges, %d duplicates, %d errors)",
            status.value,
            result.nodes_processed,
            result.edges_emitted,
            result.duplicates_skipped,
            result.errors,
            extra={"crawl_id": self.crawl_id, "duration_ms": round(result.elapsed_seconds * 1000)},
        )
        return result

    async def _restore(self) -> FrontierState | None:
        checkpoint = await self._checkpoints.load_latest(self._scraper_type)
        if checkpoint is None:
            return None
        if checkpoint.metadata.get("completed"):
            logger.info(
                "Latest checkpoint %s marks a completed crawl; starting fresh",
                checkpoint.id,
                extra={"crawl_id": self.crawl_id},
            )
            return None
        try:
            state = FrontierState.from_dict(checkpoint.state["frontier"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Ignoring checkpoint %s with unusable state: %s", checkpoint.id, exc)
            return None
        if state.max_depth != self._budget.max_depth:
            logger.warning(
                "Checkpoint max depth %d differs from budget %d; using budget",
                state.max_depth,
                self._budget.max_depth,
            )
            state.max_depth = self._budget.max_depth
            state.__post_init__()
        logger.info("Resuming from checkpoint %s", checkpoint.id, extra={"crawl_id": self.crawl_id})
        return state

    async def _seed(self, state: FrontierState, seeds: Sequence[str] | None) -> None:
        strategy: str | None = None
        if seeds:
            profiles = await self._resolve_seeds(state, seeds)
        elif self._seed_provider is not None:
            profiles = [
                p
                for p in await self._seed_provider.load_seeds()
                if (p.followers_count or 0) >= self._budget.min_follower_count
            ]
            strategy = self._seed_provider.strategy
        else:
            raise ConfigurationError("A crawl needs explicit seeds or a seed provider")

        if self._budget.prioritize_popular:
            profiles.sort(key=lambda p: p.followers_count or 0, reverse=True)
        for profile in profiles[: self._budget.seed_limit]:
            state.enqueue(FrontierNode.from_profile(profile, depth=0, strategy=strategy))
        logger.info("Seeded %d nodes at depth 0", len(state.queues[0]), extra={"crawl_id": self.crawl_id})

    async def _resolve_seeds(self, state: FrontierState, seeds: Sequence[str]) -> list[ActorProfile]:
        profiles: list[ActorProfile] = []
        for identifier in dict.fromkeys(seeds):
            try:
                profiles.append(await self._source.get_profile(identifier))
            except (UpstreamError, ValidationError) as exc:
                state.counters.errors += 1
                logger.warning(
                    "Could not resolve seed %s: %s",
                    identifier,
                    exc.message,
                    extra={"crawl_id": self.crawl_id, "node": identifier, "error_reason": exc.message},
                )
        return profiles

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def _budget_exhausted(self, state: FrontierState) -> bool:
        counters = state.counters
        if self._budget.max_nodes is not None and counters.nodes_processed >= self._budget.max_nodes:
            return True
        return counters.edges_emitted >= self._budget.max_edges

    async def _traverse(self, state: FrontierState) -> CrawlStatus:
        while state.current_depth <= self._budget.max_depth:
            queue = state.queues[state.current_depth]
            if queue:
                logger.info(
                    "Processing depth %d with %d nodes",
                    state.current_depth,
                    len(queue),
                    extra={"crawl_id": self.crawl_id, "depth": state.current_depth},
                )
            while queue:
                if self._cancel_requested:
                    return CrawlStatus.CANCELLED
                if self._budget_exhausted(state):
                    return CrawlStatus.BUDGET_EXHAUSTED

                node = queue.popleft()
                if node.id in state.visited:
                    continue
                state.visited.add(node.id)

                self._in_flight = node
                finished = await self._process_node(state, node)
                if not finished:
                    self._requeue_in_flight(state)
                    return CrawlStatus.CANCELLED if self._cancel_requested else CrawlStatus.BUDGET_EXHAUSTED
                self._in_flight = None
                state.counters.nodes_processed += 1
                state.counters.deepest_depth = max(state.counters.deepest_depth, node.depth)

                if state.counters.nodes_processed % self._checkpoint_every == 0:
                    await self._checkpoint(state)

                if self._cancel_requested:
                    return CrawlStatus.CANCELLED
                if self._budget_exhausted(state):
                    return CrawlStatus.BUDGET_EXHAUSTED
            state.current_depth += 1
        return CrawlStatus.COMPLETED

    def _requeue_in_flight(self, state: FrontierState) -> None:
        """Put a node whose edges were not fully listed back at the head of its queue."""
        node, self._in_flight = self._in_flight, None
        if node is None:
            return
        state.visited.discard(node.id)
        state.queues[node.depth].appendleft(node)
        logger.info(
            "Node %s interrupted; it will be listed again on resume",
            node.id,
            extra={"crawl_id": self.crawl_id, "node": node.id, "depth": node.depth},
        )

    async def _is_new(self, key: str | tuple[str, str, str], namespace: DedupNamespace) -> bool:
        if (namespace, key) in self._uncommitted:
            return False
        return not await self._dedup.is_duplicate(key, namespace)

    async def _process_node(self, state: FrontierState, node: FrontierNode) -> bool:
        """Emit *node* and list its edges; False when interrupted part way."""
        if await self._is_new(node.id, DedupNamespace.NODE):
            self._uncommitted.add((DedupNamespace.NODE, node.id))
            await self._output.add_node(
                NodeRecord(
                    id=node.id,
                    handle=node.handle,
                    followers_count=node.followers_count,
                    follows_count=node.follows_count,
                    provenance=self._provenance(node.depth, node.parent, node.strategy),
                )
            )

        plans = (
            (EdgeDirection.FOLLOWERS, self._budget.max_followers_per_node, node.followers_count),
            (EdgeDirection.FOLLOWS, self._budget.max_following_per_node, node.follows_count),
        )
        for direction, per_node_max, reported in plans:
            cap = min(per_node_max, reported or per_node_max)
            if cap <= 0:
                continue
            if not await self._page_edges(state, node, direction, cap):
                return False
        return True

    async def _page_edges(
        self,
        state: FrontierState,
        node: FrontierNode,
        direction: EdgeDirection,
        cap: int,
    ) -> bool:
        """Page through one direction; False when the crawl must stop."""
        cursor: str | None = None
        fetched = 0
        while fetched < cap:
            if self._cancel_requested or self._budget_exhausted(state):
                return False
            try:
                page = await self._source.list_edges(
                    node.id,
                    direction,
                    cursor=cursor,
                    limit=min(self._page_size, cap - fetched),
                )
            except (UpstreamError, ValidationError) as exc:
                state.counters.errors += 1
                logger.warning(
                    "Abandoning %s of %s: %s",
                    direction.value,
                    node.id,
                    exc.message,
                    extra={
                        "crawl_id": self.crawl_id,
                        "node": node.id,
                        "depth": node.depth,
                        "error_reason": exc.message,
                    },
                )
                return True

            state.counters.pages_fetched += 1
            if page.dropped:
                state.counters.validation_dropped += page.dropped
                state.counters.errors += page.dropped

            items = page.items[: cap - fetched]
            fetched += len(items)
            if not await self._handle_edges(state, node, direction, items):
                return False

            cursor = page.cursor
            if not cursor or not page.items:
                break
        return True

    async def _handle_edges(
        self,
        state: FrontierState,
        node: FrontierNode,
        direction: EdgeDirection,
        items: list[ActorProfile],
    ) -> bool:
        """Emit one page of edges and enqueue admitted far ends.

        Returns False when the edge budget ran out before the page was done.
        """
        next_depth = node.depth + 1
        discovered: dict[str, FrontierNode] = {}
        complete = True

        for target in items:
            if self._budget_exhausted(state):
                complete = False
                break
            key = (node.id, target.did, direction.value)
            if not await self._is_new(key, DedupNamespace.EDGE):
                state.counters.duplicates_skipped += 1
                continue
            self._uncommitted.add((DedupNamespace.EDGE, key))
            await self._output.add_edge(
                EdgeRecord(
                    source=node.id,
                    target=target.did,
                    direction=direction.value,
                    target_handle=target.handle,
                    provenance=self._provenance(node.depth, node.id),
                )
            )
            state.counters.edges_emitted += 1

            if (
                next_depth <= self._budget.max_depth
                and target.did not in state.visited
                and target.did not in state.enqueued
                and target.did not in discovered
                and (target.followers_count or 0) >= self._budget.min_follower_count
            ):
                discovered[target.did] = FrontierNode.from_profile(target, next_depth, parent=node.id)

        candidates = list(discovered.values())
        if self._budget.prioritize_popular:
            candidates.sort(key=lambda n: n.popularity, reverse=True)
        for candidate in candidates:
            state.enqueue(candidate)
        return complete

    def _provenance(self, depth: int, source: str | None, strategy: str | None = None) -> Provenance:
        return Provenance(
            strategy=strategy or STRATEGY_BFS,
            depth=depth,
            crawl_id=self.crawl_id,
            source=source,
        )

    async def _commit_batch(self, batch: DiscoveryBatch) -> None:
        """Record the nodes and edges of a batch the sink has accepted."""
        for node in batch.nodes:
            await self._dedup.mark_processed(
                node.id,
                DedupNamespace.NODE,
                {"crawl_id": self.crawl_id, "depth": node.provenance.depth},
            )
            self._uncommitted.discard((DedupNamespace.NODE, node.id))
        for edge in batch.edges:
            key = (edge.source, edge.target, edge.direction)
            await self._dedup.mark_processed(
                key,
                DedupNamespace.EDGE,
                {"crawl_id": self.crawl_id, "depth": edge.provenance.depth},
            )
            self._uncommitted.discard((DedupNamespace.EDGE, key))

    # ------------------------------------------------------------------
    # Checkpointing
    # ------------------------------------------------------------------

    async def _checkpoint(self, state: FrontierState, *, final: bool = False, completed: bool = False) -> None:
        """Flush output, save dedup filters, then snapshot the frontier.

        A completed crawl has no remaining work, so its marker carries the
        counters but no frontier.
        """
        await self._output.flush()
        await self._dedup.save_filters()
        self._last_checkpoint_id = await self._checkpoints.save(
            self._scraper_type,
            {"counters": asdict(state.counters)} if completed else {"frontier": state.to_dict()},
            {
                "crawl_id": self.crawl_id,
                "final": final,
                "completed": completed,
                "nodes_processed": state.counters.nodes_processed,
                "current_depth": state.current_depth,
                "pending": state.pending(),
            },
            session_id=state.session_id,
        )

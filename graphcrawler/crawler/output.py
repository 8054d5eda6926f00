"""Discovery output: records, batches, and sinks.

The crawler buffers ``NodeRecord`` / ``EdgeRecord`` objects and hands them to
an ``OutputSink`` as ``DiscoveryBatch`` objects. Persistence format is the
sink's business; two sinks ship here: an in-memory collector and a JSON
Lines writer.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

STRATEGY_BFS = "bfs_relationships"
STRATEGY_SEARCH = "search"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Provenance:
    strategy: str
    depth: int
    crawl_id: str
    source: str | None = None
    discovered_at: str = field(default_factory=_now_iso)


@dataclass
class NodeRecord:
    id: str
    handle: str | None
    followers_count: int | None
    follows_count: int | None
    provenance: Provenance

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EdgeRecord:
    """``target`` appears in ``source``'s ``direction`` listing."""

    source: str
    target: str
    direction: str
    target_handle: str | None
    provenance: Provenance

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DiscoveryBatch:
    crawl_id: str
    sequence: int
    nodes: list[NodeRecord] = field(default_factory=list)
    edges: list[EdgeRecord] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)

    def __len__(self) -> int:
        return len(self.nodes) + len(self.edges)

    def to_dict(self) -> dict:
        return {
            "crawl_id": self.crawl_id,
            "sequence": self.sequence,
            "created_at": self.created_at,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }


class OutputSink(ABC):
    """Downstream persistence collaborator for discovery batches."""

    @abstractmethod
    async def write(self, batch: DiscoveryBatch) -> None:
        """Persist *batch*. Must not return before the batch is durable."""
        ...

    async def close(self) -> None:
        return None


class CollectingSink(OutputSink):
    """Keeps every batch in memory."""

    def __init__(self) -> None:
        self.batches: list[DiscoveryBatch] = []

    async def write(self, batch: DiscoveryBatch) -> None:
        self.batches.append(batch)

    @property
    def nodes(self) -> list[NodeRecord]:
        return [n for b in self.batches for n in b.nodes]

    @property
    def edges(self) -> list[EdgeRecord]:
        return [e for b in self.batches for e in b.edges]


class JsonLinesSink(OutputSink):
    """Appends records to ``{output_dir}/{crawl_id}/nodes.jsonl`` and ``edges.jsonl``."""

    def __init__(self, output_dir: str | Path, crawl_id: str) -> None:
        self.directory = Path(output_dir) / crawl_id
        self.directory.mkdir(parents=True, exist_ok=True)
        self.nodes_path = self.directory / "nodes.jsonl"
        self.edges_path = self.directory / "edges.jsonl"

    async def write(self, batch: DiscoveryBatch) -> None:
        await asyncio.to_thread(self._append, batch)
        logger.debug(
            "Wrote batch %d (%d nodes, %d edges) to %s",
            batch.sequence,
            len(batch.nodes),
            len(batch.edges),
            self.directory,
        )

    def _append(self, batch: DiscoveryBatch) -> None:
        for path, records in ((self.nodes_path, batch.nodes), (self.edges_path, batch.edges)):
            if not records:
                continue
            with path.open("a", encoding="utf-8") as handle:
                for record in records:
                    handle.write(json.dumps(record.to_dict(), default=str) + "\n")
                handle.flush()


BatchCallback = Callable[[DiscoveryBatch], Awaitable[None]]


class OutputBuffer:
    """Accumulates records and delivers them to a sink in fixed-size batches.

    *on_written* runs after the sink accepted a batch and never for a batch
    whose write raised; records stay buffered until a write succeeds.
    """

    def __init__(
        self,
        sink: OutputSink,
        crawl_id: str,
        batch_size: int = 1000,
        on_written: BatchCallback | None = None,
    ) -> None:
        self._sink = sink
        self._crawl_id = crawl_id
        self._batch_size = batch_size
        self._on_written = on_written
        self._nodes: list[NodeRecord] = []
        self._edges: list[EdgeRecord] = []
        self._sequence = 0
        self.records_written = 0

    def __len__(self) -> int:
        return len(self._nodes) + len(self._edges)

    async def add_node(self, record: NodeRecord) -> None:
        self._nodes.append(record)
        if len(self) >= self._batch_size:
            await self.flush()

    async def add_edge(self, record: EdgeRecord) -> None:
        self._edges.append(record)
        if len(self) >= self._batch_size:
            await self.flush()

    async def flush(self) -> None:
        if not len(self):
            return
        batch = DiscoveryBatch(
            crawl_id=self._crawl_id,
            sequence=self._sequence + 1,
            nodes=list(self._nodes),
            edges=list(self._edges),
        )
        await self._sink.write(batch)
        self._sequence = batch.sequence
        self._nodes.clear()
        self._edges.clear()
        self.records_written += len(batch)
        if self._on_written is not None:
            await self._on_written(batch)

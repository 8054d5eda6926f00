"""Frontier state for the depth-bounded breadth-first crawl.

The state is the opaque blob stored in checkpoints: one FIFO queue per depth,
the visited set, the enqueued set, the current depth pointer and counters.
``to_dict`` / ``from_dict`` round-trip it exactly, so a resumed crawl sees the
literal remaining work.
"""

from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass, field, fields
from typing import Any

from graphcrawler.api.models import ActorProfile

STATE_VERSION = 1


@dataclass
class FrontierNode:
    """A discovered node waiting in a depth queue."""

    id: str
    handle: str | None = None
    depth: int = 0
    followers_count: int | None = None
    follows_count: int | None = None
    parent: str | None = None
    strategy: str | None = None

    @classmethod
    def from_profile(
        cls,
        profile: ActorProfile,
        depth: int,
        parent: str | None = None,
        strategy: str | None = None,
    ) -> "FrontierNode":
        return cls(
            id=profile.did,
            handle=profile.handle,
            depth=depth,
            followers_count=profile.followers_count,
            follows_count=profile.follows_count,
            parent=parent,
            strategy=strategy,
        )

    @property
    def popularity(self) -> int:
        return self.followers_count or 0


@dataclass
class CrawlCounters:
    nodes_processed: int = 0
    nodes_enqueued: int = 0
    edges_emitted: int = 0
    duplicates_skipped: int = 0
    errors: int = 0
    validation_dropped: int = 0
    pages_fetched: int = 0
    deepest_depth: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CrawlCounters":
        known = {f.name for f in fields(cls)}
        return cls(**{k: int(v) for k, v in data.items() if k in known})


@dataclass
class FrontierState:
    """Queues, visited and enqueued sets, depth pointer and counters."""

    max_depth: int
    session_id: str
    queues: dict[int, deque[FrontierNode]] = field(default_factory=dict)
    visited: set[str] = field(default_factory=set)
    enqueued: set[str] = field(default_factory=set)
    current_depth: int = 0
    counters: CrawlCounters = field(default_factory=CrawlCounters)

    def __post_init__(self) -> None:
        for depth in range(self.max_depth + 1):
            self.queues.setdefault(depth, deque())

    def enqueue(self, node: FrontierNode) -> bool:
        """Append *node* to its depth queue unless already seen this session."""
        if node.id in self.enqueued or node.id in self.visited or node.depth > self.max_depth:
            return False
        self.enqueued.add(node.id)
        self.queues[node.depth].append(node)
        self.counters.nodes_enqueued += 1
        return True

    def pending(self) -> int:
        return sum(len(q) for q in self.queues.values())

    def queue_sizes(self) -> dict[int, int]:
        return {depth: len(queue) for depth, queue in sorted(self.queues.items())}

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "maxDepth": self.max_depth,
            "sessionId": self.session_id,
            "currentDepth": self.current_depth,
            "queues": {str(depth): [asdict(n) for n in queue] for depth, queue in sorted(self.queues.items())},
            "visited": sorted(self.visited),
            "enqueued": sorted(self.enqueued),
            "counters": asdict(self.counters),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FrontierState":
        """Rebuild state from ``to_dict`` output; raises ValueError if malformed."""
        try:
            queues = {
                int(depth): deque(FrontierNode(**node) for node in nodes)
                for depth, nodes in data["queues"].items()
            }
            state = cls(
                max_depth=int(data["maxDepth"]),
                session_id=str(data["sessionId"]),
                queues=queues,
                visited=set(data.get("visited", [])),
                enqueued=set(data.get("enqueued", [])),
                current_depth=int(data.get("currentDepth", 0)),
                counters=CrawlCounters.from_dict(data.get("counters", {})),
            )
        except (KeyError, TypeError, AttributeError) as exc:
            raise ValueError(f"Malformed frontier state: {exc}") from exc
        return state

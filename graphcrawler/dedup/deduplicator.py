"""Two-tier deduplication: Bloom filter pre-check backed by TTL'd store records.

``is_duplicate`` first asks the namespace's Bloom filter. A negative answer is
final and costs no store round-trip. A positive answer is confirmed against
the authoritative record ``dedup:{namespace}:{sha256}`` in the shared store;
only a live record makes the identifier a duplicate, so identifiers become
processable again once their record's TTL elapses even though the filter
still remembers them.

``mark_processed`` sets the filter bits before writing the record, so the
filter never under-represents the store.

When the store is unreachable, records are kept in an in-process map with the
same TTL. That state is not shared and not persisted.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum

from graphcrawler.config.settings import CrawlerSettings
from graphcrawler.dedup.bloom import BloomFilter
from graphcrawler.middleware.error_handler import StoreUnavailableError
from graphcrawler.store import KeyValueStore

logger = logging.getLogger(__name__)

Identifier = str | Sequence[str]


class DedupNamespace(str, Enum):
    NODE = "node"
    EDGE = "edge"


def canonical_key(identifier: Identifier) -> str:
    """Strings are used as-is; tuples (edges) are joined with ``:`` in order."""
    if isinstance(identifier, str):
        return identifier
    return ":".join(str(part) for part in identifier)


def key_hash(identifier: Identifier) -> str:
    return hashlib.sha256(canonical_key(identifier).encode("utf-8")).hexdigest()


def _record_key(namespace: DedupNamespace, digest: str) -> str:
    return f"dedup:{namespace.value}:{digest}"


def _filter_key(namespace: DedupNamespace) -> str:
    return f"dedup:filter:{namespace.value}"


@dataclass
class NamespaceStats:
    checks: int = 0
    filter_negatives: int = 0
    store_lookups: int = 0
    duplicates: int = 0
    false_positives: int = 0
    marked: int = 0
    fallback_writes: int = 0


class Deduplicator:
    """Answers "was this identifier already processed?" per namespace.

    Parameters
    ----------
    store:
        Shared key-value store, or None to keep records in process only.
    expected_elements:
        Expected node count; edges are sized at ``edge_cardinality_factor``
        times this.
    false_positive_rate:
        Target Bloom filter false-positive probability.
    record_ttl:
        Lifetime of authoritative records in seconds.
    clock:
        Epoch time source used by the in-process fallback.
    """

    def __init__(
        self,
        store: KeyValueStore | None = None,
        *,
        expected_elements: int = 1_000_000,
        false_positive_rate: float = 0.01,
        edge_cardinality_factor: int = 10,
        record_ttl: int = 7 * 86400,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._record_ttl = record_ttl
        self._clock = clock
        self._expected = {
            DedupNamespace.NODE: expected_elements,
            DedupNamespace.EDGE: expected_elements * edge_cardinality_factor,
        }
        self._fp_rate = false_positive_rate
        self._filters: dict[DedupNamespace, BloomFilter] = {
            ns: BloomFilter.for_capacity(n, false_positive_rate) for ns, n in self._expected.items()
        }
        self._local: dict[DedupNamespace, dict[str, float]] = {ns: {} for ns in DedupNamespace}
        self._stats: dict[DedupNamespace, NamespaceStats] = {ns: NamespaceStats() for ns in DedupNamespace}

    @classmethod
    def from_settings(cls, settings: CrawlerSettings, store: KeyValueStore | None) -> "Deduplicator":
        return cls(
            store,
            expected_elements=settings.bloom_expected_elements,
            false_positive_rate=settings.bloom_false_positive_rate,
            edge_cardinality_factor=settings.edge_cardinality_factor,
            record_ttl=settings.dedup_record_ttl_seconds,
        )

    def filter(self, namespace: DedupNamespace | str) -> BloomFilter:
        return self._filters[DedupNamespace(namespace)]

    # ------------------------------------------------------------------
    # Persistence of filters
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Restore persisted filters from the store, merging into the live ones."""
        if self._store is None:
            return
        for ns, bloom in self._filters.items():
            stored = await self._load_filter(ns)
            if stored is None:
                continue
            bloom.merge(stored)
            logger.info("Restored %s dedup filter (%d items)", ns.value, stored.items_added)

    async def _load_filter(self, namespace: DedupNamespace) -> BloomFilter | None:
        try:
            blob = await self._store.get(_filter_key(namespace))
        except StoreUnavailableError:
            logger.warning("Dedup filter for %s not restored: store unavailable", namespace.value)
            return None
        if blob is None:
            return None
        try:
            stored = BloomFilter.from_bytes(blob)
        except ValueError as exc:
            logger.error("Discarding corrupt %s dedup filter: %s", namespace.value, exc)
            return None
        if not stored.compatible_with(self._filters[namespace]):
            logger.warning(
                "Stored %s dedup filter has different parameters (%d bits, %d hashes), ignoring",
                namespace.value,
                stored.size,
                stored.hash_count,
            )
            return None
        return stored

    async def save_filters(self) -> bool:
        """Persist every filter, OR-ing in whatever another process saved first.

        Returns False when the store could not be written.
        """
        if self._store is None:
            return False
        for ns, bloom in self._filters.items():
            stored = await self._load_filter(ns)
            if stored is not None:
                bloom.merge(stored)
            try:
                await self._store.set(_filter_key(ns), bloom.to_bytes())
            except StoreUnavailableError:
                logger.warning("Dedup filters not saved: store unavailable")
                return False
        return True

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def is_duplicate(self, identifier: Identifier, namespace: DedupNamespace | str) -> bool:
        ns = DedupNamespace(namespace)
        stats = self._stats[ns]
        stats.checks += 1

        key = canonical_key(identifier)
        if key not in self._filters[ns]:
            stats.filter_negatives += 1
            return False

        stats.store_lookups += 1
        live = await self._record_exists(ns, key_hash(key))
        if live:
            stats.duplicates += 1
        else:
            stats.false_positives += 1
        return live

    async def batch_check(
        self, identifiers: Iterable[Identifier], namespace: DedupNamespace | str
    ) -> list[bool]:
        """``is_duplicate`` for each identifier, in order."""
        return [await self.is_duplicate(identifier, namespace) for identifier in identifiers]

    async def _record_exists(self, ns: DedupNamespace, digest: str) -> bool:
        if self._store is not None:
            try:
                if await self._store.exists(_record_key(ns, digest)):
                    return True
            except StoreUnavailableError:
                pass
        # Records written while the store was down live only here.
        return self._local_live(ns, digest)

    def _local_live(self, ns: DedupNamespace, digest: str) -> bool:
        expiry = self._local[ns].get(digest)
        if expiry is None:
            return False
        if expiry <= self._clock():
            del self._local[ns][digest]
            return False
        return True

    # ------------------------------------------------------------------
    # Marking
    # ------------------------------------------------------------------

    async def mark_processed(
        self,
        identifier: Identifier,
        namespace: DedupNamespace | str,
        metadata: dict | None = None,
    ) -> None:
        """Set filter bits, then write the authoritative record with TTL."""
        ns = DedupNamespace(namespace)
        key = canonical_key(identifier)
        digest = key_hash(key)

        self._filters[ns].add(key)
        self._stats[ns].marked += 1

        if self._store is not None:
            record = {
                "identifier": key,
                "namespace": ns.value,
                "processed_at": self._clock(),
                "metadata": metadata or {},
            }
            try:
                await self._store.set(
                    _record_key(ns, digest),
                    json.dumps(record, default=str),
                    ttl=self._record_ttl,
                )
                return
            except StoreUnavailableError:
                self._stats[ns].fallback_writes += 1

        self._local[ns][digest] = self._clock() + self._record_ttl

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def reset(self, namespace: DedupNamespace | str | None = None) -> None:
        """Forget everything for one namespace (or all of them)."""
        targets = list(DedupNamespace) if namespace is None else [DedupNamespace(namespace)]
        for ns in targets:
            self._filters[ns].clear()
            self._local[ns].clear()
            self._stats[ns] = NamespaceStats()
            if self._store is None:
                continue
            try:
                keys = await self._store.scan(f"dedup:{ns.value}:*")
                await self._store.delete(_filter_key(ns), *keys)
            except StoreUnavailableError:
                logger.warning("Dedup reset for %s not applied to store: unavailable", ns.value)
            logger.info("Dedup namespace %s reset", ns.value)

    def get_stats(self) -> dict:
        result: dict = {}
        for ns, bloom in self._filters.items():
            stats = self._stats[ns]
            result[ns.value] = {
                "expected_elements": self._expected[ns],
                "size_bits": bloom.size,
                "hash_count": bloom.hash_count,
                "items_added": bloom.items_added,
                "fill_ratio": bloom.fill_ratio,
                "estimated_false_positive_rate": bloom.estimated_false_positive_rate(),
                "checks": stats.checks,
                "filter_negatives": stats.filter_negatives,
                "store_lookups": stats.store_lookups,
                "duplicates": stats.duplicates,
                "false_positives": stats.false_positives,
                "marked": stats.marked,
                "fallback_records": len(self._local[ns]),
            }
        return result

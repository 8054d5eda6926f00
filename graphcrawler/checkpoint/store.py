"""Durable checkpoint store for resumable crawls.

Checkpoints are append-only: each ``save`` takes the next value of an atomic
per-scraper-type counter as its sequence number and writes the record with
NX so an id is never overwritten. An optional backup copy is written next to
the primary and used when the primary is missing or unreadable. After every
save the oldest checkpoints beyond the retention count are pruned.

Layout in the shared store (relative to its prefix)::

    checkpoints:{type}:seq            counter
    checkpoints:{type}:index          sorted set, id scored by sequence
    checkpoints:{type}:data:{id}      JSON record
    checkpoints:{type}:backup:{id}    JSON record

If the store is unreachable, checkpoints are held in process memory for the
lifetime of the process.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from graphcrawler.checkpoint.models import Checkpoint
from graphcrawler.config.settings import CrawlerSettings
from graphcrawler.middleware.error_handler import ConfigurationError, StoreUnavailableError
from graphcrawler.store import KeyValueStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _key(scraper_type: str, *parts: str) -> str:
    return ":".join(("checkpoints", scraper_type, *parts))


def _write_document(target: Path, document: dict[str, Any]) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(document, indent=2), encoding="utf-8")


class CheckpointStore:
    """Saves, restores and maintains checkpoints per scraper type.

    Parameters
    ----------
    store:
        Shared key-value store, or None to keep checkpoints in memory only.
    frequency:
        Checkpoint frequency; the most recent ``frequency * 2`` are retained.
    max_age_seconds:
        ``load_latest`` ignores checkpoints older than this.
    backup:
        Write a redundant copy of every checkpoint.
    clock:
        Returns the current UTC datetime.
    """

    def __init__(
        self,
        store: KeyValueStore | None = None,
        *,
        frequency: int = 5,
        max_age_seconds: int = 86400,
        backup: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if frequency < 1:
            raise ConfigurationError("checkpoint frequency must be >= 1")
        self._store = store
        self._retention = frequency * 2
        self._max_age = max_age_seconds
        self._backup = backup
        self._clock = clock
        self.session_id = str(uuid.uuid4())
        self._memory: dict[str, dict[str, Checkpoint]] = {}
        self._last_sequence: dict[str, int] = {}

    @classmethod
    def from_settings(cls, settings: CrawlerSettings, store: KeyValueStore | None) -> "CheckpointStore":
        return cls(
            store,
            frequency=settings.checkpoint_frequency,
            max_age_seconds=settings.checkpoint_max_age_seconds,
            backup=settings.checkpoint_backup,
        )

    @property
    def retention(self) -> int:
        return self._retention

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    async def save(
        self,
        scraper_type: str,
        state: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> str:
        """Write a new checkpoint and return its id."""
        sequence = await self._next_sequence(scraper_type)
        now = self._clock()
        session = session_id or self.session_id
        checkpoint = Checkpoint(
            id=f"{scraper_type}_{session}_{now:%Y-%m-%d_%H-%M-%S}_{sequence}",
            scraper_type=scraper_type,
            session_id=session,
            sequence=sequence,
            timestamp=now,
            state=state,
            metadata={"version": "1.0.0", **(metadata or {})},
        )

        if not await self._write(checkpoint):
            self._memory.setdefault(scraper_type, {})[checkpoint.id] = checkpoint
            logger.warning(
                "Checkpoint %s kept in memory only: store unavailable",
                checkpoint.id,
                extra={"scraper_type": scraper_type},
            )

        logger.info(
            "Checkpoint created: %s (sequence %d)",
            checkpoint.id,
            sequence,
            extra={"scraper_type": scraper_type},
        )
        await self.prune(scraper_type)
        return checkpoint.id

    async def _next_sequence(self, scraper_type: str) -> int:
        local = max(
            [self._last_sequence.get(scraper_type, 0)]
            + [c.sequence for c in self._memory.get(scraper_type, {}).values()]
        )
        sequence = local + 1
        if self._store is not None:
            try:
                sequence = await self._store.incr(_key(scraper_type, "seq"))
            except StoreUnavailableError:
                pass
        sequence = max(sequence, local + 1)
        self._last_sequence[scraper_type] = sequence
        return sequence

    async def _write(self, checkpoint: Checkpoint) -> bool:
        """Persist *checkpoint*; False when the store is unavailable."""
        if self._store is None:
            return False
        payload = checkpoint.to_json()
        t = checkpoint.scraper_type
        try:
            created = await self._store.set(_key(t, "data", checkpoint.id), payload, nx=True)
            if not created:
                logger.error("Checkpoint id %s already exists, not overwritten", checkpoint.id)
                return True
            await self._store.sorted_add(_key(t, "index"), checkpoint.id, checkpoint.sequence)
            if self._backup:
                await self._store.set(_key(t, "backup", checkpoint.id), payload, nx=True)
        except StoreUnavailableError:
            return False
        return True

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    async def _index(self, scraper_type: str) -> list[tuple[str, int]]:
        """(id, sequence) for every known checkpoint, highest sequence first."""
        entries: dict[str, int] = {
            cp.id: cp.sequence for cp in self._memory.get(scraper_type, {}).values()
        }
        if self._store is not None:
            try:
                for checkpoint_id, score in await self._store.sorted_items(_key(scraper_type, "index")):
                    entries[checkpoint_id] = int(score)
            except StoreUnavailableError:
                logger.warning("Checkpoint index unavailable, using in-memory checkpoints only")
        return sorted(entries.items(), key=lambda item: item[1], reverse=True)

    async def load(self, scraper_type: str, checkpoint_id: str) -> Checkpoint | None:
        """Load one checkpoint, falling back to its backup copy."""
        cached = self._memory.get(scraper_type, {}).get(checkpoint_id)
        if cached is not None:
            return cached
        if self._store is None:
            return None
        for kind in ("data", "backup"):
            try:
                raw = await self._store.get_text(_key(scraper_type, kind, checkpoint_id))
            except StoreUnavailableError:
                return None
            if raw is None:
                continue
            try:
                return Checkpoint.model_validate_json(raw)
            except PydanticValidationError as exc:
                logger.error("Unreadable checkpoint %s (%s copy): %s", checkpoint_id, kind, exc)
        return None

    async def load_latest(self, scraper_type: str) -> Checkpoint | None:
        """Highest-sequence readable checkpoint, or None if absent or too old."""
        for checkpoint_id, _sequence in await self._index(scraper_type):
            checkpoint = await self.load(scraper_type, checkpoint_id)
            if checkpoint is None:
                continue
            age = (self._clock() - checkpoint.timestamp).total_seconds()
            if age > self._max_age:
                logger.warning(
                    "Latest checkpoint %s is too old (%d minutes), ignoring",
                    checkpoint.id,
                    round(age / 60),
                    extra={"scraper_type": scraper_type},
                )
                return None
            logger.info("Loaded latest checkpoint %s (sequence %d)", checkpoint.id, checkpoint.sequence)
            return checkpoint
        logger.info("No checkpoints found for %s", scraper_type)
        return None

    async def list_checkpoints(self, scraper_type: str) -> list[Checkpoint]:
        """Every readable checkpoint, newest first."""
        result: list[Checkpoint] = []
        for checkpoint_id, _sequence in await self._index(scraper_type):
            checkpoint = await self.load(scraper_type, checkpoint_id)
            if checkpoint is not None:
                result.append(checkpoint)
        return result

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def delete(self, scraper_type: str, checkpoint_id: str) -> bool:
        found = self._memory.get(scraper_type, {}).pop(checkpoint_id, None) is not None
        if self._store is not None:
            try:
                removed = await self._store.sorted_remove(_key(scraper_type, "index"), checkpoint_id)
                deleted = await self._store.delete(
                    _key(scraper_type, "data", checkpoint_id),
                    _key(scraper_type, "backup", checkpoint_id),
                )
                found = found or bool(removed) or bool(deleted)
            except StoreUnavailableError:
                logger.warning("Checkpoint %s not deleted from store: unavailable", checkpoint_id)
        if found:
            logger.info("Checkpoint deleted: %s", checkpoint_id)
        return found

    async def prune(self, scraper_type: str) -> int:
        """Delete all but the most recent ``retention`` checkpoints."""
        stale = (await self._index(scraper_type))[self._retention:]
        for checkpoint_id, _sequence in stale:
            await self.delete(scraper_type, checkpoint_id)
        if stale:
            logger.info(
                "Pruned %d old checkpoints for %s (keeping %d)",
                len(stale),
                scraper_type,
                self._retention,
            )
        return len(stale)

    async def export(self, scraper_type: str, path: str | Path) -> int:
        """Write every checkpoint of *scraper_type* to a JSON file; returns the count."""
        checkpoints = await self.list_checkpoints(scraper_type)
        document = {
            "scraperType": scraper_type,
            "exportTimestamp": self._clock().isoformat(),
            "checkpointCount": len(checkpoints),
            "checkpoints": [cp.model_dump(mode="json", by_alias=True) for cp in checkpoints],
        }
        target = Path(path)
        await asyncio.to_thread(_write_document, target, document)
        logger.info("Exported %d checkpoints for %s to %s", len(checkpoints), scraper_type, target)
        return len(checkpoints)

    async def import_(self, path: str | Path, scraper_type: str | None = None) -> int:
        """Import checkpoints from an export file; existing ids are never overwritten.

        Raises ``ConfigurationError`` if the file is unreadable or its scraper
        type differs from *scraper_type*.
        """
        try:
            document = json.loads(await asyncio.to_thread(Path(path).read_text, encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError("Cannot read checkpoint export", path=str(path)) from exc
        if not isinstance(document, dict) or not isinstance(document.get("checkpoints"), list):
            raise ConfigurationError("Checkpoint export has no checkpoints list", path=str(path))
        if scraper_type is not None and document.get("scraperType") != scraper_type:
            raise ConfigurationError(
                "Scraper type mismatch",
                expected=scraper_type,
                found=document.get("scraperType"),
            )

        imported = 0
        for entry in document["checkpoints"]:
            try:
                checkpoint = Checkpoint.model_validate(entry)
            except PydanticValidationError as exc:
                logger.warning("Skipping invalid checkpoint in import: %s", exc)
                continue
            if scraper_type is not None and checkpoint.scraper_type != scraper_type:
                continue
            if await self.load(checkpoint.scraper_type, checkpoint.id) is not None:
                continue
            if not await self._write(checkpoint):
                self._memory.setdefault(checkpoint.scraper_type, {})[checkpoint.id] = checkpoint
            await self._raise_sequence_floor(checkpoint.scraper_type, checkpoint.sequence)
            imported += 1

        logger.info(
            "Imported %d of %d checkpoints from %s",
            imported,
            len(document["checkpoints"]),
            path,
        )
        return imported

    async def _raise_sequence_floor(self, scraper_type: str, sequence: int) -> None:
        """Keep future sequence numbers above imported ones."""
        self._last_sequence[scraper_type] = max(self._last_sequence.get(scraper_type, 0), sequence)
        if self._store is None:
            return
        try:
            current = int(await self._store.get_text(_key(scraper_type, "seq")) or 0)
            if current < sequence:
                await self._store.set(_key(scraper_type, "seq"), str(sequence))
        except StoreUnavailableError:
            pass

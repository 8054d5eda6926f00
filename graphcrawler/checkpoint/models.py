"""Checkpoint record model."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel


class Checkpoint(BaseModel):
    """Immutable, sequence-numbered snapshot of crawl progress.

    Serialized with camelCase keys:
    ``{id, scraperType, sessionId, sequence, timestamp, state, metadata}``.
    ``state`` is opaque to the store.
    """

    id: str
    scraper_type: str
    session_id: str
    sequence: int = Field(ge=1)
    timestamp: datetime
    state: dict[str, Any]
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True, "populate_by_name": True, "alias_generator": to_camel}

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    def summary(self) -> dict:
        """Listing view without the state blob."""
        return {
            "id": self.id,
            "scraperType": self.scraper_type,
            "sessionId": self.session_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
        }

"""Typed upstream response models.

Every response is validated once at the API boundary. List items are
validated one by one: a malformed item is dropped and counted instead of
failing the whole page.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from graphcrawler.middleware.error_handler import ValidationError

logger = logging.getLogger(__name__)

_DID = re.compile(r"^did:[a-z]+:[A-Za-z0-9._:%-]+$")


class ActorProfile(BaseModel):
    """An actor as returned by profile lookups, edge listings and search."""

    did: str
    handle: str = Field(min_length=1)
    display_name: str | None = None
    description: str | None = None
    avatar: str | None = None
    followers_count: int | None = Field(default=None, ge=0)
    follows_count: int | None = Field(default=None, ge=0)
    posts_count: int | None = Field(default=None, ge=0)
    created_at: str | None = None
    indexed_at: str | None = None

    model_config = {"populate_by_name": True, "alias_generator": to_camel, "extra": "ignore"}

    @field_validator("did")
    @classmethod
    def _check_did(cls, value: str) -> str:
        if not _DID.match(value):
            raise ValueError("did must look like did:<method>:<id>")
        return value


class EdgePage(BaseModel):
    """One page of a followers / follows listing."""

    subject: ActorProfile | None = None
    items: list[ActorProfile] = Field(default_factory=list)
    cursor: str | None = None
    dropped: int = 0

    @property
    def has_more(self) -> bool:
        return bool(self.cursor)


class ActorSearchPage(BaseModel):
    """One page of actor search results."""

    actors: list[ActorProfile] = Field(default_factory=list)
    cursor: str | None = None
    dropped: int = 0


def parse_profile(payload: Any, *, context: str = "") -> ActorProfile:
    """Validate a single profile payload, raising ``ValidationError``."""
    try:
        return ActorProfile.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Malformed actor profile",
            context=context,
            errors=[e["msg"] for e in exc.errors()],
        ) from exc


def parse_profiles(items: Any, *, context: str = "") -> tuple[list[ActorProfile], int]:
    """Validate each list item; returns (valid profiles, dropped count)."""
    if not isinstance(items, list):
        return [], 0
    valid: list[ActorProfile] = []
    dropped = 0
    for item in items:
        try:
            valid.append(ActorProfile.model_validate(item))
        except PydanticValidationError as exc:
            dropped += 1
            logger.debug("Dropping malformed actor in %s: %s", context, exc.errors()[0]["msg"])
    return valid, dropped


def _cursor(payload: dict) -> str | None:
    cursor = payload.get("cursor")
    return cursor if isinstance(cursor, str) and cursor else None


def parse_edge_page(payload: Any, items_key: str, *, context: str = "") -> EdgePage:
    if not isinstance(payload, dict):
        raise ValidationError("Edge listing is not a JSON object", context=context)
    items, dropped = parse_profiles(payload.get(items_key), context=context)
    subject = None
    if payload.get("subject") is not None:
        try:
            subject = ActorProfile.model_validate(payload["subject"])
        except PydanticValidationError:
            dropped += 1
    return EdgePage(subject=subject, items=items, cursor=_cursor(payload), dropped=dropped)


def parse_search_page(payload: Any, *, context: str = "") -> ActorSearchPage:
    if not isinstance(payload, dict):
        raise ValidationError("Search result is not a JSON object", context=context)
    actors, dropped = parse_profiles(payload.get("actors"), context=context)
    return ActorSearchPage(actors=actors, cursor=_cursor(payload), dropped=dropped)

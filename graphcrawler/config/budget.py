"""Crawl budget model.

A budget bounds a single crawl run. It is validated at construction; an
invalid budget surfaces as ``ConfigurationError`` and aborts only the crawl
that asked for it.
"""

from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from graphcrawler.config.settings import CrawlerSettings
from graphcrawler.middleware.error_handler import ConfigurationError


class CrawlBudget(BaseModel):
    """Limits for one frontier crawl."""

    max_depth: int = Field(default=3, ge=1, le=5)
    max_nodes: int | None = Field(default=None, ge=1)
    max_edges: int = Field(default=10_000_000, ge=1)
    max_followers_per_node: int = Field(default=1000, ge=0)
    max_following_per_node: int = Field(default=1000, ge=0)
    min_follower_count: int = Field(default=10, ge=0)
    seed_limit: int = Field(default=1000, ge=1)
    prioritize_popular: bool = True

    model_config = {"frozen": True}

    @classmethod
    def build(cls, **values: object) -> "CrawlBudget":
        """Validate *values* into a budget, raising ``ConfigurationError`` on failure."""
        try:
            return cls.model_validate(values)
        except PydanticValidationError as exc:
            raise ConfigurationError(
                "Invalid crawl budget",
                errors=[
                    {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in exc.errors()
                ],
            ) from exc

    @classmethod
    def from_settings(cls, settings: CrawlerSettings, **overrides: object) -> "CrawlBudget":
        """Budget from settings defaults, with non-None *overrides* applied."""
        values: dict[str, object] = {
            "max_depth": settings.max_depth,
            "max_nodes": settings.max_nodes,
            "max_edges": settings.max_edges,
            "max_followers_per_node": settings.max_followers_per_node,
            "max_following_per_node": settings.max_following_per_node,
            "min_follower_count": settings.min_follower_count,
            "seed_limit": settings.seed_limit,
            "prioritize_popular": settings.prioritize_popular,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.build(**values)

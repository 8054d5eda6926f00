"""Per-endpoint rate limit policies and YAML loader.

Provides typed Pydantic models for the limits applied to each upstream API
method and a loader that parses the YAML config into those models. The
built-in table mirrors the limits the public API tolerates in practice.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "default"


class EndpointPolicy(BaseModel):
    """Rate limit policy for a single upstream endpoint."""

    requests_per_minute: int = Field(default=60, ge=1)
    burst_limit: int = Field(default=10, ge=1)
    max_concurrent: int | None = Field(default=None, ge=1)


BUILTIN_POLICIES: dict[str, EndpointPolicy] = {
    "app.bsky.graph.getFollowers": EndpointPolicy(requests_per_minute=50, burst_limit=8),
    "app.bsky.graph.getFollows": EndpointPolicy(requests_per_minute=50, burst_limit=8),
    "app.bsky.actor.getProfile": EndpointPolicy(requests_per_minute=100, burst_limit=10),
    "app.bsky.actor.searchActors": EndpointPolicy(requests_per_minute=30, burst_limit=5),
    DEFAULT_ENDPOINT: EndpointPolicy(requests_per_minute=60, burst_limit=10),
}


def load_endpoint_policies(yaml_path: str | None) -> dict[str, EndpointPolicy]:
    """Parse an endpoint policies YAML file into typed EndpointPolicy objects.

    The file has a top-level ``endpoints`` mapping of endpoint name to policy.
    Entries from the file override the built-in table; entries that fail
    validation are logged and skipped.

    Args:
        yaml_path: Path to the YAML configuration file, or None.

    Returns:
        A dict mapping endpoint names (and "default") to EndpointPolicy
        instances. If the file is missing or unreadable, returns the
        built-in table.
    """
    policies = dict(BUILTIN_POLICIES)
    if not yaml_path:
        return policies

    path = Path(yaml_path)
    if not path.exists():
        logger.warning("Endpoint policies file not found at %s, using built-in limits", yaml_path)
        return policies

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        logger.error("Failed to parse endpoint policies YAML at %s: %s", yaml_path, exc)
        return policies

    if not isinstance(raw, dict) or not isinstance(raw.get("endpoints"), dict):
        logger.warning("Endpoint policies YAML missing 'endpoints' mapping, using built-in limits")
        return policies

    for endpoint, config in raw["endpoints"].items():
        try:
            policies[str(endpoint)] = EndpointPolicy.model_validate(config or {})
        except Exception as exc:
            logger.error("Invalid policy for endpoint '%s': %s, skipping", endpoint, exc)

    return policies

"""Upstream XRPC endpoints used by the crawler."""

from __future__ import annotations

from enum import Enum

GET_PROFILE = "app.bsky.actor.getProfile"
SEARCH_ACTORS = "app.bsky.actor.searchActors"
GET_FOLLOWERS = "app.bsky.graph.getFollowers"
GET_FOLLOWS = "app.bsky.graph.getFollows"

MAX_PAGE_SIZE = 100


class EdgeDirection(str, Enum):
    """Which side of a node's follow relationships to list."""

    FOLLOWERS = "followers"
    FOLLOWS = "follows"

    @property
    def endpoint(self) -> str:
        return GET_FOLLOWERS if self is EdgeDirection.FOLLOWERS else GET_FOLLOWS

    @property
    def items_key(self) -> str:
        """Key of the item list in the endpoint's response body."""
        return self.value


def xrpc_path(endpoint: str) -> str:
    return f"/xrpc/{endpoint}"

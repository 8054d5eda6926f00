"""Upstream graph API boundary: endpoints, typed responses, and the client."""

from graphcrawler.api.client import UpstreamClient
from graphcrawler.api.endpoints import EdgeDirection
from graphcrawler.api.models import ActorProfile, ActorSearchPage, EdgePage

__all__ = [
    "ActorProfile",
    "ActorSearchPage",
    "EdgeDirection",
    "EdgePage",
    "UpstreamClient",
]

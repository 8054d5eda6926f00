"""Configuration module: settings, endpoint policies, and crawl budgets."""

from graphcrawler.config.budget import CrawlBudget
from graphcrawler.config.endpoint_policies import (
    BUILTIN_POLICIES,
    DEFAULT_ENDPOINT,
    EndpointPolicy,
    load_endpoint_policies,
)
from graphcrawler.config.settings import CrawlerSettings

__all__ = [
    "BUILTIN_POLICIES",
    "DEFAULT_ENDPOINT",
    "CrawlBudget",
    "CrawlerSettings",
    "EndpointPolicy",
    "load_endpoint_policies",
]

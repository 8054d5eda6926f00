"""Depth-bounded breadth-first crawler over the follow graph."""

from graphcrawler.crawler.frontier import CrawlCounters, FrontierNode, FrontierState
from graphcrawler.crawler.frontier_crawler import (
    CrawlResult,
    CrawlStatus,
    FrontierCrawler,
    GraphSource,
)
from graphcrawler.crawler.output import (
    CollectingSink,
    DiscoveryBatch,
    EdgeRecord,
    JsonLinesSink,
    NodeRecord,
    OutputSink,
    Provenance,
)
from graphcrawler.crawler.seeds import (
    DiscoveredNodesSeedProvider,
    FirstAvailableSeedProvider,
    SearchSeedProvider,
    SeedProvider,
)

__all__ = [
    "CollectingSink",
    "CrawlCounters",
    "CrawlResult",
    "CrawlStatus",
    "DiscoveredNodesSeedProvider",
    "DiscoveryBatch",
    "FirstAvailableSeedProvider",
    "EdgeRecord",
    "FrontierCrawler",
    "FrontierNode",
    "FrontierState",
    "GraphSource",
    "JsonLinesSink",
    "NodeRecord",
    "OutputSink",
    "Provenance",
    "SearchSeedProvider",
    "SeedProvider",
]

"""Deduplication: Bloom filter pre-check plus authoritative TTL'd records."""

from graphcrawler.dedup.bloom import BloomFilter, optimal_parameters
from graphcrawler.dedup.deduplicator import DedupNamespace, Deduplicator, canonical_key, key_hash

__all__ = [
    "BloomFilter",
    "DedupNamespace",
    "Deduplicator",
    "canonical_key",
    "key_hash",
    "optimal_parameters",
]

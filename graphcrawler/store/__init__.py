"""Shared key-value store."""

from graphcrawler.store.kv import KeyValueStore

__all__ = ["KeyValueStore"]

"""Resumable crawler for a federated social graph."""

__version__ = "1.0.0"

"""Checkpoint persistence for resumable crawls."""

from graphcrawler.checkpoint.models import Checkpoint
from graphcrawler.checkpoint.store import CheckpointStore

__all__ = ["Checkpoint", "CheckpointStore"]

"""Deduplication, review queue and persistence."""

from .queue import ReviewQueue, dedup_key, entity_key
from .store import ReviewStore

__all__ = ["ReviewQueue", "ReviewStore", "dedup_key", "entity_key"]

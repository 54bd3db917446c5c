"""Deterministic entity normalization."""

from .dates import DateResolution, resolve_date
from .normalizer import EntityNormalizer, normalize

__all__ = ["DateResolution", "EntityNormalizer", "normalize", "resolve_date"]

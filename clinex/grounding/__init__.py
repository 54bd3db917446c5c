"""Grounding checks and confidence scoring."""

from .matching import appears_in, best_snippet
from .scorer import ConfidenceScorer, consolidate

__all__ = ["ConfidenceScorer", "appears_in", "best_snippet", "consolidate"]

"""Question routing and conversation pre-filtering."""

from .analyzer import AnalysisResult, analyze_conversation, is_pure_qa
from .question_router import DOMAIN_TABLE, RoutingResult, route, route_with_flags

__all__ = [
    "AnalysisResult",
    "DOMAIN_TABLE",
    "RoutingResult",
    "analyze_conversation",
    "is_pure_qa",
    "route",
    "route_with_flags",
]

"""Personalised recommendations."""

from .engine import RecommendationEngine, RecommendationResult, RecommendOptions
from .profiles import ProfileCharacteristics, characterize, compute_behavior_metrics
from .ranking import Recommendation, diversify, merge_candidates

__all__ = [
    "ProfileCharacteristics",
    "Recommendation",
    "RecommendationEngine",
    "RecommendationResult",
    "RecommendOptions",
    "characterize",
    "compute_behavior_metrics",
    "diversify",
    "merge_candidates",
]

"""Trending topic detection across time windows."""

from .detector import TrendingTopicsDetector, TrendingTopicsResult
from .patterns import TOPIC_PATTERNS, identify_topics, normalize_topic_name
from .score import RelatedArticle, TrendingTopic, forecast, merge_topics, trend_direction

__all__ = [
    "RelatedArticle",
    "TOPIC_PATTERNS",
    "TrendingTopic",
    "TrendingTopicsDetector",
    "TrendingTopicsResult",
    "forecast",
    "identify_topics",
    "merge_topics",
    "normalize_topic_name",
    "trend_direction",
]

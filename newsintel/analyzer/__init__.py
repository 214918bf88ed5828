"""Content analysis: summaries, sentiment, quality and metadata."""

from .engine import AnalysisDepth, AnalysisResult, BatchAnalysisResult, ContentAnalysisEngine, ContentMetadata
from .quality import QualityReport, reading_level
from .sentiment import SentimentAnalyzer, SentimentResult
from .summary import Summary, extractive_summary

__all__ = [
    "AnalysisDepth",
    "AnalysisResult",
    "BatchAnalysisResult",
    "ContentAnalysisEngine",
    "ContentMetadata",
    "QualityReport",
    "SentimentAnalyzer",
    "SentimentResult",
    "Summary",
    "extractive_summary",
    "reading_level",
]

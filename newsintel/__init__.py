"""NewsIntel: content intelligence pipeline for AI news articles and papers."""

__version__ = "0.1.0"

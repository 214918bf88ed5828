"""Semantic, full-text and hybrid search."""

from .query import QueryFeatures, SearchType, expand_query, select_search_type
from .service import SearchFilters, SearchOptions, SearchResponse, SearchResult, SemanticSearchService

__all__ = [
    "QueryFeatures",
    "SearchFilters",
    "SearchOptions",
    "SearchResponse",
    "SearchResult",
    "SearchType",
    "SemanticSearchService",
    "expand_query",
    "select_search_type",
]

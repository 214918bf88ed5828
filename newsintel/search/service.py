"""
Semantic search service.

Three retrieval modes share one filter set: vector similarity over item
embeddings, ranked full-text search, and a hybrid that over-fetches from
both, merges by item id and re-ranks on a weighted combined score before
paginating. Search is a read path: provider or store failures degrade to
the other branch or to an empty response, they are never raised.
"""

import hashlib
import json
import math
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from newsintel.core.cache import Cache
from newsintel.core.concurrency import gather_settled
from newsintel.core.config import SearchConfig
from newsintel.core.entities import ContentItem, ItemFilter, ScoredItem
from newsintel.core.logging import get_logger
from newsintel.core.store import ContentStore
from newsintel.core.telemetry import Telemetry
from newsintel.core.time import Clock, days_between, month_key
from newsintel.embedding.service import EmbeddingService

from .query import (
    POPULAR_QUERIES,
    QueryFeatures,
    SearchType,
    expand_query,
    query_keywords,
    quoted_phrase,
    select_search_type,
)

logger = get_logger(__name__)

POPULAR_QUERIES_KEY = "search:popular_queries"
POPULAR_QUERIES_TTL = 7 * 24 * 3600
SORT_OPTIONS = ("relevance", "date", "quality", "popularity")


@dataclass
class SearchFilters:
    categories: Sequence[str] = ()
    sources: Sequence[str] = ()
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    min_quality: Optional[float] = None
    content_types: Sequence[str] = ()
    tags: Sequence[str] = ()
    authors: Sequence[str] = ()

    def to_item_filter(self) -> ItemFilter:
        return ItemFilter(
            categories=list(self.categories),
            sources=list(self.sources),
            content_types=list(self.content_types),
            tags=list(self.tags),
            authors=list(self.authors),
            published_after=self.date_from,
            published_before=self.date_to,
            min_quality=self.min_quality,
        )


@dataclass
class SearchOptions:
    limit: Optional[int] = None
    offset: int = 0
    include_content: bool = False
    search_type: Optional[str] = None
    sort_by: str = "relevance"
    expand: bool = True


@dataclass
class SearchResult:
    id: str
    title: str
    content_type: str
    published_at: str
    source: str
    category: Optional[str]
    tags: List[str]
    url: Optional[str] = None
    author: Optional[str] = None
    content: Optional[str] = None
    scores: Dict[str, float] = field(default_factory=dict)
    highlights: Dict[str, str] = field(default_factory=dict)


@dataclass
class SearchResponse:
    results: List[SearchResult]
    total_count: int
    search_time: float
    query: Dict[str, Any]
    aggregations: Dict[str, Dict[str, int]] = field(default_factory=dict)
    suggestions: List[str] = field(default_factory=list)
    cached: bool = False
    degraded: bool = False

    @property
    def search_type(self) -> str:
        return self.query.get("search_type", "")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchResponse":
        values = dict(data)
        values["results"] = [SearchResult(**r) for r in values.get("results", [])]
        return cls(**values)


@dataclass
class _Candidate:
    item: ContentItem
    semantic: Optional[float] = None
    fulltext: Optional[float] = None
    title_highlight: Optional[str] = None
    body_highlight: Optional[str] = None


class SemanticSearchService:
    """Vector, full-text and hybrid search over published content."""

    def __init__(
        self,
        embedding_service: EmbeddingService,
        store: ContentStore,
        cache: Cache,
        config: Optional[SearchConfig] = None,
        telemetry: Optional[Telemetry] = None,
        clock: Optional[Clock] = None,
    ):
        self.embedding_service = embedding_service
        self.store = store
        self.cache = cache
        self.config = config or SearchConfig()
        self.telemetry = telemetry or Telemetry()
        self.clock = clock or Clock()

    # --- scoring -----------------------------------------------------------

    def recency_score(self, published_at: datetime) -> float:
        return math.exp(-days_between(published_at, self.clock.now()) / self.config.recency_half_life_days)

    @staticmethod
    def popularity_score(views: int) -> float:
        """Log-scaled views; 10k views saturate to 1.0."""
        return min(1.0, math.log10(max(views, 0) + 1) / 4)

    def _scores(self, candidate: _Candidate, search_type: SearchType) -> Dict[str, float]:
        item = candidate.item
        semantic = candidate.semantic or 0.0
        fulltext = candidate.fulltext or 0.0
        recency = self.recency_score(item.published_at)
        weights = self.config.weights
        if search_type == SearchType.SEMANTIC:
            relevance = semantic
        elif search_type == SearchType.FULLTEXT:
            relevance = fulltext
        else:
            relevance = max(semantic, fulltext)
        scores = {
            "relevance": round(relevance, 6),
            "quality": (item.quality_score if item.quality_score is not None else 50.0) / 100.0,
            "recency": round(recency, 6),
            "popularity": round(self.popularity_score(item.views), 6),
            "combined": round(
                semantic * weights["semantic"] + fulltext * weights["fulltext"] + recency * weights["recency"], 6
            ),
        }
        if candidate.semantic is not None:
            scores["semantic"] = round(candidate.semantic, 6)
        if candidate.fulltext is not None:
            scores["fulltext"] = round(candidate.fulltext, 6)
        return scores

    def _to_result(self, candidate: _Candidate, search_type: SearchType, include_content: bool) -> SearchResult:
        item = candidate.item
        highlights = {}
        if candidate.title_highlight:
            highlights["title"] = candidate.title_highlight
        if candidate.body_highlight:
            highlights["content"] = candidate.body_highlight
        return SearchResult(
            id=item.id,
            title=item.title,
            content_type=item.content_type,
            published_at=item.published_at.isoformat(),
            source=item.source,
            category=item.category,
            tags=list(item.tags),
            url=item.url,
            author=item.author,
            content=item.body if include_content else None,
            scores=self._scores(candidate, search_type),
            highlights=highlights,
        )

    @staticmethod
    def _sort(results: List[SearchResult], sort_by: str, default_key: str) -> List[SearchResult]:
        keys = {
            "relevance": lambda r: r.scores[default_key],
            "date": lambda r: r.published_at,
            "quality": lambda r: r.scores["quality"],
            "popularity": lambda r: r.scores["popularity"],
        }
        ranked = sorted(results, key=lambda r: r.id)
        return sorted(ranked, key=keys.get(sort_by, keys["relevance"]), reverse=True)

    # --- branches ------------------------------------------------------------

    async def _semantic_candidates(self, query: str, item_filter: ItemFilter, fetch: int) -> List[_Candidate]:
        embedding = await self.embedding_service.embed(query)
        hits = await self.store.nearest_neighbors(
            embedding.vector, item_filter, limit=fetch, threshold=self.config.similarity_threshold
        )
        return [_Candidate(item=h.item, semantic=h.score) for h in hits]

    async def _fulltext_candidates(
        self, query: str, item_filter: ItemFilter, fetch: int, expansion_terms: Sequence[str]
    ) -> Tuple[List[_Candidate], int]:
        phrase = quoted_phrase(query)
        if phrase:
            hits, total = await self.store.fulltext_search(phrase, item_filter, limit=fetch, offset=0, phrase=True)
        else:
            text = " ".join([query] + list(expansion_terms))
            hits, total = await self.store.fulltext_search(text, item_filter, limit=fetch, offset=0)
        return [self._from_lexical(h) for h in hits], total

    @staticmethod
    def _from_lexical(hit: ScoredItem) -> _Candidate:
        return _Candidate(
            item=hit.item,
            fulltext=hit.score,
            title_highlight=hit.title_highlight,
            body_highlight=hit.body_highlight,
        )

    @staticmethod
    def merge_candidates(semantic: Sequence[_Candidate], lexical: Sequence[_Candidate]) -> List[_Candidate]:
        """Union by item id; a lexical hit contributes its score and highlights."""
        merged: Dict[str, _Candidate] = {}
        for candidate in semantic:
            merged[candidate.item.id] = _Candidate(item=candidate.item, semantic=candidate.semantic)
        for candidate in lexical:
            existing = merged.get(candidate.item.id)
            if existing is None:
                merged[candidate.item.id] = _Candidate(
                    item=candidate.item,
                    fulltext=candidate.fulltext,
                    title_highlight=candidate.title_highlight,
                    body_highlight=candidate.body_highlight,
                )
            else:
                existing.fulltext = candidate.fulltext
                existing.title_highlight = candidate.title_highlight
                existing.body_highlight = candidate.body_highlight
        return list(merged.values())

    async def _run(
        self,
        query: str,
        search_type: SearchType,
        item_filter: ItemFilter,
        limit: int,
        offset: int,
        expansion_terms: Sequence[str],
    ) -> Tuple[List[_Candidate], int, SearchType, bool]:
        """Candidates, total count, the type actually used and whether a branch failed."""
        window = offset + limit
        if search_type == SearchType.SEMANTIC:
            try:
                candidates = await self._semantic_candidates(query, item_filter, max(window, self.config.max_results))
                return candidates, len(candidates), search_type, False
            except Exception as e:
                logger.warning(f"Semantic search failed, falling back to full-text: {e}")
                self.telemetry.increment("search.branch_failures", tags={"branch": "semantic"})
                candidates, total = await self._fulltext_candidates(query, item_filter, window, expansion_terms)
                return candidates, total, SearchType.FULLTEXT, True

        if search_type == SearchType.FULLTEXT:
            candidates, total = await self._fulltext_candidates(query, item_filter, window, expansion_terms)
            return candidates, total, search_type, False

        fetch = window * self.config.overfetch_factor
        semantic, lexical = await gather_settled([
            self._semantic_candidates(query, item_filter, fetch),
            self._fulltext_candidates(query, item_filter, fetch, expansion_terms),
        ])
        degraded = False
        for name, outcome in (("semantic", semantic), ("fulltext", lexical)):
            if not outcome.ok:
                degraded = True
                logger.warning(f"Hybrid {name} branch failed: {outcome.error}")
                self.telemetry.increment("search.branch_failures", tags={"branch": name})
        if not semantic.ok and not lexical.ok:
            raise lexical.error
        lexical_hits, lexical_total = lexical.value if lexical.ok else ([], 0)
        merged = self.merge_candidates(semantic.value if semantic.ok else [], lexical_hits)
        return merged, max(len(merged), lexical_total), search_type, degraded

    # --- entry point -----------------------------------------------------------

    def cache_key(self, query: str, filters: SearchFilters, options: SearchOptions) -> str:
        payload = json.dumps(
            {"text": query, "filters": asdict(filters), "options": asdict(options)}, sort_keys=True, default=str
        )
        return f"search:{hashlib.sha256(payload.encode('utf-8')).hexdigest()}"

    async def search(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
        options: Optional[SearchOptions] = None,
    ) -> SearchResponse:
        """
        Search published content.

        Always returns a response. When every branch fails the response is
        empty and flagged ``degraded``.
        """
        start_time = time.time()
        filters = filters or SearchFilters()
        options = options or SearchOptions()
        text = (query or "").strip()
        limit = max(1, min(options.limit or self.config.default_limit, self.config.max_results))
        offset = max(0, options.offset)
        if options.search_type:
            search_type = SearchType(options.search_type)
        else:
            search_type = select_search_type(QueryFeatures.from_query(text))
        if not text:
            return self._empty_response(text, search_type, start_time)

        key = self.cache_key(text, filters, options)
        cached = await self._cache_get(key)
        if cached:
            self.telemetry.increment("search.cache_hits")
            response = SearchResponse.from_dict(cached)
            response.cached = True
            return response

        logger.info(f"Starting {search_type.value} search for {text!r}")
        expansion = expand_query(text)
        expansion_terms = expansion.terms if options.expand and not quoted_phrase(text) else []
        try:
            candidates, total, used_type, degraded = await self._run(
                text, search_type, filters.to_item_filter(), limit, offset, expansion_terms
            )
        except Exception as e:
            logger.error(f"Search failed for {text!r}: {e}")
            self.telemetry.increment("search.failures")
            response = self._empty_response(text, search_type, start_time)
            response.degraded = True
            return response

        default_key = "relevance" if used_type != SearchType.HYBRID else "combined"
        results = [self._to_result(c, used_type, options.include_content) for c in candidates]
        page = self._sort(results, options.sort_by, default_key)[offset:offset + limit]

        response = SearchResponse(
            results=page,
            total_count=total,
            search_time=time.time() - start_time,
            query={
                "original": text,
                "expanded": expansion.terms,
                "keywords": query_keywords(text),
                "search_type": used_type.value,
            },
            aggregations=self.aggregate(page),
            suggestions=await self.suggestions(text, len(page)),
            degraded=degraded,
        )
        if not degraded:
            await self._cache_set(key, response.to_dict(), ttl=self.config.cache_ttl_seconds)
        await self._track(text, used_type, response)
        logger.info(
            f"Search completed: {len(page)} of {total} results ({used_type.value}) in {response.search_time:.3f}s"
        )
        return response

    async def _cache_get(self, key: str) -> Optional[Any]:
        try:
            return await self.cache.get(key)
        except Exception as e:
            logger.warning(f"Search cache read failed for {key}: {e}")
            return None

    async def _cache_set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.cache.set(key, value, ttl=ttl)
        except Exception as e:
            logger.warning(f"Search cache write failed for {key}: {e}")

    def _empty_response(self, text: str, search_type: SearchType, start_time: float) -> SearchResponse:
        return SearchResponse(
            results=[],
            total_count=0,
            search_time=time.time() - start_time,
            query={"original": text, "expanded": [], "keywords": [], "search_type": search_type.value},
            aggregations=self.aggregate([]),
        )

    # --- aggregations, suggestions, popularity -----------------------------------

    @staticmethod
    def aggregate(results: Sequence[SearchResult]) -> Dict[str, Dict[str, int]]:
        aggregations: Dict[str, Dict[str, int]] = {
            "categories": {}, "sources": {}, "content_types": {}, "time_distribution": {},
        }
        for r in results:
            for bucket, value in (
                ("categories", r.category or "uncategorized"),
                ("sources", r.source),
                ("content_types", r.content_type),
                ("time_distribution", month_key(datetime.fromisoformat(r.published_at))),
            ):
                aggregations[bucket][value] = aggregations[bucket].get(value, 0) + 1
        return aggregations

    async def popular_queries(self, limit: int = 10) -> List[str]:
        """Most frequent recent queries, padded with the built-in defaults."""
        counts = await self._cache_get(POPULAR_QUERIES_KEY) or {}
        ranked = sorted(counts, key=lambda q: (-counts[q], q))
        return list(dict.fromkeys(ranked + list(POPULAR_QUERIES)))[:limit]

    async def suggestions(self, query: str, result_count: int) -> List[str]:
        if result_count > self.config.suggestion_trigger:
            return []
        keywords = set(query_keywords(query))
        lowered = query.lower()
        suggestions = []
        for popular in await self.popular_queries(self.config.popular_queries_tracked):
            if popular.lower() != lowered and keywords & set(query_keywords(popular)):
                suggestions.append(popular)
        suggestions += expand_query(query).synonyms
        return list(dict.fromkeys(suggestions))[: self.config.max_suggestions]

    async def _track(self, query: str, search_type: SearchType, response: SearchResponse) -> None:
        self.telemetry.increment("search.queries")
        self.telemetry.increment("search.type", tags={"type": search_type.value})
        self.telemetry.increment("search.results", len(response.results))
        self.telemetry.timing("search.latency", response.search_time)

        counts = await self._cache_get(POPULAR_QUERIES_KEY) or {}
        normalized = query.lower()
        counts[normalized] = counts.get(normalized, 0) + 1
        if len(counts) > self.config.popular_queries_tracked:
            kept = sorted(counts, key=lambda q: -counts[q])[: self.config.popular_queries_tracked]
            counts = {q: counts[q] for q in kept}
        await self._cache_set(POPULAR_QUERIES_KEY, counts, ttl=POPULAR_QUERIES_TTL)

    def get_metrics(self) -> Dict[str, Any]:
        queries = self.telemetry.counter("search.queries")
        latency = self.telemetry.timing_stats("search.latency")
        return {
            "daily_queries": queries,
            "avg_result_count": self.telemetry.counter("search.results") / queries if queries else 0.0,
            "avg_search_time": latency["avg"],
            "search_type_breakdown": self.telemetry.counters_with_prefix("search.type"),
            "cache_hits": self.telemetry.counter("search.cache_hits"),
            "failures": self.telemetry.counter("search.failures"),
            "branch_failures": self.telemetry.counters_with_prefix("search.branch_failures"),
        }

"""Tests for semantic, full-text and hybrid search."""

from unittest.mock import AsyncMock, patch

import pytest

from newsintel.core.entities import ItemFilter
from newsintel.core.errors import EmbeddingUnavailable
from newsintel.search import (
    QueryFeatures,
    SearchFilters,
    SearchOptions,
    SearchType,
    expand_query,
    select_search_type,
)


@pytest.fixture
def indexed(sample_items, embed_items, make_item):
    """Sample articles plus one paper whose title holds a distinctive phrase."""
    async def _index():
        paper = make_item(
            "p1",
            "Sparse attention speeds up long documents",
            "The method reduces memory use when a transformer reads very long inputs.",
            hours_ago=30,
            content_type="paper",
            views=5000,
        )
        return await embed_items(sample_items + [paper])
    return _index


class TestQueryAnalysis:
    def test_short_and_quoted_queries_use_fulltext(self):
        assert select_search_type(QueryFeatures.from_query("qubits")) == SearchType.FULLTEXT
        assert select_search_type(QueryFeatures.from_query('"sparse attention" for documents')) == SearchType.FULLTEXT

    def test_long_or_conceptual_queries_use_semantic(self):
        assert select_search_type(QueryFeatures.from_query("papers about robots")) == SearchType.SEMANTIC
        assert select_search_type(
            QueryFeatures.from_query("new processor with more stable qubits for quantum algorithms")
        ) == SearchType.SEMANTIC

    def test_mid_length_queries_use_hybrid(self):
        assert select_search_type(QueryFeatures.from_query("robotics startup funding")) == SearchType.HYBRID

    def test_expansion(self):
        expansion = expand_query("deep learning model")

        assert "neural networks" in expansion.synonyms
        assert "architecture" in expansion.synonyms
        assert "deep learning" not in expansion.terms


class TestSearch:
    @pytest.mark.asyncio
    async def test_hybrid_results_come_from_either_branch(self, search_service, indexed):
        """Hybrid results are a subset of semantic and full-text candidates, capped at the limit."""
        await indexed()
        query = "robotics startup funding"

        response = await search_service.search(query, options=SearchOptions(limit=2))

        semantic = await search_service._semantic_candidates(query, ItemFilter(), 100)
        lexical, _ = await search_service._fulltext_candidates(query, ItemFilter(), 100, expand_query(query).terms)
        allowed = {c.item.id for c in semantic} | {c.item.id for c in lexical}

        assert response.search_type == "hybrid"
        assert 0 < len(response.results) <= 2
        assert {r.id for r in response.results} <= allowed
        assert response.results[0].id == "a2"
        combined = [r.scores["combined"] for r in response.results]
        assert combined == sorted(combined, reverse=True)

    @pytest.mark.asyncio
    async def test_quoted_phrase_matches_title(self, search_service, indexed):
        await indexed()

        response = await search_service.search('"sparse attention"')

        assert response.search_type == "fulltext"
        assert [r.id for r in response.results] == ["p1"]
        assert "<b>" in response.results[0].highlights["title"]
        assert response.results[0].scores["fulltext"] > 0

    @pytest.mark.asyncio
    async def test_semantic_search_ranks_closest_item_first(self, search_service, indexed):
        await indexed()

        response = await search_service.search("new quantum processor with more stable qubits for algorithms")

        assert response.search_type == "semantic"
        assert response.results[0].id == "a3"
        assert "semantic" in response.results[0].scores

    @pytest.mark.asyncio
    async def test_filters_apply_to_every_branch(self, search_service, indexed):
        await indexed()

        response = await search_service.search(
            "transformer long documents memory",
            filters=SearchFilters(content_types=["paper"]),
        )

        assert [r.id for r in response.results] == ["p1"]
        assert response.aggregations["content_types"] == {"paper": 1}

    @pytest.mark.asyncio
    async def test_responses_are_cached(self, search_service, indexed, telemetry):
        await indexed()

        first = await search_service.search("robotics startup funding")
        second = await search_service.search("robotics startup funding")

        assert first.cached is False
        assert second.cached is True
        assert [r.id for r in second.results] == [r.id for r in first.results]
        assert telemetry.counter("search.cache_hits") == 1

    @pytest.mark.asyncio
    async def test_semantic_failure_degrades_to_fulltext(self, search_service, embedding_service, indexed):
        """A failed embedding call falls back to full-text and the response is not cached."""
        await indexed()

        with patch.object(embedding_service, "embed", AsyncMock(side_effect=EmbeddingUnavailable("down"))):
            response = await search_service.search("qubits processor", options=SearchOptions(search_type="semantic"))
            again = await search_service.search("qubits processor", options=SearchOptions(search_type="semantic"))

        assert response.degraded is True
        assert response.search_type == "fulltext"
        assert response.results[0].id == "a3"
        assert again.cached is False

    @pytest.mark.asyncio
    async def test_cache_outage_does_not_fail_search(self, search_service, cache, indexed):
        await indexed()

        with patch.object(cache, "get", AsyncMock(side_effect=ConnectionError("redis down"))), \
                patch.object(cache, "set", AsyncMock(side_effect=ConnectionError("redis down"))):
            response = await search_service.search("qubits processor", options=SearchOptions(search_type="fulltext"))

        assert response.degraded is False
        assert response.cached is False
        assert response.results[0].id == "a3"
        assert search_service.get_metrics()["daily_queries"] == 1

    @pytest.mark.asyncio
    async def test_sort_by_date_and_pagination(self, search_service, indexed):
        await indexed()
        options = SearchOptions(search_type="semantic", sort_by="date", limit=2)

        page_one = await search_service.search("learning model research funding", options=options)
        page_two = await search_service.search(
            "learning model research funding",
            options=SearchOptions(search_type="semantic", sort_by="date", limit=2, offset=2),
        )

        dates = [r.published_at for r in page_one.results]
        assert dates == sorted(dates, reverse=True)
        assert not {r.id for r in page_one.results} & {r.id for r in page_two.results}

    @pytest.mark.asyncio
    async def test_include_content(self, search_service, indexed):
        await indexed()

        without = await search_service.search('"sparse attention"')
        with_body = await search_service.search('"sparse attention"', options=SearchOptions(include_content=True))

        assert without.results[0].content is None
        assert with_body.results[0].content.startswith("The method")

    @pytest.mark.asyncio
    async def test_empty_query(self, search_service):
        response = await search_service.search("   ")

        assert response.results == []
        assert response.total_count == 0

    @pytest.mark.asyncio
    async def test_suggestions_for_sparse_results(self, search_service, indexed):
        await indexed()

        response = await search_service.search("robotics")

        assert "robotics automation" in response.suggestions
        assert len(response.suggestions) <= 5

    @pytest.mark.asyncio
    async def test_popular_queries_tracked(self, search_service, indexed):
        await indexed()
        await search_service.search("Quantum qubits")
        await search_service.search("quantum qubits", options=SearchOptions(limit=3))

        popular = await search_service.popular_queries(limit=3)

        assert popular[0] == "quantum qubits"
        assert search_service.get_metrics()["daily_queries"] == 2

"""Tests for the recommendation engine and its ranking helpers."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from newsintel.core.entities import ReadingEvent, UserPreferences
from newsintel.recommender import Recommendation, RecommendOptions, diversify, merge_candidates
from newsintel.recommender.profiles import characterize, default_profile
from newsintel.recommender.ranking import apply_filters
from conftest import NOW


def rec(item_id, final, category="robotics", source="wire", quality=0.5, **scores):
    values = {"final": final, "quality": quality}
    values.update(scores)
    return Recommendation(
        item_id=item_id,
        title=item_id,
        content_type="article",
        category=category,
        source=source,
        published_at=NOW - timedelta(hours=1),
        scores=values,
    )


@pytest.fixture
def popular_items(make_item):
    """Recent items with enough views to count as trending."""
    return [
        make_item("r1", "Warehouse robots expand", "Robotics firms deploy more warehouse robots.",
                  hours_ago=2, category="robotics", source="wire", views=900),
        make_item("r2", "Robot arms learn faster", "A robotics lab trained robot arms in simulation.",
                  hours_ago=3, category="robotics", source="blog", views=700),
        make_item("q1", "Quantum processor update", "A new quantum processor with stable qubits.",
                  hours_ago=4, category="quantum-computing", source="wire", views=500),
        make_item("f1", "Banks adopt fraud models", "Banks use machine learning for fraud detection.",
                  hours_ago=5, category="fintech", source="journal", views=300),
    ]


class TestRecommend:
    @pytest.mark.asyncio
    async def test_initializes_on_first_use(self, recommender, store, popular_items):
        for item in popular_items:
            await store.upsert_item(item)

        result = await recommender.recommend("newcomer", RecommendOptions(limit=2))

        assert recommender.is_initialized is True
        assert [r.item_id for r in result.recommendations] == ["r1", "r2"]

    @pytest.mark.asyncio
    async def test_cold_start_serves_popular_recent(self, recommender, store, popular_items):
        """A user with no history and no preferences gets the popular fallback."""
        for item in popular_items:
            await store.upsert_item(item)
        await recommender.initialize()

        result = await recommender.recommend("newcomer", RecommendOptions(limit=3))

        assert result.fallback is True
        assert [r.item_id for r in result.recommendations] == ["r1", "r2", "q1"]
        assert all(r.reasoning == ["Popular recent article"] for r in result.recommendations)

    @pytest.mark.asyncio
    async def test_fallback_widens_to_older_items(self, recommender, store, make_item):
        await store.upsert_item(make_item("old", "Old story", "An older article body.", hours_ago=72, views=50))
        await recommender.initialize()

        result = await recommender.recommend("newcomer")

        assert result.fallback is True
        assert [r.item_id for r in result.recommendations] == ["old"]

    @pytest.mark.asyncio
    async def test_personalised_feed_excludes_read_items(self, recommender, store, popular_items, embed_items):
        await embed_items(popular_items)
        await store.save_preferences("u1", UserPreferences(categories=["robotics"], tags=["automation"]))
        await store.record_reading("u1", ReadingEvent("r1", timestamp=NOW - timedelta(hours=1), rating=5,
                                                      category="robotics"))
        await recommender.initialize()

        result = await recommender.recommend("u1", RecommendOptions(limit=3, exclude_read=True))

        ids = [r.item_id for r in result.recommendations]
        assert result.fallback is False
        assert "r1" not in ids
        assert len(ids) == len(set(ids))
        assert 0 < len(ids) <= 3
        finals = [r.final for r in result.recommendations]
        assert finals == sorted(finals, reverse=True)
        assert result.to_dict()["recommendations"][0]["item_id"] == ids[0]

    @pytest.mark.asyncio
    async def test_failure_fallback_still_excludes_read_items(self, recommender, store, popular_items):
        for item in popular_items:
            await store.upsert_item(item)
        await store.save_preferences("u1", UserPreferences(categories=["robotics"]))
        await store.record_reading("u1", ReadingEvent("r1", timestamp=NOW - timedelta(hours=1)))
        await recommender.initialize()

        with patch("newsintel.recommender.engine.merge_candidates", side_effect=RuntimeError("merge failed")):
            result = await recommender.recommend("u1", RecommendOptions(exclude_read=True))

        assert result.fallback is True
        assert [r.item_id for r in result.recommendations] == ["r2", "q1", "f1"]

    @pytest.mark.asyncio
    async def test_cache_outage_still_returns_recommendations(self, recommender, store, popular_items, cache):
        for item in popular_items:
            await store.upsert_item(item)
        await recommender.initialize()

        with patch.object(cache, "get", AsyncMock(side_effect=ConnectionError("redis down"))), \
                patch.object(cache, "set", AsyncMock(side_effect=ConnectionError("redis down"))):
            result = await recommender.recommend("newcomer", RecommendOptions(limit=2), use_cache=True)

        assert [r.item_id for r in result.recommendations] == ["r1", "r2"]

    @pytest.mark.asyncio
    async def test_category_filter(self, recommender, store, popular_items, embed_items):
        await embed_items(popular_items)
        await store.save_preferences("u1", UserPreferences(categories=["fintech"]))
        await recommender.initialize()

        result = await recommender.recommend("u1", RecommendOptions(categories=["quantum-computing"]))

        assert [r.item_id for r in result.recommendations] == ["q1"]

    @pytest.mark.asyncio
    async def test_collaborative_candidates_from_similar_user(self, recommender, store, popular_items):
        for item in popular_items:
            await store.upsert_item(item)
        await store.save_preferences("u1", UserPreferences(categories=["robotics"]))
        await store.save_preferences("u2", UserPreferences(categories=["robotics"]))
        await store.record_reading("u2", ReadingEvent("q1", timestamp=NOW - timedelta(hours=2), rating=5))
        await recommender.initialize()

        profile = await recommender.get_profile("u1")
        candidates = await recommender.collaborative_candidates(profile, 10)

        assert [c.item_id for c in candidates] == ["q1"]
        assert candidates[0].scores["collaborative"] == pytest.approx(1.0)
        assert candidates[0].reasoning[0].startswith("Liked by similar user")

    @pytest.mark.asyncio
    async def test_cached_result(self, recommender, store, popular_items, telemetry):
        for item in popular_items:
            await store.upsert_item(item)
        await recommender.initialize()

        first = await recommender.recommend("newcomer", use_cache=True)
        second = await recommender.recommend("newcomer", use_cache=True)

        assert telemetry.counter("recommendation.cache_hits") == 1
        assert [r.item_id for r in second.recommendations] == [r.item_id for r in first.recommendations]

    @pytest.mark.asyncio
    async def test_metrics(self, recommender, store, popular_items):
        for item in popular_items:
            await store.upsert_item(item)
        await recommender.initialize()
        await recommender.recommend("newcomer")

        metrics = recommender.get_metrics()

        assert metrics["daily_requests"] == 1
        assert metrics["fallbacks"] == 1
        assert metrics["algorithm_breakdown"]["trending"] == 1.0


class TestRanking:
    def test_merge_sums_weighted_contributions(self):
        content = [rec("a", 0.0, content_based=1.0), rec("b", 0.0, content_based=0.5)]
        trending = [rec("a", 0.0, trending=1.0)]

        merged = merge_candidates(
            {"content_based": content, "trending": trending},
            {"content_based": 0.6, "collaborative": 0.3, "trending": 0.2},
        )

        assert [r.item_id for r in merged] == ["a", "b"]
        assert merged[0].final == pytest.approx(0.8)
        assert merged[1].final == pytest.approx(0.3)

    def test_diversify_never_raises_scores(self):
        """Scores only go down, and unrepeated items keep their order."""
        recs = [
            rec("a", 0.9, category="robotics", source="wire"),
            rec("b", 0.8, category="robotics", source="wire"),
            rec("c", 0.7, category="fintech", source="blog"),
            rec("d", 0.6, category="nlp", source="journal"),
        ]

        diversified = diversify(recs, 0.5, category_penalty=0.3, source_penalty=0.2)

        originals = {r.item_id: r.final for r in recs}
        assert all(r.final <= originals[r.item_id] for r in diversified)
        assert all(r is not original for r in diversified for original in recs)
        unrepeated = [r.item_id for r in diversified if r.item_id != "b"]
        assert unrepeated == ["a", "c", "d"]
        assert [r.item_id for r in diversified] == ["a", "c", "b", "d"]
        b = next(r for r in diversified if r.item_id == "b")
        assert b.final == pytest.approx(0.8 * 0.85 * 0.9)
        assert recs[1].final == 0.8

    def test_zero_diversity_keeps_scores(self):
        recs = [rec("a", 0.9), rec("b", 0.8)]

        diversified = diversify(recs, 0.0)

        assert [r.final for r in diversified] == [0.9, 0.8]

    def test_min_quality_uses_item_scale(self):
        recs = [rec("a", 0.9, quality=0.8), rec("b", 0.8, quality=0.4)]

        kept = apply_filters(recs, NOW, min_quality=60)

        assert [r.item_id for r in kept] == ["a"]

    def test_default_profile_and_characteristics(self):
        profile = default_profile("u1")
        assert profile.preferences.categories == ["artificial-intelligence", "machine-learning"]

        profile.reading_history = [
            ReadingEvent("a", timestamp=NOW, category="robotics"),
            ReadingEvent("b", timestamp=NOW, category="nlp"),
        ]
        characteristics = characterize(profile)

        assert characteristics.diversity_index == 1.0
        assert characteristics.novelty_seeker is True
        assert characteristics.expertise_level == "beginner"

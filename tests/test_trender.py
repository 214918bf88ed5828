"""Tests for trending topic detection and scoring."""

from datetime import timedelta

import pytest

from newsintel.core.entities import TopicHistoryPoint
from newsintel.core.errors import ValidationError
from newsintel.trender import TrendingTopic, forecast, identify_topics, merge_topics, trend_direction
from newsintel.trender.score import find_peaks
from conftest import NOW


def topic(key, score, mentions, window, trend="rising", keywords=("robot",)):
    return TrendingTopic(
        topic=key.title(),
        key=key,
        keywords=list(keywords),
        mentions=mentions,
        score=score,
        trend=trend,
        time_window=window,
    )


@pytest.fixture
def robot_items(make_item):
    """Six robot articles published within the last hour."""
    return [
        make_item(f"r{i}", f"Robot fleet {i}", "A robot sorts parcels in the depot.",
                  hours_ago=0.1 * (i + 1), category="robotics", views=100)
        for i in range(6)
    ]


class TestDetection:
    @pytest.mark.asyncio
    async def test_topic_merged_across_windows(self, trender, store, robot_items):
        """Mentions add up across windows, the best window supplies the score."""
        for item in robot_items:
            await store.upsert_item(item)

        result = await trender.detect_trending(time_windows=["short", "medium"], min_mentions=5)

        assert [t.key for t in result.topics] == ["robotics"]
        robotics = result.topics[0]
        assert robotics.mentions == 12
        assert robotics.time_window == "short"
        assert robotics.trend == "rising"
        # (6 mentions * 10 + 600 engagement * 0.1) * 2.0 window * 1.6 recency * 1.5 rising
        assert robotics.score == pytest.approx(576.0)
        assert robotics.categories == ["robotics"]
        assert len(robotics.related_articles) == 6
        assert result.metadata["total_articles_analyzed"] == 6
        assert set(result.time_windows) == {"short", "medium"}

    @pytest.mark.asyncio
    async def test_history_recorded_per_window(self, trender, store, robot_items):
        for item in robot_items:
            await store.upsert_item(item)

        await trender.detect_trending(time_windows=["short", "medium"], min_mentions=5)

        history = await store.get_topic_history("robotics")
        assert sorted(p.window for p in history) == ["medium", "short"]
        assert all(p.mentions == 6 for p in history)

    @pytest.mark.asyncio
    async def test_declining_against_stronger_history(self, trender, store, robot_items):
        for item in robot_items:
            await store.upsert_item(item)
        await store.append_topic_history([
            TopicHistoryPoint(topic="robotics", timestamp=NOW - timedelta(minutes=90), mentions=40,
                              score=10000.0, window="short"),
        ])

        result = await trender.detect_trending(time_windows=["short"], min_mentions=5, use_cache=False)

        robotics = result.topics[0]
        assert robotics.trend == "declining"
        assert robotics.score == pytest.approx(384.0 * 0.7)
        assert robotics.momentum == pytest.approx(384.0)

    @pytest.mark.asyncio
    async def test_min_mentions_filters_topics(self, trender, store, robot_items):
        for item in robot_items:
            await store.upsert_item(item)

        result = await trender.detect_trending(time_windows=["short"], min_mentions=7)

        assert result.topics == []
        assert result.metadata["avg_trend_score"] == 0.0

    @pytest.mark.asyncio
    async def test_unknown_window_rejected(self, trender):
        with pytest.raises(ValidationError):
            await trender.detect_trending(time_windows=["fortnight"])

    @pytest.mark.asyncio
    async def test_results_are_cached(self, trender, store, robot_items, telemetry):
        for item in robot_items:
            await store.upsert_item(item)

        first = await trender.detect_trending(time_windows=["short"])
        second = await trender.detect_trending(time_windows=["short"])

        assert first.cached is False
        assert second.cached is True
        assert second.topics[0].score == first.topics[0].score
        assert telemetry.counter("trending.cache_hits") == 1

    @pytest.mark.asyncio
    async def test_metrics(self, trender, store, robot_items):
        for item in robot_items:
            await store.upsert_item(item)
        await trender.detect_trending(time_windows=["short"])

        metrics = trender.get_metrics()

        assert metrics["runs"] == 1
        assert metrics["most_trending_topic"] == "Robotics"
        assert metrics["time_window_breakdown"] == {"short": 1}
        assert metrics["trending_categories"] == {"robotics": 1}


class TestHistory:
    @pytest.mark.asyncio
    async def test_topic_evolution(self, trender, store):
        await store.append_topic_history([
            TopicHistoryPoint(topic="robotics", timestamp=NOW - timedelta(hours=3), mentions=2, score=10.0),
            TopicHistoryPoint(topic="robotics", timestamp=NOW - timedelta(hours=2), mentions=9, score=50.0),
            TopicHistoryPoint(topic="robotics", timestamp=NOW - timedelta(hours=1), mentions=4, score=20.0),
        ])

        evolution = await trender.get_topic_evolution("Robotics!")

        assert evolution["topic"] == "robotics"
        assert [e["score"] for e in evolution["timeline"]] == [10.0, 50.0, 20.0]
        assert len(evolution["peak_moments"]) == 1
        assert evolution["peak_moments"][0]["impact"] == pytest.approx(30.0)
        assert evolution["forecast"]["confidence"] == pytest.approx(3 / 24)

    @pytest.mark.asyncio
    async def test_prune_drops_old_points(self, trender, store):
        await store.append_topic_history([
            TopicHistoryPoint(topic="robotics", timestamp=NOW - timedelta(days=40), mentions=1, score=1.0),
            TopicHistoryPoint(topic="robotics", timestamp=NOW - timedelta(days=1), mentions=1, score=1.0),
        ])

        removed = await trender.prune_history()

        assert removed == 1
        assert len(await store.get_topic_history("robotics")) == 1


class TestScoring:
    def test_direction_without_prior_history_is_rising(self):
        assert trend_direction([], 10.0, NOW, 1.0, 2.0) == "rising"

    @pytest.mark.parametrize("current, expected", [(300.0, "rising"), (100.0, "stable"), (40.0, "declining")])
    def test_direction_thresholds(self, current, expected):
        history = [TopicHistoryPoint(topic="ai", timestamp=NOW - timedelta(minutes=90), mentions=5, score=100.0)]

        assert trend_direction(history, current, NOW, 1.0, 2.0) == expected

    def test_merge_does_not_depend_on_window_order(self):
        short = [topic("ai", 10.0, 2, "short", keywords=("model",))]
        long = [topic("ai", 10.0, 3, "long", trend="stable", keywords=("data",))]

        forward = merge_topics([short, long])
        backward = merge_topics([long, short])

        assert [t.to_dict() for t in forward] == [t.to_dict() for t in backward]
        assert forward[0].mentions == 5
        assert forward[0].time_window == "short"
        assert forward[0].keywords == ["model", "data"]

    def test_merge_takes_highest_score(self):
        merged = merge_topics([[topic("ai", 5.0, 1, "short")], [topic("ai", 8.0, 1, "medium", trend="stable")]])

        assert merged[0].score == 8.0
        assert merged[0].trend == "stable"

    def test_forecast(self):
        assert forecast([1.0, 2.0])["confidence"] == 0.0

        prediction = forecast([10.0, 20.0, 30.0])

        assert prediction["next_hour"] == pytest.approx(40.0)
        assert prediction["next_day"] == pytest.approx(270.0)
        assert prediction["confidence"] == pytest.approx(0.125)

    def test_forecast_never_negative(self):
        assert forecast([30.0, 20.0, 10.0])["next_week"] == 0.0

    def test_peaks_need_minimum_impact(self):
        timeline = [
            {"timestamp": NOW, "score": 0.0, "mentions": 1},
            {"timestamp": NOW, "score": 8.0, "mentions": 1},
            {"timestamp": NOW, "score": 0.0, "mentions": 1},
        ]
        assert find_peaks(timeline) == []

    def test_identify_topics(self):
        assert "Deep Learning" in identify_topics([], "a transformer model for text")
        assert identify_topics(["photosynthesis", "leaf"], "photosynthesis in a leaf") == ["Photosynthesis"]

"""Tests for shared infrastructure: config, cache, concurrency, telemetry, store."""

import asyncio

import pytest

from newsintel.core.cache import MemoryCache
from newsintel.core.concurrency import bounded_map, create_batches, gather_settled, with_timeout
from newsintel.core.config import (
    CategorizationConfig,
    EngineConfig,
    QueueConfig,
    RecommendationConfig,
    SearchConfig,
    TrendingConfig,
    load_engine_config,
)
from newsintel.core.entities import ItemFilter, ReadingEvent, UserPreferences
from newsintel.core.errors import ConfigurationError, ProviderTimeout
from newsintel.core.telemetry import CacheTelemetry, Telemetry
from newsintel.core.text import content_hash, cosine_similarity, extract_keywords, jaccard


class TestEngineConfig:
    """Configuration is validated once, at construction."""

    def test_defaults_are_valid(self):
        config = EngineConfig()
        assert config.search.weights == {"semantic": 0.6, "fulltext": 0.3, "recency": 0.1}
        assert config.queue.policies["batch"].max_attempts == 1

    def test_search_weights_must_sum_to_one(self):
        with pytest.raises(ConfigurationError):
            SearchConfig(weights={"semantic": 0.9, "fulltext": 0.3, "recency": 0.1})

    def test_method_weights_must_rank_ai_first(self):
        with pytest.raises(ConfigurationError):
            CategorizationConfig(method_weights={"ai": 0.5, "embedding": 0.8, "keyword": 0.6})

    def test_recommendation_algorithm_weights_are_a_tunable_blend(self):
        config = RecommendationConfig(algorithm_weights={"content_based": 1.0, "collaborative": 0.5, "trending": 0.5})
        assert sum(config.algorithm_weights.values()) == 2.0

    def test_negative_weight_rejected(self):
        with pytest.raises(ConfigurationError):
            RecommendationConfig(algorithm_weights={"content_based": -0.1, "collaborative": 0.5, "trending": 0.5})

    def test_trend_threshold_must_exceed_one(self):
        with pytest.raises(ConfigurationError):
            TrendingConfig(trend_threshold=1.0)

    def test_duplicate_threshold_floor(self):
        with pytest.raises(ConfigurationError):
            QueueConfig(duplicate_threshold=0.8)

    def test_config_is_immutable(self):
        config = SearchConfig()
        with pytest.raises(Exception):
            config.max_results = 10

    def test_load_from_yaml_with_overrides(self, tmp_path):
        path = tmp_path / "engines.yaml"
        path.write_text("search:\n  max_results: 30\ntrending:\n  min_mentions: 2\n")

        config = load_engine_config(path, overrides={"search": {"default_limit": 10}})

        assert config.search.max_results == 30
        assert config.search.default_limit == 10
        assert config.trending.min_mentions == 2

    def test_unknown_key_rejected(self, tmp_path):
        path = tmp_path / "engines.yaml"
        path.write_text("search:\n  no_such_option: 1\n")

        with pytest.raises(ConfigurationError):
            load_engine_config(path)

    def test_missing_file_rejected(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_engine_config(tmp_path / "missing.yaml")


class TestMemoryCache:
    @pytest.mark.asyncio
    async def test_ttl_expiry_follows_clock(self, clock):
        cache = MemoryCache(clock)
        await cache.set("k", {"v": 1}, ttl=60)

        clock.advance(59)
        assert await cache.get("k") == {"v": 1}

        clock.advance(1)
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_values_are_copied(self, clock):
        cache = MemoryCache(clock)
        value = {"items": [1, 2]}
        await cache.set("k", value)

        value["items"].append(3)
        fetched = await cache.get("k")
        fetched["items"].append(4)

        assert await cache.get("k") == {"items": [1, 2]}

    @pytest.mark.asyncio
    async def test_evict_expired_and_clear_prefix(self, clock):
        cache = MemoryCache(clock)
        await cache.set("search:a", 1, ttl=10)
        await cache.set("search:b", 2)
        await cache.set("other", 3)

        clock.advance(11)
        assert cache.evict_expired() == 1
        assert await cache.clear_prefix("search:") == 1
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_incr_keeps_original_expiry(self, clock):
        cache = MemoryCache(clock)
        assert await cache.incr("count", 2, ttl=30) == 2
        clock.advance(20)
        assert await cache.incr("count", 3, ttl=30) == 5
        clock.advance(10)
        assert await cache.get("count") is None

    @pytest.mark.asyncio
    async def test_max_entries_evicts_oldest(self, clock):
        cache = MemoryCache(clock, max_entries=2)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.set("c", 3)

        assert await cache.get("a") is None
        assert await cache.get("c") == 3


class TestConcurrency:
    def test_create_batches(self):
        assert create_batches([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
        with pytest.raises(ValueError):
            create_batches([1], 0)

    @pytest.mark.asyncio
    async def test_gather_settled_isolates_failures(self):
        async def ok():
            return 1

        async def boom():
            raise RuntimeError("boom")

        settled = await gather_settled([ok(), boom(), ok()])

        assert [s.ok for s in settled] == [True, False, True]
        assert isinstance(settled[1].error, RuntimeError)

    @pytest.mark.asyncio
    async def test_bounded_map_respects_limit_and_order(self):
        in_flight = 0
        peak = 0

        async def work(n):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0)
            in_flight -= 1
            if n == 3:
                raise ValueError("bad item")
            return n * 10

        settled = await bounded_map(work, range(6), limit=2)

        assert peak <= 2
        assert [s.value for s in settled if s.ok] == [0, 10, 20, 40, 50]
        assert not settled[3].ok

    @pytest.mark.asyncio
    async def test_with_timeout_raises_provider_timeout(self):
        with pytest.raises(ProviderTimeout):
            await with_timeout(asyncio.sleep(1), 0.01, "slow call")


class TestTelemetry:
    def test_tagged_counters_and_timings(self):
        telemetry = Telemetry()
        telemetry.increment("search.type", tags={"type": "hybrid"})
        telemetry.increment("search.type", tags={"type": "hybrid"})
        telemetry.timing("search.latency", 0.2)
        telemetry.timing("search.latency", 0.4)

        assert telemetry.counter("search.type", tags={"type": "hybrid"}) == 2
        assert telemetry.counters_with_prefix("search.type") == {"search.type[type=hybrid]": 2}
        assert telemetry.timing_stats("search.latency")["avg"] == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_cache_telemetry_flushes_daily_counters(self, cache, clock):
        telemetry = CacheTelemetry(cache, clock)
        telemetry.increment("embedding.requests")
        telemetry.increment("embedding.requests", 2)

        await telemetry.flush()

        assert await telemetry.daily_counter("embedding.requests") == 3
        assert telemetry.counter("embedding.requests") == 3


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_transaction_rolls_back_on_error(self, store, make_item):
        await store.upsert_item(make_item("a", "Title", "Body"))

        with pytest.raises(RuntimeError):
            async with store.transaction():
                await store.save_preferences("u1", UserPreferences(categories=["robotics"]))
                await store.mark_duplicate("a", "b")
                raise RuntimeError("abort")

        assert await store.get_preferences("u1") is None
        assert (await store.get_item("a")).duplicate_of is None

    @pytest.mark.asyncio
    async def test_fulltext_phrase_and_highlight(self, store, make_item):
        await store.upsert_item(make_item("a", "Sparse attention for long documents", "A new method."))
        await store.upsert_item(make_item("b", "Attention is everywhere", "Sparse models and long context."))

        hits, total = await store.fulltext_search("sparse attention", phrase=True)

        assert total == 1
        assert hits[0].item.id == "a"
        assert "<b>Sparse</b>" in hits[0].title_highlight

    @pytest.mark.asyncio
    async def test_item_filter_excludes_deleted_and_duplicates(self, store, make_item):
        await store.upsert_item(make_item("a", "One", "Body", category="robotics"))
        await store.upsert_item(make_item("b", "Two", "Body", category="robotics", duplicate_of="a"))
        await store.upsert_item(make_item("c", "Three", "Body", category="robotics", deleted=True))

        items = await store.list_items(ItemFilter(categories=["robotics"], exclude_duplicates=True))

        assert [i.id for i in items] == ["a"]

    @pytest.mark.asyncio
    async def test_user_analytics(self, store, clock):
        await store.record_reading("u1", ReadingEvent("a", timestamp=clock.now(), rating=4, read_time=120,
                                                      category="robotics"))
        await store.record_reading("u1", ReadingEvent("b", timestamp=clock.now(), rating=2, category="nlp"))

        analytics = await store.user_analytics("u1", clock.now().replace(year=2024))

        assert analytics["total_reads"] == 2
        assert analytics["avg_rating"] == 3
        assert analytics["categories_explored"] == 2
        assert analytics["avg_read_time"] == 120


class TestTextHelpers:
    def test_keywords_skip_stop_words(self):
        assert extract_keywords("The robot and the robot arm", limit=2) == ["robot", "arm"]

    def test_similarity_helpers(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity(None, [1.0]) == 0.0
        assert jaccard(["a", "b"], ["b", "c"]) == pytest.approx(1 / 3)

    def test_content_hash_is_stable(self):
        assert content_hash("abc") == content_hash("abc")
        assert content_hash("abc") != content_hash("abd")

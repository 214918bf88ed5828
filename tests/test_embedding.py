"""Tests for the embedding service and providers."""

import httpx
import pytest

from newsintel.core.config import EmbeddingConfig
from newsintel.core.entities import UserPreferences
from newsintel.core.errors import EmbeddingUnavailable, ProviderUnavailable, ValidationError
from newsintel.embedding import EmbeddingService, clean_text, fit_dimensions
from newsintel.providers.embeddings import (
    EmbeddingProvider,
    EmbeddingProviderFactory,
    HashingEmbeddingProvider,
    OpenAIEmbeddingProvider,
)


class FailingProvider(EmbeddingProvider):
    """Provider that always fails, counting its calls."""

    def __init__(self, name):
        self.name = name
        self.model = f"{name}-model"
        self.calls = 0

    async def embed(self, text):
        self.calls += 1
        raise ProviderUnavailable(f"{self.name} is down")


def make_service(providers, store, cache, telemetry, clock, **config):
    values = {"dimensions": 384, "backoff_base_seconds": 0, "retry_attempts": 1}
    values.update(config)
    return EmbeddingService(providers, store, cache, EmbeddingConfig(**values), telemetry, clock)


class TestTextPreparation:
    def test_clean_text_strips_disallowed_characters(self):
        assert clean_text("  Hello\n\n<world>   & friends!  ") == "Hello world friends!"

    def test_fit_dimensions_pads_and_normalises(self):
        vector = fit_dimensions([3.0, 4.0], 4)
        assert len(vector) == 4
        assert vector[:2] == pytest.approx([0.6, 0.8])
        assert vector[2:] == [0.0, 0.0]


class TestEmbed:
    @pytest.mark.asyncio
    async def test_embedding_is_deterministic_and_cached(self, embedding_service, telemetry):
        """Same text gives the same vector; the second call is served from cache."""
        first = await embedding_service.embed("Transformers dominate language modelling")
        second = await embedding_service.embed("Transformers dominate language modelling")

        assert len(first.vector) == 384
        assert first.cached is False
        assert second.cached is True
        assert second.vector == pytest.approx(first.vector)
        assert telemetry.counter("embedding.cache_hits") == 1
        assert telemetry.counter("embedding.cache_misses") == 1

    @pytest.mark.asyncio
    async def test_related_texts_are_closer(self, embedding_service):
        from newsintel.core.text import cosine_similarity

        a = await embedding_service.embed("quantum computing processor with stable qubits")
        b = await embedding_service.embed("new quantum processor keeps qubits stable")
        c = await embedding_service.embed("startup raises venture funding for warehouse robots")

        assert cosine_similarity(a.vector, b.vector) > cosine_similarity(a.vector, c.vector)

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, embedding_service):
        with pytest.raises(ValidationError):
            await embedding_service.embed("   <>  ")

    @pytest.mark.asyncio
    async def test_falls_back_to_next_provider(self, store, cache, telemetry, clock):
        """A failing first provider hands over to the local model."""
        failing = FailingProvider("openai")
        service = make_service([HashingEmbeddingProvider(384), failing], store, cache, telemetry, clock)

        assert [p.name for p in service.providers] == ["openai", "local"]

        result = await service.embed("robots learn to walk")

        assert result.provider == "local"
        assert failing.calls == 1
        assert telemetry.counter("embedding.provider_failures", tags={"provider": "openai"}) == 1
        assert telemetry.counter("embedding.provider_usage", tags={"provider": "local"}) == 1

    @pytest.mark.asyncio
    async def test_fallback_vector_is_not_cached_for_primary_model(self, store, cache, telemetry, clock):
        failing = FailingProvider("openai")
        local = HashingEmbeddingProvider(384)
        service = make_service([failing, local], store, cache, telemetry, clock)

        first = await service.embed("robots learn to walk")
        second = await service.embed("robots learn to walk")

        assert second.cached is False
        assert failing.calls == 2
        assert await cache.get(service.cache_key("robots learn to walk")) is None
        stored = await cache.get(service.cache_key("robots learn to walk", local.model))
        assert stored["model"] == first.model == local.model

    @pytest.mark.asyncio
    async def test_retries_each_provider_before_falling_back(self, store, cache, telemetry, clock):
        failing = FailingProvider("openai")
        service = make_service([failing, HashingEmbeddingProvider(384)], store, cache, telemetry, clock,
                               retry_attempts=3)

        await service.embed("robots learn to walk")

        assert failing.calls == 3

    @pytest.mark.asyncio
    async def test_all_providers_failing(self, store, cache, telemetry, clock):
        service = make_service([FailingProvider("openai"), FailingProvider("huggingface")],
                               store, cache, telemetry, clock)

        with pytest.raises(EmbeddingUnavailable) as exc_info:
            await service.embed("robots learn to walk")

        assert set(exc_info.value.details["errors"]) == {"openai", "huggingface"}
        assert telemetry.counter("embedding.failures") == 1

    @pytest.mark.asyncio
    async def test_preferred_provider_goes_first(self, store, cache, telemetry, clock):
        service = make_service([FailingProvider("openai"), HashingEmbeddingProvider(384)],
                               store, cache, telemetry, clock, preferred_provider="local")

        assert service.providers[0].name == "local"


class TestEmbedBatch:
    @pytest.mark.asyncio
    async def test_batch_isolates_failures(self, embedding_service):
        result = await embedding_service.embed_batch(["first text", "", "third text"])

        assert result.total_items == 3
        assert result.success_count == 2
        assert result.failure_count == 1
        assert result.embeddings[1] is None
        assert 1 in result.errors
        assert result.success_count + result.failure_count == result.total_items

    @pytest.mark.asyncio
    async def test_batch_counts_cached_entries(self, store, cache, telemetry, clock):
        service = make_service([HashingEmbeddingProvider(384)], store, cache, telemetry, clock, batch_size=2)
        await service.embed("already seen")

        result = await service.embed_batch(["already seen", "new one", "another new one"])

        assert result.success_count == 3
        assert result.cached_count == 1


class TestPreferencesAndSimilarity:
    @pytest.mark.asyncio
    async def test_preference_embedding_is_stored_on_profile(self, embedding_service, store):
        preferences = UserPreferences(categories=["robotics"], tags=["automation"], interests=["warehouses"])

        vector = await embedding_service.generate_user_preference_embedding("u1", preferences)

        profile = await store.get_profile("u1")
        assert vector is not None
        assert profile.preference_embedding == vector
        assert profile.preferences.categories == ["robotics"]

    @pytest.mark.asyncio
    async def test_no_preferences_gives_none(self, embedding_service):
        assert await embedding_service.generate_user_preference_embedding("nobody") is None

    @pytest.mark.asyncio
    async def test_find_similar_content_excludes_source(self, embedding_service, sample_items, embed_items,
                                                       make_item):
        await embed_items(sample_items)
        twin = make_item("a1-follow-up", "Deep learning model released as open source",
                         "The deep learning transformer model is now open source on GitHub with its dataset.")
        await embed_items([twin])

        similar = await embedding_service.find_similar_content("a1", threshold=0.1)

        ids = [hit.item.id for hit in similar]
        assert "a1" not in ids
        assert ids[0] == "a1-follow-up"
        scores = [hit.score for hit in similar]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_unknown_item_has_no_neighbours(self, embedding_service):
        assert await embedding_service.find_similar_content("missing") == []

    @pytest.mark.asyncio
    async def test_metrics(self, embedding_service):
        await embedding_service.embed("robotics")
        await embedding_service.embed("robotics")

        metrics = embedding_service.get_metrics()

        assert metrics["requests"] == 2
        assert metrics["cache_hit_rate"] == 0.5
        assert metrics["providers"] == ["local"]


class TestProviders:
    @pytest.mark.asyncio
    async def test_openai_provider_orders_rows_by_index(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer sk-test"
            return httpx.Response(200, json={"data": [
                {"index": 1, "embedding": [0.0, 1.0]},
                {"index": 0, "embedding": [1.0, 0.0]},
            ]})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = OpenAIEmbeddingProvider(api_key="sk-test", client=client)

        vectors = await provider.embed_many(["a", "b"])
        await provider.close()

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]

    @pytest.mark.asyncio
    async def test_openai_http_error_is_provider_unavailable(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        provider = OpenAIEmbeddingProvider(api_key="sk-test", client=client)

        with pytest.raises(ProviderUnavailable):
            await provider.embed("a")
        await provider.close()

    def test_factory_skips_unconfigured_providers(self):
        chain = EmbeddingProviderFactory.create_chain(["openai", "local"], {"openai": {"api_key": ""}})
        assert [p.name for p in chain] == ["local"]

    @pytest.mark.asyncio
    async def test_requests_pass_through_per_minute_limiter(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})
        ))
        provider = OpenAIEmbeddingProvider(api_key="sk-test", client=client, requests_per_minute=1)

        assert provider.rate_limiter.has_capacity()
        await provider.embed("a")
        await provider.close()

        assert provider.rate_limiter.max_rate == 1
        assert not provider.rate_limiter.has_capacity()

"""Shared fixtures: in-memory store and cache, a frozen clock and wired engines."""

from datetime import datetime, timedelta, timezone

import pytest

from newsintel.analyzer import ContentAnalysisEngine
from newsintel.categorizer import CategorizationEngine
from newsintel.core.cache import MemoryCache
from newsintel.core.config import (
    EmbeddingConfig,
    EngineConfig,
    QueueConfig,
    QueuePolicy,
    SearchConfig,
)
from newsintel.core.entities import ContentItem
from newsintel.core.store import InMemoryStore
from newsintel.core.telemetry import Telemetry
from newsintel.core.time import FakeClock
from newsintel.embedding import EmbeddingService
from newsintel.jobs import JobQueue, MemoryJobStore, PipelineOrchestrator
from newsintel.providers.embeddings import HashingEmbeddingProvider
from newsintel.providers.llm import DummyLLMProvider
from newsintel.recommender import RecommendationEngine
from newsintel.search import SemanticSearchService
from newsintel.trender import TrendingTopicsDetector

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

JOB_TYPES = ("embedding", "categorization", "analysis", "recommendation", "trending", "duplicate", "batch")


def queue_config(concurrency: int = 1, max_attempts: int = 3, **overrides) -> QueueConfig:
    """Queue config with instant retries and no periodic health loop."""
    policies = {
        name: QueuePolicy(concurrency=concurrency, max_attempts=max_attempts, backoff_base_seconds=0)
        for name in JOB_TYPES
    }
    values = {"policies": policies, "health_check_interval_seconds": 0, "feed_wait_seconds": 5.0}
    values.update(overrides)
    return QueueConfig(**values)


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def cache(clock):
    return MemoryCache(clock)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def job_store():
    return MemoryJobStore()


@pytest.fixture
def telemetry():
    return Telemetry()


@pytest.fixture
def engine_config():
    return EngineConfig(
        embedding=EmbeddingConfig(dimensions=384, backoff_base_seconds=0, retry_attempts=1),
        search=SearchConfig(similarity_threshold=0.1),
        queue=queue_config(),
    )


@pytest.fixture
def llm():
    return DummyLLMProvider()


@pytest.fixture
def embedding_service(store, cache, engine_config, telemetry, clock):
    return EmbeddingService([HashingEmbeddingProvider(384)], store, cache, engine_config.embedding, telemetry, clock)


@pytest.fixture
def categorizer(embedding_service, store, cache, llm, engine_config, telemetry, clock):
    return CategorizationEngine(embedding_service, store, cache, llm, engine_config.categorization, telemetry, clock)


@pytest.fixture
def analyzer(store, cache, llm, engine_config, telemetry, clock):
    return ContentAnalysisEngine(store, cache, llm, engine_config.analysis, telemetry, clock)


@pytest.fixture
def search_service(embedding_service, store, cache, engine_config, telemetry, clock):
    return SemanticSearchService(embedding_service, store, cache, engine_config.search, telemetry, clock)


@pytest.fixture
def recommender(embedding_service, store, cache, engine_config, telemetry, clock):
    return RecommendationEngine(embedding_service, store, cache, engine_config.recommendation, telemetry, clock)


@pytest.fixture
def trender(store, cache, engine_config, telemetry, clock):
    return TrendingTopicsDetector(store, cache, engine_config.trending, telemetry, clock)


@pytest.fixture
def orchestrator(store, cache, job_store, embedding_service, categorizer, analyzer, search_service,
                 recommender, trender, engine_config, telemetry, clock):
    return PipelineOrchestrator(
        store=store,
        cache=cache,
        embedding_service=embedding_service,
        categorizer=categorizer,
        analyzer=analyzer,
        search_service=search_service,
        recommender=recommender,
        trender=trender,
        queue=JobQueue(engine_config.queue, job_store, telemetry, clock),
        config=engine_config,
        telemetry=telemetry,
        clock=clock,
    )


@pytest.fixture
def make_item():
    """Factory for content items published relative to NOW."""
    def _make(item_id, title, body, hours_ago=1.0, **fields):
        return ContentItem(
            id=item_id,
            title=title,
            body=body,
            published_at=NOW - timedelta(hours=hours_ago),
            **fields,
        )
    return _make


SAMPLE_ARTICLES = [
    (
        "a1",
        "New deep learning model beats benchmarks",
        "Researchers released a deep learning model built on a transformer architecture. "
        "The neural network was trained on a large dataset and improves accuracy on image benchmarks. "
        "The team said the model will be released as open source on GitHub.",
    ),
    (
        "a2",
        "Robotics startup raises funding for warehouse automation",
        "A robotics startup raised $40 million in a Series B round led by venture capital firms. "
        "The company builds autonomous robots for warehouse automation and plans to expand in Europe.",
    ),
    (
        "a3",
        "Quantum computing milestone reported by lab",
        "A quantum computing lab reported a new quantum processor with more stable qubits. "
        "The findings were published in a peer reviewed paper and could speed up quantum algorithms.",
    ),
    (
        "a4",
        "Banks adopt machine learning for fraud detection",
        "Major banks are using machine learning for fraud detection in digital payments. "
        "The fintech industry expects supervised learning models to cut losses this year.",
    ),
]


@pytest.fixture
def sample_items(make_item):
    return [
        make_item(item_id, title, body, hours_ago=index + 1, views=100 * (index + 1), source=f"source-{index % 2}")
        for index, (item_id, title, body) in enumerate(SAMPLE_ARTICLES)
    ]


@pytest.fixture
def embed_items(embedding_service, store):
    """Store items and give each a title and body embedding."""
    async def _embed(items):
        for item in items:
            await store.upsert_item(item)
            title = await embedding_service.embed(item.title)
            body = await embedding_service.embed(item.body)
            await embedding_service.save_embeddings(item.id, item.content_type, title.vector, body.vector)
        return items
    return _embed

"""Builds the engines and the orchestrator from settings."""

from typing import Optional

from newsintel.analyzer import ContentAnalysisEngine
from newsintel.categorizer import CategorizationEngine
from newsintel.core.cache import Cache, create_cache
from newsintel.core.config import EngineConfig, load_engine_config
from newsintel.core.db import get_sessionmaker
from newsintel.core.logging import get_logger
from newsintel.core.repositories import SQLStore
from newsintel.core.settings import Settings, get_settings
from newsintel.core.store import ContentStore, InMemoryStore
from newsintel.core.telemetry import CacheTelemetry
from newsintel.core.time import Clock
from newsintel.embedding import EmbeddingService
from newsintel.jobs import JobQueue, PipelineOrchestrator, create_job_store
from newsintel.providers import EmbeddingProviderFactory, LLMProviderFactory
from newsintel.recommender import RecommendationEngine
from newsintel.search import SemanticSearchService
from newsintel.trender import TrendingTopicsDetector

logger = get_logger(__name__)

MEMORY_STORE_URL = "memory://"


def create_store(settings: Settings) -> ContentStore:
    if settings.db_url == MEMORY_STORE_URL:
        logger.info("Using in-memory content store")
        return InMemoryStore()
    return SQLStore(get_sessionmaker())


def provider_configs(settings: Settings, config: EngineConfig) -> dict:
    common = {
        "timeout_seconds": settings.provider_timeout_seconds,
        "requests_per_minute": settings.provider_requests_per_minute,
    }
    return {
        "openai": {
            "api_key": settings.openai_api_key,
            "model": settings.embedding_model,
            "base_url": settings.openai_base_url,
            **common,
        },
        "huggingface": {"api_key": settings.huggingface_api_key, "model": settings.huggingface_model, **common},
        "local": {"dimensions": config.embedding.local_dimensions},
    }


async def build_orchestrator(
    settings: Optional[Settings] = None,
    engine_config: Optional[EngineConfig] = None,
    store: Optional[ContentStore] = None,
    cache: Optional[Cache] = None,
    clock: Optional[Clock] = None,
) -> PipelineOrchestrator:
    """
    Wire every engine with one shared store, cache, telemetry and clock.

    Raises:
        ConfigurationError: invalid engine configuration
    """
    settings = settings or get_settings()
    config = engine_config or load_engine_config(
        settings.engine_config_file, overrides={"embedding": {"dimensions": settings.embedding_dimensions}}
    )
    clock = clock or Clock()
    store = store or create_store(settings)
    cache = cache or await create_cache(settings.redis_url, clock=clock)
    telemetry = CacheTelemetry(cache, clock)

    order = settings.embedding_provider_order or list(config.embedding.provider_order)
    providers = EmbeddingProviderFactory.create_chain(order, provider_configs(settings, config))
    llm = LLMProviderFactory.create_provider(
        settings.llm_provider,
        **({
            "api_key": settings.openai_api_key,
            "base_url": settings.openai_base_url,
            "model": settings.chat_model,
            "timeout_seconds": settings.provider_timeout_seconds,
            "requests_per_minute": settings.provider_requests_per_minute,
        } if settings.llm_provider == "openai" else {})
    )

    embedding_service = EmbeddingService(providers, store, cache, config.embedding, telemetry, clock)
    orchestrator = PipelineOrchestrator(
        store=store,
        cache=cache,
        embedding_service=embedding_service,
        categorizer=CategorizationEngine(embedding_service, store, cache, llm, config.categorization, telemetry, clock),
        analyzer=ContentAnalysisEngine(store, cache, llm, config.analysis, telemetry, clock),
        search_service=SemanticSearchService(embedding_service, store, cache, config.search, telemetry, clock),
        recommender=RecommendationEngine(embedding_service, store, cache, config.recommendation, telemetry, clock),
        trender=TrendingTopicsDetector(store, cache, config.trending, telemetry, clock),
        queue=JobQueue(config.queue, create_job_store(cache, config.queue), telemetry, clock),
        config=config,
        telemetry=telemetry,
        clock=clock,
    )
    logger.info(
        f"Built orchestrator (providers: {[p.name for p in providers]}, llm: {llm.provider_name}, "
        f"store: {type(store).__name__}, cache: {type(cache).__name__})"
    )
    return orchestrator

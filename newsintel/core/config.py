"""Validated per-engine configuration.

Each engine receives one immutable config object built at startup by
``load_engine_config``. Weight groups and thresholds are checked when the
object is constructed; an invalid value raises ``ConfigurationError`` instead
of being normalised silently.
"""
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigurationError
from .logging import get_logger

logger = get_logger(__name__)

WEIGHT_SUM_TOLERANCE = 0.01


def _check_unit_interval(section: str, **values: float) -> None:
    for name, value in values.items():
        if not 0.0 <= value <= 1.0:
            raise ConfigurationError(
                f"{section}.{name} must be within [0, 1], got {value}",
                {"section": section, "field": name, "value": value},
            )


def _check_weights(section: str, weights: Dict[str, float], expected_total: Optional[float] = 1.0) -> None:
    negative = {k: v for k, v in weights.items() if v < 0}
    if negative:
        raise ConfigurationError(f"{section} has negative weights: {negative}", {"weights": weights})
    total = sum(weights.values())
    if total <= 0:
        raise ConfigurationError(f"{section} weights are all zero", {"weights": weights})
    if expected_total is not None and abs(total - expected_total) > WEIGHT_SUM_TOLERANCE:
        raise ConfigurationError(
            f"{section} weights must sum to {expected_total} (got {total:.3f})",
            {"weights": weights, "total": total},
        )


class FrozenModel(BaseModel):
    model_config = {"frozen": True, "extra": "forbid"}


class EmbeddingConfig(FrozenModel):
    batch_size: int = 50
    max_concurrency: int = 5
    retry_attempts: int = 3
    backoff_base_seconds: float = 1.0
    timeout_seconds: float = 30.0
    requests_per_minute: int = 3000
    cache_ttl_seconds: int = 24 * 3600
    dimensions: int = 1536
    local_dimensions: int = 384
    provider_order: List[str] = Field(default_factory=lambda: ["openai", "local", "huggingface"])
    preferred_provider: Optional[str] = None
    max_input_chars: Dict[str, int] = Field(
        default_factory=lambda: {"openai": 8191, "local": 512, "huggingface": 512}
    )
    similarity_threshold: float = 0.7
    similar_limit: int = 10

    @model_validator(mode="after")
    def _validate(self):
        if self.batch_size < 1 or self.max_concurrency < 1 or self.retry_attempts < 1:
            raise ConfigurationError("embedding batch_size, max_concurrency and retry_attempts must be >= 1")
        if self.dimensions < 1:
            raise ConfigurationError("embedding dimensions must be >= 1")
        if not self.provider_order:
            raise ConfigurationError("embedding provider_order must not be empty")
        _check_unit_interval("embedding", similarity_threshold=self.similarity_threshold)
        return self


class CategorizationConfig(FrozenModel):
    min_confidence: float = 0.6
    max_categories: int = 3
    method_weights: Dict[str, float] = Field(
        default_factory=lambda: {"ai": 1.0, "embedding": 0.8, "keyword": 0.6}
    )
    similar_items_limit: int = 20
    similar_items_threshold: float = 0.7
    additional_category_threshold: float = 0.6
    ai_escalation_threshold: float = 0.7
    hybrid_additional_share: float = 0.2
    long_text_chars: int = 500
    ai_prompt_chars: int = 2000
    fallback_confidence: float = 0.5
    error_confidence: float = 0.3
    cache_ttl_seconds: int = 3600
    batch_concurrency: int = 5
    max_keywords: int = 10
    max_tags: int = 15

    @model_validator(mode="after")
    def _validate(self):
        _check_weights("categorization.method_weights", self.method_weights, expected_total=None)
        missing = {"ai", "embedding", "keyword"} - set(self.method_weights)
        if missing:
            raise ConfigurationError(f"categorization.method_weights missing {sorted(missing)}")
        w = self.method_weights
        if not w["ai"] >= w["embedding"] >= w["keyword"]:
            raise ConfigurationError(
                "categorization method weights must rank ai >= embedding >= keyword",
                {"weights": w},
            )
        _check_unit_interval(
            "categorization",
            min_confidence=self.min_confidence,
            similar_items_threshold=self.similar_items_threshold,
            additional_category_threshold=self.additional_category_threshold,
            ai_escalation_threshold=self.ai_escalation_threshold,
            hybrid_additional_share=self.hybrid_additional_share,
            fallback_confidence=self.fallback_confidence,
            error_confidence=self.error_confidence,
        )
        if self.max_categories < 1 or self.batch_concurrency < 1:
            raise ConfigurationError("categorization max_categories and batch_concurrency must be >= 1")
        return self


class AnalysisConfig(FrozenModel):
    quality_weights: Dict[str, float] = Field(
        default_factory=lambda: {
            "readability": 0.25,
            "grammar": 0.20,
            "factuality": 0.25,
            "bias": 0.15,
            "coherence": 0.15,
        }
    )
    words_per_minute: int = 200
    summary_sentences: int = 5
    summary_ratio: float = 0.3
    key_points: int = 5
    max_grammar_errors: int = 10
    max_claims: int = 5
    long_sentence_words: int = 40
    llm_summary_chars: int = 4000
    cache_ttl_seconds: int = 2 * 3600
    batch_concurrency: int = 3

    @model_validator(mode="after")
    def _validate(self):
        expected = {"readability", "grammar", "factuality", "bias", "coherence"}
        if set(self.quality_weights) != expected:
            raise ConfigurationError(
                f"analysis.quality_weights must define exactly {sorted(expected)}",
                {"weights": self.quality_weights},
            )
        _check_weights("analysis.quality_weights", self.quality_weights)
        _check_unit_interval("analysis", summary_ratio=self.summary_ratio)
        if self.words_per_minute < 1:
            raise ConfigurationError("analysis.words_per_minute must be >= 1")
        return self


class SearchConfig(FrozenModel):
    weights: Dict[str, float] = Field(
        default_factory=lambda: {"semantic": 0.6, "fulltext": 0.3, "recency": 0.1}
    )
    similarity_threshold: float = 0.7
    max_results: int = 50
    default_limit: int = 20
    overfetch_factor: int = 2
    recency_half_life_days: float = 30.0
    cache_ttl_seconds: int = 15 * 60
    suggestion_trigger: int = 5
    max_suggestions: int = 5
    popular_queries_tracked: int = 50

    @model_validator(mode="after")
    def _validate(self):
        if set(self.weights) != {"semantic", "fulltext", "recency"}:
            raise ConfigurationError("search.weights must define semantic, fulltext and recency")
        _check_weights("search.weights", self.weights)
        _check_unit_interval("search", similarity_threshold=self.similarity_threshold)
        if self.recency_half_life_days <= 0:
            raise ConfigurationError("search.recency_half_life_days must be positive")
        if self.overfetch_factor < 1:
            raise ConfigurationError("search.overfetch_factor must be >= 1")
        return self


class RecommendationConfig(FrozenModel):
    max_recommendations: int = 20
    diversity_factor: float = 0.3
    category_penalty: float = 0.3
    source_penalty: float = 0.2
    # Tunable blend, not required to sum to 1.
    algorithm_weights: Dict[str, float] = Field(
        default_factory=lambda: {"content_based": 0.6, "collaborative": 0.3, "trending": 0.2}
    )
    content_score_weights: Dict[str, float] = Field(
        default_factory=lambda: {"similarity": 0.6, "quality": 0.3, "recency": 0.1}
    )
    content_similarity_threshold: float = 0.5
    similar_users: int = 10
    high_rating: float = 4.0
    collaborative_items: int = 20
    user_similarity_threshold: float = 0.1
    item_similarity_threshold: float = 0.7
    content_recency_days: float = 7.0
    category_fallback_days: int = 7
    popularity_half_life_days: float = 30.0
    trending_window_hours: int = 24
    trending_min_views: int = 100
    trending_min_shares: int = 10
    fallback_window_hours: int = 24
    cold_start_threshold: int = 5
    history_limit: int = 100
    active_user_hours: int = 24
    cache_ttl_seconds: int = 3600
    profile_refresh_seconds: int = 3600
    popularity_refresh_seconds: int = 15 * 60
    similarity_refresh_seconds: int = 24 * 3600

    @model_validator(mode="after")
    def _validate(self):
        if set(self.algorithm_weights) != {"content_based", "collaborative", "trending"}:
            raise ConfigurationError(
                "recommendation.algorithm_weights must define content_based, collaborative and trending"
            )
        _check_weights("recommendation.algorithm_weights", self.algorithm_weights, expected_total=None)
        _check_weights("recommendation.content_score_weights", self.content_score_weights)
        _check_unit_interval(
            "recommendation",
            diversity_factor=self.diversity_factor,
            category_penalty=self.category_penalty,
            source_penalty=self.source_penalty,
            content_similarity_threshold=self.content_similarity_threshold,
            user_similarity_threshold=self.user_similarity_threshold,
            item_similarity_threshold=self.item_similarity_threshold,
        )
        if self.max_recommendations < 1:
            raise ConfigurationError("recommendation.max_recommendations must be >= 1")
        return self


class TrendingConfig(FrozenModel):
    windows_minutes: Dict[str, int] = Field(
        default_factory=lambda: {"short": 60, "medium": 24 * 60, "long": 7 * 24 * 60}
    )
    window_multipliers: Dict[str, float] = Field(
        default_factory=lambda: {"short": 2.0, "medium": 1.5, "long": 1.0}
    )
    direction_lookback_hours: Dict[str, float] = Field(
        default_factory=lambda: {"short": 1.0, "medium": 6.0, "long": 24.0}
    )
    direction_multipliers: Dict[str, float] = Field(
        default_factory=lambda: {"rising": 1.5, "stable": 1.0, "declining": 0.7}
    )
    min_mentions: int = 5
    trend_threshold: float = 2.0
    decay_factor: float = 0.9
    max_articles: int = 1000
    max_topics: int = 20
    history_retention_days: int = 30
    recency_boost_hours: float = 2.0
    recency_boost_step: float = 0.1
    related_articles_limit: int = 10
    cache_ttl_seconds: int = 15 * 60

    @model_validator(mode="after")
    def _validate(self):
        for name, minutes in self.windows_minutes.items():
            if minutes <= 0:
                raise ConfigurationError(f"trending window {name} must be positive", {"minutes": minutes})
        missing = set(self.windows_minutes) - set(self.window_multipliers)
        if missing:
            raise ConfigurationError(f"trending windows without multiplier: {sorted(missing)}")
        if self.trend_threshold <= 1.0:
            raise ConfigurationError("trending.trend_threshold must be greater than 1")
        _check_unit_interval("trending", decay_factor=self.decay_factor)
        if self.history_retention_days < 1:
            raise ConfigurationError("trending.history_retention_days must be >= 1")
        return self


class QueuePolicy(FrozenModel):
    concurrency: int = 1
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0

    @model_validator(mode="after")
    def _validate(self):
        if self.concurrency < 1 or self.max_attempts < 1:
            raise ConfigurationError("queue concurrency and max_attempts must be >= 1")
        if self.backoff_base_seconds < 0:
            raise ConfigurationError("queue backoff_base_seconds must not be negative")
        return self


def _default_policies() -> Dict[str, QueuePolicy]:
    return {
        "embedding": QueuePolicy(concurrency=3, max_attempts=3),
        "categorization": QueuePolicy(concurrency=2, max_attempts=3),
        "analysis": QueuePolicy(concurrency=2, max_attempts=2),
        "recommendation": QueuePolicy(concurrency=1, max_attempts=2),
        "trending": QueuePolicy(concurrency=1, max_attempts=2),
        "duplicate": QueuePolicy(concurrency=2, max_attempts=2),
        # batch jobs handle item failures internally
        "batch": QueuePolicy(concurrency=1, max_attempts=1),
    }


class QueueConfig(FrozenModel):
    policies: Dict[str, QueuePolicy] = Field(default_factory=_default_policies)
    batch_size: int = 25
    backlog_high_water: int = 1000
    failed_alert_threshold: int = 100
    health_check_interval_seconds: float = 300.0
    job_timeout_seconds: float = 300.0
    duplicate_threshold: float = 0.9
    estimate_seconds_per_job: float = 2.0
    new_content_priority: int = 2
    feed_wait_seconds: float = 30.0
    feed_cache_ttl_seconds: int = 3600
    job_record_ttl_seconds: int = 24 * 3600
    # finished records kept by the in-memory job store
    finished_history: int = 1000

    @model_validator(mode="after")
    def _validate(self):
        expected = {"embedding", "categorization", "analysis", "recommendation", "trending", "duplicate", "batch"}
        missing = expected - set(self.policies)
        if missing:
            raise ConfigurationError(f"queue policies missing {sorted(missing)}")
        if self.duplicate_threshold < 0.9 or self.duplicate_threshold > 1.0:
            raise ConfigurationError("queue.duplicate_threshold must be within [0.9, 1]")
        if self.batch_size < 1:
            raise ConfigurationError("queue.batch_size must be >= 1")
        return self


class EngineConfig(FrozenModel):
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    categorization: CategorizationConfig = Field(default_factory=CategorizationConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    recommendation: RecommendationConfig = Field(default_factory=RecommendationConfig)
    trending: TrendingConfig = Field(default_factory=TrendingConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)


def load_engine_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> EngineConfig:
    """
    Build the engine configuration once at startup.

    Args:
        path: Optional YAML file with per-engine sections
        overrides: Optional dict merged over the file contents

    Returns:
        Validated EngineConfig

    Raises:
        ConfigurationError: if any section is invalid
    """
    data: Dict[str, Any] = {}
    if path:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read engine config {path}: {e}") from e
        logger.info(f"Loaded engine configuration from {path}")

    for section, values in (overrides or {}).items():
        merged = dict(data.get(section) or {})
        merged.update(values)
        data[section] = merged

    try:
        return EngineConfig(**data)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid engine configuration: {e}") from e

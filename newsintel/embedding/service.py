"""
Embedding service: text in, fixed-dimension vector out.

Requests go through a cache keyed by the cleaned text and model, then down a
provider chain. Each provider is retried with exponential backoff before the
service falls through to the next one; when the whole chain fails the call
raises ``EmbeddingUnavailable``.
"""

import hashlib
import math
import re
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from newsintel.core.cache import Cache
from newsintel.core.concurrency import bounded_map, create_batches, with_timeout
from newsintel.core.config import EmbeddingConfig
from newsintel.core.entities import ItemFilter, ScoredItem, UserPreferences, UserProfile
from newsintel.core.errors import EmbeddingUnavailable, ProviderTimeout, ProviderUnavailable, ValidationError
from newsintel.core.logging import get_logger
from newsintel.core.store import ContentStore
from newsintel.core.telemetry import Telemetry
from newsintel.core.time import Clock
from newsintel.providers.embeddings import EmbeddingProvider

logger = get_logger(__name__)

DISALLOWED_CHARS_RE = re.compile(r"[^\w\s.,!?;:\-]")
WHITESPACE_RE = re.compile(r"\s+")
# Cut at a word boundary only when it keeps most of the allowed text.
WORD_BOUNDARY_RATIO = 0.8
CHARS_PER_TOKEN = 4


@dataclass
class EmbeddingResult:
    vector: List[float]
    token_count: int
    provider: str
    cached: bool = False
    model: str = ""


@dataclass
class BatchEmbeddingResult:
    """Per-position results; failed inputs hold ``None`` and an error message."""
    embeddings: List[Optional[EmbeddingResult]]
    success_count: int
    failure_count: int
    cached_count: int
    total_tokens: int
    processing_time: float
    errors: Dict[int, str] = field(default_factory=dict)

    @property
    def total_items(self) -> int:
        return len(self.embeddings)


def clean_text(text: str) -> str:
    """Collapse whitespace and strip characters outside the allowed set."""
    cleaned = DISALLOWED_CHARS_RE.sub(" ", text or "")
    return WHITESPACE_RE.sub(" ", cleaned).strip()


def truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    boundary = cut.rfind(" ")
    if boundary > max_chars * WORD_BOUNDARY_RATIO:
        return cut[:boundary]
    return cut


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def fit_dimensions(vector: Sequence[float], dimensions: int) -> List[float]:
    """Zero-pad or truncate to ``dimensions`` and re-normalise."""
    v = np.asarray(vector, dtype=float)
    if v.size < dimensions:
        v = np.concatenate([v, np.zeros(dimensions - v.size)])
    elif v.size > dimensions:
        v = v[:dimensions]
    norm = float(np.linalg.norm(v))
    return (v / norm).tolist() if norm > 0 else v.tolist()


class EmbeddingService:
    """Embeds text through a cached provider fallback chain."""

    def __init__(
        self,
        providers: Sequence[EmbeddingProvider],
        store: ContentStore,
        cache: Cache,
        config: Optional[EmbeddingConfig] = None,
        telemetry: Optional[Telemetry] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or EmbeddingConfig()
        self.providers = self._order_providers(list(providers))
        self.store = store
        self.cache = cache
        self.telemetry = telemetry or Telemetry()
        self.clock = clock or Clock()

    def _order_providers(self, providers: List[EmbeddingProvider]) -> List[EmbeddingProvider]:
        order = list(self.config.provider_order)
        if self.config.preferred_provider:
            order = [self.config.preferred_provider] + [p for p in order if p != self.config.preferred_provider]
        rank = {name: i for i, name in enumerate(order)}
        return sorted(providers, key=lambda p: rank.get(p.name, len(rank)))

    @property
    def model_id(self) -> str:
        return self.providers[0].model if self.providers else "none"

    def cache_key(self, cleaned: str, model: Optional[str] = None) -> str:
        """Key for a vector produced by ``model``, the first provider's model by default."""
        digest = hashlib.sha256(f"{cleaned}:{model or self.model_id}".encode("utf-8")).hexdigest()
        return f"embedding:{digest}"

    async def embed(self, text: str) -> EmbeddingResult:
        """
        Embed one text.

        Raises:
            ValidationError: the text is empty after cleaning
            EmbeddingUnavailable: every provider failed
        """
        start_time = time.time()
        cleaned = clean_text(text)
        if not cleaned:
            raise ValidationError("Cannot embed empty text")
        self.telemetry.increment("embedding.requests")

        key = self.cache_key(cleaned)
        cached = await self.cache.get(key)
        if cached:
            self.telemetry.increment("embedding.cache_hits")
            return EmbeddingResult(
                vector=cached["vector"],
                token_count=cached["token_count"],
                provider=cached["provider"],
                cached=True,
                model=cached.get("model", self.model_id),
            )
        self.telemetry.increment("embedding.cache_misses")

        result = await self._embed_with_fallback(cleaned)
        # stored under the producing model; lookups read only the first provider's key
        await self.cache.set(
            self.cache_key(cleaned, result.model),
            {"vector": result.vector, "token_count": result.token_count,
             "provider": result.provider, "model": result.model},
            ttl=self.config.cache_ttl_seconds,
        )
        self.telemetry.timing("embedding.latency", time.time() - start_time)
        return result

    async def _embed_with_fallback(self, cleaned: str) -> EmbeddingResult:
        errors: Dict[str, str] = {}
        for provider in self.providers:
            limit = self.config.max_input_chars.get(provider.name, provider.max_input_chars)
            payload = truncate_text(cleaned, limit)
            try:
                vector = await self._call_with_retry(provider, payload)
            except (ProviderUnavailable, ProviderTimeout) as e:
                errors[provider.name] = str(e)
                self.telemetry.increment("embedding.provider_failures", tags={"provider": provider.name})
                logger.warning(f"Embedding provider {provider.name} failed, trying next: {e}")
                continue
            self.telemetry.increment("embedding.provider_usage", tags={"provider": provider.name})
            return EmbeddingResult(
                vector=fit_dimensions(vector, self.config.dimensions),
                token_count=estimate_tokens(payload),
                provider=provider.name,
                model=provider.model,
            )

        self.telemetry.increment("embedding.failures")
        logger.error(f"All embedding providers failed: {errors}")
        raise EmbeddingUnavailable("All embedding providers failed", {"errors": errors})

    async def _call_with_retry(self, provider: EmbeddingProvider, text: str) -> List[float]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.retry_attempts),
            wait=wait_exponential(multiplier=self.config.backoff_base_seconds, max=30),
            retry=retry_if_exception_type((ProviderUnavailable, ProviderTimeout)),
            reraise=True,
        ):
            with attempt:
                vector = await with_timeout(
                    provider.embed(text), self.config.timeout_seconds, f"{provider.name} embedding"
                )
                if not vector:
                    raise ProviderUnavailable(f"{provider.name} returned an empty vector")
                return vector
        raise EmbeddingUnavailable(f"{provider.name} gave no result")

    async def embed_batch(self, texts: Sequence[str]) -> BatchEmbeddingResult:
        """Embed many texts; one failure never fails the batch."""
        start_time = time.time()
        results: List[Optional[EmbeddingResult]] = [None] * len(texts)
        errors: Dict[int, str] = {}
        positions = list(range(len(texts)))

        for group in create_batches(positions, self.config.batch_size):
            settled = await bounded_map(lambda i: self.embed(texts[i]), group, self.config.max_concurrency)
            for index, outcome in zip(group, settled):
                if outcome.ok:
                    results[index] = outcome.value
                else:
                    errors[index] = str(outcome.error)

        successes = [r for r in results if r is not None]
        batch = BatchEmbeddingResult(
            embeddings=results,
            success_count=len(successes),
            failure_count=len(errors),
            cached_count=sum(1 for r in successes if r.cached),
            total_tokens=sum(r.token_count for r in successes),
            processing_time=time.time() - start_time,
            errors=errors,
        )
        logger.info(
            f"Embedded batch of {batch.total_items}: {batch.success_count} ok, "
            f"{batch.failure_count} failed, {batch.cached_count} cached"
        )
        return batch

    async def save_embeddings(
        self,
        item_id: str,
        content_type: str,
        title_embedding: Optional[List[float]],
        body_embedding: Optional[List[float]],
    ) -> None:
        await self.store.save_embeddings(item_id, title_embedding, body_embedding)
        self.telemetry.increment("embedding.saved", tags={"type": content_type})
        logger.debug(f"Saved embeddings for {content_type} {item_id}")

    @staticmethod
    def preference_text(preferences: UserPreferences) -> str:
        parts = [f"interested in {c}" for c in preferences.categories]
        parts += [f"likes {t}" for t in preferences.tags]
        parts += list(preferences.interests)
        return ". ".join(parts)

    async def generate_user_preference_embedding(
        self, user_id: str, preferences: Optional[UserPreferences] = None
    ) -> Optional[List[float]]:
        """Embed a user's aggregated preference text and store it on the profile."""
        preferences = preferences or await self.store.get_preferences(user_id)
        if preferences is None:
            return None
        text = self.preference_text(preferences)
        if not text:
            return None
        result = await self.embed(text)
        async with self.store.transaction():
            profile = await self.store.get_profile(user_id) or UserProfile(user_id=user_id, preferences=preferences)
            profile.preferences = preferences
            profile.preference_embedding = result.vector
            profile.updated_at = self.clock.now()
            await self.store.save_profile(profile)
        return result.vector

    async def find_similar_content(
        self,
        item_id: str,
        content_type: Optional[str] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        categories: Sequence[str] = (),
        exclude_categories: Sequence[str] = (),
        max_age_days: Optional[float] = None,
        min_quality: Optional[float] = None,
    ) -> List[ScoredItem]:
        """Published, embedded items most similar to ``item_id``."""
        item = await self.store.get_item(item_id)
        if item is None or item.embedding is None:
            return []
        item_filter = ItemFilter(
            content_types=[content_type] if content_type else (),
            categories=categories,
            exclude_categories=exclude_categories,
            published_after=self.clock.now() - timedelta(days=max_age_days) if max_age_days else None,
            min_quality=min_quality,
            exclude_ids=[item_id],
        )
        return await self.store.nearest_neighbors(
            item.embedding,
            item_filter,
            limit=limit or self.config.similar_limit,
            threshold=self.config.similarity_threshold if threshold is None else threshold,
        )

    def get_metrics(self) -> Dict[str, Any]:
        requests = self.telemetry.counter("embedding.requests")
        hits = self.telemetry.counter("embedding.cache_hits")
        return {
            "requests": requests,
            "cache_hits": hits,
            "cache_misses": self.telemetry.counter("embedding.cache_misses"),
            "cache_hit_rate": hits / requests if requests else 0.0,
            "failures": self.telemetry.counter("embedding.failures"),
            "provider_usage": self.telemetry.counters_with_prefix("embedding.provider_usage"),
            "provider_failures": self.telemetry.counters_with_prefix("embedding.provider_failures"),
            "latency": self.telemetry.timing_stats("embedding.latency"),
            "providers": [p.name for p in self.providers],
        }

"""
Categorization engine.

Assigns a primary category from a fixed vocabulary plus up to two additional
categories, tags and keywords. Four methods are available: keyword/pattern
rules, vector-similarity voting over already-categorized items, an LLM call,
and a hybrid that blends them by method reliability.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from newsintel.core.cache import Cache
from newsintel.core.concurrency import bounded_map, gather_settled
from newsintel.core.config import CategorizationConfig
from newsintel.core.entities import ItemFilter
from newsintel.core.errors import ProviderTimeout, ProviderUnavailable, ValidationError
from newsintel.core.logging import get_logger
from newsintel.core.store import ContentStore
from newsintel.core.telemetry import Telemetry
from newsintel.core.text import content_hash, extract_keywords
from newsintel.core.time import Clock
from newsintel.embedding.service import EmbeddingService
from newsintel.providers.llm import LLMProvider, parse_json_response

from .rules import (
    CATEGORY_VOCABULARY,
    DEFAULT_CATEGORY,
    CategorizationMethod,
    CategoryRule,
    TextFeatures,
    extract_domain_tags,
    load_rules,
    select_method,
)

logger = get_logger(__name__)

# Additional categories contribute half their weight to the hybrid blend.
ADDITIONAL_CATEGORY_SHARE = 0.5


@dataclass
class CategoryPrediction:
    category: str
    confidence: float
    reasoning: str = ""


@dataclass
class CategorizationResult:
    primary_category: str
    confidence: float
    method: str
    additional_categories: List[CategoryPrediction] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    processing_time: float = 0.0
    timestamp: str = ""
    reasoning: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CategorizationResult":
        values = dict(data)
        values["additional_categories"] = [
            CategoryPrediction(**c) for c in values.get("additional_categories", [])
        ]
        return cls(**values)


@dataclass
class BatchCategorizationResult:
    """Successful results only; failures are counted."""
    results: List[Tuple[str, CategorizationResult]]
    success_count: int
    failure_count: int
    processing_time: float

    @property
    def total_items(self) -> int:
        return self.success_count + self.failure_count


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class CategorizationEngine:
    """Categorizes text with keyword rules, embeddings, an LLM or a blend of them."""

    def __init__(
        self,
        embedding_service: EmbeddingService,
        store: ContentStore,
        cache: Cache,
        llm: Optional[LLMProvider] = None,
        config: Optional[CategorizationConfig] = None,
        telemetry: Optional[Telemetry] = None,
        clock: Optional[Clock] = None,
        rules: Optional[Sequence[CategoryRule]] = None,
    ):
        self.embedding_service = embedding_service
        self.store = store
        self.cache = cache
        self.llm = llm
        self.config = config or CategorizationConfig()
        self.telemetry = telemetry or Telemetry()
        self.clock = clock or Clock()
        self.rules = [r for r in (rules if rules is not None else load_rules()) if r.enabled]

    @property
    def llm_available(self) -> bool:
        return self.llm is not None and self.llm.provider_name != "none"

    async def categorize(
        self,
        text: str,
        title: Optional[str] = None,
        existing_category: Optional[str] = None,
        method: str = "auto",
        min_confidence: Optional[float] = None,
        include_tags: bool = True,
        use_cache: bool = True,
    ) -> CategorizationResult:
        """
        Categorize a piece of content.

        Results below ``min_confidence`` fall back to ``existing_category``
        (or "general") at a fixed low confidence instead of failing.

        Raises:
            ValidationError: empty text or unknown method
            ProviderUnavailable: an explicitly requested ai/embedding method failed
        """
        start_time = time.time()
        full_text = f"{title}. {text}" if title else (text or "")
        if not full_text.strip():
            raise ValidationError("Cannot categorize empty text")
        try:
            requested = CategorizationMethod(method)
        except ValueError as e:
            raise ValidationError(f"Unknown categorization method: {method}") from e

        # the cache holds the method's own answer; threshold fallback and tags are applied per call
        cache_key = f"categorization:{requested.value}:{content_hash(full_text)}"
        result: Optional[CategorizationResult] = None
        if use_cache:
            cached = await self.cache.get(cache_key)
            if cached:
                logger.debug("Using cached categorization result")
                self.telemetry.increment("categorization.cache_hits")
                result = CategorizationResult.from_dict(cached)

        if result is None:
            result = await self._run_method(requested, full_text)
            if use_cache:
                await self.cache.set(cache_key, result.to_dict(), ttl=self.config.cache_ttl_seconds)

        threshold = self.config.min_confidence if min_confidence is None else min_confidence
        if result.confidence < threshold:
            logger.debug(
                f"Confidence {result.confidence:.2f} below {threshold:.2f}, "
                f"falling back to {existing_category or DEFAULT_CATEGORY}"
            )
            result.primary_category = existing_category if existing_category in CATEGORY_VOCABULARY else DEFAULT_CATEGORY
            result.confidence = self.config.fallback_confidence
            result.additional_categories = [
                c for c in result.additional_categories if c.category != result.primary_category
            ]

        if include_tags:
            result.tags = self.extract_tags(full_text)

        result.processing_time = time.time() - start_time
        result.timestamp = self.clock.now().isoformat()

        self._track(result)
        logger.info(
            f"Categorized as {result.primary_category} ({result.confidence:.2f}) "
            f"via {result.method} in {result.processing_time:.3f}s"
        )
        return result

    async def _run_method(self, method: CategorizationMethod, text: str) -> CategorizationResult:
        if method == CategorizationMethod.AUTO:
            return await self._categorize_best_method(text)
        if method == CategorizationMethod.AI:
            return await self._categorize_with_ai(text)
        if method == CategorizationMethod.EMBEDDING:
            return await self._categorize_with_embeddings(text)
        if method == CategorizationMethod.KEYWORD:
            return self._categorize_with_keywords(text)
        return await self._categorize_with_hybrid(text)

    async def _categorize_best_method(self, text: str) -> CategorizationResult:
        features = TextFeatures.from_text(text, llm_available=self.llm_available)
        method = select_method(features, self.config.long_text_chars)
        if method == CategorizationMethod.AI:
            try:
                return await self._categorize_with_ai(text)
            except (ProviderUnavailable, ProviderTimeout, ValueError) as e:
                logger.warning(f"AI categorization failed, falling back to hybrid: {e}")
                return await self._categorize_with_hybrid(text)
        if method == CategorizationMethod.KEYWORD:
            return self._categorize_with_keywords(text)
        return await self._categorize_with_hybrid(text)

    # --- methods -----------------------------------------------------------

    def _categorize_with_keywords(self, text: str) -> CategorizationResult:
        lowered = text.lower()
        scores: Dict[str, float] = {}
        matched: Dict[str, List[str]] = {}
        for rule in self.rules:
            score = rule.score(text, lowered)
            if score > 0:
                scores[rule.category] = scores.get(rule.category, 0.0) + score
                matched.setdefault(rule.category, []).extend(rule.matched_terms(text, lowered))

        keywords = extract_keywords(text, limit=self.config.max_keywords)
        if not scores:
            return CategorizationResult(
                primary_category=DEFAULT_CATEGORY,
                confidence=self.config.error_confidence,
                method=CategorizationMethod.KEYWORD.value,
                keywords=keywords,
                reasoning="no keyword or pattern matches",
            )

        ranked = sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))[: self.config.max_categories]
        total = sum(scores.values())
        primary, primary_score = ranked[0]
        return CategorizationResult(
            primary_category=primary,
            confidence=_clamp(primary_score / total),
            method=CategorizationMethod.KEYWORD.value,
            additional_categories=[
                CategoryPrediction(
                    category=category,
                    confidence=_clamp(score / total),
                    reasoning=f"Matched keywords: {', '.join(matched[category])}",
                )
                for category, score in ranked[1:]
            ],
            keywords=keywords,
            reasoning=f"Matched keywords: {', '.join(matched[primary])}",
        )

    async def _categorize_with_embeddings(self, text: str) -> CategorizationResult:
        embedding = await self.embedding_service.embed(text)
        neighbours = await self.store.nearest_neighbors(
            embedding.vector,
            ItemFilter(require_category=True, exclude_categories=[DEFAULT_CATEGORY]),
            limit=self.config.similar_items_limit,
            threshold=self.config.similar_items_threshold,
        )
        votes: Dict[str, List[float]] = {}
        for hit in neighbours:
            if hit.item.category in CATEGORY_VOCABULARY:
                votes.setdefault(hit.item.category, []).append(hit.score)

        keywords = extract_keywords(text, limit=self.config.max_keywords)
        if not votes:
            return CategorizationResult(
                primary_category=DEFAULT_CATEGORY,
                confidence=self.config.error_confidence,
                method=CategorizationMethod.EMBEDDING.value,
                keywords=keywords,
                reasoning="no similar categorized content",
            )

        averaged = sorted(
            ((category, sum(s) / len(s), len(s)) for category, s in votes.items()),
            key=lambda row: (-row[1], -row[2], row[0]),
        )
        primary, confidence, count = averaged[0]
        additional = [
            CategoryPrediction(category=c, confidence=_clamp(avg), reasoning=f"Based on {n} similar items")
            for c, avg, n in averaged[1: self.config.max_categories]
            if avg > self.config.additional_category_threshold
        ]
        return CategorizationResult(
            primary_category=primary,
            confidence=_clamp(confidence),
            method=CategorizationMethod.EMBEDDING.value,
            additional_categories=additional,
            keywords=keywords,
            reasoning=f"Based on {count} similar items",
        )

    def _build_prompt(self, text: str) -> str:
        excerpt = text[: self.config.ai_prompt_chars]
        if len(text) > self.config.ai_prompt_chars:
            excerpt += " ..."
        return (
            "TASK: categorize\n"
            f"CATEGORIES: {', '.join(CATEGORY_VOCABULARY)}\n"
            "Categorize the content into one of the categories above. Respond in JSON:\n"
            '{"primaryCategory": "category-name", "additionalCategories": '
            '[{"category": "category-name", "confidence": 0.8, "reasoning": "brief explanation"}], '
            '"confidence": 0.95, "reasoning": "explanation", "keywords": ["keyword1", "keyword2"]}\n'
            "Use only the provided categories, confidence between 0 and 1, "
            "up to 3 additional categories with confidence above 0.5.\n"
            f"TEXT: {excerpt}"
        )

    async def _categorize_with_ai(self, text: str) -> CategorizationResult:
        if not self.llm_available:
            raise ProviderUnavailable("No LLM provider configured for categorization")
        response = await self.llm.complete(self._build_prompt(text), max_tokens=500, temperature=0.3)
        try:
            parsed = parse_json_response(response)
        except ValueError as e:
            raise ProviderUnavailable("Invalid AI categorization response", {"error": str(e)}) from e

        primary = parsed.get("primaryCategory")
        if primary not in CATEGORY_VOCABULARY:
            logger.warning(f"AI returned unknown category {primary!r}, using {DEFAULT_CATEGORY}")
            primary = DEFAULT_CATEGORY
        confidence = _clamp(parsed.get("confidence", 0.5) or 0.5)

        additional = []
        for entry in parsed.get("additionalCategories") or []:
            if isinstance(entry, str):
                entry = {"category": entry, "confidence": confidence / 2}
            category = entry.get("category")
            if category in CATEGORY_VOCABULARY and category != primary:
                additional.append(CategoryPrediction(
                    category=category,
                    confidence=_clamp(entry.get("confidence", 0.5)),
                    reasoning=entry.get("reasoning", ""),
                ))
        return CategorizationResult(
            primary_category=primary,
            confidence=confidence,
            method=CategorizationMethod.AI.value,
            additional_categories=additional[: self.config.max_categories - 1],
            keywords=list(parsed.get("keywords") or [])[: self.config.max_keywords]
            or extract_keywords(text, limit=self.config.max_keywords),
            reasoning=parsed.get("reasoning", ""),
        )

    async def _categorize_with_hybrid(self, text: str) -> CategorizationResult:
        async def keyword_branch() -> CategorizationResult:
            return self._categorize_with_keywords(text)

        settled = await gather_settled([keyword_branch(), self._categorize_with_embeddings(text)])
        results = [s.value for s in settled if s.ok]
        for s in settled:
            if not s.ok:
                logger.warning(f"Hybrid categorization branch failed: {s.error}")

        avg_confidence = sum(r.confidence for r in results) / len(results) if results else 0.0
        if self.llm_available and avg_confidence < self.config.ai_escalation_threshold:
            try:
                results.append(await self._categorize_with_ai(text))
            except (ProviderUnavailable, ProviderTimeout) as e:
                logger.warning(f"AI categorization failed in hybrid mode: {e}")

        return self.combine_results(results, text)

    def combine_results(self, results: Sequence[CategorizationResult], text: str) -> CategorizationResult:
        """Blend method results by confidence times method reliability."""
        keywords = extract_keywords(text, limit=self.config.max_keywords)
        scores: Dict[str, float] = {}
        for result in results:
            weight = self.config.method_weights.get(result.method, 0.5)
            scores[result.primary_category] = scores.get(result.primary_category, 0.0) + result.confidence * weight
            for extra in result.additional_categories:
                scores[extra.category] = (
                    scores.get(extra.category, 0.0) + extra.confidence * weight * ADDITIONAL_CATEGORY_SHARE
                )

        total = sum(scores.values())
        if not results or total <= 0:
            return CategorizationResult(
                primary_category=DEFAULT_CATEGORY,
                confidence=self.config.error_confidence,
                method=CategorizationMethod.HYBRID.value,
                keywords=keywords,
                reasoning="no method produced a result",
            )

        ranked = sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))
        primary, primary_score = ranked[0]
        additional = [
            CategoryPrediction(category=c, confidence=_clamp(s / total), reasoning="Combined from multiple methods")
            for c, s in ranked[1: self.config.max_categories]
            if s / total > self.config.hybrid_additional_share
        ]
        return CategorizationResult(
            primary_category=primary,
            confidence=_clamp(primary_score / total),
            method=CategorizationMethod.HYBRID.value,
            additional_categories=additional,
            keywords=keywords,
            reasoning=f"Combined {', '.join(r.method for r in results)}",
        )

    # --- tags, persistence, batch --------------------------------------------

    def extract_tags(self, text: str) -> List[str]:
        tags = extract_keywords(text, limit=self.config.max_keywords) + extract_domain_tags(text)
        return list(dict.fromkeys(tags))[: self.config.max_tags]

    async def save_categorization(self, item_id: str, content_type: str, result: CategorizationResult) -> None:
        await self.store.save_categorization(
            item_id,
            result.primary_category,
            result.confidence,
            [(c.category, c.confidence) for c in result.additional_categories],
            result.tags,
        )
        logger.debug(
            f"Saved categorization for {content_type} {item_id}: {result.primary_category} "
            f"(+{len(result.additional_categories)} additional)"
        )

    async def categorize_item(self, item_id: str, method: str = "auto") -> CategorizationResult:
        """Categorize a stored item and persist the result."""
        item = await self.store.get_item(item_id)
        if item is None:
            raise ValidationError(f"Unknown content item: {item_id}")
        result = await self.categorize(item.body, title=item.title, existing_category=item.category, method=method)
        await self.save_categorization(item.id, item.content_type, result)
        return result

    async def batch_categorize(
        self,
        items: Sequence[Dict[str, Any]],
        method: str = "auto",
        max_concurrency: Optional[int] = None,
        use_cache: bool = True,
    ) -> BatchCategorizationResult:
        """
        Categorize many items with bounded concurrency.

        Each item is a dict with ``id``, ``content`` and optional ``title`` and
        ``existing_category``. Failed items are omitted from ``results``.
        """
        start_time = time.time()
        limit = max_concurrency or self.config.batch_concurrency
        logger.info(f"Starting batch categorization of {len(items)} items (method={method}, concurrency={limit})")

        async def run(item: Dict[str, Any]) -> Tuple[str, CategorizationResult]:
            result = await self.categorize(
                item.get("content", ""),
                title=item.get("title"),
                existing_category=item.get("existing_category"),
                method=method,
                use_cache=use_cache,
            )
            return item["id"], result

        settled = await bounded_map(run, items, limit)
        results = [s.value for s in settled if s.ok]
        batch = BatchCategorizationResult(
            results=results,
            success_count=len(results),
            failure_count=len(settled) - len(results),
            processing_time=time.time() - start_time,
        )
        logger.info(f"Batch categorization completed: {batch.success_count} ok, {batch.failure_count} failed")
        return batch

    def _track(self, result: CategorizationResult) -> None:
        self.telemetry.increment("categorization.total")
        self.telemetry.increment("categorization.method", tags={"method": result.method})
        self.telemetry.increment("categorization.confidence_sum", result.confidence)
        self.telemetry.timing("categorization.latency", result.processing_time)

    def get_metrics(self) -> Dict[str, Any]:
        total = self.telemetry.counter("categorization.total")
        return {
            "total": total,
            "cache_hits": self.telemetry.counter("categorization.cache_hits"),
            "by_method": self.telemetry.counters_with_prefix("categorization.method"),
            "avg_confidence": self.telemetry.counter("categorization.confidence_sum") / total if total else 0.0,
            "latency": self.telemetry.timing_stats("categorization.latency"),
        }

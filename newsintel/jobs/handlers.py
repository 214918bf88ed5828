"""
Job handlers: the write-path work behind each queue.

Handlers let failures propagate so the queue can retry or dead-letter the
job. Batch jobs are the exception: every item is isolated and failures are
counted in the returned outcome instead of raised.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from newsintel.analyzer import ContentAnalysisEngine
from newsintel.categorizer import CategorizationEngine
from newsintel.core.concurrency import create_batches, gather_settled
from newsintel.core.config import QueueConfig
from newsintel.core.entities import ContentItem, ItemFilter
from newsintel.core.errors import ValidationError
from newsintel.core.logging import get_logger
from newsintel.core.store import ContentStore
from newsintel.core.telemetry import Telemetry
from newsintel.core.text import content_hash
from newsintel.embedding.service import EmbeddingService
from newsintel.recommender import RecommendationEngine, RecommendOptions
from newsintel.trender import TrendingTopicsDetector

from .models import (
    AnalysisPayload,
    BatchItem,
    BatchPayload,
    CategorizationPayload,
    DuplicatePayload,
    EmbeddingPayload,
    Job,
    JobType,
    RecommendationPayload,
    TrendingPayload,
)
from .queue import JobQueue

logger = get_logger(__name__)

NEAR_DUPLICATE_CANDIDATES = 5
MAX_REPORTED_ERRORS = 20


@dataclass
class BatchOutcome:
    """Per-item bookkeeping for a batch job; never raised."""
    operation: str
    total_items: int
    success_count: int = 0
    failure_count: int = 0
    processing_time: float = 0.0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "total_items": self.total_items,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "processing_time": self.processing_time,
            "errors": self.errors[:MAX_REPORTED_ERRORS],
        }


def precedes(candidate: ContentItem, item: ContentItem) -> bool:
    """Original-first ordering used to pick which of two duplicates is kept."""
    return (candidate.published_at, candidate.id) < (item.published_at, item.id)


class JobHandlers:
    """Binds the engines to the job queue."""

    def __init__(
        self,
        store: ContentStore,
        embedding_service: EmbeddingService,
        categorizer: CategorizationEngine,
        analyzer: ContentAnalysisEngine,
        recommender: RecommendationEngine,
        trender: TrendingTopicsDetector,
        config: Optional[QueueConfig] = None,
        telemetry: Optional[Telemetry] = None,
    ):
        self.store = store
        self.embedding_service = embedding_service
        self.categorizer = categorizer
        self.analyzer = analyzer
        self.recommender = recommender
        self.trender = trender
        self.config = config or QueueConfig()
        self.telemetry = telemetry or Telemetry()

    def register(self, queue: JobQueue) -> None:
        queue.register(JobType.EMBEDDING, self.embedding)
        queue.register(JobType.CATEGORIZATION, self.categorization)
        queue.register(JobType.ANALYSIS, self.analysis)
        queue.register(JobType.RECOMMENDATION, self.recommendation)
        queue.register(JobType.TRENDING, self.trending)
        queue.register(JobType.DUPLICATE, self.duplicate)
        queue.register(JobType.BATCH, self.batch)

    # --- single-item jobs --------------------------------------------------

    async def embedding(self, job: Job) -> Dict[str, Any]:
        payload: EmbeddingPayload = job.payload
        if payload.content_type == "user_preference":
            user_id = payload.user_id or payload.content_id
            vector = await self.embedding_service.generate_user_preference_embedding(user_id)
            if vector is None:
                raise ValidationError(f"No preferences to embed for user {user_id}")
            return {"user_id": user_id, "dimensions": len(vector)}

        if not payload.content.strip():
            raise ValidationError(f"Empty content for {payload.content_id}")
        title_vector = None
        if payload.title:
            title_vector = (await self.embedding_service.embed(payload.title)).vector
            job.update_progress(50)
        body = await self.embedding_service.embed(payload.content)
        await self.embedding_service.save_embeddings(
            payload.content_id, payload.content_type, title_vector, body.vector
        )
        return {
            "content_id": payload.content_id,
            "dimensions": len(body.vector),
            "provider": body.provider,
            "cached": body.cached,
        }

    async def categorization(self, job: Job) -> Dict[str, Any]:
        payload: CategorizationPayload = job.payload
        result = await self.categorizer.categorize(
            payload.content,
            title=payload.title,
            existing_category=payload.existing_category,
            method=payload.method,
            use_cache=payload.use_cache,
        )
        await self.categorizer.save_categorization(payload.content_id, payload.content_type, result)
        return result.to_dict()

    async def analysis(self, job: Job) -> Dict[str, Any]:
        payload: AnalysisPayload = job.payload
        result = await self.analyzer.analyze(
            payload.content_id,
            payload.content_type,
            payload.title,
            payload.content,
            include_summary=payload.include_summary,
            include_sentiment=payload.include_sentiment,
            include_quality=payload.include_quality,
            depth=payload.depth,
        )
        await self.analyzer.save_analysis(result)
        return result.to_dict()

    async def recommendation(self, job: Job) -> Dict[str, Any]:
        payload: RecommendationPayload = job.payload
        if not self.recommender.is_initialized:
            await self.recommender.initialize()
        options = RecommendOptions(
            limit=payload.limit,
            exclude_read=payload.exclude_read,
            categories=payload.categories,
            content_types=payload.content_types,
            max_age_days=payload.max_age_days,
            diversity_factor=payload.diversity_factor,
            min_quality=payload.min_quality,
        )
        result = await self.recommender.recommend(payload.user_id, options, use_cache=not payload.refresh_cache)
        return result.to_dict()

    async def trending(self, job: Job) -> Dict[str, Any]:
        payload: TrendingPayload = job.payload
        result = await self.trender.detect_trending(
            time_windows=payload.time_windows,
            min_mentions=payload.min_mentions,
            max_topics=payload.max_topics,
            categories=payload.categories,
            use_cache=not payload.refresh_cache,
        )
        return result.to_dict()

    async def duplicate(self, job: Job) -> Dict[str, Any]:
        payload: DuplicatePayload = job.payload
        return await self.detect_duplicates(payload.content_id, payload.content_type, payload.title, payload.content)

    async def detect_duplicates(
        self, content_id: str, content_type: str, title: str, content: str
    ) -> Dict[str, Any]:
        """
        Mark ``content_id`` as a duplicate of an earlier item, if there is one.

        An exact content-hash match wins; otherwise the nearest embedded
        neighbours at or above the duplicate threshold are checked. Only an
        item published earlier (ties broken by id) that is not itself a
        duplicate can be the original, so of two near-identical items only
        the later one is marked. Nothing is ever deleted.
        """
        item = await self.store.get_item(content_id)
        if item is None:
            raise ValidationError(f"Unknown content item: {content_id}")
        digest = content_hash(f"{title}\n{content}")
        await self.store.set_content_hash(content_id, digest)

        exact = [
            c for c in await self.store.find_by_content_hash(digest, content_type, exclude_id=content_id)
            if not c.duplicate_of and precedes(c, item)
        ]
        similar: List[Dict[str, Any]] = []
        if not exact:
            vector = item.embedding
            if vector is None:
                vector = (await self.embedding_service.embed(content)).vector
            hits = await self.store.nearest_neighbors(
                vector,
                ItemFilter(content_types=[content_type], exclude_ids=[content_id], exclude_duplicates=True),
                limit=NEAR_DUPLICATE_CANDIDATES,
                threshold=self.config.duplicate_threshold,
            )
            similar = [{"id": h.item.id, "similarity": h.score} for h in hits if precedes(h.item, item)]

        duplicate_of = exact[0].id if exact else (similar[0]["id"] if similar else None)
        if duplicate_of:
            await self.store.mark_duplicate(content_id, duplicate_of)
            self.telemetry.increment("duplicates.marked", tags={"kind": "exact" if exact else "near"})
            logger.info(f"Marked {content_type} {content_id} as duplicate of {duplicate_of}")

        return {
            "content_id": content_id,
            "content_hash": digest,
            "exact_duplicates": [c.id for c in exact],
            "similar_content": similar,
            "is_duplicate": bool(exact),
            "is_similar": bool(similar),
            "duplicate_of": duplicate_of,
        }

    # --- batch -------------------------------------------------------------

    async def batch(self, job: Job) -> Dict[str, Any]:
        """
        Process a batch payload in sub-batches.

        Every item is isolated: a failing item is counted and reported but
        never fails the job, so ``success_count + failure_count`` always
        equals ``total_items``.
        """
        payload: BatchPayload = job.payload
        start_time = time.time()
        outcome = BatchOutcome(operation=payload.operation, total_items=len(payload.items))
        size = payload.batch_size or self.config.batch_size
        chunks = create_batches(payload.items, size)
        logger.info(
            f"Batch {job.id}: {payload.operation} over {len(payload.items)} items in {len(chunks)} sub-batches"
        )

        for index, chunk in enumerate(chunks, start=1):
            if payload.operation == "embedding":
                failures = await self._embed_chunk(chunk)
            else:
                failures = await self._run_chunk(self._item_operation(payload.operation, payload.options), chunk)
            outcome.failure_count += len(failures)
            outcome.success_count += len(chunk) - len(failures)
            outcome.errors.extend(failures)
            job.update_progress(100 * index / len(chunks))

        outcome.processing_time = time.time() - start_time
        self.telemetry.increment("batch.items", outcome.total_items, tags={"operation": payload.operation})
        self.telemetry.increment("batch.failures", outcome.failure_count, tags={"operation": payload.operation})
        logger.info(
            f"Batch {job.id} completed: {outcome.success_count}/{outcome.total_items} ok "
            f"in {outcome.processing_time:.2f}s"
        )
        return outcome.to_dict()

    def _item_operation(self, operation: str, options: Dict[str, Any]) -> Callable[[BatchItem], Awaitable[Any]]:
        if operation == "categorization":
            method = options.get("method", "auto")

            async def categorize(item: BatchItem) -> None:
                result = await self.categorizer.categorize(item.content, title=item.title, method=method)
                await self.categorizer.save_categorization(item.content_id, item.content_type, result)
            return categorize

        if operation == "analysis":
            depth = options.get("depth", "standard")

            async def analyze(item: BatchItem) -> None:
                result = await self.analyzer.analyze(
                    item.content_id, item.content_type, item.title, item.content, depth=depth
                )
                await self.analyzer.save_analysis(result)
            return analyze

        async def find_duplicates(item: BatchItem) -> None:
            await self.detect_duplicates(item.content_id, item.content_type, item.title, item.content)
        return find_duplicates

    @staticmethod
    async def _run_chunk(func: Callable[[BatchItem], Awaitable[Any]], chunk: List[BatchItem]) -> List[Dict[str, str]]:
        settled = await gather_settled(func(item) for item in chunk)
        return [
            {"content_id": item.content_id, "error": str(outcome.error)}
            for item, outcome in zip(chunk, settled) if not outcome.ok
        ]

    async def _embed_chunk(self, chunk: List[BatchItem]) -> List[Dict[str, str]]:
        result = await self.embedding_service.embed_batch([item.content for item in chunk])
        embedded = [(item, r) for item, r in zip(chunk, result.embeddings) if r is not None]
        failures = [
            {"content_id": item.content_id, "error": result.errors.get(i, "embedding failed")}
            for i, item in enumerate(chunk) if result.embeddings[i] is None
        ]

        async def save(pair) -> None:
            item, embedding = pair
            await self.embedding_service.save_embeddings(item.content_id, item.content_type, None, embedding.vector)

        settled = await gather_settled(save(pair) for pair in embedded)
        failures += [
            {"content_id": pair[0].content_id, "error": str(outcome.error)}
            for pair, outcome in zip(embedded, settled) if not outcome.ok
        ]
        return failures

"""
Pipeline orchestrator.

Composite operations over the engines and the job queue: new-content
processing, the personalised feed, comprehensive analysis, batch intake and
system metrics. Write work goes through the queue; read paths call the
engines directly and degrade instead of raising.
"""

import asyncio
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from newsintel.analyzer import AnalysisResult, ContentAnalysisEngine
from newsintel.categorizer import CategorizationEngine, CategorizationResult
from newsintel.core.cache import Cache
from newsintel.core.concurrency import gather_settled
from newsintel.core.config import EngineConfig
from newsintel.core.entities import ContentItem
from newsintel.core.errors import QueueStopped, ValidationError
from newsintel.core.logging import get_logger
from newsintel.core.store import ContentStore
from newsintel.core.telemetry import Telemetry
from newsintel.core.time import Clock
from newsintel.embedding.service import EmbeddingService
from newsintel.recommender import RecommendationEngine, RecommendationResult, RecommendOptions
from newsintel.search import SearchFilters, SearchOptions, SearchResponse, SemanticSearchService
from newsintel.trender import TrendingTopicsDetector, TrendingTopicsResult

from .handlers import JobHandlers
from .models import (
    AnalysisPayload,
    BatchItem,
    BatchPayload,
    CategorizationPayload,
    DuplicatePayload,
    EmbeddingPayload,
    JobState,
    JobType,
    RecommendationPayload,
)
from .queue import JobQueue
from .store import create_job_store

logger = get_logger(__name__)

FEED_KEY_PREFIX = "personalized_feed:"
FEED_RECOMMENDATIONS = 30
FEED_DIVERSITY = 0.3
FEED_MAX_AGE_DAYS = 7
FEED_TRENDING_WINDOWS = ("short", "medium")
FEED_TRENDING_TOPICS = 5
FEED_TOPICS_USED = 3
FEED_ARTICLES_PER_TOPIC = 2
FEED_TRENDING_ARTICLES = 5
ANALYTICS_DAYS = 30
SIMILAR_CONTENT_LIMIT = 5

BATCH_OPERATIONS = ("embedding", "categorization", "analysis", "duplicate_detection")


class PipelineOrchestrator:
    """Entry point for every operation the service exposes."""

    def __init__(
        self,
        store: ContentStore,
        cache: Cache,
        embedding_service: EmbeddingService,
        categorizer: CategorizationEngine,
        analyzer: ContentAnalysisEngine,
        search_service: SemanticSearchService,
        recommender: RecommendationEngine,
        trender: TrendingTopicsDetector,
        queue: Optional[JobQueue] = None,
        config: Optional[EngineConfig] = None,
        telemetry: Optional[Telemetry] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.cache = cache
        self.embedding_service = embedding_service
        self.categorizer = categorizer
        self.analyzer = analyzer
        self.search_service = search_service
        self.recommender = recommender
        self.trender = trender
        self.config = config or EngineConfig()
        self.telemetry = telemetry or Telemetry()
        self.clock = clock or Clock()
        self.queue = queue or JobQueue(
            self.config.queue, create_job_store(cache, self.config.queue), self.telemetry, self.clock
        )
        self.handlers = JobHandlers(
            store, embedding_service, categorizer, analyzer, recommender, trender, self.config.queue, self.telemetry
        )
        self.handlers.register(self.queue)
        self.started_at = self.clock.now()
        self.is_running = False

    async def start(self, background_refresh: bool = True, health_checks: bool = True) -> None:
        """Initialise the recommender, requeue stored jobs, start workers and the periodic refresh loops."""
        logger.info("Starting pipeline orchestrator")
        await self.recommender.initialize()
        await self.queue.recover()
        self.queue.start(health_checks=health_checks)
        if background_refresh:
            self.recommender.start_periodic_refresh()
            self.trender.start_periodic_refresh()
        self.started_at = self.clock.now()
        self.is_running = True
        logger.info("Pipeline orchestrator started")

    def _job_id(self, prefix: str, subject: str) -> str:
        return f"{prefix}_{subject}_{int(self.clock.now().timestamp() * 1000)}"

    # --- write paths -------------------------------------------------------

    async def process_new_content(self, item: ContentItem) -> Dict[str, Any]:
        """
        Queue embedding, categorization, analysis and duplicate detection.

        The item is stored first if it is not known yet. All four jobs are
        queued concurrently at the elevated new-content priority.

        Raises:
            QueueStopped: the queue is not accepting jobs
            ValidationError: the item has no body
        """
        if not item.body.strip():
            raise ValidationError(f"Cannot process empty content {item.id}")
        if not self.queue.accepting:
            raise QueueStopped("Job queue is not accepting new jobs")
        if await self.store.get_item(item.id) is None:
            await self.store.upsert_item(item)

        fields = {"content_id": item.id, "content_type": item.content_type, "title": item.title, "content": item.body}
        stages = [
            ("embedding", "embed", JobType.EMBEDDING, EmbeddingPayload(**fields)),
            ("categorization", "categorize", JobType.CATEGORIZATION,
             CategorizationPayload(**fields, existing_category=item.category)),
            ("analysis", "analyze", JobType.ANALYSIS, AnalysisPayload(**fields)),
            ("duplicate_detection", "duplicate", JobType.DUPLICATE, DuplicatePayload(**fields)),
        ]
        priority = self.config.queue.new_content_priority
        jobs = await asyncio.gather(*(
            self.queue.add(job_type, payload, priority=priority, job_id=self._job_id(prefix, item.id))
            for _, prefix, job_type, payload in stages
        ))
        waiting = self.queue.waiting_count()
        estimate = self.clock.now() + timedelta(seconds=waiting * self.config.queue.estimate_seconds_per_job)
        self.telemetry.increment("orchestrator.new_content", tags={"type": item.content_type})
        logger.info(f"Queued {len(jobs)} processing jobs for {item.content_type} {item.id}")
        return {
            "content_id": item.id,
            "jobs": {stage[0]: job.id for stage, job in zip(stages, jobs)},
            "queued": [stage[0] for stage in stages],
            "estimated_completion": estimate.isoformat(),
        }

    async def process_batch_content(
        self,
        items: Sequence[ContentItem],
        operations: Sequence[str] = ("embedding", "categorization", "analysis"),
        priority: int = 1,
        batch_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Queue one batch job per requested operation."""
        unknown = [op for op in operations if op not in BATCH_OPERATIONS]
        if unknown:
            raise ValidationError(f"Unknown batch operations: {unknown}")
        if not items:
            raise ValidationError("Batch has no items")
        batch_items = [
            BatchItem(content_id=i.id, content_type=i.content_type, title=i.title, content=i.body) for i in items
        ]
        stamp = int(self.clock.now().timestamp() * 1000)
        jobs = {}
        for operation in operations:
            payload = BatchPayload(operation=operation, items=batch_items, batch_size=batch_size)
            job = await self.queue.add(JobType.BATCH, payload, priority=priority, job_id=f"batch_{operation}_{stamp}")
            jobs[operation] = job.id
        logger.info(f"Queued {len(jobs)} batch jobs over {len(items)} items")
        return {"batch_jobs": jobs, "total_items": len(items)}

    # --- direct engine calls -------------------------------------------------

    async def search(
        self, query: str, filters: Optional[SearchFilters] = None, options: Optional[SearchOptions] = None
    ) -> SearchResponse:
        return await self.search_service.search(query, filters, options)

    async def recommend(self, user_id: str, options: Optional[RecommendOptions] = None) -> RecommendationResult:
        if not self.recommender.is_initialized:
            await self.recommender.initialize()
        return await self.recommender.recommend(user_id, options, use_cache=True)

    async def analyze(
        self,
        item: ContentItem,
        include_summary: bool = True,
        include_sentiment: bool = True,
        include_quality: bool = True,
        depth: str = "standard",
    ) -> AnalysisResult:
        return await self.analyzer.analyze(
            item.id, item.content_type, item.title, item.body,
            include_summary=include_summary,
            include_sentiment=include_sentiment,
            include_quality=include_quality,
            depth=depth,
        )

    async def categorize(
        self, text: str, title: Optional[str] = None, method: str = "auto", use_cache: bool = True
    ) -> CategorizationResult:
        return await self.categorizer.categorize(text, title=title, method=method, use_cache=use_cache)

    async def detect_trending(
        self,
        time_windows: Optional[Sequence[str]] = None,
        min_mentions: Optional[int] = None,
        max_topics: Optional[int] = None,
        categories: Sequence[str] = (),
        use_cache: bool = True,
    ) -> TrendingTopicsResult:
        return await self.trender.detect_trending(time_windows, min_mentions, max_topics, categories, use_cache)

    async def analyze_comprehensive(self, item: ContentItem) -> Dict[str, Any]:
        """Analysis, hybrid categorization and similar content, each isolated."""
        start_time = time.time()
        analysis, categorization, similar = await gather_settled([
            self.analyze(item, depth="comprehensive"),
            self.categorizer.categorize(item.body, title=item.title, method="hybrid"),
            self.embedding_service.find_similar_content(item.id, limit=SIMILAR_CONTENT_LIMIT),
        ])
        errors = {}
        for name, outcome in (("analysis", analysis), ("categorization", categorization), ("similar_content", similar)):
            if not outcome.ok:
                logger.warning(f"Comprehensive analysis step {name} failed for {item.id}: {outcome.error}")
                errors[name] = str(outcome.error)
        return {
            "content_id": item.id,
            "analysis": analysis.value.to_dict() if analysis.ok else None,
            "categorization": categorization.value.to_dict() if categorization.ok else None,
            "similar_content": [
                {"id": hit.item.id, "title": hit.item.title, "similarity": hit.score} for hit in similar.value
            ] if similar.ok else [],
            "errors": errors,
            "processing_time": time.time() - start_time,
        }

    # --- personalised feed ---------------------------------------------------

    async def personalized_feed(
        self,
        user_id: str,
        refresh: bool = False,
        include_trending: bool = True,
        include_analytics: bool = False,
    ) -> Dict[str, Any]:
        """
        Cached feed for one user.

        Without a cached feed (or when ``refresh`` is set) recommendations
        come from a recommendation job; if the job cannot run or does not
        finish in time the recommender is called directly.
        """
        key = f"{FEED_KEY_PREFIX}{user_id}"
        if not refresh:
            try:
                cached = await self.cache.get(key)
            except Exception as e:
                logger.warning(f"Feed cache read failed for {user_id}: {e}")
                cached = None
            if cached:
                self.telemetry.increment("orchestrator.feed_cache_hits")
                return {**cached, "cached": True}

        start_time = time.time()
        recommendations = await self._feed_recommendations(user_id, refresh)
        feed: Dict[str, Any] = {
            "user_id": user_id,
            "recommendations": recommendations.get("recommendations", []),
            "algorithms": recommendations.get("algorithms", {}),
            "fallback": recommendations.get("fallback", False),
            "trending": [],
            "generated_at": self.clock.now().isoformat(),
        }
        if include_trending:
            seen = {r["item_id"] for r in feed["recommendations"]}
            feed["trending"] = await self._feed_trending(seen)
        if include_analytics:
            try:
                since = self.clock.now() - timedelta(days=ANALYTICS_DAYS)
                feed["analytics"] = await self.store.user_analytics(user_id, since)
            except Exception as e:
                logger.warning(f"User analytics unavailable for {user_id}: {e}")
                feed["analytics"] = None
        feed["processing_time"] = time.time() - start_time

        try:
            await self.cache.set(key, feed, ttl=self.config.queue.feed_cache_ttl_seconds)
        except Exception as e:
            logger.warning(f"Feed cache write failed for {user_id}: {e}")
        self.telemetry.increment("orchestrator.feeds")
        return {**feed, "cached": False}

    async def _feed_recommendations(self, user_id: str, refresh: bool) -> Dict[str, Any]:
        payload = RecommendationPayload(
            user_id=user_id,
            limit=FEED_RECOMMENDATIONS,
            exclude_read=True,
            max_age_days=FEED_MAX_AGE_DAYS,
            diversity_factor=FEED_DIVERSITY,
            refresh_cache=refresh,
        )
        if self.queue.running:
            try:
                job = await self.queue.add(JobType.RECOMMENDATION, payload, priority=1,
                                           job_id=self._job_id("recommend", user_id))
                job = await self.queue.wait_for(job.id, timeout=self.config.queue.feed_wait_seconds)
                if job.state == JobState.COMPLETED:
                    return job.result.data
                logger.warning(f"Recommendation job {job.id} ended in {job.state.value}, calling recommender")
            except (QueueStopped, ValidationError, asyncio.TimeoutError) as e:
                logger.warning(f"Recommendation job unavailable for {user_id} ({type(e).__name__}), "
                               f"calling recommender")
        options = RecommendOptions(
            limit=FEED_RECOMMENDATIONS,
            exclude_read=True,
            max_age_days=FEED_MAX_AGE_DAYS,
            diversity_factor=FEED_DIVERSITY,
        )
        return (await self.recommend(user_id, options)).to_dict()

    async def _feed_trending(self, exclude_ids: set) -> List[Dict[str, Any]]:
        try:
            result = await self.trender.detect_trending(list(FEED_TRENDING_WINDOWS), max_topics=FEED_TRENDING_TOPICS)
        except Exception as e:
            logger.warning(f"Trending section unavailable for feed: {e}")
            return []
        articles = []
        for topic in result.topics[:FEED_TOPICS_USED]:
            picked = [a for a in topic.related_articles if a.id not in exclude_ids][:FEED_ARTICLES_PER_TOPIC]
            for article in picked:
                exclude_ids.add(article.id)
                articles.append({**article.to_dict(), "topic": topic.topic, "trend": topic.trend})
        return articles[:FEED_TRENDING_ARTICLES]

    # --- operations ----------------------------------------------------------

    async def get_metrics(self) -> Dict[str, Any]:
        """Per-engine metrics plus queue statistics and system totals."""
        queue_stats = self.queue.stats()
        search = self.search_service.get_metrics()
        recommendation = self.recommender.get_metrics()
        categorization = self.categorizer.get_metrics()
        analysis = self.analyzer.get_metrics()
        daily_jobs = sum(s["daily_processed"] for s in queue_stats.values())
        latencies = [
            v for v in (
                search["avg_search_time"],
                recommendation["avg_processing_time"],
                analysis["latency"]["avg"],
                categorization["latency"]["avg"],
            ) if v
        ]
        return {
            "embedding": self.embedding_service.get_metrics(),
            "categorization": categorization,
            "analysis": analysis,
            "search": search,
            "recommendation": recommendation,
            "trending": self.trender.get_metrics(),
            "queues": queue_stats,
            "system": {
                "total_daily_requests": daily_jobs + search["daily_queries"] + recommendation["daily_requests"],
                "avg_response_time": sum(latencies) / len(latencies) if latencies else 0.0,
                "uptime_seconds": (self.clock.now() - self.started_at).total_seconds(),
                "accepting_jobs": self.queue.accepting,
                "workers_running": self.queue.running,
            },
        }

    async def health(self) -> Dict[str, Any]:
        store_ok, cache_ok = await asyncio.gather(self.store.ping(), self.cache.ping())
        return {
            "store": store_ok,
            "cache": cache_ok,
            "queue": self.queue.accepting,
            "alerts": self.queue.health_check(),
        }

    async def emergency_stop(self) -> Dict[str, Any]:
        """Halt intake and clear queued jobs; running jobs finish on their own."""
        logger.warning("Emergency stop requested")
        cleared = await self.queue.emergency_stop()
        await asyncio.gather(self.recommender.stop(), self.trender.stop())
        self.is_running = False
        return {"stopped": True, "cleared_jobs": cleared, "stopped_at": self.clock.now().isoformat()}

    async def close(self) -> None:
        logger.info("Closing pipeline orchestrator")
        await self.queue.close()
        await asyncio.gather(self.recommender.stop(), self.trender.stop())
        await self.telemetry.flush()
        await self.cache.close()
        self.is_running = False

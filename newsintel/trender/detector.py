"""
Trending topics detector.

For every requested window the detector pulls recent published content,
maps articles to topics, scores each topic's momentum, classifies its
direction against stored history and finally merges the windows. Every
uncached run appends one history point per (topic, window) and prunes
points older than the retention period.
"""

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from newsintel.core.cache import Cache
from newsintel.core.config import TrendingConfig
from newsintel.core.entities import ContentItem, ItemFilter, TopicHistoryPoint
from newsintel.core.errors import ValidationError
from newsintel.core.logging import get_logger
from newsintel.core.store import ContentStore
from newsintel.core.telemetry import Telemetry
from newsintel.core.time import Clock, hours_between

from .patterns import extract_relevant_keywords, identify_topics, normalize_topic_name, topic_sentiment
from .score import (
    MAX_RELATED_ARTICLES,
    RelatedArticle,
    TrendingTopic,
    engagement,
    find_peaks,
    forecast,
    merge_topics,
    momentum_score,
    relevance_score,
    trend_direction,
)

logger = get_logger(__name__)

INITIAL_TOPIC_KEYWORDS = 5


@dataclass
class TrendingTopicsResult:
    topics: List[TrendingTopic]
    time_windows: Dict[str, Dict[str, str]]
    metadata: Dict[str, Any]
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topics": [t.to_dict() for t in self.topics],
            "time_windows": self.time_windows,
            "metadata": dict(self.metadata),
            "cached": self.cached,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrendingTopicsResult":
        return cls(
            topics=[TrendingTopic.from_dict(t) for t in data["topics"]],
            time_windows=data["time_windows"],
            metadata=data["metadata"],
            cached=data.get("cached", False),
        )


@dataclass
class _TopicBucket:
    topic: str
    keywords: List[str]
    articles: List[ContentItem] = field(default_factory=list)
    total_engagement: int = 0


class TrendingTopicsDetector:
    """Multi-window trending topic detection with history and forecasting."""

    def __init__(
        self,
        store: ContentStore,
        cache: Cache,
        config: Optional[TrendingConfig] = None,
        telemetry: Optional[Telemetry] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.cache = cache
        self.config = config or TrendingConfig()
        self.telemetry = telemetry or Telemetry()
        self.clock = clock or Clock()
        self.last_result: Optional[TrendingTopicsResult] = None
        self._refresh_tasks: List[asyncio.Task] = []

    def cache_key(self, windows: Sequence[str], min_mentions: int, max_topics: int, categories: Sequence[str]) -> str:
        payload = json.dumps(
            {"windows": sorted(windows), "min_mentions": min_mentions, "max_topics": max_topics,
             "categories": sorted(categories)},
            sort_keys=True,
        )
        return f"trending:{hashlib.md5(payload.encode('utf-8')).hexdigest()}"

    async def detect_trending(
        self,
        time_windows: Optional[Sequence[str]] = None,
        min_mentions: Optional[int] = None,
        max_topics: Optional[int] = None,
        categories: Sequence[str] = (),
        use_cache: bool = True,
    ) -> TrendingTopicsResult:
        """
        Detect and merge trending topics for the requested windows.

        Raises:
            ValidationError: for an unknown window name
        """
        windows = list(time_windows or self.config.windows_minutes.keys())
        unknown = [w for w in windows if w not in self.config.windows_minutes]
        if unknown:
            raise ValidationError(f"Unknown time windows: {unknown}", {"windows": windows})
        min_mentions = self.config.min_mentions if min_mentions is None else min_mentions
        max_topics = max_topics or self.config.max_topics
        start_time = time.time()

        key = self.cache_key(windows, min_mentions, max_topics, categories)
        if use_cache:
            cached = await self.cache.get(key)
            if cached:
                self.telemetry.increment("trending.cache_hits")
                result = TrendingTopicsResult.from_dict(cached)
                result.cached = True
                return result

        logger.info(f"Detecting trending topics for windows {windows} (min mentions {min_mentions})")
        now = self.clock.now()
        per_window = []
        history_points = []
        analysed_ids = set()
        for window in windows:
            topics, items = await self._detect_window(window, now, min_mentions, categories)
            per_window.append(topics)
            analysed_ids.update(item.id for item in items)
            history_points += [
                TopicHistoryPoint(topic=t.key, timestamp=now, mentions=t.mentions, score=t.momentum, window=window)
                for t in topics
            ]

        merged = merge_topics(per_window, tuple(self.config.windows_minutes))[:max_topics]
        result = TrendingTopicsResult(
            topics=merged,
            time_windows={
                w: {
                    "start": (now - timedelta(minutes=self.config.windows_minutes[w])).isoformat(),
                    "end": now.isoformat(),
                }
                for w in windows
            },
            metadata={
                "total_articles_analyzed": len(analysed_ids),
                "unique_topics_detected": len(merged),
                "avg_trend_score": sum(t.score for t in merged) / len(merged) if merged else 0.0,
                "processing_time": time.time() - start_time,
                "last_updated": now.isoformat(),
            },
        )

        await self._save_history(history_points, now)
        if use_cache:
            await self.cache.set(key, result.to_dict(), ttl=self.config.cache_ttl_seconds)
        self.last_result = result
        self.telemetry.increment("trending.runs")
        self.telemetry.increment("trending.topics", len(merged))
        self.telemetry.timing("trending.latency", result.metadata["processing_time"])
        logger.info(
            f"Trending detection completed: {len(merged)} topics from {len(analysed_ids)} articles "
            f"in {result.metadata['processing_time']:.3f}s"
        )
        return result

    async def _detect_window(
        self, window: str, now: datetime, min_mentions: int, categories: Sequence[str]
    ) -> Tuple[List[TrendingTopic], List[ContentItem]]:
        minutes = self.config.windows_minutes[window]
        items = await self.store.list_items(
            ItemFilter(categories=categories, published_after=now - timedelta(minutes=minutes)),
            order_by="published_at",
            limit=self.config.max_articles,
        )
        if not items:
            return [], []

        buckets = self.extract_topics(items)
        topics = []
        for key, bucket in buckets.items():
            mentions = len(bucket.articles)
            if mentions < min_mentions:
                continue
            recent = sum(
                1 for a in bucket.articles if hours_between(a.published_at, now) <= self.config.recency_boost_hours
            )
            base = momentum_score(
                mentions,
                bucket.total_engagement,
                self.config.window_multipliers[window],
                recent_articles=recent,
                recency_step=self.config.recency_boost_step,
            )
            history = [
                p for p in await self.store.get_topic_history(
                    key, since=now - timedelta(hours=2 * self.config.direction_lookback_hours.get(window, 24.0))
                )
                if p.window == window
            ]
            direction = trend_direction(
                history,
                base,
                now,
                self.config.direction_lookback_hours.get(window, 24.0),
                self.config.trend_threshold,
            )
            score = base * self.config.direction_multipliers.get(direction, 1.0)
            topics.append(self._build_topic(key, bucket, score, base, direction, window))
        topics.sort(key=lambda t: (-t.score, t.key))
        logger.debug(f"Window {window}: {len(items)} articles, {len(topics)} topics")
        return topics, items

    @staticmethod
    def extract_topics(items: Sequence[ContentItem]) -> Dict[str, _TopicBucket]:
        """Group articles by normalised topic key."""
        buckets: Dict[str, _TopicBucket] = {}
        for item in items:
            text = f"{item.title} {item.body}"
            keywords = extract_relevant_keywords(text)
            item_engagement = engagement(item.views, item.shares)
            for topic in identify_topics(keywords, text):
                key = normalize_topic_name(topic)
                bucket = buckets.get(key)
                if bucket is None:
                    buckets[key] = _TopicBucket(
                        topic=topic,
                        keywords=keywords[:INITIAL_TOPIC_KEYWORDS],
                        articles=[item],
                        total_engagement=item_engagement,
                    )
                    continue
                bucket.articles.append(item)
                bucket.total_engagement += item_engagement
                bucket.keywords = list(dict.fromkeys(bucket.keywords + keywords))[:10]
        return buckets

    def _build_topic(
        self, key: str, bucket: _TopicBucket, score: float, momentum: float, direction: str, window: str
    ) -> TrendingTopic:
        related = sorted(
            (
                RelatedArticle(
                    id=a.id,
                    title=a.title,
                    published_at=a.published_at,
                    source=a.source,
                    relevance_score=round(relevance_score(a.title, a.body, bucket.keywords), 6),
                )
                for a in bucket.articles
            ),
            key=lambda r: (-r.relevance_score, r.id),
        )[: min(MAX_RELATED_ARTICLES, self.config.related_articles_limit)]
        return TrendingTopic(
            topic=bucket.topic,
            key=key,
            keywords=bucket.keywords,
            mentions=len(bucket.articles),
            score=round(score, 6),
            trend=direction,
            time_window=window,
            related_articles=related,
            categories=sorted({a.category for a in bucket.articles if a.category}),
            sentiment=topic_sentiment([f"{a.title} {a.body}" for a in bucket.articles]),
            momentum=round(momentum, 6),
        )

    # --- history ---------------------------------------------------------------

    async def _save_history(self, points: List[TopicHistoryPoint], now: datetime) -> None:
        if points:
            await self.store.append_topic_history(points)
        await self.prune_history(now)

    async def prune_history(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock.now()
        removed = await self.store.prune_topic_history(now - timedelta(days=self.config.history_retention_days))
        if removed:
            logger.info(f"Pruned {removed} topic history points")
        return removed

    async def get_topic_evolution(self, topic: str, days: int = 7) -> Dict[str, Any]:
        """Timeline, peaks and a linear forecast for one topic."""
        key = normalize_topic_name(topic)
        since = self.clock.now() - timedelta(days=days)
        points = await self.store.get_topic_history(key, since=since)

        by_run: Dict[datetime, Dict[str, Any]] = {}
        for p in points:
            entry = by_run.setdefault(p.timestamp, {"timestamp": p.timestamp, "mentions": 0, "score": 0.0})
            entry["mentions"] += p.mentions
            entry["score"] = max(entry["score"], p.score)
        timeline = [by_run[t] for t in sorted(by_run)]
        return {
            "topic": key,
            "timeline": [{**e, "timestamp": e["timestamp"].isoformat()} for e in timeline],
            "peak_moments": [
                {**p, "timestamp": p["timestamp"].isoformat()} for p in find_peaks(timeline)
            ],
            "forecast": forecast([e["score"] for e in timeline]),
        }

    # --- periodic refresh --------------------------------------------------

    def start_periodic_refresh(self) -> None:
        if self._refresh_tasks:
            return
        self._refresh_tasks = [
            asyncio.create_task(self._refresh_loop("detection", self.config.cache_ttl_seconds)),
            asyncio.create_task(self._refresh_loop("prune", 24 * 3600)),
        ]

    async def _refresh_loop(self, name: str, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                if name == "detection":
                    await self.detect_trending(use_cache=False)
                else:
                    await self.prune_history()
            except Exception as e:
                logger.error(f"Periodic trending {name} failed: {e}")
                self.telemetry.increment("trending.refresh_failures", tags={"job": name})

    async def stop(self) -> None:
        for task in self._refresh_tasks:
            task.cancel()
        await asyncio.gather(*self._refresh_tasks, return_exceptions=True)
        self._refresh_tasks = []

    def get_metrics(self) -> Dict[str, Any]:
        topics = self.last_result.topics if self.last_result else []
        categories: Dict[str, int] = {}
        windows: Dict[str, int] = {}
        for t in topics:
            windows[t.time_window] = windows.get(t.time_window, 0) + 1
            for c in t.categories:
                categories[c] = categories.get(c, 0) + 1
        return {
            "runs": self.telemetry.counter("trending.runs"),
            "cache_hits": self.telemetry.counter("trending.cache_hits"),
            "avg_detection_time": self.telemetry.timing_stats("trending.latency")["avg"],
            "total_topics_tracked": len(topics),
            "avg_mentions_per_topic": sum(t.mentions for t in topics) / len(topics) if topics else 0.0,
            "most_trending_topic": topics[0].topic if topics else "",
            "trending_categories": categories,
            "time_window_breakdown": windows,
        }

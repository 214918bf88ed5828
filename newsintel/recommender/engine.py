"""
Recommendation engine.

Three candidate generators run concurrently (content-based, collaborative
and trending), their scores are blended with configured weights, then hard
filters and diversification are applied before truncation. The user-user
and item-item similarity tables and popularity scores are recomputed by
periodic refresh tasks; request handling only reads the last published
snapshot.

This is a read path: any unrecoverable failure produces the popular-recent
fallback feed instead of an error.
"""

import asyncio
import hashlib
import json
import time
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import numpy as np

from newsintel.core.cache import Cache
from newsintel.core.concurrency import gather_settled
from newsintel.core.config import RecommendationConfig
from newsintel.core.entities import ContentItem, ItemFilter, UserProfile
from newsintel.core.logging import get_logger
from newsintel.core.store import ContentStore
from newsintel.core.telemetry import Telemetry
from newsintel.core.time import Clock
from newsintel.embedding.service import EmbeddingService

from .profiles import (
    ProfileCharacteristics,
    characterize,
    compute_behavior_metrics,
    default_profile,
    history_categories,
    user_similarity,
)
from .ranking import (
    Recommendation,
    algorithm_breakdown,
    apply_filters,
    content_match_score,
    diversify,
    merge_candidates,
    normalize_scores,
    popularity_score,
    trending_score,
)

logger = get_logger(__name__)

USER_SIMILARITIES = "user"
ITEM_SIMILARITIES = "item"
FALLBACK_REASON = "Popular recent article"
MAX_SIMILARITY_ITEMS = 1000
COLLABORATIVE_RATING_SCALE = 0.1
RECENT_RATED_PER_USER = 20
READ_HISTORY_LIMIT = 1000


@dataclass
class RecommendOptions:
    limit: Optional[int] = None
    exclude_read: bool = False
    categories: Sequence[str] = ()
    content_types: Sequence[str] = ()
    min_quality: Optional[float] = None
    max_age_days: Optional[float] = None
    diversity_factor: Optional[float] = None


@dataclass
class RecommendationResult:
    user_id: str
    recommendations: List[Recommendation]
    total_count: int
    algorithms: Dict[str, float]
    user_profile: ProfileCharacteristics
    processing_time: float
    refresh_time: datetime
    fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "recommendations": [r.to_dict() for r in self.recommendations],
            "total_count": self.total_count,
            "algorithms": dict(self.algorithms),
            "user_profile": asdict(self.user_profile),
            "processing_time": self.processing_time,
            "refresh_time": self.refresh_time.isoformat(),
            "fallback": self.fallback,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecommendationResult":
        return cls(
            user_id=data["user_id"],
            recommendations=[Recommendation.from_dict(r) for r in data["recommendations"]],
            total_count=data["total_count"],
            algorithms=data["algorithms"],
            user_profile=ProfileCharacteristics(**data["user_profile"]),
            processing_time=data["processing_time"],
            refresh_time=datetime.fromisoformat(data["refresh_time"]),
            fallback=data.get("fallback", False),
        )


@dataclass
class RecommenderSnapshot:
    """Precomputed tables; replaced wholesale on refresh, never mutated."""
    user_similarities: Dict[str, Dict[str, float]] = field(default_factory=dict)
    item_similarities: Dict[str, Dict[str, float]] = field(default_factory=dict)
    popularity: Dict[str, float] = field(default_factory=dict)
    computed_at: Optional[datetime] = None


class RecommendationEngine:
    """Personalised, diversified feeds blended from three candidate sources."""

    def __init__(
        self,
        embedding_service: EmbeddingService,
        store: ContentStore,
        cache: Cache,
        config: Optional[RecommendationConfig] = None,
        telemetry: Optional[Telemetry] = None,
        clock: Optional[Clock] = None,
    ):
        self.embedding_service = embedding_service
        self.store = store
        self.cache = cache
        self.config = config or RecommendationConfig()
        self.telemetry = telemetry or Telemetry()
        self.clock = clock or Clock()
        self.snapshot = RecommenderSnapshot()
        self.is_initialized = False
        self._refresh_tasks: List[asyncio.Task] = []

    async def initialize(self, compute_if_missing: bool = True) -> None:
        """Load persisted similarity tables and popularity scores."""
        user_rows = await self.store.load_similarities(USER_SIMILARITIES)
        item_rows = await self.store.load_similarities(ITEM_SIMILARITIES)
        self.snapshot = RecommenderSnapshot(
            user_similarities=user_rows,
            item_similarities=item_rows,
            popularity=self.snapshot.popularity,
            computed_at=self.clock.now() if user_rows or item_rows else None,
        )
        if compute_if_missing and not (user_rows or item_rows):
            await self.refresh_similarities()
        await self.refresh_popularity()
        self.is_initialized = True
        logger.info(
            f"RecommendationEngine initialized: {len(self.snapshot.user_similarities)} users, "
            f"{len(self.snapshot.item_similarities)} items in similarity tables"
        )

    # --- periodic refresh --------------------------------------------------

    async def refresh_profiles(self) -> int:
        """Recompute history and behaviour for users active in the last day."""
        since = self.clock.now() - timedelta(hours=self.config.active_user_hours)
        users = await self.store.list_active_users(since)
        for user_id in users:
            await self._rebuild_profile(user_id)
        logger.debug(f"Refreshed {len(users)} active user profiles")
        return len(users)

    async def refresh_popularity(self) -> int:
        now = self.clock.now()
        items = await self.store.list_items(ItemFilter(), order_by="engagement", limit=50000)
        popularity = {
            item.id: popularity_score(item, now, self.config.popularity_half_life_days) for item in items
        }
        self.snapshot = RecommenderSnapshot(
            user_similarities=self.snapshot.user_similarities,
            item_similarities=self.snapshot.item_similarities,
            popularity=popularity,
            computed_at=self.snapshot.computed_at,
        )
        logger.debug(f"Loaded popularity scores for {len(popularity)} items")
        return len(popularity)

    async def refresh_similarities(self) -> Dict[str, int]:
        """Recompute and publish the user-user and item-item tables."""
        start_time = time.time()
        user_rows = await self._compute_user_similarities()
        item_rows = await self._compute_item_similarities()
        await self.store.save_similarities(USER_SIMILARITIES, user_rows)
        await self.store.save_similarities(ITEM_SIMILARITIES, item_rows)
        self.snapshot = RecommenderSnapshot(
            user_similarities=user_rows,
            item_similarities=item_rows,
            popularity=self.snapshot.popularity,
            computed_at=self.clock.now(),
        )
        logger.info(
            f"Similarity tables recomputed in {time.time() - start_time:.2f}s: "
            f"{len(user_rows)} users, {len(item_rows)} items"
        )
        return {"users": len(user_rows), "items": len(item_rows)}

    async def _compute_user_similarities(self) -> Dict[str, Dict[str, float]]:
        profiles = []
        for user_id in await self.store.list_users():
            profiles.append(await self.store.get_profile(user_id) or await self._rebuild_profile(user_id))
        rows: Dict[str, Dict[str, float]] = {}
        for a in profiles:
            similar = {}
            for b in profiles:
                if a.user_id == b.user_id:
                    continue
                similarity = user_similarity(a, b)
                if similarity > self.config.user_similarity_threshold:
                    similar[b.user_id] = round(similarity, 6)
            rows[a.user_id] = similar
        return rows

    async def _compute_item_similarities(self) -> Dict[str, Dict[str, float]]:
        items = [
            item for item in await self.store.list_items(ItemFilter(), limit=MAX_SIMILARITY_ITEMS)
            if item.embedding is not None
        ]
        if len(items) < 2:
            return {}
        dimension = Counter(len(item.embedding) for item in items).most_common(1)[0][0]
        items = [item for item in items if len(item.embedding) == dimension]
        matrix = np.array([item.embedding for item in items], dtype=float)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        matrix = matrix / norms
        similarities = matrix @ matrix.T
        rows: Dict[str, Dict[str, float]] = {}
        for i, item in enumerate(items):
            row = {}
            for j in np.nonzero(similarities[i] > self.config.item_similarity_threshold)[0]:
                if i != j:
                    row[items[j].id] = round(float(similarities[i, j]), 6)
            rows[item.id] = row
        return rows

    def start_periodic_refresh(self) -> None:
        """Schedule profile, popularity and similarity refresh loops."""
        if self._refresh_tasks:
            return
        schedule = (
            ("profiles", self.refresh_profiles, self.config.profile_refresh_seconds),
            ("popularity", self.refresh_popularity, self.config.popularity_refresh_seconds),
            ("similarities", self.refresh_similarities, self.config.similarity_refresh_seconds),
        )
        for name, func, interval in schedule:
            self._refresh_tasks.append(asyncio.create_task(self._refresh_loop(name, func, interval)))

    async def _refresh_loop(self, name: str, func: Callable[[], Awaitable[Any]], interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await func()
            except Exception as e:
                logger.error(f"Periodic {name} refresh failed: {e}")
                self.telemetry.increment("recommendation.refresh_failures", tags={"job": name})

    async def stop(self) -> None:
        for task in self._refresh_tasks:
            task.cancel()
        await asyncio.gather(*self._refresh_tasks, return_exceptions=True)
        self._refresh_tasks = []

    # --- profiles --------------------------------------------------------------

    async def _rebuild_profile(self, user_id: str) -> UserProfile:
        preferences = await self.store.get_preferences(user_id)
        history = await self.store.get_reading_history(user_id, limit=self.config.history_limit)
        async with self.store.transaction():
            profile = await self.store.get_profile(user_id) or default_profile(user_id, preferences)
            if preferences is not None and (preferences.categories or preferences.tags or preferences.interests):
                profile.preferences = replace(
                    preferences,
                    categories=list(preferences.categories),
                    tags=list(preferences.tags),
                    sources=list(preferences.sources),
                    interests=list(preferences.interests),
                )
            profile.reading_history = history
            profile.behavior = compute_behavior_metrics(history)
            for category in history_categories(profile):
                if category not in profile.preferences.categories:
                    profile.preferences.categories.append(category)
            profile.updated_at = self.clock.now()
            await self.store.save_profile(profile)
        return profile

    async def get_profile(self, user_id: str) -> UserProfile:
        """Stored profile, created lazily on first request."""
        profile = await self.store.get_profile(user_id)
        if profile is None:
            profile = await self._rebuild_profile(user_id)
            logger.info(f"Created profile for user {user_id}")
        return profile

    async def _preference_embedding(self, profile: UserProfile) -> Optional[List[float]]:
        if profile.preference_embedding is not None:
            return profile.preference_embedding
        try:
            return await self.embedding_service.generate_user_preference_embedding(
                profile.user_id, profile.preferences
            )
        except Exception as e:
            logger.warning(f"Preference embedding unavailable for {profile.user_id}: {e}")
            return None

    # --- candidate generators ------------------------------------------------

    async def content_based_candidates(self, profile: UserProfile, limit: int) -> List[Recommendation]:
        now = self.clock.now()
        embedding = await self._preference_embedding(profile)
        if embedding is None:
            return await self.category_candidates(profile, limit)

        hits = await self.store.nearest_neighbors(
            embedding, ItemFilter(), limit=limit * 3, threshold=self.config.content_similarity_threshold
        )
        weights = self.config.content_score_weights
        recs = []
        for hit in hits:
            rec = Recommendation.from_item(hit.item, now, self.config.content_recency_days)
            match = content_match_score(rec, profile)
            rec.scores["relevance"] = round(hit.score, 6)
            rec.scores["content_based"] = (
                match * weights["similarity"]
                + rec.scores["quality"] * weights["quality"]
                + rec.scores["recency"] * weights["recency"]
            )
            rec.reasoning = [f"Content similarity: {hit.score * 100:.1f}%"]
            if profile.preferences.categories:
                rec.reasoning.append(f"Matches your interests in {', '.join(profile.preferences.categories)}")
            recs.append(rec)
        recs.sort(key=lambda r: (-r.scores["content_based"], r.item_id))
        return recs[:limit]

    async def category_candidates(self, profile: UserProfile, limit: int) -> List[Recommendation]:
        """Recent high-quality items in the user's categories."""
        if not profile.preferences.categories:
            return []
        now = self.clock.now()
        items = await self.store.list_items(
            ItemFilter(
                categories=profile.preferences.categories,
                published_after=now - timedelta(days=self.config.category_fallback_days),
            ),
            order_by="quality",
            limit=limit,
        )
        weights = self.config.content_score_weights
        recs = []
        for item in items:
            rec = Recommendation.from_item(item, now, self.config.content_recency_days)
            rec.scores["content_based"] = (
                content_match_score(rec, profile) * weights["similarity"]
                + rec.scores["quality"] * weights["quality"]
                + rec.scores["recency"] * weights["recency"]
            )
            rec.reasoning = [f"Recent in {item.category}"]
            recs.append(rec)
        return recs

    async def collaborative_candidates(self, profile: UserProfile, limit: int) -> List[Recommendation]:
        """Items rated highly by similar users, plus neighbours of items the user rated highly."""
        snapshot = self.snapshot
        similar = sorted(
            snapshot.user_similarities.get(profile.user_id, {}).items(), key=lambda kv: (-kv[1], kv[0])
        )[: self.config.similar_users]

        scores: Dict[str, float] = defaultdict(float)
        reasons: Dict[str, List[str]] = defaultdict(list)
        if similar:
            ratings = await self.store.get_ratings([u for u, _ in similar], self.config.high_rating)
            for other_id, similarity in similar:
                recent = sorted(ratings.get(other_id, []), key=lambda e: e.timestamp, reverse=True)
                for event in recent[:RECENT_RATED_PER_USER]:
                    scores[event.item_id] += (event.rating or 3) * similarity * COLLABORATIVE_RATING_SCALE
                    reason = f"Liked by similar user ({similarity * 100:.0f}% similarity)"
                    if reason not in reasons[event.item_id]:
                        reasons[event.item_id].append(reason)

        liked = [e for e in profile.reading_history if e.rating is not None and e.rating >= self.config.high_rating]
        for event in liked:
            for neighbour, similarity in snapshot.item_similarities.get(event.item_id, {}).items():
                scores[neighbour] += (event.rating or 3) * similarity * COLLABORATIVE_RATING_SCALE
                if "Similar to an article you rated highly" not in reasons[neighbour]:
                    reasons[neighbour].append("Similar to an article you rated highly")

        if not scores:
            return []
        top = sorted(scores, key=lambda i: (-scores[i], i))[: self.config.collaborative_items * 2]
        now = self.clock.now()
        recs = []
        for item in await self.store.get_items(top):
            if not ItemFilter().matches(item):
                continue
            rec = Recommendation.from_item(item, now, self.config.content_recency_days)
            rec.scores["collaborative"] = scores[item.id]
            rec.reasoning = reasons[item.id]
            recs.append(rec)
        normalize_scores(recs, "collaborative")
        recs.sort(key=lambda r: (-r.scores["collaborative"], r.item_id))
        return recs[:limit]

    async def trending_candidates(self, limit: int) -> List[Recommendation]:
        now = self.clock.now()
        items = await self.store.list_items(
            ItemFilter(published_after=now - timedelta(hours=self.config.trending_window_hours)),
            order_by="engagement",
            limit=limit * 5,
        )
        recs = []
        for item in items:
            if item.views <= self.config.trending_min_views and item.shares <= self.config.trending_min_shares:
                continue
            rec = Recommendation.from_item(item, now, self.config.content_recency_days)
            rec.scores["trending"] = trending_score(item, now)
            rec.reasoning = [
                "Currently trending",
                f"{item.views} views in the last {self.config.trending_window_hours} hours",
            ]
            recs.append(rec)
        normalize_scores(recs, "trending")
        recs.sort(key=lambda r: (-r.scores["trending"], r.item_id))
        return recs[:limit]

    # --- entry point -----------------------------------------------------------

    def cache_key(self, user_id: str, options: RecommendOptions) -> str:
        digest = hashlib.sha1(json.dumps(asdict(options), sort_keys=True, default=str).encode("utf-8")).hexdigest()
        return f"recommendations:{user_id}:{digest[:16]}"

    async def recommend(
        self, user_id: str, options: Optional[RecommendOptions] = None, use_cache: bool = False
    ) -> RecommendationResult:
        """
        Ranked recommendations for one user.

        Never raises for data, cache or provider failures; those produce the
        popular-recent fallback with ``fallback=True``. An engine that was not
        initialized loads its snapshots first.
        """
        if not self.is_initialized:
            try:
                await self.initialize()
            except Exception as e:
                logger.warning(f"RecommendationEngine initialization failed, using current snapshot: {e}")
        options = options or RecommendOptions()
        limit = max(1, min(options.limit or self.config.max_recommendations, 100))
        start_time = time.time()
        key = self.cache_key(user_id, options)
        if use_cache:
            try:
                cached = await self.cache.get(key)
            except Exception as e:
                logger.warning(f"Recommendation cache read failed for {user_id}: {e}")
                cached = None
            if cached:
                self.telemetry.increment("recommendation.cache_hits")
                return RecommendationResult.from_dict(cached)

        logger.info(f"Generating recommendations for user {user_id} (limit {limit})")
        exclude = await self._read_item_ids(user_id) if options.exclude_read else []
        try:
            result = await self._recommend(user_id, options, limit, start_time, exclude)
        except Exception as e:
            logger.error(f"Failed to generate recommendations for {user_id}: {e}")
            self.telemetry.increment("recommendation.failures")
            result = await self.fallback(user_id, limit, start_time, exclude_ids=exclude)

        try:
            await self.cache.set(key, result.to_dict(), ttl=self.config.cache_ttl_seconds)
        except Exception as e:
            logger.warning(f"Recommendation cache write failed for {user_id}: {e}")
        self._track(result)
        logger.info(
            f"Recommendations for {user_id}: {len(result.recommendations)} items "
            f"in {result.processing_time:.3f}s{' (fallback)' if result.fallback else ''}"
        )
        return result

    async def _read_item_ids(self, user_id: str) -> List[str]:
        try:
            history = await self.store.get_reading_history(user_id, limit=READ_HISTORY_LIMIT)
        except Exception as e:
            logger.warning(f"Reading history unavailable for {user_id}: {e}")
            return []
        return [e.item_id for e in history]

    async def _recommend(
        self, user_id: str, options: RecommendOptions, limit: int, start_time: float, exclude: Sequence[str] = ()
    ) -> RecommendationResult:
        profile = await self.get_profile(user_id)
        explicit = await self.store.get_preferences(user_id)
        has_history = bool(await self.store.get_reading_history(user_id, limit=1))
        if not has_history and explicit is None:
            logger.info(f"Cold start for user {user_id}, serving popular recent items")
            return await self.fallback(user_id, limit, start_time, profile, exclude)

        content, collaborative, trending = await gather_settled([
            self.content_based_candidates(profile, limit * 2),
            self.collaborative_candidates(profile, limit * 2),
            self.trending_candidates(limit),
        ])
        candidates = {}
        for name, outcome in (("content_based", content), ("collaborative", collaborative), ("trending", trending)):
            if outcome.ok:
                candidates[name] = outcome.value
            else:
                logger.warning(f"{name} candidates failed for {user_id}: {outcome.error}")
                self.telemetry.increment("recommendation.generator_failures", tags={"generator": name})
                candidates[name] = []

        merged = merge_candidates(candidates, self.config.algorithm_weights)
        now = self.clock.now()
        filtered = apply_filters(
            merged,
            now,
            exclude_ids=exclude,
            categories=options.categories,
            content_types=options.content_types,
            min_quality=options.min_quality,
            max_age_days=options.max_age_days,
        )
        factor = self.config.diversity_factor if options.diversity_factor is None else options.diversity_factor
        ranked = diversify(filtered, factor, self.config.category_penalty, self.config.source_penalty)
        if not ranked:
            return await self.fallback(user_id, limit, start_time, profile, exclude)

        final = ranked[:limit]
        return RecommendationResult(
            user_id=user_id,
            recommendations=final,
            total_count=len(ranked),
            algorithms=algorithm_breakdown(final),
            user_profile=characterize(profile),
            processing_time=time.time() - start_time,
            refresh_time=now,
        )

    async def fallback(
        self,
        user_id: str,
        limit: int,
        start_time: Optional[float] = None,
        profile: Optional[UserProfile] = None,
        exclude_ids: Sequence[str] = (),
    ) -> RecommendationResult:
        """Most popular recent items, widened to any age when the window is empty."""
        now = self.clock.now()
        recs: List[Recommendation] = []
        try:
            items = await self._popular_items(now, limit, exclude_ids)
            for item in items:
                rec = Recommendation.from_item(item, now, self.config.content_recency_days)
                rec.scores["trending"] = 1.0
                rec.scores["final"] = self.snapshot.popularity.get(item.id, float(item.views))
                rec.reasoning = [FALLBACK_REASON]
                recs.append(rec)
        except Exception as e:
            logger.error(f"Fallback recommendations failed for {user_id}: {e}")
        self.telemetry.increment("recommendation.fallbacks")
        return RecommendationResult(
            user_id=user_id,
            recommendations=recs,
            total_count=len(recs),
            algorithms={"content_based": 0.0, "collaborative": 0.0, "trending": 1.0, "diversity": 0.0},
            user_profile=characterize(profile) if profile else ProfileCharacteristics(),
            processing_time=time.time() - start_time if start_time else 0.0,
            refresh_time=now,
            fallback=True,
        )

    async def _popular_items(self, now: datetime, limit: int, exclude_ids: Sequence[str]) -> List[ContentItem]:
        recent = ItemFilter(
            published_after=now - timedelta(hours=self.config.fallback_window_hours),
            exclude_ids=list(exclude_ids),
        )
        items = await self.store.list_items(recent, order_by="views", limit=limit * 3)
        if len(items) < limit:
            seen = {i.id for i in items}
            older = await self.store.list_items(
                ItemFilter(exclude_ids=list(exclude_ids)), order_by="views", limit=limit * 3
            )
            items += [i for i in older if i.id not in seen]
        popularity = self.snapshot.popularity
        items.sort(key=lambda i: (-popularity.get(i.id, float(i.views)), -(i.quality_score or 0.0), i.id))
        return items[:limit]

    # --- metrics --------------------------------------------------------------

    def _track(self, result: RecommendationResult) -> None:
        self.telemetry.increment("recommendation.requests")
        self.telemetry.increment("recommendation.items", len(result.recommendations))
        self.telemetry.timing("recommendation.latency", result.processing_time)
        for name, share in result.algorithms.items():
            self.telemetry.increment("recommendation.algorithm", share, tags={"name": name})

    def get_metrics(self) -> Dict[str, Any]:
        requests = self.telemetry.counter("recommendation.requests")
        breakdown = {
            name: self.telemetry.counter("recommendation.algorithm", tags={"name": name}) / requests
            if requests else 0.0
            for name in ("content_based", "collaborative", "trending", "diversity")
        }
        return {
            "daily_requests": requests,
            "avg_processing_time": self.telemetry.timing_stats("recommendation.latency")["avg"],
            "avg_recommendations_per_user": (
                self.telemetry.counter("recommendation.items") / requests if requests else 0.0
            ),
            "algorithm_breakdown": breakdown,
            "fallbacks": self.telemetry.counter("recommendation.fallbacks"),
            "failures": self.telemetry.counter("recommendation.failures"),
            "cache_hits": self.telemetry.counter("recommendation.cache_hits"),
            "snapshot_computed_at": self.snapshot.computed_at.isoformat() if self.snapshot.computed_at else None,
        }

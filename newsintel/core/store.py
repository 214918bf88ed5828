"""
Content store port and its in-memory implementation.

``ContentStore`` is everything the engines need from the relational store:
item reads, nearest-neighbour and full-text queries, per-engine result
writes, user history, similarity snapshots and topic history. The SQL
implementation lives in ``newsintel.core.repositories``.
"""

import asyncio
import copy
import re
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from .entities import (
    ContentItem,
    ItemFilter,
    ReadingEvent,
    ScoredItem,
    TopicHistoryPoint,
    UserPreferences,
    UserProfile,
)
from .logging import get_logger
from .text import STOP_WORDS, cosine_similarity, tokenize
from .time import ensure_utc

logger = get_logger(__name__)

HIGHLIGHT_START = "<b>"
HIGHLIGHT_END = "</b>"
SNIPPET_WORDS = 30

ORDERINGS = ("published_at", "quality", "views", "engagement")


class ContentStore(ABC):
    """Async data port used by every engine."""

    # --- items -----------------------------------------------------------

    @abstractmethod
    async def upsert_item(self, item: ContentItem) -> None:
        pass

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[ContentItem]:
        pass

    @abstractmethod
    async def get_items(self, item_ids: Sequence[str]) -> List[ContentItem]:
        pass

    @abstractmethod
    async def list_items(
        self,
        item_filter: Optional[ItemFilter] = None,
        order_by: str = "published_at",
        limit: int = 100,
    ) -> List[ContentItem]:
        """Items matching the filter, newest/best first according to ``order_by``."""

    @abstractmethod
    async def nearest_neighbors(
        self,
        vector: Sequence[float],
        item_filter: Optional[ItemFilter] = None,
        limit: int = 10,
        threshold: float = 0.0,
    ) -> List[ScoredItem]:
        """Published, embedded items with cosine similarity >= threshold, most similar first."""

    @abstractmethod
    async def fulltext_search(
        self,
        query: str,
        item_filter: Optional[ItemFilter] = None,
        limit: int = 20,
        offset: int = 0,
        phrase: bool = False,
    ) -> Tuple[List[ScoredItem], int]:
        """Ranked lexical matches with highlights, plus the total match count."""

    # --- engine result writes ---------------------------------------------

    @abstractmethod
    async def save_embeddings(
        self, item_id: str, title_embedding: Optional[List[float]], body_embedding: Optional[List[float]]
    ) -> None:
        pass

    @abstractmethod
    async def save_categorization(
        self,
        item_id: str,
        category: str,
        confidence: float,
        additional: Sequence[Tuple[str, float]],
        tags: Sequence[str],
    ) -> None:
        pass

    @abstractmethod
    async def save_analysis(
        self, item_id: str, quality_score: float, sentiment_score: float, analysis: Dict[str, Any]
    ) -> None:
        pass

    @abstractmethod
    async def set_content_hash(self, item_id: str, digest: str) -> None:
        pass

    @abstractmethod
    async def find_by_content_hash(
        self, digest: str, content_type: Optional[str] = None, exclude_id: Optional[str] = None
    ) -> List[ContentItem]:
        pass

    @abstractmethod
    async def mark_duplicate(self, item_id: str, duplicate_of: str) -> None:
        pass

    # --- users -----------------------------------------------------------

    @abstractmethod
    async def get_preferences(self, user_id: str) -> Optional[UserPreferences]:
        pass

    @abstractmethod
    async def save_preferences(self, user_id: str, preferences: UserPreferences) -> None:
        pass

    @abstractmethod
    async def get_reading_history(self, user_id: str, limit: int = 100) -> List[ReadingEvent]:
        """Most recent first."""

    @abstractmethod
    async def record_reading(self, user_id: str, event: ReadingEvent) -> None:
        pass

    @abstractmethod
    async def list_users(self) -> List[str]:
        pass

    @abstractmethod
    async def list_active_users(self, since: datetime) -> List[str]:
        pass

    @abstractmethod
    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        pass

    @abstractmethod
    async def save_profile(self, profile: UserProfile) -> None:
        pass

    @abstractmethod
    async def get_ratings(self, user_ids: Sequence[str], min_rating: float) -> Dict[str, List[ReadingEvent]]:
        """Reading events rated at least ``min_rating``, grouped by user."""

    # --- similarity snapshots ---------------------------------------------

    @abstractmethod
    async def save_similarities(self, kind: str, rows: Dict[str, Dict[str, float]]) -> None:
        pass

    @abstractmethod
    async def load_similarities(self, kind: str) -> Dict[str, Dict[str, float]]:
        pass

    # --- topic history ----------------------------------------------------

    @abstractmethod
    async def append_topic_history(self, points: Sequence[TopicHistoryPoint]) -> None:
        pass

    @abstractmethod
    async def get_topic_history(self, topic: str, since: Optional[datetime] = None) -> List[TopicHistoryPoint]:
        """Oldest first."""

    @abstractmethod
    async def prune_topic_history(self, before: datetime) -> int:
        pass

    # --- misc --------------------------------------------------------------

    @abstractmethod
    def transaction(self):
        """Async context manager; writes inside it commit or roll back together."""

    async def user_analytics(self, user_id: str, since: datetime) -> Dict[str, Any]:
        history = [e for e in await self.get_reading_history(user_id, limit=1000) if e.timestamp >= since]
        ratings = [e.rating for e in history if e.rating is not None]
        read_times = [e.read_time for e in history if e.read_time is not None]
        return {
            "total_reads": len(history),
            "avg_rating": sum(ratings) / len(ratings) if ratings else None,
            "categories_explored": len({e.category for e in history if e.category}),
            "avg_read_time": sum(read_times) / len(read_times) if read_times else None,
        }

    async def ping(self) -> bool:
        return True


def _highlight(text: str, terms: Sequence[str]) -> str:
    if not terms:
        return text
    pattern = re.compile(r"\b(" + "|".join(re.escape(t) for t in terms) + r")\b", re.IGNORECASE)
    return pattern.sub(lambda m: f"{HIGHLIGHT_START}{m.group(0)}{HIGHLIGHT_END}", text)


def _snippet(text: str, terms: Sequence[str]) -> str:
    words = text.split()
    lowered = [w.lower().strip(".,!?;:\"'()") for w in words]
    start = 0
    for i, w in enumerate(lowered):
        if any(w == t or w.startswith(t) for t in terms):
            start = max(0, i - SNIPPET_WORDS // 3)
            break
    return _highlight(" ".join(words[start:start + SNIPPET_WORDS]), terms)


class InMemoryStore(ContentStore):
    """Dict-backed store used for tests and local development."""

    def __init__(self):
        self.items: Dict[str, ContentItem] = {}
        self.preferences: Dict[str, UserPreferences] = {}
        self.history: Dict[str, List[ReadingEvent]] = defaultdict(list)
        self.profiles: Dict[str, UserProfile] = {}
        self.similarities: Dict[str, Dict[str, Dict[str, float]]] = {}
        self.topic_history: Dict[str, List[TopicHistoryPoint]] = defaultdict(list)
        self.additional_categories: Dict[str, List[Tuple[str, float]]] = {}
        self.analyses: Dict[str, Dict[str, Any]] = {}
        self.category_confidence: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _state(self) -> Tuple[Any, ...]:
        return (self.items, self.preferences, self.history, self.profiles, self.similarities,
                self.topic_history, self.additional_categories, self.analyses, self.category_confidence)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryStore"]:
        async with self._lock:
            saved = copy.deepcopy(self._state())
            try:
                yield self
            except BaseException:
                (self.items, self.preferences, self.history, self.profiles, self.similarities,
                 self.topic_history, self.additional_categories, self.analyses,
                 self.category_confidence) = saved
                raise

    # --- items -----------------------------------------------------------

    async def upsert_item(self, item: ContentItem) -> None:
        self.items[item.id] = item

    async def get_item(self, item_id: str) -> Optional[ContentItem]:
        return self.items.get(item_id)

    async def get_items(self, item_ids: Sequence[str]) -> List[ContentItem]:
        return [self.items[i] for i in item_ids if i in self.items]

    def _filtered(self, item_filter: Optional[ItemFilter]) -> List[ContentItem]:
        item_filter = item_filter or ItemFilter()
        return [item for item in self.items.values() if item_filter.matches(item)]

    async def list_items(
        self,
        item_filter: Optional[ItemFilter] = None,
        order_by: str = "published_at",
        limit: int = 100,
    ) -> List[ContentItem]:
        if order_by not in ORDERINGS:
            raise ValueError(f"Unknown ordering: {order_by}")
        items = self._filtered(item_filter)
        keys = {
            "published_at": lambda i: (i.published_at, i.id),
            "quality": lambda i: (i.quality_score or 0.0, i.published_at),
            "views": lambda i: (i.views, i.quality_score or 0.0),
            "engagement": lambda i: (i.views + 5 * i.shares, i.published_at),
        }
        items.sort(key=keys[order_by], reverse=True)
        return items[:limit]

    async def nearest_neighbors(
        self,
        vector: Sequence[float],
        item_filter: Optional[ItemFilter] = None,
        limit: int = 10,
        threshold: float = 0.0,
    ) -> List[ScoredItem]:
        hits = []
        for item in self._filtered(item_filter):
            if not item.searchable:
                continue
            similarity = cosine_similarity(vector, item.embedding)
            if similarity >= threshold:
                hits.append(ScoredItem(item=item, score=similarity))
        hits.sort(key=lambda h: (-h.score, h.item.id))
        return hits[:limit]

    async def fulltext_search(
        self,
        query: str,
        item_filter: Optional[ItemFilter] = None,
        limit: int = 20,
        offset: int = 0,
        phrase: bool = False,
    ) -> Tuple[List[ScoredItem], int]:
        cleaned = query.replace('"', " ").strip()
        terms = [t for t in tokenize(cleaned) if t not in STOP_WORDS] or tokenize(cleaned)
        if not terms:
            return [], 0
        phrase_text = " ".join(tokenize(cleaned))
        hits = []
        for item in self._filtered(item_filter):
            title_tokens = tokenize(item.title)
            body_tokens = tokenize(item.body)
            if phrase:
                title_has = phrase_text in " ".join(title_tokens)
                body_has = phrase_text in " ".join(body_tokens)
                if not (title_has or body_has):
                    continue
                rank = 0.6 * title_has + 0.4 * body_has
            else:
                title_set, body_set = set(title_tokens), set(body_tokens)
                matched = [t for t in terms if t in title_set or t in body_set]
                if not matched:
                    continue
                coverage = len(matched) / len(terms)
                title_cov = sum(1 for t in terms if t in title_set) / len(terms)
                rank = 0.7 * coverage + 0.3 * title_cov
            hits.append(ScoredItem(
                item=item,
                score=min(1.0, rank),
                title_highlight=_highlight(item.title, terms),
                body_highlight=_snippet(item.body, terms),
            ))
        hits.sort(key=lambda h: (-h.score, -h.item.published_at.timestamp(), h.item.id))
        return hits[offset:offset + limit], len(hits)

    # --- engine result writes ---------------------------------------------

    async def save_embeddings(self, item_id, title_embedding, body_embedding) -> None:
        item = self.items.get(item_id)
        if item is None:
            logger.warning(f"save_embeddings: unknown item {item_id}")
            return
        item.title_embedding = list(title_embedding) if title_embedding is not None else None
        item.body_embedding = list(body_embedding) if body_embedding is not None else None

    async def save_categorization(self, item_id, category, confidence, additional, tags) -> None:
        item = self.items.get(item_id)
        if item is None:
            logger.warning(f"save_categorization: unknown item {item_id}")
            return
        item.category = category
        item.tags = list(tags)
        self.category_confidence[item_id] = confidence
        self.additional_categories[item_id] = list(additional)

    async def save_analysis(self, item_id, quality_score, sentiment_score, analysis) -> None:
        item = self.items.get(item_id)
        if item is None:
            logger.warning(f"save_analysis: unknown item {item_id}")
            return
        item.quality_score = quality_score
        item.sentiment_score = sentiment_score
        self.analyses[item_id] = analysis

    async def set_content_hash(self, item_id: str, digest: str) -> None:
        if item_id in self.items:
            self.items[item_id].content_hash = digest

    async def find_by_content_hash(self, digest, content_type=None, exclude_id=None) -> List[ContentItem]:
        return [
            item for item in self.items.values()
            if item.content_hash == digest
            and not item.deleted
            and item.id != exclude_id
            and (content_type is None or item.content_type == content_type)
        ][:5]

    async def mark_duplicate(self, item_id: str, duplicate_of: str) -> None:
        if item_id in self.items:
            self.items[item_id].duplicate_of = duplicate_of

    # --- users -----------------------------------------------------------

    async def get_preferences(self, user_id: str) -> Optional[UserPreferences]:
        return self.preferences.get(user_id)

    async def save_preferences(self, user_id: str, preferences: UserPreferences) -> None:
        self.preferences[user_id] = preferences

    async def get_reading_history(self, user_id: str, limit: int = 100) -> List[ReadingEvent]:
        events = sorted(self.history.get(user_id, []), key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

    async def record_reading(self, user_id: str, event: ReadingEvent) -> None:
        self.history[user_id].append(event)

    async def list_users(self) -> List[str]:
        return sorted(set(self.preferences) | set(self.history) | set(self.profiles))

    async def list_active_users(self, since: datetime) -> List[str]:
        since = ensure_utc(since)
        return sorted(u for u, events in self.history.items() if any(e.timestamp >= since for e in events))

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        return self.profiles.get(user_id)

    async def save_profile(self, profile: UserProfile) -> None:
        self.profiles[profile.user_id] = profile

    async def get_ratings(self, user_ids: Sequence[str], min_rating: float) -> Dict[str, List[ReadingEvent]]:
        return {
            u: [e for e in self.history.get(u, []) if e.rating is not None and e.rating >= min_rating]
            for u in user_ids
        }

    # --- similarity snapshots ---------------------------------------------

    async def save_similarities(self, kind: str, rows: Dict[str, Dict[str, float]]) -> None:
        self.similarities[kind] = copy.deepcopy(rows)

    async def load_similarities(self, kind: str) -> Dict[str, Dict[str, float]]:
        return copy.deepcopy(self.similarities.get(kind, {}))

    # --- topic history ----------------------------------------------------

    async def append_topic_history(self, points: Sequence[TopicHistoryPoint]) -> None:
        for point in points:
            self.topic_history[point.topic].append(point)

    async def get_topic_history(self, topic: str, since: Optional[datetime] = None) -> List[TopicHistoryPoint]:
        points = self.topic_history.get(topic, [])
        if since is not None:
            since = ensure_utc(since)
            points = [p for p in points if p.timestamp >= since]
        return sorted(points, key=lambda p: p.timestamp)

    async def prune_topic_history(self, before: datetime) -> int:
        before = ensure_utc(before)
        removed = 0
        for topic in list(self.topic_history):
            kept = [p for p in self.topic_history[topic] if p.timestamp >= before]
            removed += len(self.topic_history[topic]) - len(kept)
            if kept:
                self.topic_history[topic] = kept
            else:
                del self.topic_history[topic]
        return removed

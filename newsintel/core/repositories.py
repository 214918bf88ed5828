"""
PostgreSQL implementation of the content store.

Vectors are stored as ``ARRAY(Float)`` columns and ranked with numpy after
the hard filters run in SQL; lexical search uses PostgreSQL full text
(``to_tsvector`` / ``ts_rank`` / ``ts_headline``).
"""

import contextvars
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import numpy as np
from sqlalchemy import and_, delete, func, literal, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .entities import (
    ContentItem,
    ItemFilter,
    ReadingEvent,
    ScoredItem,
    TopicHistoryPoint,
    UserPreferences,
    UserProfile,
)
from .errors import TransientStoreError
from .logging import get_logger
from .models import (
    ContentAnalysisRow,
    ContentCategoryRow,
    ContentItemRow,
    ReadingHistoryRow,
    SimilarityRow,
    TopicHistoryRow,
    UserPreferenceRow,
    UserProfileRow,
)
from .store import ORDERINGS, ContentStore
from .time import ensure_utc, utc_now

logger = get_logger(__name__)

TS_CONFIG = "english"
HEADLINE_OPTIONS = "StartSel=<b>, StopSel=</b>, MaxWords=30, MinWords=10"
# Upper bound of rows pulled for in-process vector ranking.
VECTOR_SCAN_LIMIT = 5000

_current_session: contextvars.ContextVar[Optional[AsyncSession]] = contextvars.ContextVar(
    "newsintel_store_session", default=None
)


def _row_to_item(row: ContentItemRow) -> ContentItem:
    return ContentItem(
        id=row.id,
        title=row.title,
        body=row.body,
        content_type=row.content_type,
        published_at=row.published_at or utc_now(),
        source=row.source,
        author=row.author,
        url=row.url,
        category=row.category,
        tags=list(row.tags or []),
        title_embedding=list(row.title_embedding) if row.title_embedding is not None else None,
        body_embedding=list(row.body_embedding) if row.body_embedding is not None else None,
        quality_score=row.quality_score,
        sentiment_score=row.sentiment_score,
        views=row.views or 0,
        shares=row.shares or 0,
        comments=row.comments or 0,
        likes=row.likes or 0,
        status=row.status,
        deleted=row.deleted_at is not None,
        content_hash=row.content_hash,
        duplicate_of=row.duplicate_of,
    )


def _filter_clauses(item_filter: Optional[ItemFilter]) -> List[Any]:
    f = item_filter or ItemFilter()
    clauses: List[Any] = [ContentItemRow.status == "published", ContentItemRow.deleted_at.is_(None)]
    if f.exclude_ids:
        clauses.append(ContentItemRow.id.notin_(list(f.exclude_ids)))
    if f.categories:
        clauses.append(ContentItemRow.category.in_(list(f.categories)))
    if f.exclude_categories:
        clauses.append(or_(ContentItemRow.category.is_(None), ContentItemRow.category.notin_(list(f.exclude_categories))))
    if f.require_category:
        clauses.append(ContentItemRow.category.isnot(None))
    if f.sources:
        clauses.append(ContentItemRow.source.in_(list(f.sources)))
    if f.content_types:
        clauses.append(ContentItemRow.content_type.in_(list(f.content_types)))
    if f.authors:
        clauses.append(ContentItemRow.author.in_(list(f.authors)))
    if f.published_after:
        clauses.append(ContentItemRow.published_at >= ensure_utc(f.published_after))
    if f.published_before:
        clauses.append(ContentItemRow.published_at <= ensure_utc(f.published_before))
    if f.min_quality is not None:
        clauses.append(func.coalesce(ContentItemRow.quality_score, 0.0) >= f.min_quality)
    if f.exclude_duplicates:
        clauses.append(ContentItemRow.duplicate_of.is_(None))
    return clauses


class SQLStore(ContentStore):
    """``ContentStore`` over an async SQLAlchemy sessionmaker."""

    def __init__(self, sessionmaker: async_sessionmaker):
        self.sessionmaker = sessionmaker

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        shared = _current_session.get()
        if shared is not None:
            yield shared
            return
        try:
            async with self.sessionmaker() as session:
                yield session
                await session.commit()
        except OperationalError as e:
            raise TransientStoreError("Database operation failed", {"error": str(e)}) from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SQLStore"]:
        if _current_session.get() is not None:
            yield self
            return
        try:
            async with self.sessionmaker() as session:
                token = _current_session.set(session)
                try:
                    async with session.begin():
                        yield self
                finally:
                    _current_session.reset(token)
        except OperationalError as e:
            raise TransientStoreError("Database transaction failed", {"error": str(e)}) from e

    async def ping(self) -> bool:
        try:
            async with self._session() as session:
                await session.execute(select(literal(1)))
            return True
        except TransientStoreError as e:
            logger.warning(f"Database ping failed: {e}")
            return False

    # --- items -----------------------------------------------------------

    async def upsert_item(self, item: ContentItem) -> None:
        values = {
            "id": item.id,
            "content_type": item.content_type,
            "title": item.title,
            "body": item.body,
            "url": item.url,
            "source": item.source,
            "author": item.author,
            "published_at": item.published_at,
            "status": item.status,
            "deleted_at": utc_now() if item.deleted else None,
            "category": item.category,
            "tags": list(item.tags),
            "title_embedding": item.title_embedding,
            "body_embedding": item.body_embedding,
            "quality_score": item.quality_score,
            "sentiment_score": item.sentiment_score,
            "views": item.views,
            "shares": item.shares,
            "comments": item.comments,
            "likes": item.likes,
            "content_hash": item.content_hash,
            "duplicate_of": item.duplicate_of,
        }
        stmt = insert(ContentItemRow).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ContentItemRow.id],
            set_={k: stmt.excluded[k] for k in values if k != "id"},
        )
        async with self._session() as session:
            await session.execute(stmt)

    async def get_item(self, item_id: str) -> Optional[ContentItem]:
        async with self._session() as session:
            row = await session.get(ContentItemRow, item_id)
            return _row_to_item(row) if row else None

    async def get_items(self, item_ids: Sequence[str]) -> List[ContentItem]:
        if not item_ids:
            return []
        async with self._session() as session:
            result = await session.execute(select(ContentItemRow).where(ContentItemRow.id.in_(list(item_ids))))
            by_id = {row.id: _row_to_item(row) for row in result.scalars()}
        return [by_id[i] for i in item_ids if i in by_id]

    async def list_items(
        self,
        item_filter: Optional[ItemFilter] = None,
        order_by: str = "published_at",
        limit: int = 100,
    ) -> List[ContentItem]:
        if order_by not in ORDERINGS:
            raise ValueError(f"Unknown ordering: {order_by}")
        orderings = {
            "published_at": (ContentItemRow.published_at.desc(), ContentItemRow.id.desc()),
            "quality": (func.coalesce(ContentItemRow.quality_score, 0.0).desc(), ContentItemRow.published_at.desc()),
            "views": (ContentItemRow.views.desc(), func.coalesce(ContentItemRow.quality_score, 0.0).desc()),
            "engagement": ((ContentItemRow.views + 5 * ContentItemRow.shares).desc(), ContentItemRow.published_at.desc()),
        }
        stmt = select(ContentItemRow).where(and_(*_filter_clauses(item_filter)))
        if item_filter and item_filter.tags:
            # JSON tag overlap is checked in Python below.
            stmt = stmt.order_by(*orderings[order_by]).limit(limit * 5)
        else:
            stmt = stmt.order_by(*orderings[order_by]).limit(limit)
        async with self._session() as session:
            result = await session.execute(stmt)
            items = [_row_to_item(row) for row in result.scalars()]
        if item_filter and item_filter.tags:
            items = [i for i in items if set(item_filter.tags) & set(i.tags)]
        return items[:limit]

    async def nearest_neighbors(
        self,
        vector: Sequence[float],
        item_filter: Optional[ItemFilter] = None,
        limit: int = 10,
        threshold: float = 0.0,
    ) -> List[ScoredItem]:
        embedding_col = func.coalesce(ContentItemRow.body_embedding, ContentItemRow.title_embedding)
        stmt = (
            select(ContentItemRow)
            .where(and_(*_filter_clauses(item_filter), embedding_col.isnot(None)))
            .order_by(ContentItemRow.published_at.desc())
            .limit(VECTOR_SCAN_LIMIT)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            items = [_row_to_item(row) for row in result.scalars()]
        if item_filter and item_filter.tags:
            items = [i for i in items if set(item_filter.tags) & set(i.tags)]

        query = np.asarray(vector, dtype=float)
        query_norm = float(np.linalg.norm(query))
        if not items or query_norm == 0.0:
            return []
        candidates = [i for i in items if len(i.embedding) == query.size]
        if not candidates:
            return []
        matrix = np.asarray([i.embedding for i in candidates], dtype=float)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0.0] = np.inf
        scores = matrix @ query / (norms * query_norm)

        hits = [
            ScoredItem(item=item, score=float(score))
            for item, score in zip(candidates, scores)
            if score >= threshold
        ]
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
        if not cleaned:
            return [], 0
        if phrase:
            ts_query = func.phraseto_tsquery(TS_CONFIG, cleaned)
        else:
            # OR semantics over the query terms
            terms = re.findall(r"\w+", cleaned)
            if not terms:
                return [], 0
            ts_query = func.to_tsquery(TS_CONFIG, " | ".join(f"'{t}'" for t in terms))
        document = func.setweight(func.to_tsvector(TS_CONFIG, ContentItemRow.title), "A").op("||")(
            func.setweight(func.to_tsvector(TS_CONFIG, ContentItemRow.body), "B")
        )
        matches = document.op("@@")(ts_query)
        rank = func.ts_rank(document, ts_query).label("rank")
        clauses = _filter_clauses(item_filter) + [matches]

        stmt = (
            select(
                ContentItemRow,
                rank,
                func.ts_headline(TS_CONFIG, ContentItemRow.title, ts_query, HEADLINE_OPTIONS).label("title_hl"),
                func.ts_headline(TS_CONFIG, ContentItemRow.body, ts_query, HEADLINE_OPTIONS).label("body_hl"),
            )
            .where(and_(*clauses))
            .order_by(rank.desc(), ContentItemRow.published_at.desc(), ContentItemRow.id)
            .offset(offset)
            .limit(limit)
        )
        count_stmt = select(func.count()).select_from(ContentItemRow).where(and_(*clauses))
        async with self._session() as session:
            total = (await session.execute(count_stmt)).scalar_one()
            result = await session.execute(stmt)
            hits = [
                ScoredItem(
                    item=_row_to_item(row),
                    score=min(1.0, float(row_rank or 0.0)),
                    title_highlight=title_hl,
                    body_highlight=body_hl,
                )
                for row, row_rank, title_hl, body_hl in result.all()
            ]
        return hits, int(total)

    # --- engine result writes ---------------------------------------------

    async def save_embeddings(self, item_id, title_embedding, body_embedding) -> None:
        async with self._session() as session:
            await session.execute(
                update(ContentItemRow)
                .where(ContentItemRow.id == item_id)
                .values(title_embedding=title_embedding, body_embedding=body_embedding)
            )

    async def save_categorization(self, item_id, category, confidence, additional, tags) -> None:
        async with self._session() as session:
            await session.execute(
                update(ContentItemRow)
                .where(ContentItemRow.id == item_id)
                .values(category=category, category_confidence=confidence, tags=list(tags))
            )
            await session.execute(delete(ContentCategoryRow).where(ContentCategoryRow.item_id == item_id))
            for extra_category, extra_confidence in additional:
                session.add(ContentCategoryRow(item_id=item_id, category=extra_category, confidence=extra_confidence))

    async def save_analysis(self, item_id, quality_score, sentiment_score, analysis) -> None:
        stmt = insert(ContentAnalysisRow).values(
            item_id=item_id, quality_score=quality_score, sentiment_score=sentiment_score, analysis=analysis
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[ContentAnalysisRow.item_id],
            set_={
                "quality_score": stmt.excluded.quality_score,
                "sentiment_score": stmt.excluded.sentiment_score,
                "analysis": stmt.excluded.analysis,
                "analyzed_at": func.now(),
            },
        )
        async with self._session() as session:
            await session.execute(stmt)
            await session.execute(
                update(ContentItemRow)
                .where(ContentItemRow.id == item_id)
                .values(quality_score=quality_score, sentiment_score=sentiment_score)
            )

    async def set_content_hash(self, item_id: str, digest: str) -> None:
        async with self._session() as session:
            await session.execute(
                update(ContentItemRow).where(ContentItemRow.id == item_id).values(content_hash=digest)
            )

    async def find_by_content_hash(self, digest, content_type=None, exclude_id=None) -> List[ContentItem]:
        stmt = select(ContentItemRow).where(
            ContentItemRow.content_hash == digest, ContentItemRow.deleted_at.is_(None)
        )
        if content_type:
            stmt = stmt.where(ContentItemRow.content_type == content_type)
        if exclude_id:
            stmt = stmt.where(ContentItemRow.id != exclude_id)
        async with self._session() as session:
            result = await session.execute(stmt.limit(5))
            return [_row_to_item(row) for row in result.scalars()]

    async def mark_duplicate(self, item_id: str, duplicate_of: str) -> None:
        async with self._session() as session:
            await session.execute(
                update(ContentItemRow).where(ContentItemRow.id == item_id).values(duplicate_of=duplicate_of)
            )

    # --- users -----------------------------------------------------------

    async def get_preferences(self, user_id: str) -> Optional[UserPreferences]:
        async with self._session() as session:
            row = await session.get(UserPreferenceRow, user_id)
        if row is None:
            return None
        return UserPreferences(
            categories=list(row.categories or []),
            tags=list(row.tags or []),
            sources=list(row.sources or []),
            interests=list(row.interests or []),
        )

    async def save_preferences(self, user_id: str, preferences: UserPreferences) -> None:
        values = {
            "user_id": user_id,
            "categories": list(preferences.categories),
            "tags": list(preferences.tags),
            "sources": list(preferences.sources),
            "interests": list(preferences.interests),
        }
        stmt = insert(UserPreferenceRow).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserPreferenceRow.user_id],
            set_={k: stmt.excluded[k] for k in values if k != "user_id"},
        )
        async with self._session() as session:
            await session.execute(stmt)

    async def get_reading_history(self, user_id: str, limit: int = 100) -> List[ReadingEvent]:
        stmt = (
            select(ReadingHistoryRow)
            .where(ReadingHistoryRow.user_id == user_id)
            .order_by(ReadingHistoryRow.created_at.desc())
            .limit(limit)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return [self._row_to_event(row) for row in result.scalars()]

    @staticmethod
    def _row_to_event(row: ReadingHistoryRow) -> ReadingEvent:
        return ReadingEvent(
            item_id=row.item_id,
            timestamp=row.created_at,
            rating=row.rating,
            read_time=row.read_time,
            category=row.category,
            tags=list(row.tags or []),
            source=row.source,
        )

    async def record_reading(self, user_id: str, event: ReadingEvent) -> None:
        async with self._session() as session:
            session.add(ReadingHistoryRow(
                user_id=user_id,
                item_id=event.item_id,
                rating=event.rating,
                read_time=event.read_time,
                category=event.category,
                tags=list(event.tags),
                source=event.source,
                created_at=event.timestamp,
            ))

    async def list_users(self) -> List[str]:
        async with self._session() as session:
            result = await session.execute(
                select(ReadingHistoryRow.user_id)
                .union(select(UserPreferenceRow.user_id))
                .union(select(UserProfileRow.user_id))
            )
            return sorted(r[0] for r in result.all())

    async def list_active_users(self, since: datetime) -> List[str]:
        stmt = (
            select(ReadingHistoryRow.user_id)
            .where(ReadingHistoryRow.created_at >= ensure_utc(since))
            .distinct()
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return sorted(r[0] for r in result.all())

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        async with self._session() as session:
            row = await session.get(UserProfileRow, user_id)
        if row is None:
            return None
        profile = UserProfile.from_dict({**row.profile, "user_id": user_id})
        profile.preference_embedding = list(row.preference_embedding) if row.preference_embedding else None
        return profile

    async def save_profile(self, profile: UserProfile) -> None:
        data = profile.to_dict()
        embedding = data.pop("preference_embedding", None)
        stmt = insert(UserProfileRow).values(
            user_id=profile.user_id, profile=data, preference_embedding=embedding
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserProfileRow.user_id],
            set_={"profile": stmt.excluded.profile, "preference_embedding": stmt.excluded.preference_embedding},
        )
        async with self._session() as session:
            await session.execute(stmt)

    async def get_ratings(self, user_ids: Sequence[str], min_rating: float) -> Dict[str, List[ReadingEvent]]:
        grouped: Dict[str, List[ReadingEvent]] = {u: [] for u in user_ids}
        if not user_ids:
            return grouped
        stmt = select(ReadingHistoryRow).where(
            ReadingHistoryRow.user_id.in_(list(user_ids)),
            ReadingHistoryRow.rating >= min_rating,
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            for row in result.scalars():
                grouped[row.user_id].append(self._row_to_event(row))
        return grouped

    # --- similarity snapshots ---------------------------------------------

    async def save_similarities(self, kind: str, rows: Dict[str, Dict[str, float]]) -> None:
        async with self._session() as session:
            await session.execute(delete(SimilarityRow).where(SimilarityRow.kind == kind))
            session.add_all([
                SimilarityRow(kind=kind, subject_id=subject, other_id=other, similarity=value)
                for subject, others in rows.items()
                for other, value in others.items()
            ])

    async def load_similarities(self, kind: str) -> Dict[str, Dict[str, float]]:
        rows: Dict[str, Dict[str, float]] = {}
        async with self._session() as session:
            result = await session.execute(select(SimilarityRow).where(SimilarityRow.kind == kind))
            for row in result.scalars():
                rows.setdefault(row.subject_id, {})[row.other_id] = row.similarity
        return rows

    # --- topic history ----------------------------------------------------

    async def append_topic_history(self, points: Sequence[TopicHistoryPoint]) -> None:
        async with self._session() as session:
            session.add_all([
                TopicHistoryRow(
                    topic=p.topic, window=p.window, mentions=p.mentions, score=p.score, recorded_at=p.timestamp
                )
                for p in points
            ])

    async def get_topic_history(self, topic: str, since: Optional[datetime] = None) -> List[TopicHistoryPoint]:
        stmt = select(TopicHistoryRow).where(TopicHistoryRow.topic == topic)
        if since is not None:
            stmt = stmt.where(TopicHistoryRow.recorded_at >= ensure_utc(since))
        async with self._session() as session:
            result = await session.execute(stmt.order_by(TopicHistoryRow.recorded_at))
            return [
                TopicHistoryPoint(
                    topic=row.topic, timestamp=row.recorded_at, mentions=row.mentions, score=row.score, window=row.window
                )
                for row in result.scalars()
            ]

    async def prune_topic_history(self, before: datetime) -> int:
        async with self._session() as session:
            result = await session.execute(
                delete(TopicHistoryRow).where(TopicHistoryRow.recorded_at < ensure_utc(before))
            )
            removed = result.rowcount or 0
        logger.info(f"Pruned {removed} topic history rows older than {before.isoformat()}")
        return removed

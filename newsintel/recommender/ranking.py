"""
Candidate scoring, merging, filtering and diversification.

Everything here is a pure function over ``Recommendation`` lists so the
blend can be tested without a store or an embedding provider.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from newsintel.core.entities import ContentItem, UserProfile
from newsintel.core.text import jaccard
from newsintel.core.time import days_between, ensure_utc

SOURCES = ("content_based", "collaborative", "trending")
# Reading-time ranges in minutes per preferred length.
READING_TIME_RANGES = {"short": (0, 3), "medium": (3, 8), "long": (8, float("inf"))}
WORDS_PER_MINUTE = 200


@dataclass
class Recommendation:
    item_id: str
    title: str
    content_type: str
    category: Optional[str]
    source: str
    published_at: datetime
    tags: List[str] = field(default_factory=list)
    url: Optional[str] = None
    author: Optional[str] = None
    scores: Dict[str, float] = field(default_factory=dict)
    reasoning: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def final(self) -> float:
        return self.scores.get("final", 0.0)

    @classmethod
    def from_item(cls, item: ContentItem, now: datetime, recency_days: float = 7.0) -> "Recommendation":
        return cls(
            item_id=item.id,
            title=item.title,
            content_type=item.content_type,
            category=item.category,
            source=item.source,
            published_at=item.published_at,
            tags=list(item.tags),
            url=item.url,
            author=item.author,
            scores={
                "relevance": 0.0,
                "content_based": 0.0,
                "collaborative": 0.0,
                "trending": 0.0,
                "recency": recency_score(item.published_at, now, recency_days),
                "quality": (item.quality_score if item.quality_score is not None else 50.0) / 100.0,
                "diversity": 1.0,
                "final": 0.0,
            },
            metadata={
                "word_count": item.word_count,
                "reading_time": reading_time_minutes(item.word_count),
                "sentiment": item.sentiment_score,
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "title": self.title,
            "content_type": self.content_type,
            "category": self.category,
            "source": self.source,
            "published_at": self.published_at.isoformat(),
            "tags": list(self.tags),
            "url": self.url,
            "author": self.author,
            "scores": dict(self.scores),
            "reasoning": list(self.reasoning),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recommendation":
        values = dict(data)
        values["published_at"] = datetime.fromisoformat(values["published_at"])
        return cls(**values)


def reading_time_minutes(word_count: int) -> int:
    return max(1, math.ceil(word_count / WORDS_PER_MINUTE))


def recency_score(published_at: datetime, now: datetime, decay_days: float = 7.0) -> float:
    return math.exp(-days_between(ensure_utc(published_at), now) / decay_days)


def popularity_score(item: ContentItem, now: datetime, half_life_days: float = 30.0) -> float:
    """Weighted engagement with exponential age decay."""
    raw = item.views + item.shares * 5 + item.comments * 3 + item.likes * 2
    return raw * math.exp(-days_between(item.published_at, now) / half_life_days)


def trending_score(item: ContentItem, now: datetime) -> float:
    """Engagement over the last day, decaying with a one-day time constant."""
    raw = item.views * 0.6 + item.shares * 0.3 + item.comments * 0.1
    return raw * math.exp(-days_between(item.published_at, now))


def reading_time_match(reading_time: float, preferred: str) -> float:
    """
    1.0 when the reading time falls in the preferred range, else 0.5.

    >>> reading_time_match(5, "medium")
    1.0
    >>> reading_time_match(12, "short")
    0.5
    """
    low, high = READING_TIME_RANGES.get(preferred, READING_TIME_RANGES["medium"])
    return 1.0 if low <= reading_time <= high else 0.5


def content_match_score(rec: Recommendation, profile: UserProfile) -> float:
    """How well an item fits the explicit preferences, capped at 1."""
    score = 0.0
    if rec.category and rec.category in profile.preferences.categories:
        score += 0.4
    score += jaccard(profile.preferences.tags, rec.tags) * 0.3
    if rec.source in profile.preferences.sources:
        score += 0.2
    score += reading_time_match(rec.metadata.get("reading_time", 3), profile.behavior.preferred_length) * 0.1
    return min(score, 1.0)


def normalize_scores(recs: Sequence[Recommendation], key: str) -> None:
    """Scale ``scores[key]`` in place so the largest value is 1.0."""
    top = max((r.scores.get(key, 0.0) for r in recs), default=0.0)
    if top <= 0:
        return
    for rec in recs:
        rec.scores[key] = rec.scores.get(key, 0.0) / top


def merge_candidates(
    candidates: Mapping[str, Sequence[Recommendation]],
    weights: Mapping[str, float],
) -> List[Recommendation]:
    """
    Union candidate lists by item id.

    Each source contributes ``scores[source] * weights[source]`` to the
    final score; reasoning lines are concatenated without repeats.
    """
    merged: Dict[str, Recommendation] = {}
    for source in SOURCES:
        weight = weights.get(source, 0.0)
        for rec in candidates.get(source, ()):
            contribution = rec.scores.get(source, 0.0) * weight
            existing = merged.get(rec.item_id)
            if existing is None:
                copy = replace(rec, scores=dict(rec.scores), reasoning=list(rec.reasoning))
                copy.scores["final"] = contribution
                merged[rec.item_id] = copy
                continue
            existing.scores[source] = rec.scores.get(source, 0.0)
            existing.scores["final"] += contribution
            for line in rec.reasoning:
                if line not in existing.reasoning:
                    existing.reasoning.append(line)
    return sorted(merged.values(), key=lambda r: (-r.final, r.item_id))


def apply_filters(
    recs: Iterable[Recommendation],
    now: datetime,
    exclude_ids: Iterable[str] = (),
    categories: Sequence[str] = (),
    content_types: Sequence[str] = (),
    min_quality: Optional[float] = None,
    max_age_days: Optional[float] = None,
) -> List[Recommendation]:
    """Hard filters; ``min_quality`` is on the 0-100 item scale."""
    excluded = set(exclude_ids)
    kept = []
    for rec in recs:
        if rec.item_id in excluded:
            continue
        if categories and rec.category not in categories:
            continue
        if content_types and rec.content_type not in content_types:
            continue
        if min_quality is not None and rec.scores.get("quality", 0.0) * 100 < min_quality:
            continue
        if max_age_days is not None and days_between(rec.published_at, now) > max_age_days:
            continue
        kept.append(rec)
    return kept


def diversify(
    recs: Sequence[Recommendation],
    diversity_factor: float,
    category_penalty: float = 0.3,
    source_penalty: float = 0.2,
) -> List[Recommendation]:
    """
    Penalise categories and sources already seen higher in the ranking.

    Returns new objects. Each score is multiplied by a factor in [0, 1], so
    no score ever rises, and items without a repeat keep their relative
    order.
    """
    ranked = sorted(recs, key=lambda r: -r.final)
    if diversity_factor <= 0:
        return [replace(r, scores=dict(r.scores)) for r in ranked]
    factor = min(diversity_factor, 1.0)
    seen_categories = set()
    seen_sources = set()
    diversified = []
    for rec in ranked:
        multiplier = 1.0
        if rec.category in seen_categories:
            multiplier *= 1 - factor * category_penalty
        else:
            seen_categories.add(rec.category)
        if rec.source in seen_sources:
            multiplier *= 1 - factor * source_penalty
        else:
            seen_sources.add(rec.source)
        scores = dict(rec.scores)
        scores["diversity"] = multiplier
        scores["final"] = rec.final * multiplier
        diversified.append(replace(rec, scores=scores, reasoning=list(rec.reasoning)))
    return sorted(diversified, key=lambda r: -r.final)


def algorithm_breakdown(recs: Sequence[Recommendation]) -> Dict[str, float]:
    """Share of each signal across the returned list, normalised to fractions."""
    totals = {
        "content_based": sum(r.scores.get("content_based", 0.0) for r in recs),
        "collaborative": sum(r.scores.get("collaborative", 0.0) for r in recs),
        "trending": sum(r.scores.get("trending", 0.0) for r in recs),
        "diversity": sum(r.scores.get("diversity", 0.0) for r in recs),
    }
    total = sum(totals.values())
    if total > 0:
        return {k: v / total for k, v in totals.items()}
    return totals

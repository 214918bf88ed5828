"""
Scoring for trending topics.

Momentum per window, trend direction against topic history, the
cross-window merge, article relevance, peak detection and a linear
forecast. All functions are pure; the detector supplies data and time.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np

from newsintel.core.entities import TopicHistoryPoint

MENTION_WEIGHT = 10.0
ENGAGEMENT_WEIGHT = 0.1
SHARE_WEIGHT = 5
PEAK_MIN_IMPACT = 10.0
MAX_PEAKS = 5
FORECAST_POINTS = 24
FORECAST_MAX_CONFIDENCE = 0.8
MAX_RELATED_ARTICLES = 10
MAX_TOPIC_KEYWORDS = 10

RISING = "rising"
STABLE = "stable"
DECLINING = "declining"


@dataclass
class RelatedArticle:
    id: str
    title: str
    published_at: datetime
    source: str
    relevance_score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "published_at": self.published_at.isoformat(),
            "source": self.source,
            "relevance_score": self.relevance_score,
        }


@dataclass
class TrendingTopic:
    topic: str
    key: str
    keywords: List[str]
    mentions: int
    score: float
    trend: str
    time_window: str
    related_articles: List[RelatedArticle] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    sentiment: Dict[str, float] = field(default_factory=lambda: {"polarity": 0.0, "subjectivity": 0.5})
    # score before the direction multiplier; this is what topic history records
    momentum: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "key": self.key,
            "keywords": list(self.keywords),
            "mentions": self.mentions,
            "score": self.score,
            "trend": self.trend,
            "time_window": self.time_window,
            "related_articles": [a.to_dict() for a in self.related_articles],
            "categories": list(self.categories),
            "sentiment": dict(self.sentiment),
            "momentum": self.momentum,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrendingTopic":
        values = dict(data)
        values["related_articles"] = [
            RelatedArticle(**{**a, "published_at": datetime.fromisoformat(a["published_at"])})
            for a in values.get("related_articles", [])
        ]
        return cls(**values)


def engagement(views: int, shares: int) -> int:
    return views + shares * SHARE_WEIGHT


def momentum_score(
    mentions: int,
    total_engagement: float,
    window_multiplier: float,
    recent_articles: int = 0,
    recency_step: float = 0.1,
) -> float:
    """
    Direction-independent window score.

    >>> momentum_score(5, 100, 2.0)
    120.0
    >>> round(momentum_score(5, 100, 2.0, recent_articles=2), 6)
    144.0
    """
    score = (mentions * MENTION_WEIGHT + total_engagement * ENGAGEMENT_WEIGHT) * window_multiplier
    if recent_articles > 0:
        score *= 1 + recent_articles * recency_step
    return score


def trend_direction(
    history: Sequence[TopicHistoryPoint],
    current_score: float,
    now: datetime,
    lookback_hours: float,
    threshold: float,
) -> str:
    """
    Compare the recent sub-period with the one before it.

    The recent period is the last ``lookback_hours`` of history plus the
    current observation; the prior period is the ``lookback_hours`` before
    that. A topic without any prior history is always rising.
    """
    cutoff = now - timedelta(hours=lookback_hours)
    prior_start = cutoff - timedelta(hours=lookback_hours)
    prior = [p.score for p in history if prior_start <= p.timestamp < cutoff]
    if not prior:
        return RISING
    recent = [p.score for p in history if cutoff <= p.timestamp <= now] + [current_score]
    ratio = (sum(recent) / len(recent)) / max(sum(prior) / len(prior), 1.0)
    if ratio > threshold:
        return RISING
    if ratio < 1 / threshold:
        return DECLINING
    return STABLE


def relevance_score(title: str, body: str, keywords: Iterable[str]) -> float:
    """Keyword hits with title hits weighted double, normalised per 100 words."""
    full_text = f"{title} {body}".lower()
    title_lower = title.lower()
    score = 0
    for keyword in keywords:
        pattern = re.compile(rf"\b{re.escape(keyword.lower())}\b")
        matches = len(pattern.findall(full_text))
        if matches:
            score += matches + 2 * len(pattern.findall(title_lower))
    return score / max(len(full_text.split()) / 100, 1)


def _window_rank(topic: TrendingTopic, window_order: Sequence[str]) -> int:
    return window_order.index(topic.time_window) if topic.time_window in window_order else len(window_order)


def merge_topics(
    per_window: Iterable[Sequence[TrendingTopic]],
    window_order: Sequence[str] = ("short", "medium", "long"),
) -> List[TrendingTopic]:
    """
    Merge window results by normalised topic key.

    Mentions add up, the score is the maximum and the window label, display
    name and trend come from the highest-scoring contributor (ties go to the
    earlier window in ``window_order``). The outcome does not depend on the
    order of the windows passed in.
    """
    groups: Dict[str, List[TrendingTopic]] = {}
    for topics in per_window:
        for topic in topics:
            groups.setdefault(topic.key, []).append(topic)

    merged = []
    for key, contributors in groups.items():
        contributors = sorted(contributors, key=lambda t: (-t.score, _window_rank(t, window_order), t.time_window))
        best = contributors[0]
        mentions = sum(t.mentions for t in contributors)
        keywords = list(best.keywords)
        for extra in sorted({k for t in contributors[1:] for k in t.keywords} - set(keywords)):
            keywords.append(extra)
        articles: Dict[str, RelatedArticle] = {}
        for t in contributors:
            for article in t.related_articles:
                current = articles.get(article.id)
                if current is None or article.relevance_score > current.relevance_score:
                    articles[article.id] = article
        related = sorted(articles.values(), key=lambda a: (-a.relevance_score, a.id))[:MAX_RELATED_ARTICLES]
        weight = sum(t.mentions for t in contributors) or 1
        sentiment = {
            name: round(sum(t.sentiment.get(name, 0.0) * t.mentions for t in contributors) / weight, 4)
            for name in ("polarity", "subjectivity")
        }
        merged.append(TrendingTopic(
            topic=best.topic,
            key=key,
            keywords=keywords[:MAX_TOPIC_KEYWORDS],
            mentions=mentions,
            score=best.score,
            trend=best.trend,
            time_window=best.time_window,
            related_articles=related,
            categories=sorted({c for t in contributors for c in t.categories}),
            sentiment=sentiment,
            momentum=best.momentum,
        ))
    merged.sort(key=lambda t: (-t.score, t.key))
    return merged


def find_peaks(timeline: Sequence[Dict[str, Any]], min_impact: float = PEAK_MIN_IMPACT) -> List[Dict[str, Any]]:
    """Local score maxima standing at least ``min_impact`` above both neighbours."""
    peaks = []
    for i in range(1, len(timeline) - 1):
        previous, current, following = timeline[i - 1], timeline[i], timeline[i + 1]
        if current["score"] > previous["score"] and current["score"] > following["score"]:
            impact = current["score"] - max(previous["score"], following["score"])
            if impact > min_impact:
                peaks.append({"timestamp": current["timestamp"], "impact": impact, "mentions": current["mentions"]})
    peaks.sort(key=lambda p: -p["impact"])
    return peaks[:MAX_PEAKS]


def linear_slope(values: Sequence[float]) -> float:
    """Least-squares slope per step; 0.0 for fewer than two points."""
    if len(values) < 2:
        return 0.0
    slope = np.polyfit(np.arange(len(values), dtype=float), np.asarray(values, dtype=float), 1)[0]
    return float(slope) if np.isfinite(slope) else 0.0


def forecast(scores: Sequence[float], current: Optional[float] = None) -> Dict[str, float]:
    """Extrapolate the recent slope one hour, one day and one week ahead."""
    if len(scores) < 3:
        return {"next_hour": 0.0, "next_day": 0.0, "next_week": 0.0, "confidence": 0.0}
    recent = list(scores)[-FORECAST_POINTS:]
    slope = linear_slope(recent)
    current = scores[-1] if current is None else current
    return {
        "next_hour": max(0.0, current + slope),
        "next_day": max(0.0, current + slope * 24),
        "next_week": max(0.0, current + slope * 24 * 7),
        "confidence": min(FORECAST_MAX_CONFIDENCE, len(recent) / FORECAST_POINTS),
    }

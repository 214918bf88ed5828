"""User profiles: behaviour metrics, characterisation and user-user similarity."""

import math
from collections import Counter
from dataclasses import dataclass
from typing import List, Optional, Sequence

from newsintel.core.entities import BehaviorMetrics, ReadingEvent, UserPreferences, UserProfile
from newsintel.core.text import jaccard

DEFAULT_CATEGORIES = ("artificial-intelligence", "machine-learning")
DEFAULT_READ_TIME = 180.0
ACTIVE_HOURS = 3
# Seconds of read-time difference at which behaviour similarity decays by 1/e.
READ_TIME_DECAY = 120.0


def preferred_length(avg_read_time: float) -> str:
    """
    Bucket an average read time in seconds.

    >>> preferred_length(90)
    'short'
    >>> preferred_length(200)
    'medium'
    >>> preferred_length(400)
    'long'
    """
    if avg_read_time < 120:
        return "short"
    if avg_read_time < 300:
        return "medium"
    return "long"


def compute_behavior_metrics(history: Sequence[ReadingEvent]) -> BehaviorMetrics:
    """Behaviour from timed reads; users without any timed read keep the defaults."""
    timed = [e for e in history if e.read_time is not None]
    if not timed:
        return BehaviorMetrics()
    avg_read_time = sum(e.read_time for e in timed) / len(timed)
    hours = Counter(e.timestamp.hour for e in timed)
    active_hours = [h for h, _ in sorted(hours.items(), key=lambda kv: (-kv[1], kv[0]))[:ACTIVE_HOURS]]
    return BehaviorMetrics(
        avg_read_time=avg_read_time,
        preferred_length=preferred_length(avg_read_time),
        active_hours=active_hours,
        engagement_score=min(avg_read_time / DEFAULT_READ_TIME, 1.0),
    )


def default_profile(user_id: str, preferences: Optional[UserPreferences] = None) -> UserProfile:
    """Profile for a user the engine has not seen before."""
    if preferences is None or not (preferences.categories or preferences.tags or preferences.interests):
        base = preferences or UserPreferences()
        preferences = UserPreferences(
            categories=list(DEFAULT_CATEGORIES),
            tags=list(base.tags),
            sources=list(base.sources),
            interests=list(base.interests),
        )
    return UserProfile(user_id=user_id, preferences=preferences)


@dataclass
class ProfileCharacteristics:
    preference_strength: float = 0.0
    diversity_index: float = 0.0
    novelty_seeker: bool = False
    expertise_level: str = "beginner"


def characterize(profile: UserProfile) -> ProfileCharacteristics:
    """Summarise how settled, varied and expert a reader looks."""
    history_length = len(profile.reading_history)
    categories = {e.category for e in profile.reading_history if e.category}
    diversity_index = len(categories) / min(history_length, 10) if history_length else 0.0
    avg_read_time = profile.behavior.avg_read_time
    if avg_read_time > 300:
        expertise = "advanced"
    elif avg_read_time > 180:
        expertise = "intermediate"
    else:
        expertise = "beginner"
    return ProfileCharacteristics(
        preference_strength=min(history_length / 100, 1.0),
        diversity_index=round(diversity_index, 4),
        novelty_seeker=diversity_index > 0.6,
        expertise_level=expertise,
    )


def behavior_similarity(a: BehaviorMetrics, b: BehaviorMetrics) -> float:
    read_time = math.exp(-abs(a.avg_read_time - b.avg_read_time) / READ_TIME_DECAY)
    length = 1.0 if a.preferred_length == b.preferred_length else 0.0
    hours = jaccard([str(h) for h in a.active_hours], [str(h) for h in b.active_hours])
    return read_time * 0.4 + length * 0.3 + hours * 0.3


def user_similarity(a: UserProfile, b: UserProfile) -> float:
    """Category and tag overlap plus behaviour similarity, in [0, 1]."""
    return (
        jaccard(a.preferences.categories, b.preferences.categories) * 0.4
        + jaccard(a.preferences.tags, b.preferences.tags) * 0.3
        + behavior_similarity(a.behavior, b.behavior) * 0.3
    )


def history_categories(profile: UserProfile, limit: int = 5) -> List[str]:
    """Most-read categories, used to enrich sparse explicit preferences."""
    counts = Counter(e.category for e in profile.reading_history if e.category)
    return [c for c, _ in counts.most_common(limit)]

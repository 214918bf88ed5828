"""Domain entities shared by the store and the engines."""
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .time import ensure_utc, utc_now


class ContentType(str, Enum):
    ARTICLE = "article"
    PAPER = "paper"


@dataclass
class ContentItem:
    """A news article or research paper plus its derived fields."""
    id: str
    title: str
    body: str
    content_type: str = ContentType.ARTICLE.value
    published_at: datetime = field(default_factory=utc_now)
    source: str = "unknown"
    author: Optional[str] = None
    url: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    title_embedding: Optional[List[float]] = None
    body_embedding: Optional[List[float]] = None
    quality_score: Optional[float] = None
    sentiment_score: Optional[float] = None
    views: int = 0
    shares: int = 0
    comments: int = 0
    likes: int = 0
    status: str = "published"
    deleted: bool = False
    content_hash: Optional[str] = None
    duplicate_of: Optional[str] = None

    def __post_init__(self):
        self.published_at = ensure_utc(self.published_at)

    @property
    def embedding(self) -> Optional[List[float]]:
        """Vector used for similarity: body first, title as fallback."""
        return self.body_embedding if self.body_embedding is not None else self.title_embedding

    @property
    def searchable(self) -> bool:
        """Published, not deleted and embedded."""
        return self.status == "published" and not self.deleted and self.embedding is not None

    @property
    def full_text(self) -> str:
        return f"{self.title}. {self.body}" if self.title else self.body

    @property
    def word_count(self) -> int:
        return len(self.body.split())

    def to_dict(self, include_body: bool = True, include_vectors: bool = False) -> Dict[str, Any]:
        data = asdict(self)
        data["published_at"] = self.published_at.isoformat()
        if not include_body:
            data.pop("body")
        if not include_vectors:
            data.pop("title_embedding")
            data.pop("body_embedding")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentItem":
        values = dict(data)
        published = values.get("published_at")
        if isinstance(published, str):
            values["published_at"] = datetime.fromisoformat(published.replace("Z", "+00:00"))
        values.setdefault("body", values.pop("content", ""))
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in values.items() if k in known})


@dataclass
class ItemFilter:
    """Hard filters applied before ranking; empty fields mean no restriction."""
    categories: Sequence[str] = ()
    exclude_categories: Sequence[str] = ()
    sources: Sequence[str] = ()
    content_types: Sequence[str] = ()
    tags: Sequence[str] = ()
    authors: Sequence[str] = ()
    published_after: Optional[datetime] = None
    published_before: Optional[datetime] = None
    min_quality: Optional[float] = None
    exclude_ids: Sequence[str] = ()
    require_category: bool = False
    exclude_duplicates: bool = False

    def matches(self, item: ContentItem) -> bool:
        if item.deleted or item.status != "published":
            return False
        if self.exclude_ids and item.id in self.exclude_ids:
            return False
        if self.categories and item.category not in self.categories:
            return False
        if self.exclude_categories and item.category in self.exclude_categories:
            return False
        if self.require_category and not item.category:
            return False
        if self.sources and item.source not in self.sources:
            return False
        if self.content_types and item.content_type not in self.content_types:
            return False
        if self.tags and not set(self.tags) & set(item.tags):
            return False
        if self.authors and item.author not in self.authors:
            return False
        if self.published_after and item.published_at < ensure_utc(self.published_after):
            return False
        if self.published_before and item.published_at > ensure_utc(self.published_before):
            return False
        if self.min_quality is not None and (item.quality_score or 0.0) < self.min_quality:
            return False
        if self.exclude_duplicates and item.duplicate_of:
            return False
        return True


@dataclass
class ScoredItem:
    """Store query hit with its raw similarity or lexical rank."""
    item: ContentItem
    score: float
    title_highlight: Optional[str] = None
    body_highlight: Optional[str] = None


@dataclass
class UserPreferences:
    categories: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)
    interests: List[str] = field(default_factory=list)


@dataclass
class ReadingEvent:
    item_id: str
    timestamp: datetime = field(default_factory=utc_now)
    rating: Optional[float] = None
    read_time: Optional[float] = None
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    source: Optional[str] = None

    def __post_init__(self):
        self.timestamp = ensure_utc(self.timestamp)


@dataclass
class BehaviorMetrics:
    avg_read_time: float = 180.0
    preferred_length: str = "medium"
    active_hours: List[int] = field(default_factory=lambda: [9, 14, 20])
    engagement_score: float = 0.5


@dataclass
class UserProfile:
    user_id: str
    preferences: UserPreferences = field(default_factory=UserPreferences)
    behavior: BehaviorMetrics = field(default_factory=BehaviorMetrics)
    reading_history: List[ReadingEvent] = field(default_factory=list)
    preference_embedding: Optional[List[float]] = None
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def read_item_ids(self) -> List[str]:
        return [event.item_id for event in self.reading_history]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["updated_at"] = self.updated_at.isoformat()
        for event in data["reading_history"]:
            event["timestamp"] = event["timestamp"].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        history = [
            ReadingEvent(**{**e, "timestamp": datetime.fromisoformat(e["timestamp"])})
            for e in data.get("reading_history", [])
        ]
        return cls(
            user_id=data["user_id"],
            preferences=UserPreferences(**data.get("preferences", {})),
            behavior=BehaviorMetrics(**data.get("behavior", {})),
            reading_history=history,
            preference_embedding=data.get("preference_embedding"),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else utc_now(),
        )


@dataclass
class TopicHistoryPoint:
    topic: str
    timestamp: datetime
    mentions: int
    score: float
    window: str = "medium"

    def __post_init__(self):
        self.timestamp = ensure_utc(self.timestamp)

"""Database models for NewsIntel."""
from sqlalchemy import (
    ARRAY,
    JSON,
    BigInteger,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import mapped_column
from sqlalchemy.sql import func

from .db import Base


class ContentItemRow(Base):
    """Articles and papers with their derived signals."""
    __tablename__ = "content_items"

    id = mapped_column(String(64), primary_key=True)
    content_type = mapped_column(String(16), nullable=False, default="article", index=True)  # article|paper
    title = mapped_column(String(800), nullable=False)
    body = mapped_column(Text, nullable=False)
    url = mapped_column(String(1500), nullable=True)
    source = mapped_column(String(200), nullable=False, default="unknown", index=True)
    author = mapped_column(String(200), nullable=True, index=True)
    published_at = mapped_column(DateTime(timezone=True), index=True)
    status = mapped_column(String(16), nullable=False, default="published", index=True)
    deleted_at = mapped_column(DateTime(timezone=True), nullable=True)

    # Categorization engine
    category = mapped_column(String(64), nullable=True, index=True)
    category_confidence = mapped_column(Float, nullable=True)
    tags = mapped_column(JSON, nullable=True)

    # Embedding service
    title_embedding = mapped_column(ARRAY(Float), nullable=True)
    body_embedding = mapped_column(ARRAY(Float), nullable=True)

    # Analysis engine
    quality_score = mapped_column(Float, nullable=True, index=True)
    sentiment_score = mapped_column(Float, nullable=True)

    # Engagement counters
    views = mapped_column(Integer, default=0, nullable=False)
    shares = mapped_column(Integer, default=0, nullable=False)
    comments = mapped_column(Integer, default=0, nullable=False)
    likes = mapped_column(Integer, default=0, nullable=False)

    # Duplicate detection
    content_hash = mapped_column(String(64), nullable=True, index=True)
    duplicate_of = mapped_column(ForeignKey("content_items.id"), nullable=True)

    created_at = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = mapped_column(DateTime(timezone=True), onupdate=func.now())


class ContentCategoryRow(Base):
    """Additional (secondary) categories per item."""
    __tablename__ = "content_categories"

    id = mapped_column(BigInteger, primary_key=True)
    item_id = mapped_column(ForeignKey("content_items.id"), index=True, nullable=False)
    category = mapped_column(String(64), nullable=False)
    confidence = mapped_column(Float, nullable=False)

    __table_args__ = (UniqueConstraint("item_id", "category", name="uq_item_category"),)


class ContentAnalysisRow(Base):
    """Latest analysis result per item."""
    __tablename__ = "content_analyses"

    item_id = mapped_column(ForeignKey("content_items.id"), primary_key=True)
    quality_score = mapped_column(Float, nullable=False)
    sentiment_score = mapped_column(Float, nullable=False)
    analysis = mapped_column(JSON, nullable=False)
    analyzed_at = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserPreferenceRow(Base):
    """Explicit user preferences."""
    __tablename__ = "user_preferences"

    user_id = mapped_column(String(64), primary_key=True)
    categories = mapped_column(JSON, nullable=True)
    tags = mapped_column(JSON, nullable=True)
    sources = mapped_column(JSON, nullable=True)
    interests = mapped_column(JSON, nullable=True)
    updated_at = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ReadingHistoryRow(Base):
    """One read (optionally rated) by a user."""
    __tablename__ = "reading_history"

    id = mapped_column(BigInteger, primary_key=True)
    user_id = mapped_column(String(64), nullable=False, index=True)
    item_id = mapped_column(ForeignKey("content_items.id"), nullable=False, index=True)
    rating = mapped_column(Float, nullable=True)
    read_time = mapped_column(Float, nullable=True)  # seconds
    category = mapped_column(String(64), nullable=True)
    tags = mapped_column(JSON, nullable=True)
    source = mapped_column(String(200), nullable=True)
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)


class UserProfileRow(Base):
    """Derived user profile (behaviour metrics and preference embedding)."""
    __tablename__ = "user_profiles"

    user_id = mapped_column(String(64), primary_key=True)
    profile = mapped_column(JSON, nullable=False)
    preference_embedding = mapped_column(ARRAY(Float), nullable=True)
    updated_at = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SimilarityRow(Base):
    """Precomputed user-user / item-item similarities."""
    __tablename__ = "similarity_snapshots"

    id = mapped_column(BigInteger, primary_key=True)
    kind = mapped_column(String(16), nullable=False)  # user|item
    subject_id = mapped_column(String(64), nullable=False)
    other_id = mapped_column(String(64), nullable=False)
    similarity = mapped_column(Float, nullable=False)
    computed_at = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_similarity_kind_subject", "kind", "subject_id"),)


class TopicHistoryRow(Base):
    """Append-only trending topic time series."""
    __tablename__ = "topic_history"

    id = mapped_column(BigInteger, primary_key=True)
    topic = mapped_column(String(200), nullable=False, index=True)
    window = mapped_column(String(16), nullable=False)
    mentions = mapped_column(Integer, nullable=False)
    score = mapped_column(Float, nullable=False)
    recorded_at = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class DeadLetterRow(Base):
    """Jobs that exhausted their retries (kept for operators)."""
    __tablename__ = "dead_letter_jobs"

    id = mapped_column(String(128), primary_key=True)
    job_type = mapped_column(String(32), nullable=False, index=True)
    payload = mapped_column(JSON, nullable=False)
    attempts = mapped_column(Integer, nullable=False)
    error = mapped_column(Text, nullable=True)
    failed_at = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)


Index("ix_content_items_published", ContentItemRow.status, ContentItemRow.published_at)

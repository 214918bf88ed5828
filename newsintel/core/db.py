"""Database module with async SQLAlchemy engine and session management."""
from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .settings import get_settings

# SQLAlchemy base for models
Base = declarative_base()


@lru_cache()
def get_engine() -> AsyncEngine:
    """Async engine, created on first use."""
    settings = get_settings()
    return create_async_engine(
        settings.db_url,
        echo=settings.db_echo,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )


@lru_cache()
def get_sessionmaker() -> async_sessionmaker:
    return async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a database session."""
    async with get_sessionmaker()() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """Test the database connection."""
    async with get_engine().begin() as conn:
        await conn.execute(text("SELECT 1"))


async def create_all() -> None:
    """Create all tables in the database."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_all() -> None:
    """Drop all tables in the database."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

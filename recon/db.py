"""SQLAlchemy 2.x async database setup for the SQL document store.

This module defines the async engine and session factory but does not
hard-code any connection credentials.
"""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    """Engine for ``settings.db.url``, created on first use."""
    kwargs = {"echo": settings.db.echo, "future": True}
    if not settings.db.url.startswith("sqlite"):
        kwargs.update(pool_size=settings.db.pool_size, max_overflow=settings.db.max_overflow)
    return create_async_engine(settings.db.url, **kwargs)


def get_sessionmaker(engine: AsyncEngine | None = None) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine or get_engine(), expire_on_commit=False, class_=AsyncSession)

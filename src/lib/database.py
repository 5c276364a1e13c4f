"""
Async database access for ListLoop.

Builds the SQLAlchemy async engine and session factory from
LearningSettings, and creates tables on startup.

Usage:
    from src.lib.database import get_session_factory

    factory = get_session_factory()
    async with factory() as session:
        ...
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from src.config.learning import get_settings
from src.models.base import Base

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used everywhere; objects stay readable after commit."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """Get or create the process-wide async engine."""
    global _engine
    if _engine is None:
        url = get_settings().database_url
        _engine = create_async_engine(url, pool_pre_ping=True)
        logger.info("Database engine created for %s", url.split("@")[-1])
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the process-wide session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory


async def init_models(engine: AsyncEngine | None = None) -> None:
    """Create all learning loop tables if they do not exist."""
    # Model modules register their tables on Base.metadata when imported
    import src.models  # noqa: F401

    target = engine or get_engine()
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Dispose the process-wide engine (application shutdown)."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


__all__ = [
    "build_session_factory",
    "get_engine",
    "get_session_factory",
    "init_models",
    "dispose_engine",
]

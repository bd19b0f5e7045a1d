"""Async database engine and session management"""

import logging
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from doorrelay.core.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker] = None


def init_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create the engine and session factory (replaces any previous engine)"""
    global _engine, _session_maker

    url = database_url or settings.DATABASE_URL
    _engine = create_async_engine(url, echo=False)
    _session_maker = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_session_maker() -> async_sessionmaker:
    """Return the session factory, creating the default engine on first use"""
    if _session_maker is None:
        init_engine()
    return _session_maker


async def init_db():
    """Create all tables"""
    # Register models on Base.metadata
    from doorrelay import models  # noqa: F401

    if _engine is None:
        init_engine()

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")


async def close_db():
    """Dispose of the engine and its connection pool"""
    global _engine, _session_maker

    if _engine is not None:
        await _engine.dispose()
        logger.info("Database connections closed")
    _engine = None
    _session_maker = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a database session"""
    async with get_session_maker()() as session:
        yield session


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

"""
Database layer — async PostgreSQL via SQLAlchemy 2.0 + asyncpg.

Provides:
    • Lazily-created async engine and session factory
    • Base model for ORM entities
    • Lifecycle helpers used by the application lifespan

The engine is built on first use rather than at import time so that
modules which only need the ORM models (and the test-suite, which binds
its own in-memory engine) never open a connection pool.

Usage:
    from backend.app.core.database import get_session_factory

    factory = get_session_factory()
    async with factory() as session:
        ...
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──
def get_engine() -> AsyncEngine:
    """Get or create the process-wide async engine."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            echo=settings.DATABASE_ECHO,
        )
        logger.info("Database engine created: %s", settings.DATABASE_URL.split("@")[-1])
    return _engine


# ── Session Factory ──
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory bound to the process engine."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


# ── Lifecycle ──
async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Registers the hydro tables on Base.metadata
    from backend.app.hydro import db_models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db() -> None:
    """Dispose engine connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connections closed")

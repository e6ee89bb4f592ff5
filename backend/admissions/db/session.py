"""
Database engine and session factory.

Flow:
  1. One AsyncEngine per process, built from settings.database_url.
  2. AsyncSessionLocal hands out sessions; every JobStore / VerificationGate
     operation opens its own short transaction keyed by a single id, so no
     two jobs ever contend on the same rows.
  3. Celery workers and the API process share this module; each process
     builds its own engine and pool.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from admissions.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an AsyncEngine; pool sizing applies only to server databases."""
    kwargs: dict = {"echo": echo, "pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_recycle=3600,           # recycle connections every hour
        )
    return create_async_engine(database_url, **kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects readable after the transaction closes
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine: AsyncEngine = build_engine(settings.database_url, echo=settings.db_echo_sql)

AsyncSessionLocal = build_session_factory(engine)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency / worker accessor for the process-wide factory."""
    return AsyncSessionLocal


# ---------------------------------------------------------------------------
# Scoped transaction helper
# ---------------------------------------------------------------------------

@asynccontextmanager
async def transaction(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Open a session with a transaction that commits on exit and rolls back
    on any exception.
    """
    async with factory() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Bootstrap + health
# ---------------------------------------------------------------------------

async def create_all(bind: AsyncEngine | None = None) -> None:
    """Create tables for local development and tests; production uses migrations."""
    from admissions.models.jobs import Base

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db_health(bind: AsyncEngine | None = None) -> dict:
    """Ping the database; used by /ready and at startup."""
    try:
        async with (bind or engine).connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}

"""Primary store engine, session factory and Redis counter client.

The primary store holds user data and the compliance ledger (requests,
recovery codes, certificates, webhook and audit records). The analytics
warehouse gets its own engine from the same options helper.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncGenerator
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from compliance.config import settings

logger = logging.getLogger(__name__)


def engine_options(url: str) -> dict[str, Any]:
    """Pool settings for `url`. SQLite has no server-side pool to size."""
    options: dict[str, Any] = {"echo": settings.log_level == "DEBUG"}
    if url.startswith("sqlite"):
        return options
    options.update(pool_size=10, max_overflow=20, pool_pre_ping=True, pool_recycle=3600)
    return options


def build_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, **engine_options(url))


# ── Primary store ────────────────────────────────────────────────────

engine: AsyncEngine = build_engine(settings.db.database_url)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency. Commits when the handler returns, rolls back if it raises."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def ping(target: AsyncEngine | None = None) -> bool:
    """True when the store answers a trivial query."""
    try:
        async with (target or engine).connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        logger.warning("Database ping failed", exc_info=True)
        return False
    return True


# ── Redis (rate-limit counters) ──────────────────────────────────────

redis_client: aioredis.Redis = aioredis.from_url(
    settings.db.redis_url,
    decode_responses=True,
)


# ── Lifespan ─────────────────────────────────────────────────────────


@contextlib.asynccontextmanager
async def db_lifespan() -> AsyncGenerator[None, None]:
    """Open the primary store for the app's lifetime.

    Outside production the schema is created from the models; production
    schemas come from the Alembic revisions.
    """
    if not settings.is_production:
        from compliance.models import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    elif not await ping():
        logger.error("Primary store unreachable at startup")

    try:
        yield
    finally:
        await engine.dispose()
        await redis_client.aclose()

"""Analytics warehouse adapter over a second async SQLAlchemy engine.

Warehouse rows never carry the raw user id; they are keyed by
`anonymized_user_hash(user_id)`.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from compliance.config import settings
from compliance.db.engine import build_engine
from compliance.errors import TransientExternalError

logger = logging.getLogger(__name__)

# Tables holding per-user rows, keyed by user_hash
ANONYMIZED_TABLES: tuple[str, ...] = ("users_anonymized", "training_sessions")


class SqlWarehouse:
    """Warehouse implementation for any SQLAlchemy async dialect.

    The engine is created on first use so importing this module never
    opens a connection.
    """

    def __init__(self, url: str | None = None, engine: AsyncEngine | None = None) -> None:
        self._url = url or settings.db.warehouse_url
        self._engine = engine

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = build_engine(self._url)
        return self._engine

    async def run_query(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Run a read query and return rows as plain dicts."""
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(text(sql), params or {})
                return [dict(row) for row in result.mappings().all()]
        except SQLAlchemyError as exc:
            raise TransientExternalError(f"Warehouse query failed: {exc}") from exc

    async def delete_by_user_hash(self, user_hash: str) -> int:
        """Delete every anonymized row for `user_hash`. Returns rows affected."""
        total = 0
        try:
            async with self.engine.begin() as conn:
                for table in ANONYMIZED_TABLES:
                    result = await conn.execute(
                        text(f"DELETE FROM {table} WHERE user_hash = :user_hash"),
                        {"user_hash": user_hash},
                    )
                    total += max(result.rowcount or 0, 0)
        except SQLAlchemyError as exc:
            raise TransientExternalError(f"Warehouse delete failed: {exc}") from exc
        logger.info("Warehouse rows deleted for user hash %s: %d", user_hash[:8], total)
        return total

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()


warehouse = SqlWarehouse()

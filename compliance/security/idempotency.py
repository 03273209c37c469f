"""Webhook idempotency ledger.

Records which external event ids have been handled so a redelivered event
does not repeat its side effects. The ledger uses its own session: a
marking failure must not roll back the work it describes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy import select

from compliance.db.engine import async_session_factory
from compliance.models.base import utcnow
from compliance.models.records import WebhookEvent

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 1000


class IdempotencyGuard:
    """is_processed / mark_processed over the webhook_events table."""

    def __init__(self, session_factory: Callable[[], Any] = async_session_factory) -> None:
        self._session_factory = session_factory

    async def is_processed(self, event_id: str) -> bool:
        """True when `event_id` already has a ledger row.

        A lookup failure is reported as "not processed" so the event gets
        handled rather than dropped.
        """
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(WebhookEvent.id).where(WebhookEvent.event_id == event_id).limit(1)
                )
                return result.scalar_one_or_none() is not None
        except Exception:
            logger.warning("Idempotency lookup failed for event %s, treating as new", event_id, exc_info=True)
            return False

    async def mark_processed(
        self,
        event_id: str,
        event_type: str,
        status: str,
        error: str | None = None,
    ) -> bool:
        """Insert the ledger row. Returns False (and logs) if the write fails."""
        try:
            async with self._session_factory() as db:
                db.add(
                    WebhookEvent(
                        event_id=event_id,
                        event_type=event_type,
                        status=status,
                        error=error[:_MAX_ERROR_LENGTH] if error else None,
                        processed_at=utcnow(),
                    )
                )
                await db.commit()
            return True
        except Exception:
            logger.exception("Failed to mark webhook event %s as %s", event_id, status)
            return False


idempotency_guard = IdempotencyGuard()

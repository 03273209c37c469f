"""Lazy expiry: deadlines are compared at read time, not by a timer."""

from __future__ import annotations

from datetime import datetime

from compliance.models.base import utcnow


def is_expired(entity: object, now: datetime | None = None, field: str = "expires_at") -> bool:
    """True once `now` has reached the entity's deadline. No deadline never expires."""
    deadline: datetime | None = getattr(entity, field, None)
    if deadline is None:
        return False
    return (now or utcnow()) >= deadline

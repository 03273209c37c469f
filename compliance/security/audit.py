"""Compliance audit trail and access log.

Every compliance-relevant change is appended to audit_logs; reads and
exports go to access_logs. Users are identified only by a salted hash,
and sensitive-looking fields are redacted before anything is written.

Never raises: a failed write is logged and reported as an empty id so
the business operation it describes carries on.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from compliance.db.engine import async_session_factory
from compliance.models.enums import AuditAction
from compliance.models.records import AccessLog, AuditLog
from compliance.schemas.events import SystemEvent
from compliance.security.hashing import hash_ip_address, hash_user_id

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
SENSITIVE_FIELD_PATTERN = re.compile(
    r"password|token|secret|key|credential|authorization|cookie", re.IGNORECASE
)


# ── Pure helpers ─────────────────────────────────────────────────────


def sanitize(values: Any) -> Any:
    """Return a copy of `values` with sensitive keys redacted at any depth."""
    if isinstance(values, dict):
        return {
            key: REDACTED if SENSITIVE_FIELD_PATTERN.search(str(key)) else sanitize(value)
            for key, value in values.items()
        }
    if isinstance(values, list):
        return [sanitize(item) for item in values]
    return values


def changed_fields(previous: dict[str, Any] | None, new: dict[str, Any] | None) -> list[str]:
    """Keys whose value differs between two snapshots, in sorted order."""
    previous = previous or {}
    new = new or {}
    return sorted(key for key in set(previous) | set(new) if previous.get(key) != new.get(key))


@dataclass
class AuditEntry:
    """One audit record before hashing and redaction."""

    user_id: object
    action: str
    resource_type: str
    resource_id: str | None = None
    previous_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    error_message: str | None = None


# ── Trail ────────────────────────────────────────────────────────────


class AuditTrail:
    """Writes audit and access entries in their own short transactions."""

    def __init__(self, session_factory: Callable[[], Any] = async_session_factory) -> None:
        self._session_factory = session_factory

    async def record(self, entry: AuditEntry) -> str:
        """Append an audit entry. Returns its id, or "" when the write failed."""
        try:
            previous = sanitize(entry.previous_values) if entry.previous_values is not None else None
            new = sanitize(entry.new_values) if entry.new_values is not None else None
            row = AuditLog(
                user_id_hash=hash_user_id(entry.user_id),
                action=str(entry.action),
                resource_type=entry.resource_type,
                resource_id=entry.resource_id,
                previous_values=previous,
                new_values=new,
                changed_fields=changed_fields(previous, new) if previous is not None and new is not None else None,
                ip_address_hash=hash_ip_address(entry.ip_address),
                user_agent=entry.user_agent,
                details=sanitize(entry.details) or None,
                success=entry.success,
                error_message=entry.error_message,
            )
            async with self._session_factory() as db:
                db.add(row)
                await db.flush()
                audit_id = str(row.id)
                await db.commit()
            return audit_id
        except Exception:
            logger.exception("Failed to write audit entry: %s on %s", entry.action, entry.resource_type)
            return ""

    async def record_access(
        self,
        user_id: object,
        action: str,
        resource_type: str,
        resource_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        success: bool = True,
        error_message: str | None = None,
    ) -> str:
        """Append an access-log entry. Same never-raise contract as `record`."""
        try:
            row = AccessLog(
                user_id_hash=hash_user_id(user_id),
                action=str(action),
                resource_type=resource_type,
                resource_id=resource_id,
                ip_address_hash=hash_ip_address(ip_address),
                user_agent=user_agent,
                success=success,
                error_message=error_message,
            )
            async with self._session_factory() as db:
                db.add(row)
                await db.flush()
                access_id = str(row.id)
                await db.commit()
            return access_id
        except Exception:
            logger.exception("Failed to write access entry: %s on %s", action, resource_type)
            return ""


audit_trail = AuditTrail()


async def audit_on_event(event: SystemEvent) -> None:
    """Event-bus subscriber that mirrors every SystemEvent into the trail."""
    await audit_trail.record(
        AuditEntry(
            user_id=event.user_id or "system",
            action=AuditAction.SYSTEM_EVENT.value,
            resource_type=event.event_type.value,
            resource_id=str(event.id),
            details={"source_module": event.source_module, "data": event.data},
        )
    )

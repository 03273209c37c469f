"""Compliance ledger tables: certificates, webhook events, audit/access logs
and export requests.

These rows reference users only through salted hashes or bare ids, never
through foreign keys, so they survive a full erasure.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from compliance.models.base import Base, JSONType, TimestampMixin, UTCDateTime
from compliance.models.enums import ExportRequestStatus


class DeletionCertificate(TimestampMixin, Base):
    """Signed proof that a user's data was erased.

    Timestamps are stored as the exact ISO strings that were signed.
    """

    __tablename__ = "deletion_certificates"

    certificate_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    user_id_hash: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    deletion_request_id: Mapped[str] = mapped_column(String(64), nullable=False)
    deleted_at: Mapped[str] = mapped_column(String(40), nullable=False)
    deleted_data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    verification_result: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    signature: Mapped[str] = mapped_column(String(64), nullable=False)
    signature_algorithm: Mapped[str] = mapped_column(String(20), nullable=False)
    issued_at: Mapped[str] = mapped_column(String(40), nullable=False)
    issued_by: Mapped[str] = mapped_column(String(200), nullable=False)

    def __repr__(self) -> str:
        return f"<DeletionCertificate {self.certificate_id} user_hash={self.user_id_hash}>"


class WebhookEvent(TimestampMixin, Base):
    """Idempotency record for an inbound billing webhook."""

    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error: Mapped[str | None] = mapped_column(Text)
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.event_id} status={self.status}>"


class AuditLog(TimestampMixin, Base):
    """Append-only record of a compliance-relevant change.

    Never updated or deleted; `created_at` is the entry's timestamp.
    """

    __tablename__ = "audit_logs"

    user_id_hash: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(255))

    previous_values: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    new_values: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    changed_fields: Mapped[list | None] = mapped_column(JSONType)

    ip_address_hash: Mapped[str | None] = mapped_column(String(16))
    user_agent: Mapped[str | None] = mapped_column(String(500))
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType)

    success: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<AuditLog action={self.action} resource={self.resource_type}>"


class AccessLog(TimestampMixin, Base):
    """Who read or exported which resource."""

    __tablename__ = "access_logs"

    user_id_hash: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(255))
    ip_address_hash: Mapped[str | None] = mapped_column(String(16))
    user_agent: Mapped[str | None] = mapped_column(String(500))
    success: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<AccessLog action={self.action} resource={self.resource_type}>"


class ExportRequest(TimestampMixin, Base):
    """Ledger row for one data-export run."""

    __tablename__ = "export_requests"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    format: Mapped[str] = mapped_column(String(10), nullable=False)
    scope: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(
        String(20), default=ExportRequestStatus.PENDING.value, nullable=False
    )
    requested_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    download_url: Mapped[str | None] = mapped_column(Text)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    file_size_bytes: Mapped[int | None] = mapped_column(Integer)
    record_count: Mapped[int | None] = mapped_column(Integer)
    error: Mapped[str | None] = mapped_column(String(100))

    def __repr__(self) -> str:
        return f"<ExportRequest user={self.user_id} status={self.status}>"

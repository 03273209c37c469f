"""DeletionRequest and RecoveryCode models: right-to-erasure workflow.

Neither table has a foreign key to users: both must outlive the user row
they describe.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from compliance.models.base import Base, JSONType, TimestampMixin, UTCDateTime
from compliance.models.enums import DeletionRequestStatus, RecoveryCodeStatus


class DeletionRequest(TimestampMixin, Base):
    """A user's request to delete some or all of their data."""

    __tablename__ = "deletion_requests"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    scope: Mapped[list] = mapped_column(JSONType, nullable=False)

    # Status tracking
    status: Mapped[str] = mapped_column(
        String(20), default=DeletionRequestStatus.PENDING.value, nullable=False, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    scheduled_deletion_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), index=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    # Recovery window
    can_recover: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recover_deadline: Mapped[datetime | None] = mapped_column(UTCDateTime())
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    cancellation_reason: Mapped[str | None] = mapped_column(String(100))

    # Outcome
    certificate_id: Mapped[str | None] = mapped_column(String(64))
    error: Mapped[str | None] = mapped_column(String(1000))

    def __repr__(self) -> str:
        return f"<DeletionRequest id={self.id} user={self.user_id} status={self.status}>"


class RecoveryCode(TimestampMixin, Base):
    """Six-digit code that lets a user cancel a scheduled deletion.

    Looked up by a salted hash of the email; the address itself is kept
    encrypted for the outbound notification.
    """

    __tablename__ = "recovery_codes"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    email_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    email_encrypted: Mapped[str | None] = mapped_column(Text)
    code: Mapped[str] = mapped_column(String(6), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=RecoveryCodeStatus.PENDING.value, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    deletion_request_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True))
    ip_address_hash: Mapped[str | None] = mapped_column(String(16))

    def __repr__(self) -> str:
        return f"<RecoveryCode user={self.user_id} status={self.status} attempts={self.attempts}>"

"""User-owned records in the primary store: training sessions, settings,
subscriptions and consent history.

Each table carries `user_id` so deletion can purge it by owner.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Float, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from compliance.models.base import Base, JSONType, TimestampMixin, UTCDateTime


class TrainingSession(TimestampMixin, Base):
    """One recorded workout session."""

    __tablename__ = "training_sessions"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    exercise_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="completed", nullable=False)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    duration_seconds: Mapped[int | None] = mapped_column(Integer)
    rep_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_score: Mapped[float | None] = mapped_column(Float)
    average_score: Mapped[float | None] = mapped_column(Float)

    def __repr__(self) -> str:
        return f"<TrainingSession user={self.user_id} exercise={self.exercise_type}>"


class UserSettings(TimestampMixin, Base):
    """Per-user preferences, one row per user."""

    __tablename__ = "user_settings"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, unique=True
    )
    notifications_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    reminder_time: Mapped[str | None] = mapped_column(String(5), comment="HH:MM")
    reminder_days: Mapped[list | None] = mapped_column(JSONType)
    language: Mapped[str | None] = mapped_column(String(10))
    theme: Mapped[str | None] = mapped_column(String(20))
    units: Mapped[str | None] = mapped_column(String(10))
    analytics_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    crash_reporting_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<UserSettings user={self.user_id}>"


class Subscription(TimestampMixin, Base):
    """Local mirror of a billing-processor subscription."""

    __tablename__ = "subscriptions"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    external_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True)
    plan: Mapped[str | None] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    store: Mapped[str | None] = mapped_column(String(30), comment="billing, app_store, play_store")
    start_date: Mapped[datetime | None] = mapped_column(UTCDateTime())
    expiration_date: Mapped[datetime | None] = mapped_column(UTCDateTime())

    def __repr__(self) -> str:
        return f"<Subscription user={self.user_id} status={self.status}>"


class ConsentRecord(TimestampMixin, Base):
    """An individual consent acceptance or withdrawal.

    Every consent change is recorded as a new row, never updated.
    """

    __tablename__ = "consent_records"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    document_type: Mapped[str] = mapped_column(String(50), nullable=False, comment="tos, privacy_policy")
    document_version: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False, comment="accept, withdraw")

    def __repr__(self) -> str:
        return f"<ConsentRecord type={self.document_type} action={self.action}>"

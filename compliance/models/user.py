"""User model: the account row every other user-data table hangs off."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from compliance.models.base import Base, TimestampMixin, UTCDateTime


class User(TimestampMixin, Base):
    """An end-user account in the primary store."""

    __tablename__ = "users"

    # Identity
    email: Mapped[str | None] = mapped_column(String(255), index=True)
    nickname: Mapped[str | None] = mapped_column(String(100))

    # Profile
    birth_year: Mapped[int | None] = mapped_column(Integer)
    gender: Mapped[str | None] = mapped_column(String(20))
    height_cm: Mapped[float | None] = mapped_column(Float)
    weight_kg: Mapped[float | None] = mapped_column(Float)
    fitness_level: Mapped[str | None] = mapped_column(String(20))
    language: Mapped[str | None] = mapped_column(String(10))

    # Deletion flag, mirrored from the open DeletionRequest
    deletion_scheduled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    scheduled_deletion_date: Mapped[datetime | None] = mapped_column(UTCDateTime())

    def __repr__(self) -> str:
        return f"<User id={self.id} deletion_scheduled={self.deletion_scheduled}>"

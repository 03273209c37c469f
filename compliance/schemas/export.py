"""Pydantic schemas for the portable data export.

Pure data classes. A domain that could not be collected is left as None
and omitted from the serialized export; an empty collection stays [].
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

EXPORTABLE_DATA_TYPES = ("profile", "sessions", "consents", "settings", "subscriptions", "analytics", "storage")


class ExportScope(BaseModel):
    """Which data goes into an export."""

    type: Literal["all", "date_range"] = "all"
    data_types: list[str] | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None

    @model_validator(mode="after")
    def _check(self) -> ExportScope:
        if self.type == "date_range" and self.start_date is None and self.end_date is None:
            msg = "date_range scope needs start_date or end_date"
            raise ValueError(msg)
        if self.data_types:
            unknown = set(self.data_types) - set(EXPORTABLE_DATA_TYPES)
            if unknown:
                msg = f"Unknown data types: {sorted(unknown)}"
                raise ValueError(msg)
        return self

    def includes(self, data_type: str) -> bool:
        return not self.data_types or data_type in self.data_types


class ExportProfile(BaseModel):
    user_id: str
    email: str | None = None
    nickname: str | None = None
    birth_year: int | None = None
    gender: str | None = None
    height_cm: float | None = None
    weight_kg: float | None = None
    fitness_level: str | None = None
    language: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ExportSession(BaseModel):
    id: str
    exercise_type: str
    status: str
    started_at: datetime
    ended_at: datetime | None = None
    duration_seconds: int | None = None
    rep_count: int = 0
    total_score: float | None = None
    average_score: float | None = None


class ExportConsent(BaseModel):
    id: str
    document_type: str
    document_version: str
    action: str
    recorded_at: datetime


class ExportSettings(BaseModel):
    notifications_enabled: bool
    reminder_time: str | None = None
    reminder_days: list[Any] | None = None
    language: str | None = None
    theme: str | None = None
    units: str | None = None
    analytics_enabled: bool
    crash_reporting_enabled: bool


class ExportSubscription(BaseModel):
    id: str
    plan: str | None = None
    status: str
    store: str | None = None
    start_date: datetime | None = None
    expiration_date: datetime | None = None


class ExerciseBreakdown(BaseModel):
    exercise_type: str
    session_count: int
    total_reps: int
    average_score: float | None = None


class PeriodProgress(BaseModel):
    """Aggregate for one ISO week ("2025-W07") or month ("2025-02")."""

    period: str
    session_count: int
    total_reps: int
    average_score: float | None = None


class AnalyticsSummary(BaseModel):
    total_sessions: int = 0
    total_reps: int = 0
    average_score: float | None = None
    exercise_breakdown: list[ExerciseBreakdown] = Field(default_factory=list)
    weekly_progress: list[PeriodProgress] = Field(default_factory=list)
    monthly_trends: list[PeriodProgress] = Field(default_factory=list)


class MediaFile(BaseModel):
    name: str
    size: int
    content_type: str | None = None
    created_at: datetime | None = None


class StorageExport(BaseModel):
    """Metadata about stored media. File bytes are not inlined."""

    profile_image: MediaFile | None = None
    files: list[MediaFile] = Field(default_factory=list)
    total_size_bytes: int = 0


class ExportDataset(BaseModel):
    """Everything collected for one user at one instant."""

    exported_at: datetime
    user_id: str
    format: str
    profile: ExportProfile | None = None
    sessions: list[ExportSession] | None = None
    consents: list[ExportConsent] | None = None
    settings: ExportSettings | None = None
    subscriptions: list[ExportSubscription] | None = None
    analytics: AnalyticsSummary | None = None
    storage: StorageExport | None = None

    @property
    def record_count(self) -> int:
        """Profile + sessions + consents + settings + subscriptions."""
        return (
            (1 if self.profile else 0)
            + len(self.sessions or [])
            + len(self.consents or [])
            + (1 if self.settings else 0)
            + len(self.subscriptions or [])
        )


class ExportResult(BaseModel):
    """Outcome of a full export run."""

    success: bool
    request_id: str
    download_url: str | None = None
    expires_at: datetime | None = None
    file_size_bytes: int | None = None
    record_count: int | None = None
    error: str | None = None

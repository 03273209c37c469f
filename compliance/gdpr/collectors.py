"""Per-domain readers that gather one user's data for export.

Primary-store readers let database errors propagate: an export built from
a half-read store is worse than a failed one. Storage and warehouse
readers are best effort and return None when their system is unavailable.
"""

from __future__ import annotations

import logging
import mimetypes
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from compliance.integrations.ports import ObjectStore, StoredObject, Warehouse
from compliance.models.activity import ConsentRecord, Subscription, TrainingSession, UserSettings
from compliance.models.user import User
from compliance.schemas.export import (
    AnalyticsSummary,
    ExerciseBreakdown,
    ExportConsent,
    ExportProfile,
    ExportScope,
    ExportSession,
    ExportSettings,
    ExportSubscription,
    MediaFile,
    PeriodProgress,
    StorageExport,
)
from compliance.security.hashing import anonymized_user_hash

logger = logging.getLogger(__name__)

PROFILE_IMAGE_STEM = "profile_image"


def user_media_prefix(user_id: object) -> str:
    return f"users/{user_id}/"


# ── Primary store ────────────────────────────────────────────────────


async def collect_profile(db: AsyncSession, user_id: uuid.UUID) -> ExportProfile | None:
    user = await db.get(User, user_id)
    if user is None:
        return None
    return ExportProfile(
        user_id=str(user.id),
        email=user.email,
        nickname=user.nickname,
        birth_year=user.birth_year,
        gender=user.gender,
        height_cm=user.height_cm,
        weight_kg=user.weight_kg,
        fitness_level=user.fitness_level,
        language=user.language,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


async def collect_sessions(
    db: AsyncSession, user_id: uuid.UUID, scope: ExportScope | None = None
) -> list[ExportSession]:
    stmt = select(TrainingSession).where(TrainingSession.user_id == user_id)
    if scope is not None and scope.type == "date_range":
        if scope.start_date is not None:
            stmt = stmt.where(TrainingSession.started_at >= scope.start_date)
        if scope.end_date is not None:
            stmt = stmt.where(TrainingSession.started_at <= scope.end_date)
    result = await db.execute(stmt.order_by(TrainingSession.started_at))
    return [
        ExportSession(
            id=str(s.id),
            exercise_type=s.exercise_type,
            status=s.status,
            started_at=s.started_at,
            ended_at=s.ended_at,
            duration_seconds=s.duration_seconds,
            rep_count=s.rep_count,
            total_score=s.total_score,
            average_score=s.average_score,
        )
        for s in result.scalars().all()
    ]


async def collect_consents(db: AsyncSession, user_id: uuid.UUID) -> list[ExportConsent]:
    result = await db.execute(
        select(ConsentRecord).where(ConsentRecord.user_id == user_id).order_by(ConsentRecord.created_at)
    )
    return [
        ExportConsent(
            id=str(c.id),
            document_type=c.document_type,
            document_version=c.document_version,
            action=c.action,
            recorded_at=c.created_at,
        )
        for c in result.scalars().all()
    ]


async def collect_settings(db: AsyncSession, user_id: uuid.UUID) -> ExportSettings | None:
    result = await db.execute(select(UserSettings).where(UserSettings.user_id == user_id))
    row = result.scalar_one_or_none()
    if row is None:
        return None
    return ExportSettings(
        notifications_enabled=row.notifications_enabled,
        reminder_time=row.reminder_time,
        reminder_days=row.reminder_days,
        language=row.language,
        theme=row.theme,
        units=row.units,
        analytics_enabled=row.analytics_enabled,
        crash_reporting_enabled=row.crash_reporting_enabled,
    )


async def collect_subscriptions(db: AsyncSession, user_id: uuid.UUID) -> list[ExportSubscription]:
    result = await db.execute(
        select(Subscription).where(Subscription.user_id == user_id).order_by(Subscription.created_at)
    )
    return [
        ExportSubscription(
            id=str(s.id),
            plan=s.plan,
            status=s.status,
            store=s.store,
            start_date=s.start_date,
            expiration_date=s.expiration_date,
        )
        for s in result.scalars().all()
    ]


# ── Object store ─────────────────────────────────────────────────────


def _media_file(obj: StoredObject) -> MediaFile:
    content_type = obj.content_type or mimetypes.guess_type(obj.name)[0]
    return MediaFile(name=obj.name, size=obj.size, content_type=content_type, created_at=obj.created_at)


def _is_profile_image(name: str) -> bool:
    return name.rsplit("/", 1)[-1].startswith(PROFILE_IMAGE_STEM)


async def collect_storage(store: ObjectStore, user_id: object) -> StorageExport | None:
    try:
        objects = await store.list_files(user_media_prefix(user_id))
    except Exception:
        logger.warning("Could not list media for user %s, omitting storage section", user_id, exc_info=True)
        return None

    files = [_media_file(obj) for obj in objects]
    profile_image = next((f for f in files if _is_profile_image(f.name)), None)
    return StorageExport(
        profile_image=profile_image,
        files=files,
        total_size_bytes=sum(f.size for f in files),
    )


async def fetch_profile_image(store: ObjectStore, image: MediaFile) -> bytes | None:
    try:
        return await store.download_file(image.name)
    except Exception:
        logger.warning("Could not download profile image %s", image.name, exc_info=True)
        return None


# ── Warehouse ────────────────────────────────────────────────────────

_TOTALS_SQL = """
SELECT COUNT(*) AS total_sessions,
       COALESCE(SUM(rep_count), 0) AS total_reps,
       AVG(average_score) AS average_score
FROM training_sessions
WHERE user_hash = :user_hash
"""

_BREAKDOWN_SQL = """
SELECT exercise_type,
       COUNT(*) AS session_count,
       COALESCE(SUM(rep_count), 0) AS total_reps,
       AVG(average_score) AS average_score
FROM training_sessions
WHERE user_hash = :user_hash
GROUP BY exercise_type
ORDER BY session_count DESC
"""

_PERIOD_SQL = """
SELECT to_char(started_at, '{pattern}') AS period,
       COUNT(*) AS session_count,
       COALESCE(SUM(rep_count), 0) AS total_reps,
       AVG(average_score) AS average_score
FROM training_sessions
WHERE user_hash = :user_hash
GROUP BY period
ORDER BY period DESC
LIMIT {limit}
"""


def _progress(rows: list[dict]) -> list[PeriodProgress]:
    return [
        PeriodProgress(
            period=str(row["period"]),
            session_count=int(row["session_count"]),
            total_reps=int(row["total_reps"]),
            average_score=float(row["average_score"]) if row["average_score"] is not None else None,
        )
        for row in rows
    ]


async def collect_analytics(warehouse: Warehouse, user_id: object) -> AnalyticsSummary | None:
    params = {"user_hash": anonymized_user_hash(user_id)}
    try:
        totals = await warehouse.run_query(_TOTALS_SQL, params)
        breakdown = await warehouse.run_query(_BREAKDOWN_SQL, params)
        weekly = await warehouse.run_query(_PERIOD_SQL.format(pattern='IYYY-"W"IW', limit=12), params)
        monthly = await warehouse.run_query(_PERIOD_SQL.format(pattern="YYYY-MM", limit=12), params)
    except Exception:
        logger.warning("Analytics unavailable for user %s, omitting analytics section", user_id, exc_info=True)
        return None

    head = totals[0] if totals else {}
    average = head.get("average_score")
    return AnalyticsSummary(
        total_sessions=int(head.get("total_sessions") or 0),
        total_reps=int(head.get("total_reps") or 0),
        average_score=float(average) if average is not None else None,
        exercise_breakdown=[
            ExerciseBreakdown(
                exercise_type=row["exercise_type"],
                session_count=int(row["session_count"]),
                total_reps=int(row["total_reps"]),
                average_score=float(row["average_score"]) if row["average_score"] is not None else None,
            )
            for row in breakdown
        ],
        weekly_progress=_progress(weekly),
        monthly_trends=_progress(monthly),
    )

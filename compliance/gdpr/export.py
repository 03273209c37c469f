"""Data export pipeline: collect → transform → archive → publish.

Collection, archiving and upload each fail the whole run; a failed run
is reported as ExportResult(success=False) with the stage that broke,
never raised to the caller.
"""

from __future__ import annotations

import io
import logging
import uuid
import zipfile
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from compliance.config import settings
from compliance.errors import RateLimitedError, ValidationError
from compliance.events import emit
from compliance.gdpr import collectors
from compliance.gdpr.formatters import SECTIONS, build_readme, section_text, transform
from compliance.integrations.ports import ObjectStore, Warehouse
from compliance.integrations.storage.client import exports_store, uploads_store
from compliance.integrations.warehouse.client import warehouse as default_warehouse
from compliance.models.base import utcnow
from compliance.models.enums import (
    AccessAction,
    AuditAction,
    ExportFailureReason,
    ExportFormat,
    ExportRequestStatus,
)
from compliance.models.records import ExportRequest
from compliance.schemas.events import EventType, SystemEvent
from compliance.schemas.export import ExportDataset, ExportResult, ExportScope
from compliance.security.audit import AuditEntry, audit_trail

logger = logging.getLogger(__name__)

_IMAGE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/heic": "heic",
}


@dataclass
class PublishedArchive:
    path: str
    download_url: str
    expires_at: datetime
    file_size_bytes: int


def export_path(user_id: object, request_id: str) -> str:
    return f"exports/{user_id}/{request_id}/export.zip"


def profile_image_extension(content_type: str | None) -> str:
    return _IMAGE_EXTENSIONS.get((content_type or "").lower(), "jpg")


class ExportPipeline:
    """Builds and publishes a user's portable data archive."""

    def __init__(
        self,
        media_store: ObjectStore | None = None,
        archive_store: ObjectStore | None = None,
        warehouse: Warehouse | None = None,
    ) -> None:
        self._media_store = media_store or uploads_store
        self._archive_store = archive_store or exports_store
        self._warehouse = warehouse or default_warehouse

    # ── Stages ───────────────────────────────────────────────────────

    async def collect(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        fmt: str = ExportFormat.JSON.value,
        scope: ExportScope | None = None,
        exported_at: datetime | None = None,
    ) -> ExportDataset:
        """Read every in-scope domain. Missing domains stay None."""
        scope = scope or ExportScope()
        dataset = ExportDataset(exported_at=exported_at or utcnow(), user_id=str(user_id), format=fmt)

        if scope.includes("profile"):
            dataset.profile = await collectors.collect_profile(db, user_id)
        if scope.includes("sessions"):
            dataset.sessions = await collectors.collect_sessions(db, user_id, scope)
        if scope.includes("consents"):
            dataset.consents = await collectors.collect_consents(db, user_id)
        if scope.includes("settings"):
            dataset.settings = await collectors.collect_settings(db, user_id)
        if scope.includes("subscriptions"):
            dataset.subscriptions = await collectors.collect_subscriptions(db, user_id)
        if scope.includes("storage"):
            dataset.storage = await collectors.collect_storage(self._media_store, user_id)
        if scope.includes("analytics"):
            dataset.analytics = await collectors.collect_analytics(self._warehouse, user_id)
        return dataset

    def transform(self, dataset: ExportDataset, fmt: str) -> str:
        return transform(dataset, fmt)

    def build_archive(
        self,
        dataset: ExportDataset,
        fmt: str,
        include_readme: bool = True,
        profile_image: bytes | None = None,
    ) -> bytes:
        """Zip the dataset as export_<date>/<section>.<fmt> plus optional README and image.

        Entry timestamps come from `dataset.exported_at`, so identical
        datasets produce identical archives.
        """
        folder = f"export_{dataset.exported_at:%Y-%m-%d}"
        stamp = dataset.exported_at.timetuple()[:6]
        buffer = io.BytesIO()

        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:

            def add(name: str, payload: str | bytes) -> None:
                info = zipfile.ZipInfo(f"{folder}/{name}", date_time=stamp)
                info.compress_type = zipfile.ZIP_DEFLATED
                archive.writestr(info, payload)

            if include_readme:
                add("README.txt", build_readme(dataset, fmt))
            for section in SECTIONS:
                if getattr(dataset, section) is not None:
                    add(f"{section}.{fmt}", section_text(dataset, section, fmt))
            if profile_image is not None:
                image = dataset.storage.profile_image if dataset.storage else None
                ext = profile_image_extension(image.content_type if image else None)
                add(f"media/profile_image.{ext}", profile_image)

        return buffer.getvalue()

    async def publish(self, user_id: object, request_id: str, archive: bytes) -> PublishedArchive:
        """Upload the archive and return a time-limited download link."""
        path = export_path(user_id, request_id)
        expires_in = settings.lifecycle.download_url_expiry_hours * 3600
        await self._archive_store.upload_file(
            path,
            archive,
            "application/zip",
            metadata={"user_id": str(user_id), "request_id": request_id},
        )
        url = await self._archive_store.signed_url(path, expires_in)
        return PublishedArchive(
            path=path,
            download_url=url,
            expires_at=utcnow() + timedelta(seconds=expires_in),
            file_size_bytes=len(archive),
        )

    # ── Orchestration ────────────────────────────────────────────────

    async def execute_full_export(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        request_id: str,
        fmt: str = ExportFormat.JSON.value,
        scope: ExportScope | None = None,
    ) -> ExportResult:
        """Run all four stages and report the outcome."""
        try:
            dataset = await self.collect(db, user_id, fmt, scope)
        except Exception:
            logger.exception("Export collection failed for user %s", user_id)
            return await self._failed(user_id, request_id, ExportFailureReason.COLLECTION_FAILED)

        try:
            image_bytes = None
            if dataset.storage and dataset.storage.profile_image:
                image_bytes = await collectors.fetch_profile_image(self._media_store, dataset.storage.profile_image)
            archive = self.build_archive(dataset, fmt, include_readme=True, profile_image=image_bytes)
        except Exception:
            logger.exception("Export archive build failed for user %s", user_id)
            return await self._failed(user_id, request_id, ExportFailureReason.ARCHIVE_FAILED)

        try:
            published = await self.publish(user_id, request_id, archive)
        except Exception:
            logger.exception("Export upload failed for user %s", user_id)
            return await self._failed(user_id, request_id, ExportFailureReason.UPLOAD_FAILED)

        await emit(SystemEvent(
            event_type=EventType.EXPORT_COMPLETED,
            user_id=user_id,
            data={
                "request_id": request_id,
                "format": fmt,
                "record_count": dataset.record_count,
                "file_size_bytes": published.file_size_bytes,
                "expires_at": published.expires_at.isoformat(),
            },
            source_module="gdpr.export",
        ))
        logger.info("Export %s completed for user %s (%d records)", request_id, user_id, dataset.record_count)

        return ExportResult(
            success=True,
            request_id=request_id,
            download_url=published.download_url,
            expires_at=published.expires_at,
            file_size_bytes=published.file_size_bytes,
            record_count=dataset.record_count,
        )

    async def _failed(self, user_id: uuid.UUID, request_id: str, reason: ExportFailureReason) -> ExportResult:
        await emit(SystemEvent(
            event_type=EventType.EXPORT_FAILED,
            user_id=user_id,
            data={"request_id": request_id, "reason": reason.value},
            source_module="gdpr.export",
        ))
        return ExportResult(success=False, request_id=request_id, error=reason.value)

    async def request_export(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        fmt: str = ExportFormat.JSON.value,
        scope: ExportScope | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ExportResult:
        """Rate-limited entry point that records the run in export_requests.

        Raises:
            ValidationError: unknown format.
            RateLimitedError: a non-failed export was requested within the window.
        """
        if fmt not in {f.value for f in ExportFormat}:
            raise ValidationError("invalid_format", f"Unsupported export format: {fmt}")

        now = utcnow()
        window = timedelta(hours=settings.lifecycle.export_rate_limit_hours)
        recent = await db.execute(
            select(ExportRequest.requested_at)
            .where(
                ExportRequest.user_id == user_id,
                ExportRequest.status != ExportRequestStatus.FAILED.value,
                ExportRequest.requested_at > now - window,
            )
            .order_by(ExportRequest.requested_at.desc())
            .limit(1)
        )
        last = recent.scalar_one_or_none()
        if last is not None:
            raise RateLimitedError(retry_after=max(int((last + window - now).total_seconds()), 1))

        ledger = ExportRequest(
            user_id=user_id,
            format=fmt,
            scope=scope.model_dump(mode="json") if scope else None,
            status=ExportRequestStatus.PROCESSING.value,
            requested_at=now,
        )
        db.add(ledger)
        await db.flush()

        result = await self.execute_full_export(db, user_id, str(ledger.id), fmt, scope)

        ledger.completed_at = utcnow()
        if result.success:
            ledger.status = ExportRequestStatus.COMPLETED.value
            ledger.download_url = result.download_url
            ledger.expires_at = result.expires_at
            ledger.file_size_bytes = result.file_size_bytes
            ledger.record_count = result.record_count
        else:
            ledger.status = ExportRequestStatus.FAILED.value
            ledger.error = result.error
        await db.flush()

        await audit_trail.record_access(
            user_id,
            AccessAction.EXPORT.value,
            "export",
            resource_id=str(ledger.id),
            ip_address=ip_address,
            user_agent=user_agent,
            success=result.success,
            error_message=result.error,
        )
        await audit_trail.record(AuditEntry(
            user_id=user_id,
            action=(AuditAction.EXPORT_COMPLETED if result.success else AuditAction.EXPORT_FAILED).value,
            resource_type="export_request",
            resource_id=str(ledger.id),
            ip_address=ip_address,
            user_agent=user_agent,
            details={"format": fmt, "record_count": result.record_count},
            success=result.success,
            error_message=result.error,
        ))
        return result

    async def cleanup_expired(self, retention_days: int | None = None, now: datetime | None = None) -> int:
        """Delete archives older than the retention window. Returns files removed.

        Per-file failures are logged and skipped.
        """
        retention = settings.lifecycle.export_retention_days if retention_days is None else retention_days
        cutoff = (now or utcnow()) - timedelta(days=retention)
        deleted = 0
        for obj in await self._archive_store.list_files("exports/"):
            if obj.created_at is None or obj.created_at >= cutoff:
                continue
            try:
                await self._archive_store.delete_file(obj.name)
                deleted += 1
            except Exception:
                logger.warning("Failed to delete expired export %s", obj.name, exc_info=True)
        logger.info("Export cleanup removed %d archive(s) older than %s", deleted, cutoff.isoformat())
        return deleted


export_pipeline = ExportPipeline()

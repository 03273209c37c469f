"""SQLAlchemy ORM models for the data lifecycle service.

Import all models here so Alembic and Base.metadata.create_all() discover them.
"""

from __future__ import annotations

from compliance.models.activity import ConsentRecord, Subscription, TrainingSession, UserSettings
from compliance.models.base import Base
from compliance.models.deletion import DeletionRequest, RecoveryCode
from compliance.models.enums import (
    OPEN_DELETION_STATUSES,
    AccessAction,
    AuditAction,
    DeletionRequestStatus,
    DeletionScope,
    ExportFailureReason,
    ExportFormat,
    ExportRequestStatus,
    RecoveryCodeStatus,
    RecoveryFailureReason,
    WebhookEventStatus,
)
from compliance.models.records import (
    AccessLog,
    AuditLog,
    DeletionCertificate,
    ExportRequest,
    WebhookEvent,
)
from compliance.models.user import User

__all__ = [
    # Base
    "Base",
    # User data
    "User",
    "TrainingSession",
    "UserSettings",
    "Subscription",
    "ConsentRecord",
    # Compliance records
    "DeletionRequest",
    "RecoveryCode",
    "DeletionCertificate",
    "WebhookEvent",
    "AuditLog",
    "AccessLog",
    "ExportRequest",
    # Enums
    "OPEN_DELETION_STATUSES",
    "AccessAction",
    "AuditAction",
    "DeletionRequestStatus",
    "DeletionScope",
    "ExportFailureReason",
    "ExportFormat",
    "ExportRequestStatus",
    "RecoveryCodeStatus",
    "RecoveryFailureReason",
    "WebhookEventStatus",
]

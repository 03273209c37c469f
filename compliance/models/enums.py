"""Domain enums used across SQLAlchemy models and Pydantic schemas.

All enums use str mixin so values serialize directly into JSON and String columns.
"""

from __future__ import annotations

from enum import Enum


class DeletionRequestStatus(str, Enum):
    """Lifecycle of a deletion request.

    pending/scheduled are the only states a user can still recover from.
    """

    PENDING = "pending"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


OPEN_DELETION_STATUSES = (DeletionRequestStatus.PENDING.value, DeletionRequestStatus.SCHEDULED.value)


class DeletionScope(str, Enum):
    """Which parts of a user's data a deletion request covers."""

    ALL = "all"
    SESSIONS = "sessions"
    SETTINGS = "settings"
    SUBSCRIPTIONS = "subscriptions"
    CONSENTS = "consents"


class RecoveryCodeStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"
    INVALIDATED = "invalidated"


class RecoveryFailureReason(str, Enum):
    """Why an account recovery attempt was refused."""

    INVALID_CODE = "invalid_code"
    EXPIRED_CODE = "expired_code"
    NO_MATCHING_SCHEDULE = "no_matching_schedule"
    DEADLINE_PASSED = "deadline_passed"
    RECOVERY_FAILED = "recovery_failed"


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"


class ExportRequestStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ExportFailureReason(str, Enum):
    """Stage at which an export run stopped."""

    COLLECTION_FAILED = "collection_failed"
    ARCHIVE_FAILED = "archive_failed"
    UPLOAD_FAILED = "upload_failed"


class WebhookEventStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class AuditAction(str, Enum):
    """Actions written to the compliance audit trail."""

    DELETION_REQUESTED = "deletion_requested"
    DELETION_SCHEDULED = "deletion_scheduled"
    DELETION_CANCELLED = "deletion_cancelled"
    DELETION_COMPLETED = "deletion_completed"
    DELETION_FAILED = "deletion_failed"
    RECOVERY_CODE_ISSUED = "recovery_code_issued"
    ACCOUNT_RECOVERED = "account_recovered"
    EXPORT_REQUESTED = "export_requested"
    EXPORT_COMPLETED = "export_completed"
    EXPORT_FAILED = "export_failed"
    CERTIFICATE_ISSUED = "certificate_issued"
    WEBHOOK_PROCESSED = "webhook_processed"
    SYSTEM_EVENT = "system_event"


class AccessAction(str, Enum):
    """Read/write operations recorded in the access log."""

    READ = "read"
    EXPORT = "export"
    DELETE = "delete"
    VERIFY = "verify"

"""SystemEvent schema: what the lifecycle services publish on the event bus.

The audit trail subscribes to every event; notification delivery (email,
push) subscribes to the ones it cares about.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """All event types emitted by the system."""

    # Deletion lifecycle
    DELETION_REQUESTED = "gdpr.deletion_requested"
    DELETION_SCHEDULED = "gdpr.deletion_scheduled"
    DELETION_CANCELLED = "gdpr.deletion_cancelled"
    DELETION_COMPLETED = "gdpr.deletion_completed"
    DELETION_FAILED = "gdpr.deletion_failed"
    RECOVERY_CODE_ISSUED = "gdpr.recovery_code_issued"

    # Export
    EXPORT_COMPLETED = "gdpr.export_completed"
    EXPORT_FAILED = "gdpr.export_failed"

    # Billing
    BILLING_WEBHOOK_PROCESSED = "billing.webhook_processed"

    # System
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"
    SYSTEM_MAINTENANCE = "system.maintenance"


class SystemEvent(BaseModel):
    """Event published by a lifecycle service.

    Immutable once created. `data` must never carry raw secrets such as a
    recovery code; subscribers that need one look it up by id.
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    user_id: uuid.UUID | None = None
    actor_id: str | None = None

    # Flexible payload
    data: dict[str, Any] = Field(default_factory=dict)

    source_module: str | None = Field(default=None, description="Module that emitted this event")

    model_config = {"frozen": True}

"""Deletion scheduling: request intake, the user deletion flag, and the
claim/finish transitions around an executor run.

Status moves pending/scheduled → processing → completed|failed, or
pending/scheduled → cancelled. Every move out of an open state is a
compare-and-set on the current status, so two workers cannot both own a
request. A request left in processing past the timeout is resumed by
the sweep; every purge step tolerates data that is already gone.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from compliance.config import settings
from compliance.errors import ValidationError
from compliance.events import emit
from compliance.gdpr.executor import DeletionExecutor, DeletionResult, deletion_executor
from compliance.gdpr.expiry import is_expired
from compliance.gdpr.recovery import RecoveryCodeManager, recovery_manager
from compliance.gdpr.scope import is_full_scope, validate_scope
from compliance.models.base import utcnow
from compliance.models.deletion import DeletionRequest
from compliance.models.enums import OPEN_DELETION_STATUSES, AuditAction, DeletionRequestStatus
from compliance.models.user import User
from compliance.schemas.events import EventType, SystemEvent
from compliance.security.audit import AuditEntry, audit_trail

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 1000

USER_CANCELLATION_REASON = "user_cancelled"


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Passed as scheduled_date when the caller does not want to touch the date
UNSET = _Unset()


@dataclass
class DeletionStatus:
    scheduled: bool
    scheduled_date: datetime | None


@dataclass
class RequestStatus:
    """What a user sees about one of their deletion requests."""

    request_id: uuid.UUID
    status: str
    scope: list[str]
    scheduled_deletion_date: datetime | None
    can_recover: bool
    recover_deadline: datetime | None
    completed_at: datetime | None = None
    certificate_id: str | None = None
    error: str | None = None


@dataclass
class ScheduleOutcome:
    request: DeletionRequest
    recovery_code_id: uuid.UUID | None = None
    result: DeletionResult | None = None


class DeletionScheduler:
    """Owns DeletionRequest state and the user's deletion flag."""

    def __init__(
        self,
        executor: DeletionExecutor | None = None,
        recovery: RecoveryCodeManager | None = None,
    ) -> None:
        self._executor = executor or deletion_executor
        self._recovery = recovery or recovery_manager

    # ── Intake ───────────────────────────────────────────────────────

    async def request_deletion(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        scope: list[str],
        immediate: bool = False,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ScheduleOutcome:
        """Open a deletion request.

        Scheduled requests get a grace period and, for full deletions with a
        known email, a recovery code. Immediate requests skip the grace period
        and run the executor now; the request row is committed first.

        Raises:
            ValidationError: bad scope, or the user already has an open request.
        """
        scope = validate_scope(scope)
        existing = await db.scalar(
            select(DeletionRequest.id).where(
                DeletionRequest.user_id == user_id,
                DeletionRequest.status.in_((*OPEN_DELETION_STATUSES, DeletionRequestStatus.PROCESSING.value)),
            ).limit(1)
        )
        if existing is not None:
            raise ValidationError("deletion_already_requested", "An open deletion request already exists")

        now = utcnow()
        request = DeletionRequest(
            user_id=user_id,
            scope=scope,
            status=DeletionRequestStatus.PENDING.value,
            requested_at=now,
            can_recover=not immediate,
        )
        if not immediate:
            deadline = now + timedelta(days=settings.lifecycle.deletion_grace_period_days)
            request.status = DeletionRequestStatus.SCHEDULED.value
            request.scheduled_deletion_date = deadline
            request.recover_deadline = deadline
        db.add(request)
        await db.flush()

        await audit_trail.record(AuditEntry(
            user_id=user_id,
            action=(AuditAction.DELETION_REQUESTED if immediate else AuditAction.DELETION_SCHEDULED).value,
            resource_type="deletion_request",
            resource_id=str(request.id),
            new_values={"status": request.status, "scope": scope},
            ip_address=ip_address,
            user_agent=user_agent,
        ))
        await emit(SystemEvent(
            event_type=EventType.DELETION_REQUESTED if immediate else EventType.DELETION_SCHEDULED,
            user_id=user_id,
            data={
                "request_id": str(request.id),
                "scope": scope,
                "scheduled_deletion_date": (
                    request.scheduled_deletion_date.isoformat() if request.scheduled_deletion_date else None
                ),
            },
            source_module="gdpr.scheduler",
        ))

        if immediate:
            result = await self.process_request(db, request.id, from_statuses=(DeletionRequestStatus.PENDING.value,))
            await db.refresh(request)
            return ScheduleOutcome(request=request, result=result)

        await self.set_deletion_flag(db, user_id, True, request.scheduled_deletion_date)

        code_id = None
        user = await db.get(User, user_id)
        if user is not None and user.email and is_full_scope(scope):
            issued = await self._recovery.issue(db, user_id, user.email, request.id, ip_address)
            code_id = issued.code_id

        logger.info("Deletion %s scheduled for user %s at %s", request.id, user_id, request.scheduled_deletion_date)
        return ScheduleOutcome(request=request, recovery_code_id=code_id)

    # ── User flag ────────────────────────────────────────────────────

    async def set_deletion_flag(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        scheduled: bool,
        scheduled_date: datetime | None | _Unset = UNSET,
    ) -> bool:
        """Set the user's deletion flag.

        scheduled_date=None clears the date. Leaving it UNSET keeps the
        stored date when scheduling and clears it when unscheduling.
        Returns False when the user row does not exist.
        """
        values: dict[str, object] = {"deletion_scheduled": scheduled}
        if scheduled_date is UNSET:
            if not scheduled:
                values["scheduled_deletion_date"] = None
        else:
            values["scheduled_deletion_date"] = scheduled_date
        outcome = await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        return outcome.rowcount > 0  # type: ignore[attr-defined]

    async def get_deletion_status(self, db: AsyncSession, user_id: uuid.UUID) -> DeletionStatus:
        # Reload: the flag is written with bulk UPDATEs
        user = await db.get(User, user_id, populate_existing=True)
        if user is None:
            return DeletionStatus(scheduled=False, scheduled_date=None)
        return DeletionStatus(scheduled=user.deletion_scheduled, scheduled_date=user.scheduled_deletion_date)

    # ── User cancel ──────────────────────────────────────────────────

    async def cancel_deletion(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        request_id: uuid.UUID,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> DeletionRequest:
        """Cancel the user's own request while it is still recoverable.

        Raises:
            ValidationError: `not_found`, `permission_denied`,
                `already_completed`, `already_cancelled`, `processing`,
                `not_recoverable` or `deadline_passed`.
        """
        now = now or utcnow()
        request = await db.get(DeletionRequest, request_id, populate_existing=True)
        if request is None:
            raise ValidationError("not_found", "Deletion request not found")
        if request.user_id != user_id:
            raise ValidationError("permission_denied", "Deletion request belongs to another user")
        if request.status == DeletionRequestStatus.COMPLETED.value:
            raise ValidationError("already_completed", "Deletion already completed")
        if request.status == DeletionRequestStatus.CANCELLED.value:
            raise ValidationError("already_cancelled", "Deletion already cancelled")
        if request.status == DeletionRequestStatus.PROCESSING.value:
            raise ValidationError("processing", "Deletion is in progress")
        if not request.can_recover or request.status not in OPEN_DELETION_STATUSES:
            raise ValidationError("not_recoverable", "Deletion request cannot be cancelled")
        if is_expired(request, now, field="recover_deadline"):
            raise ValidationError("deadline_passed", "Cancellation deadline has passed")

        previous_status = request.status
        outcome = await db.execute(
            update(DeletionRequest)
            .where(
                DeletionRequest.id == request_id,
                DeletionRequest.status.in_(OPEN_DELETION_STATUSES),
            )
            .values(
                status=DeletionRequestStatus.CANCELLED.value,
                cancelled_at=now,
                cancellation_reason=reason or USER_CANCELLATION_REASON,
                can_recover=False,
            )
            .execution_options(synchronize_session="fetch")
        )
        if outcome.rowcount != 1:  # type: ignore[attr-defined]
            # Claimed by a sweep between the read and the update
            raise ValidationError("processing", "Deletion is in progress")
        await self.set_deletion_flag(db, user_id, False)
        await db.flush()
        await db.refresh(request)

        await emit(SystemEvent(
            event_type=EventType.DELETION_CANCELLED,
            user_id=user_id,
            data={"request_id": str(request_id), "reason": request.cancellation_reason},
            source_module="gdpr.scheduler",
        ))
        await audit_trail.record(AuditEntry(
            user_id=user_id,
            action=AuditAction.DELETION_CANCELLED.value,
            resource_type="deletion_request",
            resource_id=str(request_id),
            previous_values={"status": previous_status},
            new_values={"status": request.status, "reason": request.cancellation_reason},
        ))
        logger.info("Deletion request %s cancelled by user %s", request_id, user_id)
        return request

    async def get_request_status(
        self, db: AsyncSession, user_id: uuid.UUID, request_id: uuid.UUID | None = None
    ) -> RequestStatus | None:
        """Status of one request, or of the user's latest active one when no id is given."""
        if request_id is not None:
            request = await db.get(DeletionRequest, request_id, populate_existing=True)
        else:
            request = await db.scalar(
                select(DeletionRequest)
                .where(
                    DeletionRequest.user_id == user_id,
                    DeletionRequest.status.in_((*OPEN_DELETION_STATUSES, DeletionRequestStatus.PROCESSING.value)),
                )
                .order_by(DeletionRequest.requested_at.desc())
                .limit(1)
            )
        if request is None:
            return None
        if request.user_id != user_id:
            raise ValidationError("permission_denied", "Deletion request belongs to another user")
        return RequestStatus(
            request_id=request.id,
            status=request.status,
            scope=list(request.scope),
            scheduled_deletion_date=request.scheduled_deletion_date,
            can_recover=request.can_recover,
            recover_deadline=request.recover_deadline,
            completed_at=request.completed_at,
            certificate_id=request.certificate_id,
            error=request.error,
        )

    # ── Sweep support ────────────────────────────────────────────────

    async def find_due_requests(
        self, db: AsyncSession, now: datetime | None = None, limit: int | None = None
    ) -> list[DeletionRequest]:
        """Scheduled requests whose grace period has run out, oldest first."""
        result = await db.execute(
            select(DeletionRequest)
            .where(
                DeletionRequest.status == DeletionRequestStatus.SCHEDULED.value,
                DeletionRequest.scheduled_deletion_date <= (now or utcnow()),
            )
            .order_by(DeletionRequest.scheduled_deletion_date)
            .limit(limit or settings.lifecycle.expired_schedule_batch)
        )
        return list(result.scalars().all())

    async def find_expired_schedules(self, db: AsyncSession, now: datetime | None = None) -> list[uuid.UUID]:
        """User ids whose scheduled deletion date has passed."""
        return [request.user_id for request in await self.find_due_requests(db, now)]

    async def claim(
        self,
        db: AsyncSession,
        request_id: uuid.UUID,
        from_statuses: tuple[str, ...] = (DeletionRequestStatus.SCHEDULED.value,),
    ) -> bool:
        """Move a request to processing if it is still in `from_statuses`.

        Exactly one concurrent caller gets True.
        """
        outcome = await db.execute(
            update(DeletionRequest)
            .where(DeletionRequest.id == request_id, DeletionRequest.status.in_(from_statuses))
            .values(
                status=DeletionRequestStatus.PROCESSING.value,
                processing_started_at=utcnow(),
                can_recover=False,
            )
        )
        return outcome.rowcount == 1  # type: ignore[attr-defined]

    async def complete(self, db: AsyncSession, request_id: uuid.UUID, certificate_id: str | None) -> bool:
        outcome = await db.execute(
            update(DeletionRequest)
            .where(
                DeletionRequest.id == request_id,
                DeletionRequest.status == DeletionRequestStatus.PROCESSING.value,
            )
            .values(
                status=DeletionRequestStatus.COMPLETED.value,
                completed_at=utcnow(),
                certificate_id=certificate_id,
            )
        )
        return outcome.rowcount == 1  # type: ignore[attr-defined]

    async def fail(
        self, db: AsyncSession, request_id: uuid.UUID, error: str, certificate_id: str | None = None
    ) -> bool:
        outcome = await db.execute(
            update(DeletionRequest)
            .where(
                DeletionRequest.id == request_id,
                DeletionRequest.status == DeletionRequestStatus.PROCESSING.value,
            )
            .values(
                status=DeletionRequestStatus.FAILED.value,
                completed_at=utcnow(),
                error=error[:_MAX_ERROR_LENGTH],
                certificate_id=certificate_id,
            )
        )
        return outcome.rowcount == 1  # type: ignore[attr-defined]

    async def process_request(
        self,
        db: AsyncSession,
        request_id: uuid.UUID,
        from_statuses: tuple[str, ...] = (DeletionRequestStatus.SCHEDULED.value,),
    ) -> DeletionResult | None:
        """Claim, execute and finalize one request.

        Returns None when another worker (or a recovery) got there first.
        """
        if not await self.claim(db, request_id, from_statuses):
            logger.info("Deletion request %s already claimed or cancelled, skipping", request_id)
            return None
        return await self._run_claimed(db, request_id)

    # ── Stale processing ─────────────────────────────────────────────

    def _stale_cutoff(self, now: datetime | None) -> datetime:
        return (now or utcnow()) - timedelta(minutes=settings.lifecycle.processing_timeout_minutes)

    async def find_stale_requests(
        self, db: AsyncSession, now: datetime | None = None, limit: int | None = None
    ) -> list[DeletionRequest]:
        """Requests stuck in processing past the timeout, e.g. after a worker crash."""
        result = await db.execute(
            select(DeletionRequest)
            .where(
                DeletionRequest.status == DeletionRequestStatus.PROCESSING.value,
                DeletionRequest.processing_started_at <= self._stale_cutoff(now),
            )
            .order_by(DeletionRequest.processing_started_at)
            .limit(limit or settings.lifecycle.expired_schedule_batch)
        )
        return list(result.scalars().all())

    async def resume_stale(
        self, db: AsyncSession, request_id: uuid.UUID, now: datetime | None = None
    ) -> DeletionResult | None:
        """Re-run the executor for a request abandoned mid-purge.

        The takeover is a compare-and-set on `processing_started_at`, so
        only one sweep resumes a given request. Every purge step tolerates
        data that is already gone.
        """
        outcome = await db.execute(
            update(DeletionRequest)
            .where(
                DeletionRequest.id == request_id,
                DeletionRequest.status == DeletionRequestStatus.PROCESSING.value,
                DeletionRequest.processing_started_at <= self._stale_cutoff(now),
            )
            .values(processing_started_at=utcnow())
        )
        if outcome.rowcount != 1:  # type: ignore[attr-defined]
            return None
        logger.warning("Resuming deletion request %s left in processing", request_id)
        return await self._run_claimed(db, request_id)

    async def _run_claimed(self, db: AsyncSession, request_id: uuid.UUID) -> DeletionResult:
        # Commit the claim first so a failed purge cannot undo it
        await db.commit()

        request = await db.get(DeletionRequest, request_id)
        # Plain copies: a failed purge rolls the session back and expires the row
        user_id, scope = request.user_id, list(request.scope)
        result = await self._executor.execute(db, user_id, str(request_id), scope)

        if result.success:
            await self.complete(db, request_id, result.certificate_id)
            if not is_full_scope(result.scope):
                await self.set_deletion_flag(db, user_id, False)
            event_type, action = EventType.DELETION_COMPLETED, AuditAction.DELETION_COMPLETED
        else:
            await self.fail(db, request_id, "; ".join(result.errors) or "deletion failed", result.certificate_id)
            event_type, action = EventType.DELETION_FAILED, AuditAction.DELETION_FAILED
        await db.commit()

        await emit(SystemEvent(
            event_type=event_type,
            user_id=user_id,
            data={
                "request_id": str(request_id),
                "certificate_id": result.certificate_id,
                "errors": result.errors,
            },
            source_module="gdpr.scheduler",
        ))
        await audit_trail.record(AuditEntry(
            user_id=user_id,
            action=action.value,
            resource_type="deletion_request",
            resource_id=str(request_id),
            new_values={"certificate_id": result.certificate_id},
            details={"errors": result.errors},
            success=result.success,
            error_message="; ".join(result.errors) or None,
        ))
        return result


deletion_scheduler = DeletionScheduler()

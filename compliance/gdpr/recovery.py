"""Recovery codes: let a user cancel a scheduled deletion by email.

Codes are six random digits, one live code per user, valid for a limited
time and a limited number of wrong guesses. Redeeming a valid code
cancels the open deletion request and clears the user's deletion flag.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from compliance.config import settings
from compliance.errors import RateLimitedError
from compliance.events import emit
from compliance.gdpr.expiry import is_expired
from compliance.models.base import utcnow
from compliance.models.deletion import DeletionRequest, RecoveryCode
from compliance.models.enums import (
    OPEN_DELETION_STATUSES,
    AuditAction,
    DeletionRequestStatus,
    RecoveryCodeStatus,
    RecoveryFailureReason,
)
from compliance.models.user import User
from compliance.schemas.events import EventType, SystemEvent
from compliance.security.audit import AuditEntry, audit_trail
from compliance.security.encryption import RECOVERY_EMAIL_CONTEXT, field_encryptor
from compliance.security.hashing import hash_email, hash_ip_address, normalize_email
from compliance.security.rate_limiter import RateLimiter, rate_limiter

logger = logging.getLogger(__name__)

CANCELLATION_REASON = "user_recovery"


def generate_code() -> str:
    """Uniformly random six-digit code, zero-padded."""
    return f"{secrets.randbelow(1_000_000):06d}"


def _mark_verified(code: RecoveryCode) -> None:
    code.status = RecoveryCodeStatus.VERIFIED.value
    code.attempts += 1


@dataclass
class IssuedCode:
    code_id: uuid.UUID
    code: str
    expires_at: datetime


@dataclass
class CodeVerification:
    valid: bool
    remaining_attempts: int = 0
    reason: RecoveryFailureReason | None = None
    recovery_code: RecoveryCode | None = None
    deletion_request: DeletionRequest | None = None


@dataclass
class RecoveryResult:
    success: bool
    reason: RecoveryFailureReason | None = None
    remaining_attempts: int | None = None
    deletion_request_id: str | None = None


class RecoveryCodeManager:
    """Issues, verifies and redeems recovery codes."""

    def __init__(self, limiter: RateLimiter | None = None) -> None:
        self._rate_limiter = limiter or rate_limiter

    # ── Issue ────────────────────────────────────────────────────────

    async def issue(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        email: str,
        deletion_request_id: uuid.UUID | None = None,
        ip_address: str | None = None,
    ) -> IssuedCode:
        """Create a fresh code and invalidate any earlier pending one."""
        await db.execute(
            update(RecoveryCode)
            .where(
                RecoveryCode.user_id == user_id,
                RecoveryCode.status == RecoveryCodeStatus.PENDING.value,
            )
            .values(status=RecoveryCodeStatus.INVALIDATED.value)
        )

        expires_at = utcnow() + timedelta(hours=settings.lifecycle.recovery_code_expiry_hours)
        row = RecoveryCode(
            user_id=user_id,
            email_hash=hash_email(email),
            email_encrypted=field_encryptor.encrypt(normalize_email(email), RECOVERY_EMAIL_CONTEXT),
            code=generate_code(),
            status=RecoveryCodeStatus.PENDING.value,
            attempts=0,
            max_attempts=settings.lifecycle.recovery_code_max_attempts,
            expires_at=expires_at,
            deletion_request_id=deletion_request_id,
            ip_address_hash=hash_ip_address(ip_address),
        )
        db.add(row)
        await db.flush()

        # The code itself stays out of the event; the mailer reads it by id.
        await emit(SystemEvent(
            event_type=EventType.RECOVERY_CODE_ISSUED,
            user_id=user_id,
            data={"code_id": str(row.id), "expires_at": expires_at.isoformat()},
            source_module="gdpr.recovery",
        ))
        await audit_trail.record(AuditEntry(
            user_id=user_id,
            action=AuditAction.RECOVERY_CODE_ISSUED.value,
            resource_type="recovery_code",
            resource_id=str(row.id),
            ip_address=ip_address,
        ))
        logger.info("Recovery code issued for user %s (expires %s)", user_id, expires_at.isoformat())
        return IssuedCode(code_id=row.id, code=row.code, expires_at=expires_at)

    async def request_code(
        self, db: AsyncSession, email: str, ip_address: str | None = None
    ) -> IssuedCode | None:
        """Rate-limited "send me a code" entry point.

        Returns None when the email has no recoverable deletion; callers
        should answer the same way in both cases.

        Raises:
            RateLimitedError: too many requests for this email in the window.
        """
        allowed, retry_after = await self._rate_limiter.check(
            f"recovery:{hash_email(email)}",
            limit=settings.lifecycle.recovery_code_rate_limit_count,
            window=settings.lifecycle.recovery_code_rate_limit_hours * 3600,
        )
        if not allowed:
            raise RateLimitedError(retry_after)

        found = await self.find_scheduled_deletion_by_email(db, email)
        if found is None:
            logger.info("Recovery code requested for an email with no open deletion")
            return None
        user, request = found
        return await self.issue(db, user.id, email, deletion_request_id=request.id, ip_address=ip_address)

    async def find_scheduled_deletion_by_email(
        self, db: AsyncSession, email: str
    ) -> tuple[User, DeletionRequest] | None:
        result = await db.execute(select(User).where(User.email == normalize_email(email)).limit(1))
        user = result.scalar_one_or_none()
        if user is None:
            return None
        request = await self._latest_open_request(db, user.id)
        if request is None or not request.can_recover or is_expired(request, field="recover_deadline"):
            return None
        return user, request

    # ── Verify ───────────────────────────────────────────────────────

    async def verify(
        self,
        db: AsyncSession,
        email: str,
        code: str,
        now: datetime | None = None,
        consume: bool = True,
    ) -> CodeVerification:
        """Check `code` against the latest pending code for `email`.

        A miss counts against the pending code's attempt budget and
        invalidates it once the budget is spent. An expired code is
        flipped to `expired` when it is read. With consume=False a match
        leaves the code pending; the caller marks it once it has acted.
        """
        now = now or utcnow()
        email_hash = hash_email(email)

        match = await self._latest_pending(db, email_hash, code=code)
        if match is None:
            return await self._register_miss(db, email_hash, now)

        if is_expired(match, now):
            match.status = RecoveryCodeStatus.EXPIRED.value
            await db.flush()
            return CodeVerification(valid=False, reason=RecoveryFailureReason.EXPIRED_CODE)

        request = None
        if match.deletion_request_id is not None:
            request = await db.get(DeletionRequest, match.deletion_request_id)
        if request is None:
            request = await self._latest_open_request(db, match.user_id)

        if consume:
            _mark_verified(match)
            await db.flush()
        return CodeVerification(
            valid=True,
            remaining_attempts=max(match.max_attempts - match.attempts, 0),
            recovery_code=match,
            deletion_request=request,
        )

    async def _register_miss(self, db: AsyncSession, email_hash: str, now: datetime) -> CodeVerification:
        pending = await self._latest_pending(db, email_hash)
        if pending is None:
            return CodeVerification(valid=False, reason=RecoveryFailureReason.INVALID_CODE)

        if is_expired(pending, now):
            pending.status = RecoveryCodeStatus.EXPIRED.value
            await db.flush()
            return CodeVerification(valid=False, reason=RecoveryFailureReason.EXPIRED_CODE)

        pending.attempts += 1
        remaining = max(pending.max_attempts - pending.attempts, 0)
        if remaining == 0:
            pending.status = RecoveryCodeStatus.INVALIDATED.value
            logger.warning("Recovery code for user %s invalidated after %d attempts", pending.user_id, pending.attempts)
        await db.flush()
        return CodeVerification(valid=False, remaining_attempts=remaining, reason=RecoveryFailureReason.INVALID_CODE)

    # ── Recover ──────────────────────────────────────────────────────

    async def recover_account(
        self,
        db: AsyncSession,
        email: str,
        code: str,
        ip_address: str | None = None,
        now: datetime | None = None,
    ) -> RecoveryResult:
        """Redeem a code: cancel the open deletion and clear the user flag.

        The cancel is a compare-and-set on the request status, so a sweep
        that already claimed the request wins and recovery reports
        `no_matching_schedule`.
        """
        now = now or utcnow()
        check = await self.verify(db, email, code, now, consume=False)
        if not check.valid:
            return RecoveryResult(success=False, reason=check.reason, remaining_attempts=check.remaining_attempts)

        request = check.deletion_request
        if request is None or request.status not in OPEN_DELETION_STATUSES:
            return RecoveryResult(success=False, reason=RecoveryFailureReason.NO_MATCHING_SCHEDULE)
        if not request.can_recover or is_expired(request, now, field="recover_deadline"):
            return RecoveryResult(success=False, reason=RecoveryFailureReason.DEADLINE_PASSED)

        try:
            outcome = await db.execute(
                update(DeletionRequest)
                .where(
                    DeletionRequest.id == request.id,
                    DeletionRequest.status.in_(OPEN_DELETION_STATUSES),
                )
                .values(
                    status=DeletionRequestStatus.CANCELLED.value,
                    cancelled_at=now,
                    cancellation_reason=CANCELLATION_REASON,
                    can_recover=False,
                )
            )
            if outcome.rowcount != 1:  # type: ignore[attr-defined]
                return RecoveryResult(success=False, reason=RecoveryFailureReason.NO_MATCHING_SCHEDULE)

            await db.execute(
                update(User)
                .where(User.id == request.user_id)
                .values(deletion_scheduled=False, scheduled_deletion_date=None)
            )
            _mark_verified(check.recovery_code)
            check.recovery_code.used_at = now
            await db.flush()
        except Exception:
            logger.exception("Account recovery failed for request %s", request.id)
            await db.rollback()
            return RecoveryResult(success=False, reason=RecoveryFailureReason.RECOVERY_FAILED)

        await db.refresh(request)
        await emit(SystemEvent(
            event_type=EventType.DELETION_CANCELLED,
            user_id=request.user_id,
            data={"request_id": str(request.id), "reason": CANCELLATION_REASON},
            source_module="gdpr.recovery",
        ))
        await audit_trail.record(AuditEntry(
            user_id=request.user_id,
            action=AuditAction.ACCOUNT_RECOVERED.value,
            resource_type="deletion_request",
            resource_id=str(request.id),
            previous_values={"status": DeletionRequestStatus.SCHEDULED.value},
            new_values={"status": DeletionRequestStatus.CANCELLED.value},
            ip_address=ip_address,
        ))
        logger.info("Deletion request %s cancelled by recovery", request.id)
        return RecoveryResult(success=True, deletion_request_id=str(request.id))

    # ── Maintenance ──────────────────────────────────────────────────

    async def cleanup_expired(self, db: AsyncSession, now: datetime | None = None) -> int:
        """Mark pending codes past their expiry as expired. Returns rows updated."""
        outcome = await db.execute(
            update(RecoveryCode)
            .where(
                RecoveryCode.status == RecoveryCodeStatus.PENDING.value,
                RecoveryCode.expires_at <= (now or utcnow()),
            )
            .values(status=RecoveryCodeStatus.EXPIRED.value)
        )
        return outcome.rowcount  # type: ignore[attr-defined]

    # ── Queries ──────────────────────────────────────────────────────

    async def _latest_pending(self, db: AsyncSession, email_hash: str, code: str | None = None) -> RecoveryCode | None:
        stmt = select(RecoveryCode).where(
            RecoveryCode.email_hash == email_hash,
            RecoveryCode.status == RecoveryCodeStatus.PENDING.value,
        )
        if code is not None:
            stmt = stmt.where(RecoveryCode.code == code)
        result = await db.execute(stmt.order_by(RecoveryCode.created_at.desc()).limit(1))
        return result.scalar_one_or_none()

    async def _latest_open_request(self, db: AsyncSession, user_id: uuid.UUID) -> DeletionRequest | None:
        result = await db.execute(
            select(DeletionRequest)
            .where(
                DeletionRequest.user_id == user_id,
                DeletionRequest.status.in_(OPEN_DELETION_STATUSES),
            )
            .order_by(DeletionRequest.requested_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


recovery_manager = RecoveryCodeManager()

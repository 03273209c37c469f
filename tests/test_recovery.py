"""Tests for recovery code issuance, verification and account recovery."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from compliance.errors import RateLimitedError
from compliance.gdpr.recovery import CANCELLATION_REASON, RecoveryCodeManager, generate_code
from compliance.models import DeletionRequest, RecoveryCode
from compliance.models.base import utcnow
from compliance.models.enums import DeletionRequestStatus, RecoveryCodeStatus, RecoveryFailureReason
from compliance.schemas.events import EventType
from compliance.security.encryption import RECOVERY_EMAIL_CONTEXT, field_encryptor
from compliance.security.hashing import hash_email
from compliance.security.rate_limiter import InMemoryCounterStore, RateLimiter


@pytest.fixture()
def manager():
    return RecoveryCodeManager(RateLimiter(InMemoryCounterStore()))


@pytest.fixture()
def mock_emit():
    with patch("compliance.gdpr.recovery.emit", new_callable=AsyncMock) as mocked:
        yield mocked


async def _scheduled_request(db, user, recover_deadline=None) -> DeletionRequest:
    now = utcnow()
    deadline = now + timedelta(days=30)
    request = DeletionRequest(
        user_id=user.id,
        scope=["all"],
        status=DeletionRequestStatus.SCHEDULED.value,
        requested_at=now,
        scheduled_deletion_date=deadline,
        recover_deadline=recover_deadline or deadline,
        can_recover=True,
    )
    user.deletion_scheduled = True
    user.scheduled_deletion_date = deadline
    db.add(request)
    await db.flush()
    return request


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


# ── Issue ────────────────────────────────────────────────────────────


class TestIssue:
    def test_code_is_six_digits(self):
        for _ in range(50):
            code = generate_code()
            assert len(code) == 6
            assert code.isdigit()

    @pytest.mark.asyncio()
    async def test_stores_hash_and_encrypted_email(self, db, user, manager, mock_emit):
        issued = await manager.issue(db, user.id, "Ana@Example.com")

        row = await db.get(RecoveryCode, issued.code_id)
        assert row.email_hash == hash_email("ana@example.com")
        assert field_encryptor.decrypt(row.email_encrypted, RECOVERY_EMAIL_CONTEXT) == "ana@example.com"
        assert row.max_attempts == 5
        assert row.expires_at - row.created_at < timedelta(hours=24, seconds=5)

    @pytest.mark.asyncio()
    async def test_event_carries_id_not_code(self, db, user, manager, mock_emit):
        issued = await manager.issue(db, user.id, user.email)

        event = mock_emit.await_args.args[0]
        assert event.event_type == EventType.RECOVERY_CODE_ISSUED
        assert event.data["code_id"] == str(issued.code_id)
        assert "code" not in event.data
        assert issued.code not in event.data.values()

    @pytest.mark.asyncio()
    async def test_new_code_invalidates_previous(self, db, user, manager, mock_emit):
        first = await manager.issue(db, user.id, user.email)
        second = await manager.issue(db, user.id, user.email)

        assert (await db.get(RecoveryCode, first.code_id)).status == RecoveryCodeStatus.INVALIDATED.value
        assert (await db.get(RecoveryCode, second.code_id)).status == RecoveryCodeStatus.PENDING.value


class TestRequestCode:
    @pytest.mark.asyncio()
    async def test_unknown_email(self, db, manager, mock_emit):
        assert await manager.request_code(db, "nobody@example.com") is None
        mock_emit.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_user_without_open_deletion(self, db, user, manager, mock_emit):
        assert await manager.request_code(db, user.email) is None

    @pytest.mark.asyncio()
    async def test_issues_for_scheduled_deletion(self, db, user, manager, mock_emit):
        request = await _scheduled_request(db, user)

        issued = await manager.request_code(db, "ANA@example.com", ip_address="10.0.0.1")

        row = await db.get(RecoveryCode, issued.code_id)
        assert row.deletion_request_id == request.id
        assert row.ip_address_hash is not None

    @pytest.mark.asyncio()
    async def test_rate_limited_per_email(self, db, user, manager, mock_emit):
        await _scheduled_request(db, user)
        for _ in range(3):
            await manager.request_code(db, user.email)

        with pytest.raises(RateLimitedError) as exc_info:
            await manager.request_code(db, user.email)
        assert exc_info.value.retry_after > 0


# ── Verify / recover ─────────────────────────────────────────────────


class TestRecoverAccount:
    @pytest.mark.asyncio()
    async def test_valid_code_cancels_deletion(self, db, user, manager, mock_emit):
        request = await _scheduled_request(db, user)
        issued = await manager.request_code(db, user.email)

        result = await manager.recover_account(db, " ANA@example.com ", issued.code)

        assert result.success is True
        assert result.deletion_request_id == str(request.id)
        assert request.status == DeletionRequestStatus.CANCELLED.value
        assert request.cancellation_reason == CANCELLATION_REASON
        assert request.can_recover is False
        assert user.deletion_scheduled is False
        assert user.scheduled_deletion_date is None
        row = await db.get(RecoveryCode, issued.code_id)
        assert row.status == RecoveryCodeStatus.VERIFIED.value
        assert row.used_at is not None
        assert mock_emit.await_args.args[0].event_type == EventType.DELETION_CANCELLED

    @pytest.mark.asyncio()
    async def test_wrong_code_counts_attempts_then_invalidates(self, db, user, manager, mock_emit):
        await _scheduled_request(db, user)
        issued = await manager.request_code(db, user.email)
        wrong = _wrong(issued.code)

        remaining = []
        for _ in range(5):
            result = await manager.recover_account(db, user.email, wrong)
            assert result.reason == RecoveryFailureReason.INVALID_CODE
            remaining.append(result.remaining_attempts)
        assert remaining == [4, 3, 2, 1, 0]

        row = await db.get(RecoveryCode, issued.code_id)
        assert row.status == RecoveryCodeStatus.INVALIDATED.value

        # The right code no longer works once the budget is spent
        result = await manager.recover_account(db, user.email, issued.code)
        assert result.success is False
        assert result.reason == RecoveryFailureReason.INVALID_CODE

    @pytest.mark.asyncio()
    async def test_expired_code(self, db, user, manager, mock_emit):
        await _scheduled_request(db, user)
        issued = await manager.request_code(db, user.email)

        result = await manager.recover_account(
            db, user.email, issued.code, now=issued.expires_at + timedelta(seconds=1)
        )

        assert result.reason == RecoveryFailureReason.EXPIRED_CODE
        row = await db.get(RecoveryCode, issued.code_id)
        assert row.status == RecoveryCodeStatus.EXPIRED.value

    @pytest.mark.asyncio()
    async def test_recover_deadline_passed(self, db, user, manager, mock_emit):
        request = await _scheduled_request(db, user)
        issued = await manager.request_code(db, user.email)
        request.recover_deadline = utcnow() - timedelta(minutes=1)
        await db.flush()

        result = await manager.recover_account(db, user.email, issued.code)

        assert result.reason == RecoveryFailureReason.DEADLINE_PASSED
        assert request.status == DeletionRequestStatus.SCHEDULED.value
        row = await db.get(RecoveryCode, issued.code_id)
        assert row.status == RecoveryCodeStatus.PENDING.value
        assert row.attempts == 0
        assert row.used_at is None

    @pytest.mark.asyncio()
    async def test_request_already_claimed_by_sweep(self, db, user, manager, mock_emit):
        request = await _scheduled_request(db, user)
        issued = await manager.request_code(db, user.email)
        request.status = DeletionRequestStatus.PROCESSING.value
        await db.flush()

        result = await manager.recover_account(db, user.email, issued.code)

        assert result.reason == RecoveryFailureReason.NO_MATCHING_SCHEDULE
        assert user.deletion_scheduled is True
        row = await db.get(RecoveryCode, issued.code_id)
        assert row.status == RecoveryCodeStatus.PENDING.value
        assert row.attempts == 0

    @pytest.mark.asyncio()
    async def test_store_failure_reports_recovery_failed(self, db, user, manager, mock_emit):
        await _scheduled_request(db, user)
        issued = await manager.request_code(db, user.email)
        await db.commit()

        real_execute = db.execute

        async def failing_execute(statement, *args, **kwargs):
            if getattr(statement, "is_update", False):
                raise RuntimeError("write failed")
            return await real_execute(statement, *args, **kwargs)

        with patch.object(db, "execute", side_effect=failing_execute):
            result = await manager.recover_account(db, user.email, issued.code)

        assert result.success is False
        assert result.reason == RecoveryFailureReason.RECOVERY_FAILED


class TestCleanup:
    @pytest.mark.asyncio()
    async def test_expires_only_pending_codes_past_deadline(self, db, user, manager, mock_emit):
        issued = await manager.issue(db, user.id, user.email)

        assert await manager.cleanup_expired(db) == 0
        assert await manager.cleanup_expired(db, now=issued.expires_at + timedelta(seconds=1)) == 1

        result = await db.execute(select(RecoveryCode.status))
        assert result.scalars().all() == [RecoveryCodeStatus.EXPIRED.value]

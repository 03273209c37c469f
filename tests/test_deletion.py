"""Tests for the deletion executor and the post-deletion verifier."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from compliance.errors import TransientExternalError
from compliance.gdpr.certificates import CertificateIssuer
from compliance.gdpr.executor import DeletionExecutor
from compliance.gdpr.verifier import DeletionVerifier
from compliance.models import (
    ConsentRecord,
    DeletionCertificate,
    Subscription,
    TrainingSession,
    User,
    UserSettings,
)
from compliance.security.hashing import anonymized_user_hash

# ── Helpers ──────────────────────────────────────────────────────────


def _make_executor(object_store, warehouse, identity, billing, **kwargs) -> DeletionExecutor:
    return DeletionExecutor(
        object_store=object_store,
        warehouse=warehouse,
        identity=identity,
        billing=billing,
        verifier=DeletionVerifier(object_store, warehouse, identity),
        issuer=CertificateIssuer("test-secret"),
        **kwargs,
    )


async def _add_activity(db, user_id, sessions: int = 3) -> None:
    for i in range(sessions):
        db.add(TrainingSession(
            user_id=user_id,
            exercise_type="squat",
            started_at=datetime(2025, 1, 1 + i, 8, 0, tzinfo=UTC),
            rep_count=10 + i,
        ))
    db.add(UserSettings(user_id=user_id, theme="dark"))
    db.add(Subscription(user_id=user_id, status="active", plan="pro", external_subscription_id=f"sub_{user_id}"))
    db.add(ConsentRecord(user_id=user_id, document_type="tos", document_version="2.0", action="accept"))
    await db.commit()


async def _count(db, model, user_id) -> int:
    return await db.scalar(select(func.count()).select_from(model).where(model.user_id == user_id))


# ── Executor ─────────────────────────────────────────────────────────


class TestFullDeletion:
    """Scope `all` across every system."""

    @pytest.mark.asyncio()
    async def test_purges_every_system_and_certifies(self, db, user, object_store, warehouse, identity, billing):
        await _add_activity(db, user.id)
        object_store.put(f"users/{user.id}/profile_image.png", b"img", "image/png")
        object_store.put(f"users/{user.id}/videos/1.mp4", b"video")
        object_store.put("users/someone-else/keep.txt", b"keep")
        warehouse.rows[anonymized_user_hash(user.id)] = 5
        identity.users.add(str(user.id))
        billing.customers[str(user.id)] = "cus_123"

        executor = _make_executor(object_store, warehouse, identity, billing, batch_size=2)
        result = await executor.execute(db, user.id, "req-1", ["all"])

        assert result.success is True
        assert result.errors == []
        assert result.document_store.documents_deleted == {
            "sessions": 3, "settings": 1, "subscriptions": 1, "consents": 1,
        }
        assert result.document_store.user_deleted is True
        assert result.object_store.files_count == 2
        assert result.object_store.total_size_bytes == 8
        assert result.warehouse.rows_affected == 5
        assert result.billing.deleted is True
        assert result.identity.deleted is True
        assert result.verification.verified is True

        assert list(object_store.objects) == ["users/someone-else/keep.txt"]
        assert billing.customers == {}
        assert identity.users == set()
        assert await _count(db, TrainingSession, user.id) == 0
        assert await db.scalar(select(func.count()).select_from(User)) == 0

        certificate = (await db.execute(select(DeletionCertificate))).scalar_one()
        assert certificate.certificate_id == result.certificate_id
        assert certificate.deleted_data["documents_deleted"]["sessions"] == 3
        assert certificate.deleted_data["object_files_count"] == 2
        assert certificate.deleted_data["warehouse_rows_affected"] == 5
        assert certificate.verification_result["identity_verified"] is True

    @pytest.mark.asyncio()
    async def test_batches_smaller_than_collection(self, db, user, object_store, warehouse, identity, billing):
        await _add_activity(db, user.id, sessions=7)
        executor = _make_executor(object_store, warehouse, identity, billing, batch_size=3)

        result = await executor.execute(db, user.id, "req-2", ["all"])

        assert result.document_store.documents_deleted["sessions"] == 7

    @pytest.mark.asyncio()
    async def test_per_file_errors_are_skipped(self, db, user, object_store, warehouse, identity, billing):
        stuck = f"users/{user.id}/stuck.bin"
        object_store.put(stuck)
        object_store.put(f"users/{user.id}/ok.bin")
        object_store.fail_on.add(stuck)

        executor = _make_executor(object_store, warehouse, identity, billing, storage_batch_size=1)
        result = await executor.execute(db, user.id, "req-3", ["all"])

        assert result.success is True
        assert result.object_store.files == [f"users/{user.id}/ok.bin"]
        assert result.object_store.failed_files == [stuck]
        assert any(e.startswith("object_store:") for e in result.errors)
        assert result.verification.object_store_verified is False
        assert result.certificate_id is not None

    @pytest.mark.asyncio()
    async def test_missing_identity_user_counts_as_deleted(self, db, user, object_store, warehouse, identity, billing):
        executor = _make_executor(object_store, warehouse, identity, billing)

        result = await executor.execute(db, user.id, "req-4", ["all"])

        assert result.success is True
        assert result.identity.not_found is True

    @pytest.mark.asyncio()
    async def test_identity_failure_is_fatal(self, db, user, object_store, warehouse, identity, billing):
        identity.users.add(str(user.id))
        identity.delete_error = TransientExternalError("identity 503")
        executor = _make_executor(object_store, warehouse, identity, billing)

        result = await executor.execute(db, user.id, "req-5", ["all"])

        assert result.success is False
        assert result.certificate_id is None
        assert "identity: identity 503" in result.errors


    @pytest.mark.asyncio()
    async def test_identity_left_behind_fails_after_verification(
        self, db, user, object_store, warehouse, identity, billing
    ):
        identity.users.add(str(user.id))
        # Delete call reports success but the account is still there
        identity.delete_user = AsyncMock()

        result = await _make_executor(object_store, warehouse, identity, billing).execute(
            db, user.id, "req-5b", ["all"]
        )

        assert result.success is False
        assert result.verification.identity_verified is False
        assert result.certificate_id is not None
        assert any(e.startswith("verification:") and "identity:user" in e for e in result.errors)

    @pytest.mark.asyncio()
    async def test_object_store_leftovers_are_reported_not_fatal(
        self, db, user, object_store, warehouse, identity, billing
    ):
        object_store.put(f"users/{user.id}/stuck.bin")
        object_store.fail_on.add(f"users/{user.id}/stuck.bin")

        result = await _make_executor(object_store, warehouse, identity, billing).execute(
            db, user.id, "req-5c", ["all"]
        )

        assert result.success is True
        assert any(e.startswith("verification:") for e in result.errors)

class TestNonFatalSteps:
    @pytest.mark.asyncio()
    async def test_no_billing_customer(self, db, user, object_store, warehouse, identity, billing):
        result = await _make_executor(object_store, warehouse, identity, billing).execute(
            db, user.id, "req-6", ["all"]
        )
        assert result.billing.deleted is True
        assert result.billing.not_found is True
        assert result.deleted_data()["billing_customer_deleted"] is True

    @pytest.mark.asyncio()
    async def test_billing_outage_does_not_fail_deletion(self, db, user, object_store, warehouse, identity, billing):
        billing.error = TransientExternalError("billing timeout")

        result = await _make_executor(object_store, warehouse, identity, billing).execute(
            db, user.id, "req-7", ["all"]
        )

        assert result.success is True
        assert "billing: billing timeout" in result.errors
        assert result.certificate_id is not None

    @pytest.mark.asyncio()
    async def test_warehouse_outage_does_not_fail_deletion(self, db, user, object_store, warehouse, identity, billing):
        warehouse.error = TransientExternalError("warehouse down")

        result = await _make_executor(object_store, warehouse, identity, billing).execute(
            db, user.id, "req-8", ["all"]
        )

        assert result.success is True
        assert result.warehouse.deleted is False
        # Verification cannot query the warehouse either, which counts as clean
        assert result.verification.warehouse_verified is True


class TestPartialScope:
    @pytest.mark.asyncio()
    async def test_only_named_tables_are_touched(self, db, user, object_store, warehouse, identity, billing):
        await _add_activity(db, user.id)
        object_store.put(f"users/{user.id}/profile_image.png")
        identity.users.add(str(user.id))

        result = await _make_executor(object_store, warehouse, identity, billing).execute(
            db, user.id, "req-9", ["sessions", "consents"]
        )

        assert result.success is True
        assert result.document_store.documents_deleted == {"sessions": 3, "consents": 1}
        assert result.document_store.user_deleted is False
        assert result.object_store is None
        assert result.identity is None
        assert await _count(db, TrainingSession, user.id) == 0
        assert await _count(db, UserSettings, user.id) == 1
        assert await _count(db, Subscription, user.id) == 1
        assert await db.get(User, user.id) is not None
        assert identity.users == {str(user.id)}
        assert result.deleted_data()["scope"] == ["sessions", "consents"]

    @pytest.mark.asyncio()
    async def test_primary_store_failure_is_fatal(self, db, user, object_store, warehouse, identity, billing):
        executor = _make_executor(object_store, warehouse, identity, billing)

        with patch.object(executor, "_delete_collection", new_callable=AsyncMock, side_effect=RuntimeError("db gone")):
            result = await executor.execute(db, user.id, "req-10", ["sessions"])

        assert result.success is False
        assert result.document_store.deleted is False
        assert result.errors == ["document_store: db gone"]
        assert result.certificate_id is None


# ── Verifier ─────────────────────────────────────────────────────────


class TestVerifier:
    @pytest.mark.asyncio()
    async def test_reports_leftovers_everywhere(self, db, user, object_store, warehouse, identity):
        await _add_activity(db, user.id, sessions=1)
        object_store.put(f"users/{user.id}/a.jpg")
        warehouse.rows[anonymized_user_hash(user.id)] = 2
        identity.users.add(str(user.id))

        result = await DeletionVerifier(object_store, warehouse, identity).verify(db, user.id, ["all"])

        assert result.verified is False
        assert result.to_dict() == {
            "document_store_verified": False,
            "object_store_verified": False,
            "warehouse_verified": False,
            "identity_verified": False,
        }
        assert "document_store:users" in result.remaining
        assert "document_store:sessions" in result.remaining
        assert f"object_store:users/{user.id}/a.jpg" in result.remaining
        assert "identity:user" in result.remaining

    @pytest.mark.asyncio()
    async def test_clean_user(self, db, object_store, warehouse, identity):
        result = await DeletionVerifier(object_store, warehouse, identity).verify(db, uuid.uuid4(), ["all"])
        assert result.verified is True
        assert result.remaining == []

    @pytest.mark.asyncio()
    async def test_query_failures_count_as_verified(self, db, object_store, warehouse):
        object_store.list_error = TransientExternalError("storage down")
        warehouse.error = TransientExternalError("warehouse down")
        identity = AsyncMock()
        identity.get_user.side_effect = TransientExternalError("identity down")

        result = await DeletionVerifier(object_store, warehouse, identity).verify(db, uuid.uuid4(), ["all"])

        assert result.verified is True

    @pytest.mark.asyncio()
    async def test_partial_scope_checks_primary_store_only(self, db, user, object_store, warehouse, identity):
        object_store.put(f"users/{user.id}/a.jpg")
        identity.users.add(str(user.id))

        result = await DeletionVerifier(object_store, warehouse, identity).verify(db, user.id, ["consents"])

        assert result.verified is True

"""Deletion executor: purges one user's data from every system that holds it.

Order for a full (`all`) deletion:
    1. Primary store: per-user tables in batches, then the users row. Fatal.
    2. Object store: everything under users/{user_id}/. Per-file errors skipped.
    3. Warehouse: anonymized rows keyed by the user hash. Non-fatal.
    4. Billing: customer record. Non-fatal.
    5. Identity provider: login record. Fatal.

A partial scope only touches the named primary-store tables.
On success the verifier runs and a signed certificate is issued; leftovers
found in a fatal system still fail the run.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from compliance.config import settings
from compliance.errors import DeleteOutcome, delete_idempotently
from compliance.gdpr.certificates import CertificateIssuer, certificate_issuer
from compliance.gdpr.collectors import user_media_prefix
from compliance.gdpr.scope import collections_for_scope, is_full_scope
from compliance.gdpr.verifier import DeletionVerifier, VerificationResult, deletion_verifier
from compliance.integrations.billing.client import billing_client
from compliance.integrations.identity.client import identity_client
from compliance.integrations.ports import BillingProcessor, IdentityProvider, ObjectStore, Warehouse
from compliance.integrations.storage.client import uploads_store
from compliance.integrations.warehouse.client import warehouse as default_warehouse
from compliance.models.base import Base
from compliance.models.user import User
from compliance.security.hashing import anonymized_user_hash

logger = logging.getLogger(__name__)


# ── Result types ─────────────────────────────────────────────────────


@dataclass
class DocumentStoreResult:
    deleted: bool = False
    documents_deleted: dict[str, int] = field(default_factory=dict)
    user_deleted: bool = False
    error: str | None = None


@dataclass
class ObjectStoreResult:
    deleted: bool = False
    files: list[str] = field(default_factory=list)
    files_count: int = 0
    total_size_bytes: int = 0
    failed_files: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class WarehouseResult:
    deleted: bool = False
    rows_affected: int = 0
    error: str | None = None


@dataclass
class DeletionResult:
    """What one executor run removed, and from where."""

    success: bool
    user_id: str
    request_id: str
    scope: list[str]
    document_store: DocumentStoreResult = field(default_factory=DocumentStoreResult)
    object_store: ObjectStoreResult | None = None
    warehouse: WarehouseResult | None = None
    billing: DeleteOutcome | None = None
    identity: DeleteOutcome | None = None
    verification: VerificationResult | None = None
    certificate_id: str | None = None
    errors: list[str] = field(default_factory=list)

    def deleted_data(self) -> dict[str, Any]:
        """Summary stored on the deletion certificate."""
        return {
            "scope": list(self.scope),
            "collections_affected": sorted(self.document_store.documents_deleted),
            "documents_deleted": dict(sorted(self.document_store.documents_deleted.items())),
            "user_record_deleted": self.document_store.user_deleted,
            "object_files_count": self.object_store.files_count if self.object_store else 0,
            "warehouse_rows_affected": self.warehouse.rows_affected if self.warehouse else 0,
            "billing_customer_deleted": bool(self.billing and self.billing.deleted),
            "identity_deleted": bool(self.identity and self.identity.deleted),
        }


def _apply_verification(result: DeletionResult) -> None:
    """Leftovers are reported; in the primary store or identity they fail the run."""
    verification = result.verification
    if verification is None or verification.verified:
        return
    result.errors.append(f"verification: leftovers in {', '.join(verification.remaining)}")
    if not (verification.document_store_verified and verification.identity_verified):
        result.success = False


# ── Executor ─────────────────────────────────────────────────────────


class DeletionExecutor:
    """Runs the purge steps for one deletion request."""

    def __init__(
        self,
        object_store: ObjectStore | None = None,
        warehouse: Warehouse | None = None,
        identity: IdentityProvider | None = None,
        billing: BillingProcessor | None = None,
        verifier: DeletionVerifier | None = None,
        issuer: CertificateIssuer | None = None,
        batch_size: int | None = None,
        storage_batch_size: int | None = None,
    ) -> None:
        self._object_store = object_store or uploads_store
        self._warehouse = warehouse or default_warehouse
        self._identity = identity or identity_client
        self._billing = billing or billing_client
        self._verifier = verifier or deletion_verifier
        self._issuer = issuer or certificate_issuer
        self._batch_size = batch_size or settings.lifecycle.document_batch_size
        self._storage_batch_size = storage_batch_size or settings.lifecycle.storage_batch_size

    async def execute(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        request_id: str,
        scope: list[str],
    ) -> DeletionResult:
        """Purge, verify and certify.

        Never raises for collaborator failures; they are collected in
        `errors`. Only the primary store and identity decide `success`,
        both through their delete step and through what the verifier still
        finds in them afterwards.
        """
        result = DeletionResult(success=True, user_id=str(user_id), request_id=str(request_id), scope=list(scope))

        result.document_store = await self._delete_documents(db, user_id, scope)
        if not result.document_store.deleted:
            result.success = False
            result.errors.append(f"document_store: {result.document_store.error}")

        if is_full_scope(scope):
            result.object_store = await self._delete_storage(user_id)
            if result.object_store.error:
                result.errors.append(f"object_store: {result.object_store.error}")
            elif result.object_store.failed_files:
                result.errors.append(f"object_store: {len(result.object_store.failed_files)} file(s) not deleted")

            result.warehouse = await self._delete_warehouse(user_id)
            if result.warehouse.error:
                result.errors.append(f"warehouse: {result.warehouse.error}")

            result.billing = await self._delete_billing(user_id)
            if not result.billing.deleted:
                result.errors.append(f"billing: {result.billing.error}")

            result.identity = await delete_idempotently(
                lambda: self._identity.delete_user(str(user_id)), target=f"identity user {user_id}"
            )
            if not result.identity.deleted:
                result.success = False
                result.errors.append(f"identity: {result.identity.error}")

        if result.success:
            await self._certify(db, user_id, result)
            _apply_verification(result)

        logger.info(
            "Deletion %s for user %s finished: success=%s errors=%d",
            request_id,
            user_id,
            result.success,
            len(result.errors),
        )
        return result

    # ── Steps ────────────────────────────────────────────────────────

    async def _delete_documents(self, db: AsyncSession, user_id: uuid.UUID, scope: list[str]) -> DocumentStoreResult:
        step = DocumentStoreResult()
        try:
            for name, model in collections_for_scope(scope):
                step.documents_deleted[name] = await self._delete_collection(db, model, user_id)
            if is_full_scope(scope):
                outcome = await db.execute(delete(User).where(User.id == user_id))
                step.user_deleted = outcome.rowcount > 0  # type: ignore[attr-defined]
            await db.flush()
            step.deleted = True
        except Exception as exc:
            logger.exception("Primary store deletion failed for user %s", user_id)
            # The session cannot be used again after a failed statement
            await db.rollback()
            step.error = str(exc) or exc.__class__.__name__
        return step

    async def _delete_collection(self, db: AsyncSession, model: type[Base], user_id: uuid.UUID) -> int:
        """Delete in id batches no larger than the backend write limit."""
        total = 0
        while True:
            ids = (
                await db.execute(select(model.id).where(model.user_id == user_id).limit(self._batch_size))
            ).scalars().all()
            if not ids:
                return total
            outcome = await db.execute(delete(model).where(model.id.in_(ids)))
            total += outcome.rowcount  # type: ignore[attr-defined]

    async def _delete_storage(self, user_id: uuid.UUID) -> ObjectStoreResult:
        step = ObjectStoreResult()
        try:
            objects = await self._object_store.list_files(user_media_prefix(user_id))
        except Exception as exc:
            logger.warning("Could not list media for user %s: %s", user_id, exc)
            step.error = str(exc) or exc.__class__.__name__
            return step

        async def remove(name: str) -> bool:
            try:
                await self._object_store.delete_file(name)
                return True
            except Exception:
                logger.warning("Failed to delete object %s", name, exc_info=True)
                return False

        for start in range(0, len(objects), self._storage_batch_size):
            batch = objects[start:start + self._storage_batch_size]
            outcomes = await asyncio.gather(*(remove(obj.name) for obj in batch))
            for obj, ok in zip(batch, outcomes):
                if ok:
                    step.files.append(obj.name)
                    step.total_size_bytes += obj.size
                else:
                    step.failed_files.append(obj.name)

        step.files_count = len(step.files)
        step.deleted = True
        return step

    async def _delete_warehouse(self, user_id: uuid.UUID) -> WarehouseResult:
        try:
            rows = await self._warehouse.delete_by_user_hash(anonymized_user_hash(user_id))
        except Exception as exc:
            logger.warning("Warehouse deletion failed for user %s: %s", user_id, exc)
            return WarehouseResult(deleted=False, error=str(exc) or exc.__class__.__name__)
        return WarehouseResult(deleted=True, rows_affected=rows)

    async def _delete_billing(self, user_id: uuid.UUID) -> DeleteOutcome:
        try:
            customer_id = await self._billing.find_customer_id(str(user_id))
        except Exception as exc:
            logger.warning("Billing customer lookup failed for user %s: %s", user_id, exc)
            return DeleteOutcome(deleted=False, error=str(exc) or exc.__class__.__name__)
        if customer_id is None:
            return DeleteOutcome(deleted=True, not_found=True)
        return await delete_idempotently(
            lambda: self._billing.delete_customer(customer_id), target=f"billing customer {customer_id}"
        )

    async def _certify(self, db: AsyncSession, user_id: uuid.UUID, result: DeletionResult) -> None:
        try:
            result.verification = await self._verifier.verify(db, user_id, result.scope)
            certificate = await self._issuer.issue_certificate(
                db,
                user_id,
                result.request_id,
                result.deleted_data(),
                result.verification.to_dict(),
            )
            result.certificate_id = certificate.certificate_id
        except Exception as exc:
            logger.exception("Certificate issuance failed for deletion %s", result.request_id)
            result.errors.append(f"certificate: {exc}")


deletion_executor = DeletionExecutor()

"""Post-deletion verification: re-query every system for leftovers.

A system whose query itself fails is counted as verified-clean, with a
warning logged. Verification reports what it can see; it never blocks a
certificate on a collaborator outage.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from compliance.errors import NotFoundError
from compliance.gdpr.collectors import user_media_prefix
from compliance.gdpr.scope import collections_for_scope, is_full_scope
from compliance.integrations.identity.client import identity_client
from compliance.integrations.ports import IdentityProvider, ObjectStore, Warehouse
from compliance.integrations.storage.client import uploads_store
from compliance.integrations.warehouse.client import ANONYMIZED_TABLES
from compliance.integrations.warehouse.client import warehouse as default_warehouse
from compliance.models.user import User
from compliance.security.hashing import anonymized_user_hash

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    document_store_verified: bool = True
    object_store_verified: bool = True
    warehouse_verified: bool = True
    identity_verified: bool = True
    remaining: list[str] = field(default_factory=list)

    @property
    def verified(self) -> bool:
        return (
            self.document_store_verified
            and self.object_store_verified
            and self.warehouse_verified
            and self.identity_verified
        )

    def to_dict(self) -> dict[str, Any]:
        """Shape stored on the deletion certificate."""
        return {
            "document_store_verified": self.document_store_verified,
            "object_store_verified": self.object_store_verified,
            "warehouse_verified": self.warehouse_verified,
            "identity_verified": self.identity_verified,
        }


class DeletionVerifier:
    """Checks that a finished deletion left nothing behind."""

    def __init__(
        self,
        object_store: ObjectStore | None = None,
        warehouse: Warehouse | None = None,
        identity: IdentityProvider | None = None,
    ) -> None:
        self._object_store = object_store or uploads_store
        self._warehouse = warehouse or default_warehouse
        self._identity = identity or identity_client

    async def verify_primary_store(self, db: AsyncSession, user_id: uuid.UUID, scope: list[str]) -> list[str]:
        """Names of in-scope collections that still hold rows for the user."""
        remaining: list[str] = []
        for name, model in collections_for_scope(scope):
            count = await db.scalar(select(func.count()).select_from(model).where(model.user_id == user_id))
            if count:
                remaining.append(f"document_store:{name}")
        if is_full_scope(scope) and await db.scalar(select(func.count()).select_from(User).where(User.id == user_id)):
            remaining.append("document_store:users")
        return remaining

    async def verify(self, db: AsyncSession, user_id: uuid.UUID, scope: list[str]) -> VerificationResult:
        result = VerificationResult()

        try:
            leftovers = await self.verify_primary_store(db, user_id, scope)
            result.document_store_verified = not leftovers
            result.remaining.extend(leftovers)
        except Exception:
            logger.warning("Primary store verification query failed for user %s", user_id, exc_info=True)

        if not is_full_scope(scope):
            return result

        try:
            files = await self._object_store.list_files(user_media_prefix(user_id))
            result.object_store_verified = not files
            result.remaining.extend(f"object_store:{f.name}" for f in files)
        except Exception:
            logger.warning("Object store verification failed for user %s", user_id, exc_info=True)

        try:
            user_hash = anonymized_user_hash(user_id)
            for table in ANONYMIZED_TABLES:
                rows = await self._warehouse.run_query(
                    f"SELECT COUNT(*) AS count FROM {table} WHERE user_hash = :user_hash",
                    {"user_hash": user_hash},
                )
                if rows and int(rows[0].get("count") or 0) > 0:
                    result.warehouse_verified = False
                    result.remaining.append(f"warehouse:{table}")
        except Exception:
            logger.warning("Warehouse verification failed for user %s", user_id, exc_info=True)

        try:
            await self._identity.get_user(str(user_id))
            result.identity_verified = False
            result.remaining.append("identity:user")
        except NotFoundError:
            pass
        except Exception:
            logger.warning("Identity verification failed for user %s", user_id, exc_info=True)

        if not result.verified:
            logger.warning("Deletion verification for user %s found leftovers: %s", user_id, result.remaining)
        return result


deletion_verifier = DeletionVerifier()

"""Signed deletion certificates.

The signature is HMAC-SHA256 over the canonical JSON of every other
certificate field, so changing any one of them breaks verification.
Certificates reference the user only by salted hash.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from compliance.config import settings
from compliance.errors import IntegrityError
from compliance.models.base import utcnow
from compliance.models.enums import AuditAction
from compliance.models.records import DeletionCertificate
from compliance.security.audit import AuditEntry, audit_trail
from compliance.security.hashing import canonical_json, hash_user_id, sign, signatures_match

logger = logging.getLogger(__name__)

SIGNATURE_ALGORITHM = "HMAC-SHA256"

# Fields covered by the signature
SIGNED_FIELDS: tuple[str, ...] = (
    "certificate_id",
    "user_id_hash",
    "deletion_request_id",
    "deleted_at",
    "deleted_data",
    "verification_result",
    "signature_algorithm",
    "issued_at",
    "issued_by",
)


def generate_certificate_id() -> str:
    return f"cert_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def signing_payload(certificate: DeletionCertificate) -> str:
    return canonical_json({name: getattr(certificate, name) for name in SIGNED_FIELDS})


@dataclass
class CertificateValidation:
    valid: bool
    certificate: DeletionCertificate | None = None
    error: str | None = None


class CertificateIssuer:
    """Creates, stores and checks deletion certificates."""

    def __init__(self, signing_secret: str | None = None) -> None:
        self._secret = signing_secret

    def _sign(self, certificate: DeletionCertificate) -> str:
        return sign(signing_payload(certificate), self._secret)

    async def issue_certificate(
        self,
        db: AsyncSession,
        user_id: object,
        deletion_request_id: str,
        deleted_data: dict[str, Any],
        verification_result: dict[str, Any],
    ) -> DeletionCertificate:
        now = utcnow().isoformat()
        certificate = DeletionCertificate(
            certificate_id=generate_certificate_id(),
            user_id_hash=hash_user_id(user_id),
            deletion_request_id=str(deletion_request_id),
            deleted_at=now,
            deleted_data=deleted_data,
            verification_result=verification_result,
            signature_algorithm=SIGNATURE_ALGORITHM,
            issued_at=now,
            issued_by=settings.lifecycle.certificate_issuer,
        )
        certificate.signature = self._sign(certificate)
        db.add(certificate)
        await db.flush()

        await audit_trail.record(AuditEntry(
            user_id=user_id,
            action=AuditAction.CERTIFICATE_ISSUED.value,
            resource_type="deletion_certificate",
            resource_id=certificate.certificate_id,
            details={"deletion_request_id": str(deletion_request_id)},
        ))
        logger.info("Deletion certificate %s issued for request %s", certificate.certificate_id, deletion_request_id)
        return certificate

    def verify_signature(self, certificate: DeletionCertificate) -> bool:
        return signatures_match(self._sign(certificate), certificate.signature or "")

    def check_signature(self, certificate: DeletionCertificate) -> None:
        """Raises IntegrityError when the stored signature does not match."""
        if not self.verify_signature(certificate):
            raise IntegrityError(f"Certificate {certificate.certificate_id} failed signature check")

    async def get(self, db: AsyncSession, certificate_id: str) -> DeletionCertificate | None:
        result = await db.execute(
            select(DeletionCertificate).where(DeletionCertificate.certificate_id == certificate_id)
        )
        return result.scalar_one_or_none()

    async def find_by_user_hash(self, db: AsyncSession, user_id_hash: str) -> list[DeletionCertificate]:
        """Every certificate for a user, newest first.

        Raises:
            IntegrityError: one of them no longer matches its signature.
        """
        result = await db.execute(
            select(DeletionCertificate)
            .where(DeletionCertificate.user_id_hash == user_id_hash)
            .order_by(DeletionCertificate.created_at.desc())
        )
        certificates = list(result.scalars().all())
        for certificate in certificates:
            self.check_signature(certificate)
        return certificates

    async def validate(self, db: AsyncSession, certificate_id: str) -> CertificateValidation:
        """Look up a certificate and recompute its signature."""
        certificate = await self.get(db, certificate_id)
        if certificate is None:
            return CertificateValidation(valid=False, error="not_found")
        try:
            self.check_signature(certificate)
        except IntegrityError as exc:
            logger.warning("%s", exc)
            return CertificateValidation(valid=False, certificate=certificate, error="invalid_signature")
        return CertificateValidation(valid=True, certificate=certificate)


certificate_issuer = CertificateIssuer()

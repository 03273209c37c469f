"""Public GDPR endpoints: account recovery and certificate validation.

Deletion and export requests come from the authenticated app backend and
call the services directly; these routes only cover what an anonymous
user (or an auditor) can do.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from compliance.db.engine import get_session
from compliance.errors import RateLimitedError
from compliance.gdpr.certificates import certificate_issuer
from compliance.gdpr.recovery import recovery_manager
from compliance.models.enums import RecoveryFailureReason

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/gdpr", tags=["gdpr"])

_FAILURE_MESSAGES = {
    RecoveryFailureReason.INVALID_CODE: "The code is not valid.",
    RecoveryFailureReason.EXPIRED_CODE: "The code has expired. Request a new one.",
    RecoveryFailureReason.NO_MATCHING_SCHEDULE: "There is no scheduled deletion to cancel.",
    RecoveryFailureReason.DEADLINE_PASSED: "The recovery window for this account has closed.",
    RecoveryFailureReason.RECOVERY_FAILED: "Recovery failed. Please try again later.",
}


class RecoveryCodeRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)


class RecoveryRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    code: str = Field(pattern=r"^\d{6}$")


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


@router.post("/recovery/code")
async def request_recovery_code(
    body: RecoveryCodeRequest, request: Request, db: AsyncSession = Depends(get_session)
) -> JSONResponse:
    """Send a recovery code. Same answer whether or not the email is known."""
    try:
        await recovery_manager.request_code(db, body.email, ip_address=_client_ip(request))
    except RateLimitedError as exc:
        return JSONResponse(
            status_code=429,
            content={"error": "rate_limited", "retry_after": exc.retry_after},
            headers={"Retry-After": str(exc.retry_after)},
        )
    return JSONResponse(status_code=202, content={"sent": True})


@router.post("/recovery")
async def recover_account(
    body: RecoveryRequest, request: Request, db: AsyncSession = Depends(get_session)
) -> JSONResponse:
    result = await recovery_manager.recover_account(db, body.email, body.code, ip_address=_client_ip(request))
    if result.success:
        return JSONResponse(status_code=200, content={"success": True})

    content: dict[str, Any] = {
        "success": False,
        "reason": result.reason.value if result.reason else None,
        "message": _FAILURE_MESSAGES.get(result.reason, "Recovery failed."),
    }
    if result.remaining_attempts is not None and result.reason == RecoveryFailureReason.INVALID_CODE:
        content["remaining_attempts"] = result.remaining_attempts
    return JSONResponse(status_code=400, content=content)


@router.get("/certificates/{certificate_id}")
async def validate_certificate(certificate_id: str, db: AsyncSession = Depends(get_session)) -> JSONResponse:
    validation = await certificate_issuer.validate(db, certificate_id)
    if validation.certificate is None:
        return JSONResponse(status_code=404, content={"valid": False, "error": "not_found"})

    cert = validation.certificate
    return JSONResponse(
        status_code=200,
        content={
            "valid": validation.valid,
            "error": validation.error,
            "certificate": {
                "certificate_id": cert.certificate_id,
                "user_id_hash": cert.user_id_hash,
                "deletion_request_id": cert.deletion_request_id,
                "deleted_at": cert.deleted_at,
                "deleted_data": cert.deleted_data,
                "verification_result": cert.verification_result,
                "signature_algorithm": cert.signature_algorithm,
                "issued_at": cert.issued_at,
                "issued_by": cert.issued_by,
            },
        },
    )

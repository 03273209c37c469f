"""Billing processor webhook endpoint.

Verifies the signature, skips event types we do not handle, and runs each
event id at most once. Response codes tell the processor whether to
retry: 200 for handled, skipped or permanently failed events, 500 for
transient failures.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from compliance.db.engine import get_session
from compliance.errors import ComplianceError
from compliance.events import emit
from compliance.integrations.billing.client import WebhookSignatureError, verify_webhook_signature
from compliance.models.activity import Subscription
from compliance.models.enums import WebhookEventStatus
from compliance.models.user import User
from compliance.schemas.events import EventType, SystemEvent
from compliance.security.idempotency import IdempotencyGuard, idempotency_guard

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

SIGNATURE_HEADER = "stripe-signature"


class PermanentWebhookError(ComplianceError):
    """Event can never succeed (e.g. references an unknown user); do not retry."""


Handler = Callable[[AsyncSession, dict[str, Any]], Awaitable[None]]


# ── Handlers ─────────────────────────────────────────────────────────


def _ts(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


async def _owner(db: AsyncSession, obj: dict[str, Any]) -> User:
    raw = (obj.get("metadata") or {}).get("user_id")
    if not raw:
        raise PermanentWebhookError("user not found: no user_id in metadata")
    try:
        user_id = uuid.UUID(str(raw))
    except ValueError as exc:
        raise PermanentWebhookError(f"user not found: {raw}") from exc
    user = await db.get(User, user_id)
    if user is None:
        raise PermanentWebhookError(f"user not found: {raw}")
    return user


async def _subscription_by_external_id(db: AsyncSession, external_id: str) -> Subscription | None:
    result = await db.execute(select(Subscription).where(Subscription.external_subscription_id == external_id))
    return result.scalar_one_or_none()


async def handle_subscription_changed(db: AsyncSession, obj: dict[str, Any]) -> None:
    """Upsert the local subscription mirror from a subscription object."""
    user = await _owner(db, obj)
    subscription = await _subscription_by_external_id(db, obj["id"])
    if subscription is None:
        subscription = Subscription(user_id=user.id, external_subscription_id=obj["id"], store="billing")
        db.add(subscription)

    plan = obj.get("plan") or {}
    subscription.plan = plan.get("id") or subscription.plan
    subscription.status = obj.get("status", "unknown")
    subscription.start_date = _ts(obj.get("start_date")) or subscription.start_date
    subscription.expiration_date = _ts(obj.get("current_period_end"))
    await db.flush()


async def handle_subscription_deleted(db: AsyncSession, obj: dict[str, Any]) -> None:
    await _owner(db, obj)
    subscription = await _subscription_by_external_id(db, obj["id"])
    if subscription is None:
        logger.info("Deleted subscription %s has no local mirror", obj["id"])
        return
    subscription.status = "canceled"
    subscription.expiration_date = _ts(obj.get("ended_at")) or subscription.expiration_date
    await db.flush()


def _invoice_handler(status: str) -> Handler:
    async def handle(db: AsyncSession, obj: dict[str, Any]) -> None:
        external_id = obj.get("subscription")
        if not external_id:
            return
        subscription = await _subscription_by_external_id(db, external_id)
        if subscription is None:
            raise PermanentWebhookError(f"user not found for subscription {external_id}")
        subscription.status = status
        await db.flush()

    handle.__name__ = f"handle_invoice_{status}"
    return handle


HANDLERS: dict[str, Handler] = {
    "customer.subscription.created": handle_subscription_changed,
    "customer.subscription.updated": handle_subscription_changed,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": _invoice_handler("active"),
    "invoice.payment_failed": _invoice_handler("past_due"),
}


# ── Dispatch ─────────────────────────────────────────────────────────


async def process_event(
    db: AsyncSession,
    event: dict[str, Any],
    guard: IdempotencyGuard | None = None,
) -> tuple[int, dict[str, Any]]:
    """Run one verified event. Returns (status_code, body).

    The handler's writes are committed before the event is marked
    processed. Transient failures, a failed commit included, are not
    marked so the redelivery runs the handler again.
    """
    guard = guard or idempotency_guard
    event_id = str(event.get("id", ""))
    event_type = str(event.get("type", ""))

    handler = HANDLERS.get(event_type)
    if handler is None:
        return 200, {"received": True, "processed": False, "reason": "unsupported_event_type"}

    if await guard.is_processed(event_id):
        logger.info("Webhook event %s already processed, skipping", event_id)
        return 200, {"received": True, "processed": False, "reason": "already_processed"}

    obj = (event.get("data") or {}).get("object") or {}
    try:
        await handler(db, obj)
        await db.commit()
    except PermanentWebhookError as exc:
        await db.rollback()
        logger.warning("Webhook event %s (%s) failed permanently: %s", event_id, event_type, exc)
        await guard.mark_processed(event_id, event_type, WebhookEventStatus.FAILED.value, str(exc))
        return 200, {"received": True, "processed": False, "reason": "permanent_failure"}
    except Exception:
        await db.rollback()
        logger.exception("Webhook event %s (%s) failed, requesting retry", event_id, event_type)
        return 500, {"received": True, "processed": False, "reason": "transient_failure"}

    await guard.mark_processed(event_id, event_type, WebhookEventStatus.SUCCESS.value)
    await emit(SystemEvent(
        event_type=EventType.BILLING_WEBHOOK_PROCESSED,
        data={"event_id": event_id, "type": event_type},
        source_module="webhooks.billing",
    ))
    return 200, {"received": True, "processed": True}


@router.post("/webhooks/billing")
async def billing_webhook(request: Request, db: AsyncSession = Depends(get_session)) -> JSONResponse:
    payload = await request.body()
    header = request.headers.get(SIGNATURE_HEADER)
    if not header:
        return JSONResponse(status_code=400, content={"error": "missing_signature"})

    try:
        event = verify_webhook_signature(payload, header)
    except WebhookSignatureError as exc:
        logger.warning("Rejected billing webhook: %s", exc)
        return JSONResponse(status_code=400, content={"error": "invalid_signature"})

    status_code, body = await process_event(db, event)
    return JSONResponse(status_code=status_code, content=body)

"""Async httpx client for the billing processor, plus webhook signature checks.

Customers are located through `metadata['user_id']`, so lookups keep
working after the local user row has been deleted.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any

import httpx

from compliance.config import settings
from compliance.errors import ComplianceError, NotFoundError, TransientExternalError

logger = logging.getLogger(__name__)


class WebhookSignatureError(ComplianceError):
    """Webhook payload failed signature or timestamp verification."""


class BillingClient:
    """Stripe-style REST client.

    Endpoints:
        GET    {base_url}/customers/search?query=metadata['user_id']:'...'
        DELETE {base_url}/customers/{customer_id}
    Auth: Bearer API key
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._base_url = settings.billing.billing_api_url.rstrip("/")
        self._api_key = settings.billing.billing_api_key
        self._timeout = httpx.Timeout(settings.billing.billing_timeout, connect=5.0)
        self._transport = transport

    async def find_customer_id(self, user_id: str) -> str | None:
        """Id of the customer tagged with `user_id`, or None."""
        response = await self._request(
            "GET",
            "/customers/search",
            params={"query": f"metadata['user_id']:'{user_id}'", "limit": "1"},
        )
        customers = response.json().get("data", [])
        if not customers:
            return None
        return customers[0]["id"]

    async def delete_customer(self, customer_id: str) -> None:
        await self._request("DELETE", f"/customers/{customer_id}")
        logger.info("Billing customer deleted: %s", customer_id)

    async def _request(self, method: str, path: str, params: dict[str, str] | None = None) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(
                    method,
                    f"{self._base_url}{path}",
                    params=params,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
        except httpx.TimeoutException as exc:
            logger.warning("Billing API timeout: %s %s", method, path)
            raise TransientExternalError("Billing API timeout") from exc
        except httpx.HTTPError as exc:
            raise TransientExternalError(f"Billing API unreachable: {exc}") from exc

        if response.status_code == 404 or _error_code(response) == "resource_missing":
            raise NotFoundError(f"Billing resource not found: {path}")
        if response.status_code >= 400:
            logger.warning("Billing API HTTP %s for %s %s", response.status_code, method, path)
            raise TransientExternalError(f"Billing API returned HTTP {response.status_code}")
        return response


def _error_code(response: httpx.Response) -> str | None:
    if response.status_code < 400:
        return None
    try:
        return response.json().get("error", {}).get("code")
    except ValueError:
        return None


# ── Webhook signatures ───────────────────────────────────────────────


def compute_webhook_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    payload: bytes,
    header: str,
    secret: str | None = None,
    tolerance: int | None = None,
    now: float | None = None,
) -> dict[str, Any]:
    """Check a `t=<ts>,v1=<hex>[,v1=...]` signature header and parse the event.

    Raises:
        WebhookSignatureError: malformed header, stale timestamp, no matching
            signature, or a body that is not JSON.
    """
    secret = settings.billing.billing_webhook_secret if secret is None else secret
    tolerance = settings.billing.webhook_tolerance_seconds if tolerance is None else tolerance

    timestamp: int | None = None
    candidates: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise WebhookSignatureError("Malformed signature timestamp") from exc
        elif key == "v1":
            candidates.append(value)

    if timestamp is None or not candidates:
        raise WebhookSignatureError("Malformed signature header")

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = compute_webhook_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
        raise WebhookSignatureError("No matching signature")

    try:
        return json.loads(payload)
    except ValueError as exc:
        raise WebhookSignatureError("Payload is not valid JSON") from exc


billing_client = BillingClient()

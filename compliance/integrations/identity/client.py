"""Async httpx client for the identity provider admin API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from compliance.config import settings
from compliance.errors import NotFoundError, TransientExternalError

logger = logging.getLogger(__name__)


class IdentityClient:
    """Thin async wrapper around the identity provider's user endpoints.

    Endpoints: GET/DELETE {base_url}/users/{user_id}
    Auth: Bearer token
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._base_url = settings.identity.identity_api_url.rstrip("/")
        self._token = settings.identity.identity_api_token
        self._timeout = httpx.Timeout(settings.identity.identity_timeout, connect=5.0)
        self._transport = transport

    async def get_user(self, user_id: str) -> dict[str, Any]:
        response = await self._request("GET", user_id)
        return response.json()

    async def delete_user(self, user_id: str) -> None:
        await self._request("DELETE", user_id)
        logger.info("Identity record deleted for user %s", user_id)

    async def _request(self, method: str, user_id: str) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(
                    method,
                    f"{self._base_url}/users/{user_id}",
                    headers={"Authorization": f"Bearer {self._token}"},
                )
        except httpx.TimeoutException as exc:
            logger.warning("Identity API timeout: %s user %s", method, user_id)
            raise TransientExternalError("Identity API timeout") from exc
        except httpx.HTTPError as exc:
            raise TransientExternalError(f"Identity API unreachable: {exc}") from exc

        if response.status_code == 404:
            raise NotFoundError(f"Identity user not found: {user_id}")
        if response.status_code >= 400:
            logger.warning("Identity API HTTP %s for %s user %s", response.status_code, method, user_id)
            raise TransientExternalError(f"Identity API returned HTTP {response.status_code}")
        return response


identity_client = IdentityClient()

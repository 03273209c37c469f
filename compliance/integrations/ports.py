"""Collaborator interfaces the lifecycle services depend on.

Adapters in the sibling packages implement these against S3, a SQL
warehouse, the identity provider and the billing processor. Tests swap in
in-memory fakes.

Every adapter raises NotFoundError when the target is already gone and
TransientExternalError for network, timeout and 5xx failures.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


@dataclass
class StoredObject:
    """Metadata for one object in a bucket."""

    name: str
    size: int
    content_type: str | None = None
    created_at: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)


class ObjectStore(Protocol):
    """A single bucket of user media or export archives."""

    async def list_files(self, prefix: str) -> list[StoredObject]: ...

    async def delete_file(self, name: str) -> None: ...

    async def download_file(self, name: str) -> bytes: ...

    async def upload_file(
        self,
        name: str,
        data: bytes,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> None: ...

    async def signed_url(self, name: str, expires_in: int) -> str: ...


class Warehouse(Protocol):
    """Analytics warehouse holding pseudonymized copies of user activity."""

    async def run_query(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]: ...

    async def delete_by_user_hash(self, user_hash: str) -> int: ...


class IdentityProvider(Protocol):
    """Authentication backend that owns the login record."""

    async def get_user(self, user_id: str) -> dict[str, Any]: ...

    async def delete_user(self, user_id: str) -> None: ...


class BillingProcessor(Protocol):
    """External billing system holding the customer record."""

    async def find_customer_id(self, user_id: str) -> str | None: ...

    async def delete_customer(self, customer_id: str) -> None: ...

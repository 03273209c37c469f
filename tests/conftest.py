"""Shared fixtures: an in-memory SQLite database and in-memory collaborators."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from compliance.errors import NotFoundError, TransientExternalError
from compliance.gdpr.certificates import CertificateIssuer
from compliance.gdpr.executor import DeletionExecutor
from compliance.gdpr.recovery import recovery_manager
from compliance.gdpr.verifier import DeletionVerifier
from compliance.integrations.ports import StoredObject
from compliance.models import Base, User
from compliance.security.audit import audit_trail
from compliance.security.idempotency import idempotency_guard
from compliance.security.rate_limiter import InMemoryCounterStore, RateLimiter

# ── Database ─────────────────────────────────────────────────────────


@pytest_asyncio.fixture()
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def user(db):
    """A persisted user with an email address."""
    row = User(id=uuid.uuid4(), email="ana@example.com", nickname="ana", birth_year=1990)
    db.add(row)
    await db.commit()
    return row


# ── Side channels ────────────────────────────────────────────────────


def _mock_session_factory():
    @asynccontextmanager
    async def factory():
        session = MagicMock()
        session.add = MagicMock()
        session.flush = AsyncMock()
        session.commit = AsyncMock()
        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        session.execute = AsyncMock(return_value=result)
        yield session

    return factory


@pytest.fixture(autouse=True)
def _isolate_side_channels(monkeypatch):
    """Keep audit writes, idempotency marks and rate limits off real backends."""
    monkeypatch.setattr(audit_trail, "_session_factory", _mock_session_factory())
    monkeypatch.setattr(idempotency_guard, "_session_factory", _mock_session_factory())
    monkeypatch.setattr(recovery_manager, "_rate_limiter", RateLimiter(InMemoryCounterStore()))


# ── Collaborator fakes ───────────────────────────────────────────────


class FakeObjectStore:
    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.created: dict[str, datetime] = {}
        self.fail_on: set[str] = set()
        self.list_error: Exception | None = None

    def put(self, name: str, data: bytes = b"x", content_type: str = "application/octet-stream", created_at=None):
        self.objects[name] = (data, content_type)
        self.created[name] = created_at or datetime.now(UTC)

    async def list_files(self, prefix: str) -> list[StoredObject]:
        if self.list_error is not None:
            raise self.list_error
        return [
            StoredObject(name=name, size=len(data), content_type=ctype, created_at=self.created[name])
            for name, (data, ctype) in sorted(self.objects.items())
            if name.startswith(prefix)
        ]

    async def delete_file(self, name: str) -> None:
        if name in self.fail_on:
            raise TransientExternalError(f"cannot delete {name}")
        if name not in self.objects:
            raise NotFoundError(name)
        del self.objects[name]
        del self.created[name]

    async def download_file(self, name: str) -> bytes:
        if name not in self.objects:
            raise NotFoundError(name)
        return self.objects[name][0]

    async def upload_file(self, name, data, content_type, metadata=None) -> None:
        self.put(name, data, content_type)

    async def signed_url(self, name: str, expires_in: int) -> str:
        return f"https://storage.test/{name}?expires={expires_in}"


class FakeWarehouse:
    def __init__(self) -> None:
        self.rows: dict[str, int] = {}
        self.error: Exception | None = None
        self.query_results: list[dict] | None = None

    async def run_query(self, sql, params=None):
        if self.error is not None:
            raise self.error
        if self.query_results is not None:
            return self.query_results
        return [{"count": self.rows.get(params["user_hash"], 0)}]

    async def delete_by_user_hash(self, user_hash: str) -> int:
        if self.error is not None:
            raise self.error
        return self.rows.pop(user_hash, 0)


class FakeIdentity:
    def __init__(self) -> None:
        self.users: set[str] = set()
        self.delete_error: Exception | None = None

    async def get_user(self, user_id: str) -> dict:
        if user_id not in self.users:
            raise NotFoundError(user_id)
        return {"uid": user_id}

    async def delete_user(self, user_id: str) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        if user_id not in self.users:
            raise NotFoundError(user_id)
        self.users.discard(user_id)


class FakeBilling:
    def __init__(self) -> None:
        self.customers: dict[str, str] = {}
        self.error: Exception | None = None

    async def find_customer_id(self, user_id: str) -> str | None:
        if self.error is not None:
            raise self.error
        return self.customers.get(user_id)

    async def delete_customer(self, customer_id: str) -> None:
        for user_id, cid in list(self.customers.items()):
            if cid == customer_id:
                del self.customers[user_id]
                return
        raise NotFoundError(customer_id)


@pytest.fixture()
def object_store():
    return FakeObjectStore()


@pytest.fixture()
def warehouse():
    return FakeWarehouse()


@pytest.fixture()
def identity():
    return FakeIdentity()


@pytest.fixture()
def billing():
    return FakeBilling()


@pytest.fixture()
def executor(object_store, warehouse, identity, billing):
    """A DeletionExecutor wired to the in-memory collaborators."""
    return DeletionExecutor(
        object_store=object_store,
        warehouse=warehouse,
        identity=identity,
        billing=billing,
        verifier=DeletionVerifier(object_store, warehouse, identity),
        issuer=CertificateIssuer("test-secret"),
    )


@pytest.fixture()
def archive_store():
    """Separate bucket for export archives."""
    return FakeObjectStore()

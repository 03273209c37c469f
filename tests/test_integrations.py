"""Tests for the collaborator adapters: S3, warehouse, identity and billing."""

from __future__ import annotations

import json

import boto3
import httpx
import pytest
import pytest_asyncio
from moto import mock_aws
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from compliance.db.engine import ping
from compliance.errors import NotFoundError, TransientExternalError
from compliance.integrations.billing.client import (
    BillingClient,
    WebhookSignatureError,
    compute_webhook_signature,
    verify_webhook_signature,
)
from compliance.integrations.identity.client import IdentityClient
from compliance.integrations.storage.client import S3ObjectStore
from compliance.integrations.warehouse.client import SqlWarehouse

# ── S3 ───────────────────────────────────────────────────────────────


@pytest.fixture()
def s3_store(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    with mock_aws():
        boto3.client("s3", region_name="us-east-1").create_bucket(Bucket="test-uploads")
        yield S3ObjectStore("test-uploads", region="us-east-1")


class TestS3ObjectStore:
    @pytest.mark.asyncio()
    async def test_upload_list_download(self, s3_store):
        await s3_store.upload_file("users/u1/a.txt", b"hello", "text/plain", metadata={"user_id": "u1"})
        await s3_store.upload_file("users/u1/b.txt", b"world!", "text/plain")
        await s3_store.upload_file("users/u2/c.txt", b"other", "text/plain")

        listed = await s3_store.list_files("users/u1/")

        assert [obj.name for obj in listed] == ["users/u1/a.txt", "users/u1/b.txt"]
        assert [obj.size for obj in listed] == [5, 6]
        assert listed[0].created_at is not None
        assert await s3_store.download_file("users/u1/a.txt") == b"hello"

    @pytest.mark.asyncio()
    async def test_delete_is_idempotency_aware(self, s3_store):
        await s3_store.upload_file("users/u1/a.txt", b"hello", "text/plain")

        await s3_store.delete_file("users/u1/a.txt")

        assert await s3_store.list_files("users/u1/") == []
        with pytest.raises(NotFoundError):
            await s3_store.delete_file("users/u1/a.txt")

    @pytest.mark.asyncio()
    async def test_download_missing(self, s3_store):
        with pytest.raises(NotFoundError):
            await s3_store.download_file("users/u1/none.bin")

    @pytest.mark.asyncio()
    async def test_signed_url(self, s3_store):
        await s3_store.upload_file("exports/u1/r1/export.zip", b"zip", "application/zip")

        url = await s3_store.signed_url("exports/u1/r1/export.zip", 3600)

        assert "exports/u1/r1/export.zip" in url
        assert "Expires=" in url or "X-Amz-Expires=3600" in url


# ── Warehouse ────────────────────────────────────────────────────────


@pytest_asyncio.fixture()
async def sql_warehouse():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        for table in ("users_anonymized", "training_sessions"):
            await conn.execute(text(f"CREATE TABLE {table} (id INTEGER PRIMARY KEY, user_hash TEXT)"))
        await conn.execute(text("INSERT INTO users_anonymized (user_hash) VALUES ('h1'), ('h2')"))
        await conn.execute(text("INSERT INTO training_sessions (user_hash) VALUES ('h1'), ('h1'), ('h2')"))
    warehouse = SqlWarehouse(engine=engine)
    yield warehouse
    await warehouse.dispose()


class TestSqlWarehouse:
    @pytest.mark.asyncio()
    async def test_run_query_returns_dicts(self, sql_warehouse):
        rows = await sql_warehouse.run_query(
            "SELECT COUNT(*) AS count FROM training_sessions WHERE user_hash = :user_hash", {"user_hash": "h1"}
        )
        assert rows == [{"count": 2}]

    @pytest.mark.asyncio()
    async def test_delete_by_user_hash(self, sql_warehouse):
        assert await sql_warehouse.delete_by_user_hash("h1") == 3
        assert await sql_warehouse.delete_by_user_hash("h1") == 0
        rows = await sql_warehouse.run_query("SELECT COUNT(*) AS count FROM training_sessions")
        assert rows == [{"count": 1}]

    @pytest.mark.asyncio()
    async def test_ping(self, sql_warehouse):
        assert await ping(sql_warehouse.engine) is True

    @pytest.mark.asyncio()
    async def test_query_error_is_transient(self, sql_warehouse):
        with pytest.raises(TransientExternalError):
            await sql_warehouse.run_query("SELECT * FROM missing_table")


# ── Identity ─────────────────────────────────────────────────────────


class TestIdentityClient:
    @pytest.mark.asyncio()
    async def test_get_and_delete(self):
        seen: list[tuple[str, str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path, request.headers["authorization"]))
            if request.method == "GET":
                return httpx.Response(200, json={"uid": "u1"})
            return httpx.Response(204)

        client = IdentityClient(transport=httpx.MockTransport(handler))

        assert await client.get_user("u1") == {"uid": "u1"}
        await client.delete_user("u1")

        assert [s[0] for s in seen] == ["GET", "DELETE"]
        assert all(path.endswith("/users/u1") for _, path, _ in seen)
        assert all(auth.startswith("Bearer ") for _, _, auth in seen)

    @pytest.mark.asyncio()
    async def test_404_is_not_found(self):
        client = IdentityClient(transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        with pytest.raises(NotFoundError):
            await client.delete_user("u1")

    @pytest.mark.asyncio()
    async def test_server_error_is_transient(self):
        client = IdentityClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        with pytest.raises(TransientExternalError):
            await client.get_user("u1")

    @pytest.mark.asyncio()
    async def test_timeout_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        client = IdentityClient(transport=httpx.MockTransport(handler))
        with pytest.raises(TransientExternalError):
            await client.delete_user("u1")


# ── Billing ──────────────────────────────────────────────────────────


class TestBillingClient:
    @pytest.mark.asyncio()
    async def test_find_customer_by_metadata(self):
        captured: dict[str, str] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["query"] = request.url.params["query"]
            return httpx.Response(200, json={"data": [{"id": "cus_42"}]})

        client = BillingClient(transport=httpx.MockTransport(handler))

        assert await client.find_customer_id("u1") == "cus_42"
        assert captured["query"] == "metadata['user_id']:'u1'"

    @pytest.mark.asyncio()
    async def test_no_customer(self):
        client = BillingClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"data": []})))
        assert await client.find_customer_id("u1") is None

    @pytest.mark.asyncio()
    async def test_resource_missing_is_not_found(self):
        body = {"error": {"code": "resource_missing", "message": "No such customer"}}
        client = BillingClient(transport=httpx.MockTransport(lambda r: httpx.Response(400, json=body)))
        with pytest.raises(NotFoundError):
            await client.delete_customer("cus_42")

    @pytest.mark.asyncio()
    async def test_rate_limit_is_transient(self):
        client = BillingClient(transport=httpx.MockTransport(lambda r: httpx.Response(429, text="slow down")))
        with pytest.raises(TransientExternalError):
            await client.delete_customer("cus_42")


class TestWebhookSignature:
    _payload = json.dumps({"id": "evt_1", "type": "invoice.payment_failed"}).encode()

    def _header(self, timestamp: int, secret: str = "whsec") -> str:
        return f"t={timestamp},v1={compute_webhook_signature(self._payload, timestamp, secret)}"

    def test_valid(self):
        event = verify_webhook_signature(self._payload, self._header(1000), secret="whsec", now=1010)
        assert event["id"] == "evt_1"

    def test_any_matching_v1_is_accepted(self):
        header = f"{self._header(1000)},v1=deadbeef"
        assert verify_webhook_signature(self._payload, header, secret="whsec", now=1000)["id"] == "evt_1"

    @pytest.mark.parametrize(
        "header",
        ["", "garbage", "t=abc,v1=00", "t=1000", "v1=00"],
    )
    def test_malformed_header(self, header):
        with pytest.raises(WebhookSignatureError):
            verify_webhook_signature(self._payload, header, secret="whsec", now=1000)

    def test_outside_tolerance(self):
        with pytest.raises(WebhookSignatureError):
            verify_webhook_signature(self._payload, self._header(1000), secret="whsec", tolerance=300, now=1301)

    def test_tampered_payload(self):
        with pytest.raises(WebhookSignatureError):
            verify_webhook_signature(self._payload + b" ", self._header(1000), secret="whsec", now=1000)

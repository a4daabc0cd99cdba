import asyncio
import os
import tempfile
import uuid
from datetime import datetime, timezone

# Services read their configuration at import time.
_DB_DIR = tempfile.mkdtemp(prefix="acp-tests-")
os.environ["MERCHANT_DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/merchant.db"
os.environ["PSP_DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/psp.db"
os.environ["PSP_PROCESSING_DELAY_SECONDS"] = "0"
os.environ["SEED_CATALOG_ON_STARTUP"] = "true"

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import create_async_engine

MERCHANT_HOST = "merchant.test"
PSP_HOST = "psp.test"
SIGNATURE = "dGVzdF9zaWduYXR1cmVfMTIzNDU2"


def now_rfc3339() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ForwardingTransport(httpx.AsyncBaseTransport):
    """Route async httpx requests by host to in-process TestClients."""

    def __init__(self, clients: dict):
        self.clients = clients

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        body = await request.aread()
        headers = {
            key: value
            for key, value in request.headers.items()
            if key.lower() not in ("host", "content-length")
        }
        client = self.clients[request.url.host]
        resp = client.request(
            request.method,
            request.url.path,
            params=request.url.params,
            content=body,
            headers=headers,
        )
        return httpx.Response(
            resp.status_code,
            headers={"content-type": resp.headers.get("content-type", "application/json")},
            content=resp.content,
        )


@pytest.fixture
def count_rows():
    """Count rows in a service database, e.g. count_rows("PSP_DATABASE_URL", VaultTokenRow)."""

    def count(database_url_env: str, model, *criteria) -> int:
        async def scalar():
            engine = create_async_engine(os.environ[database_url_env])
            try:
                async with engine.connect() as conn:
                    return await conn.scalar(select(func.count()).select_from(model).where(*criteria))
            finally:
                await engine.dispose()

        return asyncio.run(scalar())

    return count


@pytest.fixture
def merchant_client():
    from services.merchant.main import app

    with TestClient(app) as client:
        yield client


@pytest.fixture
def psp_client():
    from services.psp.main import app

    with TestClient(app) as client:
        yield client


@pytest.fixture
def signed_headers():
    """Factory for a full set of protected-endpoint headers."""

    def build(api_key: str = "test_api_key_123", drop=(), **overrides) -> dict:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "API-Version": "2025-09-29",
            "Accept-Language": "en-US",
            "User-Agent": "pytest/1.0",
            "Content-Type": "application/json",
            "Idempotency-Key": f"idem_{uuid.uuid4().hex}",
            "Request-Id": f"req_{uuid.uuid4().hex}",
            "Timestamp": now_rfc3339(),
            "Signature": SIGNATURE,
        }
        for name in drop:
            headers.pop(name)
        # Idempotency_Key="k" overrides the Idempotency-Key header.
        headers.update({name.replace("_", "-"): value for name, value in overrides.items()})
        return headers

    return build


@pytest.fixture
def psp_headers(signed_headers):
    def build(drop=(), **overrides) -> dict:
        return signed_headers("client_token_123", drop, **overrides)

    return build


@pytest.fixture
def merchant_with_psp(merchant_client, psp_client, monkeypatch):
    """Merchant whose payment gateway calls the in-process PSP."""
    from services.merchant.main import session_manager
    from services.merchant.payment_gateway import PaymentGatewayClient

    gateway = PaymentGatewayClient(
        base_url=f"http://{PSP_HOST}",
        transport=ForwardingTransport({PSP_HOST: psp_client}),
    )
    monkeypatch.setattr(session_manager, "payment_gateway", gateway)
    return merchant_client


@pytest.fixture
def acp_client(merchant_with_psp, psp_client):
    from acp_protocol.client import ACPCheckoutClient

    return ACPCheckoutClient(
        merchant_url=f"http://{MERCHANT_HOST}",
        psp_url=f"http://{PSP_HOST}",
        transport=ForwardingTransport({MERCHANT_HOST: merchant_with_psp, PSP_HOST: psp_client}),
    )

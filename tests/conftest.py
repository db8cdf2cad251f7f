"""Shared test fixtures."""

from __future__ import annotations

import os
import tempfile
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from cookieledger.allowance.keyvalue import InMemoryKeyValueStore
from cookieledger.auth.jwt import reset_keys
from cookieledger.config import get_settings
from cookieledger.dependencies import get_key_value_store, get_ledger_store
from cookieledger.ledger.redemption import wait_for_pending_log_writes
from cookieledger.ledger.store import InMemoryLedgerStore
from cookieledger.main import create_app


def _ensure_test_keys() -> str:
    """Generate an RSA key pair for testing if not present; returns the private key PEM."""
    private_path = os.environ.get("COOKIES_TEST_JWT_PRIVATE_KEY_PATH")
    if private_path and os.path.exists(private_path):
        with open(private_path) as fh:
            return fh.read()

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()

    tmpdir = tempfile.mkdtemp(prefix="cookies_test_keys_")
    private_path = os.path.join(tmpdir, "jwt_private.pem")
    public_path = os.path.join(tmpdir, "jwt_public.pem")
    with open(private_path, "w") as fh:
        fh.write(private_pem)
    with open(public_path, "w") as fh:
        fh.write(public_pem)

    os.environ["COOKIES_TEST_JWT_PRIVATE_KEY_PATH"] = private_path
    os.environ["COOKIES_JWT_PUBLIC_KEY_PATH"] = public_path
    os.environ["COOKIES_LOG_FORMAT"] = "console"
    get_settings.cache_clear()
    reset_keys()

    return private_pem


def make_token(
    account_id: str,
    *,
    roles: list[str] | None = None,
    expires_in: timedelta = timedelta(hours=1),
    issuer: str | None = None,
) -> str:
    """Sign an access token the way the sign-in service does."""
    private_key = _ensure_test_keys()
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": account_id,
        "iat": now,
        "exp": now + expires_in,
        "iss": issuer or settings.jwt_issuer,
    }
    if roles is not None:
        payload["roles"] = roles
    return jwt.encode(payload, private_key, algorithm="RS256")


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def kv() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore(namespace="cookies:device:test")


@pytest.fixture
def app(store: InMemoryLedgerStore, kv: InMemoryKeyValueStore) -> FastAPI:
    """App wired to in-memory ledger and key-value stores (no lifespan)."""
    _ensure_test_keys()
    application = create_app()
    application.dependency_overrides[get_ledger_store] = lambda: store
    application.dependency_overrides[get_key_value_store] = lambda: kv
    return application


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def authed_client(client: AsyncClient) -> AsyncClient:
    """Client signed in as account ``u1``."""
    client.headers["Authorization"] = f"Bearer {make_token('u1')}"
    return client


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token('ops', roles=['admin'])}"}


@pytest_asyncio.fixture(autouse=True)
async def _drain_redemption_log() -> AsyncGenerator[None, None]:
    """Finish best-effort log appends inside the test's own event loop."""
    yield
    await wait_for_pending_log_writes()

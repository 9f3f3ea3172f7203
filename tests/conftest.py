"""
Test configuration and fixtures for the OAuth authorization core tests
"""

import base64
import hashlib
import secrets
from typing import Dict, Any
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
import pytest_asyncio

from mcp_oauth.config.oauth_config import RedisConfig, TokenPolicyConfig
from mcp_oauth.memory_storage import InMemoryCredentialStore
from mcp_oauth.redis_storage import RedisCredentialStore
from mcp_oauth.security.audit_logger import InMemoryAuditLogger
from mcp_oauth.auth.oauth21_provider import OAuth21Provider

TEST_REDIRECT_URI = "https://app.example.com/callback"


def make_pkce_pair(method: str = "S256"):
    """Verifier/challenge pair computed independently of the library"""
    verifier = secrets.token_urlsafe(48)
    if method == "S256":
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        challenge = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    else:
        challenge = verifier
    return verifier, challenge


def fast_redis_config(**overrides) -> RedisConfig:
    """Redis settings with short timeouts and backoff for tests"""
    values = dict(
        key_prefix="test-oauth:",
        connection_timeout=0.5,
        operation_timeout=0.5,
        retry_attempts=3,
        initial_backoff=0.01,
        backoff_multiplier=2.0,
        max_backoff=0.05,
    )
    values.update(overrides)
    return RedisConfig(**values)


def make_mock_redis_client() -> MagicMock:
    """Redis client double for connection state tests"""
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.aclose = AsyncMock()
    client.register_script = MagicMock(side_effect=lambda source: AsyncMock(return_value=None))
    return client


@pytest.fixture
def pkce_pair():
    return make_pkce_pair()


@pytest.fixture
def pkce_factory():
    return make_pkce_pair


@pytest.fixture
def redis_config_factory():
    return fast_redis_config


@pytest.fixture
def mock_redis_client():
    return make_mock_redis_client()


@pytest.fixture
def fake_redis_server():
    """One in-process Redis server; clients built on it share state"""
    return fakeredis.FakeServer()


@pytest_asyncio.fixture
async def memory_store():
    """Connected in-process store without the background sweep"""
    store = InMemoryCredentialStore(sweep_interval=0)
    await store.connect()
    yield store
    await store.disconnect()


@pytest_asyncio.fixture
async def redis_store(fake_redis_server):
    """Connected Redis store backed by fakeredis"""
    client = fakeredis.FakeAsyncRedis(server=fake_redis_server, decode_responses=True)
    store = RedisCredentialStore(fast_redis_config(), client=client)
    await store.connect()
    yield store
    await store.disconnect()
    await client.aclose()


@pytest_asyncio.fixture(params=["memory", "redis"])
async def store(request, fake_redis_server):
    """Every store implementation, connected"""
    if request.param == "memory":
        backend = InMemoryCredentialStore(sweep_interval=0)
        client = None
    else:
        client = fakeredis.FakeAsyncRedis(server=fake_redis_server, decode_responses=True)
        backend = RedisCredentialStore(fast_redis_config(), client=client)

    await backend.connect()
    yield backend
    await backend.disconnect()
    if client is not None:
        await client.aclose()


@pytest.fixture
def audit_logger():
    return InMemoryAuditLogger()


@pytest.fixture
def token_policy():
    return TokenPolicyConfig()


@pytest.fixture
def provider(store, audit_logger, token_policy):
    """Provider over each store implementation"""
    return OAuth21Provider(
        store=store,
        audit_logger=audit_logger,
        policy=token_policy,
        issuer="https://auth.example.com",
    )


@pytest.fixture
def client_registration() -> Dict[str, Any]:
    """Registration request for a confidential client"""
    return {
        "client_name": "Test Client",
        "redirect_uris": [TEST_REDIRECT_URI],
        "scopes": ["read", "write", "tools:execute"],
        "grant_types": ["authorization_code", "refresh_token"],
        "token_endpoint_auth_method": "client_secret_post",
    }


@pytest_asyncio.fixture
async def registered_client(provider, client_registration):
    """Registration response (with client_secret) of a confidential client"""
    return await provider.register_client(client_registration)


@pytest_asyncio.fixture
async def public_client(provider):
    """Registration response of a public client (no secret)"""
    return await provider.register_client({
        "client_name": "Public Client",
        "redirect_uris": [TEST_REDIRECT_URI],
        "scopes": ["read", "write"],
        "token_endpoint_auth_method": "none",
    })

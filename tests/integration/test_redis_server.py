"""
Integration tests against a real Redis server

Set MCP_OAUTH_TEST_REDIS_URL (e.g. redis://localhost:6379/15) to run them.
"""

import asyncio
import os
import time
import uuid

import pytest
import pytest_asyncio
import redis.asyncio as redis

from mcp_oauth.config.oauth_config import RedisConfig
from mcp_oauth.models import AuthorizationCode, AccessToken, RefreshToken, RefreshTokenStatus
from mcp_oauth.redis_storage import RedisCredentialStore
from mcp_oauth.storage_interface import FamilyRevokedError

REDIS_URL = os.getenv("MCP_OAUTH_TEST_REDIS_URL")

pytestmark = pytest.mark.skipif(not REDIS_URL, reason="MCP_OAUTH_TEST_REDIS_URL not set")


@pytest_asyncio.fixture
async def live_store():
    prefix = f"mcp-oauth-test-{uuid.uuid4().hex[:8]}:"
    client = redis.from_url(REDIS_URL, decode_responses=True)
    store = RedisCredentialStore(RedisConfig(key_prefix=prefix), client=client)
    await store.connect()
    yield store
    async for key in client.scan_iter(match=f"{prefix}*"):
        await client.delete(key)
    await store.disconnect()
    await client.aclose()


class TestLiveRedis:

    @pytest.mark.asyncio
    async def test_health(self, live_store):
        health = await live_store.health_check()
        assert health.healthy
        assert health.latency_ms >= 0

    @pytest.mark.asyncio
    async def test_concurrent_consume(self, live_store):
        await live_store.put_code(AuthorizationCode(
            code="live", client_id="c1", redirect_uri="https://app/cb", code_challenge="x",
            subject="alice", expires_at=time.time() + 60), ttl=60)

        results = await asyncio.gather(*[live_store.consume_code("live") for _ in range(50)])
        assert sum(1 for r in results if r is not None) == 1

    @pytest.mark.asyncio
    async def test_rotation_and_family_revocation(self, live_store):
        expires_at = time.time() + 60
        await live_store.put_token(AccessToken(token="at", client_id="c1", subject="alice",
                                               family_id="f", expires_at=expires_at), ttl=60)
        await live_store.put_refresh_token(RefreshToken(token="rt", client_id="c1", subject="alice",
                                                        family_id="f", expires_at=expires_at), ttl=60)

        assert (await live_store.rotate_refresh_token("rt")).status == RefreshTokenStatus.ACTIVE
        assert (await live_store.rotate_refresh_token("rt")).status == RefreshTokenStatus.ROTATED
        assert await live_store.revoke_family("f") == 2
        assert await live_store.get_token("at") is None
        with pytest.raises(FamilyRevokedError):
            await live_store.put_token(AccessToken(token="at-late", client_id="c1", subject="alice",
                                                   family_id="f", expires_at=expires_at), ttl=60)

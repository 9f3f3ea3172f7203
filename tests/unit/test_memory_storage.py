"""
Unit tests for the in-process credential store
"""

import asyncio
import threading
import time
from unittest.mock import patch

import pytest

from mcp_oauth.memory_storage import InMemoryCredentialStore
from mcp_oauth.models import (
    OAuthClient, AuthorizationCode, AccessToken, RefreshToken, RefreshTokenStatus
)
from mcp_oauth.storage_interface import (
    ClientAlreadyExistsError, StoreNotConnectedError, FamilyRevokedError, REVOKED_FAMILY_TTL
)


def make_code(value="code-1", client_id="c1"):
    return AuthorizationCode(
        code=value,
        client_id=client_id,
        redirect_uri="https://app/cb",
        code_challenge="challenge",
        scopes=["read"],
        subject="alice",
        expires_at=time.time() + 600,
    )


def make_refresh(value="rt-1", family_id="fam-1"):
    return RefreshToken(token=value, client_id="c1", subject="alice", scopes=["read"],
                        family_id=family_id, expires_at=time.time() + 600)


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_use_before_connect_raises(self):
        store = InMemoryCredentialStore()
        with pytest.raises(StoreNotConnectedError):
            await store.get_client("c1")

    @pytest.mark.asyncio
    async def test_connect_starts_and_disconnect_stops_sweep(self):
        store = InMemoryCredentialStore(sweep_interval=60)
        await store.connect()
        sweep_task = store._sweep_task
        assert sweep_task is not None and not sweep_task.done()

        await store.disconnect()
        assert sweep_task.done()
        assert store._sweep_task is None
        # idempotent
        await store.disconnect()

    @pytest.mark.asyncio
    async def test_async_context_manager(self):
        async with InMemoryCredentialStore(sweep_interval=0) as store:
            assert (await store.health_check()).healthy
        assert not store.is_connected
        assert not (await store.health_check()).healthy


class TestClients:

    @pytest.mark.asyncio
    async def test_put_get_list_delete(self, memory_store):
        await memory_store.put_client(OAuthClient(client_id="c1", scopes=["read"]))

        client = await memory_store.get_client("c1")
        assert client.scopes == ["read"]
        assert [c.client_id for c in await memory_store.list_clients()] == ["c1"]

        assert await memory_store.delete_client("c1") is True
        assert await memory_store.get_client("c1") is None

    @pytest.mark.asyncio
    async def test_duplicate_client_rejected(self, memory_store):
        await memory_store.put_client(OAuthClient(client_id="c1"))
        with pytest.raises(ClientAlreadyExistsError):
            await memory_store.put_client(OAuthClient(client_id="c1"))

    @pytest.mark.asyncio
    async def test_values_are_copied(self, memory_store):
        original = OAuthClient(client_id="c1", scopes=["read"])
        await memory_store.put_client(original)
        original.scopes.append("admin")

        stored = await memory_store.get_client("c1")
        assert stored.scopes == ["read"]
        stored.scopes.append("write")
        assert (await memory_store.get_client("c1")).scopes == ["read"]


class TestCodes:

    @pytest.mark.asyncio
    async def test_consume_once(self, memory_store):
        await memory_store.put_code(make_code(), ttl=600)
        assert (await memory_store.consume_code("code-1")).client_id == "c1"
        assert await memory_store.consume_code("code-1") is None

    @pytest.mark.asyncio
    async def test_invalid_ttl(self, memory_store):
        with pytest.raises(ValueError, match="Invalid TTL"):
            await memory_store.put_code(make_code(), ttl=0)

    @pytest.mark.asyncio
    async def test_expired_code_is_absent(self, memory_store):
        await memory_store.put_code(make_code(), ttl=1)
        with patch("mcp_oauth.models.utc_timestamp", return_value=time.time() + 5):
            assert await memory_store.consume_code("code-1") is None

    @pytest.mark.asyncio
    async def test_concurrent_consume_from_threads(self, memory_store):
        await memory_store.put_code(make_code(), ttl=600)
        workers = 50
        barrier = threading.Barrier(workers)
        results = []

        async def consume():
            # all threads reach consume_code together
            barrier.wait(timeout=10)
            return await memory_store.consume_code("code-1")

        def worker():
            # each thread drives its own event loop against the shared store
            results.append(asyncio.run(consume()))

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == workers
        assert sum(1 for r in results if r is not None) == 1


class TestTokens:

    @pytest.mark.asyncio
    async def test_access_token_roundtrip_and_revoke(self, memory_store):
        token = AccessToken(token="at-1", client_id="c1", subject="alice",
                            family_id="fam-1", expires_at=time.time() + 60)
        await memory_store.put_token(token, ttl=60)
        assert (await memory_store.get_token("at-1")).subject == "alice"

        assert await memory_store.revoke_token("at-1") is True
        assert await memory_store.revoke_token("at-1") is False
        assert await memory_store.get_token("at-1") is None

    @pytest.mark.asyncio
    async def test_rotate_returns_previous_state(self, memory_store):
        await memory_store.put_refresh_token(make_refresh(), ttl=600)

        first = await memory_store.rotate_refresh_token("rt-1")
        second = await memory_store.rotate_refresh_token("rt-1")

        assert first.status == RefreshTokenStatus.ACTIVE
        assert second.status == RefreshTokenStatus.ROTATED
        assert (await memory_store.get_refresh_token("rt-1")).status == RefreshTokenStatus.ROTATED
        assert await memory_store.rotate_refresh_token("missing") is None

    @pytest.mark.asyncio
    async def test_revoke_family(self, memory_store):
        await memory_store.put_refresh_token(make_refresh("rt-1", "fam-1"), ttl=600)
        await memory_store.put_refresh_token(make_refresh("rt-2", "fam-2"), ttl=600)
        await memory_store.put_token(
            AccessToken(token="at-1", client_id="c1", subject="alice", family_id="fam-1",
                        expires_at=time.time() + 60), ttl=60)

        assert await memory_store.revoke_family("fam-1") == 2
        assert await memory_store.get_token("at-1") is None
        assert await memory_store.get_refresh_token("rt-1") is None
        assert await memory_store.get_refresh_token("rt-2") is not None

    @pytest.mark.asyncio
    async def test_revoked_family_refuses_new_members(self, memory_store):
        await memory_store.put_refresh_token(make_refresh("rt-1", "fam-1"), ttl=600)
        await memory_store.revoke_family("fam-1")

        with pytest.raises(FamilyRevokedError):
            await memory_store.put_refresh_token(make_refresh("rt-2", "fam-1"), ttl=600)
        with pytest.raises(FamilyRevokedError):
            await memory_store.put_token(
                AccessToken(token="at-2", client_id="c1", subject="alice", family_id="fam-1",
                            expires_at=time.time() + 60), ttl=60)

        assert await memory_store.get_refresh_token("rt-2") is None
        assert await memory_store.get_token("at-2") is None
        # other families are unaffected
        await memory_store.put_refresh_token(make_refresh("rt-3", "fam-2"), ttl=600)

    @pytest.mark.asyncio
    async def test_revoked_family_marker_is_swept(self, memory_store):
        await memory_store.revoke_family("fam-1")

        later = time.time() + REVOKED_FAMILY_TTL + 5
        with patch("mcp_oauth.models.utc_timestamp", return_value=later), \
                patch("mcp_oauth.memory_storage.utc_timestamp", return_value=later):
            memory_store.sweep_expired()

        await memory_store.put_refresh_token(make_refresh("rt-1", "fam-1"), ttl=600)
        assert await memory_store.get_refresh_token("rt-1") is not None

    @pytest.mark.asyncio
    async def test_revoke_client_tokens(self, memory_store):
        await memory_store.put_refresh_token(make_refresh("rt-1", "fam-1"), ttl=600)
        await memory_store.put_token(
            AccessToken(token="at-1", client_id="c1", subject="alice", family_id="fam-1",
                        expires_at=time.time() + 60), ttl=60)
        await memory_store.put_token(
            AccessToken(token="at-other", client_id="c2", subject="bob",
                        expires_at=time.time() + 60), ttl=60)

        assert await memory_store.revoke_client_tokens("c1") == 2
        assert await memory_store.get_token("at-1") is None
        assert await memory_store.get_refresh_token("rt-1") is None
        assert await memory_store.get_token("at-other") is not None
        assert await memory_store.revoke_client_tokens("c1") == 0

    @pytest.mark.asyncio
    async def test_sweep_and_stats(self, memory_store):
        await memory_store.put_client(OAuthClient(client_id="c1"))
        await memory_store.put_code(make_code("live"), ttl=600)
        await memory_store.put_code(make_code("short"), ttl=1)

        stats = await memory_store.stats()
        assert stats.backend == "memory"
        assert stats.clients == 1
        assert stats.authorization_codes == 2

        later = time.time() + 5
        with patch("mcp_oauth.models.utc_timestamp", return_value=later), \
                patch("mcp_oauth.memory_storage.utc_timestamp", return_value=later):
            assert memory_store.sweep_expired() == 1
            assert (await memory_store.stats()).authorization_codes == 1

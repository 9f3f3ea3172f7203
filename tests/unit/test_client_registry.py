"""
Unit tests for dynamic client registration and client authentication
"""

import time

import pytest

from mcp_oauth.auth.client_registry import (
    DynamicClientRegistry, ClientRegistrationError, ClientAuthenticationError,
    hash_client_secret, verify_client_secret
)
from mcp_oauth.models import AccessToken


@pytest.fixture
def registry(memory_store):
    return DynamicClientRegistry(memory_store, default_scopes=["read"])


class TestSecretHashing:

    def test_hash_verifies(self):
        encoded = hash_client_secret("s3cret", iterations=1000)
        assert encoded.startswith("pbkdf2_sha256$1000$")
        assert "s3cret" not in encoded
        assert verify_client_secret("s3cret", encoded)
        assert not verify_client_secret("wrong", encoded)

    def test_salted(self):
        assert hash_client_secret("same", iterations=1000) != hash_client_secret("same", iterations=1000)

    def test_malformed_hash(self):
        assert not verify_client_secret("x", "not-a-hash")


class TestRegistration:

    @pytest.mark.asyncio
    async def test_confidential_client(self, registry, memory_store):
        response = await registry.register_client({
            "client_name": "Example",
            "redirect_uris": ["https://app.example.com/cb"],
            "scope": "read write",
        })

        assert response["client_secret"]
        assert response["scope"] == "read write"

        stored = await memory_store.get_client(response["client_id"])
        assert stored.client_secret_hash != response["client_secret"]
        assert verify_client_secret(response["client_secret"], stored.client_secret_hash)

    @pytest.mark.asyncio
    async def test_public_client_has_no_secret(self, registry):
        response = await registry.register_client({
            "redirect_uris": ["http://localhost:3000/cb"],
            "token_endpoint_auth_method": "none",
        })
        assert "client_secret" not in response
        assert response["scope"] == "read"

    @pytest.mark.asyncio
    async def test_fixed_client_id_and_duplicate(self, registry):
        request = {"client_id": "c1", "redirect_uris": ["https://app/cb"], "scopes": ["read"]}
        assert (await registry.register_client(request))["client_id"] == "c1"

        with pytest.raises(ClientRegistrationError):
            await registry.register_client(request)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("request_data", [
        {},
        {"redirect_uris": "https://app/cb"},
        {"redirect_uris": ["not a uri"]},
        {"redirect_uris": ["http://evil.example.com/cb"]},
        {"redirect_uris": ["https://app/cb#frag"]},
        {"redirect_uris": ["https://app/cb"], "grant_types": ["password"]},
        {"redirect_uris": ["https://app/cb"], "token_endpoint_auth_method": "private_key_jwt"},
        {"redirect_uris": ["https://app/cb"], "scopes": "read"},
        {"redirect_uris": ["https://app/cb"], "metadata": ["x"]},
    ])
    async def test_malformed_requests(self, registry, request_data):
        with pytest.raises(ClientRegistrationError):
            await registry.register_client(request_data)

    @pytest.mark.asyncio
    async def test_list_hides_secret_hash(self, registry):
        await registry.register_client({"redirect_uris": ["https://app/cb"]})
        clients = await registry.list_clients()
        assert len(clients) == 1
        assert clients[0].client_secret_hash is None


class TestAuthentication:

    @pytest.mark.asyncio
    async def test_confidential_client_requires_secret(self, registry):
        response = await registry.register_client({"redirect_uris": ["https://app/cb"]})
        client_id, secret = response["client_id"], response["client_secret"]

        assert (await registry.authenticate_client(client_id, secret)).client_id == client_id
        with pytest.raises(ClientAuthenticationError):
            await registry.authenticate_client(client_id, "wrong")
        with pytest.raises(ClientAuthenticationError):
            await registry.authenticate_client(client_id, None)

    @pytest.mark.asyncio
    async def test_public_client_and_unknown_client(self, registry):
        response = await registry.register_client({
            "redirect_uris": ["https://app/cb"],
            "token_endpoint_auth_method": "none",
        })
        assert await registry.authenticate_client(response["client_id"])

        with pytest.raises(ClientAuthenticationError):
            await registry.authenticate_client("nobody")

    @pytest.mark.asyncio
    async def test_delete_client_revokes_tokens(self, registry, memory_store):
        response = await registry.register_client({"redirect_uris": ["https://app/cb"]})
        client_id = response["client_id"]
        await memory_store.put_token(
            AccessToken(token="at-1", client_id=client_id, subject="alice",
                        expires_at=time.time() + 60), ttl=60)

        assert await registry.delete_client(client_id) is True
        assert await memory_store.get_token("at-1") is None
        assert await registry.get_client(client_id) is None
        assert await registry.delete_client(client_id) is False

#!/usr/bin/env python3
"""
Basic usage example for the MCP OAuth authorization core

Two provider instances share one Redis-backed credential store, the way
several server processes would behind a load balancer. Point it at a Redis
server with MCP_OAUTH_REDIS_HOST (default: localhost).
"""

import asyncio
import os

from mcp_oauth.auth import OAuth21Error, create_oauth21_provider, create_pkce_pair
from mcp_oauth.config import get_production_config, configure_logging
from mcp_oauth.storage_interface import StorageError

REDIRECT_URI = "https://app.example.com/callback"


async def main():
    """Example usage of the authorization core across two instances"""
    print("🚀 MCP OAuth - Basic Usage Example")
    print("=" * 50)

    config = get_production_config(
        redis_host=os.getenv("MCP_OAUTH_REDIS_HOST", "localhost"),
        key_prefix="mcp-oauth-example:",
    )
    configure_logging(config.logging)

    try:
        print("1. Starting two provider instances...")
        first = await create_oauth21_provider(config)
        second = await create_oauth21_provider(config)
        print("   ✓ Both instances connected to Redis")
    except StorageError as e:
        print(f"❌ Redis is not reachable: {e}")
        return

    try:
        print("\n2. Registering a client on instance one...")
        client = await first.register_client({
            "client_name": "Example Client",
            "redirect_uris": [REDIRECT_URI],
            "scopes": ["read", "tools:execute"],
        })
        print(f"   Client id: {client['client_id']}")

        print("\n3. Authorizing on instance one, exchanging on instance two...")
        pkce = create_pkce_pair()
        authorization = await first.handle_authorization_request(
            client_id=client["client_id"],
            redirect_uri=REDIRECT_URI,
            code_challenge=pkce.code_challenge,
        )
        tokens = await second.handle_token_request(
            grant_type="authorization_code",
            client_id=client["client_id"],
            client_secret=client["client_secret"],
            code=authorization["params"]["code"],
            redirect_uri=REDIRECT_URI,
            code_verifier=pkce.code_verifier,
        )
        print(f"   ✓ Scope granted: {tokens['scope']}")

        print("\n4. Rotating the refresh token, then replaying the old one...")
        await first.handle_token_request(
            grant_type="refresh_token",
            client_id=client["client_id"],
            client_secret=client["client_secret"],
            refresh_token=tokens["refresh_token"],
        )
        try:
            await second.handle_token_request(
                grant_type="refresh_token",
                client_id=client["client_id"],
                client_secret=client["client_secret"],
                refresh_token=tokens["refresh_token"],
            )
        except OAuth21Error as e:
            print(f"   ✓ Replay rejected ({e.error}); token family revoked")

        print("\n5. Store statistics:")
        for key, value in (await first.get_stats()).items():
            print(f"   {key}: {value}")

    finally:
        await first.store.disconnect()
        await second.store.disconnect()

    print("\n✅ Example completed successfully!")


if __name__ == "__main__":
    asyncio.run(main())

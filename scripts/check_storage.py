#!/usr/bin/env python3
"""
Credential store health check

Connects to the store selected by the MCP_OAUTH_* environment variables,
reports health and record counts, and exits non-zero if the store is
unreachable.
"""

import asyncio
import json
import logging
import sys

from mcp_oauth.config import get_oauth_config, configure_logging
from mcp_oauth.storage_factory import StorageFactory
from mcp_oauth.storage_interface import StorageError


async def main() -> int:
    """Main entry point"""
    config = get_oauth_config()
    configure_logging(config.logging)
    logger = logging.getLogger(__name__)

    logger.info(f"Checking credential store: backend={config.storage_backend}")
    if config.redis:
        logger.info(f"Redis {config.redis.host}:{config.redis.port} db={config.redis.db} "
                    f"prefix={config.redis.key_prefix}")

    try:
        store = await StorageFactory.create_storage(config)
    except StorageError as e:
        logger.error(f"Could not connect to credential store: {e}")
        return 1

    try:
        health = await store.health_check()
        stats = await store.stats()
    except StorageError as e:
        logger.error(f"Credential store check failed: {e}")
        return 1
    finally:
        await store.disconnect()

    print(json.dumps({"health": health.model_dump(), "stats": stats.model_dump()}, indent=2))
    return 0 if health.healthy else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))

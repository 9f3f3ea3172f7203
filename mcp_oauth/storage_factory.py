from .storage_interface import CredentialStore
from .memory_storage import InMemoryCredentialStore
from .config.oauth_config import OAuthConfig, RedisConfig


class StorageFactory:
    """Factory class for creating connected credential stores"""

    @staticmethod
    def build_storage(config: OAuthConfig) -> CredentialStore:
        """Create the configured store without connecting it"""

        if config.storage_backend == "memory":
            return InMemoryCredentialStore(sweep_interval=config.memory.sweep_interval)

        elif config.storage_backend == "redis":
            from .redis_storage import RedisCredentialStore
            return RedisCredentialStore(config.redis or RedisConfig(key_prefix="oauth:"))

        else:
            raise ValueError(f"Unsupported storage backend: {config.storage_backend}")

    @staticmethod
    async def create_storage(config: OAuthConfig) -> CredentialStore:
        """Create and connect the store selected by configuration"""
        store = StorageFactory.build_storage(config)
        await store.connect()
        return store

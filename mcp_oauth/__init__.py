"""
MCP OAuth 2.1 authorization core

Issues, exchanges, refreshes and revokes authorization codes and tokens on a
pluggable credential store, in-process or shared through Redis.
"""

from .models import (
    OAuthClient, AuthorizationCode, AccessToken, RefreshToken, RefreshTokenStatus,
    CodeChallengeMethod, StorageStats, HealthStatus, TokenResponse
)
from .storage_interface import (
    CredentialStore, StorageError, StorageUnavailable, ClientAlreadyExistsError,
    StoreNotConnectedError
)
from .memory_storage import InMemoryCredentialStore
from .storage_factory import StorageFactory
from .auth import OAuth21Provider, OAuth21Error, create_oauth21_provider, map_scopes_to_permissions

__version__ = "1.0.0"

__all__ = [
    'OAuthClient',
    'AuthorizationCode',
    'AccessToken',
    'RefreshToken',
    'RefreshTokenStatus',
    'CodeChallengeMethod',
    'StorageStats',
    'HealthStatus',
    'TokenResponse',
    'CredentialStore',
    'StorageError',
    'StorageUnavailable',
    'ClientAlreadyExistsError',
    'StoreNotConnectedError',
    'InMemoryCredentialStore',
    'StorageFactory',
    'OAuth21Provider',
    'OAuth21Error',
    'create_oauth21_provider',
    'map_scopes_to_permissions'
]

from abc import ABC, abstractmethod
from typing import List, Optional

from .models import (
    OAuthClient, AuthorizationCode, AccessToken, RefreshToken,
    StorageStats, HealthStatus
)


class StorageError(Exception):
    """Base class for credential store failures"""
    pass


class StorageUnavailable(StorageError):
    """Backend unreachable, timed out, or failed mid-operation"""

    def __init__(self, message: str = "Credential storage temporarily unavailable", fatal: bool = False):
        self.fatal = fatal
        super().__init__(message)


class ClientAlreadyExistsError(StorageError):
    pass


class StoreNotConnectedError(RuntimeError):
    """Store used before connect() or after disconnect(); a caller bug"""
    pass


class FamilyRevokedError(Exception):
    """Write refused: the token's rotation family was revoked"""

    def __init__(self, family_id: str):
        self.family_id = family_id
        super().__init__(f"Token family {family_id[:8]} has been revoked")


# How long a revoked family keeps refusing new members; covers any
# issuance still in flight when the family was revoked
REVOKED_FAMILY_TTL = 86400


def validate_ttl(ttl: int) -> None:
    if ttl <= 0:
        raise ValueError(f"Invalid TTL: {ttl} (must be > 0)")


class CredentialStore(ABC):
    """Abstract interface for OAuth credential persistence.

    Every operation may raise StorageUnavailable. consume_code must be an
    atomic read-and-delete: among concurrent callers presenting the same
    code, exactly one receives the record and the rest receive None.
    """

    backend_name = "abstract"

    async def __aenter__(self) -> "CredentialStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # Lifecycle
    @abstractmethod
    async def connect(self) -> None:
        """Open resources; idempotent"""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Release all resources; idempotent"""
        pass

    @abstractmethod
    async def health_check(self) -> HealthStatus:
        """Diagnostic check; must not take request-path locks"""
        pass

    # Client operations
    @abstractmethod
    async def get_client(self, client_id: str) -> Optional[OAuthClient]:
        pass

    @abstractmethod
    async def put_client(self, client: OAuthClient) -> None:
        """Store a new client; raises ClientAlreadyExistsError on duplicate id"""
        pass

    @abstractmethod
    async def list_clients(self) -> List[OAuthClient]:
        pass

    @abstractmethod
    async def delete_client(self, client_id: str) -> bool:
        """Administrative removal"""
        pass

    # Authorization code operations
    @abstractmethod
    async def put_code(self, code: AuthorizationCode, ttl: int) -> None:
        pass

    @abstractmethod
    async def consume_code(self, code_value: str) -> Optional[AuthorizationCode]:
        """Atomically fetch and delete; None when absent, expired or already consumed"""
        pass

    # Access token operations
    @abstractmethod
    async def put_token(self, token: AccessToken, ttl: int) -> None:
        """Raises FamilyRevokedError if the token's family was revoked"""
        pass

    @abstractmethod
    async def get_token(self, value: str) -> Optional[AccessToken]:
        pass

    @abstractmethod
    async def revoke_token(self, value: str) -> bool:
        pass

    # Refresh token operations
    @abstractmethod
    async def put_refresh_token(self, token: RefreshToken, ttl: int) -> None:
        """Raises FamilyRevokedError if the token's family was revoked"""
        pass

    @abstractmethod
    async def get_refresh_token(self, value: str) -> Optional[RefreshToken]:
        pass

    @abstractmethod
    async def rotate_refresh_token(self, value: str) -> Optional[RefreshToken]:
        """Atomically mark a refresh token as rotated.

        Returns the record as it was before the call, so a caller seeing
        status ACTIVE is the single winner and a caller seeing ROTATED is
        replaying an old token. None when absent or expired.
        """
        pass

    @abstractmethod
    async def revoke_refresh_token(self, value: str) -> bool:
        pass

    @abstractmethod
    async def revoke_family(self, family_id: str) -> int:
        """Delete every access and refresh token in a rotation family.

        The family stays marked as revoked for REVOKED_FAMILY_TTL seconds, so
        tokens issued into it afterwards are refused rather than stored.
        """
        pass

    @abstractmethod
    async def revoke_client_tokens(self, client_id: str) -> int:
        """Delete every access and refresh token issued to a client"""
        pass

    @abstractmethod
    async def stats(self) -> StorageStats:
        pass

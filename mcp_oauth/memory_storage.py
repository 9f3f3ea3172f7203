"""
In-process credential store.

Holds every record kind in plain dicts, one threading.Lock per kind. No
coroutine suspends while a lock is held, so the store is consistent across
threads as well as across asyncio tasks of one event loop.
"""

import asyncio
import logging
import threading
import time
from typing import Dict, List, Optional

from .models import (
    OAuthClient, AuthorizationCode, AccessToken, RefreshToken,
    RefreshTokenStatus, StorageStats, HealthStatus, ExpiringRecord, utc_timestamp
)
from .storage_interface import (
    CredentialStore, ClientAlreadyExistsError, StoreNotConnectedError, FamilyRevokedError,
    REVOKED_FAMILY_TTL, validate_ttl
)

logger = logging.getLogger(__name__)


class _ExpiringTable:
    """Dict of expiring records guarded by its own lock"""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._items: Dict[str, ExpiringRecord] = {}

    def put(self, key: str, record: ExpiringRecord) -> None:
        with self._lock:
            self._items[key] = record.model_copy(deep=True)

    def get(self, key: str) -> Optional[ExpiringRecord]:
        with self._lock:
            record = self._items.get(key)
            if record is None:
                return None
            if record.is_expired():
                del self._items[key]
                return None
            return record.model_copy(deep=True)

    def pop(self, key: str) -> Optional[ExpiringRecord]:
        """Remove and return a live record in one critical section"""
        with self._lock:
            record = self._items.pop(key, None)
            if record is None or record.is_expired():
                return None
            return record

    def mark(self, key: str, **changes) -> Optional[ExpiringRecord]:
        """Apply changes to a live record; returns a copy of it as it was before"""
        with self._lock:
            record = self._items.get(key)
            if record is None:
                return None
            if record.is_expired():
                del self._items[key]
                return None
            self._items[key] = record.model_copy(update=changes)
            return record.model_copy(deep=True)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def delete_where(self, predicate) -> int:
        with self._lock:
            doomed = [key for key, record in self._items.items() if predicate(record)]
            for key in doomed:
                del self._items[key]
            return len(doomed)

    def sweep(self) -> int:
        now = utc_timestamp()
        return self.delete_where(lambda record: record.is_expired(now))

    def count(self) -> int:
        now = utc_timestamp()
        with self._lock:
            return sum(1 for record in self._items.values() if not record.is_expired(now))


class InMemoryCredentialStore(CredentialStore):
    """Credential store for single-process deployments and tests"""

    backend_name = "memory"

    def __init__(self, sweep_interval: float = 60.0):
        self.sweep_interval = sweep_interval
        self._client_lock = threading.Lock()
        self._clients: Dict[str, OAuthClient] = {}
        self._codes = _ExpiringTable("authorization_codes")
        self._tokens = _ExpiringTable("access_tokens")
        self._refresh_tokens = _ExpiringTable("refresh_tokens")
        # Family revocation and family member writes are serialized
        self._family_lock = threading.Lock()
        self._revoked_families: Dict[str, float] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise StoreNotConnectedError("InMemoryCredentialStore used before connect()")

    async def connect(self) -> None:
        if self._connected:
            return
        self._connected = True
        if self.sweep_interval > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"In-memory credential store ready (sweep every {self.sweep_interval}s)")

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("In-memory credential store closed")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = self.sweep_expired()
            if removed:
                logger.debug(f"Swept {removed} expired credentials")

    def sweep_expired(self) -> int:
        """Remove expired codes and tokens; returns how many were dropped"""
        now = utc_timestamp()
        with self._family_lock:
            for family_id in [f for f, until in self._revoked_families.items() if until <= now]:
                del self._revoked_families[family_id]
        return self._codes.sweep() + self._tokens.sweep() + self._refresh_tokens.sweep()

    async def health_check(self) -> HealthStatus:
        started = time.perf_counter()
        return HealthStatus(
            healthy=self._connected,
            backend=self.backend_name,
            latency_ms=(time.perf_counter() - started) * 1000,
            detail="ok" if self._connected else "not connected",
            state="connected" if self._connected else "disconnected",
        )

    # Clients

    async def get_client(self, client_id: str) -> Optional[OAuthClient]:
        self._ensure_connected()
        with self._client_lock:
            client = self._clients.get(client_id)
            return client.model_copy(deep=True) if client else None

    async def put_client(self, client: OAuthClient) -> None:
        self._ensure_connected()
        with self._client_lock:
            if client.client_id in self._clients:
                raise ClientAlreadyExistsError(f"Client {client.client_id} already exists")
            self._clients[client.client_id] = client.model_copy(deep=True)

    async def list_clients(self) -> List[OAuthClient]:
        self._ensure_connected()
        with self._client_lock:
            return [client.model_copy(deep=True) for client in self._clients.values()]

    async def delete_client(self, client_id: str) -> bool:
        self._ensure_connected()
        with self._client_lock:
            return self._clients.pop(client_id, None) is not None

    # Authorization codes

    async def put_code(self, code: AuthorizationCode, ttl: int) -> None:
        self._ensure_connected()
        validate_ttl(ttl)
        record = code.model_copy(update={"expires_at": utc_timestamp() + ttl})
        self._codes.put(code.code, record)

    async def consume_code(self, code_value: str) -> Optional[AuthorizationCode]:
        self._ensure_connected()
        return self._codes.pop(code_value)

    # Access tokens

    def _check_family(self, family_id: Optional[str]) -> None:
        # caller holds _family_lock
        if family_id and self._revoked_families.get(family_id, 0) > utc_timestamp():
            raise FamilyRevokedError(family_id)

    async def put_token(self, token: AccessToken, ttl: int) -> None:
        self._ensure_connected()
        validate_ttl(ttl)
        record = token.model_copy(update={"expires_at": utc_timestamp() + ttl})
        with self._family_lock:
            self._check_family(token.family_id)
            self._tokens.put(token.token, record)

    async def get_token(self, value: str) -> Optional[AccessToken]:
        self._ensure_connected()
        return self._tokens.get(value)

    async def revoke_token(self, value: str) -> bool:
        self._ensure_connected()
        return self._tokens.delete(value)

    # Refresh tokens

    async def put_refresh_token(self, token: RefreshToken, ttl: int) -> None:
        self._ensure_connected()
        validate_ttl(ttl)
        record = token.model_copy(update={"expires_at": utc_timestamp() + ttl})
        with self._family_lock:
            self._check_family(token.family_id)
            self._refresh_tokens.put(token.token, record)

    async def get_refresh_token(self, value: str) -> Optional[RefreshToken]:
        self._ensure_connected()
        return self._refresh_tokens.get(value)

    async def rotate_refresh_token(self, value: str) -> Optional[RefreshToken]:
        self._ensure_connected()
        return self._refresh_tokens.mark(value, status=RefreshTokenStatus.ROTATED)

    async def revoke_refresh_token(self, value: str) -> bool:
        self._ensure_connected()
        return self._refresh_tokens.delete(value)

    async def revoke_family(self, family_id: str) -> int:
        self._ensure_connected()
        in_family = lambda record: record.family_id == family_id  # noqa: E731
        with self._family_lock:
            self._revoked_families[family_id] = utc_timestamp() + REVOKED_FAMILY_TTL
            removed = self._tokens.delete_where(in_family) + self._refresh_tokens.delete_where(in_family)
        logger.debug(f"Revoked {removed} credentials in family {family_id[:8]}")
        return removed

    async def revoke_client_tokens(self, client_id: str) -> int:
        self._ensure_connected()
        issued_to = lambda record: record.client_id == client_id  # noqa: E731
        removed = self._tokens.delete_where(issued_to) + self._refresh_tokens.delete_where(issued_to)
        logger.debug(f"Revoked {removed} credentials of client {client_id}")
        return removed

    async def stats(self) -> StorageStats:
        self._ensure_connected()
        with self._client_lock:
            clients = len(self._clients)
        return StorageStats(
            backend=self.backend_name,
            clients=clients,
            authorization_codes=self._codes.count(),
            access_tokens=self._tokens.count(),
            refresh_tokens=self._refresh_tokens.count(),
        )

"""
Shared-backend credential store on Redis.

Several processes pointing at the same Redis and key prefix see one set of
clients, codes and tokens. Single-use and rotation guarantees come from Lua
scripts, each of which Redis runs as one atomic step.

Connection lifecycle:

    disconnected -> connecting -> connected <-> degraded
    degraded -> reconnecting -> connected | failed
    failed -> reconnecting (scheduled by the next request)
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

import redis.asyncio as redis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    RedisError,
    TimeoutError as RedisTimeoutError,
)

from .config.oauth_config import RedisConfig
from .models import (
    OAuthClient, AuthorizationCode, AccessToken, RefreshToken,
    RefreshTokenStatus, StorageStats, HealthStatus, utc_timestamp
)
from .storage_interface import (
    CredentialStore, StorageError, StorageUnavailable, ClientAlreadyExistsError,
    StoreNotConnectedError, FamilyRevokedError, REVOKED_FAMILY_TTL, validate_ttl
)

logger = logging.getLogger(__name__)

# GET then DEL; only one caller can ever see the value
CONSUME_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

# KEYS[1] record key, KEYS[2] client token set,
# KEYS[3] family set and KEYS[4] family revoked marker (both optional)
# ARGV: payload, ttl, layout ('string' | 'hash'), status for hashes
# Returns 0 without writing when the family was revoked
PUT_MEMBER_SCRIPT = """
local ttl = tonumber(ARGV[2])
if #KEYS > 2 and redis.call('EXISTS', KEYS[4]) == 1 then
    return 0
end
if ARGV[3] == 'hash' then
    redis.call('DEL', KEYS[1])
    redis.call('HSET', KEYS[1], 'status', ARGV[4], 'data', ARGV[1])
    redis.call('EXPIRE', KEYS[1], ttl)
else
    redis.call('SET', KEYS[1], ARGV[1], 'EX', ttl)
end
local function track(set_key)
    redis.call('SADD', set_key, KEYS[1])
    if redis.call('TTL', set_key) < ttl then
        redis.call('EXPIRE', set_key, ttl)
    end
end
track(KEYS[2])
if #KEYS > 2 then
    track(KEYS[3])
end
return 1
"""

# Returns {previous_status, data} and flips active -> rotated
ROTATE_SCRIPT = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
    return nil
end
local data = redis.call('HGET', KEYS[1], 'data')
if status == 'active' then
    redis.call('HSET', KEYS[1], 'status', 'rotated')
end
return {status, data}
"""

# KEYS[1] member set, KEYS[2] optional revoked marker, ARGV[1] marker ttl
REVOKE_MEMBERS_SCRIPT = """
local members = redis.call('SMEMBERS', KEYS[1])
local removed = 0
for _, key in ipairs(members) do
    removed = removed + redis.call('DEL', key)
end
redis.call('DEL', KEYS[1])
if #KEYS > 1 then
    redis.call('SET', KEYS[2], '1', 'EX', tonumber(ARGV[1]))
end
return removed
"""

CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


def _text(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


def _drop_result(task: asyncio.Future) -> None:
    # Result of an abandoned operation; retrieve it so asyncio does not warn
    if not task.cancelled():
        task.exception()


class RedisCredentialStore(CredentialStore):
    """
    Credential store shared by every process using the same Redis and prefix

    Every request-path call is bounded by `operation_timeout`. A call that
    times out or is cancelled lets the server-side command finish and drops
    its result. Connection failures move the store to `degraded` and start a
    single background reconnection with exponential backoff.
    """

    backend_name = "redis"

    def __init__(self, config: RedisConfig, client: Optional[redis.Redis] = None):
        """
        Args:
            config: Redis connection, timeout and retry settings
            client: Pre-built client (tests, shared pools); not closed on disconnect
        """
        self.config = config
        self.prefix = config.key_prefix
        self._client = client
        self._owns_client = client is None
        self.state = ConnectionState.DISCONNECTED

        self._reconnect_lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._recovered = asyncio.Event()
        self._pending = 0

        self._consume_script = None
        self._put_member_script = None
        self._rotate_script = None
        self._revoke_members_script = None

    # Keys

    def _client_key(self, client_id: str) -> str:
        return f"{self.prefix}client:{client_id}"

    def _code_key(self, code: str) -> str:
        return f"{self.prefix}code:{code}"

    def _token_key(self, token: str) -> str:
        return f"{self.prefix}token:{token}"

    def _refresh_key(self, token: str) -> str:
        return f"{self.prefix}refresh:{token}"

    def _family_key(self, family_id: str) -> str:
        return f"{self.prefix}family:{family_id}"

    def _family_revoked_key(self, family_id: str) -> str:
        return f"{self.prefix}family-revoked:{family_id}"

    def _client_tokens_key(self, client_id: str) -> str:
        return f"{self.prefix}client-tokens:{client_id}"

    # Lifecycle

    async def connect(self) -> None:
        if self.state != ConnectionState.DISCONNECTED:
            return

        self.state = ConnectionState.CONNECTING
        if self._client is None:
            self._client = redis.Redis(
                host=self.config.host,
                port=self.config.port,
                password=self.config.password,
                db=self.config.db,
                decode_responses=True,
                socket_connect_timeout=self.config.connection_timeout,
            )

        self._consume_script = self._client.register_script(CONSUME_SCRIPT)
        self._put_member_script = self._client.register_script(PUT_MEMBER_SCRIPT)
        self._rotate_script = self._client.register_script(ROTATE_SCRIPT)
        self._revoke_members_script = self._client.register_script(REVOKE_MEMBERS_SCRIPT)

        attempts = max(self.config.retry_attempts, 1)
        for attempt in range(1, attempts + 1):
            if await self._ping():
                self.state = ConnectionState.CONNECTED
                self._recovered.set()
                logger.info(f"Connected to Redis at {self.config.host}:{self.config.port} "
                            f"(prefix {self.prefix!r})")
                return
            if attempt < attempts:
                delay = self.config.backoff_delay(attempt)
                logger.warning(f"Redis connection attempt {attempt}/{attempts} failed, "
                               f"retrying in {delay:.2f}s")
                await asyncio.sleep(delay)

        self.state = ConnectionState.FAILED
        logger.error(f"Could not connect to Redis after {attempts} attempts")
        raise StorageUnavailable("Credential storage unreachable", fatal=True)

    async def disconnect(self) -> None:
        if self.state == ConnectionState.DISCONNECTED:
            return

        self.state = ConnectionState.DISCONNECTED
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        # Release anyone waiting for recovery; they observe the state and fail
        self._recovered.set()

        if self._owns_client and self._client is not None:
            try:
                await self._client.aclose()
            except CONNECTION_ERRORS as e:
                logger.warning(f"Error closing Redis client: {e}")
            self._client = None
        logger.info("Redis credential store disconnected")

    async def health_check(self) -> HealthStatus:
        if self._client is None:
            return HealthStatus(healthy=False, backend=self.backend_name,
                                detail="not connected", state=self.state.value)

        started = time.perf_counter()
        try:
            await asyncio.wait_for(self._client.ping(), timeout=self.config.operation_timeout)
            healthy, detail = True, "ok"
        except asyncio.TimeoutError:
            healthy, detail = False, "ping timed out"
        except (RedisError, OSError) as e:
            healthy, detail = False, f"ping failed: {e}"

        return HealthStatus(
            healthy=healthy,
            backend=self.backend_name,
            latency_ms=(time.perf_counter() - started) * 1000,
            detail=detail,
            state=self.state.value,
        )

    # Reconnection

    async def _ping(self) -> bool:
        try:
            await asyncio.wait_for(self._client.ping(), timeout=self.config.connection_timeout)
            return True
        except asyncio.TimeoutError:
            return False
        except (RedisError, OSError) as e:
            logger.debug(f"Redis ping failed: {e}")
            return False

    def _mark_degraded(self, reason: str) -> None:
        if self.state == ConnectionState.CONNECTED:
            self.state = ConnectionState.DEGRADED
            self._recovered.clear()
            logger.warning(f"Redis credential store degraded: {reason}")
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self.state == ConnectionState.DISCONNECTED:
            return
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        async with self._reconnect_lock:
            if self.state in (ConnectionState.CONNECTED, ConnectionState.DISCONNECTED):
                return

            self.state = ConnectionState.RECONNECTING
            self._recovered.clear()
            attempts = max(self.config.retry_attempts, 1)

            for attempt in range(1, attempts + 1):
                await asyncio.sleep(self.config.backoff_delay(attempt))
                if self.state == ConnectionState.DISCONNECTED:
                    return
                if await self._ping():
                    self.state = ConnectionState.CONNECTED
                    self._recovered.set()
                    logger.info(f"Redis connection restored after {attempt} attempt(s)")
                    return
                logger.warning(f"Redis reconnection attempt {attempt}/{attempts} failed")

            self.state = ConnectionState.FAILED
            self._recovered.set()
            logger.error(f"Redis reconnection failed after {attempts} attempts; "
                         f"next request will retry")

    @property
    def reconnect_task(self) -> Optional[asyncio.Task]:
        return self._reconnect_task

    async def _wait_for_recovery(self, timeout: float) -> None:
        if self.config.fail_fast:
            raise StorageUnavailable()
        if self._pending >= self.config.max_pending_operations:
            raise StorageUnavailable("Too many operations waiting for credential storage")

        self._pending += 1
        try:
            await asyncio.wait_for(self._recovered.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise StorageUnavailable() from None
        finally:
            self._pending -= 1

        if self.state != ConnectionState.CONNECTED:
            raise StorageUnavailable()

    async def _execute(self, operation: str, func: Callable[[], Awaitable[Any]]) -> Any:
        if self.state in (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING):
            raise StoreNotConnectedError("RedisCredentialStore used before connect()")

        if self.state == ConnectionState.FAILED:
            self._schedule_reconnect()
            raise StorageUnavailable()

        # One budget covers both the wait for recovery and the command itself
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.operation_timeout
        waited = False
        if self.state in (ConnectionState.DEGRADED, ConnectionState.RECONNECTING):
            await self._wait_for_recovery(self.config.operation_timeout)
            waited = True

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise StorageUnavailable()

        task = asyncio.ensure_future(func())
        task.add_done_callback(_drop_result)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=remaining)
        except asyncio.TimeoutError:
            if not waited:
                # only a full-budget timeout marks the connection degraded
                self._mark_degraded(f"{operation} timed out")
            raise StorageUnavailable() from None
        except CONNECTION_ERRORS as e:
            self._mark_degraded(f"{operation} failed: {e}")
            raise StorageUnavailable() from e
        except RedisError as e:
            logger.error(f"Redis command error during {operation}: {e}")
            raise StorageError(f"Credential storage error during {operation}") from e

    # Clients

    async def get_client(self, client_id: str) -> Optional[OAuthClient]:
        raw = await self._execute("get_client", lambda: self._client.get(self._client_key(client_id)))
        if raw is None:
            return None
        return OAuthClient.model_validate_json(raw)

    async def put_client(self, client: OAuthClient) -> None:
        payload = client.model_dump_json()
        created = await self._execute(
            "put_client",
            lambda: self._client.set(self._client_key(client.client_id), payload, nx=True)
        )
        if not created:
            raise ClientAlreadyExistsError(f"Client {client.client_id} already exists")

    async def list_clients(self) -> List[OAuthClient]:
        async def fetch_all():
            keys = [key async for key in self._client.scan_iter(match=f"{self.prefix}client:*")]
            if not keys:
                return []
            return await self._client.mget(keys)

        values = await self._execute("list_clients", fetch_all)
        return [OAuthClient.model_validate_json(raw) for raw in values if raw is not None]

    async def delete_client(self, client_id: str) -> bool:
        removed = await self._execute("delete_client", lambda: self._client.delete(self._client_key(client_id)))
        return bool(removed)

    # Authorization codes

    async def put_code(self, code: AuthorizationCode, ttl: int) -> None:
        validate_ttl(ttl)
        record = code.model_copy(update={"expires_at": utc_timestamp() + ttl})
        payload = record.model_dump_json()
        await self._execute("put_code", lambda: self._client.set(self._code_key(code.code), payload, ex=ttl))

    async def consume_code(self, code_value: str) -> Optional[AuthorizationCode]:
        raw = await self._execute(
            "consume_code",
            lambda: self._consume_script(keys=[self._code_key(code_value)])
        )
        if raw is None:
            return None
        record = AuthorizationCode.model_validate_json(raw)
        if record.is_expired():
            return None
        return record

    # Access tokens

    def _member_keys(self, key: str, client_id: str, family_id: Optional[str]) -> List[str]:
        keys = [key, self._client_tokens_key(client_id)]
        if family_id:
            keys += [self._family_key(family_id), self._family_revoked_key(family_id)]
        return keys

    async def put_token(self, token: AccessToken, ttl: int) -> None:
        validate_ttl(ttl)
        record = token.model_copy(update={"expires_at": utc_timestamp() + ttl})
        keys = self._member_keys(self._token_key(token.token), token.client_id, token.family_id)
        args = [record.model_dump_json(), ttl, "string"]
        stored = await self._execute("put_token", lambda: self._put_member_script(keys=keys, args=args))
        if not stored:
            raise FamilyRevokedError(token.family_id)

    async def get_token(self, value: str) -> Optional[AccessToken]:
        raw = await self._execute("get_token", lambda: self._client.get(self._token_key(value)))
        if raw is None:
            return None
        record = AccessToken.model_validate_json(raw)
        return None if record.is_expired() else record

    async def revoke_token(self, value: str) -> bool:
        removed = await self._execute("revoke_token", lambda: self._client.delete(self._token_key(value)))
        return bool(removed)

    # Refresh tokens

    def _refresh_from_hash(self, status: Any, data: Any) -> Optional[RefreshToken]:
        if status is None or data is None:
            return None
        record = RefreshToken.model_validate_json(data)
        record.status = RefreshTokenStatus(_text(status))
        return None if record.is_expired() else record

    async def put_refresh_token(self, token: RefreshToken, ttl: int) -> None:
        validate_ttl(ttl)
        record = token.model_copy(update={"expires_at": utc_timestamp() + ttl})
        keys = self._member_keys(self._refresh_key(token.token), token.client_id, token.family_id)
        args = [record.model_dump_json(), ttl, "hash", record.status.value]
        stored = await self._execute("put_refresh_token", lambda: self._put_member_script(keys=keys, args=args))
        if not stored:
            raise FamilyRevokedError(token.family_id)

    async def get_refresh_token(self, value: str) -> Optional[RefreshToken]:
        status, data = await self._execute(
            "get_refresh_token",
            lambda: self._client.hmget(self._refresh_key(value), ["status", "data"])
        )
        return self._refresh_from_hash(status, data)

    async def rotate_refresh_token(self, value: str) -> Optional[RefreshToken]:
        result = await self._execute(
            "rotate_refresh_token",
            lambda: self._rotate_script(keys=[self._refresh_key(value)])
        )
        if not result:
            return None
        status, data = result
        return self._refresh_from_hash(status, data)

    async def revoke_refresh_token(self, value: str) -> bool:
        removed = await self._execute(
            "revoke_refresh_token", lambda: self._client.delete(self._refresh_key(value))
        )
        return bool(removed)

    async def revoke_family(self, family_id: str) -> int:
        removed = await self._execute(
            "revoke_family",
            lambda: self._revoke_members_script(
                keys=[self._family_key(family_id), self._family_revoked_key(family_id)],
                args=[REVOKED_FAMILY_TTL],
            )
        )
        return int(removed or 0)

    async def revoke_client_tokens(self, client_id: str) -> int:
        removed = await self._execute(
            "revoke_client_tokens",
            lambda: self._revoke_members_script(keys=[self._client_tokens_key(client_id)])
        )
        return int(removed or 0)

    async def stats(self) -> StorageStats:
        async def count(kind: str) -> int:
            total = 0
            async for _ in self._client.scan_iter(match=f"{self.prefix}{kind}:*"):
                total += 1
            return total

        async def gather_counts():
            return [await count(kind) for kind in ("client", "code", "token", "refresh")]

        clients, codes, tokens, refresh = await self._execute("stats", gather_counts)
        return StorageStats(
            backend=self.backend_name,
            clients=clients,
            authorization_codes=codes,
            access_tokens=tokens,
            refresh_tokens=refresh,
        )

"""
OAuth Authorization Core Configuration

Configuration for the credential store backends (in-process or Redis),
token lifetimes and rotation policy, and logging.
"""

import os
from typing import Optional, List
from pydantic import BaseModel, Field, field_validator
import logging

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ["read", "write", "tools:execute", "resources:read", "prompts:read", "admin"]


class RedisConfig(BaseModel):
    """Shared-backend (Redis) store configuration"""
    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[str] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    key_prefix: str = Field(..., description="Key namespace shared by one logical deployment")

    # Timeouts (seconds)
    connection_timeout: float = Field(default=5.0, description="Connect timeout")
    operation_timeout: float = Field(default=2.0, description="Per-operation timeout")

    # Reconnection
    retry_attempts: int = Field(default=5, description="Reconnection attempts before failing")
    initial_backoff: float = Field(default=0.5, description="First reconnection delay")
    backoff_multiplier: float = Field(default=2.0, description="Backoff growth factor")
    max_backoff: float = Field(default=10.0, description="Backoff cap")

    # Degraded-mode behavior
    fail_fast: bool = Field(default=False, description="Fail immediately while degraded instead of waiting")
    max_pending_operations: int = Field(default=100, description="Max calls waiting for recovery")

    @field_validator("key_prefix")
    @classmethod
    def prefix_not_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("key_prefix must not be empty")
        return value

    @field_validator("retry_attempts", "max_pending_operations")
    @classmethod
    def non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnection attempt number `attempt` (1-based)"""
        delay = self.initial_backoff * (self.backoff_multiplier ** max(attempt - 1, 0))
        return min(delay, self.max_backoff)


class MemoryStoreConfig(BaseModel):
    """In-process store configuration"""
    sweep_interval: float = Field(default=60.0, description="Expired entry sweep interval in seconds")


class TokenPolicyConfig(BaseModel):
    """Token lifetimes and refresh rotation policy"""
    access_token_ttl: int = Field(default=3600, description="Access token lifetime in seconds")
    refresh_token_ttl: int = Field(default=604800, description="Refresh token lifetime in seconds")
    code_ttl: int = Field(default=600, description="Authorization code lifetime in seconds")

    rotate_refresh_tokens: bool = Field(default=True, description="Issue a new refresh token on every refresh")
    revoke_family_on_reuse: bool = Field(default=True, description="Revoke the token family when a rotated refresh token is replayed")
    cascade_revocation: bool = Field(default=True, description="Revoking one token revokes its whole family")
    allow_plain_pkce: bool = Field(default=True, description="Accept the 'plain' PKCE method")

    @field_validator("access_token_ttl", "refresh_token_ttl", "code_ttl")
    @classmethod
    def positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL must be > 0")
        return value


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format (json/text)")

    # Audit logging
    audit_logging_enabled: bool = Field(default=True, description="Enable security audit logging")
    audit_log_file: Optional[str] = Field(default=None, description="Audit log file path")
    audit_hash_salt: str = Field(default="mcp-oauth-audit-salt", description="Salt for subject hashing")


class OAuthConfig(BaseModel):
    """Complete authorization core configuration"""
    environment: str = Field(default="production", description="Environment (development/production)")
    issuer: str = Field(default="http://localhost:8000", description="Authorization server issuer")
    storage_backend: str = Field(default="memory", description="Credential store (memory/redis)")
    scopes_supported: List[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))

    redis: Optional[RedisConfig] = None
    memory: MemoryStoreConfig = Field(default_factory=MemoryStoreConfig)
    tokens: TokenPolicyConfig = Field(default_factory=TokenPolicyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("storage_backend")
    @classmethod
    def known_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("memory", "redis"):
            raise ValueError(f"Unsupported storage backend: {value}")
        return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def get_oauth_config() -> OAuthConfig:
    """
    Load configuration from environment variables

    Environment Variables:
        MCP_OAUTH_ENVIRONMENT: Environment (development/production)
        MCP_OAUTH_ISSUER: Issuer URL
        MCP_OAUTH_STORAGE_BACKEND: "memory" or "redis"
        MCP_OAUTH_REDIS_HOST / _PORT / _PASSWORD / _DB / _KEY_PREFIX
        MCP_OAUTH_REDIS_OPERATION_TIMEOUT, MCP_OAUTH_REDIS_RETRY_ATTEMPTS
        MCP_OAUTH_ACCESS_TOKEN_TTL, MCP_OAUTH_REFRESH_TOKEN_TTL, MCP_OAUTH_CODE_TTL
        MCP_OAUTH_ROTATE_REFRESH_TOKENS: Enable refresh token rotation (default true)

    Returns:
        OAuthConfig instance with loaded configuration
    """
    environment = os.getenv("MCP_OAUTH_ENVIRONMENT", "production")
    backend = os.getenv("MCP_OAUTH_STORAGE_BACKEND", "memory")

    redis_config = None
    if backend.lower() == "redis":
        redis_config = RedisConfig(
            host=os.getenv("MCP_OAUTH_REDIS_HOST", "localhost"),
            port=int(os.getenv("MCP_OAUTH_REDIS_PORT", "6379")),
            password=os.getenv("MCP_OAUTH_REDIS_PASSWORD"),
            db=int(os.getenv("MCP_OAUTH_REDIS_DB", "0")),
            key_prefix=os.getenv("MCP_OAUTH_REDIS_KEY_PREFIX", "oauth:"),
            connection_timeout=float(os.getenv("MCP_OAUTH_REDIS_CONNECTION_TIMEOUT", "5")),
            operation_timeout=float(os.getenv("MCP_OAUTH_REDIS_OPERATION_TIMEOUT", "2")),
            retry_attempts=int(os.getenv("MCP_OAUTH_REDIS_RETRY_ATTEMPTS", "5")),
            initial_backoff=float(os.getenv("MCP_OAUTH_REDIS_INITIAL_BACKOFF", "0.5")),
            max_backoff=float(os.getenv("MCP_OAUTH_REDIS_MAX_BACKOFF", "10")),
            fail_fast=_env_bool("MCP_OAUTH_REDIS_FAIL_FAST", False),
            max_pending_operations=int(os.getenv("MCP_OAUTH_REDIS_MAX_PENDING", "100")),
        )

    scopes_env = os.getenv("MCP_OAUTH_SCOPES_SUPPORTED")
    scopes_supported = scopes_env.split() if scopes_env else list(DEFAULT_SCOPES)

    config = OAuthConfig(
        environment=environment,
        issuer=os.getenv("MCP_OAUTH_ISSUER", "http://localhost:8000"),
        storage_backend=backend,
        scopes_supported=scopes_supported,
        redis=redis_config,
        memory=MemoryStoreConfig(
            sweep_interval=float(os.getenv("MCP_OAUTH_SWEEP_INTERVAL", "60"))
        ),
        tokens=TokenPolicyConfig(
            access_token_ttl=int(os.getenv("MCP_OAUTH_ACCESS_TOKEN_TTL", "3600")),
            refresh_token_ttl=int(os.getenv("MCP_OAUTH_REFRESH_TOKEN_TTL", "604800")),
            code_ttl=int(os.getenv("MCP_OAUTH_CODE_TTL", "600")),
            rotate_refresh_tokens=_env_bool("MCP_OAUTH_ROTATE_REFRESH_TOKENS", True),
            revoke_family_on_reuse=_env_bool("MCP_OAUTH_REVOKE_FAMILY_ON_REUSE", True),
            cascade_revocation=_env_bool("MCP_OAUTH_CASCADE_REVOCATION", True),
            allow_plain_pkce=_env_bool("MCP_OAUTH_ALLOW_PLAIN_PKCE", True),
        ),
        logging=LoggingConfig(
            level=os.getenv("MCP_OAUTH_LOG_LEVEL", "INFO"),
            format=os.getenv("MCP_OAUTH_LOG_FORMAT", "text"),
            audit_logging_enabled=_env_bool("MCP_OAUTH_AUDIT_LOGGING", True),
            audit_log_file=os.getenv("MCP_OAUTH_AUDIT_LOG_FILE"),
        )
    )

    logger.info(f"OAuth configuration loaded: env={environment}, backend={config.storage_backend}")
    return config


def get_development_config() -> OAuthConfig:
    """Get development-friendly configuration (in-process store)"""
    return OAuthConfig(
        environment="development",
        storage_backend="memory",
        tokens=TokenPolicyConfig(),
        logging=LoggingConfig(
            level="DEBUG",
            audit_logging_enabled=True
        )
    )


def get_production_config(redis_host: str = "localhost",
                          key_prefix: str = "oauth:") -> OAuthConfig:
    """Get production-ready configuration template (Redis store)"""
    return OAuthConfig(
        environment="production",
        storage_backend="redis",
        redis=RedisConfig(host=redis_host, key_prefix=key_prefix),
        tokens=TokenPolicyConfig(
            rotate_refresh_tokens=True,
            revoke_family_on_reuse=True,
            allow_plain_pkce=False
        ),
        logging=LoggingConfig(
            level="INFO",
            format="json",
            audit_logging_enabled=True
        )
    )


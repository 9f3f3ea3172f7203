from datetime import datetime, timezone
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field
from enum import Enum


def utc_timestamp() -> float:
    return datetime.now(timezone.utc).timestamp()


class CodeChallengeMethod(str, Enum):
    S256 = "S256"
    PLAIN = "plain"


class RefreshTokenStatus(str, Enum):
    ACTIVE = "active"
    ROTATED = "rotated"


class ExpiringRecord(BaseModel):
    """Base for records with an absolute expiry (epoch seconds, UTC)"""
    expires_at: float
    created_at: float = Field(default_factory=utc_timestamp)

    def is_expired(self, now: Optional[float] = None) -> bool:
        if now is None:
            now = utc_timestamp()
        return now >= self.expires_at


class OAuthClient(BaseModel):
    client_id: str
    client_secret_hash: Optional[str] = None
    client_name: str = ""
    redirect_uris: List[str] = []
    scopes: List[str] = []
    grant_types: List[str] = ["authorization_code", "refresh_token"]
    token_endpoint_auth_method: str = "client_secret_basic"
    metadata: Dict[str, Any] = {}
    created_at: float = Field(default_factory=utc_timestamp)

    @property
    def is_public(self) -> bool:
        return self.client_secret_hash is None

    def public_view(self) -> "OAuthClient":
        """Copy safe for listing: never carries the secret hash"""
        return self.model_copy(update={"client_secret_hash": None}, deep=True)


class AuthorizationCode(ExpiringRecord):
    code: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: CodeChallengeMethod = CodeChallengeMethod.S256
    scopes: List[str] = []
    subject: str


class AccessToken(ExpiringRecord):
    token: str
    client_id: str
    subject: str
    scopes: List[str] = []
    family_id: Optional[str] = None


class RefreshToken(ExpiringRecord):
    token: str
    client_id: str
    subject: str
    scopes: List[str] = []
    family_id: Optional[str] = None
    status: RefreshTokenStatus = RefreshTokenStatus.ACTIVE


class StorageStats(BaseModel):
    backend: str
    clients: int = 0
    authorization_codes: int = 0
    access_tokens: int = 0
    refresh_tokens: int = 0


class HealthStatus(BaseModel):
    healthy: bool
    backend: str
    latency_ms: float = 0.0
    detail: str = ""
    state: Optional[str] = None
    checked_at: float = Field(default_factory=utc_timestamp)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    scope: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Token endpoint payload; refresh_token is omitted when not issued"""
        return self.model_dump(exclude_none=True)

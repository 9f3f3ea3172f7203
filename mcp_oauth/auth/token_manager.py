"""
Token lifecycle on top of the credential store

- Opaque access tokens with a bounded lifetime
- Refresh tokens grouped in rotation families
- Reuse of a rotated refresh token revokes the family
- Revocation and RFC 7662 introspection
"""

import logging
import secrets
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List

from ..config.oauth_config import TokenPolicyConfig
from ..models import AccessToken, RefreshToken, RefreshTokenStatus, TokenResponse, utc_timestamp
from ..storage_interface import CredentialStore, FamilyRevokedError
from .scope_mapper import map_scopes_to_permissions, format_scope

logger = logging.getLogger(__name__)


@dataclass
class TokenContext:
    """What a resource server learns from a valid access token"""
    token: str
    client_id: str
    subject: str
    scopes: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    expires_at: float = 0.0
    family_id: Optional[str] = None

    @property
    def scope(self) -> str:
        return format_scope(self.scopes)

    @property
    def expires_in(self) -> int:
        return max(int(self.expires_at - utc_timestamp()), 0)


class TokenError(Exception):
    """Token-related errors"""
    pass


class InvalidScopeError(TokenError):
    """Requested scope exceeds the original grant"""
    pass


class RefreshTokenReuseError(TokenError):
    """A refresh token was presented after it had already been rotated"""

    def __init__(self, message: str, client_id: str, family_id: Optional[str], revoked: int = 0):
        self.client_id = client_id
        self.family_id = family_id
        self.revoked = revoked
        super().__init__(message)


class TokenManager:
    """
    Issues, refreshes, validates and revokes tokens held in a CredentialStore

    Every token carries the family id of the authorization code exchange that
    started it; rotation keeps the family, so a detected replay can revoke
    every descendant at once.
    """

    def __init__(self, store: CredentialStore, policy: Optional[TokenPolicyConfig] = None):
        self.store = store
        self.policy = policy or TokenPolicyConfig()

    def _generate_secure_token(self) -> str:
        return secrets.token_urlsafe(32)

    def _generate_family_id(self) -> str:
        return secrets.token_urlsafe(16)

    async def issue_tokens(self,
                           client_id: str,
                           subject: str,
                           scopes: List[str],
                           family_id: Optional[str] = None,
                           refresh_scopes: Optional[List[str]] = None,
                           include_refresh_token: bool = True) -> TokenResponse:
        """
        Create an access token and, optionally, a refresh token

        Args:
            client_id: Client the tokens are bound to
            subject: Resource owner
            scopes: Scopes of the access token
            family_id: Existing rotation family; a new one is started if None
            refresh_scopes: Scopes carried by the refresh token (defaults to scopes)
            include_refresh_token: Whether to issue a refresh token
        """
        family_id = family_id or self._generate_family_id()
        now = utc_timestamp()

        access_token = AccessToken(
            token=self._generate_secure_token(),
            client_id=client_id,
            subject=subject,
            scopes=list(scopes),
            family_id=family_id,
            expires_at=now + self.policy.access_token_ttl,
        )

        refresh_value = None
        try:
            await self.store.put_token(access_token, self.policy.access_token_ttl)
            if include_refresh_token:
                refresh_token = RefreshToken(
                    token=self._generate_secure_token(),
                    client_id=client_id,
                    subject=subject,
                    scopes=list(refresh_scopes if refresh_scopes is not None else scopes),
                    family_id=family_id,
                    expires_at=now + self.policy.refresh_token_ttl,
                )
                await self.store.put_refresh_token(refresh_token, self.policy.refresh_token_ttl)
                refresh_value = refresh_token.token
        except FamilyRevokedError:
            logger.warning(f"Refused to issue tokens into revoked family {family_id[:8]} "
                           f"for client {client_id}")
            raise TokenError("Token family has been revoked")

        logger.info(f"Issued tokens for client {client_id} (family {family_id[:8]})")
        return TokenResponse(
            access_token=access_token.token,
            expires_in=self.policy.access_token_ttl,
            refresh_token=refresh_value,
            scope=format_scope(scopes),
        )

    async def refresh_access_token(self,
                                   refresh_token: str,
                                   client_id: str,
                                   requested_scopes: Optional[List[str]] = None) -> TokenResponse:
        """
        Exchange a refresh token for a new access token

        With rotation enabled the presented token is marked rotated and a new
        refresh token in the same family is returned.

        Raises:
            TokenError: Unknown, expired or foreign refresh token
            InvalidScopeError: Requested scopes exceed the original grant
            RefreshTokenReuseError: The token had already been rotated
        """
        current = await self.store.get_refresh_token(refresh_token)
        if current is None:
            raise TokenError("Invalid refresh token")

        if current.client_id != client_id:
            logger.warning(f"Client {client_id} presented a refresh token issued to another client")
            raise TokenError("Refresh token was not issued to this client")

        if current.status == RefreshTokenStatus.ROTATED:
            await self._handle_reuse(current)

        if requested_scopes:
            extra = [scope for scope in requested_scopes if scope not in current.scopes]
            if extra:
                raise InvalidScopeError(f"Requested scope exceeds original grant: {format_scope(extra)}")
            scopes = list(requested_scopes)
        else:
            scopes = list(current.scopes)

        if self.policy.rotate_refresh_tokens:
            previous = await self.store.rotate_refresh_token(refresh_token)
            if previous is None:
                raise TokenError("Invalid refresh token")
            if previous.status == RefreshTokenStatus.ROTATED:
                # Another request rotated it first
                await self._handle_reuse(previous)

        response = await self.issue_tokens(
            client_id=current.client_id,
            subject=current.subject,
            scopes=scopes,
            family_id=current.family_id,
            refresh_scopes=current.scopes,
            include_refresh_token=self.policy.rotate_refresh_tokens,
        )
        logger.info(f"Access token refreshed for client {client_id}")
        return response

    async def _handle_reuse(self, record: RefreshToken) -> None:
        revoked = 0
        if self.policy.revoke_family_on_reuse and record.family_id:
            revoked = await self.store.revoke_family(record.family_id)
        logger.warning(f"Refresh token reuse detected for client {record.client_id}; "
                       f"revoked {revoked} credentials")
        raise RefreshTokenReuseError("Refresh token already used",
                                     client_id=record.client_id,
                                     family_id=record.family_id,
                                     revoked=revoked)

    async def validate_access_token(self, token: str) -> TokenContext:
        """
        Resolve an access token to its context

        Raises:
            TokenError: Unknown, expired or revoked token
        """
        if not token:
            raise TokenError("Token is required")

        record = await self.store.get_token(token)
        if record is None:
            raise TokenError("Token not found, expired or revoked")

        return TokenContext(
            token=record.token,
            client_id=record.client_id,
            subject=record.subject,
            scopes=list(record.scopes),
            permissions=map_scopes_to_permissions(record.scopes),
            expires_at=record.expires_at,
            family_id=record.family_id,
        )

    async def revoke_token(self,
                           token: str,
                           client_id: Optional[str] = None,
                           token_type_hint: Optional[str] = None) -> bool:
        """
        Revoke an access or refresh token (RFC 7009)

        A token owned by a different client is left untouched. With cascade
        revocation the whole family goes with it.

        Returns:
            True if something was revoked
        """
        lookups = [self.store.get_token, self.store.get_refresh_token]
        if token_type_hint == "refresh_token":
            lookups.reverse()

        record = None
        for lookup in lookups:
            record = await lookup(token)
            if record is not None:
                break

        if record is None:
            return False

        if client_id is not None and record.client_id != client_id:
            logger.warning(f"Client {client_id} attempted to revoke a token of another client")
            return False

        if self.policy.cascade_revocation and record.family_id:
            removed = await self.store.revoke_family(record.family_id)
            logger.info(f"Revoked token family {record.family_id[:8]} ({removed} credentials)")
            return removed > 0

        if isinstance(record, RefreshToken):
            return await self.store.revoke_refresh_token(token)
        return await self.store.revoke_token(token)

    async def introspect_token(self, token: str, issuer: Optional[str] = None) -> Dict[str, Any]:
        """Token introspection (RFC 7662 style)"""
        if not token:
            return {"active": False}

        record = await self.store.get_token(token)
        token_type = "access_token"
        if record is None:
            record = await self.store.get_refresh_token(token)
            token_type = "refresh_token"
            if record is None or record.status != RefreshTokenStatus.ACTIVE:
                return {"active": False}

        response = {
            "active": True,
            "client_id": record.client_id,
            "sub": record.subject,
            "scope": format_scope(record.scopes),
            "exp": int(record.expires_at),
            "iat": int(record.created_at),
            "token_type": token_type,
        }
        if issuer:
            response["iss"] = issuer
        return response

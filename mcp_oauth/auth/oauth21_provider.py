"""
OAuth 2.1 Authorization Flow Engine

Implements the authorization code + PKCE and refresh token grants on top of
a pluggable credential store:
- PKCE mandatory on every authorization request
- Single-use authorization codes, enforced by the store
- Refresh token rotation with replay detection
- Dynamic client registration (RFC 7591), revocation (RFC 7009),
  introspection (RFC 7662) and server metadata (RFC 8414)

The engine holds no credential state of its own; any number of engines may
share one store.
"""

import logging
import secrets
from typing import Dict, Any, Optional, List

from ..config.oauth_config import OAuthConfig, TokenPolicyConfig, DEFAULT_SCOPES
from ..models import AuthorizationCode, CodeChallengeMethod, OAuthClient, utc_timestamp
from ..security.audit_logger import AuditEventType, AuditOutcome, AuditLogger, get_security_audit_logger
from ..storage_interface import CredentialStore, StorageError
from .client_registry import DynamicClientRegistry, ClientRegistrationError, ClientAuthenticationError
from .pkce_verifier import PKCEVerifier, PKCEError
from .scope_mapper import parse_scope, format_scope
from .token_manager import (
    TokenManager, TokenContext, TokenError, InvalidScopeError, RefreshTokenReuseError
)

logger = logging.getLogger(__name__)


class OAuth21Error(Exception):
    """OAuth 2.1 protocol error returned to the client"""
    def __init__(self, error: str, description: str = "", error_uri: str = ""):
        self.error = error
        self.description = description
        self.error_uri = error_uri
        super().__init__(f"{error}: {description}")

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.error, "error_description": self.description}
        if self.error_uri:
            body["error_uri"] = self.error_uri
        return body


class OAuth21Provider:
    """
    OAuth 2.1 authorization server core

    Features:
    - PKCE (S256, optionally plain) for all flows
    - Exactly-once authorization code exchange
    - Refresh token rotation and family revocation on reuse
    - One audit event per state-changing step
    """

    def __init__(self,
                 store: CredentialStore,
                 audit_logger: AuditLogger,
                 policy: Optional[TokenPolicyConfig] = None,
                 issuer: str = "http://localhost:8000",
                 scopes_supported: Optional[List[str]] = None):
        """
        Initialize OAuth 2.1 provider

        Args:
            store: Credential store (in-process or shared)
            audit_logger: Receives one event per state-changing step
            policy: Token lifetimes and rotation policy
            issuer: Authorization server issuer identifier
            scopes_supported: Advertised in server metadata
        """
        self.store = store
        self.audit_logger = audit_logger
        self.policy = policy or TokenPolicyConfig()
        self.issuer = issuer
        self.scopes_supported = list(scopes_supported or DEFAULT_SCOPES)

        self.token_manager = TokenManager(store, self.policy)
        self.client_registry = DynamicClientRegistry(store)
        self.audit_failures = 0

        logger.info(f"OAuth21Provider initialized for issuer: {issuer}")

    # Audit

    def _audit(self, event_type: AuditEventType, outcome: AuditOutcome, **metadata) -> None:
        try:
            self.audit_logger.log_event(event_type, outcome, metadata)
        except Exception:
            # the grant itself must not fail because the audit sink did
            self.audit_failures += 1
            logger.exception(f"Audit logging failed for {event_type.value}")

    def _deny(self, event_type: AuditEventType, error: OAuth21Error, **metadata) -> OAuth21Error:
        self._audit(event_type, AuditOutcome.DENIED, error=error.error,
                    reason=error.description, **metadata)
        return error

    # Authorization endpoint

    async def handle_authorization_request(self,
                                           client_id: str,
                                           redirect_uri: str,
                                           code_challenge: Optional[str],
                                           code_challenge_method: Optional[str] = "S256",
                                           scope: Optional[str] = None,
                                           state: Optional[str] = None,
                                           subject: Optional[str] = None) -> Dict[str, Any]:
        """
        Handle an authorization request after the resource owner consented

        Args:
            client_id: OAuth client identifier
            redirect_uri: Must exactly match a registered URI
            code_challenge: PKCE code challenge
            code_challenge_method: "S256" (default) or "plain"
            scope: Space-delimited requested scopes; defaults to the client's scopes
            state: Opaque client state, echoed back
            subject: Authenticated resource owner

        Returns:
            {"redirect_uri": ..., "params": {"code": ..., "state": ...}}

        Raises:
            OAuth21Error: If request is invalid
        """
        event = AuditEventType.AUTHORIZATION_DENIED
        try:
            client = await self.store.get_client(client_id) if client_id else None
        except StorageError as e:
            self._audit(event, AuditOutcome.ERROR, client_id=client_id, reason=str(e))
            raise

        if client is None:
            raise self._deny(event, OAuth21Error("invalid_client", "Unknown client identifier"),
                             client_id=client_id)

        if redirect_uri not in client.redirect_uris:
            raise self._deny(event, OAuth21Error("invalid_request", "Invalid redirect URI"),
                             client_id=client_id)

        if "authorization_code" not in client.grant_types:
            raise self._deny(event, OAuth21Error("unauthorized_client",
                                                 "Client may not use the authorization code grant"),
                             client_id=client_id)

        if not code_challenge:
            raise self._deny(event, OAuth21Error("invalid_request", "PKCE code_challenge is required"),
                             client_id=client_id)

        try:
            method = PKCEVerifier.parse_method(code_challenge_method)
        except PKCEError:
            raise self._deny(event, OAuth21Error("invalid_request",
                                                 "Invalid code_challenge_method. Must be 'S256' or 'plain'"),
                             client_id=client_id)

        if method == CodeChallengeMethod.PLAIN:
            if not self.policy.allow_plain_pkce:
                raise self._deny(event, OAuth21Error("invalid_request", "The 'plain' PKCE method is not allowed"),
                                 client_id=client_id)
            logger.warning(f"Client {client_id} using 'plain' PKCE method - S256 recommended")

        requested = parse_scope(scope)
        if requested:
            extra = [s for s in requested if s not in client.scopes]
            if extra:
                raise self._deny(event, OAuth21Error("invalid_scope",
                                                     f"Scope not allowed for client: {format_scope(extra)}"),
                                 client_id=client_id, scope=scope)
            scopes = requested
        else:
            scopes = list(client.scopes)

        subject = subject or f"user_{client_id}"
        auth_code = AuthorizationCode(
            code=self._generate_authorization_code(),
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=method,
            scopes=scopes,
            subject=subject,
            expires_at=utc_timestamp() + self.policy.code_ttl,
        )

        try:
            await self.store.put_code(auth_code, self.policy.code_ttl)
        except StorageError as e:
            self._audit(event, AuditOutcome.ERROR, client_id=client_id, reason=str(e))
            raise

        self._audit(AuditEventType.AUTHORIZATION_GRANTED, AuditOutcome.SUCCESS,
                    client_id=client_id, subject=subject, scope=format_scope(scopes))
        logger.info(f"Authorization code generated for client {client_id}")

        response_params = {"code": auth_code.code}
        if state:
            response_params["state"] = state

        return {
            "redirect_uri": redirect_uri,
            "params": response_params,
        }

    # Token endpoint

    async def handle_token_request(self,
                                   grant_type: str,
                                   client_id: str,
                                   client_secret: Optional[str] = None,
                                   **params) -> Dict[str, Any]:
        """
        Handle a token request

        Args:
            grant_type: "authorization_code" or "refresh_token"
            client_id: Client identifier
            client_secret: Secret of a confidential client
            **params: code, redirect_uri, code_verifier / refresh_token, scope

        Returns:
            Token response (TokenResponse.to_dict())

        Raises:
            OAuth21Error: If request is invalid
        """
        if grant_type == "authorization_code":
            return await self._handle_authorization_code_grant(client_id, client_secret, **params)
        elif grant_type == "refresh_token":
            return await self._handle_refresh_token_grant(client_id, client_secret, **params)
        else:
            raise self._deny(AuditEventType.TOKEN_ISSUED,
                             OAuth21Error("unsupported_grant_type",
                                          f"Grant type '{grant_type}' is not supported"),
                             client_id=client_id)

    async def _authenticate(self, event: AuditEventType, client_id: str,
                            client_secret: Optional[str], grant_type: str) -> OAuthClient:
        try:
            client = await self.client_registry.authenticate_client(client_id, client_secret)
        except ClientAuthenticationError as e:
            raise self._deny(event, OAuth21Error("invalid_client", str(e)), client_id=client_id)

        if grant_type not in client.grant_types:
            raise self._deny(event, OAuth21Error("unauthorized_client",
                                                 f"Client may not use the {grant_type} grant"),
                             client_id=client_id)
        return client

    async def _handle_authorization_code_grant(self,
                                               client_id: str,
                                               client_secret: Optional[str],
                                               code: Optional[str] = None,
                                               redirect_uri: Optional[str] = None,
                                               code_verifier: Optional[str] = None,
                                               **kwargs) -> Dict[str, Any]:
        """Exchange an authorization code, verifying PKCE"""
        event = AuditEventType.TOKEN_ISSUED

        if not code or not redirect_uri or not code_verifier:
            raise self._deny(event, OAuth21Error("invalid_request",
                                                 "code, redirect_uri and code_verifier are required"),
                             client_id=client_id)

        try:
            client = await self._authenticate(event, client_id, client_secret, "authorization_code")

            # Consume first: whatever happens next, this code can never be exchanged again
            auth_code = await self.store.consume_code(code)
            if auth_code is None:
                raise self._deny(event, OAuth21Error("invalid_grant", "Invalid or expired authorization code"),
                                 client_id=client_id, code=code)

            if auth_code.client_id != client.client_id:
                logger.warning(f"Client {client.client_id} presented a code issued to another client")
                raise self._deny(event, OAuth21Error("invalid_grant", "Invalid or expired authorization code"),
                                 client_id=client_id, code=code)

            if auth_code.redirect_uri != redirect_uri:
                raise self._deny(event, OAuth21Error("invalid_grant", "Invalid redirect URI"),
                                 client_id=client_id)

            if not PKCEVerifier.verify_code_challenge(code_verifier,
                                                      auth_code.code_challenge,
                                                      auth_code.code_challenge_method):
                raise self._deny(event, OAuth21Error("invalid_grant", "PKCE verification failed"),
                                 client_id=client_id)

            response = await self.token_manager.issue_tokens(
                client_id=client.client_id,
                subject=auth_code.subject,
                scopes=auth_code.scopes,
            )
        except TokenError as e:
            raise self._deny(event, OAuth21Error("invalid_grant", str(e)), client_id=client_id)
        except StorageError as e:
            self._audit(event, AuditOutcome.ERROR, client_id=client_id, reason=str(e))
            raise

        self._audit(event, AuditOutcome.SUCCESS, client_id=client_id,
                    subject=auth_code.subject, scope=response.scope)
        logger.info(f"Access token issued for client {client_id}")
        return response.to_dict()

    async def _handle_refresh_token_grant(self,
                                          client_id: str,
                                          client_secret: Optional[str],
                                          refresh_token: Optional[str] = None,
                                          scope: Optional[str] = None,
                                          **kwargs) -> Dict[str, Any]:
        """Exchange a refresh token, rotating it when enabled"""
        event = AuditEventType.TOKEN_REFRESHED

        if not refresh_token:
            raise self._deny(event, OAuth21Error("invalid_request", "refresh_token is required"),
                             client_id=client_id)

        try:
            client = await self._authenticate(event, client_id, client_secret, "refresh_token")
            response = await self.token_manager.refresh_access_token(
                refresh_token=refresh_token,
                client_id=client.client_id,
                requested_scopes=parse_scope(scope),
            )
        except RefreshTokenReuseError as e:
            self._audit(AuditEventType.TOKEN_REUSE_DETECTED, AuditOutcome.DENIED,
                        client_id=e.client_id, family_id=e.family_id, revoked=e.revoked)
            raise OAuth21Error("invalid_grant", str(e))
        except InvalidScopeError as e:
            raise self._deny(event, OAuth21Error("invalid_scope", str(e)), client_id=client_id, scope=scope)
        except TokenError as e:
            raise self._deny(event, OAuth21Error("invalid_grant", str(e)), client_id=client_id)
        except StorageError as e:
            self._audit(event, AuditOutcome.ERROR, client_id=client_id, reason=str(e))
            raise

        self._audit(event, AuditOutcome.SUCCESS, client_id=client_id, scope=response.scope,
                    rotated=response.refresh_token is not None)
        return response.to_dict()

    # Resource server support

    async def verify_access_token(self, token: str) -> TokenContext:
        """
        Validate a bearer token and return its context with mapped permissions

        Raises:
            OAuth21Error: invalid_token
        """
        try:
            context = await self.token_manager.validate_access_token(token)
        except TokenError as e:
            self._audit(AuditEventType.TOKEN_VALIDATION_FAILED, AuditOutcome.DENIED,
                        token=token, reason=str(e))
            raise OAuth21Error("invalid_token", str(e))

        self._audit(AuditEventType.TOKEN_VALIDATION_SUCCESS, AuditOutcome.SUCCESS,
                    client_id=context.client_id, subject=context.subject, scope=context.scope)
        return context

    async def introspect_token(self, token: str) -> Dict[str, Any]:
        """Token introspection (RFC 7662)"""
        return await self.token_manager.introspect_token(token, issuer=self.issuer)

    # Revocation

    async def revoke_token(self,
                           token: str,
                           client_id: Optional[str] = None,
                           token_type_hint: Optional[str] = None) -> bool:
        """
        Revoke access or refresh token (RFC 7009)

        Always reports success: unknown tokens and tokens of other clients
        are ignored so the endpoint cannot be used to test whether a token exists.
        """
        try:
            revoked = await self.token_manager.revoke_token(token, client_id, token_type_hint)
        except StorageError as e:
            self._audit(AuditEventType.TOKEN_REVOKED, AuditOutcome.ERROR, client_id=client_id, reason=str(e))
            raise

        self._audit(AuditEventType.TOKEN_REVOKED, AuditOutcome.SUCCESS,
                    client_id=client_id, revoked=revoked, token_type_hint=token_type_hint)
        if revoked:
            logger.info(f"Token revoked for client {client_id}")
        return True

    # Clients

    async def register_client(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """
        Register a client (RFC 7591)

        Returns:
            Registration response; client_secret is only ever returned here

        Raises:
            OAuth21Error: invalid_request for malformed metadata
        """
        event = AuditEventType.CLIENT_REGISTERED
        try:
            response = await self.client_registry.register_client(request)
        except ClientRegistrationError as e:
            raise self._deny(event, OAuth21Error("invalid_request", e.description),
                             client_id=request.get("client_id"), registration_error=e.error)
        except StorageError as e:
            self._audit(event, AuditOutcome.ERROR, reason=str(e))
            raise

        self._audit(event, AuditOutcome.SUCCESS, client_id=response["client_id"],
                    scope=response["scope"], public=("client_secret" not in response))
        return response

    async def delete_client(self, client_id: str) -> bool:
        """Remove a client; its tokens stop validating immediately"""
        try:
            removed = await self.client_registry.delete_client(client_id)
        except StorageError as e:
            self._audit(AuditEventType.CLIENT_DELETED, AuditOutcome.ERROR, client_id=client_id, reason=str(e))
            raise

        self._audit(AuditEventType.CLIENT_DELETED, AuditOutcome.SUCCESS, client_id=client_id, removed=removed)
        return removed

    async def get_client_info(self, client_id: str) -> Optional[OAuthClient]:
        client = await self.client_registry.get_client(client_id)
        return client.public_view() if client else None

    async def list_clients(self) -> List[OAuthClient]:
        return await self.client_registry.list_clients()

    # Metadata

    def _generate_authorization_code(self) -> str:
        return secrets.token_urlsafe(32)

    def get_authorization_server_metadata(self) -> Dict[str, Any]:
        """
        Get OAuth Authorization Server Metadata (RFC 8414)
        """
        methods = ["S256", "plain"] if self.policy.allow_plain_pkce else ["S256"]
        return {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/authorize",
            "token_endpoint": f"{self.issuer}/token",
            "revocation_endpoint": f"{self.issuer}/revoke",
            "introspection_endpoint": f"{self.issuer}/introspect",
            "registration_endpoint": f"{self.issuer}/register",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "code_challenge_methods_supported": methods,
            "token_endpoint_auth_methods_supported": [
                "client_secret_basic",
                "client_secret_post",
                "none"
            ],
            "revocation_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post", "none"],
            "scopes_supported": self.scopes_supported,
            "response_modes_supported": ["query"],
        }

    async def get_stats(self) -> Dict[str, Any]:
        stats = await self.store.stats()
        return {
            **stats.model_dump(),
            "audit_failures": self.audit_failures,
        }


async def create_oauth21_provider(config: OAuthConfig,
                                  store: Optional[CredentialStore] = None,
                                  audit_logger: Optional[AuditLogger] = None) -> OAuth21Provider:
    """Create a provider (and, unless given, a connected store) from configuration"""
    from ..storage_factory import StorageFactory

    if store is None:
        store = await StorageFactory.create_storage(config)
    if audit_logger is None:
        audit_logger = get_security_audit_logger(hash_salt=config.logging.audit_hash_salt)

    return OAuth21Provider(
        store=store,
        audit_logger=audit_logger,
        policy=config.tokens,
        issuer=config.issuer,
        scopes_supported=config.scopes_supported,
    )

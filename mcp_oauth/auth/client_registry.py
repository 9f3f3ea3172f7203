"""
Dynamic Client Registration (RFC 7591) and client authentication

Clients live in the credential store. Confidential clients receive a secret
exactly once at registration; only its PBKDF2-SHA256 hash is stored.
"""

import base64
import logging
import secrets
import uuid
from typing import Dict, Any, Optional, List
from urllib.parse import urlparse

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..models import OAuthClient
from ..storage_interface import CredentialStore, ClientAlreadyExistsError
from .scope_mapper import parse_scope, format_scope

logger = logging.getLogger(__name__)

SUPPORTED_GRANT_TYPES = {"authorization_code", "refresh_token"}
SUPPORTED_AUTH_METHODS = {"client_secret_basic", "client_secret_post", "none"}

PBKDF2_ITERATIONS = 100_000
HASH_SCHEME = "pbkdf2_sha256"


class ClientRegistrationError(Exception):
    """Client registration specific errors"""
    def __init__(self, error: str, description: str = ""):
        self.error = error
        self.description = description
        super().__init__(f"{error}: {description}")


class ClientAuthenticationError(Exception):
    """Unknown client or wrong secret"""
    pass


def _kdf(salt: bytes, iterations: int) -> PBKDF2HMAC:
    return PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )


def hash_client_secret(secret: str, iterations: int = PBKDF2_ITERATIONS) -> str:
    """Encode as pbkdf2_sha256$<iterations>$<salt>$<hash>"""
    salt = secrets.token_bytes(16)
    derived = _kdf(salt, iterations).derive(secret.encode("utf-8"))
    return "$".join([
        HASH_SCHEME,
        str(iterations),
        base64.urlsafe_b64encode(salt).decode("ascii"),
        base64.urlsafe_b64encode(derived).decode("ascii"),
    ])


def verify_client_secret(secret: str, encoded: str) -> bool:
    try:
        scheme, iterations, salt_b64, hash_b64 = encoded.split("$")
    except ValueError:
        logger.error("Stored client secret hash has an unexpected format")
        return False
    if scheme != HASH_SCHEME:
        return False

    kdf = _kdf(base64.urlsafe_b64decode(salt_b64), int(iterations))
    try:
        # constant-time comparison inside cryptography
        kdf.verify(secret.encode("utf-8"), base64.urlsafe_b64decode(hash_b64))
        return True
    except InvalidKey:
        return False


class DynamicClientRegistry:
    """
    RFC 7591 client registration backed by a CredentialStore

    Features:
    - Shape validation of redirect URIs, grant types, scopes
    - Secret generation for confidential clients, hashed at rest
    - Client authentication for the token and revocation endpoints
    """

    def __init__(self,
                 store: CredentialStore,
                 default_scopes: Optional[List[str]] = None):
        """
        Args:
            store: Credential store holding client records
            default_scopes: Scopes granted when a request names none
        """
        self.store = store
        self.default_scopes = list(default_scopes or ["read"])

    async def register_client(self, request_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Register a new client

        Args:
            request_data: RFC 7591 registration request. "client_id" may be
                supplied for administrative registration with a fixed id.

        Returns:
            Registration response; includes client_secret for confidential clients

        Raises:
            ClientRegistrationError: If the request is malformed or the id is taken
        """
        validated = self._validate_registration_request(request_data)

        client_id = request_data.get("client_id") or self._generate_client_id()
        if not isinstance(client_id, str):
            raise ClientRegistrationError("invalid_client_metadata", "client_id must be string")

        client_secret = None
        secret_hash = None
        if validated["token_endpoint_auth_method"] != "none":
            client_secret = self._generate_client_secret()
            secret_hash = hash_client_secret(client_secret)

        client = OAuthClient(
            client_id=client_id,
            client_secret_hash=secret_hash,
            client_name=validated.get("client_name", ""),
            redirect_uris=validated["redirect_uris"],
            scopes=validated["scopes"],
            grant_types=validated["grant_types"],
            token_endpoint_auth_method=validated["token_endpoint_auth_method"],
            metadata=validated.get("metadata", {}),
        )

        try:
            await self.store.put_client(client)
        except ClientAlreadyExistsError:
            raise ClientRegistrationError("invalid_client_metadata", f"Client {client_id} already exists")

        logger.info(f"Client registered: {client_id}")
        return self._build_registration_response(client, client_secret)

    async def get_client(self, client_id: str) -> Optional[OAuthClient]:
        return await self.store.get_client(client_id)

    async def list_clients(self) -> List[OAuthClient]:
        """List registered clients without secret hashes"""
        return [client.public_view() for client in await self.store.list_clients()]

    async def delete_client(self, client_id: str) -> bool:
        """Remove a client and revoke every token issued to it"""
        removed = await self.store.delete_client(client_id)
        revoked = await self.store.revoke_client_tokens(client_id)
        if removed:
            logger.info(f"Client deleted: {client_id} ({revoked} tokens revoked)")
        return removed

    async def authenticate_client(self, client_id: str, client_secret: Optional[str] = None) -> OAuthClient:
        """
        Authenticate a client at the token or revocation endpoint

        Public clients authenticate by id alone. Confidential clients must
        present the secret issued at registration.

        Raises:
            ClientAuthenticationError: Unknown client or bad secret
        """
        if not client_id:
            raise ClientAuthenticationError("client_id is required")

        client = await self.store.get_client(client_id)
        if client is None:
            raise ClientAuthenticationError(f"Unknown client: {client_id}")

        if client.is_public:
            return client

        if not client_secret or not verify_client_secret(client_secret, client.client_secret_hash):
            logger.warning(f"Client authentication failed for {client_id}")
            raise ClientAuthenticationError("Invalid client credentials")

        return client

    def _validate_registration_request(self, data: Dict[str, Any]) -> Dict[str, Any]:
        validated: Dict[str, Any] = {}

        redirect_uris = data.get("redirect_uris")
        if not redirect_uris:
            raise ClientRegistrationError("invalid_redirect_uri", "redirect_uris is required")
        if not isinstance(redirect_uris, list):
            raise ClientRegistrationError("invalid_redirect_uri", "redirect_uris must be array")

        for uri in redirect_uris:
            if not isinstance(uri, str):
                raise ClientRegistrationError("invalid_redirect_uri", "redirect_uris must be array of strings")
            parsed = urlparse(uri)
            if not parsed.scheme or not parsed.netloc:
                raise ClientRegistrationError("invalid_redirect_uri", f"Invalid URI: {uri}")
            if parsed.fragment:
                raise ClientRegistrationError("invalid_redirect_uri", f"Redirect URI must not contain a fragment: {uri}")
            # HTTPS required except for loopback
            if parsed.scheme != "https" and parsed.hostname not in ("localhost", "127.0.0.1"):
                raise ClientRegistrationError(
                    "invalid_redirect_uri",
                    f"Redirect URIs must use HTTPS: {uri}"
                )
        validated["redirect_uris"] = list(redirect_uris)

        grant_types = data.get("grant_types", ["authorization_code", "refresh_token"])
        if not isinstance(grant_types, list) or not grant_types:
            raise ClientRegistrationError("invalid_client_metadata", "grant_types must be a non-empty array")
        invalid_grants = set(grant_types) - SUPPORTED_GRANT_TYPES
        if invalid_grants:
            raise ClientRegistrationError(
                "invalid_client_metadata",
                f"Unsupported grant types: {sorted(invalid_grants)}"
            )
        validated["grant_types"] = list(grant_types)

        auth_method = data.get("token_endpoint_auth_method", "client_secret_basic")
        if auth_method not in SUPPORTED_AUTH_METHODS:
            raise ClientRegistrationError(
                "invalid_client_metadata",
                f"Invalid token_endpoint_auth_method: {auth_method}"
            )
        validated["token_endpoint_auth_method"] = auth_method

        # Scopes may arrive as an RFC 7591 "scope" string or a "scopes" list
        scopes = data.get("scopes")
        if scopes is None:
            scope = data.get("scope")
            if scope is not None and not isinstance(scope, str):
                raise ClientRegistrationError("invalid_client_metadata", "scope must be string")
            scopes = parse_scope(scope)
        elif not isinstance(scopes, list) or not all(isinstance(s, str) and s for s in scopes):
            raise ClientRegistrationError("invalid_client_metadata", "scopes must be array of strings")
        validated["scopes"] = list(dict.fromkeys(scopes)) or list(self.default_scopes)

        client_name = data.get("client_name")
        if client_name is not None:
            if not isinstance(client_name, str):
                raise ClientRegistrationError("invalid_client_metadata", "client_name must be string")
            validated["client_name"] = client_name

        metadata = data.get("metadata")
        if metadata is not None:
            if not isinstance(metadata, dict):
                raise ClientRegistrationError("invalid_client_metadata", "metadata must be object")
            validated["metadata"] = metadata

        return validated

    def _build_registration_response(self, client: OAuthClient, client_secret: Optional[str]) -> Dict[str, Any]:
        response = {
            "client_id": client.client_id,
            "client_id_issued_at": int(client.created_at),
            "client_name": client.client_name,
            "redirect_uris": client.redirect_uris,
            "grant_types": client.grant_types,
            "response_types": ["code"],
            "scope": format_scope(client.scopes),
            "token_endpoint_auth_method": client.token_endpoint_auth_method,
        }
        if client_secret is not None:
            response["client_secret"] = client_secret
            response["client_secret_expires_at"] = 0
        return response

    def _generate_client_id(self) -> str:
        return f"mcp-client-{uuid.uuid4().hex[:16]}"

    def _generate_client_secret(self) -> str:
        return secrets.token_urlsafe(32)

"""
OAuth 2.1 Authorization Module

Authorization code + PKCE and refresh token grants over a pluggable
credential store:
- PKCE (RFC 7636)
- Dynamic client registration (RFC 7591)
- Token revocation (RFC 7009) and introspection (RFC 7662)
- Scope to permission mapping
"""

from .oauth21_provider import OAuth21Provider, OAuth21Error, create_oauth21_provider
from .pkce_verifier import PKCEVerifier, PKCEChallenge, PKCEError, create_pkce_pair, verify_pkce
from .token_manager import (
    TokenManager, TokenContext, TokenError, InvalidScopeError, RefreshTokenReuseError
)
from .client_registry import (
    DynamicClientRegistry, ClientRegistrationError, ClientAuthenticationError,
    hash_client_secret, verify_client_secret
)
from .scope_mapper import map_scopes_to_permissions, parse_scope, format_scope

__all__ = [
    'OAuth21Provider',
    'OAuth21Error',
    'create_oauth21_provider',
    'PKCEVerifier',
    'PKCEChallenge',
    'PKCEError',
    'create_pkce_pair',
    'verify_pkce',
    'TokenManager',
    'TokenContext',
    'TokenError',
    'InvalidScopeError',
    'RefreshTokenReuseError',
    'DynamicClientRegistry',
    'ClientRegistrationError',
    'ClientAuthenticationError',
    'hash_client_secret',
    'verify_client_secret',
    'map_scopes_to_permissions',
    'parse_scope',
    'format_scope'
]

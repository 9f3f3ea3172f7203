"""
Unit tests for scope to permission mapping
"""

import pytest

from mcp_oauth.auth.scope_mapper import map_scopes_to_permissions, parse_scope, format_scope


class TestScopeMapping:
    """Test map_scopes_to_permissions"""

    @pytest.mark.parametrize("scope,permission", [
        ("read", "read:*"),
        ("write", "write:*"),
        ("tools:execute", "tools:*"),
        ("resources:read", "resources:*"),
        ("prompts:read", "prompts:*"),
        ("admin", "*"),
    ])
    def test_standard_scopes(self, scope, permission):
        assert map_scopes_to_permissions([scope]) == [permission]

    def test_custom_scope_passes_through(self):
        assert map_scopes_to_permissions(["custom:feature"]) == ["custom:feature"]

    def test_combines_multiple_scopes(self):
        permissions = map_scopes_to_permissions(["read", "tools:execute", "custom:feature"])
        assert permissions == ["read:*", "tools:*", "custom:feature"]

    def test_deduplicates(self):
        assert map_scopes_to_permissions(["read", "write", "read"]) == ["read:*", "write:*"]

    def test_empty(self):
        assert map_scopes_to_permissions([]) == []

    def test_admin_does_not_remove_other_permissions(self):
        permissions = map_scopes_to_permissions(["read", "admin", "custom:x"])
        assert set(permissions) == {"read:*", "*", "custom:x"}

    def test_mapping_is_idempotent(self):
        scopes = ["read", "write", "admin", "tools:execute", "custom:x"]
        once = map_scopes_to_permissions(scopes)
        assert map_scopes_to_permissions(once) == once

    def test_deterministic(self):
        scopes = ["prompts:read", "resources:read", "read"]
        assert map_scopes_to_permissions(scopes) == map_scopes_to_permissions(list(scopes))


class TestScopeStrings:

    def test_parse_scope(self):
        assert parse_scope("read  write read") == ["read", "write"]
        assert parse_scope(None) == []
        assert parse_scope("") == []

    def test_format_scope(self):
        assert format_scope(["read", "write"]) == "read write"
        assert format_scope([]) == ""

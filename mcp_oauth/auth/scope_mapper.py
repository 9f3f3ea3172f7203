"""
Scope to permission mapping

Standard OAuth scopes expand to wildcard permissions; anything else is a
custom domain scope and passes through unchanged.
"""

from typing import Dict, Iterable, List, Optional

STANDARD_SCOPE_PERMISSIONS: Dict[str, str] = {
    "read": "read:*",
    "write": "write:*",
    "tools:execute": "tools:*",
    "resources:read": "resources:*",
    "prompts:read": "prompts:*",
    "admin": "*",
}


def map_scopes_to_permissions(scopes: Iterable[str]) -> List[str]:
    """
    Expand granted scopes into permission strings

    The result is a union: no permission is dropped because another, broader
    one is present ("admin" adds "*" next to whatever else was granted).
    Order follows the first occurrence of each permission, and mapping an
    already mapped list returns it unchanged.
    """
    permissions: List[str] = []
    seen = set()
    for scope in scopes:
        if not scope:
            continue
        permission = STANDARD_SCOPE_PERMISSIONS.get(scope, scope)
        if permission not in seen:
            seen.add(permission)
            permissions.append(permission)
    return permissions


def parse_scope(scope: Optional[str]) -> List[str]:
    """Split a space-delimited scope parameter, keeping first occurrences"""
    if not scope:
        return []
    result: List[str] = []
    for item in scope.split():
        if item not in result:
            result.append(item)
    return result


def format_scope(scopes: Iterable[str]) -> str:
    return " ".join(scopes)

"""
auth/permissions.py -- Effective permission resolution.

Resolution order for a principal:
  1. AccountRole.SUPERADMIN                       -> everything
  2. direct grant of ADMIN_ALL or WILDCARD        -> everything
  3. direct grants U each held role's grants, stopping at the first role that
     contributes ADMIN_ALL / WILDCARD                -> everything
     otherwise                                       -> the union

"Everything" satisfies any permission string, known or not.

Every function here is pure over the Principal plus the role_lookup callable.
Nothing is cached: a role edit is visible on the very next check. Roles are a
single level (role -> permissions), so resolution always terminates.

role_lookup errors propagate. A store outage must surface as a 500, never as a
default-allow or a silent empty grant set that happens to pass. An unknown
role id is not an error -- the role was deleted and grants nothing.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from auth.models import AccountRole, Principal

RoleLookup = Callable[[str], Iterable[str]]

WILDCARD = "*"

MANAGE_ACCOUNTS = "manage_accounts"
VIEW_ACCOUNTS = "view_accounts"
MANAGE_ROLES = "manage_roles"
HANDLE_REQUESTS = "handle_requests"
VIEW_ABSENCES = "view_absences"
MANAGE_ABSENCES = "manage_absences"
ADMIN_ALL = "admin_all"  # legacy escalation grant

PERMISSION_UNIVERSE: frozenset[str] = frozenset(
    {
        MANAGE_ACCOUNTS,
        VIEW_ACCOUNTS,
        MANAGE_ROLES,
        HANDLE_REQUESTS,
        VIEW_ABSENCES,
        MANAGE_ABSENCES,
        ADMIN_ALL,
    }
)

_ESCALATING = frozenset({WILDCARD, ADMIN_ALL})


def is_superadmin(principal: Principal | None) -> bool:
    return principal is not None and principal.role is AccountRole.SUPERADMIN


def has_wildcard(principal: Principal | None) -> bool:
    """True if the principal holds WILDCARD or ADMIN_ALL as a direct grant."""
    return principal is not None and not _ESCALATING.isdisjoint(principal.permissions)


def _resolve(principal: Principal, role_lookup: RoleLookup) -> tuple[bool, frozenset[str]]:
    """Return (unrestricted, grants). grants is meaningless when unrestricted."""
    if is_superadmin(principal) or has_wildcard(principal):
        return True, PERMISSION_UNIVERSE

    grants = set(principal.permissions)
    for role_id in sorted(principal.role_ids):
        grants.update(role_lookup(role_id))
        if not _ESCALATING.isdisjoint(grants):
            return True, PERMISSION_UNIVERSE
    return False, frozenset(grants)


def is_escalating(permissions: Iterable[str]) -> bool:
    """True if the grant set contains WILDCARD or ADMIN_ALL."""
    return not _ESCALATING.isdisjoint(permissions)


def is_unrestricted(principal: Principal | None, role_lookup: RoleLookup) -> bool:
    """True if the principal resolves to everything, directly or via a role."""
    if principal is None:
        return False
    unrestricted, _ = _resolve(principal, role_lookup)
    return unrestricted


def get_all_permissions(principal: Principal | None, role_lookup: RoleLookup) -> frozenset[str]:
    """Effective permission set. Unrestricted principals get the full universe."""
    if principal is None:
        return frozenset()
    _, grants = _resolve(principal, role_lookup)
    return grants


def has_permission(principal: Principal | None, permission: str, role_lookup: RoleLookup) -> bool:
    if principal is None or not permission:
        return False
    unrestricted, grants = _resolve(principal, role_lookup)
    return unrestricted or permission in grants


def has_any_permission(principal: Principal | None, permissions: Iterable[str], role_lookup: RoleLookup) -> bool:
    """OR over has_permission, stopping at the first grant. Empty input -> False."""
    if principal is None:
        return False
    if is_superadmin(principal) or has_wildcard(principal):
        return True
    return any(has_permission(principal, p, role_lookup) for p in permissions)


def has_all_permissions(principal: Principal | None, permissions: Iterable[str], role_lookup: RoleLookup) -> bool:
    """AND over has_permission, stopping at the first miss. Empty input -> True."""
    if principal is None:
        return False
    if is_superadmin(principal) or has_wildcard(principal):
        return True
    return all(has_permission(principal, p, role_lookup) for p in permissions)

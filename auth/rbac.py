"""
auth/rbac.py -- Organization role permission matrix.

Each action maps to an explicit set of roles allowed to perform it. Roles are
deliberately NOT ordered: there is no "OWNER > ADMIN > MEMBER" comparison
anywhere, because BILLING can pay invoices that MEMBER cannot see, while
MEMBER can read services that BILLING cannot. Assuming nesting would quietly
grant one of them the other's permissions.

Pure functions over (role, action); no data is owned here.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from enum import Enum
from typing import Protocol

from auth.errors import PermissionDeniedError, UnknownPermissionError


class MemberRole(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"
    BILLING = "BILLING"


class Permission(str, Enum):
    # Organization management
    ORG_READ = "org:read"
    ORG_UPDATE = "org:update"
    ORG_DELETE = "org:delete"
    # Member management
    MEMBERS_READ = "members:read"
    MEMBERS_INVITE = "members:invite"
    MEMBERS_REMOVE = "members:remove"
    MEMBERS_UPDATE_ROLE = "members:update-role"
    # Billing
    BILLING_READ = "billing:read"
    BILLING_PAY = "billing:pay"
    BILLING_MANAGE = "billing:manage"
    # Services
    SERVICES_READ = "services:read"
    SERVICES_MANAGE = "services:manage"
    # API keys
    API_KEYS_READ = "api-keys:read"
    API_KEYS_CREATE = "api-keys:create"
    API_KEYS_REVOKE = "api-keys:revoke"
    # Support
    SUPPORT_READ = "support:read"
    SUPPORT_CREATE = "support:create"


_O, _A, _M, _B = MemberRole.OWNER, MemberRole.ADMIN, MemberRole.MEMBER, MemberRole.BILLING

PERMISSIONS: dict[Permission, frozenset[MemberRole]] = {
    Permission.ORG_READ: frozenset({_O, _A, _M, _B}),
    Permission.ORG_UPDATE: frozenset({_O, _A}),
    Permission.ORG_DELETE: frozenset({_O}),
    Permission.MEMBERS_READ: frozenset({_O, _A, _M}),
    Permission.MEMBERS_INVITE: frozenset({_O, _A}),
    Permission.MEMBERS_REMOVE: frozenset({_O, _A}),
    Permission.MEMBERS_UPDATE_ROLE: frozenset({_O}),
    Permission.BILLING_READ: frozenset({_O, _A, _B}),
    Permission.BILLING_PAY: frozenset({_O, _A, _B}),
    Permission.BILLING_MANAGE: frozenset({_O, _A}),
    Permission.SERVICES_READ: frozenset({_O, _A, _M}),
    Permission.SERVICES_MANAGE: frozenset({_O, _A}),
    Permission.API_KEYS_READ: frozenset({_O, _A}),
    Permission.API_KEYS_CREATE: frozenset({_O, _A}),
    Permission.API_KEYS_REVOKE: frozenset({_O, _A}),
    Permission.SUPPORT_READ: frozenset({_O, _A, _M}),
    Permission.SUPPORT_CREATE: frozenset({_O, _A, _M}),
}

# Every declared action must have an allow-set; a gap would make has_permission() partial.
_missing = set(Permission) - set(PERMISSIONS)
if _missing:
    raise RuntimeError(f"Permission matrix is missing entries for: {sorted(p.value for p in _missing)}")


class _HasAdminFlag(Protocol):
    is_admin: bool


def _as_permission(action: Permission | str) -> Permission:
    try:
        return Permission(action)
    except ValueError:
        raise UnknownPermissionError(f"Unknown permission: {action!r}") from None


def _as_role(role: MemberRole | str) -> MemberRole | None:
    try:
        return MemberRole(role)
    except ValueError:
        return None


def has_permission(role: MemberRole | str, action: Permission | str) -> bool:
    """Return True if role is in the allow-set for action.

    Raises UnknownPermissionError for an action that is not in the matrix:
    a typo in a guard must fail loudly, not silently deny. An unrecognized
    role string has no permissions.
    """
    permission = _as_permission(action)
    member_role = _as_role(role)
    return member_role is not None and member_role in PERMISSIONS[permission]


def is_system_admin(user: _HasAdminFlag) -> bool:
    return user.is_admin is True


def can_access_organization(user: _HasAdminFlag, membership: object | None) -> bool:
    """Global administrators can access every organization; anyone else needs a membership row."""
    if is_system_admin(user):
        return True
    return membership is not None


def require_permission(role: MemberRole | str | None, action: Permission | str) -> None:
    """Raise PermissionDeniedError unless role may perform action.

    Use as a guard at the top of privileged operations. A missing role (no
    membership) is denied.
    """
    permission = _as_permission(action)
    if role is None or not has_permission(role, permission):
        raise PermissionDeniedError(permission.value)

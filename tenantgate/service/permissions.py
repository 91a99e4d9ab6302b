"""Role and permission tables plus the pure checks built on them.

Nothing here touches storage. Effective permissions are the union of a
role's defaults and the user's validated overrides; unknown roles resolve to
no permissions at all.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any, Callable, Iterable, Optional, Sequence, TypeVar

T = TypeVar("T")


class Role(IntEnum):
    """Platform roles, ordered by privilege."""

    CUSTOMER = 1
    STAFF = 2
    ADMIN = 3
    OWNER = 4

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        if isinstance(value, Role):
            return value
        if isinstance(value, str):
            return cls.__members__.get(value.upper())
        return None


class Permission(str, Enum):
    USERS_CREATE = "users.create"
    USERS_READ = "users.read"
    USERS_UPDATE = "users.update"
    USERS_DELETE = "users.delete"
    USERS_INVITE = "users.invite"
    TENANTS_READ = "tenants.read"
    TENANTS_UPDATE = "tenants.update"
    TENANTS_BRANDING = "tenants.branding"
    TENANTS_DOMAIN = "tenants.domain"
    SUBSCRIPTION_READ = "subscription.read"
    SUBSCRIPTION_UPDATE = "subscription.update"
    SUBSCRIPTION_CANCEL = "subscription.cancel"
    CONTENT_CREATE = "content.create"
    CONTENT_READ = "content.read"
    CONTENT_UPDATE = "content.update"
    CONTENT_DELETE = "content.delete"
    REPORTS_VIEW = "reports.view"
    REPORTS_EXPORT = "reports.export"
    SETTINGS_MANAGE = "settings.manage"
    AUDIT_READ = "audit.read"


class Scope(str, Enum):
    ALL = "all"
    TENANT = "tenant"
    OWN = "own"


ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.OWNER: frozenset(Permission),
    Role.ADMIN: frozenset(
        {
            Permission.USERS_CREATE,
            Permission.USERS_READ,
            Permission.USERS_UPDATE,
            Permission.USERS_DELETE,
            Permission.USERS_INVITE,
            Permission.TENANTS_READ,
            Permission.TENANTS_UPDATE,
            Permission.TENANTS_BRANDING,
            Permission.CONTENT_CREATE,
            Permission.CONTENT_READ,
            Permission.CONTENT_UPDATE,
            Permission.CONTENT_DELETE,
            Permission.REPORTS_VIEW,
            Permission.REPORTS_EXPORT,
            Permission.SETTINGS_MANAGE,
            Permission.AUDIT_READ,
        }
    ),
    Role.STAFF: frozenset(
        {
            Permission.USERS_READ,
            Permission.TENANTS_READ,
            Permission.CONTENT_CREATE,
            Permission.CONTENT_READ,
            Permission.CONTENT_UPDATE,
            Permission.REPORTS_VIEW,
        }
    ),
    Role.CUSTOMER: frozenset({Permission.CONTENT_READ}),
}


def role_permissions(role: Any) -> frozenset[Permission]:
    parsed = Role.parse(role)
    if parsed is None:
        return frozenset()
    return ROLE_PERMISSIONS.get(parsed, frozenset())


def validate_overrides(overrides: Optional[Iterable[str]]) -> list[str]:
    """Normalize a per-user override list, rejecting unknown identifiers."""
    if overrides is None:
        return []
    known = {p.value for p in Permission}
    cleaned: list[str] = []
    for raw in overrides:
        value = raw.value if isinstance(raw, Permission) else str(raw).strip()
        if value not in known:
            raise ValueError(f"unknown permission: {value}")
        if value not in cleaned:
            cleaned.append(value)
    return cleaned


def _parse_overrides(overrides: Optional[Iterable[str]]) -> set[Permission]:
    parsed: set[Permission] = set()
    for raw in overrides or ():
        try:
            parsed.add(Permission(raw))
        except ValueError:
            # Stale rows may hold identifiers that no longer exist
            continue
    return parsed


def effective_permissions(
    role: Any, overrides: Optional[Iterable[str]] = None
) -> frozenset[Permission]:
    return role_permissions(role) | _parse_overrides(overrides)


def has_permission(
    role: Any, overrides: Optional[Iterable[str]], permission: Permission | str
) -> bool:
    try:
        wanted = Permission(permission)
    except ValueError:
        return False
    return wanted in effective_permissions(role, overrides)


def has_any(
    role: Any, overrides: Optional[Iterable[str]], permissions: Sequence[Permission | str]
) -> bool:
    return any(has_permission(role, overrides, p) for p in permissions)


def has_all(
    role: Any, overrides: Optional[Iterable[str]], permissions: Sequence[Permission | str]
) -> bool:
    return all(has_permission(role, overrides, p) for p in permissions)


def can_assign(actor_role: Any, target_role: Any) -> bool:
    """Return True when ``actor_role`` may grant ``target_role`` to someone.

    Only an OWNER may grant OWNER; any other grant must be strictly below
    the actor's own rank.
    """
    actor = Role.parse(actor_role)
    target = Role.parse(target_role)
    if actor is None or target is None:
        return False
    if target is Role.OWNER:
        return actor is Role.OWNER
    return target < actor


def can_manage(actor_role: Any, subject_role: Any) -> bool:
    """Return True when ``actor_role`` may modify a user currently holding ``subject_role``."""
    actor = Role.parse(actor_role)
    subject = Role.parse(subject_role)
    if actor is None or subject is None:
        return False
    if subject is Role.OWNER:
        return actor is Role.OWNER
    return True


def get_permission_scope(role: Any, permission: Permission | str) -> Scope:
    """Tenant-wide for OWNER and ADMIN on permissions their role grants, else own rows only."""
    parsed = Role.parse(role)
    if parsed not in (Role.OWNER, Role.ADMIN):
        return Scope.OWN
    try:
        wanted = Permission(permission)
    except ValueError:
        return Scope.OWN
    return Scope.TENANT if wanted in role_permissions(parsed) else Scope.OWN


def filter_by_scope(
    items: Iterable[T],
    user_id: str,
    tenant_id: str,
    scope: Scope,
    *,
    owner_of: Callable[[T], Optional[str]] = lambda item: getattr(item, "user_id", None),
    tenant_of: Callable[[T], Optional[str]] = lambda item: getattr(item, "tenant_id", None),
) -> list[T]:
    if scope is Scope.ALL:
        return list(items)
    if scope is Scope.TENANT:
        return [item for item in items if tenant_of(item) == tenant_id]
    if scope is Scope.OWN:
        return [item for item in items if owner_of(item) == user_id]
    return []

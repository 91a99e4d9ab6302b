from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from tenantgate.logging import get_logger
from tenantgate.service.audit import AuditAction, AuditSink
from tenantgate.service.auth import AuthContext, validate_password_strength
from tenantgate.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tenantgate.service.permissions import (
    Permission,
    Role,
    can_assign,
    can_manage,
    effective_permissions,
    filter_by_scope,
    get_permission_scope,
    validate_overrides,
)
from tenantgate.service.tokens import hash_password
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import EnforcementContext, User

logger = get_logger(__name__)


class UserDirectoryStore(Protocol):
    def list_users(self, ctx: EnforcementContext) -> List[User]: ...

    def get_user_scoped(self, ctx: EnforcementContext, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str, tenant_id: Optional[str] = None) -> Optional[User]: ...

    def create_user_scoped(
        self,
        ctx: EnforcementContext,
        email: str,
        *,
        role: str = "CUSTOMER",
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> User: ...

    def update_user_role(self, ctx: EnforcementContext, user_id: str, role: str) -> Optional[User]: ...

    def update_user(
        self, ctx: EnforcementContext, user_id: str, fields: Dict[str, Any]
    ) -> Optional[User]: ...

    def deactivate_user(self, ctx: EnforcementContext, user_id: str) -> Optional[User]: ...

    def delete_sessions(
        self,
        *,
        user_id: Optional[str] = None,
        token: Optional[str] = None,
        session_id: Optional[str] = None,
        except_token: Optional[str] = None,
    ) -> int: ...


class UserDirectory:
    """Tenant-scoped user administration.

    Every call takes the caller's ``AuthContext`` for authorization decisions
    and the ``EnforcementContext`` bound for the request, which scopes the
    store reads and writes.
    """

    def __init__(self, store: UserDirectoryStore, *, audit: Optional[AuditSink] = None) -> None:
        self.store = store
        self.audit = audit

    def _record(
        self, actor: AuthContext, action: str, target_id: str, metadata: dict[str, Any]
    ) -> None:
        if self.audit is None:
            return
        self.audit.record(
            actor.tenant_id,
            actor.user_id,
            action,
            entity_type="user",
            entity_id=target_id,
            metadata=metadata,
        )

    def _require_user(self, ctx: EnforcementContext, user_id: str) -> User:
        user = self.store.get_user_scoped(ctx, user_id)
        if user is None:
            # Same answer whether the id is unknown or belongs to another tenant
            raise NotFoundError("User not found", detail={"user_id": user_id})
        return user

    def _check_grantable(self, actor: AuthContext, overrides: List[str]) -> None:
        """Non-owners may only hand out permissions they hold themselves."""
        if Role.parse(actor.role) is Role.OWNER:
            return
        held = {p.value for p in effective_permissions(actor.role, actor.user.permissions)}
        beyond = sorted(set(overrides) - held)
        if beyond:
            logger.warning(
                "permission_grant_denied",
                tenant_id=actor.tenant_id,
                actor_id=actor.user_id,
                permissions=beyond,
            )
            raise ForbiddenError(
                "Cannot grant permissions you do not hold", detail={"permissions": beyond}
            )

    def list_users(self, actor: AuthContext, ctx: EnforcementContext) -> List[User]:
        users = self.store.list_users(ctx)
        scope = get_permission_scope(actor.role, Permission.USERS_READ)
        return filter_by_scope(
            users,
            actor.user_id,
            actor.tenant_id,
            scope,
            owner_of=lambda user: user.id,
        )

    def get_user(self, actor: AuthContext, ctx: EnforcementContext, user_id: str) -> User:
        return self._require_user(ctx, user_id)

    def create_user(
        self,
        actor: AuthContext,
        ctx: EnforcementContext,
        email: str,
        password: str,
        *,
        role: str = "CUSTOMER",
        name: Optional[str] = None,
    ) -> User:
        """Add a password account to the caller's tenant."""
        new_role = Role.parse(role)
        if new_role is None:
            raise ValidationError("Invalid role", detail={"role": role})
        if new_role is Role.OWNER and Role.parse(actor.role) is not Role.OWNER:
            raise ForbiddenError("Only OWNER can create another OWNER")
        if not can_assign(actor.role, new_role):
            raise ForbiddenError("Cannot create user with higher role")
        problems = validate_password_strength(password)
        if problems:
            raise ValidationError("Password does not meet requirements", detail={"errors": problems})
        if self.store.get_user_by_email(email, ctx.tenant_id):
            raise ConflictError("Email already exists in this tenant")
        try:
            user = self.store.create_user_scoped(
                ctx,
                email,
                role=new_role.name,
                name=name,
                password_hash=hash_password(password),
            )
        except ConstraintViolation as exc:
            raise ConflictError("Email already exists in this tenant") from exc
        logger.info(
            "user_created",
            tenant_id=actor.tenant_id,
            actor_id=actor.user_id,
            user_id=user.id,
            role=user.role,
        )
        self._record(actor, AuditAction.USER_CREATED, user.id, {"role": user.role})
        return user

    def change_role(
        self, actor: AuthContext, ctx: EnforcementContext, user_id: str, role: str
    ) -> User:
        target = self._require_user(ctx, user_id)
        new_role = Role.parse(role)
        if new_role is None:
            raise ValidationError("Invalid role", detail={"role": role})
        if new_role is Role.OWNER and Role.parse(actor.role) is not Role.OWNER:
            raise ForbiddenError("Only OWNER can assign OWNER role")
        if not can_assign(actor.role, new_role):
            raise ForbiddenError("Cannot assign higher role")
        if not can_manage(actor.role, target.role):
            raise ForbiddenError("Cannot modify another OWNER")
        previous_role = target.role
        updated = self.store.update_user_role(ctx, user_id, new_role.name)
        if updated is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        logger.info(
            "user_role_changed",
            tenant_id=actor.tenant_id,
            actor_id=actor.user_id,
            user_id=user_id,
            previous_role=previous_role,
            new_role=new_role.name,
        )
        self._record(
            actor,
            AuditAction.USER_ROLE_CHANGED,
            user_id,
            {"previous_role": previous_role, "new_role": new_role.name},
        )
        return updated

    def update_user(
        self,
        actor: AuthContext,
        ctx: EnforcementContext,
        user_id: str,
        *,
        name: Optional[str] = None,
        permissions: Optional[List[str]] = None,
    ) -> User:
        target = self._require_user(ctx, user_id)
        if target.id != actor.user_id and not can_manage(actor.role, target.role):
            raise ForbiddenError("Cannot modify another OWNER")
        fields: Dict[str, Any] = {}
        if name is not None:
            fields["name"] = name
        if permissions is not None:
            try:
                overrides = validate_overrides(permissions)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            self._check_grantable(actor, overrides)
            fields["permissions"] = overrides or None
        updated = self.store.update_user(ctx, user_id, fields)
        if updated is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        self._record(actor, AuditAction.USER_UPDATED, user_id, {"fields": sorted(fields)})
        return updated

    def deactivate_user(self, actor: AuthContext, ctx: EnforcementContext, user_id: str) -> User:
        if user_id == actor.user_id:
            raise ValidationError("Cannot delete yourself")
        target = self._require_user(ctx, user_id)
        if not can_manage(actor.role, target.role):
            raise ForbiddenError("Cannot delete another OWNER")
        updated = self.store.deactivate_user(ctx, user_id)
        if updated is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        revoked = self.store.delete_sessions(user_id=user_id)
        logger.info(
            "user_deactivated",
            tenant_id=actor.tenant_id,
            actor_id=actor.user_id,
            user_id=user_id,
            sessions_revoked=revoked,
        )
        self._record(
            actor,
            AuditAction.USER_DELETED,
            user_id,
            {"role": target.role, "sessions_revoked": revoked},
        )
        return updated

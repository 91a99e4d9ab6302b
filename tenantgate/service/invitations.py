from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol
from urllib.parse import urlencode

from tenantgate.logging import get_logger
from tenantgate.service.audit import AuditAction, AuditSink
from tenantgate.service.auth import (
    AuthContext,
    AuthService,
    IssuedSession,
    validate_password_strength,
)
from tenantgate.service.email import EmailService
from tenantgate.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tenantgate.service.permissions import Role, can_assign
from tenantgate.service.tokens import hash_password
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import EnforcementContext, Invitation, Tenant, User

logger = get_logger(__name__)

TOKEN_BYTES = 32
MAX_TTL_HOURS = 168
INVITABLE_ROLES = (Role.ADMIN, Role.STAFF, Role.CUSTOMER)
STATUSES = ("pending", "accepted", "expired")


class InvitationStore(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_user_by_email(self, email: str, tenant_id: Optional[str] = None) -> Optional[User]: ...

    def create_invitation(
        self,
        ctx: EnforcementContext,
        email: str,
        role: str,
        token: str,
        expires_at: datetime,
    ) -> Invitation: ...

    def list_invitations(self, ctx: EnforcementContext) -> List[Invitation]: ...

    def get_invitation_scoped(
        self, ctx: EnforcementContext, invitation_id: str
    ) -> Optional[Invitation]: ...

    def find_pending_invitation(
        self, ctx: EnforcementContext, email: str, now: datetime
    ) -> Optional[Invitation]: ...

    def delete_invitation(self, ctx: EnforcementContext, invitation_id: str) -> bool: ...

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]: ...

    def accept_invitation(
        self,
        token: str,
        *,
        name: Optional[str],
        password_hash: str,
        accepted_at: datetime,
    ) -> Optional[tuple[Invitation, User]]: ...


@dataclass
class IssuedInvitation:
    invitation: Invitation
    url: str


class InvitationService:
    """Email invitations that let admins add people to their tenant.

    The token in an invitation URL is the only credential needed to accept
    it, so lookups by token are public and every other operation is scoped
    to the inviting tenant.
    """

    def __init__(
        self,
        store: InvitationStore,
        auth: AuthService,
        email: EmailService,
        *,
        ttl_hours: int = 48,
        frontend_url: str = "http://localhost:3000",
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.store = store
        self.auth = auth
        self.email = email
        self.ttl_hours = ttl_hours
        self.frontend_url = frontend_url.rstrip("/")
        self.audit = audit
        self._clock = clock

    def build_url(self, token: str) -> str:
        return f"{self.frontend_url}/invite?{urlencode({'token': token})}"

    def status_of(self, invitation: Invitation) -> str:
        return invitation.status(self._clock())

    def list_invitations(
        self, actor: AuthContext, ctx: EnforcementContext, status: Optional[str] = None
    ) -> List[Invitation]:
        if status is not None and status not in STATUSES:
            raise ValidationError("Invalid status", detail={"status": status})
        invitations = self.store.list_invitations(ctx)
        if status is None:
            return invitations
        now = self._clock()
        return [i for i in invitations if i.status(now) == status]

    async def create(
        self,
        actor: AuthContext,
        ctx: EnforcementContext,
        email: str,
        *,
        role: str = "STAFF",
        expires_in_hours: Optional[int] = None,
    ) -> IssuedInvitation:
        new_role = Role.parse(role)
        if new_role not in INVITABLE_ROLES:
            raise ValidationError("Invalid role", detail={"role": role})
        if not can_assign(actor.role, new_role):
            raise ForbiddenError("Cannot invite user with higher role")
        hours = expires_in_hours or self.ttl_hours
        if not 1 <= hours <= MAX_TTL_HOURS:
            raise ValidationError(
                "Invitation lifetime must be between 1 and 168 hours",
                detail={"expires_in_hours": hours},
            )
        if self.store.get_user_by_email(email, ctx.tenant_id):
            raise ConflictError("User already exists in this tenant")
        now = self._clock()
        if self.store.find_pending_invitation(ctx, email, now):
            raise ConflictError("Pending invitation already exists for this email")

        invitation = self.store.create_invitation(
            ctx,
            email,
            new_role.name,
            secrets.token_hex(TOKEN_BYTES),
            now + timedelta(hours=hours),
        )
        url = self.build_url(invitation.token)
        sent = await asyncio.to_thread(
            self.email.send_invitation,
            invitation.email,
            url,
            tenant_name=actor.tenant.name,
            role=invitation.role,
            inviter_name=actor.user.name,
            ttl_hours=hours,
        )
        if not sent:
            logger.error(
                "invitation_email_failed", tenant_id=ctx.tenant_id, invitation_id=invitation.id
            )
        logger.info(
            "invitation_created",
            tenant_id=ctx.tenant_id,
            actor_id=actor.user_id,
            invitation_id=invitation.id,
            role=invitation.role,
        )
        if self.audit:
            self.audit.record(
                ctx.tenant_id,
                actor.user_id,
                AuditAction.INVITATION_CREATED,
                entity_type="invitation",
                entity_id=invitation.id,
                metadata={"role": invitation.role, "expires_in_hours": hours},
            )
        return IssuedInvitation(invitation=invitation, url=url)

    def _require_open(self, token: str) -> tuple[Invitation, Tenant]:
        invitation = self.store.get_invitation_by_token(token) if token else None
        if invitation is None:
            raise NotFoundError("Invitation not found")
        status = self.status_of(invitation)
        if status == "accepted":
            raise ValidationError("Invitation has already been accepted")
        if status == "expired":
            raise ValidationError("Invitation has expired")
        tenant = self.store.get_tenant(invitation.tenant_id)
        if tenant is None or not tenant.is_active:
            raise ForbiddenError("Tenant is inactive")
        return invitation, tenant

    def describe(self, token: str) -> tuple[Invitation, Tenant]:
        """Look up an open invitation and its tenant for the accept page."""
        return self._require_open(token)

    async def accept(
        self,
        token: str,
        password: str,
        *,
        name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        invitation, _ = self._require_open(token)
        problems = validate_password_strength(password)
        if problems:
            raise ValidationError("Password does not meet requirements", detail={"errors": problems})
        try:
            accepted = self.store.accept_invitation(
                token,
                name=name,
                password_hash=hash_password(password),
                accepted_at=self._clock(),
            )
        except ConstraintViolation as exc:
            raise ConflictError("User already exists in this tenant") from exc
        if accepted is None:
            # Lost a race with another accept, or expired in between
            raise ValidationError("Invitation has already been accepted")
        invitation, user = accepted
        issued = self.auth.issue_session(user)
        logger.info(
            "invitation_accepted",
            tenant_id=invitation.tenant_id,
            invitation_id=invitation.id,
            user_id=user.id,
        )
        if self.audit:
            self.audit.record(
                invitation.tenant_id,
                user.id,
                AuditAction.INVITATION_ACCEPTED,
                entity_type="invitation",
                entity_id=invitation.id,
                metadata={"role": invitation.role, "invited_by": invitation.invited_by},
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return issued

    def cancel(
        self, actor: AuthContext, ctx: EnforcementContext, invitation_id: str
    ) -> Invitation:
        invitation = self.store.get_invitation_scoped(ctx, invitation_id)
        if invitation is None:
            raise NotFoundError("Invitation not found", detail={"invitation_id": invitation_id})
        if invitation.accepted_at is not None:
            raise ValidationError("Cannot delete accepted invitation")
        if not self.store.delete_invitation(ctx, invitation_id):
            raise NotFoundError("Invitation not found", detail={"invitation_id": invitation_id})
        if self.audit:
            self.audit.record(
                ctx.tenant_id,
                actor.user_id,
                AuditAction.INVITATION_CANCELLED,
                entity_type="invitation",
                entity_id=invitation_id,
                metadata={"email": invitation.email},
            )
        return invitation

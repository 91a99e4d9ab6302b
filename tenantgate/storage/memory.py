from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from tenantgate.logging import get_logger
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import (
    AuditEvent,
    EnforcementContext,
    Invitation,
    MagicLink,
    OAuthAccount,
    Session,
    Tenant,
    User,
    new_id,
    utcnow,
)

_TENANT_MUTABLE_FIELDS = {
    "name",
    "custom_domain",
    "logo_url",
    "primary_color",
    "secondary_color",
    "plan",
    "is_active",
}
_USER_MUTABLE_FIELDS = {"name", "permissions", "is_active"}


def _copy_user(user: User) -> User:
    return replace(user, permissions=list(user.permissions) if user.permissions else None)


class MemoryStore:
    """In-process backing store used for tests and local development.

    Records are copied on the way in and out so callers never share mutable
    state with the store. Tenant-scoped calls take an ``EnforcementContext``
    and only ever see rows of ``ctx.tenant_id``, mirroring the row-level
    security policy of the PostgreSQL gateway.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.magic_links: Dict[str, MagicLink] = {}
        self.oauth_accounts: Dict[str, OAuthAccount] = {}
        self.invitations: Dict[str, Invitation] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock allows nested acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.available = True

    # -- health ---------------------------------------------------------

    def ping(self) -> bool:
        return self.available

    def close(self) -> None:
        return None

    # -- tenants --------------------------------------------------------

    def create_tenant(
        self,
        slug: str,
        name: str,
        *,
        custom_domain: Optional[str] = None,
        plan: str = "free",
        is_active: bool = True,
    ) -> Tenant:
        domain = custom_domain.lower() if custom_domain else None
        with self._data_lock:
            for existing in self.tenants.values():
                if existing.slug == slug:
                    raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
                if domain and existing.custom_domain == domain:
                    raise ConstraintViolation(
                        "custom domain already in use", {"field": "custom_domain"}
                    )
            tenant = Tenant(
                id=new_id(),
                slug=slug,
                name=name,
                custom_domain=domain,
                plan=plan,
                is_active=is_active,
            )
            self.tenants[tenant.id] = tenant
            return replace(tenant)

    def create_tenant_with_owner(
        self,
        slug: str,
        name: str,
        *,
        email: str,
        password_hash: str,
        user_name: Optional[str] = None,
    ) -> tuple[Tenant, User]:
        """Create a tenant and its first OWNER atomically."""
        with self._data_lock:
            tenant = self.create_tenant(slug, name)
            try:
                user = self.create_user(
                    email,
                    tenant.id,
                    role="OWNER",
                    name=user_name,
                    password_hash=password_hash,
                    email_verified_at=utcnow(),
                )
            except ConstraintViolation:
                self.tenants.pop(tenant.id, None)
                raise
            return tenant, user

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return replace(tenant) if tenant else None

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._data_lock:
            for tenant in self.tenants.values():
                if tenant.slug == slug:
                    return replace(tenant)
        return None

    def get_tenant_by_domain(self, domain: str) -> Optional[Tenant]:
        if not domain:
            return None
        wanted = domain.lower()
        with self._data_lock:
            for tenant in self.tenants.values():
                if tenant.custom_domain == wanted:
                    return replace(tenant)
        return None

    # -- users ----------------------------------------------------------

    def create_user(
        self,
        email: str,
        tenant_id: str,
        *,
        role: str = "CUSTOMER",
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
        permissions: Optional[List[str]] = None,
        is_active: bool = True,
        email_verified_at: Optional[datetime] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"field": "tenant_id"})
            if any(
                u.email == normalized and u.tenant_id == tenant_id for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=normalized,
                tenant_id=tenant_id,
                role=role,
                name=name,
                password_hash=password_hash,
                permissions=list(permissions) if permissions else None,
                is_active=is_active,
                email_verified_at=email_verified_at,
            )
            self.users[user.id] = user
            return _copy_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return _copy_user(user) if user else None

    def get_user_by_email(self, email: str, tenant_id: Optional[str] = None) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            matches = [
                u
                for u in self.users.values()
                if u.email == normalized and (tenant_id is None or u.tenant_id == tenant_id)
            ]
        if not matches:
            return None
        if len(matches) > 1:
            self.logger.warning("user_email_ambiguous", tenant_count=len(matches))
            return None
        return _copy_user(matches[0])

    def email_in_use(self, email: str) -> bool:
        normalized = email.strip().lower()
        with self._data_lock:
            return any(u.email == normalized for u in self.users.values())

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return
            user.password_hash = password_hash
            user.updated_at = utcnow()

    def mark_email_verified(self, user_id: str, verified_at: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is not None and user.email_verified_at is None:
                user.email_verified_at = verified_at or utcnow()
                user.updated_at = utcnow()

    # -- sessions -------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        session_id: Optional[str] = None,
    ) -> Session:
        session = Session(
            id=session_id or new_id(), user_id=user_id, token=token, expires_at=expires_at
        )
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            self.sessions[token] = session
        return replace(session)

    def get_session(self, token: str) -> Optional[Session]:
        now = utcnow()
        with self._data_lock:
            session = self.sessions.get(token)
            if session is None or not session.is_live(now):
                return None
            return replace(session)

    def get_session_by_id(self, session_id: str) -> Optional[Session]:
        now = utcnow()
        with self._data_lock:
            for session in self.sessions.values():
                if session.id == session_id and session.is_live(now):
                    return replace(session)
        return None

    def delete_sessions(
        self,
        *,
        user_id: Optional[str] = None,
        token: Optional[str] = None,
        session_id: Optional[str] = None,
        except_token: Optional[str] = None,
    ) -> int:
        if user_id is None and token is None and session_id is None:
            raise ValueError("delete_sessions requires user_id, token or session_id")
        with self._data_lock:
            doomed = [
                key
                for key, session in self.sessions.items()
                if (user_id is None or session.user_id == user_id)
                and (token is None or session.token == token)
                and (session_id is None or session.id == session_id)
                and (except_token is None or session.token != except_token)
            ]
            for key in doomed:
                del self.sessions[key]
            return len(doomed)

    def delete_tenant_sessions(self, ctx: EnforcementContext) -> int:
        with self._data_lock:
            member_ids = {u.id for u in self.users.values() if u.tenant_id == ctx.tenant_id}
            doomed = [k for k, s in self.sessions.items() if s.user_id in member_ids]
            for key in doomed:
                del self.sessions[key]
            return len(doomed)

    # -- magic links ----------------------------------------------------

    def create_magic_link(
        self,
        email: str,
        token: str,
        expires_at: datetime,
        *,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> MagicLink:
        link = MagicLink(
            id=new_id(),
            email=email.strip().lower(),
            token=token,
            expires_at=expires_at,
            tenant_id=tenant_id,
            user_id=user_id,
        )
        with self._data_lock:
            if token in self.magic_links:
                raise ConstraintViolation("magic link token collision", {"field": "token"})
            self.magic_links[token] = link
        return replace(link)

    def get_magic_link(self, token: str) -> Optional[MagicLink]:
        with self._data_lock:
            link = self.magic_links.get(token)
            return replace(link) if link else None

    def mark_magic_link_used(self, token: str, used_at: datetime) -> bool:
        """Set ``used_at`` only if it is still unset; returns whether this call won."""
        with self._data_lock:
            link = self.magic_links.get(token)
            if link is None or link.used_at is not None:
                return False
            link.used_at = used_at
            return True

    def delete_expired_magic_links(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [
                k
                for k, link in self.magic_links.items()
                if link.used_at is None and link.expires_at <= now
            ]
            for key in doomed:
                del self.magic_links[key]
            return len(doomed)

    # -- oauth accounts -------------------------------------------------

    def get_oauth_account(self, provider: str, provider_account_id: str) -> Optional[OAuthAccount]:
        with self._data_lock:
            for account in self.oauth_accounts.values():
                if (
                    account.provider == provider
                    and account.provider_account_id == provider_account_id
                ):
                    return replace(account)
        return None

    def list_oauth_accounts(self, user_id: str) -> List[OAuthAccount]:
        with self._data_lock:
            accounts = [replace(a) for a in self.oauth_accounts.values() if a.user_id == user_id]
        return sorted(accounts, key=lambda a: a.created_at)

    def upsert_oauth_account(
        self,
        user_id: str,
        provider: str,
        provider_account_id: str,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        token_type: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> OAuthAccount:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            for account in self.oauth_accounts.values():
                if (
                    account.provider == provider
                    and account.provider_account_id == provider_account_id
                ):
                    if account.user_id != user_id:
                        raise ConstraintViolation(
                            "oauth account linked to another user",
                            {"field": "provider_account_id"},
                        )
                    account.access_token = access_token
                    account.refresh_token = refresh_token or account.refresh_token
                    account.expires_at = expires_at
                    account.token_type = token_type
                    account.scope = scope
                    account.updated_at = utcnow()
                    return replace(account)
            account = OAuthAccount(
                id=new_id(),
                user_id=user_id,
                provider=provider,
                provider_account_id=provider_account_id,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                token_type=token_type,
                scope=scope,
            )
            self.oauth_accounts[account.id] = account
            return replace(account)

    def delete_oauth_account(self, user_id: str, provider: str) -> int:
        with self._data_lock:
            doomed = [
                k
                for k, a in self.oauth_accounts.items()
                if a.user_id == user_id and a.provider == provider
            ]
            for key in doomed:
                del self.oauth_accounts[key]
            return len(doomed)

    # -- invitations ----------------------------------------------------

    def create_invitation(
        self,
        ctx: EnforcementContext,
        email: str,
        role: str,
        token: str,
        expires_at: datetime,
    ) -> Invitation:
        invitation = Invitation(
            id=new_id(),
            tenant_id=ctx.tenant_id,
            email=email.strip().lower(),
            role=role,
            token=token,
            expires_at=expires_at,
            invited_by=ctx.user_id,
        )
        with self._data_lock:
            if any(i.token == token for i in self.invitations.values()):
                raise ConstraintViolation("invitation token collision", {"field": "token"})
            self.invitations[invitation.id] = invitation
        return replace(invitation)

    def list_invitations(self, ctx: EnforcementContext) -> List[Invitation]:
        with self._data_lock:
            invitations = [
                replace(i) for i in self.invitations.values() if i.tenant_id == ctx.tenant_id
            ]
        return sorted(invitations, key=lambda i: i.created_at, reverse=True)

    def get_invitation_scoped(
        self, ctx: EnforcementContext, invitation_id: str
    ) -> Optional[Invitation]:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if invitation is None or invitation.tenant_id != ctx.tenant_id:
                return None
            return replace(invitation)

    def find_pending_invitation(
        self, ctx: EnforcementContext, email: str, now: datetime
    ) -> Optional[Invitation]:
        normalized = email.strip().lower()
        with self._data_lock:
            for invitation in self.invitations.values():
                if (
                    invitation.tenant_id == ctx.tenant_id
                    and invitation.email == normalized
                    and invitation.status(now) == "pending"
                ):
                    return replace(invitation)
        return None

    def delete_invitation(self, ctx: EnforcementContext, invitation_id: str) -> bool:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if invitation is None or invitation.tenant_id != ctx.tenant_id:
                return False
            del self.invitations[invitation_id]
            return True

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        with self._data_lock:
            for invitation in self.invitations.values():
                if invitation.token == token:
                    return replace(invitation)
        return None

    def accept_invitation(
        self,
        token: str,
        *,
        name: Optional[str],
        password_hash: str,
        accepted_at: datetime,
    ) -> Optional[tuple[Invitation, User]]:
        """Create the invited user and stamp the invitation in one step.

        Returns None when the invitation is gone, expired or already accepted.
        """
        with self._data_lock:
            invitation = next(
                (i for i in self.invitations.values() if i.token == token), None
            )
            if invitation is None or invitation.status(accepted_at) != "pending":
                return None
            user = self.create_user(
                invitation.email,
                invitation.tenant_id,
                role=invitation.role,
                name=name,
                password_hash=password_hash,
                email_verified_at=accepted_at,
            )
            invitation.accepted_at = accepted_at
            invitation.accepted_by = user.id
            return replace(invitation), user

    # -- audit ----------------------------------------------------------

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(
                replace(event, metadata=dict(event.metadata) if event.metadata else None)
            )

    # -- enforcement context -------------------------------------------

    def set_enforcement_context(
        self, tenant_id: str, user_id: str, role: str
    ) -> EnforcementContext:
        if not self.available:
            raise ConnectionError("memory store marked unavailable")
        return EnforcementContext(tenant_id=tenant_id, user_id=user_id, role=role)

    def _scoped_user(self, ctx: EnforcementContext, user_id: str) -> Optional[User]:
        user = self.users.get(user_id)
        if user is None or user.tenant_id != ctx.tenant_id:
            return None
        return user

    def list_users(self, ctx: EnforcementContext) -> List[User]:
        with self._data_lock:
            users = [_copy_user(u) for u in self.users.values() if u.tenant_id == ctx.tenant_id]
        return sorted(users, key=lambda u: u.created_at)

    def get_user_scoped(self, ctx: EnforcementContext, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self._scoped_user(ctx, user_id)
            return _copy_user(user) if user else None

    def update_user_role(self, ctx: EnforcementContext, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self._scoped_user(ctx, user_id)
            if user is None:
                return None
            user.role = role
            user.updated_at = utcnow()
            return _copy_user(user)

    def update_user(
        self, ctx: EnforcementContext, user_id: str, fields: Dict[str, Any]
    ) -> Optional[User]:
        unknown = set(fields) - _USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self._scoped_user(ctx, user_id)
            if user is None:
                return None
            for key, value in fields.items():
                setattr(user, key, list(value) if key == "permissions" and value else value)
            user.updated_at = utcnow()
            return _copy_user(user)

    def create_user_scoped(
        self,
        ctx: EnforcementContext,
        email: str,
        *,
        role: str = "CUSTOMER",
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> User:
        return self.create_user(
            email, ctx.tenant_id, role=role, name=name, password_hash=password_hash
        )

    def deactivate_user(self, ctx: EnforcementContext, user_id: str) -> Optional[User]:
        return self.update_user(ctx, user_id, {"is_active": False})

    def update_tenant(self, ctx: EnforcementContext, fields: Dict[str, Any]) -> Optional[Tenant]:
        unknown = set(fields) - _TENANT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported tenant fields: {sorted(unknown)}")
        with self._data_lock:
            tenant = self.tenants.get(ctx.tenant_id)
            if tenant is None:
                return None
            domain = fields.get("custom_domain")
            if domain:
                domain = domain.lower()
                fields = {**fields, "custom_domain": domain}
                if any(
                    t.custom_domain == domain and t.id != tenant.id for t in self.tenants.values()
                ):
                    raise ConstraintViolation(
                        "custom domain already in use", {"field": "custom_domain"}
                    )
            for key, value in fields.items():
                setattr(tenant, key, value)
            tenant.updated_at = utcnow()
            return replace(tenant)

    def deactivate_tenant(self, ctx: EnforcementContext) -> Optional[Tenant]:
        return self.update_tenant(ctx, {"is_active": False})

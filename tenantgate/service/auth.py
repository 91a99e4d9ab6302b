from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Protocol

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.audit import AuditAction, AuditSink
from tenantgate.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from tenantgate.service.permissions import effective_permissions
from tenantgate.service.tokens import (
    ACCESS,
    REFRESH,
    TokenCodec,
    hash_password,
    verify_password,
)
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import Session, Tenant, User, new_id

logger = get_logger(__name__)

_SLUG_RE = re.compile(r"^[a-z0-9-]+$")


class AuthStore(Protocol):
    def create_tenant_with_owner(
        self,
        slug: str,
        name: str,
        *,
        email: str,
        password_hash: str,
        user_name: Optional[str] = None,
    ) -> tuple[Tenant, User]: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str, tenant_id: Optional[str] = None) -> Optional[User]: ...

    def email_in_use(self, email: str) -> bool: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def create_session(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        session_id: Optional[str] = None,
    ) -> Session: ...

    def get_session(self, token: str) -> Optional[Session]: ...

    def get_session_by_id(self, session_id: str) -> Optional[Session]: ...

    def delete_sessions(
        self,
        *,
        user_id: Optional[str] = None,
        token: Optional[str] = None,
        session_id: Optional[str] = None,
        except_token: Optional[str] = None,
    ) -> int: ...


@dataclass
class AuthContext:
    """Identity of an authenticated request."""

    user: User
    tenant: Tenant
    session: Session
    token: str
    permissions: List[str] = field(default_factory=list)

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def tenant_id(self) -> str:
        return self.user.tenant_id

    @property
    def role(self) -> str:
        return self.user.role


@dataclass
class IssuedSession:
    user: User
    session: Session
    tokens: dict[str, Any]


def validate_password_strength(password: str) -> list[str]:
    """Return a list of human-readable problems; empty when acceptable."""
    problems: list[str] = []
    if len(password) < 8:
        problems.append("Password must be at least 8 characters")
    if len(password) > 128:
        problems.append("Password must be at most 128 characters")
    if not re.search(r"[A-Za-z]", password):
        problems.append("Password must contain a letter")
    if not re.search(r"\d", password):
        problems.append("Password must contain a number")
    return problems


class AuthService:
    """Password login, session issuance and per-request re-validation."""

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        settings: Settings,
        *,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.settings = settings
        self.audit = audit
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.settings.refresh_token_ttl_minutes * 60

    def _audit(self, user: User, action: str, **kwargs: Any) -> None:
        if self.audit is None:
            return
        self.audit.record(
            user.tenant_id,
            user.id,
            action,
            entity_type="user",
            entity_id=user.id,
            **kwargs,
        )

    # -- issuance -------------------------------------------------------

    def issue_session(self, user: User) -> IssuedSession:
        """Sign an access/refresh pair and persist the session row for the access token."""
        payload = {
            "user_id": user.id,
            "tenant_id": user.tenant_id,
            "role": user.role,
            "email": user.email,
        }
        session_id = new_id()
        access_token = self.codec.sign_token(payload, self.access_ttl_seconds, token_type=ACCESS)
        refresh_token = self.codec.sign_token(
            {**payload, "sid": session_id}, self.refresh_ttl_seconds, token_type=REFRESH
        )
        expires_at = self._now() + timedelta(days=self.settings.session_ttl_days)
        session = self.store.create_session(
            user.id, access_token, expires_at, session_id=session_id
        )
        tokens = {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_type": "bearer",
            "expires_in": self.access_ttl_seconds,
        }
        self.logger.info("session_issued", user_id=user.id, tenant_id=user.tenant_id)
        return IssuedSession(user=user, session=session, tokens=tokens)

    # -- entry points ---------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        *,
        tenant_slug: str,
        tenant_name: str,
        name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[Tenant, IssuedSession]:
        problems = validate_password_strength(password)
        if problems:
            raise ValidationError("Password does not meet requirements", detail={"errors": problems})
        slug = tenant_slug.strip().lower()
        if len(slug) < 3 or not _SLUG_RE.match(slug):
            raise ValidationError(
                "Tenant slug can only contain lowercase letters, numbers, and hyphens"
            )
        if self.store.email_in_use(email):
            raise ConflictError("An account with this email already exists")
        if self.store.get_tenant_by_slug(slug):
            raise ConflictError("Tenant slug already taken")
        try:
            tenant, user = self.store.create_tenant_with_owner(
                slug,
                tenant_name,
                email=email,
                password_hash=hash_password(password),
                user_name=name,
            )
        except ConstraintViolation as exc:
            field_name = exc.detail.get("field")
            if field_name == "slug":
                raise ConflictError("Tenant slug already taken") from exc
            raise ConflictError("An account with this email already exists") from exc
        issued = self.issue_session(user)
        self._audit(
            user,
            AuditAction.USER_REGISTERED,
            metadata={"tenant_slug": tenant.slug},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return tenant, issued

    async def login(
        self,
        email: str,
        password: str,
        *,
        tenant_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        user = self.store.get_user_by_email(email, tenant_id)
        if not user or not user.password_hash:
            raise AuthenticationError("Invalid email or password")
        if not user.is_active:
            raise AuthenticationError("Account is disabled")
        tenant = self.store.get_tenant(user.tenant_id)
        if not tenant or not tenant.is_active:
            raise AuthenticationError("Tenant account is disabled")
        if not verify_password(password, user.password_hash):
            self.logger.info("login_failed", user_id=user.id)
            raise AuthenticationError("Invalid email or password")
        issued = self.issue_session(user)
        self._audit(
            user,
            AuditAction.USER_LOGIN,
            metadata={"method": "password"},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return issued

    async def refresh(self, refresh_token: str) -> IssuedSession:
        payload = self.codec.verify_token(refresh_token, token_type=REFRESH)
        if not payload:
            raise AuthenticationError("Invalid or expired refresh token")
        user = self.store.get_user(payload["user_id"])
        if not user or not user.is_active or user.tenant_id != payload["tenant_id"]:
            raise AuthenticationError("User not found or inactive")
        tenant = self.store.get_tenant(user.tenant_id)
        if not tenant or not tenant.is_active:
            raise AuthenticationError("Tenant account is disabled")
        session_id = payload.get("sid")
        if not session_id or not self.store.get_session_by_id(session_id):
            raise AuthenticationError("Session expired or invalidated")
        self.store.delete_sessions(session_id=session_id)
        return self.issue_session(user)

    async def logout(self, ctx: AuthContext) -> None:
        self.store.delete_sessions(token=ctx.token)
        self._audit(ctx.user, AuditAction.USER_LOGOUT)

    async def logout_all(self, user_id: str) -> int:
        removed = self.store.delete_sessions(user_id=user_id)
        self.logger.info("sessions_revoked", user_id=user_id, count=removed)
        return removed

    async def change_password(
        self,
        ctx: AuthContext,
        current_password: str,
        new_password: str,
    ) -> int:
        user = self.store.get_user(ctx.user_id)
        if not user:
            raise NotFoundError("User not found")
        if not verify_password(current_password, user.password_hash):
            raise AuthenticationError("Current password is incorrect")
        problems = validate_password_strength(new_password)
        if problems:
            raise ValidationError("Password does not meet requirements", detail={"errors": problems})
        self.store.set_password_hash(user.id, hash_password(new_password))
        removed = self.store.delete_sessions(user_id=user.id, except_token=ctx.token)
        self._audit(user, AuditAction.USER_PASSWORD_CHANGED, metadata={"sessions_revoked": removed})
        return removed

    # -- per-request validation ----------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        tenant_hint: Optional[str] = None,
    ) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Missing or invalid authorization header")
        payload = self.codec.verify_token(token, token_type=ACCESS)
        if not payload:
            raise AuthenticationError("Invalid or expired token")
        user = self.store.get_user(payload["user_id"])
        if not user or not user.is_active or user.tenant_id != payload["tenant_id"]:
            raise AuthenticationError("User not found or inactive")
        tenant = self.store.get_tenant(user.tenant_id)
        if not tenant or not tenant.is_active:
            raise AuthenticationError("Tenant account is disabled")
        if tenant_hint and tenant_hint != user.tenant_id:
            self.logger.warning(
                "auth_tenant_mismatch", user_id=user.id, tenant_hint=tenant_hint
            )
            raise AuthenticationError("Token is not valid for this tenant")
        session = self.store.get_session(token)
        if not session or session.user_id != user.id:
            raise AuthenticationError("Session expired or invalidated")
        permissions = sorted(p.value for p in effective_permissions(user.role, user.permissions))
        return AuthContext(
            user=user,
            tenant=tenant,
            session=session,
            token=token,
            permissions=permissions,
        )

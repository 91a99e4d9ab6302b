from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional, Protocol
from urllib.parse import urlencode

from tenantgate.logging import get_logger
from tenantgate.service.audit import AuditAction, AuditSink
from tenantgate.service.auth import AuthService, IssuedSession
from tenantgate.service.email import EmailService
from tenantgate.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from tenantgate.storage.models import MagicLink, Tenant, User

logger = get_logger(__name__)

TOKEN_BYTES = 32

MAGIC_LINK_REQUEST_MESSAGE = "If an account exists with this email, a magic link will be sent"


class MagicLinkStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str, tenant_id: Optional[str] = None) -> Optional[User]: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def create_magic_link(
        self,
        email: str,
        token: str,
        expires_at: datetime,
        *,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> MagicLink: ...

    def get_magic_link(self, token: str) -> Optional[MagicLink]: ...

    def mark_magic_link_used(self, token: str, used_at: datetime) -> bool: ...

    def mark_email_verified(self, user_id: str, verified_at: Optional[datetime] = None) -> None: ...

    def delete_expired_magic_links(self, now: datetime) -> int: ...


class MagicLinkReason(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    USER_DISABLED = "user_disabled"
    TENANT_DISABLED = "tenant_disabled"


_REASON_MESSAGES = {
    MagicLinkReason.NOT_FOUND: "Invalid magic link",
    MagicLinkReason.EXPIRED: "Magic link expired",
    MagicLinkReason.ALREADY_USED: "Magic link already used",
    MagicLinkReason.USER_DISABLED: "User account is disabled",
    MagicLinkReason.TENANT_DISABLED: "Tenant account is disabled",
}


@dataclass(frozen=True)
class MagicLinkValidation:
    valid: bool
    reason: Optional[MagicLinkReason] = None
    user: Optional[User] = None
    link: Optional[MagicLink] = None

    @property
    def message(self) -> Optional[str]:
        return _REASON_MESSAGES.get(self.reason) if self.reason else None


def _rejection(validation: MagicLinkValidation) -> ServiceError:
    message = validation.message or "Invalid magic link"
    detail = {"reason": validation.reason.value if validation.reason else None}
    if validation.reason is MagicLinkReason.ALREADY_USED:
        return ValidationError(message, detail=detail)
    return AuthenticationError(message, detail=detail)


class MagicLinkService:
    """Single-use, time-boxed sign-in links that bypass password state."""

    def __init__(
        self,
        store: MagicLinkStore,
        auth: AuthService,
        email: EmailService,
        *,
        ttl_minutes: int = 15,
        frontend_url: str = "http://localhost:3000",
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.store = store
        self.auth = auth
        self.email = email
        self.ttl = timedelta(minutes=ttl_minutes)
        self.frontend_url = frontend_url.rstrip("/")
        self.audit = audit
        self._clock = clock

    def build_url(self, token: str) -> str:
        return f"{self.frontend_url}/magic-link?{urlencode({'token': token})}"

    def create(self, email: str, tenant_id: Optional[str] = None) -> MagicLink:
        """Persist a fresh link for an active user in an active tenant."""
        user = self.store.get_user_by_email(email, tenant_id)
        if not user:
            raise NotFoundError("User not found")
        if tenant_id and user.tenant_id != tenant_id:
            raise NotFoundError("User not found")
        if not user.is_active:
            raise ForbiddenError("User account is disabled")
        tenant = self.store.get_tenant(user.tenant_id)
        if not tenant or not tenant.is_active:
            raise ForbiddenError("Tenant account is disabled")
        token = secrets.token_hex(TOKEN_BYTES)
        return self.store.create_magic_link(
            user.email,
            token,
            self._clock() + self.ttl,
            tenant_id=user.tenant_id,
            user_id=user.id,
        )

    def validate(self, token: str) -> MagicLinkValidation:
        link = self.store.get_magic_link(token) if token else None
        if link is None:
            return MagicLinkValidation(False, MagicLinkReason.NOT_FOUND)
        if link.expires_at <= self._clock():
            return MagicLinkValidation(False, MagicLinkReason.EXPIRED, link=link)
        if link.used_at is not None:
            return MagicLinkValidation(False, MagicLinkReason.ALREADY_USED, link=link)
        user = self.store.get_user(link.user_id) if link.user_id else None
        if user is None and not link.user_id:
            user = self.store.get_user_by_email(link.email, link.tenant_id)
        if user is None or not user.is_active:
            return MagicLinkValidation(False, MagicLinkReason.USER_DISABLED, link=link)
        tenant = self.store.get_tenant(user.tenant_id)
        if tenant is None or not tenant.is_active:
            return MagicLinkValidation(False, MagicLinkReason.TENANT_DISABLED, link=link)
        return MagicLinkValidation(True, user=user, link=link)

    def mark_used(self, token: str) -> bool:
        return self.store.mark_magic_link_used(token, self._clock())

    async def consume(
        self,
        token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        validation = self.validate(token)
        if not validation.valid or validation.user is None:
            logger.info(
                "magic_link_invalid",
                reason=validation.reason.value if validation.reason else None,
            )
            raise _rejection(validation)
        if not self.mark_used(token):
            # Another request consumed the link between validate and mark
            logger.warning("magic_link_replay_blocked")
            raise _rejection(MagicLinkValidation(False, MagicLinkReason.ALREADY_USED))
        user = validation.user
        if user.email_verified_at is None:
            self.store.mark_email_verified(user.id, self._clock())
        issued = self.auth.issue_session(user)
        if self.audit:
            self.audit.record(
                user.tenant_id,
                user.id,
                AuditAction.USER_LOGIN,
                entity_type="user",
                entity_id=user.id,
                metadata={"method": "magic_link"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return issued

    async def request(
        self,
        email: str,
        tenant_id: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Issue and mail a link when possible; always returns the same message."""
        try:
            link = self.create(email, tenant_id)
        except ServiceError as exc:
            logger.info("magic_link_request_ignored", reason=exc.error_code)
            return MAGIC_LINK_REQUEST_MESSAGE
        tenant = self.store.get_tenant(link.tenant_id) if link.tenant_id else None
        sent = await asyncio.to_thread(
            self.email.send_magic_link,
            link.email,
            self.build_url(link.token),
            tenant_name=tenant.name if tenant else None,
            ttl_minutes=int(self.ttl.total_seconds() // 60),
        )
        if not sent:
            logger.error("magic_link_email_failed", tenant_id=link.tenant_id)
        if self.audit:
            self.audit.record(
                link.tenant_id,
                link.user_id,
                AuditAction.MAGIC_LINK_REQUESTED,
                entity_type="magic_link",
                entity_id=link.id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return MAGIC_LINK_REQUEST_MESSAGE

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_magic_links(self._clock())
        if removed:
            logger.info("magic_links_swept", count=removed)
        return removed

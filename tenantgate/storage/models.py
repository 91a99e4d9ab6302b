from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Tenant:
    id: str
    slug: str
    name: str
    custom_domain: Optional[str] = None
    logo_url: Optional[str] = None
    primary_color: Optional[str] = None
    secondary_color: Optional[str] = None
    plan: str = "free"
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    email: str
    tenant_id: str
    role: str = "CUSTOMER"
    name: Optional[str] = None
    password_hash: Optional[str] = None
    permissions: Optional[List[str]] = None
    is_active: bool = True
    email_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    """Server-side record binding one issued access token to a user."""

    id: str
    user_id: str
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, token: str, ttl: timedelta) -> "Session":
        now = utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            token=token,
            created_at=now,
            expires_at=now + ttl,
        )

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class MagicLink:
    id: str
    email: str
    token: str
    expires_at: datetime
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OAuthAccount:
    id: str
    user_id: str
    provider: str
    provider_account_id: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Invitation:
    """Pending offer for an email address to join a tenant with a fixed role."""

    id: str
    tenant_id: str
    email: str
    role: str
    token: str
    expires_at: datetime
    invited_by: Optional[str] = None
    accepted_at: Optional[datetime] = None
    accepted_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def status(self, now: datetime) -> str:
        if self.accepted_at is not None:
            return "accepted"
        if self.expires_at <= now:
            return "expired"
        return "pending"


@dataclass
class AuditEvent:
    id: str
    tenant_id: Optional[str]
    action: str
    user_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Dict | None = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class EnforcementContext:
    """Request-scoped tenant/user/role binding consumed by scoped store calls."""

    tenant_id: str
    user_id: str
    role: str

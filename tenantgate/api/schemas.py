from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantgate.service.permissions import Role, validate_overrides

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")
_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")
_DOMAIN_PATTERN = re.compile(
    r"^(?=.{4,253}$)([a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$"
)


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_length(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = Field(default=None, max_length=200)
    tenant_slug: str = Field(..., min_length=3, max_length=63)
    tenant_name: str = Field(..., min_length=1, max_length=200)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_length(value)

    @field_validator("tenant_slug")
    @classmethod
    def _validate_slug(cls, value: str) -> str:
        if not _SLUG_PATTERN.match(value):
            raise ValueError(
                "Tenant slug can only contain lowercase letters, numbers, and hyphens"
            )
        return value


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_length(value)


class MagicLinkRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_magic_link_email(cls, value: str) -> str:
        return _validate_email(value)


class MagicLinkVerifyRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class OAuthLinkRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=2048)
    state: str = Field(..., min_length=1, max_length=512)


class AuthTokens(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class TenantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    slug: str
    name: str
    custom_domain: Optional[str] = None
    logo_url: Optional[str] = None
    primary_color: Optional[str] = None
    secondary_color: Optional[str] = None
    plan: str
    is_active: bool


class PublicTenantResponse(BaseModel):
    """Branding fields safe to expose without authentication."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    slug: str
    name: str
    logo_url: Optional[str] = None
    primary_color: Optional[str] = None
    secondary_color: Optional[str] = None


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    tenant_id: str
    role: str
    name: Optional[str] = None
    permissions: Optional[List[str]] = None
    is_active: bool
    email_verified_at: Optional[datetime] = None
    created_at: datetime


class ProfileResponse(UserResponse):
    effective_permissions: List[str] = Field(default_factory=list)
    tenant: TenantResponse


class OAuthAccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider: str
    provider_account_id: str
    scope: Optional[str] = None
    created_at: datetime


class UpdateUserRoleRequest(BaseModel):
    role: str

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: str) -> str:
        parsed = Role.parse(value)
        if parsed is None:
            raise ValueError(f"role must be one of: {', '.join(r.name for r in Role)}")
        return parsed.name


class UpdateUserRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    permissions: Optional[List[str]] = Field(default=None, max_length=64)

    @field_validator("permissions")
    @classmethod
    def _validate_permissions(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        return validate_overrides(value)


class UpdateTenantRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    logo_url: Optional[str] = Field(default=None, max_length=2048)
    primary_color: Optional[str] = None
    secondary_color: Optional[str] = None
    custom_domain: Optional[str] = Field(default=None, max_length=253)
    plan: Optional[str] = Field(default=None, max_length=64)
    is_active: Optional[bool] = None

    @field_validator("primary_color", "secondary_color")
    @classmethod
    def _validate_color(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not _COLOR_PATTERN.match(value):
            raise ValueError("color must be a hex value like #1A2B3C")
        return value

    @field_validator("logo_url")
    @classmethod
    def _validate_logo_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not value.startswith(("https://", "http://")):
            raise ValueError("logo_url must be an http(s) URL")
        return value

    @field_validator("custom_domain")
    @classmethod
    def _validate_domain(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = value.strip().lower().rstrip(".")
        if not _DOMAIN_PATTERN.match(normalized):
            raise ValueError("custom_domain must be a valid host name")
        return normalized


class CreateUserRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = Field(default=None, max_length=200)
    role: str = "CUSTOMER"

    @field_validator("email")
    @classmethod
    def _validate_create_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_length(value)

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: str) -> str:
        parsed = Role.parse(value)
        if parsed is None:
            raise ValueError(f"role must be one of: {', '.join(r.name for r in Role)}")
        return parsed.name


class CreateInvitationRequest(BaseModel):
    email: str
    role: str = "STAFF"
    expires_in_hours: Optional[int] = Field(default=None, ge=1, le=168)

    @field_validator("email")
    @classmethod
    def _validate_invitation_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: str) -> str:
        parsed = Role.parse(value)
        if parsed is None or parsed is Role.OWNER:
            raise ValueError("role must be one of: ADMIN, STAFF, CUSTOMER")
        return parsed.name


class AcceptInvitationRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_length(value)


class InvitationResponse(BaseModel):
    id: str
    email: str
    role: str
    status: str
    invited_by: Optional[str] = None
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    accepted_by: Optional[str] = None
    created_at: datetime


class PublicInvitationResponse(BaseModel):
    """What the accept page may show to whoever holds the token."""

    email: str
    role: str
    expires_at: datetime
    tenant: PublicTenantResponse

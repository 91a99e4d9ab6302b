from __future__ import annotations

import math
import time
from dataclasses import asdict, dataclass
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from tenantgate.api.schemas import (
    AcceptInvitationRequest,
    CreateInvitationRequest,
    CreateUserRequest,
    Envelope,
    InvitationResponse,
    LoginRequest,
    MagicLinkRequest,
    MagicLinkVerifyRequest,
    OAuthAccountResponse,
    OAuthLinkRequest,
    PasswordChangeRequest,
    ProfileResponse,
    PublicInvitationResponse,
    PublicTenantResponse,
    RegisterRequest,
    TenantResponse,
    TokenRefreshRequest,
    UpdateTenantRequest,
    UpdateUserRequest,
    UpdateUserRoleRequest,
    UserResponse,
)
from tenantgate.logging import get_correlation_id, get_logger
from tenantgate.service.auth import AuthContext, IssuedSession
from tenantgate.service.errors import ForbiddenError, RateLimitedError
from tenantgate.service.permissions import Permission, has_permission
from tenantgate.service.rate_limit import RateLimitPolicy
from tenantgate.service.rls import establish
from tenantgate.service.runtime import Runtime, get_runtime
from tenantgate.storage.models import EnforcementContext, Invitation, Tenant, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _envelope(data: Any) -> Envelope:
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",", 1)[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    policy: RateLimitPolicy,
    *,
    request: Optional[Request] = None,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Count one hit against ``key`` and raise ``RateLimitedError`` once over the limit.

    The state is also kept on ``request.state`` so error responses carry the
    same headers.
    """
    decision = await runtime.rate_limiter.check(key, policy)
    reset_seconds = max(0, math.ceil(decision.reset_at - time.time()))
    info = RateLimitInfo(decision.limit, decision.remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if request is not None:
        request.state.rate_limit = info
    if not decision.allowed:
        raise RateLimitedError(policy.message, retry_after=decision.retry_after_seconds)
    return info


async def _enforce_auth_limit(request: Request, response: Response) -> RateLimitInfo:
    runtime = get_runtime()
    return await _enforce_rate_limit(
        runtime, _client_ip(request), runtime.auth_limit, request=request, response=response
    )


# -- dependencies -----------------------------------------------------------


async def get_tenant(
    request: Request,
    x_tenant_id: Optional[str] = Header(
        None, convert_underscores=False, alias="X-Tenant-ID"
    ),
) -> Optional[Tenant]:
    runtime = get_runtime()
    return runtime.tenants.resolve(request.headers.get("host"), x_tenant_id)


async def get_user(
    authorization: Optional[str] = Header(None),
    tenant: Optional[Tenant] = Depends(get_tenant),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(
        authorization, tenant_hint=tenant.id if tenant else None
    )


@dataclass
class Principal:
    """An authenticated caller with its row-level security context bound."""

    auth: AuthContext
    rls: EnforcementContext


async def get_principal(
    request: Request,
    response: Response,
    auth: AuthContext = Depends(get_user),
) -> Principal:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, _client_ip(request), runtime.api_limit, request=request, response=response
    )
    ctx = establish(runtime.store, auth.tenant_id, auth.user_id, auth.role)
    return Principal(auth=auth, rls=ctx)


def require_permission(permission: Permission):
    """Dependency factory that rejects callers lacking ``permission``."""

    async def _check(principal: Principal = Depends(get_principal)) -> Principal:
        user = principal.auth.user
        if not has_permission(user.role, user.permissions, permission):
            logger.warning(
                "permission_denied",
                user_id=user.id,
                tenant_id=user.tenant_id,
                permission=permission.value,
            )
            raise ForbiddenError(
                "Insufficient permissions", detail={"required": permission.value}
            )
        return principal

    return _check


# -- serializers -------------------------------------------------------------


def _user_to_response(user: User) -> UserResponse:
    return UserResponse.model_validate(user)


def _invitation_to_response(invitation: Invitation, status: str) -> InvitationResponse:
    return InvitationResponse.model_validate({**asdict(invitation), "status": status})


def _session_payload(issued: IssuedSession, tenant: Optional[Tenant] = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "user": _user_to_response(issued.user),
        "session_expires_at": issued.session.expires_at,
        **issued.tokens,
    }
    if tenant is not None:
        payload["tenant"] = TenantResponse.model_validate(tenant)
    return payload


# -- auth --------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    _: RateLimitInfo = Depends(_enforce_auth_limit),
):
    """Create a tenant and its OWNER account, returning a signed-in session."""
    runtime = get_runtime()
    tenant, issued = await runtime.auth.register(
        body.email,
        body.password,
        tenant_slug=body.tenant_slug,
        tenant_name=body.tenant_name,
        name=body.name,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return _envelope(_session_payload(issued, tenant))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    tenant: Optional[Tenant] = Depends(get_tenant),
    _: RateLimitInfo = Depends(_enforce_auth_limit),
):
    """Authenticate with email and password.

    The resolved tenant, when present, narrows the email lookup to that tenant.
    """
    runtime = get_runtime()
    issued = await runtime.auth.login(
        body.email,
        body.password,
        tenant_id=tenant.id if tenant else None,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return _envelope(_session_payload(issued))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    issued = await runtime.auth.refresh(body.refresh_token)
    return _envelope(_session_payload(issued))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(auth: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(auth)
    return _envelope({"message": "Logged out successfully"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(auth: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    removed = await runtime.auth.logout_all(auth.user_id)
    return _envelope({"message": "Logged out from all devices", "sessions_revoked": removed})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(auth: AuthContext = Depends(get_user)):
    profile = ProfileResponse(
        **_user_to_response(auth.user).model_dump(),
        effective_permissions=auth.permissions,
        tenant=TenantResponse.model_validate(auth.tenant),
    )
    return _envelope(profile)


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    auth: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    removed = await runtime.auth.change_password(
        auth, body.current_password, body.new_password
    )
    return _envelope({"message": "Password changed successfully", "sessions_revoked": removed})


# -- magic links ---------------------------------------------------------------


@router.post("/auth/magic-link/request", response_model=Envelope, tags=["auth"])
async def request_magic_link(
    body: MagicLinkRequest,
    request: Request,
    tenant: Optional[Tenant] = Depends(get_tenant),
    _: RateLimitInfo = Depends(_enforce_auth_limit),
):
    """Send a sign-in link. The response never reveals whether the email exists."""
    runtime = get_runtime()
    message = await runtime.magic_links.request(
        body.email,
        tenant.id if tenant else None,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return _envelope({"message": message})


async def _consume_magic_link(token: str, request: Request) -> Envelope:
    runtime = get_runtime()
    issued = await runtime.magic_links.consume(
        token,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return _envelope(_session_payload(issued))


@router.post("/auth/magic-link/verify", response_model=Envelope, tags=["auth"])
async def verify_magic_link(
    body: MagicLinkVerifyRequest,
    request: Request,
    _: RateLimitInfo = Depends(_enforce_auth_limit),
):
    return await _consume_magic_link(body.token, request)


@router.get("/auth/magic-link/verify", response_model=Envelope, tags=["auth"])
async def verify_magic_link_query(
    request: Request,
    token: str = Query(..., min_length=1, max_length=256),
    _: RateLimitInfo = Depends(_enforce_auth_limit),
):
    return await _consume_magic_link(token, request)


# -- oauth ---------------------------------------------------------------------


@router.get("/auth/oauth/accounts", response_model=Envelope, tags=["auth"])
async def list_oauth_accounts(auth: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    accounts = runtime.oauth.list_accounts(auth.user_id)
    return _envelope([OAuthAccountResponse.model_validate(a) for a in accounts])


@router.get("/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(
    provider: str = Path(..., max_length=32, description="OAuth provider (google, github)"),
    tenant: Optional[Tenant] = Depends(get_tenant),
):
    """Return the provider authorization URL; the resolved tenant is bound to the state."""
    runtime = get_runtime()
    start = await runtime.oauth.start(provider, tenant_id=tenant.id if tenant else None)
    return _envelope(start)


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    request: Request,
    provider: str = Path(..., max_length=32),
    code: str = Query(..., min_length=1, max_length=2048),
    state: str = Query(..., min_length=1, max_length=512),
    _: RateLimitInfo = Depends(_enforce_auth_limit),
):
    runtime = get_runtime()
    issued = await runtime.oauth.complete(
        provider,
        code,
        state,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return _envelope(_session_payload(issued))


@router.post("/auth/oauth/{provider}/link/start", response_model=Envelope, tags=["auth"])
async def oauth_link_start(
    provider: str = Path(..., max_length=32),
    auth: AuthContext = Depends(get_user),
):
    """Begin linking a provider identity to the signed-in account."""
    runtime = get_runtime()
    start = await runtime.oauth.start(
        provider, tenant_id=auth.tenant_id, link_user_id=auth.user_id
    )
    return _envelope(start)


@router.post("/auth/oauth/{provider}/link", response_model=Envelope, tags=["auth"])
async def oauth_link(
    body: OAuthLinkRequest,
    provider: str = Path(..., max_length=32),
    auth: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    account = await runtime.oauth.link(auth.user, provider, body.code, body.state)
    return _envelope(OAuthAccountResponse.model_validate(account))


@router.delete("/auth/oauth/{provider}", response_model=Envelope, tags=["auth"])
async def oauth_unlink(
    provider: str = Path(..., max_length=32),
    auth: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.oauth.unlink(auth.user_id, provider)
    return _envelope({"message": f"{provider} account unlinked", "provider": provider})


# -- users ---------------------------------------------------------------------


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(principal: Principal = Depends(require_permission(Permission.USERS_READ))):
    runtime = get_runtime()
    users = runtime.users.list_users(principal.auth, principal.rls)
    return _envelope([_user_to_response(u) for u in users])


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(
    body: CreateUserRequest,
    principal: Principal = Depends(require_permission(Permission.USERS_CREATE)),
):
    runtime = get_runtime()
    user = runtime.users.create_user(
        principal.auth,
        principal.rls,
        body.email,
        body.password,
        role=body.role,
        name=body.name,
    )
    return _envelope(_user_to_response(user))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_by_id(
    user_id: str = Path(..., max_length=128),
    principal: Principal = Depends(require_permission(Permission.USERS_READ)),
):
    runtime = get_runtime()
    user = runtime.users.get_user(principal.auth, principal.rls, user_id)
    return _envelope(_user_to_response(user))


@router.patch("/users/{user_id}/role", response_model=Envelope, tags=["users"])
async def update_user_role(
    body: UpdateUserRoleRequest,
    user_id: str = Path(..., max_length=128),
    principal: Principal = Depends(require_permission(Permission.USERS_UPDATE)),
):
    runtime = get_runtime()
    user = runtime.users.change_role(principal.auth, principal.rls, user_id, body.role)
    return _envelope(_user_to_response(user))


@router.patch("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    body: UpdateUserRequest,
    user_id: str = Path(..., max_length=128),
    principal: Principal = Depends(require_permission(Permission.USERS_UPDATE)),
):
    runtime = get_runtime()
    user = runtime.users.update_user(
        principal.auth,
        principal.rls,
        user_id,
        name=body.name,
        permissions=body.permissions,
    )
    return _envelope(_user_to_response(user))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(
    user_id: str = Path(..., max_length=128),
    principal: Principal = Depends(require_permission(Permission.USERS_DELETE)),
):
    runtime = get_runtime()
    runtime.users.deactivate_user(principal.auth, principal.rls, user_id)
    return _envelope({"message": "User deleted successfully", "user_id": user_id})


# -- invitations ---------------------------------------------------------------


@router.get("/invitations", response_model=Envelope, tags=["invitations"])
async def list_invitations(
    status: Optional[str] = Query(None, pattern="^(pending|accepted|expired)$"),
    principal: Principal = Depends(require_permission(Permission.USERS_INVITE)),
):
    runtime = get_runtime()
    invitations = runtime.invitations.list_invitations(principal.auth, principal.rls, status)
    return _envelope(
        [
            _invitation_to_response(i, runtime.invitations.status_of(i))
            for i in invitations
        ]
    )


@router.post("/invitations", response_model=Envelope, status_code=201, tags=["invitations"])
async def create_invitation(
    body: CreateInvitationRequest,
    principal: Principal = Depends(require_permission(Permission.USERS_INVITE)),
):
    """Invite an email address to the caller's tenant and mail the accept link."""
    runtime = get_runtime()
    issued = await runtime.invitations.create(
        principal.auth,
        principal.rls,
        body.email,
        role=body.role,
        expires_in_hours=body.expires_in_hours,
    )
    payload = _invitation_to_response(issued.invitation, "pending").model_dump()
    payload["invitation_url"] = issued.url
    return _envelope(payload)


@router.get("/invitations/{token}", response_model=Envelope, tags=["invitations"])
async def get_invitation(token: str = Path(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    invitation, tenant = runtime.invitations.describe(token)
    return _envelope(
        PublicInvitationResponse(
            email=invitation.email,
            role=invitation.role,
            expires_at=invitation.expires_at,
            tenant=PublicTenantResponse.model_validate(tenant),
        )
    )


@router.post("/invitations/{token}/accept", response_model=Envelope, tags=["invitations"])
async def accept_invitation(
    body: AcceptInvitationRequest,
    request: Request,
    token: str = Path(..., min_length=1, max_length=256),
    _: RateLimitInfo = Depends(_enforce_auth_limit),
):
    """Create the invited account and sign it in."""
    runtime = get_runtime()
    issued = await runtime.invitations.accept(
        token,
        body.password,
        name=body.name,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return _envelope(_session_payload(issued))


@router.delete("/invitations/{invitation_id}", response_model=Envelope, tags=["invitations"])
async def cancel_invitation(
    invitation_id: str = Path(..., max_length=128),
    principal: Principal = Depends(require_permission(Permission.USERS_INVITE)),
):
    runtime = get_runtime()
    runtime.invitations.cancel(principal.auth, principal.rls, invitation_id)
    return _envelope({"message": "Invitation cancelled", "invitation_id": invitation_id})


# -- tenants -------------------------------------------------------------------


@router.get("/tenants/current", response_model=Envelope, tags=["tenants"])
async def get_current_tenant(tenant: Optional[Tenant] = Depends(get_tenant)):
    if tenant is None:
        raise _http_error("not_found", "Tenant not found", status_code=404)
    return _envelope(PublicTenantResponse.model_validate(tenant))


@router.patch("/tenants/current", response_model=Envelope, tags=["tenants"])
async def update_current_tenant(
    body: UpdateTenantRequest,
    principal: Principal = Depends(require_permission(Permission.TENANTS_UPDATE)),
):
    runtime = get_runtime()
    fields = body.model_dump(exclude_unset=True)
    tenant = runtime.tenant_admin.update(principal.auth.user_id, principal.rls, fields)
    return _envelope(TenantResponse.model_validate(tenant))


@router.delete("/tenants/current", response_model=Envelope, tags=["tenants"])
async def deactivate_current_tenant(
    principal: Principal = Depends(require_permission(Permission.TENANTS_UPDATE)),
):
    runtime = get_runtime()
    tenant = runtime.tenant_admin.deactivate(
        principal.auth.user_id, principal.auth.role, principal.rls
    )
    return _envelope({"message": "Tenant deactivated", "tenant_id": tenant.id})


@router.get("/tenants/{slug}", response_model=Envelope, tags=["tenants"])
async def get_tenant_by_slug(slug: str = Path(..., min_length=1, max_length=63)):
    runtime = get_runtime()
    tenant = runtime.tenant_admin.get_public(slug)
    return _envelope(PublicTenantResponse.model_validate(tenant))

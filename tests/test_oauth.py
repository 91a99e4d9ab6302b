import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from tenantgate.config import Settings
from tenantgate.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    OAuthExchangeError,
    ValidationError,
)
from tenantgate.service.oauth import OAuthService


def _settings():
    return Settings(
        jwt_secret="unit-test-secret-for-oauth-flows-0123456789",
        oauth_google_client_id="google-client",
        oauth_google_client_secret="google-secret",
        oauth_github_client_id="github-client",
        oauth_github_client_secret="github-secret",
        oauth_redirect_uri="https://app.example.com/auth/{provider}/callback",
    )


def _google_transport(userinfo, *, token_status=200, calls=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        if request.url.host == "oauth2.googleapis.com":
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant"})
            return httpx.Response(
                200,
                json={
                    "access_token": "provider-access",
                    "refresh_token": "provider-refresh",
                    "expires_in": 3600,
                    "token_type": "Bearer",
                    "scope": "openid email profile",
                },
            )
        if request.url.host == "www.googleapis.com":
            assert request.headers["Authorization"] == "Bearer provider-access"
            return httpx.Response(200, json=userinfo)
        return httpx.Response(404)

    return httpx.MockTransport(handler)


GOOGLE_USER = {
    "id": "g-123",
    "email": "Person@Acme.test",
    "verified_email": True,
    "name": "Pat Person",
}


def _service(runtime, transport):
    return OAuthService(
        runtime.store,
        runtime.auth,
        _settings(),
        audit=runtime.audit,
        transport=transport,
    )


async def _tenant(runtime, slug="acme"):
    tenant, issued = await runtime.auth.register(
        f"owner@{slug}.test", "correct-horse-1", tenant_slug=slug, tenant_name=slug.title()
    )
    return tenant, issued.user


async def test_start_builds_authorization_url(runtime):
    service = _service(runtime, _google_transport(GOOGLE_USER))
    start = await service.start("google", tenant_id="t-1")
    parsed = urlparse(start["authorization_url"])
    params = parse_qs(parsed.query)
    assert parsed.netloc == "accounts.google.com"
    assert params["client_id"] == ["google-client"]
    assert params["state"] == [start["state"]]
    assert params["redirect_uri"] == ["https://app.example.com/auth/google/callback"]
    assert params["access_type"] == ["offline"]


async def test_start_rejects_unknown_or_unconfigured_provider(runtime):
    service = _service(runtime, _google_transport(GOOGLE_USER))
    with pytest.raises(BadRequestError):
        await service.start("myspace")
    unconfigured = OAuthService(
        runtime.store, runtime.auth, Settings(jwt_secret="x" * 40, oauth_redirect_uri="https://a.test/cb")
    )
    with pytest.raises(BadRequestError):
        await unconfigured.start("google")


async def test_complete_creates_staff_user_in_state_tenant(runtime):
    tenant, _ = await _tenant(runtime)
    service = _service(runtime, _google_transport(GOOGLE_USER))
    start = await service.start("google", tenant_id=tenant.id)

    issued = await service.complete("google", "auth-code", start["state"])
    assert issued.user.email == "person@acme.test"
    assert issued.user.role == "STAFF"
    assert issued.user.tenant_id == tenant.id
    assert issued.user.email_verified_at is not None
    account = runtime.store.get_oauth_account("google", "g-123")
    assert account.user_id == issued.user.id


async def test_repeat_sign_in_reuses_linked_account(runtime):
    tenant, _ = await _tenant(runtime)
    service = _service(runtime, _google_transport(GOOGLE_USER))
    first_start = await service.start("google", tenant_id=tenant.id)
    first = await service.complete("google", "auth-code", first_start["state"])

    second_start = await service.start("google", tenant_id=tenant.id)
    second = await service.complete("google", "auth-code-2", second_start["state"])

    assert second.user.id == first.user.id
    assert [a.provider_account_id for a in runtime.store.list_oauth_accounts(first.user.id)] == [
        "g-123"
    ]
    members = [u for u in runtime.store.users.values() if u.email == "person@acme.test"]
    assert len(members) == 1
    assert second.tokens["access_token"] != first.tokens["access_token"]


async def test_provider_tokens_are_encrypted_at_rest(runtime):
    tenant, _ = await _tenant(runtime)
    service = _service(runtime, _google_transport(GOOGLE_USER))
    start = await service.start("google", tenant_id=tenant.id)
    await service.complete("google", "auth-code", start["state"])
    account = runtime.store.get_oauth_account("google", "g-123")
    assert account.access_token != "provider-access"
    assert service.decrypt_token(account.access_token) == "provider-access"
    assert service.decrypt_token(account.refresh_token) == "provider-refresh"


async def test_state_is_single_use(runtime):
    tenant, _ = await _tenant(runtime)
    service = _service(runtime, _google_transport(GOOGLE_USER))
    start = await service.start("google", tenant_id=tenant.id)
    await service.complete("google", "auth-code", start["state"])
    with pytest.raises(AuthenticationError, match="OAuth state"):
        await service.complete("google", "auth-code", start["state"])


async def test_state_bound_to_provider(runtime):
    service = _service(runtime, _google_transport(GOOGLE_USER))
    start = await service.start("google")
    with pytest.raises(AuthenticationError):
        await service.complete("github", "auth-code", start["state"])


async def test_verified_email_links_existing_user(runtime):
    tenant, owner = await _tenant(runtime)
    service = _service(runtime, _google_transport({**GOOGLE_USER, "email": owner.email}))
    start = await service.start("google", tenant_id=tenant.id)
    issued = await service.complete("google", "auth-code", start["state"])
    assert issued.user.id == owner.id
    assert issued.user.role == "OWNER"


async def test_unverified_email_does_not_link_existing_user(runtime):
    tenant, owner = await _tenant(runtime)
    identity = {**GOOGLE_USER, "email": owner.email, "verified_email": False}
    service = _service(runtime, _google_transport(identity))
    start = await service.start("google", tenant_id=tenant.id)
    with pytest.raises(ConflictError):
        await service.complete("google", "auth-code", start["state"])
    assert runtime.store.get_oauth_account("google", "g-123") is None


async def test_new_user_requires_tenant(runtime):
    service = _service(runtime, _google_transport(GOOGLE_USER))
    start = await service.start("google")
    with pytest.raises(ValidationError, match="Tenant ID is required"):
        await service.complete("google", "auth-code", start["state"])


async def test_provider_error_status_fails_exchange(runtime):
    tenant, _ = await _tenant(runtime)
    service = _service(runtime, _google_transport(GOOGLE_USER, token_status=400))
    start = await service.start("google", tenant_id=tenant.id)
    with pytest.raises(OAuthExchangeError):
        await service.complete("google", "bad-code", start["state"])


async def test_github_falls_back_to_primary_verified_email(runtime):
    tenant, _ = await _tenant(runtime)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/login/oauth/access_token":
            body = parse_qs(request.content.decode())
            assert body["client_secret"] == ["github-secret"]
            return httpx.Response(200, json={"access_token": "gh-token", "token_type": "bearer"})
        if request.url.path == "/user":
            return httpx.Response(200, json={"id": 42, "login": "octo", "email": None})
        if request.url.path == "/user/emails":
            return httpx.Response(
                200,
                content=json.dumps(
                    [
                        {"email": "old@octo.test", "primary": False, "verified": True},
                        {"email": "octo@octo.test", "primary": True, "verified": True},
                    ]
                ),
                headers={"content-type": "application/json"},
            )
        return httpx.Response(404)

    service = _service(runtime, httpx.MockTransport(handler))
    start = await service.start("github", tenant_id=tenant.id)
    issued = await service.complete("github", "gh-code", start["state"])
    assert issued.user.email == "octo@octo.test"
    assert issued.user.name == "octo"
    assert runtime.store.get_oauth_account("github", "42") is not None


async def test_link_and_conflicting_link(runtime):
    tenant, owner = await _tenant(runtime)
    other_tenant, other_owner = await _tenant(runtime, "globex")
    service = _service(runtime, _google_transport(GOOGLE_USER))

    start = await service.start("google", tenant_id=tenant.id, link_user_id=owner.id)
    account = await service.link(owner, "google", "auth-code", start["state"])
    assert account.user_id == owner.id

    start = await service.start("google", tenant_id=other_tenant.id, link_user_id=other_owner.id)
    with pytest.raises(ConflictError):
        await service.link(other_owner, "google", "auth-code", start["state"])


async def test_link_state_cannot_be_used_for_sign_in(runtime):
    tenant, owner = await _tenant(runtime)
    service = _service(runtime, _google_transport(GOOGLE_USER))
    start = await service.start("google", tenant_id=tenant.id, link_user_id=owner.id)
    with pytest.raises(AuthenticationError):
        await service.complete("google", "auth-code", start["state"])


async def test_unlink_last_method_rejected(runtime):
    tenant, _ = await _tenant(runtime)
    service = _service(runtime, _google_transport(GOOGLE_USER))
    start = await service.start("google", tenant_id=tenant.id)
    issued = await service.complete("google", "auth-code", start["state"])

    with pytest.raises(ValidationError, match="last authentication method"):
        service.unlink(issued.user.id, "google")
    assert len(service.list_accounts(issued.user.id)) == 1


async def test_unlink_allowed_when_password_set(runtime):
    tenant, owner = await _tenant(runtime)
    service = _service(runtime, _google_transport({**GOOGLE_USER, "email": owner.email}))
    start = await service.start("google", tenant_id=tenant.id)
    await service.complete("google", "auth-code", start["state"])
    assert service.unlink(owner.id, "google") == 1
    assert service.list_accounts(owner.id) == []

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from tenantgate.service.audit import AuditAction
from tenantgate.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tenantgate.service.invitations import InvitationService
from tenantgate.storage.models import EnforcementContext


class FakeClock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self):
        return self.now


async def _setup(runtime):
    tenant, issued = await runtime.auth.register(
        "owner@acme.test", "correct-horse-1", tenant_slug="acme", tenant_name="Acme"
    )
    admin = runtime.store.create_user(
        "admin@acme.test", tenant.id, role="ADMIN", name="Ada", password_hash="x"
    )
    return tenant, issued.user, admin


async def _actor(runtime, user):
    issued = runtime.auth.issue_session(user)
    auth = await runtime.auth.authenticate(f"Bearer {issued.tokens['access_token']}")
    ctx = EnforcementContext(tenant_id=user.tenant_id, user_id=user.id, role=user.role)
    return auth, ctx


def _service(runtime, clock):
    return InvitationService(
        runtime.store,
        runtime.auth,
        runtime.email,
        frontend_url="https://app.example.com/",
        audit=runtime.audit,
        clock=clock,
    )


async def test_create_sends_invite_link_and_audits(runtime):
    tenant, owner, admin = await _setup(runtime)
    actor, ctx = await _actor(runtime, admin)
    with patch.object(runtime.email, "send_invitation", return_value=True) as send:
        issued = await runtime.invitations.create(actor, ctx, "new@acme.test", role="customer")
    invitation = issued.invitation
    assert invitation.role == "CUSTOMER"
    assert invitation.invited_by == admin.id
    assert len(invitation.token) == 64
    assert issued.url.endswith(f"/invite?token={invitation.token}")
    assert send.call_args[0] == ("new@acme.test", issued.url)
    assert send.call_args[1]["tenant_name"] == "Acme"
    assert send.call_args[1]["inviter_name"] == "Ada"
    expected = invitation.created_at + timedelta(hours=48)
    assert abs((invitation.expires_at - expected).total_seconds()) < 5
    event = next(
        e for e in runtime.store.audit_events if e.action == AuditAction.INVITATION_CREATED
    )
    assert event.entity_id == invitation.id


async def test_create_respects_role_hierarchy(runtime):
    tenant, owner, admin = await _setup(runtime)
    actor, ctx = await _actor(runtime, admin)
    with pytest.raises(ForbiddenError, match="Cannot invite user with higher role"):
        await runtime.invitations.create(actor, ctx, "peer@acme.test", role="ADMIN")
    with pytest.raises(ValidationError, match="Invalid role"):
        await runtime.invitations.create(actor, ctx, "boss@acme.test", role="OWNER")

    actor, ctx = await _actor(runtime, owner)
    with patch.object(runtime.email, "send_invitation", return_value=True):
        issued = await runtime.invitations.create(actor, ctx, "peer@acme.test", role="ADMIN")
    assert issued.invitation.role == "ADMIN"


async def test_create_rejects_existing_member_and_duplicate_pending(runtime):
    tenant, owner, admin = await _setup(runtime)
    actor, ctx = await _actor(runtime, owner)
    with pytest.raises(ConflictError, match="User already exists in this tenant"):
        await runtime.invitations.create(actor, ctx, "admin@acme.test")
    with patch.object(runtime.email, "send_invitation", return_value=True):
        await runtime.invitations.create(actor, ctx, "new@acme.test")
        with pytest.raises(ConflictError, match="Pending invitation already exists"):
            await runtime.invitations.create(actor, ctx, "NEW@acme.test")


async def test_create_rejects_lifetime_out_of_range(runtime):
    tenant, owner, admin = await _setup(runtime)
    actor, ctx = await _actor(runtime, owner)
    with pytest.raises(ValidationError):
        await runtime.invitations.create(actor, ctx, "new@acme.test", expires_in_hours=169)


async def test_create_logs_email_failure(runtime):
    tenant, owner, admin = await _setup(runtime)
    actor, ctx = await _actor(runtime, owner)
    with patch.object(runtime.email, "send_invitation", return_value=False):
        with patch("tenantgate.service.invitations.logger") as mock_logger:
            issued = await runtime.invitations.create(actor, ctx, "new@acme.test")
    assert mock_logger.error.call_args[0][0] == "invitation_email_failed"
    assert runtime.store.get_invitation_by_token(issued.invitation.token) is not None


async def test_accept_creates_user_with_invited_role(runtime):
    tenant, owner, admin = await _setup(runtime)
    actor, ctx = await _actor(runtime, owner)
    with patch.object(runtime.email, "send_invitation", return_value=True):
        issued = await runtime.invitations.create(actor, ctx, "new@acme.test", role="ADMIN")
    token = issued.invitation.token

    session = await runtime.invitations.accept(token, "correct-horse-2", name="Nia")
    user = session.user
    assert user.email == "new@acme.test"
    assert user.role == "ADMIN"
    assert user.tenant_id == tenant.id
    assert user.email_verified_at is not None
    assert session.tokens["access_token"]

    stored = runtime.store.get_invitation_by_token(token)
    assert stored.accepted_by == user.id
    assert runtime.invitations.status_of(stored) == "accepted"
    event = next(
        e for e in runtime.store.audit_events if e.action == AuditAction.INVITATION_ACCEPTED
    )
    assert event.user_id == user.id

    with pytest.raises(ValidationError, match="already been accepted"):
        await runtime.invitations.accept(token, "correct-horse-2", name="Nia")


async def test_accept_rejects_expired_unknown_and_inactive_tenant(runtime):
    tenant, owner, admin = await _setup(runtime)
    clock = FakeClock()
    service = _service(runtime, clock)
    actor, ctx = await _actor(runtime, owner)
    with patch.object(runtime.email, "send_invitation", return_value=True):
        issued = await service.create(actor, ctx, "new@acme.test", expires_in_hours=1)
    token = issued.invitation.token

    with pytest.raises(NotFoundError):
        service.describe("nope")

    runtime.store.tenants[tenant.id].is_active = False
    with pytest.raises(ForbiddenError, match="Tenant is inactive"):
        service.describe(token)
    runtime.store.tenants[tenant.id].is_active = True

    clock.now += timedelta(hours=2)
    with pytest.raises(ValidationError, match="Invitation has expired"):
        await service.accept(token, "correct-horse-2", name="Nia")
    assert runtime.store.get_user_by_email("new@acme.test", tenant.id) is None


async def test_accept_rejects_weak_password(runtime):
    tenant, owner, admin = await _setup(runtime)
    actor, ctx = await _actor(runtime, owner)
    with patch.object(runtime.email, "send_invitation", return_value=True):
        issued = await runtime.invitations.create(actor, ctx, "new@acme.test")
    with pytest.raises(ValidationError, match="Password does not meet requirements"):
        await runtime.invitations.accept(issued.invitation.token, "12345678", name="Nia")
    assert runtime.invitations.status_of(
        runtime.store.get_invitation_by_token(issued.invitation.token)
    ) == "pending"


async def test_repeated_accepts_create_one_user(runtime):
    tenant, owner, admin = await _setup(runtime)
    actor, ctx = await _actor(runtime, owner)
    with patch.object(runtime.email, "send_invitation", return_value=True):
        issued = await runtime.invitations.create(actor, ctx, "new@acme.test")
    token = issued.invitation.token

    results = await asyncio.gather(
        *(runtime.invitations.accept(token, "correct-horse-2", name="Nia") for _ in range(4)),
        return_exceptions=True,
    )
    winners = [r for r in results if not isinstance(r, Exception)]
    assert len(winners) == 1
    assert all(isinstance(r, ValidationError) for r in results if isinstance(r, Exception))
    members = [u for u in runtime.store.users.values() if u.email == "new@acme.test"]
    assert len(members) == 1


async def test_list_filters_by_status(runtime):
    tenant, owner, admin = await _setup(runtime)
    clock = FakeClock()
    service = _service(runtime, clock)
    actor, ctx = await _actor(runtime, owner)
    with patch.object(runtime.email, "send_invitation", return_value=True):
        short = await service.create(actor, ctx, "short@acme.test", expires_in_hours=1)
        await service.create(actor, ctx, "long@acme.test", expires_in_hours=48)
    clock.now += timedelta(hours=2)

    assert [i.email for i in service.list_invitations(actor, ctx, "expired")] == [
        short.invitation.email
    ]
    assert [i.email for i in service.list_invitations(actor, ctx, "pending")] == [
        "long@acme.test"
    ]
    assert len(service.list_invitations(actor, ctx)) == 2
    with pytest.raises(ValidationError):
        service.list_invitations(actor, ctx, "bogus")


async def test_list_and_cancel_are_tenant_scoped(runtime):
    tenant, owner, admin = await _setup(runtime)
    _, other = await runtime.auth.register(
        "owner@globex.test", "correct-horse-1", tenant_slug="globex", tenant_name="Globex"
    )
    actor, ctx = await _actor(runtime, owner)
    with patch.object(runtime.email, "send_invitation", return_value=True):
        issued = await runtime.invitations.create(actor, ctx, "new@acme.test")

    other_actor, other_ctx = await _actor(runtime, other.user)
    assert runtime.invitations.list_invitations(other_actor, other_ctx) == []
    with pytest.raises(NotFoundError):
        runtime.invitations.cancel(other_actor, other_ctx, issued.invitation.id)

    runtime.invitations.cancel(actor, ctx, issued.invitation.id)
    assert runtime.store.get_invitation_by_token(issued.invitation.token) is None
    assert any(e.action == AuditAction.INVITATION_CANCELLED for e in runtime.store.audit_events)


async def test_cannot_cancel_accepted_invitation(runtime):
    tenant, owner, admin = await _setup(runtime)
    actor, ctx = await _actor(runtime, owner)
    with patch.object(runtime.email, "send_invitation", return_value=True):
        issued = await runtime.invitations.create(actor, ctx, "new@acme.test")
    await runtime.invitations.accept(issued.invitation.token, "correct-horse-2", name="Nia")
    with pytest.raises(ValidationError, match="Cannot delete accepted invitation"):
        runtime.invitations.cancel(actor, ctx, issued.invitation.id)

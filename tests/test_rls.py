from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from tenantgate import app as app_module
from tenantgate.service.errors import EnforcementContextError
from tenantgate.service.rls import establish
from tenantgate.storage.memory import MemoryStore
from tenantgate.storage.models import EnforcementContext


class MismatchStore:
    def set_enforcement_context(self, tenant_id, user_id, role):
        return EnforcementContext(tenant_id="someone-else", user_id=user_id, role=role)


class BrokenStore:
    def set_enforcement_context(self, tenant_id, user_id, role):
        raise RuntimeError("connection reset")


def test_establish_binds_context():
    ctx = establish(MemoryStore(), "t-1", "u-1", "ADMIN")
    assert ctx == EnforcementContext(tenant_id="t-1", user_id="u-1", role="ADMIN")


@pytest.mark.parametrize(
    "tenant_id,user_id,role",
    [(None, "u-1", "ADMIN"), ("t-1", "", "ADMIN"), ("t-1", "u-1", None)],
)
def test_establish_rejects_incomplete_identity(tenant_id, user_id, role):
    with pytest.raises(EnforcementContextError):
        establish(MemoryStore(), tenant_id, user_id, role)


def test_establish_fails_closed_on_store_error():
    with patch("tenantgate.service.rls.logger") as mock_logger:
        with pytest.raises(EnforcementContextError) as excinfo:
            establish(BrokenStore(), "t-1", "u-1", "ADMIN")
    assert excinfo.value.status_code == 503
    assert mock_logger.error.call_args[0][0] == "rls_context_failed"


def test_establish_rejects_mismatched_context():
    with pytest.raises(EnforcementContextError):
        establish(MismatchStore(), "t-1", "u-1", "ADMIN")


def test_scoped_reads_never_cross_tenants():
    store = MemoryStore()
    acme, acme_owner = store.create_tenant_with_owner(
        "acme", "Acme", email="owner@acme.test", password_hash="x"
    )
    globex, globex_owner = store.create_tenant_with_owner(
        "globex", "Globex", email="owner@globex.test", password_hash="x"
    )
    ctx = EnforcementContext(tenant_id=acme.id, user_id=acme_owner.id, role="OWNER")

    assert [u.id for u in store.list_users(ctx)] == [acme_owner.id]
    assert store.get_user_scoped(ctx, globex_owner.id) is None
    assert store.update_user_role(ctx, globex_owner.id, "CUSTOMER") is None
    assert store.deactivate_user(ctx, globex_owner.id) is None
    assert store.get_user(globex_owner.id).role == "OWNER"
    assert store.get_user(globex_owner.id).is_active


def test_protected_route_returns_503_when_context_cannot_be_bound(runtime):
    client = TestClient(app_module.app)
    resp = client.post(
        "/v1/auth/register",
        json={
            "email": "owner@acme.test",
            "password": "correct-horse-1",
            "tenant_slug": "acme",
            "tenant_name": "Acme",
        },
    )
    token = resp.json()["data"]["access_token"]

    runtime.store.available = False
    resp = client.get("/v1/users", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 503
    body = resp.json()
    assert body["error"]["code"] == "service_unavailable"
    assert "owner@acme.test" not in resp.text


def test_memory_store_hands_out_independent_permission_lists():
    store = MemoryStore()
    tenant = store.create_tenant("acme", "Acme")
    created = store.create_user(
        "staff@acme.test", tenant.id, role="STAFF", permissions=["reports.view"]
    )
    created.permissions.append("subscription.cancel")

    fetched = store.get_user(created.id)
    assert fetched.permissions == ["reports.view"]
    fetched.permissions.append("tenants.domain")

    ctx = EnforcementContext(tenant_id=tenant.id, user_id=created.id, role="STAFF")
    listed = store.list_users(ctx)[0]
    assert listed.permissions == ["reports.view"]
    listed.permissions.clear()
    assert store.get_user_scoped(ctx, created.id).permissions == ["reports.view"]
    assert store.get_user_by_email("staff@acme.test").permissions == ["reports.view"]

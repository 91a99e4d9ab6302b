import pytest
from fastapi.testclient import TestClient

from tenantgate import app as app_module

PASSWORD = "correct-horse-1"
ACME_HOST = {"Host": "acme.localhost"}


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def acme(runtime):
    """Register acme over HTTP and seed one user per role directly in the store."""
    client = TestClient(app_module.app)
    resp = client.post(
        "/v1/auth/register",
        json={
            "email": "owner@acme.test",
            "password": PASSWORD,
            "tenant_slug": "acme",
            "tenant_name": "Acme",
        },
    )
    assert resp.status_code == 201, resp.text
    data = resp.json()["data"]
    tenant_id = data["tenant"]["id"]
    users = {"OWNER": runtime.store.get_user(data["user"]["id"])}
    tokens = {"OWNER": data["access_token"]}
    for role in ("ADMIN", "STAFF", "CUSTOMER"):
        user = runtime.store.create_user(
            f"{role.lower()}@acme.test", tenant_id, role=role, password_hash="x"
        )
        users[role] = user
        tokens[role] = runtime.auth.issue_session(user).tokens["access_token"]
    return client, users, tokens


def test_owner_lists_whole_tenant(acme):
    client, users, tokens = acme
    resp = client.get("/v1/users", headers=_auth(tokens["OWNER"]))
    assert resp.status_code == 200
    listed = {u["email"] for u in resp.json()["data"]}
    assert listed == {u.email for u in users.values()}
    assert resp.headers["X-RateLimit-Limit"] == "100"


def test_staff_lists_only_self(acme):
    client, users, tokens = acme
    resp = client.get("/v1/users", headers=_auth(tokens["STAFF"]))
    assert resp.status_code == 200
    assert [u["id"] for u in resp.json()["data"]] == [users["STAFF"].id]


def test_customer_cannot_list_users(acme):
    client, users, tokens = acme
    resp = client.get("/v1/users", headers=_auth(tokens["CUSTOMER"]))
    assert resp.status_code == 403
    assert resp.json()["error"]["details"] == {"required": "users.read"}


def test_staff_cannot_change_roles(acme):
    client, users, tokens = acme
    resp = client.patch(
        f"/v1/users/{users['CUSTOMER'].id}/role",
        json={"role": "ADMIN"},
        headers=_auth(tokens["STAFF"]),
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["message"] == "Insufficient permissions"


def test_admin_role_changes(acme):
    client, users, tokens = acme
    denied = client.patch(
        f"/v1/users/{users['STAFF'].id}/role",
        json={"role": "ADMIN"},
        headers=_auth(tokens["ADMIN"]),
    )
    assert denied.status_code == 403
    assert denied.json()["error"]["message"] == "Cannot assign higher role"

    allowed = client.patch(
        f"/v1/users/{users['CUSTOMER'].id}/role",
        json={"role": "STAFF"},
        headers=_auth(tokens["ADMIN"]),
    )
    assert allowed.status_code == 200
    assert allowed.json()["data"]["role"] == "STAFF"


def test_user_in_other_tenant_is_not_found(acme):
    client, users, tokens = acme
    other = client.post(
        "/v1/auth/register",
        json={
            "email": "owner@globex.test",
            "password": PASSWORD,
            "tenant_slug": "globex",
            "tenant_name": "Globex",
        },
    ).json()["data"]
    resp = client.get(f"/v1/users/{other['user']['id']}", headers=_auth(tokens["OWNER"]))
    assert resp.status_code == 404


def test_delete_user_revokes_access(acme):
    client, users, tokens = acme
    resp = client.delete(f"/v1/users/{users['STAFF'].id}", headers=_auth(tokens["ADMIN"]))
    assert resp.status_code == 200
    assert resp.json()["data"]["user_id"] == users["STAFF"].id
    assert client.get("/v1/auth/me", headers=_auth(tokens["STAFF"])).status_code == 401


def test_cannot_delete_self(acme):
    client, users, tokens = acme
    resp = client.delete(f"/v1/users/{users['ADMIN'].id}", headers=_auth(tokens["ADMIN"]))
    assert resp.status_code == 400


def test_current_tenant_is_public_branding(acme):
    client, users, tokens = acme
    resp = client.get("/v1/tenants/current", headers=ACME_HOST)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["slug"] == "acme"
    assert "plan" not in data
    assert "custom_domain" not in data


def test_tenant_by_slug(acme):
    client, users, tokens = acme
    assert client.get("/v1/tenants/acme").json()["data"]["name"] == "Acme"
    assert client.get("/v1/tenants/nobody").status_code == 404


def test_update_tenant_validates_colors(acme):
    client, users, tokens = acme
    resp = client.patch(
        "/v1/tenants/current",
        json={"primary_color": "blue"},
        headers=_auth(tokens["OWNER"]),
    )
    assert resp.status_code == 422


def test_update_tenant_custom_domain_resolves(acme):
    client, users, tokens = acme
    resp = client.patch(
        "/v1/tenants/current",
        json={"custom_domain": "acme-portal.com", "primary_color": "#112233"},
        headers=_auth(tokens["ADMIN"]),
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["data"]["custom_domain"] == "acme-portal.com"

    current = client.get("/v1/tenants/current", headers={"Host": "acme-portal.com"})
    assert current.status_code == 200
    assert current.json()["data"]["primary_color"] == "#112233"


def test_staff_cannot_update_tenant(acme):
    client, users, tokens = acme
    resp = client.patch(
        "/v1/tenants/current", json={"name": "Renamed"}, headers=_auth(tokens["STAFF"])
    )
    assert resp.status_code == 403


def test_only_owner_deactivates_tenant(acme):
    client, users, tokens = acme
    denied = client.delete("/v1/tenants/current", headers=_auth(tokens["ADMIN"]))
    assert denied.status_code == 403

    resp = client.delete("/v1/tenants/current", headers=_auth(tokens["OWNER"]))
    assert resp.status_code == 200
    for token in tokens.values():
        assert client.get("/v1/auth/me", headers=_auth(token)).status_code == 401
    assert client.get("/v1/tenants/current", headers=ACME_HOST).status_code == 404


def test_admin_creates_user_over_http(acme):
    client, users, tokens = acme
    resp = client.post(
        "/v1/users",
        json={"email": "hire@acme.test", "password": "correct-horse-2", "role": "STAFF"},
        headers=_auth(tokens["ADMIN"]),
    )
    assert resp.status_code == 201, resp.text
    data = resp.json()["data"]
    assert data["role"] == "STAFF"
    assert data["tenant_id"] == users["OWNER"].tenant_id
    assert "password_hash" not in data

    duplicate = client.post(
        "/v1/users",
        json={"email": "hire@acme.test", "password": "correct-horse-2"},
        headers=_auth(tokens["OWNER"]),
    )
    assert duplicate.status_code == 409


def test_create_user_requires_permission_and_rank(acme):
    client, users, tokens = acme
    body = {"email": "boss@acme.test", "password": "correct-horse-2", "role": "OWNER"}
    staff = client.post("/v1/users", json=body, headers=_auth(tokens["STAFF"]))
    assert staff.status_code == 403
    assert staff.json()["error"]["details"] == {"required": "users.create"}

    admin = client.post("/v1/users", json=body, headers=_auth(tokens["ADMIN"]))
    assert admin.status_code == 403
    assert admin.json()["error"]["message"] == "Only OWNER can create another OWNER"


def test_admin_cannot_self_grant_permissions_over_http(acme):
    client, users, tokens = acme
    resp = client.patch(
        f"/v1/users/{users['ADMIN'].id}",
        json={"permissions": ["subscription.cancel"]},
        headers=_auth(tokens["ADMIN"]),
    )
    assert resp.status_code == 403
    me = client.get("/v1/auth/me", headers=_auth(tokens["ADMIN"])).json()["data"]
    assert "subscription.cancel" not in me["effective_permissions"]


def test_invitation_lifecycle_over_http(acme, runtime):
    client, users, tokens = acme
    created = client.post(
        "/v1/invitations",
        json={"email": "guest@acme.test", "role": "CUSTOMER"},
        headers=_auth(tokens["ADMIN"]),
    )
    assert created.status_code == 201, created.text
    invitation = created.json()["data"]
    assert invitation["status"] == "pending"
    token = invitation["invitation_url"].split("token=", 1)[1]

    public = client.get(f"/v1/invitations/{token}")
    assert public.status_code == 200
    assert public.json()["data"]["tenant"]["slug"] == "acme"
    assert public.json()["data"]["role"] == "CUSTOMER"

    accepted = client.post(
        f"/v1/invitations/{token}/accept",
        json={"name": "Guest", "password": "correct-horse-3"},
    )
    assert accepted.status_code == 200, accepted.text
    new_token = accepted.json()["data"]["access_token"]
    me = client.get("/v1/auth/me", headers=_auth(new_token)).json()["data"]
    assert me["role"] == "CUSTOMER"
    assert me["tenant"]["slug"] == "acme"

    again = client.get(f"/v1/invitations/{token}")
    assert again.status_code == 400
    assert again.json()["error"]["message"] == "Invitation has already been accepted"

    listed = client.get(
        "/v1/invitations", params={"status": "accepted"}, headers=_auth(tokens["OWNER"])
    )
    assert [i["email"] for i in listed.json()["data"]] == ["guest@acme.test"]

    cancel = client.delete(f"/v1/invitations/{invitation['id']}", headers=_auth(tokens["OWNER"]))
    assert cancel.status_code == 400


def test_staff_cannot_invite(acme):
    client, users, tokens = acme
    resp = client.post(
        "/v1/invitations", json={"email": "guest@acme.test"}, headers=_auth(tokens["STAFF"])
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["details"] == {"required": "users.invite"}


def test_cancel_pending_invitation(acme):
    client, users, tokens = acme
    created = client.post(
        "/v1/invitations", json={"email": "guest@acme.test"}, headers=_auth(tokens["OWNER"])
    ).json()["data"]
    resp = client.delete(f"/v1/invitations/{created['id']}", headers=_auth(tokens["OWNER"]))
    assert resp.status_code == 200
    token = created["invitation_url"].split("token=", 1)[1]
    assert client.get(f"/v1/invitations/{token}").status_code == 404

from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from tenantgate.logging import get_logger
from tenantgate.storage.errors import ConstraintViolation, StoreUnavailable
from tenantgate.storage.models import EnforcementContext
from tenantgate.storage.postgres import (
    SCHEMA_PATH,
    PostgresStore,
    _constraint_field,
    _tenant_from_row,
    _user_from_row,
)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records statements and replays scripted cursors in order."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []
        self.transactions = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return FakeCursor()


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _store(*results):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    conn = FakeConnection(results)
    store.pool = FakePool(conn)
    store.logger = get_logger("tests.postgres")
    return store, conn


def _ctx():
    return EnforcementContext(tenant_id="t-1", user_id="u-1", role="ADMIN")


def _user_row(**overrides):
    row = {
        "id": "u-2",
        "email": "staff@acme.test",
        "tenant_id": "t-1",
        "role": "STAFF",
        "name": None,
        "password_hash": None,
        "permissions": ["reports.view"],
        "is_active": True,
        "email_verified_at": None,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "updated_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    row.update(overrides)
    return row


class FakeDiag:
    def __init__(self, constraint_name):
        self.constraint_name = constraint_name


class FakeUniqueViolation(errors.UniqueViolation):
    def __init__(self, constraint_name):
        super().__init__("duplicate key")
        self._fake_diag = FakeDiag(constraint_name)

    @property
    def diag(self):
        return self._fake_diag


def test_postgres_store_unit_tests_never_touch_database():
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    with pytest.raises(AssertionError):
        store.ping()


def test_schema_file_ships_with_package():
    sql = SCHEMA_PATH.read_text()
    tables = (
        "tenants",
        "users",
        "sessions",
        "magic_links",
        "oauth_accounts",
        "invitations",
        "audit_logs",
    )
    for table in tables:
        assert f"CREATE TABLE IF NOT EXISTS {table}" in sql
        assert f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY" in sql
        assert f"CREATE POLICY {table}_isolation ON {table}" in sql
    assert "FORCE ROW LEVEL SECURITY" in sql
    assert "app.current_tenant" in sql


def test_row_mappers():
    user = _user_from_row(_user_row())
    assert user.permissions == ["reports.view"]
    assert user.role == "STAFF"
    tenant = _tenant_from_row({"id": "t-1", "slug": "acme", "name": "Acme", "plan": None})
    assert tenant.plan == "free"
    assert tenant.is_active


@pytest.mark.parametrize(
    "constraint,field",
    [
        ("tenants_slug_key", "slug"),
        ("tenants_custom_domain_key", "custom_domain"),
        ("users_tenant_email_key", "email"),
        ("something_else", "unknown"),
    ],
)
def test_constraint_field_from_diag(constraint, field):
    assert _constraint_field(FakeUniqueViolation(constraint)) == field


def test_scoped_calls_bind_context_first_inside_transaction():
    store, conn = _store(FakeCursor(), FakeCursor([_user_row()]))
    users = store.list_users(_ctx())
    assert [u.id for u in users] == ["u-2"]
    assert conn.transactions == 1
    first_sql, first_params = conn.statements[0]
    assert "set_config('app.current_tenant', %s, true)" in first_sql
    assert first_params == ("t-1", "u-1", "ADMIN")
    assert "tenant_id = %s" in conn.statements[1][0]


def test_set_enforcement_context_verifies_readback():
    store, conn = _store(FakeCursor(), FakeCursor([{"tenant_id": "t-1"}]))
    ctx = store.set_enforcement_context("t-1", "u-1", "ADMIN")
    assert ctx.tenant_id == "t-1"

    store, conn = _store(FakeCursor(), FakeCursor([{"tenant_id": ""}]))
    with pytest.raises(StoreUnavailable):
        store.set_enforcement_context("t-1", "u-1", "ADMIN")


def test_set_enforcement_context_wraps_driver_errors():
    store, conn = _store(errors.InsufficientPrivilege("denied"))
    with pytest.raises(StoreUnavailable):
        store.set_enforcement_context("t-1", "u-1", "ADMIN")


def test_get_user_by_email_ambiguous_returns_none():
    store, conn = _store(FakeCursor([_user_row(), _user_row(id="u-3", tenant_id="t-2")]))
    assert store.get_user_by_email("Staff@Acme.test") is None
    sql, params = conn.statements[0]
    assert "LIMIT 2" in sql
    assert params == ("staff@acme.test",)


def test_mark_magic_link_used_is_compare_and_set():
    store, conn = _store(FakeCursor([{"id": "ml-1"}]), FakeCursor([]))
    now = datetime.now(timezone.utc)
    assert store.mark_magic_link_used("tok", now) is True
    assert store.mark_magic_link_used("tok", now) is False
    assert "used_at IS NULL" in conn.statements[0][0]


def test_delete_sessions_requires_filter():
    store, conn = _store()
    with pytest.raises(ValueError):
        store.delete_sessions()
    assert conn.statements == []


def test_delete_sessions_except_token():
    store, conn = _store(FakeCursor(rowcount=3))
    assert store.delete_sessions(user_id="u-1", except_token="keep") == 3
    sql, params = conn.statements[0]
    assert sql == "DELETE FROM sessions WHERE user_id = %s AND token <> %s"
    assert params == ["u-1", "keep"]


def test_upsert_oauth_account_owned_by_other_user_raises():
    store, conn = _store(FakeCursor([]))
    with pytest.raises(ConstraintViolation):
        store.upsert_oauth_account("u-1", "google", "g-1")
    assert "WHERE oauth_accounts.user_id = EXCLUDED.user_id" in conn.statements[0][0]


def test_create_tenant_with_owner_maps_unique_violation():
    store, conn = _store(FakeUniqueViolation("tenants_slug_key"))
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_tenant_with_owner("acme", "Acme", email="a@acme.test", password_hash="x")
    assert excinfo.value.detail == {"field": "slug"}
    assert conn.transactions == 1


def test_update_tenant_rejects_unknown_fields():
    store, conn = _store()
    with pytest.raises(ValueError):
        store.update_tenant(_ctx(), {"slug": "new"})


def test_update_tenant_domain_conflict():
    store, conn = _store(FakeCursor(), FakeUniqueViolation("tenants_custom_domain_key"))
    with pytest.raises(ConstraintViolation) as excinfo:
        store.update_tenant(_ctx(), {"custom_domain": "Shop.com"})
    assert excinfo.value.detail == {"field": "custom_domain"}
    assert conn.statements[1][1] == ("shop.com", "t-1")


def _invitation_row(**overrides):
    row = {
        "id": "inv-1",
        "tenant_id": "t-1",
        "email": "new@acme.test",
        "role": "STAFF",
        "token": "tok",
        "invited_by": "u-1",
        "expires_at": datetime(2030, 1, 1, tzinfo=timezone.utc),
        "accepted_at": None,
        "accepted_by": None,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    row.update(overrides)
    return row


def test_list_invitations_binds_tenant_context():
    store, conn = _store(FakeCursor(), FakeCursor([_invitation_row()]))
    invitations = store.list_invitations(_ctx())
    assert [i.email for i in invitations] == ["new@acme.test"]
    assert conn.transactions == 1
    assert conn.statements[0][0].startswith("SELECT set_config('app.current_tenant'")
    assert "FROM invitations WHERE tenant_id = %s" in conn.statements[1][0]


def test_accept_invitation_creates_user_in_one_transaction():
    accepted_at = datetime(2024, 6, 1, tzinfo=timezone.utc)
    store, conn = _store(FakeCursor([_invitation_row(accepted_at=accepted_at)]))
    invitation, user = store.accept_invitation(
        "tok", name="Nia", password_hash="hash", accepted_at=accepted_at
    )
    assert conn.transactions == 1
    assert "accepted_at IS NULL AND expires_at > %s" in conn.statements[0][0]
    assert conn.statements[1][0].startswith("INSERT INTO users")
    assert conn.statements[2][0].startswith("UPDATE invitations SET accepted_by")
    assert user.role == "STAFF"
    assert user.tenant_id == "t-1"
    assert user.email_verified_at == accepted_at
    assert invitation.accepted_by == user.id


def test_accept_invitation_returns_none_when_already_taken():
    store, conn = _store(FakeCursor())
    result = store.accept_invitation(
        "tok", name=None, password_hash="hash", accepted_at=datetime.now(timezone.utc)
    )
    assert result is None
    assert len(conn.statements) == 1


def test_accept_invitation_maps_duplicate_email():
    store, conn = _store(
        FakeCursor([_invitation_row()]), FakeUniqueViolation("users_tenant_email_key")
    )
    with pytest.raises(ConstraintViolation):
        store.accept_invitation(
            "tok", name=None, password_hash="hash", accepted_at=datetime.now(timezone.utc)
        )

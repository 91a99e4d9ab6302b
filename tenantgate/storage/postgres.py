from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool, PoolTimeout

from tenantgate.logging import get_logger
from tenantgate.storage.errors import ConstraintViolation, StoreUnavailable
from tenantgate.storage.models import (
    AuditEvent,
    EnforcementContext,
    Invitation,
    MagicLink,
    OAuthAccount,
    Session,
    Tenant,
    User,
    new_id,
    utcnow,
)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_REQUIRED_TABLES = (
    "tenants",
    "users",
    "sessions",
    "magic_links",
    "oauth_accounts",
    "invitations",
    "audit_logs",
)

_TENANT_COLUMNS = (
    "id, slug, name, custom_domain, logo_url, primary_color, secondary_color, "
    "plan, is_active, created_at, updated_at"
)
_USER_COLUMNS = (
    "id, email, tenant_id, role, name, password_hash, permissions, is_active, "
    "email_verified_at, created_at, updated_at"
)
_INVITATION_COLUMNS = (
    "id, tenant_id, email, role, token, invited_by, expires_at, accepted_at, accepted_by, "
    "created_at"
)
_TENANT_MUTABLE_FIELDS = {
    "name",
    "custom_domain",
    "logo_url",
    "primary_color",
    "secondary_color",
    "plan",
    "is_active",
}
_USER_MUTABLE_FIELDS = {"name", "permissions", "is_active"}

_SET_CONTEXT_SQL = (
    "SELECT set_config('app.current_tenant', %s, true), "
    "set_config('app.current_user', %s, true), "
    "set_config('app.user_role', %s, true)"
)


def _constraint_field(exc: errors.UniqueViolation) -> str:
    name = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    for field_name in ("custom_domain", "slug", "email", "token", "provider"):
        if field_name in name:
            return field_name
    return "unknown"


def _tenant_from_row(row: Dict[str, Any]) -> Tenant:
    return Tenant(
        id=row["id"],
        slug=row["slug"],
        name=row["name"],
        custom_domain=row.get("custom_domain"),
        logo_url=row.get("logo_url"),
        primary_color=row.get("primary_color"),
        secondary_color=row.get("secondary_color"),
        plan=row.get("plan") or "free",
        is_active=bool(row.get("is_active", True)),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _user_from_row(row: Dict[str, Any]) -> User:
    permissions = row.get("permissions")
    return User(
        id=row["id"],
        email=row["email"],
        tenant_id=row["tenant_id"],
        role=row.get("role") or "CUSTOMER",
        name=row.get("name"),
        password_hash=row.get("password_hash"),
        permissions=list(permissions) if permissions else None,
        is_active=bool(row.get("is_active", True)),
        email_verified_at=row.get("email_verified_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _session_from_row(row: Dict[str, Any]) -> Session:
    return Session(
        id=row["id"],
        user_id=row["user_id"],
        token=row["token"],
        expires_at=row["expires_at"],
        created_at=row.get("created_at") or utcnow(),
    )


def _magic_link_from_row(row: Dict[str, Any]) -> MagicLink:
    return MagicLink(
        id=row["id"],
        email=row["email"],
        token=row["token"],
        expires_at=row["expires_at"],
        tenant_id=row.get("tenant_id"),
        user_id=row.get("user_id"),
        used_at=row.get("used_at"),
        created_at=row.get("created_at") or utcnow(),
    )


def _oauth_from_row(row: Dict[str, Any]) -> OAuthAccount:
    return OAuthAccount(
        id=row["id"],
        user_id=row["user_id"],
        provider=row["provider"],
        provider_account_id=row["provider_account_id"],
        access_token=row.get("access_token"),
        refresh_token=row.get("refresh_token"),
        expires_at=row.get("expires_at"),
        token_type=row.get("token_type"),
        scope=row.get("scope"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _invitation_from_row(row: Dict[str, Any]) -> Invitation:
    return Invitation(
        id=row["id"],
        tenant_id=row["tenant_id"],
        email=row["email"],
        role=row["role"],
        token=row["token"],
        expires_at=row["expires_at"],
        invited_by=row.get("invited_by"),
        accepted_at=row.get("accepted_at"),
        accepted_by=row.get("accepted_by"),
        created_at=row.get("created_at") or utcnow(),
    )


class PostgresStore:
    """Postgres-backed gateway.

    Unscoped methods serve authentication lookups. Every method taking an
    ``EnforcementContext`` runs inside its own transaction whose first
    statement binds ``app.current_tenant``, ``app.current_user`` and
    ``app.user_role`` so the row-level security policies apply.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _scoped(self, ctx: EnforcementContext) -> Iterator[psycopg.Connection]:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(_SET_CONTEXT_SQL, (ctx.tenant_id, ctx.user_id, ctx.role))
                yield conn

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply {} before starting.".format(
                    ", ".join(sorted(missing_tables)), SCHEMA_PATH.name
                )
            )

    def apply_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(SCHEMA_PATH.read_text())

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    def close(self) -> None:
        self.pool.close()

    # -- tenants --------------------------------------------------------

    def create_tenant(
        self,
        slug: str,
        name: str,
        *,
        custom_domain: Optional[str] = None,
        plan: str = "free",
        is_active: bool = True,
    ) -> Tenant:
        tenant = Tenant(
            id=new_id(),
            slug=slug,
            name=name,
            custom_domain=custom_domain.lower() if custom_domain else None,
            plan=plan,
            is_active=is_active,
        )
        try:
            with self._connect() as conn:
                self._insert_tenant(conn, tenant)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "tenant already exists", {"field": _constraint_field(exc)}
            ) from exc
        return tenant

    def _insert_tenant(self, conn: psycopg.Connection, tenant: Tenant) -> None:
        conn.execute(
            """
            INSERT INTO tenants (id, slug, name, custom_domain, plan, is_active, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                tenant.id,
                tenant.slug,
                tenant.name,
                tenant.custom_domain,
                tenant.plan,
                tenant.is_active,
                tenant.created_at,
                tenant.updated_at,
            ),
        )

    def _insert_user(self, conn: psycopg.Connection, user: User) -> None:
        conn.execute(
            """
            INSERT INTO users (id, email, tenant_id, role, name, password_hash, permissions,
                               is_active, email_verified_at, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                user.id,
                user.email,
                user.tenant_id,
                user.role,
                user.name,
                user.password_hash,
                Jsonb(user.permissions) if user.permissions else None,
                user.is_active,
                user.email_verified_at,
                user.created_at,
                user.updated_at,
            ),
        )

    def create_tenant_with_owner(
        self,
        slug: str,
        name: str,
        *,
        email: str,
        password_hash: str,
        user_name: Optional[str] = None,
    ) -> tuple[Tenant, User]:
        tenant = Tenant(id=new_id(), slug=slug, name=name)
        user = User(
            id=new_id(),
            email=email.strip().lower(),
            tenant_id=tenant.id,
            role="OWNER",
            name=user_name,
            password_hash=password_hash,
            email_verified_at=utcnow(),
        )
        try:
            with self._connect() as conn:
                with conn.transaction():
                    self._insert_tenant(conn, tenant)
                    self._insert_user(conn, user)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "tenant or owner already exists", {"field": _constraint_field(exc)}
            ) from exc
        return tenant, user

    def _fetch_tenant(self, where: str, value: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TENANT_COLUMNS} FROM tenants WHERE {where} = %s", (value,)
            ).fetchone()
        return _tenant_from_row(row) if row else None

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        return self._fetch_tenant("id", tenant_id)

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        return self._fetch_tenant("slug", slug)

    def get_tenant_by_domain(self, domain: str) -> Optional[Tenant]:
        if not domain:
            return None
        return self._fetch_tenant("custom_domain", domain.lower())

    # -- users ----------------------------------------------------------

    def create_user(
        self,
        email: str,
        tenant_id: str,
        *,
        role: str = "CUSTOMER",
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
        permissions: Optional[List[str]] = None,
        is_active: bool = True,
        email_verified_at: Optional[datetime] = None,
    ) -> User:
        user = User(
            id=new_id(),
            email=email.strip().lower(),
            tenant_id=tenant_id,
            role=role,
            name=name,
            password_hash=password_hash,
            permissions=list(permissions) if permissions else None,
            is_active=is_active,
            email_verified_at=email_verified_at,
        )
        try:
            with self._connect() as conn:
                self._insert_user(conn, user)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("tenant does not exist", {"field": "tenant_id"}) from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str, tenant_id: Optional[str] = None) -> Optional[User]:
        normalized = email.strip().lower()
        with self._connect() as conn:
            if tenant_id:
                rows = conn.execute(
                    f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s AND tenant_id = %s",
                    (normalized, tenant_id),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s LIMIT 2",
                    (normalized,),
                ).fetchall()
        if not rows:
            return None
        if len(rows) > 1:
            self.logger.warning("user_email_ambiguous", tenant_count=len(rows))
            return None
        return _user_from_row(rows[0])

    def email_in_use(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM users WHERE email = %s LIMIT 1",
                (email.strip().lower(),),
            ).fetchone()
        return bool(row)

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )

    def mark_email_verified(self, user_id: str, verified_at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE users SET email_verified_at = %s, updated_at = now()
                WHERE id = %s AND email_verified_at IS NULL
                """,
                (verified_at or utcnow(), user_id),
            )

    # -- sessions -------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        session_id: Optional[str] = None,
    ) -> Session:
        session = Session(
            id=session_id or new_id(), user_id=user_id, token=token, expires_at=expires_at
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (id, user_id, token, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (session.id, user_id, token, expires_at, session.created_at),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"field": "user_id"}) from exc
        return session

    def get_session(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, token, expires_at, created_at FROM sessions
                WHERE token = %s AND expires_at > %s
                """,
                (token, datetime.now(timezone.utc)),
            ).fetchone()
        return _session_from_row(row) if row else None

    def get_session_by_id(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, token, expires_at, created_at FROM sessions
                WHERE id = %s AND expires_at > %s
                """,
                (session_id, datetime.now(timezone.utc)),
            ).fetchone()
        return _session_from_row(row) if row else None

    def delete_sessions(
        self,
        *,
        user_id: Optional[str] = None,
        token: Optional[str] = None,
        session_id: Optional[str] = None,
        except_token: Optional[str] = None,
    ) -> int:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (("user_id", user_id), ("token", token), ("id", session_id)):
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)
        if not clauses:
            raise ValueError("delete_sessions requires user_id, token or session_id")
        if except_token is not None:
            clauses.append("token <> %s")
            params.append(except_token)
        with self._connect() as conn:
            cur = conn.execute(f"DELETE FROM sessions WHERE {' AND '.join(clauses)}", params)
            return cur.rowcount

    def delete_tenant_sessions(self, ctx: EnforcementContext) -> int:
        with self._scoped(ctx) as conn:
            cur = conn.execute(
                "DELETE FROM sessions WHERE user_id IN (SELECT id FROM users WHERE tenant_id = %s)",
                (ctx.tenant_id,),
            )
            return cur.rowcount

    # -- magic links ----------------------------------------------------

    def create_magic_link(
        self,
        email: str,
        token: str,
        expires_at: datetime,
        *,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> MagicLink:
        link = MagicLink(
            id=new_id(),
            email=email.strip().lower(),
            token=token,
            expires_at=expires_at,
            tenant_id=tenant_id,
            user_id=user_id,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO magic_links (id, email, token, tenant_id, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        link.id,
                        link.email,
                        token,
                        tenant_id,
                        user_id,
                        expires_at,
                        link.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("magic link token collision", {"field": "token"}) from exc
        return link

    def get_magic_link(self, token: str) -> Optional[MagicLink]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, email, token, tenant_id, user_id, expires_at, used_at, created_at
                FROM magic_links WHERE token = %s
                """,
                (token,),
            ).fetchone()
        return _magic_link_from_row(row) if row else None

    def mark_magic_link_used(self, token: str, used_at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE magic_links SET used_at = %s
                WHERE token = %s AND used_at IS NULL
                RETURNING id
                """,
                (used_at, token),
            ).fetchone()
        return bool(row)

    def delete_expired_magic_links(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM magic_links WHERE used_at IS NULL AND expires_at <= %s", (now,)
            )
            return cur.rowcount

    # -- oauth accounts -------------------------------------------------

    _OAUTH_COLUMNS = (
        "id, user_id, provider, provider_account_id, access_token, refresh_token, "
        "expires_at, token_type, scope, created_at, updated_at"
    )

    def get_oauth_account(self, provider: str, provider_account_id: str) -> Optional[OAuthAccount]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {self._OAUTH_COLUMNS} FROM oauth_accounts
                WHERE provider = %s AND provider_account_id = %s
                """,
                (provider, provider_account_id),
            ).fetchone()
        return _oauth_from_row(row) if row else None

    def list_oauth_accounts(self, user_id: str) -> List[OAuthAccount]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {self._OAUTH_COLUMNS} FROM oauth_accounts WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [_oauth_from_row(row) for row in rows]

    def upsert_oauth_account(
        self,
        user_id: str,
        provider: str,
        provider_account_id: str,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        token_type: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> OAuthAccount:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO oauth_accounts (id, user_id, provider, provider_account_id, access_token,
                                            refresh_token, expires_at, token_type, scope)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (provider, provider_account_id) DO UPDATE SET
                    access_token = EXCLUDED.access_token,
                    refresh_token = COALESCE(EXCLUDED.refresh_token, oauth_accounts.refresh_token),
                    expires_at = EXCLUDED.expires_at,
                    token_type = EXCLUDED.token_type,
                    scope = EXCLUDED.scope,
                    updated_at = now()
                WHERE oauth_accounts.user_id = EXCLUDED.user_id
                RETURNING {self._OAUTH_COLUMNS}
                """,
                (
                    new_id(),
                    user_id,
                    provider,
                    provider_account_id,
                    access_token,
                    refresh_token,
                    expires_at,
                    token_type,
                    scope,
                ),
            ).fetchone()
        if not row:
            raise ConstraintViolation(
                "oauth account linked to another user", {"field": "provider_account_id"}
            )
        return _oauth_from_row(row)

    def delete_oauth_account(self, user_id: str, provider: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM oauth_accounts WHERE user_id = %s AND provider = %s",
                (user_id, provider),
            )
            return cur.rowcount

    # -- invitations ----------------------------------------------------

    def create_invitation(
        self,
        ctx: EnforcementContext,
        email: str,
        role: str,
        token: str,
        expires_at: datetime,
    ) -> Invitation:
        invitation = Invitation(
            id=new_id(),
            tenant_id=ctx.tenant_id,
            email=email.strip().lower(),
            role=role,
            token=token,
            expires_at=expires_at,
            invited_by=ctx.user_id,
        )
        try:
            with self._scoped(ctx) as conn:
                conn.execute(
                    """
                    INSERT INTO invitations (id, tenant_id, email, role, token, invited_by,
                                             expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        invitation.id,
                        invitation.tenant_id,
                        invitation.email,
                        role,
                        token,
                        ctx.user_id,
                        expires_at,
                        invitation.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("invitation token collision", {"field": "token"}) from exc
        return invitation

    def list_invitations(self, ctx: EnforcementContext) -> List[Invitation]:
        with self._scoped(ctx) as conn:
            rows = conn.execute(
                f"""
                SELECT {_INVITATION_COLUMNS} FROM invitations
                WHERE tenant_id = %s ORDER BY created_at DESC
                """,
                (ctx.tenant_id,),
            ).fetchall()
        return [_invitation_from_row(row) for row in rows]

    def get_invitation_scoped(
        self, ctx: EnforcementContext, invitation_id: str
    ) -> Optional[Invitation]:
        with self._scoped(ctx) as conn:
            row = conn.execute(
                f"SELECT {_INVITATION_COLUMNS} FROM invitations WHERE id = %s AND tenant_id = %s",
                (invitation_id, ctx.tenant_id),
            ).fetchone()
        return _invitation_from_row(row) if row else None

    def find_pending_invitation(
        self, ctx: EnforcementContext, email: str, now: datetime
    ) -> Optional[Invitation]:
        with self._scoped(ctx) as conn:
            row = conn.execute(
                f"""
                SELECT {_INVITATION_COLUMNS} FROM invitations
                WHERE tenant_id = %s AND email = %s AND accepted_at IS NULL AND expires_at > %s
                LIMIT 1
                """,
                (ctx.tenant_id, email.strip().lower(), now),
            ).fetchone()
        return _invitation_from_row(row) if row else None

    def delete_invitation(self, ctx: EnforcementContext, invitation_id: str) -> bool:
        with self._scoped(ctx) as conn:
            cur = conn.execute(
                "DELETE FROM invitations WHERE id = %s AND tenant_id = %s",
                (invitation_id, ctx.tenant_id),
            )
            return cur.rowcount > 0

    def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_INVITATION_COLUMNS} FROM invitations WHERE token = %s", (token,)
            ).fetchone()
        return _invitation_from_row(row) if row else None

    def accept_invitation(
        self,
        token: str,
        *,
        name: Optional[str],
        password_hash: str,
        accepted_at: datetime,
    ) -> Optional[tuple[Invitation, User]]:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        f"""
                        UPDATE invitations SET accepted_at = %s
                        WHERE token = %s AND accepted_at IS NULL AND expires_at > %s
                        RETURNING {_INVITATION_COLUMNS}
                        """,
                        (accepted_at, token, accepted_at),
                    ).fetchone()
                    if not row:
                        return None
                    invitation = _invitation_from_row(row)
                    user = User(
                        id=new_id(),
                        email=invitation.email,
                        tenant_id=invitation.tenant_id,
                        role=invitation.role,
                        name=name,
                        password_hash=password_hash,
                        email_verified_at=accepted_at,
                    )
                    self._insert_user(conn, user)
                    conn.execute(
                        "UPDATE invitations SET accepted_by = %s WHERE id = %s",
                        (user.id, invitation.id),
                    )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        invitation.accepted_by = user.id
        return invitation, user

    # -- audit ----------------------------------------------------------

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs (id, tenant_id, user_id, action, entity_type, entity_id,
                                        metadata, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.tenant_id,
                    event.user_id,
                    event.action,
                    event.entity_type,
                    event.entity_id,
                    Jsonb(event.metadata) if event.metadata else None,
                    event.ip_address,
                    event.user_agent,
                    event.created_at,
                ),
            )

    # -- enforcement context -------------------------------------------

    def set_enforcement_context(
        self, tenant_id: str, user_id: str, role: str
    ) -> EnforcementContext:
        """Check that the RLS variables can be bound and read back on this database."""
        ctx = EnforcementContext(tenant_id=tenant_id, user_id=user_id, role=role)
        try:
            with self._scoped(ctx) as conn:
                row = conn.execute(
                    "SELECT current_setting('app.current_tenant', true) AS tenant_id"
                ).fetchone()
        except (psycopg.Error, PoolTimeout) as exc:
            raise StoreUnavailable(str(exc)) from exc
        if not row or row.get("tenant_id") != tenant_id:
            raise StoreUnavailable("enforcement context was not applied")
        return ctx

    def list_users(self, ctx: EnforcementContext) -> List[User]:
        with self._scoped(ctx) as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE tenant_id = %s ORDER BY created_at",
                (ctx.tenant_id,),
            ).fetchall()
        return [_user_from_row(row) for row in rows]

    def get_user_scoped(self, ctx: EnforcementContext, user_id: str) -> Optional[User]:
        with self._scoped(ctx) as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s AND tenant_id = %s",
                (user_id, ctx.tenant_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_user_role(self, ctx: EnforcementContext, user_id: str, role: str) -> Optional[User]:
        with self._scoped(ctx) as conn:
            row = conn.execute(
                f"""
                UPDATE users SET role = %s, updated_at = now()
                WHERE id = %s AND tenant_id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (role, user_id, ctx.tenant_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_user(
        self, ctx: EnforcementContext, user_id: str, fields: Dict[str, Any]
    ) -> Optional[User]:
        unknown = set(fields) - _USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user_scoped(ctx, user_id)
        assignments = ", ".join(f"{key} = %s" for key in fields)
        values = [
            Jsonb(value) if key == "permissions" and value is not None else value
            for key, value in fields.items()
        ]
        with self._scoped(ctx) as conn:
            row = conn.execute(
                f"""
                UPDATE users SET {assignments}, updated_at = now()
                WHERE id = %s AND tenant_id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (*values, user_id, ctx.tenant_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def create_user_scoped(
        self,
        ctx: EnforcementContext,
        email: str,
        *,
        role: str = "CUSTOMER",
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> User:
        user = User(
            id=new_id(),
            email=email.strip().lower(),
            tenant_id=ctx.tenant_id,
            role=role,
            name=name,
            password_hash=password_hash,
        )
        try:
            with self._scoped(ctx) as conn:
                self._insert_user(conn, user)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return user

    def deactivate_user(self, ctx: EnforcementContext, user_id: str) -> Optional[User]:
        return self.update_user(ctx, user_id, {"is_active": False})

    def update_tenant(self, ctx: EnforcementContext, fields: Dict[str, Any]) -> Optional[Tenant]:
        unknown = set(fields) - _TENANT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported tenant fields: {sorted(unknown)}")
        if not fields:
            return self.get_tenant(ctx.tenant_id)
        if fields.get("custom_domain"):
            fields = {**fields, "custom_domain": fields["custom_domain"].lower()}
        assignments = ", ".join(f"{key} = %s" for key in fields)
        try:
            with self._scoped(ctx) as conn:
                row = conn.execute(
                    f"""
                    UPDATE tenants SET {assignments}, updated_at = now()
                    WHERE id = %s
                    RETURNING {_TENANT_COLUMNS}
                    """,
                    (*fields.values(), ctx.tenant_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "custom domain already in use", {"field": _constraint_field(exc)}
            ) from exc
        return _tenant_from_row(row) if row else None

    def deactivate_tenant(self, ctx: EnforcementContext) -> Optional[Tenant]:
        return self.update_tenant(ctx, {"is_active": False})

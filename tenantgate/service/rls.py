from __future__ import annotations

from typing import Optional, Protocol

from tenantgate.logging import get_logger
from tenantgate.service.errors import EnforcementContextError
from tenantgate.storage.models import EnforcementContext

logger = get_logger(__name__)


class EnforcementStore(Protocol):
    def set_enforcement_context(
        self, tenant_id: str, user_id: str, role: str
    ) -> EnforcementContext: ...


def establish(
    store: EnforcementStore,
    tenant_id: Optional[str],
    user_id: Optional[str],
    role: Optional[str],
) -> EnforcementContext:
    """Bind the row-level security context for one request.

    Any failure is fatal: the caller receives ``EnforcementContextError`` and
    must not touch tenant-scoped data.
    """
    if not tenant_id or not user_id or not role:
        logger.error(
            "rls_context_incomplete",
            has_tenant=bool(tenant_id),
            has_user=bool(user_id),
            has_role=bool(role),
        )
        raise EnforcementContextError("Tenant context unavailable")
    try:
        ctx = store.set_enforcement_context(tenant_id, user_id, role)
    except Exception as exc:
        logger.error(
            "rls_context_failed",
            tenant_id=tenant_id,
            user_id=user_id,
            error=str(exc),
        )
        raise EnforcementContextError("Tenant context unavailable") from exc
    if ctx is None or ctx.tenant_id != tenant_id or ctx.user_id != user_id:
        logger.error("rls_context_mismatch", tenant_id=tenant_id, user_id=user_id)
        raise EnforcementContextError("Tenant context unavailable")
    return ctx

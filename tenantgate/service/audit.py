from __future__ import annotations

from typing import Any, Optional, Protocol

from tenantgate.logging import get_logger
from tenantgate.storage.models import AuditEvent, new_id

logger = get_logger(__name__)


class AuditAction:
    USER_REGISTERED = "user.registered"
    USER_LOGIN = "user.login"
    USER_LOGOUT = "user.logout"
    USER_PASSWORD_CHANGED = "user.password_changed"
    USER_ROLE_CHANGED = "user.role_changed"
    USER_UPDATED = "user.updated"
    USER_CREATED = "user.created"
    USER_DELETED = "user.deleted"
    MAGIC_LINK_REQUESTED = "auth.magic_link_requested"
    OAUTH_LINKED = "auth.oauth_linked"
    OAUTH_UNLINKED = "auth.oauth_unlinked"
    INVITATION_CREATED = "invitation.created"
    INVITATION_ACCEPTED = "invitation.accepted"
    INVITATION_CANCELLED = "invitation.cancelled"
    TENANT_UPDATED = "tenant.updated"
    TENANT_DEACTIVATED = "tenant.deactivated"


class AuditStore(Protocol):
    def record_audit_event(self, event: AuditEvent) -> None: ...


class AuditSink:
    """Write-only audit trail. Recording never raises into the caller."""

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def record(
        self,
        tenant_id: Optional[str],
        user_id: Optional[str],
        action: str,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        event = AuditEvent(
            id=new_id(),
            tenant_id=tenant_id,
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=dict(metadata) if metadata else None,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            self.store.record_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_record_failed",
                action=action,
                tenant_id=tenant_id,
                user_id=user_id,
                error=str(exc),
            )
            return False
        return True

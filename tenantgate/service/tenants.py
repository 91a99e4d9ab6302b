from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from tenantgate.logging import get_logger
from tenantgate.service.audit import AuditAction, AuditSink
from tenantgate.service.errors import ConflictError, ForbiddenError, NotFoundError
from tenantgate.service.permissions import Role
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import EnforcementContext, Tenant

logger = get_logger(__name__)


class TenantStore(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]: ...

    def get_tenant_by_domain(self, domain: str) -> Optional[Tenant]: ...


@dataclass(frozen=True)
class HostLookup:
    slug: Optional[str] = None
    custom_domain: Optional[str] = None

    @property
    def cache_key(self) -> Optional[str]:
        if self.slug:
            return f"slug:{self.slug}"
        if self.custom_domain:
            return f"domain:{self.custom_domain}"
        return None


def normalize_host(host: Optional[str]) -> str:
    """Lowercase a Host header value and drop scheme, port and trailing dot."""
    if not host:
        return ""
    value = host.strip().lower()
    if "://" in value:
        value = value.split("://", 1)[1]
    value = value.split("/", 1)[0]
    if value.startswith("["):
        # IPv6 literal; never a tenant host
        return ""
    return value.split(":", 1)[0].rstrip(".")


def extract_from_host(host: Optional[str], base_domain: str) -> HostLookup:
    """Derive a slug or custom domain from a request host.

    ``acme.<base>`` and ``acme.localhost`` yield slug ``acme``. ``www.shop.com``
    and two-label hosts such as ``shop.com`` yield custom domain ``shop.com``.
    The apex base domain itself resolves to nothing.
    """
    hostname = normalize_host(host)
    if not hostname:
        return HostLookup()
    parts = [p for p in hostname.split(".") if p]
    if not parts:
        return HostLookup()
    base = base_domain.lower().strip(".")

    if parts[0] == "www" and len(parts) >= 2:
        domain = ".".join(parts[1:])
        if domain == base:
            return HostLookup()
        return HostLookup(custom_domain=domain)

    if len(parts) >= 2:
        rest = ".".join(parts[1:])
        if rest == base or "localhost" in rest:
            return HostLookup(slug=parts[0])

    if hostname == base or hostname == "localhost":
        return HostLookup()
    if len(parts) <= 2:
        return HostLookup(custom_domain=hostname)
    return HostLookup()


class TenantCache:
    """TTL cache of active tenants keyed by ``slug:<slug>`` / ``domain:<domain>``."""

    def __init__(
        self,
        ttl_seconds: int = 300,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10_000,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[Tenant, float]] = {}

    def get(self, key: str) -> Optional[Tenant]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            tenant, expires_at = entry
            if expires_at <= now or not tenant.is_active:
                self._entries.pop(key, None)
                return None
            return tenant

    def set(self, key: str, tenant: Tenant) -> None:
        if not tenant.is_active:
            return
        now = self._clock()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                stale = [k for k, (_, exp) in self._entries.items() if exp <= now]
                for k in stale:
                    self._entries.pop(k, None)
                if len(self._entries) >= self._max_entries:
                    # Drop the entry closest to expiry
                    oldest = min(self._entries, key=lambda k: self._entries[k][1])
                    self._entries.pop(oldest, None)
            self._entries[key] = (tenant, now + self.ttl_seconds)

    def invalidate(self, slug: Optional[str] = None, custom_domain: Optional[str] = None) -> None:
        with self._lock:
            if slug:
                self._entries.pop(f"slug:{slug}", None)
            if custom_domain:
                self._entries.pop(f"domain:{custom_domain.lower()}", None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class TenantResolver:
    """Resolves the active tenant for a request.

    Order: explicit ``X-Tenant-ID`` header (by id, uncached), then the host's
    custom domain or subdomain slug through the cache. Inactive tenants are
    never returned or cached. ``None`` means "proceed without a tenant".
    """

    def __init__(self, store: TenantStore, cache: TenantCache, *, base_domain: str) -> None:
        self.store = store
        self.cache = cache
        self.base_domain = base_domain

    def resolve(
        self, host: Optional[str], tenant_id_header: Optional[str] = None
    ) -> Optional[Tenant]:
        if tenant_id_header:
            tenant = self.store.get_tenant(tenant_id_header.strip())
            if tenant and tenant.is_active:
                return tenant
            logger.info("tenant_header_unresolved", tenant_id=tenant_id_header)

        lookup = extract_from_host(host, self.base_domain)
        return self._resolve_lookup(lookup)

    def _resolve_lookup(self, lookup: HostLookup) -> Optional[Tenant]:
        key = lookup.cache_key
        if key is None:
            return None
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        if lookup.slug:
            tenant = self.store.get_tenant_by_slug(lookup.slug)
        else:
            tenant = self.store.get_tenant_by_domain(lookup.custom_domain)
        if tenant is None or not tenant.is_active:
            return None
        self.cache.set(key, tenant)
        return tenant

    def invalidate(self, tenant: Tenant, *, previous_domain: Optional[str] = None) -> None:
        self.cache.invalidate(tenant.slug, tenant.custom_domain)
        if previous_domain and previous_domain != tenant.custom_domain:
            self.cache.invalidate(custom_domain=previous_domain)
        logger.info("tenant_cache_invalidated", tenant_id=tenant.id, slug=tenant.slug)


class TenantAdminStore(TenantStore, Protocol):
    def update_tenant(self, ctx: EnforcementContext, fields: Dict[str, Any]) -> Optional[Tenant]: ...

    def deactivate_tenant(self, ctx: EnforcementContext) -> Optional[Tenant]: ...

    def delete_tenant_sessions(self, ctx: EnforcementContext) -> int: ...


class TenantAdmin:
    """Public tenant lookup and settings changes for the caller's own tenant."""

    def __init__(
        self,
        store: TenantAdminStore,
        resolver: TenantResolver,
        *,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.audit = audit

    def get_public(self, slug: str) -> Tenant:
        tenant = self.store.get_tenant_by_slug(slug.strip().lower())
        if tenant is None:
            raise NotFoundError("Tenant not found")
        if not tenant.is_active:
            raise ForbiddenError("Tenant account is disabled")
        return tenant

    def update(
        self,
        actor_id: str,
        ctx: EnforcementContext,
        fields: Dict[str, Any],
    ) -> Tenant:
        current = self.store.get_tenant(ctx.tenant_id)
        if current is None:
            raise NotFoundError("Tenant not found")
        try:
            updated = self.store.update_tenant(ctx, fields)
        except ConstraintViolation as exc:
            raise ConflictError("Custom domain already in use", detail=exc.detail) from exc
        if updated is None:
            raise NotFoundError("Tenant not found")
        self.resolver.invalidate(updated, previous_domain=current.custom_domain)
        revoked = 0
        if current.is_active and not updated.is_active:
            revoked = self.store.delete_tenant_sessions(ctx)
        if self.audit:
            self.audit.record(
                ctx.tenant_id,
                actor_id,
                AuditAction.TENANT_UPDATED,
                entity_type="tenant",
                entity_id=ctx.tenant_id,
                metadata={"fields": sorted(fields), "sessions_revoked": revoked},
            )
        return updated

    def deactivate(self, actor_id: str, actor_role: str, ctx: EnforcementContext) -> Tenant:
        if Role.parse(actor_role) is not Role.OWNER:
            raise ForbiddenError("Only OWNER can deactivate the tenant")
        updated = self.store.deactivate_tenant(ctx)
        if updated is None:
            raise NotFoundError("Tenant not found")
        self.resolver.invalidate(updated)
        revoked = self.store.delete_tenant_sessions(ctx)
        logger.warning(
            "tenant_deactivated",
            tenant_id=ctx.tenant_id,
            actor_id=actor_id,
            sessions_revoked=revoked,
        )
        if self.audit:
            self.audit.record(
                ctx.tenant_id,
                actor_id,
                AuditAction.TENANT_DEACTIVATED,
                entity_type="tenant",
                entity_id=ctx.tenant_id,
                metadata={"sessions_revoked": revoked},
            )
        return updated

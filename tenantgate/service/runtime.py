from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tenantgate.config import get_settings, reset_settings_cache
from tenantgate.logging import get_logger
from tenantgate.service.audit import AuditSink
from tenantgate.service.auth import AuthService
from tenantgate.service.email import EmailService
from tenantgate.service.invitations import InvitationService
from tenantgate.service.magic_link import MagicLinkService
from tenantgate.service.oauth import OAuthService
from tenantgate.service.rate_limit import (
    InMemoryWindowStore,
    RateLimiter,
    api_policy,
    auth_policy,
)
from tenantgate.service.tenants import TenantAdmin, TenantCache, TenantResolver
from tenantgate.service.tokens import TokenCodec
from tenantgate.service.users import UserDirectory
from tenantgate.storage.memory import MemoryStore
from tenantgate.storage.postgres import PostgresStore
from tenantgate.storage.redis_cache import RedisCache, RedisWindowStore, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: RedisCache | SyncRedisCache | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding a pool to per-test loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Rate limit windows and OAuth state are process-local only.",
                )

        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
        )
        self.audit = AuditSink(self.store)
        self.tenant_cache = TenantCache(self.settings.tenant_cache_ttl_seconds)
        self.tenants = TenantResolver(
            self.store,
            self.tenant_cache,
            base_domain=self.settings.platform_base_domain,
        )
        self.tenant_admin = TenantAdmin(self.store, self.tenants, audit=self.audit)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.auth = AuthService(self.store, self.codec, self.settings, audit=self.audit)
        self.users = UserDirectory(self.store, audit=self.audit)
        self.magic_links = MagicLinkService(
            self.store,
            self.auth,
            self.email,
            ttl_minutes=self.settings.magic_link_ttl_minutes,
            frontend_url=self.settings.frontend_url,
            audit=self.audit,
        )
        self.invitations = InvitationService(
            self.store,
            self.auth,
            self.email,
            ttl_hours=self.settings.invitation_ttl_hours,
            frontend_url=self.settings.frontend_url,
            audit=self.audit,
        )
        self.oauth = OAuthService(
            self.store,
            self.auth,
            self.settings,
            state_cache=self.cache,
            audit=self.audit,
        )
        window_store = RedisWindowStore(self.cache) if self.cache else InMemoryWindowStore()
        self.rate_limiter = RateLimiter(window_store)
        self.auth_limit = auth_policy(
            self.settings.auth_rate_limit_max, self.settings.auth_rate_limit_window_seconds
        )
        self.api_limit = api_policy(
            self.settings.api_rate_limit_max, self.settings.api_rate_limit_window_seconds
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            base_domain=self.settings.platform_base_domain,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for an existing
    runtime, then a locked re-check before construction.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache._sync_client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.warning("runtime_reset_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime

from __future__ import annotations

import base64
import hashlib
import secrets
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Protocol
from urllib.parse import urlencode, urlparse

import httpx
from cryptography.fernet import Fernet, InvalidToken

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.audit import AuditAction, AuditSink
from tenantgate.service.auth import AuthService, IssuedSession
from tenantgate.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    OAuthExchangeError,
    ServerError,
    ValidationError,
)
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import OAuthAccount, Tenant, User

logger = get_logger(__name__)

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
}

STATE_TTL = timedelta(minutes=10)
OAUTH_SIGNUP_ROLE = "STAFF"


class OAuthStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str, tenant_id: Optional[str] = None) -> Optional[User]: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def create_user(self, email: str, tenant_id: str, **kwargs: Any) -> User: ...

    def get_oauth_account(
        self, provider: str, provider_account_id: str
    ) -> Optional[OAuthAccount]: ...

    def list_oauth_accounts(self, user_id: str) -> List[OAuthAccount]: ...

    def upsert_oauth_account(
        self, user_id: str, provider: str, provider_account_id: str, **kwargs: Any
    ) -> OAuthAccount: ...

    def delete_oauth_account(self, user_id: str, provider: str) -> int: ...


class OAuthStateCache(Protocol):
    async def set_oauth_state(
        self, state: str, payload: dict[str, Any], expires_at: datetime
    ) -> None: ...

    async def pop_oauth_state(self, state: str) -> Optional[dict[str, Any]]: ...


@dataclass(frozen=True)
class OAuthIdentity:
    provider: str
    provider_account_id: str
    email: str
    email_verified: bool = False
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None


@dataclass(frozen=True)
class OAuthState:
    provider: str
    expires_at: datetime
    tenant_id: Optional[str] = None
    link_user_id: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["expires_at"] = self.expires_at.isoformat()
        return payload

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> Optional["OAuthState"]:
        try:
            expires_at = datetime.fromisoformat(data["expires_at"])
            provider = data["provider"]
        except (KeyError, TypeError, ValueError):
            return None
        return cls(
            provider=provider,
            expires_at=expires_at,
            tenant_id=data.get("tenant_id"),
            link_user_id=data.get("link_user_id"),
        )


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class OAuthService:
    """Provider code exchange plus find-or-create and account linking."""

    def __init__(
        self,
        store: OAuthStore,
        auth: AuthService,
        settings: Settings,
        *,
        state_cache: Optional[OAuthStateCache] = None,
        audit: Optional[AuditSink] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.store = store
        self.auth = auth
        self.settings = settings
        self.state_cache = state_cache
        self.audit = audit
        self.transport = transport
        self._clock = clock
        self._state_lock = threading.Lock()
        self._states: dict[str, OAuthState] = {}
        self._cipher = Fernet(
            _derive_cipher_key(settings.oauth_token_key or settings.jwt_secret)
        )

    # -- helpers --------------------------------------------------------

    def _get_credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        if provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        return None, None

    def _require_provider(self, provider: str) -> dict[str, str]:
        config = OAUTH_PROVIDERS.get(provider)
        if config is None:
            raise BadRequestError("Invalid OAuth provider", detail={"provider": provider})
        return config

    def _redirect_uri(self, provider: str) -> str:
        uri = self.settings.oauth_redirect_uri
        if not uri:
            logger.error("oauth_no_redirect_uri_configured", provider=provider)
            raise ServerError("OAuth redirect URI is not configured")
        uri = uri.replace("{provider}", provider)
        parsed = urlparse(uri)
        if parsed.scheme not in {"https", "http"} or not parsed.netloc:
            raise ServerError("OAuth redirect URI must be an absolute http(s) URL")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ServerError("Insecure redirect URI not allowed outside localhost")
        return uri

    def encrypt_token(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        return self._cipher.encrypt(value.encode()).decode()

    def decrypt_token(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            return self._cipher.decrypt(value.encode()).decode()
        except InvalidToken:
            logger.warning("oauth_token_decrypt_failed")
            return None

    def _purge_expired_states(self, now: datetime) -> None:
        stale = [k for k, v in self._states.items() if v.expires_at <= now]
        for key in stale:
            self._states.pop(key, None)

    # -- state ----------------------------------------------------------

    async def start(
        self,
        provider: str,
        *,
        tenant_id: Optional[str] = None,
        link_user_id: Optional[str] = None,
    ) -> dict[str, str]:
        config = self._require_provider(provider)
        client_id, _ = self._get_credentials(provider)
        if not client_id:
            logger.warning("oauth_not_configured", provider=provider)
            raise BadRequestError(f"OAuth provider {provider} is not configured")
        redirect_uri = self._redirect_uri(provider)

        now = self._clock()
        state = secrets.token_urlsafe(32)
        record = OAuthState(
            provider=provider,
            expires_at=now + STATE_TTL,
            tenant_id=tenant_id,
            link_user_id=link_user_id,
        )
        with self._state_lock:
            self._purge_expired_states(now)
            self._states[state] = record
        if self.state_cache:
            await self.state_cache.set_oauth_state(state, record.to_payload(), record.expires_at)

        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        return {
            "authorization_url": f"{config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    async def _pop_state(self, state: str, provider: str) -> OAuthState:
        with self._state_lock:
            record = self._states.pop(state, None) if state else None
        if self.state_cache and state:
            try:
                cached = await self.state_cache.pop_oauth_state(state)
            except Exception as exc:
                # Fail closed rather than risk replaying a consumed state
                logger.error("pop_oauth_state_failed", error=str(exc))
                raise AuthenticationError("Invalid or expired OAuth state") from exc
            if record is None and cached is not None:
                record = OAuthState.from_payload(cached)
        if record is None or record.provider != provider or record.expires_at <= self._clock():
            logger.info("oauth_state_rejected", provider=provider)
            raise AuthenticationError("Invalid or expired OAuth state")
        return record

    # -- provider exchange ---------------------------------------------

    def _parse_userinfo(self, provider: str, userinfo: dict[str, Any]) -> dict[str, Any]:
        if provider == "google":
            return {
                "provider_account_id": str(userinfo.get("id") or userinfo.get("sub") or ""),
                "email": userinfo.get("email"),
                "email_verified": bool(
                    userinfo.get("verified_email", userinfo.get("email_verified", False))
                ),
                "name": userinfo.get("name"),
                "avatar_url": userinfo.get("picture"),
            }
        return {
            "provider_account_id": str(userinfo.get("id") or ""),
            "email": userinfo.get("email"),
            # GitHub only exposes a public profile email once it has been verified
            "email_verified": bool(userinfo.get("email")),
            "name": userinfo.get("name") or userinfo.get("login"),
            "avatar_url": userinfo.get("avatar_url"),
        }

    async def exchange(self, provider: str, code: str) -> OAuthIdentity:
        """Trade an authorization code for the provider identity; non-2xx is fatal."""
        config = self._require_provider(provider)
        client_id, client_secret = self._get_credentials(provider)
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=provider)
            raise OAuthExchangeError(f"OAuth provider {provider} is not configured")
        if not code:
            raise OAuthExchangeError("Missing authorization code")
        redirect_uri = self._redirect_uri(provider)

        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self.transport
            ) as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    raise OAuthExchangeError("Provider did not return an access token")

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    raise OAuthExchangeError("Provider returned malformed user info")
                parsed = self._parse_userinfo(provider, userinfo)

                if provider == "github" and not parsed.get("email"):
                    emails_response = await client.get(
                        config["emails_url"], headers=userinfo_headers
                    )
                    emails_response.raise_for_status()
                    emails = emails_response.json()
                    primary = next(
                        (
                            e.get("email")
                            for e in emails or []
                            if isinstance(e, dict) and e.get("primary") and e.get("verified")
                        ),
                        None,
                    )
                    if primary:
                        parsed["email"] = primary
                        parsed["email_verified"] = True
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise OAuthExchangeError("OAuth provider rejected the request") from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_transport_error", provider=provider, error=str(exc))
            raise OAuthExchangeError("OAuth provider unreachable") from exc
        except ValueError as exc:
            logger.error("oauth_exchange_parse_error", provider=provider, error=str(exc))
            raise OAuthExchangeError("OAuth provider returned invalid JSON") from exc

        if not parsed.get("provider_account_id"):
            logger.error("oauth_identity_missing_uid", provider=provider)
            raise OAuthExchangeError("Provider identity is missing an id")
        if not parsed.get("email"):
            logger.error("oauth_identity_missing_email", provider=provider)
            raise OAuthExchangeError("Provider identity is missing an email")

        expires_in = token_result.get("expires_in")
        logger.info(
            "oauth_exchange_success",
            provider=provider,
            provider_account_id=parsed["provider_account_id"],
        )
        return OAuthIdentity(
            provider=provider,
            provider_account_id=parsed["provider_account_id"],
            email=str(parsed["email"]).strip().lower(),
            email_verified=parsed["email_verified"],
            name=parsed.get("name"),
            avatar_url=parsed.get("avatar_url"),
            access_token=access_token,
            refresh_token=token_result.get("refresh_token"),
            expires_in=int(expires_in) if isinstance(expires_in, (int, float)) else None,
            token_type=token_result.get("token_type"),
            scope=token_result.get("scope"),
        )

    # -- matching -------------------------------------------------------

    def _require_active(self, user: Optional[User]) -> User:
        if user is None:
            raise AuthenticationError("User not found")
        if not user.is_active:
            raise AuthenticationError("User account is disabled")
        tenant = self.store.get_tenant(user.tenant_id)
        if tenant is None or not tenant.is_active:
            raise AuthenticationError("Tenant account is disabled")
        return user

    def _save_account(self, user: User, identity: OAuthIdentity) -> OAuthAccount:
        expires_at = (
            self._clock() + timedelta(seconds=identity.expires_in)
            if identity.expires_in
            else None
        )
        return self.store.upsert_oauth_account(
            user.id,
            identity.provider,
            identity.provider_account_id,
            access_token=self.encrypt_token(identity.access_token),
            refresh_token=self.encrypt_token(identity.refresh_token),
            expires_at=expires_at,
            token_type=identity.token_type,
            scope=identity.scope,
        )

    def _record(self, user: User, action: str, **kwargs: Any) -> None:
        if self.audit:
            self.audit.record(user.tenant_id, user.id, action, **kwargs)

    def find_or_create(self, identity: OAuthIdentity, tenant_id: Optional[str]) -> User:
        """Resolve the local user for a provider identity.

        Precedence: existing link, then a verified email match (scoped to the
        state's tenant when one was bound), then a new STAFF user in that tenant.
        """
        existing = self.store.get_oauth_account(identity.provider, identity.provider_account_id)
        if existing:
            return self._require_active(self.store.get_user(existing.user_id))

        if identity.email_verified:
            match = self.store.get_user_by_email(identity.email, tenant_id)
            if match:
                user = self._require_active(match)
                account = self._save_account(user, identity)
                self._record(
                    user,
                    AuditAction.OAUTH_LINKED,
                    entity_type="oauth_account",
                    entity_id=account.id,
                    metadata={"provider": identity.provider},
                )
                return user

        if not tenant_id:
            raise ValidationError("Tenant ID is required for new OAuth users")
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant not found")
        if not tenant.is_active:
            raise AuthenticationError("Tenant account is disabled")
        try:
            user = self.store.create_user(
                identity.email,
                tenant.id,
                role=OAUTH_SIGNUP_ROLE,
                name=identity.name,
                email_verified_at=self._clock(),
            )
        except ConstraintViolation as exc:
            raise ConflictError("An account with this email already exists") from exc
        logger.info("oauth_user_created", user_id=user.id, tenant_id=tenant.id)
        self._record(
            user,
            AuditAction.USER_REGISTERED,
            entity_type="user",
            entity_id=user.id,
            metadata={"method": "oauth", "provider": identity.provider},
        )
        return user

    # -- flows ----------------------------------------------------------

    async def complete(
        self,
        provider: str,
        code: str,
        state: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        record = await self._pop_state(state, provider)
        if record.link_user_id:
            raise AuthenticationError("Invalid or expired OAuth state")
        identity = await self.exchange(provider, code)
        user = self.find_or_create(identity, record.tenant_id)
        issued = self.auth.issue_session(user)
        self._save_account(user, identity)
        self._record(
            user,
            AuditAction.USER_LOGIN,
            entity_type="user",
            entity_id=user.id,
            metadata={"method": "oauth", "provider": provider},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return issued

    async def link(self, user: User, provider: str, code: str, state: str) -> OAuthAccount:
        record = await self._pop_state(state, provider)
        if record.link_user_id != user.id:
            raise AuthenticationError("Invalid or expired OAuth state")
        identity = await self.exchange(provider, code)
        existing = self.store.get_oauth_account(provider, identity.provider_account_id)
        if existing and existing.user_id != user.id:
            raise ConflictError("OAuth account already linked to another user")
        try:
            account = self._save_account(user, identity)
        except ConstraintViolation as exc:
            raise ConflictError("OAuth account already linked to another user") from exc
        self._record(
            user,
            AuditAction.OAUTH_LINKED,
            entity_type="oauth_account",
            entity_id=account.id,
            metadata={"provider": provider},
        )
        return account

    def unlink(self, user_id: str, provider: str) -> int:
        self._require_provider(provider)
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        accounts = self.store.list_oauth_accounts(user_id)
        targeted = [a for a in accounts if a.provider == provider]
        if not targeted:
            raise NotFoundError("OAuth account not found")
        if not user.password_hash and len(accounts) - len(targeted) == 0:
            raise ValidationError("Cannot unlink last authentication method")
        removed = self.store.delete_oauth_account(user_id, provider)
        self._record(
            user,
            AuditAction.OAUTH_UNLINKED,
            entity_type="oauth_account",
            metadata={"provider": provider},
        )
        return removed

    def list_accounts(self, user_id: str) -> List[OAuthAccount]:
        return self.store.list_oauth_accounts(user_id)

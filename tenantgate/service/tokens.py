from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantgate.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_REQUIRED_CLAIMS = ("user_id", "tenant_id", "role", "email")

_pwd_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> str:
    return _pwd_hasher.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    """Check a plaintext password against an argon2 hash; never raises."""
    if not password_hash:
        return False
    try:
        return _pwd_hasher.verify(password_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError):
        logger.warning("password_hash_invalid")
        return False


class TokenCodec:
    """Signs and verifies HS256 bearer tokens carrying the session payload.

    Every token embeds ``user_id``, ``tenant_id``, ``role`` and ``email`` plus
    ``token_type``, ``iat``, ``exp``, ``jti``, ``iss`` and ``aud``. Expiry is
    enforced on verification: a token is valid while ``now < exp``. Access and
    refresh tokens share this shape and differ only in TTL and ``token_type``.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def sign_token(
        self, payload: dict[str, Any], ttl_seconds: int, *, token_type: str = ACCESS
    ) -> str:
        missing = [claim for claim in _REQUIRED_CLAIMS if not payload.get(claim)]
        if missing:
            raise ValueError(f"token payload missing claims: {', '.join(missing)}")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        now = self._clock()
        claims = {
            **payload,
            "token_type": token_type,
            "iat": int(now),
            "exp": now + ttl_seconds,
            "jti": uuid.uuid4().hex,
            "iss": self.issuer,
            "aud": self.audience,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(claims, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify_token(
        self, token: Optional[str], *, token_type: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        """Return the payload of a valid token, or None for anything else."""
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "replace")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            return None
        if any(not payload.get(claim) for claim in _REQUIRED_CLAIMS):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if self._clock() >= exp_ts:
            return None
        if token_type and payload.get("token_type") != token_type:
            return None
        return payload

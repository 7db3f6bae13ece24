"""Session token issuing and verification (HS256 JWT).

Claims carry a schema version (``ver``). Verification fails closed: a token
whose claims do not match the current schema is reported as
:class:`TokenSchemaStale` before the signature or expiry is looked at, so old
client-held tokens always lead to a fresh sign-in rather than a forgery alarm.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from tenantcrm.config import MIN_SIGNING_KEY_LENGTH, Settings
from tenantcrm.logging import get_logger
from tenantcrm.service.errors import (
    SigningKeyError,
    TokenExpired,
    TokenMalformed,
    TokenSchemaStale,
    TokenSignatureInvalid,
)

logger = get_logger(__name__)

CLAIMS_VERSION = 2
# Tokens minted before permissions were embedded carry no ``ver`` and no
# ``permissions``; the latter is what marks them stale.
MIN_CLAIMS_VERSION = 2
REQUIRED_CLAIMS = ("sub", "role", "tenant_id", "permissions", "exp")

_ALGORITHM = "HS256"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _split_token(token: str) -> tuple[dict[str, Any], dict[str, Any], str, str]:
    """Decode header and payload; raise TokenMalformed on any structural problem."""
    if not isinstance(token, str) or not token:
        raise TokenMalformed("empty token")
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        raise TokenMalformed("token must have three segments")
    header_b64, payload_b64, sig_b64 = parts
    try:
        header = json.loads(_decode_segment(header_b64))
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, UnicodeDecodeError, RecursionError) as exc:
        raise TokenMalformed("token segment undecodable") from exc
    if not isinstance(header, dict) or not isinstance(payload, dict):
        raise TokenMalformed("token segments must be JSON objects")
    return header, payload, f"{header_b64}.{payload_b64}", sig_b64


def decode_unverified(token: Optional[str]) -> Optional[dict[str, Any]]:
    """Return the payload without checking the signature, or None if undecodable.

    Only for clients, which cannot hold the signing key.
    """
    if not token:
        return None
    try:
        _, payload, _, _ = _split_token(token)
    except TokenMalformed:
        return None
    return payload


# Out-of-range values such as 1e400 decode to inf.
def _is_timestamp(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


@dataclass(frozen=True)
class SessionClaims:
    subject: str
    role: str
    tenant_id: str
    permissions: tuple[str, ...]
    expires_at: int
    issued_at: Optional[int] = None
    token_id: Optional[str] = None
    version: int = CLAIMS_VERSION

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SessionClaims":
        missing = [name for name in REQUIRED_CLAIMS if name not in payload]
        if missing:
            raise TokenSchemaStale(f"missing claims: {', '.join(missing)}")
        permissions = payload["permissions"]
        if not isinstance(permissions, list) or not all(
            isinstance(p, str) for p in permissions
        ):
            raise TokenSchemaStale("permissions claim must be a list of strings")
        for name in ("sub", "role", "tenant_id"):
            if not isinstance(payload[name], str) or not payload[name]:
                raise TokenSchemaStale(f"claim {name} has wrong shape")
        exp = payload["exp"]
        if not _is_timestamp(exp):
            raise TokenSchemaStale("exp claim must be a finite number")
        version = payload.get("ver", CLAIMS_VERSION)
        if isinstance(version, bool) or not isinstance(version, int) or version < MIN_CLAIMS_VERSION:
            raise TokenSchemaStale("claims version no longer accepted")
        iat = payload.get("iat")
        if iat is not None and not _is_timestamp(iat):
            raise TokenSchemaStale("iat claim must be a finite number")
        return cls(
            subject=payload["sub"],
            role=payload["role"],
            tenant_id=payload["tenant_id"],
            permissions=tuple(permissions),
            expires_at=int(exp),
            issued_at=int(iat) if iat is not None else None,
            token_id=payload.get("jti"),
            version=version,
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "sub": self.subject,
            "role": self.role,
            "tenant_id": self.tenant_id,
            "permissions": list(self.permissions),
            "ver": self.version,
            "exp": self.expires_at,
        }
        if self.issued_at is not None:
            payload["iat"] = self.issued_at
        if self.token_id:
            payload["jti"] = self.token_id
        return payload


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: int
    claims: SessionClaims = field(repr=False)


def _check_signing_key(secret: Optional[str]) -> bytes:
    if not secret or len(secret) < MIN_SIGNING_KEY_LENGTH:
        raise SigningKeyError("token signing key missing or shorter than minimum length")
    return secret.encode()


class TokenIssuer:
    """Mints signed session tokens. Construction fails if the key is unusable."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_seconds: int,
    ) -> None:
        self._key = _check_signing_key(secret)
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl_seconds=settings.access_token_ttl_seconds,
        )

    def issue(
        self,
        subject: str,
        role: str,
        tenant_id: str,
        permissions: Optional[Iterable[str]],
        *,
        now: Optional[float] = None,
    ) -> IssuedToken:
        if permissions is None:
            raise ValueError("permissions must be resolved before issuing a token")
        issued_at = int(time.time() if now is None else now)
        claims = SessionClaims(
            subject=subject,
            role=role,
            tenant_id=tenant_id,
            permissions=tuple(permissions),
            expires_at=issued_at + self.ttl_seconds,
            issued_at=issued_at,
            token_id=str(uuid.uuid4()),
        )
        payload = {"iss": self.issuer, "aud": self.audience, **claims.to_payload()}
        return IssuedToken(
            token=self.sign(payload), expires_at=claims.expires_at, claims=claims
        )

    def sign(self, payload: dict[str, Any]) -> str:
        """Sign an arbitrary payload; used directly only by tests and tooling."""
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{_encode_segment(signature)}"


class TokenVerifier:
    """Pure verification of session tokens: no I/O, no shared mutable state."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
    ) -> None:
        self._key = _check_signing_key(secret)
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenVerifier":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.token_leeway_seconds,
        )

    def verify(self, token: str, *, now: Optional[float] = None) -> SessionClaims:
        header, payload, signing_input, sig_b64 = _split_token(token)

        claims = SessionClaims.from_payload(payload)

        if header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenSignatureInvalid("unexpected signing algorithm")
        expected_sig = _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenSignatureInvalid("signature mismatch")
        if payload.get("iss") != self.issuer or not self._audience_ok(payload.get("aud")):
            raise TokenSignatureInvalid("issuer or audience mismatch")

        current = time.time() if now is None else now
        if current > claims.expires_at + self.leeway_seconds:
            raise TokenExpired()
        return claims

    def _audience_ok(self, aud: Any) -> bool:
        if isinstance(aud, str):
            return aud == self.audience
        if isinstance(aud, list):
            return self.audience in aud
        return False


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def first_token(candidates: Sequence[Optional[str]]) -> Optional[str]:
    return next((c for c in candidates if c), None)

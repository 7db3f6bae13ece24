"""RFC 6238 time-based one-time codes (HMAC-SHA1, 6 digits, 30 second step)."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
import secrets
import time
from typing import Optional
from urllib.parse import quote, urlencode

from tenantcrm.logging import get_logger

logger = get_logger(__name__)

DIGITS = 6
INTERVAL = 30
_CODE_RE = re.compile(r"[0-9]{6}")


def generate_secret(num_bytes: int = 20) -> str:
    """Random base32 secret without padding, as authenticator apps expect."""
    return base64.b32encode(secrets.token_bytes(num_bytes)).decode("ascii").rstrip("=")


def normalize_code(code: Optional[str]) -> Optional[str]:
    """Return the 6-digit code, or None if the input cannot possibly be valid."""
    if not isinstance(code, str):
        return None
    candidate = code.strip()
    if not _CODE_RE.fullmatch(candidate):
        return None
    return candidate


def generate_code(
    secret: str, timestamp: float, *, interval: int = INTERVAL, digits: int = DIGITS
) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_code(
    secret: str,
    code: Optional[str],
    *,
    window: int = 1,
    now: Optional[float] = None,
    interval: int = INTERVAL,
) -> bool:
    """Check ``code`` against the current step and ``window`` steps either side.

    Malformed input is rejected before any HMAC is computed.
    """
    candidate = normalize_code(code)
    if candidate is None or not secret:
        return False
    current = time.time() if now is None else now
    matched = False
    for offset in range(-window, window + 1):
        generated = generate_code(secret, current + offset * interval, interval=interval)
        # constant-time; keep looping so timing does not reveal the matching step
        if generated and hmac.compare_digest(generated, candidate):
            matched = True
    return matched


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    """``otpauth://`` URI to render as a QR code for authenticator apps."""
    label = quote(f"{issuer}:{account_name}", safe="")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": DIGITS,
            "period": INTERVAL,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{params}"

"""Storage helpers shared between the memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from tenantcrm.logging import get_logger

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class SecretCipher:
    """Fernet wrapper for two-factor secrets at rest.

    Key material is stretched with SHA-256 so any sufficiently long string
    (``MFA_SECRET_KEY`` or the JWT signing key) can be used.
    """

    def __init__(self, key_material: Optional[str] = None) -> None:
        material = (
            key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        )
        if not material:
            raise RuntimeError(
                "two-factor encryption key unavailable; set MFA_SECRET_KEY or JWT_SECRET"
            )
        self._fernet = Fernet(self._derive_key(material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            # unreadable after a key rotation; callers see no secret at all
            logger.warning("two_factor_secret_decrypt_failed")
            return None

from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "account_locked",
    "second_factor_required",
    "second_factor_invalid",
    "token_malformed",
    "token_signature_invalid",
    "token_expired",
    "token_schema_stale",
    "enrollment_not_started",
    "confirmation_password_incorrect",
    "two_factor_already_enabled",
    "invite_invalid",
    "invite_expired",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str = Field(..., min_length=1, max_length=128)
    company_name: Optional[str] = Field(default=None, max_length=128)
    tenant_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name", "company_name")
    @classmethod
    def _normalize_names(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_unicode(value).strip() if value is not None else None

    @model_validator(mode="after")
    def _reject_tenant_id(self):
        # joining an existing tenant happens through invitations, not self-signup
        if self.tenant_id:
            raise ValueError("tenant_id is managed server-side and cannot be provided")
        return self


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    code: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class InviteRequest(BaseModel):
    email: str
    role: str = Field(default="EMPLOYEE", min_length=1, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterWithInviteRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=128)
    password: str
    name: str = Field(..., min_length=1, max_length=128)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        return _normalize_unicode(value).strip()


class UserResponse(BaseModel):
    id: str
    email: str
    name: str = ""
    role: str
    tenant_id: str
    permissions: list[str] = Field(default_factory=list)
    two_factor_enabled: bool = False
    created_at: datetime
    last_login_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    token: str
    token_type: Literal["bearer"] = "bearer"
    expires_at: datetime
    user: UserResponse


class InviteResponse(BaseModel):
    token: str = Field(..., description="Shown once; share it with the invitee")
    email: str
    role: str
    tenant_id: str
    expires_at: datetime


class VerifyResponse(BaseModel):
    user: UserResponse


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., max_length=16)


class TwoFactorDisableRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class TwoFactorEnrollmentResponse(BaseModel):
    secret: str
    qr_payload: str = Field(..., description="otpauth:// URI to render as a QR code")
    expires_at: datetime


class TwoFactorStatusResponse(BaseModel):
    state: Literal["disabled", "enrolling", "enabled"]
    enabled: bool

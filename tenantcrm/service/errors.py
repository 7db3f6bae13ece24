from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``. Generic codes:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)

    Authentication failures carry their own, more specific codes so clients
    can tell "bad password" from "second factor required" from "token stale".
    ``user_message`` is what the API boundary shows; ``message`` may carry
    internal context for logs and is never rendered to clients.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    user_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def public_message(self) -> str:
        return self.user_message or self.message


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Credential and second-factor failures


class InvalidCredentials(AuthenticationError):
    error_code = "invalid_credentials"
    user_message = "invalid email or password"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(AuthenticationError):
    error_code = "account_locked"
    user_message = "account temporarily locked, try again later"

    def __init__(self, message: str = "account locked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SecondFactorRequired(AuthenticationError):
    error_code = "second_factor_required"
    user_message = "two-factor code required"

    def __init__(self, message: str = "second factor required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SecondFactorInvalid(AuthenticationError):
    """A submitted time-based code did not match the shared secret."""

    error_code = "second_factor_invalid"
    user_message = "invalid two-factor code"

    def __init__(self, message: str = "invalid second factor code", **kwargs) -> None:
        super().__init__(message, **kwargs)


CodeInvalid = SecondFactorInvalid


class SecondFactorLocked(RateLimitedError):
    user_message = "too many two-factor attempts, try again later"

    def __init__(self, message: str = "second factor locked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EnrollmentNotStarted(ValidationError):
    error_code = "enrollment_not_started"
    user_message = "two-factor setup has not been started"

    def __init__(self, message: str = "no pending enrollment", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConfirmationPasswordIncorrect(AuthenticationError):
    error_code = "confirmation_password_incorrect"
    user_message = "password confirmation failed"

    def __init__(self, message: str = "confirmation password incorrect", **kwargs) -> None:
        super().__init__(message, **kwargs)


# Invitations


class InviteInvalid(AuthenticationError):
    """Unknown or already used invite token."""

    error_code = "invite_invalid"
    user_message = "invalid invite token"

    def __init__(self, message: str = "invite invalid", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InviteExpired(InviteInvalid):
    error_code = "invite_expired"
    user_message = "invite token has expired"

    def __init__(self, message: str = "invite expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


# Token verification failures


class TokenError(AuthenticationError):
    """Base for token verification failures; all require re-authentication."""

    user_message = "invalid session"


class TokenMalformed(TokenError):
    error_code = "token_malformed"
    user_message = "invalid session token"

    def __init__(self, message: str = "token malformed", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenSignatureInvalid(TokenError):
    error_code = "token_signature_invalid"
    user_message = "invalid session token"

    def __init__(self, message: str = "token signature invalid", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpired(TokenError):
    error_code = "token_expired"
    user_message = "session expired, please sign in again"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenSchemaStale(TokenError):
    error_code = "token_schema_stale"
    user_message = "session outdated, please sign in again"

    def __init__(self, message: str = "token schema stale", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SigningKeyError(RuntimeError):
    """Token signing key is missing or too weak; the process must not start."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentials",
    "AccountLocked",
    "SecondFactorRequired",
    "SecondFactorInvalid",
    "CodeInvalid",
    "SecondFactorLocked",
    "EnrollmentNotStarted",
    "ConfirmationPasswordIncorrect",
    "InviteInvalid",
    "InviteExpired",
    "TokenError",
    "TokenMalformed",
    "TokenSignatureInvalid",
    "TokenExpired",
    "TokenSchemaStale",
    "SigningKeyError",
]

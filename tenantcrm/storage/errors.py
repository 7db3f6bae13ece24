from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or reference constraint was violated by a store write.

    ``constraint`` names the violated rule (e.g. ``account_email_unique``) so
    the API layer can map it to a 409 without parsing driver messages.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.constraint = constraint
        self.detail = detail or {}


class StoreUnavailable(RuntimeError):
    """The backing store could not be reached or initialised."""


__all__ = ["ConstraintViolation", "StoreUnavailable"]

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    SALES = "SALES"
    EMPLOYEE = "EMPLOYEE"
    MEMBER = "MEMBER"


@dataclass
class Tenant:
    id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, name: str) -> "Tenant":
        return cls(id=str(uuid.uuid4()), name=name)


# Two-factor state is a tagged union: a secret only exists alongside the
# state that owns it, so "secret present but not enabled" is unrepresentable.


@dataclass(frozen=True)
class TwoFactorDisabled:
    state: str = field(default="disabled", init=False)


@dataclass(frozen=True)
class TwoFactorEnrolling:
    secret: str
    started_at: datetime = field(default_factory=utcnow)
    state: str = field(default="enrolling", init=False)

    def expired(self, ttl_minutes: int, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now >= self.started_at + timedelta(minutes=ttl_minutes)


@dataclass(frozen=True)
class TwoFactorEnabled:
    secret: str
    enabled_at: datetime = field(default_factory=utcnow)
    state: str = field(default="enabled", init=False)


TwoFactorState = Union[TwoFactorDisabled, TwoFactorEnrolling, TwoFactorEnabled]

TWO_FACTOR_DISABLED = TwoFactorDisabled()


def two_factor_to_record(state: TwoFactorState) -> Dict[str, Optional[str]]:
    """Flatten a two-factor state into the columns persisted by the stores."""
    if isinstance(state, TwoFactorEnabled):
        return {
            "state": state.state,
            "secret": state.secret,
            "since": state.enabled_at.isoformat(),
        }
    if isinstance(state, TwoFactorEnrolling):
        return {
            "state": state.state,
            "secret": state.secret,
            "since": state.started_at.isoformat(),
        }
    return {"state": "disabled", "secret": None, "since": None}


def two_factor_from_record(record: Optional[Dict[str, Optional[str]]]) -> TwoFactorState:
    if not record:
        return TWO_FACTOR_DISABLED
    state = record.get("state")
    secret = record.get("secret")
    since_raw = record.get("since")
    since = _parse_datetime(since_raw) if since_raw else utcnow()
    if state == "enabled" and secret:
        return TwoFactorEnabled(secret=secret, enabled_at=since)
    if state == "enrolling" and secret:
        return TwoFactorEnrolling(secret=secret, started_at=since)
    return TWO_FACTOR_DISABLED


def _parse_datetime(value) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Account:
    id: str
    email: str
    tenant_id: str
    name: str = ""
    role: str = Role.EMPLOYEE.value
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    two_factor: TwoFactorState = field(default_factory=TwoFactorDisabled)

    @property
    def two_factor_enabled(self) -> bool:
        return isinstance(self.two_factor, TwoFactorEnabled)

    @property
    def two_factor_secret(self) -> Optional[str]:
        if isinstance(self.two_factor, TwoFactorEnabled):
            return self.two_factor.secret
        return None

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.locked_until is None:
            return False
        return (now or utcnow()) < self.locked_until


@dataclass
class Invite:
    """Pending invitation into an existing tenant.

    Only a digest of the invite token is kept; the token itself is handed to
    the inviter once and never stored.
    """

    id: str
    token_hash: str
    email: str
    tenant_id: str
    role: str
    invited_by: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from tenantcrm.config import Settings
from tenantcrm.logging import get_logger
from tenantcrm.service import totp
from tenantcrm.service.errors import (
    ConfirmationPasswordIncorrect,
    ConflictError,
    EnrollmentNotStarted,
    NotFoundError,
    SecondFactorInvalid,
    SecondFactorLocked,
)
from tenantcrm.storage.models import (
    TWO_FACTOR_DISABLED,
    Account,
    TwoFactorDisabled,
    TwoFactorEnabled,
    TwoFactorEnrolling,
    TwoFactorState,
)
from tenantcrm.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class TwoFactorStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_two_factor(self, account_id: str) -> TwoFactorState: ...

    def set_two_factor(
        self,
        account_id: str,
        state: TwoFactorState,
        *,
        expected: Optional[TwoFactorState] = None,
    ) -> bool: ...


class AccountNotifier(Protocol):
    async def emit_to_user(self, account_id: str, event: str, data: Any) -> int: ...


@dataclass(frozen=True)
class Enrollment:
    """What the caller shows the user: the secret and its QR payload."""

    secret: str
    qr_payload: str
    expires_at: datetime


class TwoFactorService:
    """Two-factor lifecycle: Disabled -> Enrolling -> Enabled -> Disabled.

    Every transition is a single ``set_two_factor`` write guarded by the state
    it was computed from, so a concurrent disable can never leave the account
    enabled without a secret.
    """

    def __init__(
        self,
        store: TwoFactorStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        verify_password: Callable[[str, str], bool],
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._verify_password = verify_password
        self._clock = clock
        # in-process lockout bookkeeping when no Redis is configured
        self._state_lock = threading.Lock()
        self._attempts: dict[str, tuple[int, datetime]] = {}
        self._lockouts: dict[str, datetime] = {}
        # set by the runtime once the notification hub exists
        self.notifier: Optional[AccountNotifier] = None

    def _now(self) -> datetime:
        return self._clock()

    def current_state(self, account_id: str) -> TwoFactorState:
        """Stored state with abandoned enrollments folded into Disabled."""
        state = self.store.get_two_factor(account_id)
        if isinstance(state, TwoFactorEnrolling) and state.expired(
            self.settings.two_factor_enrollment_ttl_minutes, self._now()
        ):
            return TWO_FACTOR_DISABLED
        return state

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        return account

    async def start_enrollment(self, account_id: str) -> Enrollment:
        account = self._require_account(account_id)
        current = self.current_state(account_id)
        if isinstance(current, TwoFactorEnabled):
            raise ConflictError(
                "two-factor already enabled; disable it before enrolling again",
                error_code="two_factor_already_enabled",
            )
        secret = totp.generate_secret()
        pending = TwoFactorEnrolling(secret=secret, started_at=self._now())
        # a restarted enrollment replaces the previous pending secret
        self.store.set_two_factor(account_id, pending)
        logger.info("two_factor_enrollment_started", account_id=account_id)
        return Enrollment(
            secret=secret,
            qr_payload=totp.provisioning_uri(
                secret, account.email, self.settings.two_factor_issuer
            ),
            expires_at=pending.started_at
            + timedelta(minutes=self.settings.two_factor_enrollment_ttl_minutes),
        )

    async def verify_enrollment(self, account_id: str, code: str) -> TwoFactorEnabled:
        self._require_account(account_id)
        pending = self.current_state(account_id)
        if not isinstance(pending, TwoFactorEnrolling):
            raise EnrollmentNotStarted()
        await self._check_code(account_id, pending.secret, code)
        enabled = TwoFactorEnabled(secret=pending.secret, enabled_at=self._now())
        if not self.store.set_two_factor(account_id, enabled, expected=pending):
            # lost a race with another verify, restart, cancel or disable
            latest = self.current_state(account_id)
            if isinstance(latest, TwoFactorEnabled):
                return latest
            raise EnrollmentNotStarted("enrollment changed during verification")
        logger.info("two_factor_enabled", account_id=account_id)
        await self._notify(
            account_id, "two_factor_enabled", {"enabled_at": enabled.enabled_at.isoformat()}
        )
        return enabled

    async def cancel_enrollment(self, account_id: str) -> None:
        self._require_account(account_id)
        stored = self.store.get_two_factor(account_id)
        if not isinstance(stored, TwoFactorEnrolling):
            raise EnrollmentNotStarted()
        self.store.set_two_factor(account_id, TWO_FACTOR_DISABLED, expected=stored)
        logger.info("two_factor_enrollment_cancelled", account_id=account_id)

    async def challenge(self, account: Account, code: str) -> None:
        """Second factor at login; raises SecondFactorInvalid or SecondFactorLocked."""
        state = self.store.get_two_factor(account.id)
        if not isinstance(state, TwoFactorEnabled):
            return
        await self._check_code(account.id, state.secret, code)

    async def disable(self, account_id: str, password: str) -> None:
        self._require_account(account_id)
        if not password or not self._verify_password(account_id, password):
            logger.warning("two_factor_disable_password_rejected", account_id=account_id)
            raise ConfirmationPasswordIncorrect()
        self.store.set_two_factor(account_id, TwoFactorDisabled())
        await self._clear_attempts(account_id)
        logger.info("two_factor_disabled", account_id=account_id)
        await self._notify(account_id, "two_factor_disabled", None)

    async def _notify(self, account_id: str, event: str, data: Any) -> None:
        if self.notifier is None:
            return
        delivered = await self.notifier.emit_to_user(account_id, event, data)
        logger.debug("account_event_emitted", event_name=event, delivered=delivered)

    async def _check_code(self, account_id: str, secret: str, code: str) -> None:
        if await self._is_locked_out(account_id):
            logger.warning("two_factor_locked_out", account_id=account_id)
            raise SecondFactorLocked()
        if not totp.verify_code(
            secret,
            code,
            window=self.settings.two_factor_window_steps,
            now=self._now().timestamp(),
        ):
            await self._record_failure(account_id)
            raise SecondFactorInvalid()
        await self._clear_attempts(account_id)

    async def _is_locked_out(self, account_id: str) -> bool:
        if self.cache:
            return await self.cache.check_two_factor_lockout(account_id)
        now = self._now()
        with self._state_lock:
            locked_until = self._lockouts.get(account_id)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._lockouts.pop(account_id, None)
        return False

    async def _record_failure(self, account_id: str) -> None:
        max_attempts = self.settings.two_factor_max_attempts
        lockout_seconds = self.settings.two_factor_lockout_seconds
        if not max_attempts:
            return
        if self.cache:
            locked, attempts = await self.cache.record_two_factor_failure(
                account_id, max_attempts=max_attempts, lockout_seconds=lockout_seconds
            )
            if locked and attempts >= 0:
                logger.warning(
                    "two_factor_lockout_triggered", account_id=account_id, attempts=attempts
                )
            return
        now = self._now()
        window = timedelta(seconds=lockout_seconds)
        with self._state_lock:
            count, window_start = self._attempts.get(account_id, (0, now))
            if now - window_start >= window:
                count, window_start = 0, now
            count += 1
            if count >= max_attempts:
                self._lockouts[account_id] = now + window
                self._attempts.pop(account_id, None)
                logger.warning(
                    "two_factor_lockout_triggered", account_id=account_id, attempts=count
                )
            else:
                self._attempts[account_id] = (count, window_start)

    async def _clear_attempts(self, account_id: str) -> None:
        if self.cache:
            await self.cache.clear_two_factor_attempts(account_id)
            return
        with self._state_lock:
            self._attempts.pop(account_id, None)

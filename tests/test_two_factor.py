"""Tests for the two-factor lifecycle.

Disabled -> Enrolling -> Enabled -> Disabled, plus abandonment by cancel or
timeout, restart semantics and attempt lockout.
"""

from datetime import datetime, timedelta, timezone

import pytest

from tenantcrm.config import Settings
from tenantcrm.service import totp
from tenantcrm.service.errors import (
    ConfirmationPasswordIncorrect,
    ConflictError,
    EnrollmentNotStarted,
    SecondFactorInvalid,
    SecondFactorLocked,
)
from tenantcrm.service.two_factor import TwoFactorService
from tenantcrm.storage.memory import MemoryStore
from tenantcrm.storage.models import TwoFactorDisabled, TwoFactorEnabled, TwoFactorEnrolling

SECRET = "unit-test-signing-key-0123456789abcdef"
PASSWORD = "correct-password"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self):
        self.events = []

    async def emit_to_user(self, account_id, event, data):
        self.events.append((account_id, event, data))
        return 1


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=SECRET,
        two_factor_max_attempts=3,
        two_factor_lockout_seconds=300,
        two_factor_enrollment_ttl_minutes=10,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=SECRET)


@pytest.fixture
def account(store):
    return store.register_account(
        "ann@example.com",
        password_hash="hash",
        password_algo="argon2id",
        name="Ann",
        tenant_name="Acme",
    )


@pytest.fixture
def service(store, settings, clock):
    return TwoFactorService(
        store,
        None,
        settings,
        verify_password=lambda account_id, password: password == PASSWORD,
        clock=clock,
    )


def _code(secret, clock):
    return totp.generate_code(secret, clock.now.timestamp())


def _wrong_code(secret, clock):
    return next(
        candidate
        for candidate in ("000000", "111111", "222222", "333333")
        if not totp.verify_code(secret, candidate, now=clock.now.timestamp())
    )


async def _enable(service, account, clock):
    enrollment = await service.start_enrollment(account.id)
    await service.verify_enrollment(account.id, _code(enrollment.secret, clock))
    return enrollment.secret


class TestEnrollment:
    async def test_start_returns_secret_and_qr_payload(self, service, store, account, clock):
        enrollment = await service.start_enrollment(account.id)

        assert enrollment.qr_payload.startswith("otpauth://totp/")
        assert f"secret={enrollment.secret}" in enrollment.qr_payload
        assert enrollment.expires_at == clock.now + timedelta(minutes=10)
        state = store.get_two_factor(account.id)
        assert isinstance(state, TwoFactorEnrolling)
        assert state.secret == enrollment.secret
        assert not store.get_account(account.id).two_factor_enabled

    async def test_verify_with_valid_code_enables(self, service, store, account, clock):
        enrollment = await service.start_enrollment(account.id)

        enabled = await service.verify_enrollment(account.id, _code(enrollment.secret, clock))

        assert isinstance(enabled, TwoFactorEnabled)
        refreshed = store.get_account(account.id)
        assert refreshed.two_factor_enabled
        assert refreshed.two_factor_secret == enrollment.secret

    async def test_verify_with_wrong_code_keeps_pending(self, service, store, account, clock):
        enrollment = await service.start_enrollment(account.id)
        wrong = _wrong_code(enrollment.secret, clock)

        with pytest.raises(SecondFactorInvalid):
            await service.verify_enrollment(account.id, wrong)

        assert isinstance(store.get_two_factor(account.id), TwoFactorEnrolling)

    async def test_verify_without_start_fails(self, service, account):
        with pytest.raises(EnrollmentNotStarted):
            await service.verify_enrollment(account.id, "123456")

    async def test_restart_replaces_pending_secret(self, service, account, clock):
        first = await service.start_enrollment(account.id)
        second = await service.start_enrollment(account.id)
        assert first.secret != second.secret

        first_code = _code(first.secret, clock)
        if not totp.verify_code(second.secret, first_code, now=clock.now.timestamp()):
            with pytest.raises(SecondFactorInvalid):
                await service.verify_enrollment(account.id, first_code)
        await service.verify_enrollment(account.id, _code(second.secret, clock))

    async def test_start_while_enabled_conflicts(self, service, account, clock):
        await _enable(service, account, clock)

        with pytest.raises(ConflictError) as excinfo:
            await service.start_enrollment(account.id)
        assert excinfo.value.error_code == "two_factor_already_enabled"

    async def test_expired_enrollment_counts_as_disabled(self, service, account, clock):
        enrollment = await service.start_enrollment(account.id)
        clock.advance(minutes=11)

        assert isinstance(service.current_state(account.id), TwoFactorDisabled)
        with pytest.raises(EnrollmentNotStarted):
            await service.verify_enrollment(account.id, _code(enrollment.secret, clock))

    async def test_cancel_abandons_enrollment(self, service, store, account):
        await service.start_enrollment(account.id)

        await service.cancel_enrollment(account.id)

        assert isinstance(store.get_two_factor(account.id), TwoFactorDisabled)
        with pytest.raises(EnrollmentNotStarted):
            await service.cancel_enrollment(account.id)


class TestDisable:
    async def test_wrong_password_keeps_enabled(self, service, store, account, clock):
        await _enable(service, account, clock)

        with pytest.raises(ConfirmationPasswordIncorrect):
            await service.disable(account.id, "nope")

        assert store.get_account(account.id).two_factor_enabled

    async def test_disable_clears_secret(self, service, store, account, clock):
        await _enable(service, account, clock)

        await service.disable(account.id, PASSWORD)

        refreshed = store.get_account(account.id)
        assert not refreshed.two_factor_enabled
        assert refreshed.two_factor_secret is None
        assert isinstance(store.get_two_factor(account.id), TwoFactorDisabled)

    async def test_can_enroll_again_after_disable(self, service, account, clock):
        first_secret = await _enable(service, account, clock)
        await service.disable(account.id, PASSWORD)

        enrollment = await service.start_enrollment(account.id)
        assert enrollment.secret != first_secret


class TestChallengeAndLockout:
    async def test_challenge_accepts_current_code(self, service, store, account, clock):
        secret = await _enable(service, account, clock)
        await service.challenge(store.get_account(account.id), _code(secret, clock))

    async def test_repeated_failures_lock_out(self, service, store, account, clock):
        secret = await _enable(service, account, clock)
        enabled_account = store.get_account(account.id)
        wrong = _wrong_code(secret, clock)

        for _ in range(3):
            with pytest.raises(SecondFactorInvalid):
                await service.challenge(enabled_account, wrong)

        with pytest.raises(SecondFactorLocked):
            await service.challenge(enabled_account, _code(secret, clock))

        clock.advance(seconds=301)
        await service.challenge(enabled_account, _code(secret, clock))

    async def test_success_resets_failure_count(self, service, store, account, clock):
        secret = await _enable(service, account, clock)
        enabled_account = store.get_account(account.id)
        wrong = _wrong_code(secret, clock)

        for _ in range(2):
            with pytest.raises(SecondFactorInvalid):
                await service.challenge(enabled_account, wrong)
        await service.challenge(enabled_account, _code(secret, clock))
        for _ in range(2):
            with pytest.raises(SecondFactorInvalid):
                await service.challenge(enabled_account, wrong)
        await service.challenge(enabled_account, _code(secret, clock))


class TestAccountEvents:
    @pytest.fixture
    def notifier(self, service):
        service.notifier = RecordingNotifier()
        return service.notifier

    async def test_enable_is_announced_to_the_user(self, service, account, clock, notifier):
        enrollment = await service.start_enrollment(account.id)
        assert notifier.events == []

        await service.verify_enrollment(account.id, _code(enrollment.secret, clock))

        assert notifier.events == [
            (account.id, "two_factor_enabled", {"enabled_at": clock.now.isoformat()})
        ]

    async def test_disable_is_announced_to_the_user(self, service, account, clock, notifier):
        await _enable(service, account, clock)

        await service.disable(account.id, PASSWORD)

        assert notifier.events[-1] == (account.id, "two_factor_disabled", None)

    async def test_failed_transitions_stay_silent(self, service, account, clock, notifier):
        enrollment = await service.start_enrollment(account.id)
        with pytest.raises(SecondFactorInvalid):
            await service.verify_enrollment(account.id, _wrong_code(enrollment.secret, clock))
        await service.verify_enrollment(account.id, _code(enrollment.secret, clock))
        notifier.events.clear()

        with pytest.raises(ConfirmationPasswordIncorrect):
            await service.disable(account.id, "nope")

        assert notifier.events == []

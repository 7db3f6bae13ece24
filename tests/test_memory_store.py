import json
from datetime import datetime, timedelta, timezone

import pytest

from tenantcrm.storage.errors import ConstraintViolation
from tenantcrm.storage.memory import MemoryStore
from tenantcrm.storage.models import (
    TWO_FACTOR_DISABLED,
    Invite,
    TwoFactorEnabled,
    TwoFactorEnrolling,
    utcnow,
)

KEY = "memory-store-test-key-0123456789abcdef"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)


@pytest.fixture
def account(store):
    return _register(store, "Ann@Example.com", tenant_name="Acme")


def _register(store, email, **fields):
    fields.setdefault("name", "Ann")
    return store.register_account(
        email, password_hash="hash", password_algo="argon2id", **fields
    )


def _invite(store, tenant_id, token_hash="digest-1", hours=24):
    created = utcnow()
    return store.create_invite(
        Invite(
            id="inv-1",
            token_hash=token_hash,
            email="new@example.com",
            tenant_id=tenant_id,
            role="SALES",
            invited_by="a1",
            expires_at=created + timedelta(hours=hours),
            created_at=created,
        )
    )


def test_email_is_normalized_and_unique(store, account):
    assert account.email == "ann@example.com"
    assert store.get_account_by_email("ANN@example.com").id == account.id
    with pytest.raises(ConstraintViolation):
        _register(store, "ann@example.com", tenant_id=account.tenant_id)


def test_account_requires_existing_tenant(store):
    with pytest.raises(ConstraintViolation):
        _register(store, "x@example.com", tenant_id="missing")
    assert store.accounts == {}


def test_register_needs_exactly_one_tenant_source(store, account):
    with pytest.raises(ValueError):
        _register(store, "x@example.com")
    with pytest.raises(ValueError):
        _register(store, "x@example.com", tenant_id=account.tenant_id, tenant_name="Other")


def test_register_writes_tenant_account_and_password_together(store, account):
    assert store.get_tenant(account.tenant_id).name == "Acme"
    assert store.get_password_record(account.id) == ("hash", "argon2id")


def test_duplicate_registration_creates_no_tenant(store, account):
    with pytest.raises(ConstraintViolation) as excinfo:
        _register(store, "ann@example.com", tenant_name="Second")

    assert excinfo.value.constraint == "account_email_unique"
    assert list(store.tenants) == [account.tenant_id]
    assert list(store.credentials) == [account.id]


def test_register_consumes_invite(store, account):
    invite = _invite(store, account.tenant_id)

    joined = _register(
        store,
        "new@example.com",
        tenant_id=account.tenant_id,
        role="SALES",
        invite_token_hash=invite.token_hash,
    )

    assert joined.tenant_id == account.tenant_id
    assert store.get_invite(invite.token_hash) is None


def test_consumed_invite_blocks_registration(store, account):
    with pytest.raises(ConstraintViolation) as excinfo:
        _register(
            store, "new@example.com", tenant_id=account.tenant_id, invite_token_hash="gone"
        )
    assert excinfo.value.constraint == "invite_consumed"
    assert store.get_account_by_email("new@example.com") is None


def test_invite_requires_existing_tenant(store):
    with pytest.raises(ConstraintViolation):
        _invite(store, "missing")


def test_invites_persist_and_delete(tmp_path, store, account):
    invite = _invite(store, account.tenant_id)

    reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)
    assert reloaded.get_invite(invite.token_hash) == invite

    assert reloaded.delete_invite(invite.token_hash)
    assert not reloaded.delete_invite(invite.token_hash)
    assert reloaded.get_invite(invite.token_hash) is None


def test_memory_store_persists_accounts_and_two_factor(tmp_path, store, account):
    store.set_two_factor(
        account.id,
        TwoFactorEnabled(secret="JBSWY3DPEHPK3PXP", enabled_at=datetime(2024, 1, 1, tzinfo=timezone.utc)),
    )

    reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=KEY)

    reloaded_account = reloaded.get_account(account.id)
    assert reloaded_account.tenant_id == account.tenant_id
    assert reloaded_account.two_factor_enabled
    assert reloaded_account.two_factor_secret == "JBSWY3DPEHPK3PXP"
    assert reloaded.get_password_record(account.id) == ("hash", "argon2id")
    assert reloaded.get_tenant(account.tenant_id).name == "Acme"


def test_two_factor_secret_is_encrypted_at_rest(tmp_path, store, account):
    store.set_two_factor(account.id, TwoFactorEnrolling(secret="JBSWY3DPEHPK3PXP"))

    raw = (tmp_path / "state" / "memory_store.json").read_text()
    assert "JBSWY3DPEHPK3PXP" not in raw
    entry = json.loads(raw)["two_factor"][0]
    assert entry["state"] == "enrolling"


def test_secret_unreadable_with_other_key(tmp_path, store, account):
    store.set_two_factor(account.id, TwoFactorEnabled(secret="JBSWY3DPEHPK3PXP"))

    other = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="a-different-key-0123456789abcdef")

    # no secret means no enabled state; never "enabled without a secret"
    reloaded = other.get_account(account.id)
    assert not reloaded.two_factor_enabled
    assert reloaded.two_factor_secret is None


def test_set_two_factor_compare_and_set(store, account):
    pending = TwoFactorEnrolling(secret="JBSWY3DPEHPK3PXP")
    store.set_two_factor(account.id, pending)
    stored_pending = store.get_two_factor(account.id)

    # someone else disables in between
    store.set_two_factor(account.id, TWO_FACTOR_DISABLED)

    enabled = TwoFactorEnabled(secret=pending.secret)
    assert store.set_two_factor(account.id, enabled, expected=stored_pending) is False
    assert store.get_two_factor(account.id) == TWO_FACTOR_DISABLED


def test_login_failures_lock_account(store, account):
    store.record_login_failure(account.id, max_attempts=2, lockout_minutes=5)
    assert not store.get_account(account.id).is_locked()

    locked = store.record_login_failure(account.id, max_attempts=2, lockout_minutes=5)
    assert locked.is_locked()

    cleared = store.record_login_success(account.id)
    assert not cleared.is_locked()
    assert cleared.failed_login_attempts == 0
    assert cleared.last_login_at is not None


def test_update_account_role(store, account):
    updated = store.update_account_role(account.id, "MANAGER")
    assert updated.role == "MANAGER"
    assert store.update_account_role("missing", "ADMIN") is None


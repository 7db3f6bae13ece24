from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional

from tenantcrm.logging import get_logger
from tenantcrm.storage.common import SecretCipher, normalize_email
from tenantcrm.storage.errors import ConstraintViolation
from tenantcrm.storage.models import (
    TWO_FACTOR_DISABLED,
    Account,
    Invite,
    Tenant,
    TwoFactorState,
    two_factor_from_record,
    two_factor_to_record,
    utcnow,
)


class MemoryStore:
    """In-memory credential store persisted as JSON under ``fs_root``.

    Used for tests and single-node development. Every public method takes the
    data lock, so a two-factor update is observed either entirely or not at all.
    """

    def __init__(
        self, fs_root: str = "/tmp/tenantcrm", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        # account_id -> {"state", "secret" (encrypted), "since"}
        self.two_factor: Dict[str, Dict[str, Optional[str]]] = {}
        # keyed by token digest
        self.invites: Dict[str, Invite] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = SecretCipher(mfa_encryption_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # tenants

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    # accounts

    def register_account(
        self,
        email: str,
        *,
        password_hash: str,
        password_algo: str,
        name: str = "",
        role: str = "EMPLOYEE",
        tenant_id: Optional[str] = None,
        tenant_name: Optional[str] = None,
        invite_token_hash: Optional[str] = None,
    ) -> Account:
        """Create an account together with its password, all or nothing.

        ``tenant_name`` creates a new tenant owned by the account and
        ``tenant_id`` joins an existing one; exactly one must be given. With
        ``invite_token_hash`` the invite is consumed in the same write.
        """
        if (tenant_id is None) == (tenant_name is None):
            raise ValueError("exactly one of tenant_id or tenant_name is required")
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation(
                    "email already exists",
                    {"field": "email"},
                    constraint="account_email_unique",
                )
            if tenant_id is not None and tenant_id not in self.tenants:
                raise ConstraintViolation(
                    "tenant not found",
                    {"tenant_id": tenant_id},
                    constraint="account_tenant_fk",
                )
            if invite_token_hash is not None and invite_token_hash not in self.invites:
                raise ConstraintViolation("invite not found", constraint="invite_consumed")

            if tenant_name is not None:
                tenant = Tenant.new(tenant_name)
                self.tenants[tenant.id] = tenant
                tenant_id = tenant.id
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized,
                tenant_id=tenant_id,
                name=name,
                role=role,
            )
            self.accounts[account.id] = account
            self.credentials[account.id] = (password_hash, password_algo)
            if invite_token_hash is not None:
                del self.invites[invite_token_hash]
            self._persist_state()
            return self._hydrate(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._hydrate(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return self._hydrate(account) if account else None

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.role = role
            self._persist_state()
            return self._hydrate(account)

    def record_login_failure(
        self, account_id: str, *, max_attempts: int, lockout_minutes: int
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_login_attempts += 1
            if max_attempts and account.failed_login_attempts >= max_attempts:
                account.locked_until = utcnow() + timedelta(minutes=lockout_minutes)
                account.failed_login_attempts = 0
            self._persist_state()
            return self._hydrate(account)

    def record_login_success(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_login_attempts = 0
            account.locked_until = None
            account.last_login_at = utcnow()
            self._persist_state()
            return self._hydrate(account)

    # credentials

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(account_id)

    # invites

    def create_invite(self, invite: Invite) -> Invite:
        with self._data_lock:
            if invite.tenant_id not in self.tenants:
                raise ConstraintViolation(
                    "tenant not found",
                    {"tenant_id": invite.tenant_id},
                    constraint="invite_tenant_fk",
                )
            self.invites[invite.token_hash] = invite
            self._persist_state()
            return invite

    def get_invite(self, token_hash: str) -> Optional[Invite]:
        with self._data_lock:
            return self.invites.get(token_hash)

    def delete_invite(self, token_hash: str) -> bool:
        with self._data_lock:
            if self.invites.pop(token_hash, None) is None:
                return False
            self._persist_state()
            return True

    # two-factor

    def get_two_factor(self, account_id: str) -> TwoFactorState:
        with self._data_lock:
            record = self.two_factor.get(account_id)
            if not record:
                return TWO_FACTOR_DISABLED
            return two_factor_from_record(
                {**record, "secret": self._mfa_cipher.decrypt(record.get("secret"))}
            )

    def set_two_factor(
        self,
        account_id: str,
        state: TwoFactorState,
        *,
        expected: Optional[TwoFactorState] = None,
    ) -> bool:
        """Replace the account's two-factor state in one write.

        With ``expected`` set, the write only happens if the stored state still
        equals it; returns False when another writer got there first.
        """
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for two-factor", {"account_id": account_id}
                )
            if expected is not None and self.get_two_factor(account_id) != expected:
                return False
            record = two_factor_to_record(state)
            record["secret"] = self._mfa_cipher.encrypt(record["secret"])
            self.two_factor[account_id] = record
            self._persist_state()
            return True

    def _hydrate(self, account: Account) -> Account:
        return replace(account, two_factor=self.get_two_factor(account.id))

    # persistence

    def _persist_state(self) -> None:
        state = {
            "tenants": [self._serialize_tenant(t) for t in self.tenants.values()],
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "credentials": [
                {
                    "account_id": account_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for account_id, creds in self.credentials.items()
            ],
            "two_factor": [
                {"account_id": account_id, **record}
                for account_id, record in self.two_factor.items()
            ],
            "invites": [self._serialize_invite(i) for i in self.invites.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.tenants = {
            t["id"]: self._deserialize_tenant(t) for t in data.get("tenants", [])
        }
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.credentials = {
            entry["account_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.two_factor = {
            entry["account_id"]: {
                "state": entry.get("state"),
                "secret": entry.get("secret"),
                "since": entry.get("since"),
            }
            for entry in data.get("two_factor", [])
        }
        self.invites = {
            i["token_hash"]: self._deserialize_invite(i) for i in data.get("invites", [])
        }
        return True

    def _serialize_tenant(self, tenant: Tenant) -> dict:
        return {
            "id": tenant.id,
            "name": tenant.name,
            "created_at": self._serialize_datetime(tenant.created_at),
        }

    def _deserialize_tenant(self, data: dict) -> Tenant:
        return Tenant(
            id=str(data["id"]),
            name=data["name"],
            created_at=self._deserialize_datetime(data["created_at"]) or utcnow(),
        )

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "tenant_id": account.tenant_id,
            "name": account.name,
            "role": account.role,
            "created_at": self._serialize_datetime(account.created_at),
            "is_active": account.is_active,
            "failed_login_attempts": account.failed_login_attempts,
            "locked_until": self._serialize_datetime(account.locked_until),
            "last_login_at": self._serialize_datetime(account.last_login_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            tenant_id=data["tenant_id"],
            name=data.get("name", ""),
            role=data.get("role", "EMPLOYEE"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            is_active=data.get("is_active", True),
            failed_login_attempts=data.get("failed_login_attempts", 0),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_invite(self, invite: Invite) -> dict:
        return {
            "id": invite.id,
            "token_hash": invite.token_hash,
            "email": invite.email,
            "tenant_id": invite.tenant_id,
            "role": invite.role,
            "invited_by": invite.invited_by,
            "expires_at": self._serialize_datetime(invite.expires_at),
            "created_at": self._serialize_datetime(invite.created_at),
        }

    def _deserialize_invite(self, data: dict) -> Invite:
        return Invite(
            id=str(data["id"]),
            token_hash=data["token_hash"],
            email=data["email"],
            tenant_id=data["tenant_id"],
            role=data["role"],
            invited_by=data["invited_by"],
            expires_at=self._deserialize_datetime(data["expires_at"]) or utcnow(),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantcrm.logging import get_logger
from tenantcrm.storage.common import SecretCipher, normalize_email
from tenantcrm.storage.errors import ConstraintViolation, StoreUnavailable
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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS tenant (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        tenant_id TEXT NOT NULL REFERENCES tenant(id),
        name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'EMPLOYEE',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        two_factor_state TEXT NOT NULL DEFAULT 'disabled',
        two_factor_secret TEXT,
        two_factor_since TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT account_two_factor_secret_present CHECK (
            two_factor_state = 'disabled' OR two_factor_secret IS NOT NULL
        )
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_credential (
        account_id TEXT PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_invite (
        token_hash TEXT PRIMARY KEY,
        id TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL,
        tenant_id TEXT NOT NULL REFERENCES tenant(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        invited_by TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed credential store.

    Two-factor state lives in three columns on ``account`` that are always
    written by a single UPDATE, so no reader can observe "enabled" without a
    secret.
    """

    def __init__(self, dsn: str, *, mfa_encryption_key: str | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._mfa_cipher = SecretCipher(mfa_encryption_key)
        try:
            self.pool = ConnectionPool(
                self.dsn,
                min_size=2,
                max_size=10,
                kwargs={"row_factory": dict_row, "autocommit": False},
            )
            self._ensure_schema()
        except Exception as exc:
            self.logger.error("postgres_init_failed", error=str(exc))
            raise StoreUnavailable("unable to initialise postgres store") from exc

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    # tenants

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant WHERE id = %s", (tenant_id,)
            ).fetchone()
        if not row:
            return None
        return Tenant(id=str(row["id"]), name=row["name"], created_at=row["created_at"])

    # accounts

    def _row_to_account(self, row: dict) -> Account:
        two_factor = two_factor_from_record(
            {
                "state": row.get("two_factor_state"),
                "secret": self._mfa_cipher.decrypt(row.get("two_factor_secret")),
                "since": row.get("two_factor_since"),
            }
        )
        return Account(
            id=str(row["id"]),
            email=row["email"],
            tenant_id=str(row["tenant_id"]),
            name=row.get("name") or "",
            role=row.get("role", "EMPLOYEE"),
            created_at=row.get("created_at") or utcnow(),
            is_active=row.get("is_active", True),
            failed_login_attempts=row.get("failed_login_attempts", 0),
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            two_factor=two_factor,
        )

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
        """Insert the tenant (when new), account and password in one transaction."""
        if (tenant_id is None) == (tenant_name is None):
            raise ValueError("exactly one of tenant_id or tenant_name is required")
        account_id = str(uuid.uuid4())
        normalized = normalize_email(email)
        try:
            with self._connect() as conn:
                with conn.transaction():
                    if invite_token_hash is not None:
                        consumed = conn.execute(
                            "DELETE FROM account_invite WHERE token_hash = %s RETURNING id",
                            (invite_token_hash,),
                        ).fetchone()
                        if not consumed:
                            raise ConstraintViolation(
                                "invite not found", constraint="invite_consumed"
                            )
                    if tenant_name is not None:
                        tenant = Tenant.new(tenant_name)
                        conn.execute(
                            "INSERT INTO tenant (id, name, created_at) VALUES (%s, %s, %s)",
                            (tenant.id, tenant.name, tenant.created_at),
                        )
                        tenant_id = tenant.id
                    row = conn.execute(
                        """
                        INSERT INTO account (id, email, tenant_id, name, role)
                        VALUES (%s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (account_id, normalized, tenant_id, name, role),
                    ).fetchone()
                    conn.execute(
                        """
                        INSERT INTO account_credential (account_id, password_hash, password_algo)
                        VALUES (%s, %s, %s)
                        """,
                        (account_id, password_hash, password_algo),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint="account_email_unique"
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "tenant not found", {"tenant_id": tenant_id}, constraint="account_tenant_fk"
            )
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET role = %s WHERE id = %s RETURNING *",
                (role, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def record_login_failure(
        self, account_id: str, *, max_attempts: int, lockout_minutes: int
    ) -> Optional[Account]:
        lock_until = utcnow() + timedelta(minutes=lockout_minutes)
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET failed_login_attempts = CASE
                        WHEN %s > 0 AND failed_login_attempts + 1 >= %s THEN 0
                        ELSE failed_login_attempts + 1
                    END,
                    locked_until = CASE
                        WHEN %s > 0 AND failed_login_attempts + 1 >= %s THEN %s
                        ELSE locked_until
                    END
                WHERE id = %s
                RETURNING *
                """,
                (max_attempts, max_attempts, max_attempts, max_attempts, lock_until, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def record_login_success(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET failed_login_attempts = 0, locked_until = NULL, last_login_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (account_id,),
            ).fetchone()
        return self._row_to_account(row) if row else None

    # credentials

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account_credential WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # invites

    @staticmethod
    def _row_to_invite(row: dict) -> Invite:
        return Invite(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            email=row["email"],
            tenant_id=str(row["tenant_id"]),
            role=row["role"],
            invited_by=str(row["invited_by"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    def create_invite(self, invite: Invite) -> Invite:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_invite
                        (token_hash, id, email, tenant_id, role, invited_by, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        invite.token_hash,
                        invite.id,
                        invite.email,
                        invite.tenant_id,
                        invite.role,
                        invite.invited_by,
                        invite.expires_at,
                        invite.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "tenant not found",
                {"tenant_id": invite.tenant_id},
                constraint="invite_tenant_fk",
            )
        return invite

    def get_invite(self, token_hash: str) -> Optional[Invite]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_invite WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_invite(row) if row else None

    def delete_invite(self, token_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM account_invite WHERE token_hash = %s RETURNING id", (token_hash,)
            ).fetchone()
        return row is not None

    # two-factor

    def get_two_factor(self, account_id: str) -> TwoFactorState:
        account = self.get_account(account_id)
        return account.two_factor if account else TWO_FACTOR_DISABLED

    def set_two_factor(
        self,
        account_id: str,
        state: TwoFactorState,
        *,
        expected: Optional[TwoFactorState] = None,
    ) -> bool:
        record = two_factor_to_record(state)
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM account WHERE id = %s FOR UPDATE", (account_id,)
                ).fetchone()
                if not row:
                    raise ConstraintViolation(
                        "account not found for two-factor", {"account_id": account_id}
                    )
                if expected is not None and self._row_to_account(row).two_factor != expected:
                    return False
                conn.execute(
                    """
                    UPDATE account
                    SET two_factor_state = %s, two_factor_secret = %s, two_factor_since = %s
                    WHERE id = %s
                    """,
                    (
                        record["state"],
                        self._mfa_cipher.encrypt(record["secret"]),
                        record["since"],
                        account_id,
                    ),
                )
        return True

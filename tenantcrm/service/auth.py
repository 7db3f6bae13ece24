from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol, Sequence, Tuple, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantcrm.config import Settings
from tenantcrm.logging import get_logger
from tenantcrm.service.errors import (
    AccountLocked,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentials,
    InviteExpired,
    InviteInvalid,
    SecondFactorRequired,
    TokenSchemaStale,
    ValidationError,
)
from tenantcrm.service.permissions import USER_INVITE, has_permission, resolve_permissions
from tenantcrm.service.tokens import (
    IssuedToken,
    SessionClaims,
    TokenIssuer,
    TokenVerifier,
    extract_bearer,
)
from tenantcrm.service.two_factor import TwoFactorService, TwoFactorStore
from tenantcrm.storage.common import normalize_email
from tenantcrm.storage.errors import ConstraintViolation
from tenantcrm.storage.models import Account, Invite, Role, Tenant, utcnow
from tenantcrm.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_PASSWORD_ALGO = "argon2id"

INVITE_TOKEN_BYTES = 32


def _invite_digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class AuthStore(TwoFactorStore, Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

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
    ) -> Account: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]: ...

    def record_login_failure(
        self, account_id: str, *, max_attempts: int, lockout_minutes: int
    ) -> Optional[Account]: ...

    def record_login_success(self, account_id: str) -> Optional[Account]: ...

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]: ...

    def create_invite(self, invite: Invite) -> Invite: ...

    def get_invite(self, token_hash: str) -> Optional[Invite]: ...

    def delete_invite(self, token_hash: str) -> bool: ...


@dataclass
class AuthContext:
    account_id: str
    role: str
    tenant_id: str
    permissions: tuple[str, ...]
    token_id: Optional[str] = None
    expires_at: Optional[int] = None

    @classmethod
    def from_claims(cls, claims: SessionClaims) -> "AuthContext":
        return cls(
            account_id=claims.subject,
            role=claims.role,
            tenant_id=claims.tenant_id,
            permissions=claims.permissions,
            token_id=claims.token_id,
            expires_at=claims.expires_at,
        )

    def can(self, required: Union[str, Sequence[str]]) -> bool:
        return has_permission(self.permissions, required)


@dataclass
class LoginResult:
    account: Account
    token: IssuedToken


class AuthService:
    """Credential checks, token minting and request authentication.

    The server keeps no session records: a request is authenticated by the
    token alone, checked by :class:`TokenVerifier`.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.issuer = TokenIssuer.from_settings(settings)
        self.verifier = TokenVerifier.from_settings(settings)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.two_factor = TwoFactorService(
            store, cache, settings, verify_password=self.verify_password
        )
        self.logger = logger

    # passwords

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), _PASSWORD_ALGO

    def verify_password(self, account_id: str, password: str) -> bool:
        record = self.store.get_password_record(account_id)
        if not record:
            self.logger.warning("password_record_missing", account_id=account_id)
            return False
        stored_hash, algo = record
        if algo != _PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", account_id=account_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # registration and login

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        *,
        company_name: Optional[str] = None,
        tenant_id: Optional[str] = None,
        role: Optional[str] = None,
    ) -> LoginResult:
        """Create an account and sign it in.

        Without ``tenant_id`` a new tenant is created and the account owns it
        as ADMIN; with one (operator tooling only) the account joins it. The
        tenant, account and password are written in a single store call.
        """
        if self.store.get_account_by_email(email):
            raise ConflictError("email already registered")
        tenant_name = None
        if tenant_id is None:
            tenant_name = company_name or f"{name or email}'s Company"
            role = role or Role.ADMIN.value
        account = self._create_account(
            email,
            password,
            name=name,
            role=role or Role.EMPLOYEE.value,
            tenant_id=tenant_id,
            tenant_name=tenant_name,
        )
        self.logger.info(
            "account_registered", account_id=account.id, tenant_id=account.tenant_id
        )
        return LoginResult(account=account, token=self.issue_token(account))

    def _create_account(self, email: str, password: str, **fields) -> Account:
        pwd_hash, algo = self._hash_password(password)
        try:
            return self.store.register_account(
                email, password_hash=pwd_hash, password_algo=algo, **fields
            )
        except ConstraintViolation as exc:
            if exc.constraint == "account_email_unique":
                raise ConflictError("email already registered") from exc
            if exc.constraint == "invite_consumed":
                raise InviteInvalid("invite consumed concurrently") from exc
            raise

    # invitations

    async def create_invite(
        self,
        ctx: AuthContext,
        email: str,
        role: str = Role.EMPLOYEE.value,
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[str, Invite]:
        """Invite ``email`` into the caller's tenant.

        Returns the raw token, shown once, and the stored invite. The invited
        role may not carry permissions the caller lacks.
        """
        if not ctx.can(USER_INVITE):
            raise ForbiddenError("missing permission", detail={"required": USER_INVITE})
        role = role.upper()
        granted = resolve_permissions(role)
        if not granted:
            raise ValidationError("unknown role", detail={"role": role})
        if not all(ctx.can(permission) for permission in granted):
            raise ForbiddenError("cannot invite a role with more access than your own")
        inviter = self.current_account(ctx)
        email = normalize_email(email)
        if self.store.get_account_by_email(email):
            raise ConflictError("email already registered")

        token = secrets.token_hex(INVITE_TOKEN_BYTES)
        issued_at = now or utcnow()
        invite = self.store.create_invite(
            Invite(
                id=str(uuid.uuid4()),
                token_hash=_invite_digest(token),
                email=email,
                tenant_id=inviter.tenant_id,
                role=role,
                invited_by=inviter.id,
                expires_at=issued_at + timedelta(hours=self.settings.invite_ttl_hours),
                created_at=issued_at,
            )
        )
        self.logger.info(
            "invite_created", invite_id=invite.id, tenant_id=invite.tenant_id, role=role
        )
        return token, invite

    def validate_invite(self, token: str, *, now: Optional[datetime] = None) -> Invite:
        """Look up a pending invite; expired invites are removed on sight."""
        digest = _invite_digest(token)
        invite = self.store.get_invite(digest)
        if not invite:
            raise InviteInvalid()
        if invite.expired(now):
            self.store.delete_invite(digest)
            self.logger.info("invite_expired", invite_id=invite.id)
            raise InviteExpired()
        return invite

    async def register_with_invite(
        self, token: str, password: str, name: str
    ) -> LoginResult:
        """Join the inviting tenant with the invited email and role, then sign in."""
        invite = self.validate_invite(token)
        if self.store.get_account_by_email(invite.email):
            raise ConflictError("email already registered")
        account = self._create_account(
            invite.email,
            password,
            name=name,
            role=invite.role,
            tenant_id=invite.tenant_id,
            invite_token_hash=invite.token_hash,
        )
        self.logger.info(
            "invite_accepted",
            invite_id=invite.id,
            account_id=account.id,
            tenant_id=account.tenant_id,
        )
        return LoginResult(account=account, token=self.issue_token(account))

    async def login(
        self, email: str, password: str, code: Optional[str] = None
    ) -> LoginResult:
        account = self.store.get_account_by_email(email)
        if not account or not account.is_active:
            raise InvalidCredentials()
        if account.is_locked():
            self.logger.warning("login_account_locked", account_id=account.id)
            raise AccountLocked()

        if not self.verify_password(account.id, password):
            updated = self.store.record_login_failure(
                account.id,
                max_attempts=self.settings.login_max_attempts,
                lockout_minutes=self.settings.login_lockout_minutes,
            )
            if updated and updated.is_locked():
                self.logger.warning("login_lockout_triggered", account_id=account.id)
                raise AccountLocked()
            remaining = None
            if updated and self.settings.login_max_attempts:
                remaining = self.settings.login_max_attempts - updated.failed_login_attempts
            raise InvalidCredentials(detail={"remaining_attempts": remaining})

        if account.two_factor_enabled:
            if not code:
                raise SecondFactorRequired()
            await self.two_factor.challenge(account, code)

        account = self.store.record_login_success(account.id) or account
        self.logger.info("login_succeeded", account_id=account.id)
        return LoginResult(account=account, token=self.issue_token(account))

    def issue_token(self, account: Account) -> IssuedToken:
        return self.issuer.issue(
            account.id,
            account.role,
            account.tenant_id,
            resolve_permissions(account.role),
        )

    # request authentication

    def resolve_token(
        self, authorization: Optional[str], cookie_token: Optional[str]
    ) -> Optional[str]:
        """Bearer header first, then the auth cookie."""
        return extract_bearer(authorization) or (cookie_token or None)

    def authenticate_token(self, token: Optional[str]) -> AuthContext:
        if not token:
            raise AuthenticationError("authentication required")
        claims = self.verifier.verify(token)
        return AuthContext.from_claims(claims)

    async def authenticate(
        self,
        authorization: Optional[str],
        cookie_token: Optional[str] = None,
        *,
        required_permission: Optional[str] = None,
    ) -> AuthContext:
        ctx = self.authenticate_token(self.resolve_token(authorization, cookie_token))
        if required_permission and not ctx.can(required_permission):
            raise ForbiddenError("missing permission", detail={"required": required_permission})
        return ctx

    def current_account(self, ctx: AuthContext) -> Account:
        """Load the account behind a verified token.

        A token for an account that no longer exists, or moved tenant, belongs
        to a previous state of the world and is treated like a stale token.
        """
        account = self.store.get_account(ctx.account_id)
        if not account or not account.is_active or account.tenant_id != ctx.tenant_id:
            raise TokenSchemaStale("token subject no longer matches an account")
        return account

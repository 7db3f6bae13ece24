"""Client-side session handling.

The client cannot verify signatures, so everything local here is a hint:
it decides whether an authoritative round trip is worth making and cleans
up state it can already tell is unusable. The server's answer always wins.
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

import httpx

from tenantcrm.logging import get_logger
from tenantcrm.service.tokens import decode_unverified

logger = get_logger(__name__)

TOKEN_KEY = "token"
USER_KEY = "user"
VERIFY_PATH = "/v1/auth/verify"


class SessionStorage(Protocol):
    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemorySessionStorage:
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)


@dataclass(frozen=True)
class StoredSession:
    token: Optional[str] = None
    user: Optional[Dict[str, Any]] = None


def _has_permission_claim(claims: Optional[Dict[str, Any]]) -> bool:
    if not claims:
        return False
    perms = claims.get("permissions")
    return isinstance(perms, list) and all(isinstance(p, str) for p in perms)


def _expiry(claims: Optional[Dict[str, Any]]) -> Optional[float]:
    if not claims:
        return None
    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    if not math.isfinite(exp):
        return None
    return float(exp)


class SessionController:
    """Sole owner of the locally stored token and user snapshot."""

    def __init__(
        self,
        storage: SessionStorage,
        cookies: Optional[Mapping[str, str]] = None,
        clock: Callable[[], float] = time.time,
        *,
        cookie_name: str = TOKEN_KEY,
    ) -> None:
        self.storage = storage
        self.cookies = cookies if cookies is not None else {}
        self.clock = clock
        self.cookie_name = cookie_name

    def load(self) -> StoredSession:
        token = self.storage.get_item(TOKEN_KEY) or None
        raw_user = self.storage.get_item(USER_KEY)
        user = None
        if raw_user:
            try:
                user = json.loads(raw_user)
            except json.JSONDecodeError:
                logger.warning("session_user_snapshot_corrupt")
            if not isinstance(user, dict):
                user = None
        return StoredSession(token=token, user=user)

    def save(self, token: str, user: Dict[str, Any]) -> None:
        self.storage.set_item(TOKEN_KEY, token)
        self.storage.set_item(USER_KEY, json.dumps(user))

    def update_user(self, user: Dict[str, Any]) -> None:
        self.storage.set_item(USER_KEY, json.dumps(user))

    def clear(self) -> None:
        self.storage.remove_item(TOKEN_KEY)
        self.storage.remove_item(USER_KEY)

    def _cookie_counts(self) -> bool:
        cookie = self.cookies.get(self.cookie_name)
        if not cookie:
            return False
        claims = decode_unverified(cookie)
        if claims is None:
            # opaque to us; let the server decide
            return True
        if not _has_permission_claim(claims):
            return False
        exp = _expiry(claims)
        return exp is not None and exp > self.clock()

    def has_local_presence(self) -> bool:
        session = self.load()
        if session.token and session.user:
            return True
        return self._cookie_counts()

    def discard_if_expired(self) -> bool:
        """Drop the stored token once its ``exp`` has passed. Cookies are left alone."""
        token = self.load().token
        if not token:
            return False
        exp = _expiry(decode_unverified(token))
        if exp is not None and exp <= self.clock():
            logger.info("session_local_token_expired")
            self.clear()
            return True
        return False

    def discard_if_stale(self) -> bool:
        """Drop a stored token that predates the permission claim."""
        token = self.load().token
        if not token:
            return False
        if _has_permission_claim(decode_unverified(token)):
            return False
        logger.info("session_local_token_stale")
        self.clear()
        return True


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    user: Optional[Dict[str, Any]] = None
    status_code: Optional[int] = None
    error_code: Optional[str] = None


class SessionVerifier:
    """Authoritative check against ``GET /v1/auth/verify``.

    ``check`` only talks to the server; ``apply`` writes the outcome locally.
    ``verify`` does both.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        controller: SessionController,
        *,
        path: str = VERIFY_PATH,
    ) -> None:
        self.client = client
        self.controller = controller
        self.path = path

    async def check(self) -> VerificationResult:
        headers = {}
        token = self.controller.load().token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        cookie = self.controller.cookies.get(self.controller.cookie_name)
        if cookie:
            headers["Cookie"] = f"{self.controller.cookie_name}={cookie}"
        try:
            resp = await self.client.get(self.path, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("session_verify_transport_error", error_type=type(exc).__name__)
            return VerificationResult(valid=False)
        try:
            body = resp.json()
        except ValueError:
            body = None
        if resp.status_code != 200:
            error_code = None
            if isinstance(body, dict) and isinstance(body.get("error"), dict):
                error_code = body["error"].get("code")
            return VerificationResult(
                valid=False, status_code=resp.status_code, error_code=error_code
            )
        user = None
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            user = body["data"].get("user")
        if not isinstance(user, dict):
            logger.warning("session_verify_malformed_body")
            return VerificationResult(valid=False, status_code=resp.status_code)
        return VerificationResult(valid=True, user=user, status_code=resp.status_code)

    def apply(self, result: VerificationResult) -> None:
        if result.valid and result.user is not None:
            self.controller.update_user(result.user)
            return
        logger.info(
            "session_verify_rejected",
            status_code=result.status_code,
            error_code=result.error_code,
        )
        self.controller.clear()

    async def verify(self) -> VerificationResult:
        result = await self.check()
        self.apply(result)
        return result


class Route(str, Enum):
    DASHBOARD = "dashboard"
    LOGIN = "login"
    SUPERSEDED = "superseded"


class LandingController:
    """Decides where a fresh load lands. Runs each check once and never loops.

    Only the most recent ``decide`` may touch local state after the network
    call; an older one that finishes later returns ``Route.SUPERSEDED``.
    """

    def __init__(self, controller: SessionController, verifier: SessionVerifier) -> None:
        self.controller = controller
        self.verifier = verifier
        self._generation = 0

    async def decide(self) -> Route:
        self._generation += 1
        generation = self._generation

        self.controller.discard_if_stale()
        self.controller.discard_if_expired()
        if not self.controller.has_local_presence():
            return Route.LOGIN

        result = await self.verifier.check()
        if generation != self._generation:
            logger.info("session_landing_superseded", generation=generation)
            return Route.SUPERSEDED
        self.verifier.apply(result)
        return Route.DASHBOARD if result.valid else Route.LOGIN

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    Header,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)

from tenantcrm.api.schemas import (
    AuthResponse,
    Envelope,
    InviteRequest,
    InviteResponse,
    LoginRequest,
    RegisterRequest,
    RegisterWithInviteRequest,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorEnrollmentResponse,
    TwoFactorStatusResponse,
    UserResponse,
    VerifyResponse,
)
from tenantcrm.logging import bind_principal, get_logger, set_correlation_id
from tenantcrm.service.auth import AuthContext, LoginResult
from tenantcrm.service.errors import RateLimitedError, ServiceError
from tenantcrm.service.permissions import resolve_permissions
from tenantcrm.service.runtime import check_rate_limit, get_runtime
from tenantcrm.service.tokens import extract_bearer, first_token
from tenantcrm.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

WS_UNAUTHORIZED = 4401


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    """Raise ``RateLimitedError`` once the bucket for ``key`` is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        response.headers["X-RateLimit-Reset"] = str(reset_seconds)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], limit=limit)
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after": reset_seconds}
        )


async def get_auth_context(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    cookie_token = request.cookies.get(runtime.settings.auth_cookie_name)
    principal = await runtime.auth.authenticate(authorization, cookie_token)
    bind_principal(principal.account_id, principal.tenant_id)
    return principal


def _user_to_response(account: Account) -> UserResponse:
    return UserResponse(
        id=account.id,
        email=account.email,
        name=account.name,
        role=account.role,
        tenant_id=account.tenant_id,
        permissions=resolve_permissions(account.role),
        two_factor_enabled=account.two_factor_enabled,
        created_at=account.created_at,
        last_login_at=account.last_login_at,
    )


def _auth_response(response: Response, result: LoginResult) -> AuthResponse:
    settings = get_runtime().settings
    response.set_cookie(
        settings.auth_cookie_name,
        result.token.token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.access_token_ttl_seconds,
        path="/",
    )
    return AuthResponse(
        token=result.token.token,
        expires_at=datetime.fromtimestamp(result.token.expires_at, tz=timezone.utc),
        user=_user_to_response(result.account),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create a tenant and its first (ADMIN) account, then sign it in.

    Raises:
        409: If the email is already registered
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{body.email}",
        runtime.settings.register_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.register(
        body.email,
        body.password,
        body.name,
        company_name=body.company_name,
    )
    return Envelope(status="ok", data=_auth_response(response, result))


@router.post("/auth/invite", response_model=Envelope, status_code=201, tags=["auth"])
async def create_invite(
    body: InviteRequest, principal: AuthContext = Depends(get_auth_context)
):
    """Invite someone into the caller's tenant; needs ``user:invite``.

    Raises:
        403: Missing permission, or a role with more access than the caller
        409: If the email is already registered
    """
    runtime = get_runtime()
    token, invite = await runtime.auth.create_invite(principal, body.email, body.role)
    return Envelope(
        status="ok",
        data=InviteResponse(
            token=token,
            email=invite.email,
            role=invite.role,
            tenant_id=invite.tenant_id,
            expires_at=invite.expires_at,
        ),
    )


@router.post("/auth/register/invite", response_model=Envelope, status_code=201, tags=["auth"])
async def register_with_invite(
    body: RegisterWithInviteRequest, request: Request, response: Response
):
    """Join an existing tenant with an invite token, then sign in.

    Raises:
        401: invite_invalid or invite_expired
        409: If the invited email is already registered
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime()
    client_host = request.client.host if request.client else "unknown"
    await _enforce_rate_limit(
        runtime,
        f"register_invite:{client_host}",
        runtime.settings.register_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.register_with_invite(body.token, body.password, body.name)
    await runtime.notifications.emit_to_tenant(
        result.account.tenant_id,
        "member_joined",
        {"account_id": result.account.id, "role": result.account.role},
    )
    return Envelope(status="ok", data=_auth_response(response, result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password, plus a code when 2FA is on.

    Raises:
        401: invalid_credentials, account_locked, second_factor_required or
            second_factor_invalid
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.login(body.email, body.password, body.code)
    return Envelope(status="ok", data=_auth_response(response, result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response):
    settings = get_runtime().settings
    response.delete_cookie(
        settings.auth_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        samesite="lax",
    )
    return Envelope(status="ok", data={"message": "signed out"})


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(principal: AuthContext = Depends(get_auth_context)):
    """Authoritative session check used by clients on landing."""
    runtime = get_runtime()
    account = runtime.auth.current_account(principal)
    return Envelope(status="ok", data=VerifyResponse(user=_user_to_response(account)))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    account = runtime.auth.current_account(principal)
    data = _user_to_response(account).model_dump()
    data["token_expires_at"] = principal.expires_at
    return Envelope(status="ok", data=data)


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["auth"])
async def start_two_factor(principal: AuthContext = Depends(get_auth_context)):
    """Begin enrollment; returns the secret and its otpauth payload."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa:{principal.account_id}",
        runtime.settings.two_factor_rate_limit_per_minute,
        60,
    )
    enrollment = await runtime.auth.two_factor.start_enrollment(principal.account_id)
    return Envelope(
        status="ok",
        data=TwoFactorEnrollmentResponse(
            secret=enrollment.secret,
            qr_payload=enrollment.qr_payload,
            expires_at=enrollment.expires_at,
        ),
    )


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(
    body: TwoFactorCodeRequest, principal: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa:{principal.account_id}",
        runtime.settings.two_factor_rate_limit_per_minute,
        60,
    )
    await runtime.auth.two_factor.verify_enrollment(principal.account_id, body.code)
    return Envelope(status="ok", data={"enabled": True})


@router.post("/auth/2fa/cancel", response_model=Envelope, tags=["auth"])
async def cancel_two_factor(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    await runtime.auth.two_factor.cancel_enrollment(principal.account_id)
    return Envelope(status="ok", data={"enabled": False})


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def disable_two_factor(
    body: TwoFactorDisableRequest, principal: AuthContext = Depends(get_auth_context)
):
    """Turn two-factor off; requires the account password."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa:{principal.account_id}",
        runtime.settings.two_factor_rate_limit_per_minute,
        60,
    )
    await runtime.auth.two_factor.disable(principal.account_id, body.password)
    return Envelope(status="ok", data={"enabled": False})


@router.get("/auth/2fa/status", response_model=Envelope, tags=["auth"])
async def two_factor_status(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    state = runtime.auth.two_factor.current_state(principal.account_id)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(state=state.state, enabled=state.state == "enabled"),
    )


@router.websocket("/notifications/stream")
async def notifications_stream(ws: WebSocket):
    """Real-time notifications for the authenticated account and its tenant."""
    runtime = get_runtime()
    hub = runtime.notifications
    await ws.accept()
    set_correlation_id(ws.headers.get("x-request-id"))
    subscriber = None
    try:
        token = first_token(
            [
                ws.query_params.get("token"),
                extract_bearer(ws.headers.get("authorization")),
            ]
        )
        if not token:
            init = await ws.receive_json()
            token = init.get("token") if isinstance(init, dict) else None
        try:
            subscriber = await hub.connect(ws, token)
        except ServiceError as exc:
            logger.warning("notification_auth_failed", error_code=exc.error_code)
            await ws.close(code=WS_UNAUTHORIZED)
            return
        bind_principal(subscriber.context.account_id, subscriber.context.tenant_id)
        await ws.send_json(
            {
                "event": "connected",
                "data": {
                    "account_id": subscriber.context.account_id,
                    "tenant_id": subscriber.context.tenant_id,
                },
            }
        )
        while True:
            message = await ws.receive_json()
            if isinstance(message, dict) and message.get("event") == "ping":
                await ws.send_json({"event": "pong", "data": None})
    except WebSocketDisconnect:
        return
    except json.JSONDecodeError:
        logger.warning("websocket_invalid_json")
        await ws.close(code=1003)
    finally:
        if subscriber is not None:
            await hub.disconnect(subscriber)

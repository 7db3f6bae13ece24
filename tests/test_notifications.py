"""Tests for the real-time notification hub and its websocket endpoint."""

import asyncio
import base64
import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from tenantcrm import app as app_module
from tenantcrm.service import totp
from tenantcrm.service.errors import AuthenticationError, TokenExpired, TokenMalformed
from tenantcrm.service.notifications import NotificationHub, tenant_room, user_room
from tenantcrm.service.runtime import get_runtime
from tenantcrm.service.tokens import TokenIssuer, TokenVerifier

SECRET = "notification-test-key-0123456789abcdef"
PASSWORD = "TestPassword123!"


class FakeConnection:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise ConnectionError("socket gone")
        self.sent.append(data)


@pytest.fixture
def issuer():
    return TokenIssuer(SECRET, issuer="tenantcrm", audience="tenantcrm-clients", ttl_seconds=600)


@pytest.fixture
def hub():
    return NotificationHub(
        TokenVerifier(SECRET, issuer="tenantcrm", audience="tenantcrm-clients")
    )


def _token(issuer, account_id, tenant_id, **kwargs):
    return issuer.issue(account_id, "SALES", tenant_id, ["notification:read"], **kwargs).token


class TestHub:
    async def test_connect_joins_user_and_tenant_rooms(self, hub, issuer):
        subscriber = await hub.connect(FakeConnection(), _token(issuer, "a1", "t1"))

        assert subscriber.rooms == (user_room("a1"), tenant_room("t1"))
        assert hub.is_online("a1")
        assert hub.connection_count(tenant_room("t1")) == 1

    async def test_emit_to_user_reaches_only_that_user(self, hub, issuer):
        ann, bob = FakeConnection(), FakeConnection()
        await hub.connect(ann, _token(issuer, "ann", "t1"))
        await hub.connect(bob, _token(issuer, "bob", "t1"))

        delivered = await hub.emit_to_user("ann", "deal.assigned", {"deal_id": "d1"})

        assert delivered == 1
        assert ann.sent == [{"event": "deal.assigned", "data": {"deal_id": "d1"}}]
        assert bob.sent == []

    async def test_emit_to_tenant_is_isolated(self, hub, issuer):
        ann, bob, eve = FakeConnection(), FakeConnection(), FakeConnection()
        await hub.connect(ann, _token(issuer, "ann", "t1"))
        await hub.connect(bob, _token(issuer, "bob", "t1"))
        await hub.connect(eve, _token(issuer, "eve", "t2"))

        delivered = await hub.emit_to_tenant("t1", "pipeline.updated", None)

        assert delivered == 2
        assert len(ann.sent) == len(bob.sent) == 1
        assert eve.sent == []

    async def test_failed_delivery_drops_subscriber(self, hub, issuer):
        await hub.connect(FakeConnection(fail=True), _token(issuer, "ann", "t1"))

        assert await hub.emit_to_user("ann", "ping", {}) == 0
        assert not hub.is_online("ann")
        assert hub.connection_count() == 0

    async def test_disconnect(self, hub, issuer):
        subscriber = await hub.connect(FakeConnection(), _token(issuer, "ann", "t1"))
        await hub.disconnect(subscriber)
        assert not hub.is_online("ann")
        assert hub.connection_count(tenant_room("t1")) == 0

    async def test_rejects_missing_token(self, hub):
        with pytest.raises(AuthenticationError):
            await hub.connect(FakeConnection(), None)

    async def test_rejects_malformed_token(self, hub):
        with pytest.raises(TokenMalformed):
            await hub.connect(FakeConnection(), "garbage")

    async def test_rejects_expired_token(self, hub, issuer):
        token = _token(issuer, "ann", "t1", now=time.time() - 3600)
        with pytest.raises(TokenExpired):
            await hub.connect(FakeConnection(), token)
        assert hub.connection_count() == 0


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def session(client):
    response = client.post(
        "/v1/auth/register",
        json={"email": "ws@example.com", "password": PASSWORD, "name": "Wes"},
    )
    return response.json()["data"]


class TestStreamEndpoint:
    def test_query_token_connects(self, client, session):
        with client.websocket_connect(f"/v1/notifications/stream?token={session['token']}") as ws:
            hello = ws.receive_json()
            assert hello["event"] == "connected"
            assert hello["data"]["account_id"] == session["user"]["id"]
            assert hello["data"]["tenant_id"] == session["user"]["tenant_id"]
            assert get_runtime().notifications.is_online(session["user"]["id"])

            ws.send_json({"event": "ping"})
            assert ws.receive_json() == {"event": "pong", "data": None}

    def test_authorization_header_connects(self, client, session):
        headers = {"Authorization": f"Bearer {session['token']}"}
        with client.websocket_connect("/v1/notifications/stream", headers=headers) as ws:
            assert ws.receive_json()["event"] == "connected"

    def test_first_frame_token_connects(self, client, session):
        client.cookies.clear()
        with client.websocket_connect("/v1/notifications/stream") as ws:
            ws.send_json({"token": session["token"]})
            assert ws.receive_json()["event"] == "connected"

    @pytest.mark.parametrize("token", ["garbage", "a.b.c"])
    def test_invalid_token_closes_4401(self, client, token):
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect(f"/v1/notifications/stream?token={token}") as ws:
                ws.receive_json()
        assert excinfo.value.code == 4401

    @pytest.mark.parametrize("literal", ["NaN", "Infinity", "1e400"])
    def test_non_finite_expiry_closes_4401(self, client, literal):
        def segment(text):
            return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")

        body = '{"sub":"x","role":"ADMIN","tenant_id":"t","permissions":[],"exp":' + literal + "}"
        header = segment('{"alg":"HS256"}')
        token = f"{header}.{segment(body)}.c2ln"
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect(f"/v1/notifications/stream?token={token}") as ws:
                ws.receive_json()
        assert excinfo.value.code == 4401

    def test_missing_token_in_first_frame_closes_4401(self, client):
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect("/v1/notifications/stream") as ws:
                ws.send_json({"hello": "world"})
                ws.receive_json()
        assert excinfo.value.code == 4401

    def test_expired_token_closes_4401(self, client, session):
        user = session["user"]
        issuer = get_runtime().auth.issuer
        expired = issuer.issue(
            user["id"], user["role"], user["tenant_id"], user["permissions"],
            now=time.time() - issuer.ttl_seconds - 10,
        ).token
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect(f"/v1/notifications/stream?token={expired}") as ws:
                ws.receive_json()
        assert excinfo.value.code == 4401


class TestAccountEvents:
    async def test_two_factor_changes_reach_the_user_room(self):
        runtime = get_runtime()
        result = await runtime.auth.register("eve@example.com", PASSWORD, "Eve")
        connection = FakeConnection()
        await runtime.notifications.connect(connection, result.token.token)

        enrollment = await runtime.auth.two_factor.start_enrollment(result.account.id)
        await runtime.auth.two_factor.verify_enrollment(
            result.account.id, totp.generate_code(enrollment.secret, time.time())
        )
        await runtime.auth.two_factor.disable(result.account.id, PASSWORD)

        assert [message["event"] for message in connection.sent] == [
            "two_factor_enabled",
            "two_factor_disabled",
        ]

    def test_accepted_invite_is_announced_to_the_tenant(self, client, session):
        connection = FakeConnection()
        asyncio.run(get_runtime().notifications.connect(connection, session["token"]))
        created = client.post(
            "/v1/auth/invite",
            json={"email": "joiner@example.com", "role": "EMPLOYEE"},
            headers={"Authorization": f"Bearer {session['token']}"},
        )

        joined = client.post(
            "/v1/auth/register/invite",
            json={"token": created.json()["data"]["token"], "password": PASSWORD, "name": "Jo"},
        )

        assert joined.status_code == 201
        assert connection.sent == [
            {
                "event": "member_joined",
                "data": {"account_id": joined.json()["data"]["user"]["id"], "role": "EMPLOYEE"},
            }
        ]

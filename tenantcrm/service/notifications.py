from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Set

from tenantcrm.logging import get_logger
from tenantcrm.service.auth import AuthContext
from tenantcrm.service.errors import AuthenticationError
from tenantcrm.service.tokens import TokenVerifier

logger = get_logger(__name__)


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


def user_room(account_id: str) -> str:
    return f"user:{account_id}"


def tenant_room(tenant_id: str) -> str:
    return f"tenant:{tenant_id}"


@dataclass(eq=False)
class Subscriber:
    connection: Connection
    context: AuthContext
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def rooms(self) -> tuple[str, str]:
        return user_room(self.context.account_id), tenant_room(self.context.tenant_id)


class NotificationHub:
    """Registry of authenticated real-time connections grouped into rooms.

    Connections authenticate with the same session token as HTTP requests;
    each joins its user room and its tenant room.
    """

    def __init__(self, verifier: TokenVerifier) -> None:
        self.verifier = verifier
        self._rooms: Dict[str, Set[Subscriber]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, connection: Connection, token: Optional[str]) -> Subscriber:
        """Verify ``token`` and register the connection; raises on any token error."""
        if not token:
            raise AuthenticationError("authentication required")
        claims = self.verifier.verify(token)
        subscriber = Subscriber(connection=connection, context=AuthContext.from_claims(claims))
        async with self._lock:
            for room in subscriber.rooms:
                self._rooms.setdefault(room, set()).add(subscriber)
        logger.info(
            "notification_client_connected",
            subscriber_id=subscriber.id,
            account_id=subscriber.context.account_id,
            tenant_id=subscriber.context.tenant_id,
        )
        return subscriber

    async def disconnect(self, subscriber: Subscriber) -> None:
        async with self._lock:
            for room in subscriber.rooms:
                members = self._rooms.get(room)
                if not members:
                    continue
                members.discard(subscriber)
                if not members:
                    self._rooms.pop(room, None)
        logger.info("notification_client_disconnected", subscriber_id=subscriber.id)

    def is_online(self, account_id: str) -> bool:
        return bool(self._rooms.get(user_room(account_id)))

    def connection_count(self, room: Optional[str] = None) -> int:
        if room is not None:
            return len(self._rooms.get(room, ()))
        return len({s for members in self._rooms.values() for s in members})

    async def emit_to_user(self, account_id: str, event: str, data: Any) -> int:
        return await self._emit(user_room(account_id), event, data)

    async def emit_to_tenant(self, tenant_id: str, event: str, data: Any) -> int:
        return await self._emit(tenant_room(tenant_id), event, data)

    async def _emit(self, room: str, event: str, data: Any) -> int:
        async with self._lock:
            targets = list(self._rooms.get(room, ()))
        delivered = 0
        stale: list[Subscriber] = []
        for subscriber in targets:
            try:
                await subscriber.connection.send_json({"event": event, "data": data})
                delivered += 1
            except Exception as exc:
                logger.warning(
                    "notification_delivery_failed",
                    subscriber_id=subscriber.id,
                    error_type=type(exc).__name__,
                )
                stale.append(subscriber)
        for subscriber in stale:
            await self.disconnect(subscriber)
        return delivered

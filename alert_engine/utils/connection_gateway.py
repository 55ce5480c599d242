"""
Connection gateway for real-time alert delivery.

This module manages authenticated long-lived client connections, their room
membership and inbound rate limits, and pushes alert payloads to rooms.

Connection lifecycle:
    CONNECTING -> AUTHENTICATED -> ACTIVE <-> RATE_LIMITED -> DISCONNECTED

Rooms:
- Every connection auto-joins ``user:{user_id}``
- Connections may join ``resource:{budget_id}`` rooms on demand
- Joining another user's room is rejected

With several gateway processes, push() also publishes through a PushBroker
(Redis pub/sub) so a push on process A reaches connections held by process B.
Without a broker the gateway serves its own connections only.

Usage:
    from alert_engine.utils.connection_gateway import ConnectionGateway

    gateway = ConnectionGateway(jwt_secret=settings.jwt_secret_key)

    # In the WebSocket endpoint
    connection = await gateway.authenticate({"token": token}, websocket)
    reply = await gateway.handle_message(connection.connection_id, message)
    await gateway.disconnect(connection.connection_id)

    # From the dispatcher
    delivered = await gateway.push(f"user:{user_id}", {"op": "alert", "alert": ...})
"""

import asyncio
import enum
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set, Union

from jose import jwt, JWTError

from alert_engine.services.exceptions import (
    AuthError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from alert_engine.utils.logging_config import get_logger

logger = get_logger("websocket")


USER_ROOM_PREFIX = "user:"
RESOURCE_ROOM_PREFIX = "resource:"

_ROOM_PATTERN = re.compile(r"^(user|resource):[A-Za-z0-9_\-]{1,64}$")


def user_room(user_id: int) -> str:
    """Room every connection of a user joins automatically."""
    return f"{USER_ROOM_PREFIX}{user_id}"


def resource_room(resource_id: str) -> str:
    return f"{RESOURCE_ROOM_PREFIX}{resource_id}"


class ConnectionState(str, enum.Enum):
    """Per-connection lifecycle states."""
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    RATE_LIMITED = "rate_limited"
    DISCONNECTED = "disconnected"


_TRANSITIONS = {
    ConnectionState.CONNECTING: {ConnectionState.AUTHENTICATED, ConnectionState.DISCONNECTED},
    ConnectionState.AUTHENTICATED: {ConnectionState.ACTIVE, ConnectionState.DISCONNECTED},
    ConnectionState.ACTIVE: {ConnectionState.RATE_LIMITED, ConnectionState.DISCONNECTED},
    ConnectionState.RATE_LIMITED: {ConnectionState.ACTIVE, ConnectionState.DISCONNECTED},
    ConnectionState.DISCONNECTED: set(),
}


class ConnectionTransport(Protocol):
    """The parts of a WebSocket the gateway needs."""

    async def send_json(self, data: Any) -> None:
        ...

    async def close(self, code: int = 1000) -> None:
        ...


class PushBroker(Protocol):
    """Cross-process fan-out used when several gateway processes run."""

    async def start(self, handler: Callable[[str, Dict[str, Any]], Awaitable[int]]) -> None:
        ...

    async def publish(self, room: str, payload: Dict[str, Any]) -> None:
        ...

    async def adjust_presence(self, room: str, delta: int) -> None:
        ...

    async def presence(self, room: str) -> int:
        ...

    async def stop(self) -> None:
        ...


@dataclass
class RateWindow:
    """
    Fixed-window counter.

    Attributes:
        limit: Events allowed per window
        window_seconds: Window length
        count: Events seen in the current window
        started_at: Monotonic start of the current window
    """
    limit: int
    window_seconds: float
    count: int = 0
    started_at: float = 0.0

    def hit(self, now: float) -> bool:
        """Record one event. Returns False when the limit is exceeded."""
        if now - self.started_at >= self.window_seconds:
            self.started_at = now
            self.count = 0
        self.count += 1
        return self.count <= self.limit

    def resets_at(self) -> float:
        return self.started_at + self.window_seconds


@dataclass
class Connection:
    """
    Ephemeral, in-process connection record. Never persisted.

    Attributes:
        connection_id: Gateway-assigned identifier
        user_id: Authenticated user (None while connecting)
        authenticated_at: UTC time of successful authentication
        rooms: Joined room names
        events: Inbound event window
        joins: Join window
        limited_until: Monotonic time at which a rate-limited connection reverts
    """
    connection_id: str
    transport: ConnectionTransport
    events: RateWindow
    joins: RateWindow
    user_id: Optional[int] = None
    authenticated_at: Optional[datetime] = None
    rooms: Set[str] = field(default_factory=set)
    state: ConnectionState = ConnectionState.CONNECTING
    limited_until: float = 0.0

    def transition(self, target: ConnectionState) -> None:
        """
        Move to a new state.

        Raises:
            InvalidStateTransition: If the state machine forbids the move
        """
        if target not in _TRANSITIONS[self.state]:
            raise InvalidStateTransition(self.state.value, target.value)
        self.state = target


class ConnectionGateway:
    """
    Manages authenticated connections, rooms, rate limits and pushes.

    Maintains a mapping of room names to connection ids. Outbound pushes are
    never rate limited; only inbound client events are.
    """

    def __init__(
        self,
        jwt_secret: str,
        jwt_algorithm: str = "HS256",
        broker: Optional[PushBroker] = None,
        event_limit: int = 100,
        event_window_seconds: float = 60,
        join_limit: int = 20,
        join_window_seconds: float = 10,
        user_exists: Optional[Callable[[int], bool]] = None,
        send_timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the gateway with an empty connection registry.

        Args:
            jwt_secret: Secret used to verify connection tokens
            jwt_algorithm: JWT algorithm
            broker: Optional cross-process fan-out
            event_limit / event_window_seconds: Inbound event rate limit
            join_limit / join_window_seconds: Room join rate limit
            user_exists: Optional check that the token subject is a known user.
                Blocking; it runs in a worker thread.
            send_timeout_seconds: A connection slower than this to accept a
                push is disconnected
            clock: Monotonic clock used for rate windows
        """
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.broker = broker
        self.event_limit = event_limit
        self.event_window_seconds = event_window_seconds
        self.join_limit = join_limit
        self.join_window_seconds = join_window_seconds
        self.user_exists = user_exists
        self.send_timeout_seconds = send_timeout_seconds
        self.clock = clock
        self.process_id = uuid.uuid4().hex

        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Subscribe to the broker so remote pushes reach local connections."""
        if self.broker is not None:
            await self.broker.start(self.deliver_local)
            logger.info("Gateway subscribed to push broker", extra={"process_id": self.process_id})

    async def stop(self) -> None:
        """Disconnect every connection and stop the broker."""
        for connection_id in list(self._connections):
            await self.disconnect(connection_id)
        if self.broker is not None:
            await self.broker.stop()

    def _decode_user_id(self, token: Optional[str]) -> int:
        if not token:
            raise AuthError("Authentication token is required")
        try:
            claims = jwt.decode(token, self.jwt_secret, algorithms=[self.jwt_algorithm])
        except JWTError as e:
            raise AuthError(f"Invalid authentication token: {e}")
        subject = claims.get("sub")
        try:
            return int(subject)
        except (TypeError, ValueError):
            raise AuthError("Token subject is not a user id")

    async def authenticate(
        self,
        credentials: Union[str, Dict[str, Any]],
        transport: ConnectionTransport,
    ) -> Connection:
        """
        Authenticate a new connection and register it.

        Args:
            credentials: Bearer token, or a dict with a "token" key
            transport: The accepted WebSocket (or any ConnectionTransport)

        Returns:
            The registered, ACTIVE Connection (already in its user room)

        Raises:
            AuthError: On missing, invalid, or expired credentials
        """
        now = self.clock()
        connection = Connection(
            connection_id=uuid.uuid4().hex,
            transport=transport,
            events=RateWindow(self.event_limit, self.event_window_seconds, started_at=now),
            joins=RateWindow(self.join_limit, self.join_window_seconds, started_at=now),
        )

        token = credentials.get("token") if isinstance(credentials, dict) else credentials
        try:
            user_id = self._decode_user_id(token)
            if self.user_exists is not None and not await asyncio.to_thread(self.user_exists, user_id):
                raise AuthError("Unknown user")
        except AuthError as e:
            connection.transition(ConnectionState.DISCONNECTED)
            logger.warning("Connection authentication failed", extra={"reason": e.message})
            raise

        connection.user_id = user_id
        connection.authenticated_at = datetime.utcnow()
        connection.transition(ConnectionState.AUTHENTICATED)

        async with self._lock:
            self._connections[connection.connection_id] = connection
        await self._add_to_room(connection, user_room(user_id))
        connection.transition(ConnectionState.ACTIVE)

        logger.info(
            "Connection authenticated",
            extra={"connection_id": connection.connection_id, "user_id": user_id},
        )
        return connection

    async def disconnect(self, connection_id: str) -> None:
        """
        Unregister a connection and close its transport.

        Idempotent: unknown or already-disconnected ids are ignored.
        """
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            if connection is None:
                return
            rooms = set(connection.rooms)
            for room in rooms:
                members = self._rooms.get(room)
                if members is not None:
                    members.discard(connection_id)
                    if not members:
                        del self._rooms[room]
            connection.rooms.clear()
            connection.transition(ConnectionState.DISCONNECTED)

        for room in rooms:
            await self._adjust_presence(room, -1)

        try:
            await connection.transport.close()
        except Exception:
            pass  # Connection may already be closed

        logger.debug(
            "Connection disconnected",
            extra={"connection_id": connection_id, "user_id": connection.user_id},
        )

    def get_connection(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise NotFoundError("Connection", connection_id)
        return connection

    # ========================================================================
    # Rate limiting
    # ========================================================================

    def _refresh_state(self, connection: Connection, now: float) -> None:
        if connection.state == ConnectionState.RATE_LIMITED and now >= connection.limited_until:
            connection.transition(ConnectionState.ACTIVE)
            logger.debug("Connection rate limit lifted", extra={"connection_id": connection.connection_id})

    def _limit(self, connection: Connection, window: RateWindow) -> None:
        connection.limited_until = max(connection.limited_until, window.resets_at())
        if connection.state == ConnectionState.ACTIVE:
            connection.transition(ConnectionState.RATE_LIMITED)
            logger.warning(
                "Connection rate limited",
                extra={"connection_id": connection.connection_id, "user_id": connection.user_id},
            )

    def _admit(self, connection: Connection, window: Optional[RateWindow] = None) -> bool:
        """Count one inbound event (and optionally one join). False means drop it."""
        now = self.clock()
        self._refresh_state(connection, now)
        if connection.state == ConnectionState.RATE_LIMITED:
            return False
        if not connection.events.hit(now):
            self._limit(connection, connection.events)
            return False
        if window is not None and not window.hit(now):
            self._limit(connection, window)
            return False
        return True

    # ========================================================================
    # Rooms
    # ========================================================================

    async def _add_to_room(self, connection: Connection, room: str) -> None:
        async with self._lock:
            if room in connection.rooms:
                return
            connection.rooms.add(room)
            self._rooms.setdefault(room, set()).add(connection.connection_id)
        await self._adjust_presence(room, 1)

    async def join_room(self, connection_id: str, room: str) -> bool:
        """
        Join a room on behalf of a client.

        Args:
            connection_id: Connection requesting the join
            room: ``user:{id}`` (own id only) or ``resource:{id}``

        Every request counts against the rate limits, valid or not; a
        rate-limited connection gets no validation at all.

        Returns:
            True if joined (or already a member), False if dropped by rate limiting

        Raises:
            NotFoundError: Unknown connection
            ValidationError: Malformed room name or another user's room
        """
        connection = self.get_connection(connection_id)
        if not self._admit(connection, connection.joins):
            return False

        if not isinstance(room, str) or not _ROOM_PATTERN.match(room):
            raise ValidationError(f"Invalid room name '{room}'", field="room")
        if room.startswith(USER_ROOM_PREFIX) and room != user_room(connection.user_id):
            logger.warning(
                "Unauthorized room join attempt",
                extra={"connection_id": connection_id, "user_id": connection.user_id, "room": room},
            )
            raise ValidationError("Cannot join another user's room", field="room")

        await self._add_to_room(connection, room)
        logger.debug("Connection joined room", extra={"connection_id": connection_id, "room": room})
        return True

    async def leave_room(self, connection_id: str, room: str) -> bool:
        """Leave a room. The user's own room cannot be left."""
        connection = self.get_connection(connection_id)
        if not self._admit(connection, connection.joins):
            return False
        if room == user_room(connection.user_id):
            raise ValidationError("Cannot leave the user room", field="room")
        async with self._lock:
            if room not in connection.rooms:
                return True
            connection.rooms.discard(room)
            members = self._rooms.get(room, set())
            members.discard(connection_id)
            if not members:
                self._rooms.pop(room, None)
        await self._adjust_presence(room, -1)
        return True

    # ========================================================================
    # Inbound client messages
    # ========================================================================

    async def handle_message(
        self, connection_id: str, message: Any
    ) -> Optional[Dict[str, Any]]:
        """
        Handle one inbound client message.

        Returns:
            Reply to send to the client, or None when the message was dropped
        """
        connection = self.get_connection(connection_id)
        if not isinstance(message, dict):
            if not self._admit(connection):
                return None
            return {"op": "error", "code": "INVALID_MESSAGE"}

        op = message.get("op")
        if op in ("join", "leave"):
            room = message.get("room")
            try:
                if op == "join":
                    accepted = await self.join_room(connection_id, room)
                else:
                    accepted = await self.leave_room(connection_id, room)
            except ValidationError as e:
                return {"op": "error", "code": "INVALID_ROOM", "message": e.message}
            if not accepted:
                return None
            return {"op": "joined" if op == "join" else "left", "room": room}

        if not self._admit(connection):
            return None
        if op == "ping":
            return {"op": "pong"}
        if op == "authenticate":
            return {"op": "error", "code": "ALREADY_AUTHENTICATED"}
        return {"op": "error", "code": "UNKNOWN_OP"}

    # ========================================================================
    # Outbound pushes
    # ========================================================================

    async def deliver_local(self, room: str, payload: Dict[str, Any]) -> int:
        """
        Send a payload to every local connection in a room.

        Sends run concurrently, each bounded by send_timeout_seconds. Failed
        or timed-out connections are disconnected. Returns the number of
        connections the payload was written to.
        """
        connections = [
            self._connections[connection_id]
            for connection_id in list(self._rooms.get(room, ()))
            if connection_id in self._connections
        ]
        if not connections:
            return 0

        results = await asyncio.gather(
            *(self._send(connection, payload) for connection in connections)
        )

        for connection, ok in zip(connections, results):
            if not ok:
                await self.disconnect(connection.connection_id)
        return sum(1 for ok in results if ok)

    async def _send(self, connection: Connection, payload: Dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(
                connection.transport.send_json(payload), timeout=self.send_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Connection too slow, dropping it",
                extra={"connection_id": connection.connection_id, "user_id": connection.user_id},
            )
            return False
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False
        return True

    async def push(self, room: str, payload: Dict[str, Any]) -> int:
        """
        Push a payload to a room across all gateway processes.

        Returns:
            Connections delivered to locally plus, with a broker, the
            connections other processes report as present in the room
        """
        delivered = await self.deliver_local(room, payload)
        if self.broker is None:
            return delivered

        local_members = len(self._rooms.get(room, ()))
        remote = 0
        try:
            await self.broker.publish(room, payload)
            remote = max(0, await self.broker.presence(room) - local_members)
        except Exception as e:
            logger.warning(
                "Push broker unavailable, delivered locally only",
                extra={"room": room, "error": str(e)},
            )
        return delivered + remote

    async def _adjust_presence(self, room: str, delta: int) -> None:
        if self.broker is None:
            return
        try:
            await self.broker.adjust_presence(room, delta)
        except Exception as e:
            logger.warning("Presence update failed", extra={"room": room, "error": str(e)})

    # ========================================================================
    # Introspection
    # ========================================================================

    def get_connection_count(self, room: Optional[str] = None) -> int:
        """Number of local connections, overall or in one room."""
        if room:
            return len(self._rooms.get(room, set()))
        return len(self._connections)

    def get_rooms(self) -> Set[str]:
        return set(self._rooms.keys())

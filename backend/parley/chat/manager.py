"""Live-connection manager for authenticated chat sessions.

Tracks every open WebSocket, the user bound to it, and the rooms it is
subscribed to. Rooms are chats: a connection joins every chat its user
participates in as soon as the handshake is verified, and joins new chats
as they are created or as the user is added to them.

Connection lifecycle::

    CONNECTING -> AUTHENTICATING -> JOINED -> ACTIVE -> DISCONNECTED

Inbound events (``{"event": ..., "data": {...}}``):
    - send-message: persisted through the orchestrator, fanned out as new-message
    - typing: relayed to the room, never persisted
    - add-participants: persisted through the orchestrator, fanned out as
      participants-added

Outbound events: connected (once, after the rooms are joined), new-message,
typing, participants-added, error.

Thread Safety:
    Designed for a single event loop. Store work happens on worker threads
    inside the orchestrator; the indexes here are only touched from the loop.

Performance Notes:
    - Broadcasting uses asyncio.gather() for concurrent delivery
    - Connections that fail a send are dropped from every index
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket
from pydantic import ValidationError

from parley.context import CallContext
from parley.database import run_bounded
from parley.directory.schemas import User
from parley.directory.service import UserDirectory
from parley.errors import ChatError, UnauthorizedError

from .schemas import (
    AddParticipantsEvent,
    Chat,
    Message,
    SendMessageEvent,
    TypingEvent,
)
from .service import ChatEventListener, ChatOrchestrator

logger = logging.getLogger(__name__)

# Inbound
EVENT_SEND_MESSAGE = "send-message"
EVENT_TYPING = "typing"
EVENT_ADD_PARTICIPANTS = "add-participants"

# Outbound
EVENT_CONNECTED = "connected"
EVENT_NEW_MESSAGE = "new-message"
EVENT_PARTICIPANTS_ADDED = "participants-added"
EVENT_ERROR = "error"


class ConnectionState(str, Enum):
    """Where a live connection is in its lifecycle."""
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    JOINED = "joined"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class LiveConnection:
    """One physical WebSocket and the principal bound to it.

    Instances hash by identity so a user's devices stay distinct in sets.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.state = ConnectionState.CONNECTING
        self.principal: Optional[User] = None
        self.rooms: Set[str] = set()

    @property
    def user_id(self) -> Optional[str]:
        return self.principal.id if self.principal else None

    def __repr__(self) -> str:
        return f"LiveConnection(id={self.id!r}, user={self.user_id!r}, state={self.state.value})"


class _UserLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.holders = 0


def format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


class SessionManager(ChatEventListener):
    """Owns live connections, room subscriptions and event fan-out.

    Registered as an orchestrator listener, so changes made over HTTP
    reach live connections exactly like changes made over the socket.
    """

    def __init__(
        self,
        orchestrator: ChatOrchestrator,
        directory: UserDirectory,
        timeout: float = 10.0,
    ) -> None:
        self.orchestrator = orchestrator
        self.directory = directory
        self.timeout = timeout

        # user_id -> live connections of that user (multi-device)
        self.connections_by_user: Dict[str, Set[LiveConnection]] = {}

        # room_id -> subscribed connections
        self.room_members: Dict[str, Set[LiveConnection]] = {}

        # user_id -> lock serializing connect/disconnect for presence
        self._user_locks: Dict[str, _UserLock] = {}

    def context_for(self, connection: LiveConnection) -> CallContext:
        if connection.principal is None:
            raise UnauthorizedError("Connection is not authenticated")
        return CallContext(principal=connection.principal, timeout=self.timeout)

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        """Serialize connect/disconnect for one user.

        The entry is dropped once nobody holds or waits on it, so the map
        only grows with users that are mid-handshake.
        """
        entry = self._user_locks.get(user_id)
        if entry is None:
            entry = self._user_locks[user_id] = _UserLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._user_locks.get(user_id) is entry:
                del self._user_locks[user_id]

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def connect(self, websocket: WebSocket, principal: User) -> LiveConnection:
        """Accept a verified socket, bind it and subscribe it to its rooms.

        Args:
            websocket: Socket whose handshake credential already verified.
            principal: The user the credential resolved to.

        Returns:
            The connection, in ``ACTIVE`` state.
        """
        connection = LiveConnection(websocket)
        connection.state = ConnectionState.AUTHENTICATING
        connection.principal = principal
        await websocket.accept()

        ctx = self.context_for(connection)
        async with self._user_lock(principal.id):
            first = not self.connections_by_user.get(principal.id)
            # Indexed before the room lookup so rooms created meanwhile
            # are joined through on_chat_created.
            self.connections_by_user.setdefault(principal.id, set()).add(connection)
            try:
                room_ids = await self.orchestrator.room_ids_for_user(ctx)
                self._subscribe(connection, room_ids)
                connection.state = ConnectionState.JOINED
                if first:
                    await run_bounded(
                        "directory.set_online", self.timeout,
                        self.directory.set_online, principal.id, True,
                    )
            except Exception:
                self._forget(connection)
                raise

        connection.state = ConnectionState.ACTIVE
        await self._safe_send(
            connection,
            self.frame(EVENT_CONNECTED, {"userId": principal.id, "rooms": sorted(connection.rooms)}),
        )
        logger.info(
            "[Session] %s connected as %s, joined %d rooms",
            connection.id, principal.id, len(connection.rooms),
        )
        return connection

    async def disconnect(self, connection: LiveConnection) -> None:
        """Deregister a connection from every room and the user index."""
        if connection.state == ConnectionState.DISCONNECTED:
            return
        connection.state = ConnectionState.DISCONNECTED
        user_id = connection.user_id
        self._unsubscribe_all(connection)
        if user_id is None:
            return

        async with self._user_lock(user_id):
            last = self._forget(connection)
            if last:
                try:
                    await run_bounded(
                        "directory.set_online", self.timeout,
                        self.directory.set_online, user_id, False,
                    )
                except ChatError as e:
                    logger.warning("[Session] Could not mark %s offline: %s", user_id, e.message)

        logger.info("[Session] %s disconnected (user %s)", connection.id, user_id)

    def _forget(self, connection: LiveConnection) -> bool:
        """Drop *connection* from every index. Returns True if it was the user's last."""
        connection.state = ConnectionState.DISCONNECTED
        self._unsubscribe_all(connection)
        remaining = self.connections_by_user.get(connection.user_id, set())
        remaining.discard(connection)
        if remaining:
            return False
        self.connections_by_user.pop(connection.user_id, None)
        return True

    def _subscribe(self, connection: LiveConnection, room_ids: Iterable[str]) -> None:
        for room_id in room_ids:
            self.room_members.setdefault(room_id, set()).add(connection)
            connection.rooms.add(room_id)

    def _unsubscribe_all(self, connection: LiveConnection) -> None:
        for room_id in list(connection.rooms):
            members = self.room_members.get(room_id)
            if members is None:
                continue
            members.discard(connection)
            if not members:
                del self.room_members[room_id]
        connection.rooms.clear()

    def subscribe_user(self, user_id: str, room_id: str) -> int:
        """Join every live connection of *user_id* to *room_id*.

        Returns:
            Number of connections subscribed.
        """
        connections = self.connections_by_user.get(user_id, set())
        self._subscribe_many(connections, room_id)
        return len(connections)

    def _subscribe_many(self, connections: Iterable[LiveConnection], room_id: str) -> None:
        for connection in connections:
            if connection.state != ConnectionState.DISCONNECTED:
                self._subscribe(connection, [room_id])

    def get_room_size(self, room_id: str) -> int:
        return len(self.room_members.get(room_id, ()))

    def connections_for(self, user_id: str) -> List[LiveConnection]:
        return list(self.connections_by_user.get(user_id, ()))

    def is_online(self, user_id: str) -> bool:
        return bool(self.connections_by_user.get(user_id))

    # -----------------------------------------------------------------------
    # Delivery
    # -----------------------------------------------------------------------

    @staticmethod
    def frame(event: str, data: Any) -> dict:
        return {"event": event, "data": data}

    async def _safe_send(self, connection: LiveConnection, message: dict) -> bool:
        try:
            await connection.websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug("[Session] Failed to send to %s: %s", connection.id, e)
            return False

    async def _deliver(self, connections: List[LiveConnection], message: dict) -> None:
        if not connections:
            return
        results = await asyncio.gather(
            *[self._safe_send(conn, message) for conn in connections],
            return_exceptions=True,
        )
        failed = [conn for conn, ok in zip(connections, results) if ok is not True]
        for conn in failed:
            await self.disconnect(conn)

    async def broadcast(self, room_id: str, event: str, data: Any) -> None:
        """Send one frame to every connection subscribed to *room_id*."""
        connections = list(self.room_members.get(room_id, ()))
        await self._deliver(connections, self.frame(event, data))

    async def broadcast_except_user(self, room_id: str, event: str, data: Any, user_id: str) -> None:
        """Send to the room, skipping every connection of *user_id*."""
        connections = [
            conn for conn in self.room_members.get(room_id, ())
            if conn.user_id != user_id
        ]
        await self._deliver(connections, self.frame(event, data))

    async def send_error(self, connection: LiveConnection, message: str) -> None:
        await self._safe_send(connection, self.frame(EVENT_ERROR, {"message": message}))

    # -----------------------------------------------------------------------
    # Orchestrator listener hooks
    # -----------------------------------------------------------------------

    async def on_chat_created(self, chat: Chat) -> None:
        for user_id in chat.participant_ids:
            self.subscribe_user(user_id, chat.id)

    async def on_message_sent(self, message: Message) -> None:
        logger.debug(
            "[Session] Broadcasting message %s to %d connections",
            message.id, self.get_room_size(message.chatId),
        )
        await self.broadcast(message.chatId, EVENT_NEW_MESSAGE, message.model_dump(mode="json"))

    async def on_participants_added(self, chat: Chat, added_user_ids: List[str], added_by: str) -> None:
        for user_id in added_user_ids:
            self.subscribe_user(user_id, chat.id)
        await self.broadcast(
            chat.id,
            EVENT_PARTICIPANTS_ADDED,
            {
                "roomId": chat.id,
                "addedUserIds": added_user_ids,
                "addedBy": added_by,
                "participants": [p.model_dump(mode="json") for p in chat.participants],
            },
        )

    # -----------------------------------------------------------------------
    # Inbound events
    # -----------------------------------------------------------------------

    async def handle(self, connection: LiveConnection, frame: Any) -> None:
        """Dispatch one inbound frame.

        Domain and validation failures become an ``error`` event on this
        connection; the connection is never closed here.
        """
        try:
            if not isinstance(frame, dict):
                await self.send_error(connection, "Invalid frame: expected an object")
                return
            event = frame.get("event")
            data = frame.get("data") or {}
            ctx = self.context_for(connection)

            if event == EVENT_SEND_MESSAGE:
                await self._on_send_message(ctx, data)
            elif event == EVENT_TYPING:
                await self._on_typing(connection, ctx, data)
            elif event == EVENT_ADD_PARTICIPANTS:
                await self._on_add_participants(ctx, data)
            else:
                await self.send_error(connection, f"Unknown event: {event}")
        except ValidationError as e:
            await self.send_error(connection, format_validation_error(e))
        except ChatError as e:
            logger.info("[Session] %s rejected: %s", connection.id, e.message)
            await self.send_error(connection, e.message)
        except Exception:
            logger.exception("[Session] Unhandled error on %s", connection.id)
            await self.send_error(connection, "Internal server error")

    async def _on_send_message(self, ctx: CallContext, data: dict) -> None:
        event = SendMessageEvent.model_validate(data)
        # Fan-out happens in on_message_sent.
        await self.orchestrator.send_message(
            ctx, event.chatId, event.content, event.image, event.replyToId,
        )

    async def _on_typing(self, connection: LiveConnection, ctx: CallContext, data: dict) -> None:
        event = TypingEvent.model_validate(data)
        if event.chatId not in connection.rooms:
            raise UnauthorizedError("You are not a participant of this chat")
        await self.broadcast_except_user(
            event.chatId,
            EVENT_TYPING,
            {
                "chatId": event.chatId,
                "userId": ctx.user_id,
                "userName": ctx.principal.displayName,
            },
            user_id=ctx.user_id,
        )

    async def _on_add_participants(self, ctx: CallContext, data: dict) -> None:
        event = AddParticipantsEvent.model_validate(data)
        await self.orchestrator.add_participants(ctx, event.roomId, event.userIds)

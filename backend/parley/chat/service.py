"""Chat orchestrator: the use cases shared by HTTP routes and live sessions.

Composes the user directory, chat store and message store. Every store
call runs on a worker thread bounded by the caller's timeout, and every
state change is committed before the call returns, so a following read
always observes it.

State-changing use cases notify registered :class:`ChatEventListener`
objects after commit. The session manager is one; this is how HTTP and
WebSocket mutations reach live connections the same way.
"""
import logging
from typing import Any, Callable, List, Optional, Tuple, TypeVar

from parley.config import ChatSettings
from parley.context import CallContext
from parley.database import run_bounded
from parley.directory.schemas import User, UserStatus
from parley.directory.service import UserDirectory
from parley.errors import BadRequestError, NotFoundError, UnauthorizedError

from .messages import MessageStore
from .schemas import Chat, CreateChatRequest, Message, PageResult
from .store import ChatStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChatEventListener:
    """Receives committed chat changes. Override the hooks you need."""

    async def on_chat_created(self, chat: Chat) -> None:
        pass

    async def on_message_sent(self, message: Message) -> None:
        pass

    async def on_participants_added(self, chat: Chat, added_user_ids: List[str], added_by: str) -> None:
        pass


class ChatOrchestrator:
    """Single authority for chat use cases."""

    def __init__(
        self,
        directory: UserDirectory,
        chats: ChatStore,
        messages: MessageStore,
        settings: Optional[ChatSettings] = None,
    ) -> None:
        self.directory = directory
        self.chats = chats
        self.messages = messages
        self.settings = settings or ChatSettings()
        self._listeners: List[ChatEventListener] = []

    def add_listener(self, listener: ChatEventListener) -> None:
        self._listeners.append(listener)

    async def _run(self, ctx: CallContext, operation: str, fn: Callable[..., T], *args: Any) -> T:
        return await run_bounded(operation, ctx.timeout, fn, *args)

    async def _notify(self, hook: str, *args: Any) -> None:
        # Delivery is best-effort: a failing listener must not undo a commit.
        for listener in self._listeners:
            try:
                await getattr(listener, hook)(*args)
            except Exception:
                logger.exception("[Chat] Listener %s.%s failed", type(listener).__name__, hook)

    async def _require_users(self, ctx: CallContext, user_ids: List[str]) -> None:
        missing = await self._run(ctx, "directory.missing", self.directory.missing, user_ids)
        if missing:
            raise NotFoundError(f"Users not found: {', '.join(missing)}")

    # -----------------------------------------------------------------------
    # Rooms
    # -----------------------------------------------------------------------

    async def create_chat(self, ctx: CallContext, request: CreateChatRequest) -> Chat:
        """Create a group chat, or get-or-create a direct chat.

        Raises:
            BadRequestError: Empty member list, duplicate group name, or a
                direct chat with oneself.
            NotFoundError: A referenced user does not exist.
        """
        if request.isGroup:
            members = [m for m in dict.fromkeys(request.participants or []) if m != ctx.user_id]
            if not members:
                raise BadRequestError("participants cannot be empty for a group chat")
            if not request.groupName:
                raise BadRequestError("groupName is required for a group chat")
            await self._require_users(ctx, members)
            chat = await self._run(
                ctx, "chats.create_group", self.chats.create_group,
                ctx.user_id, request.groupName, members,
            )
            logger.info("[Chat] %s created group %s", ctx.user_id, chat.id)
            await self._notify("on_chat_created", chat)
            return chat

        other_id = request.participantId
        if not other_id:
            raise BadRequestError("participantId is required for a direct chat")
        if other_id == ctx.user_id:
            raise BadRequestError("Cannot start a direct chat with yourself")
        await self._require_users(ctx, [other_id])
        chat, created = await self._run(
            ctx, "chats.create_or_get_direct", self.chats.create_or_get_direct,
            ctx.user_id, other_id,
        )
        if created:
            logger.info("[Chat] %s opened direct chat %s with %s", ctx.user_id, chat.id, other_id)
            await self._notify("on_chat_created", chat)
        return chat

    async def get_user_chats(self, ctx: CallContext) -> List[Chat]:
        return await self._run(ctx, "chats.list_for_user", self.chats.list_for_user, ctx.user_id)

    async def get_single_chat(self, ctx: CallContext, chat_id: str) -> Chat:
        """Return a chat with participants and its full history.

        Raises:
            NotFoundError: If the chat does not exist.
            UnauthorizedError: If the caller is not a participant.
        """
        chat = await self._run(ctx, "chats.get", self.chats.get, chat_id, True)
        if not chat.has_participant(ctx.user_id):
            raise UnauthorizedError("You are not a participant of this chat")
        return chat

    async def room_ids_for_user(self, ctx: CallContext) -> List[str]:
        return await self._run(ctx, "chats.room_ids_for_user", self.chats.room_ids_for_user, ctx.user_id)

    async def add_participants(
        self, ctx: CallContext, chat_id: str, user_ids: List[str]
    ) -> Tuple[Chat, List[str]]:
        """Add users to a group chat. Users already present are skipped.

        Returns:
            Tuple of (chat with refreshed participants, ids actually added).

        Raises:
            NotFoundError: If the chat or a user does not exist.
            UnauthorizedError: If the caller is not a participant.
            BadRequestError: If the chat is a direct chat or no ids are given.
        """
        if not user_ids:
            raise BadRequestError("userIds cannot be empty")
        chat = await self._run(ctx, "chats.get", self.chats.get, chat_id)
        if not chat.has_participant(ctx.user_id):
            raise UnauthorizedError("You are not a participant of this chat")
        if not chat.isGroup:
            raise BadRequestError("Participants can only be added to group chats")

        await self._require_users(ctx, list(user_ids))
        chat, added = await self._run(
            ctx, "chats.add_participants", self.chats.add_participants, chat_id, user_ids,
        )
        if added:
            await self._notify("on_participants_added", chat, added, ctx.user_id)
        return chat, added

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    async def send_message(
        self,
        ctx: CallContext,
        chat_id: str,
        content: Optional[str] = None,
        image: Optional[str] = None,
        reply_to_id: Optional[str] = None,
    ) -> Message:
        """Persist a message from the caller and fan it out to the room.

        Raises:
            NotFoundError: If the chat does not exist.
            UnauthorizedError: If the caller is not a participant.
            BadRequestError: Empty message or cross-chat reply.
        """
        message = await self._run(
            ctx, "messages.append", self.messages.append,
            chat_id, ctx.user_id, content, image, reply_to_id,
        )
        await self._notify("on_message_sent", message)
        return message

    async def get_messages(
        self,
        ctx: CallContext,
        chat_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> PageResult:
        """Return one page window of the chat's history.

        Raises:
            BadRequestError: If ``limit`` is not in ``1..max_page_size``.
            UnauthorizedError: If the caller is not a participant.
        """
        limit = self.settings.default_page_size if limit is None else limit
        if limit <= 0 or limit > self.settings.max_page_size:
            raise BadRequestError(f"limit must be between 1 and {self.settings.max_page_size}")
        return await self._run(
            ctx, "messages.page", self.messages.page, chat_id, ctx.user_id, limit, offset,
        )

    # -----------------------------------------------------------------------
    # Directory
    # -----------------------------------------------------------------------

    async def list_discoverable_users(self, ctx: CallContext) -> List[User]:
        """Users that can be picked when starting a chat, excluding the caller."""
        status = UserStatus(self.settings.discoverable_status)
        return await self._run(
            ctx, "directory.list_by_status", self.directory.list_by_status, status, ctx.user_id,
        )

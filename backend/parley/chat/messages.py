"""Message store and paginator.

Messages are stored append-only and read newest-first, but every page is
returned oldest-first so clients can render it directly. Page numbers are
reported counted from the oldest batch:

    totalPages   = ceil(totalMessages / limit)
    standardPage = floor(offset / limit) + 1        # 1 = newest batch
    currentPage  = max(1, totalPages - standardPage + 1)  # 1 = oldest batch
    lastPage     = currentPage == 1

An empty chat reports ``currentPage = 0`` and ``lastPage = False``.
"""
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from parley.database import Database
from parley.errors import BadRequestError, NotFoundError, UnauthorizedError

from .rows import MESSAGE_COLUMNS, hydrate_messages
from .schemas import Message, PageResult
from .store import ChatStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageWindow:
    """Page metadata for one ``(limit, offset)`` window."""
    current_page: int
    last_page: bool
    total_pages: int


def compute_page_window(total_messages: int, limit: int, offset: int) -> PageWindow:
    """Compute page counters measured from the oldest message.

    Raises:
        BadRequestError: If ``limit`` is not positive or ``offset`` is negative.
    """
    if limit <= 0:
        raise BadRequestError("limit must be a positive integer")
    if offset < 0:
        raise BadRequestError("offset must not be negative")
    if total_messages <= 0:
        return PageWindow(current_page=0, last_page=False, total_pages=0)

    total_pages = math.ceil(total_messages / limit)
    standard_page = offset // limit + 1
    current_page = max(1, total_pages - standard_page + 1)
    return PageWindow(
        current_page=current_page,
        last_page=current_page == 1,
        total_pages=total_pages,
    )


class MessageStore:
    """Persists messages and serves page windows over a chat's history."""

    def __init__(self, db: Database, chats: ChatStore) -> None:
        self._db = db
        self._chats = chats

    def append(
        self,
        chat_id: str,
        sender_id: str,
        content: Optional[str] = None,
        image: Optional[str] = None,
        reply_to_id: Optional[str] = None,
    ) -> Message:
        """Persist a message and move the chat's ``lastMessage`` to it.

        Both writes share one transaction, so ``lastMessage`` always points
        at the most recently committed message.

        Raises:
            NotFoundError: If the chat does not exist.
            UnauthorizedError: If the sender is not a participant.
            BadRequestError: If the message is empty or ``reply_to_id`` is
                not a message of the same chat.
        """
        content = content if content and content.strip() else None
        image = image or None
        if content is None and image is None:
            raise BadRequestError("A message needs content or an image")

        message_id = str(uuid.uuid4())
        now = datetime.utcnow()
        with self._db.transaction() as cur:
            if cur.execute("SELECT 1 FROM chats WHERE id = ?", [chat_id]).fetchone() is None:
                raise NotFoundError("Chat not found")
            member = cur.execute(
                "SELECT 1 FROM chat_participants WHERE chat_id = ? AND user_id = ?",
                [chat_id, sender_id],
            ).fetchone()
            if member is None:
                raise UnauthorizedError("You are not a participant of this chat")
            if reply_to_id:
                target = cur.execute(
                    "SELECT chat_id FROM messages WHERE id = ?", [reply_to_id]
                ).fetchone()
                if target is None or target[0] != chat_id:
                    raise BadRequestError("replyToId must reference a message in the same chat")

            cur.execute(
                """
                INSERT INTO messages (id, chat_id, sender_id, content, image, reply_to_id,
                                      created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [message_id, chat_id, sender_id, content, image, reply_to_id or None, now, now],
            )
            self._chats.set_last_message(cur, chat_id, message_id, now)

        logger.debug("[MessageStore] Appended %s to chat %s from %s", message_id, chat_id, sender_id)
        return self.get(message_id)

    def get(self, message_id: str) -> Message:
        with self._db.cursor() as cur:
            row = cur.execute(
                f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id = ?", [message_id]
            ).fetchone()
            if row is None:
                raise NotFoundError("Message not found")
            return hydrate_messages(cur, [row])[0]

    def page(self, chat_id: str, requester_id: str, limit: int, offset: int) -> PageResult:
        """Return one page window of history, oldest to newest.

        Raises:
            BadRequestError: If ``limit``/``offset`` are out of range.
            UnauthorizedError: If the requester is not a participant.
        """
        if limit <= 0:
            raise BadRequestError("limit must be a positive integer")
        if offset < 0:
            raise BadRequestError("offset must not be negative")

        with self._db.cursor() as cur:
            member = cur.execute(
                "SELECT 1 FROM chat_participants WHERE chat_id = ? AND user_id = ?",
                [chat_id, requester_id],
            ).fetchone()
            if member is None:
                raise UnauthorizedError("You are not a participant of this chat")

            total = cur.execute(
                "SELECT count(*) FROM messages WHERE chat_id = ?", [chat_id]
            ).fetchone()[0]
            rows = cur.execute(
                f"""
                SELECT {MESSAGE_COLUMNS} FROM messages
                WHERE chat_id = ?
                ORDER BY seq DESC
                LIMIT ? OFFSET ?
                """,
                [chat_id, limit, offset],
            ).fetchall()
            messages = hydrate_messages(cur, list(reversed(rows)))

        window = compute_page_window(total, limit, offset)
        return PageResult(
            currentPage=window.current_page,
            lastPage=window.last_page,
            totalPages=window.total_pages,
            totalMessages=total,
            messages=messages,
        )

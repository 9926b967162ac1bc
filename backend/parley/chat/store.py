"""Chat store: rooms and participants in DuckDB.

Invariants enforced here:
    - At most one direct chat per unordered pair of users. ``direct_key``
      holds the sorted pair and carries a UNIQUE constraint; a concurrent
      duplicate insert fails the constraint and the existing chat is
      returned instead.
    - Group names are unique case-insensitively. ``group_name_key`` holds
      the lower-cased name under a UNIQUE constraint.
    - A chat and its initial participants are written in one transaction.
"""
import logging
import uuid
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

import duckdb

from parley.database import Database
from parley.errors import DuplicateNameError, NotFoundError

from .rows import CHAT_COLUMNS, MESSAGE_COLUMNS, hydrate_chats, hydrate_messages
from .schemas import Chat

logger = logging.getLogger(__name__)


def direct_key(user_a: str, user_b: str) -> str:
    """Order-independent key for a pair of users."""
    first, second = sorted((user_a, user_b))
    return f"{first}:{second}"


def group_name_key(name: str) -> str:
    return name.strip().lower()


class ChatStore:
    """Persistence and invariant enforcement for chats and participants."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def _fetch(self, cur: duckdb.DuckDBPyConnection, chat_id: str) -> Optional[Chat]:
        row = cur.execute(f"SELECT {CHAT_COLUMNS} FROM chats WHERE id = ?", [chat_id]).fetchone()
        if row is None:
            return None
        return hydrate_chats(cur, [row])[0]

    def get(self, chat_id: str, with_messages: bool = False) -> Chat:
        """Return a chat with participants (and optionally its full history).

        Raises:
            NotFoundError: If the chat does not exist.
        """
        with self._db.cursor() as cur:
            chat = self._fetch(cur, chat_id)
            if chat is None:
                raise NotFoundError("Chat not found")
            if with_messages:
                rows = cur.execute(
                    f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE chat_id = ? ORDER BY seq",
                    [chat_id],
                ).fetchall()
                chat.messages = hydrate_messages(cur, rows)
        return chat

    def list_for_user(self, user_id: str) -> List[Chat]:
        """Chats the user participates in, most recently updated first."""
        with self._db.cursor() as cur:
            rows = cur.execute(
                f"""
                SELECT {CHAT_COLUMNS} FROM chats
                WHERE id IN (SELECT chat_id FROM chat_participants WHERE user_id = ?)
                ORDER BY updated_at DESC, created_at DESC, id
                """,
                [user_id],
            ).fetchall()
            return hydrate_chats(cur, rows)

    def room_ids_for_user(self, user_id: str) -> List[str]:
        with self._db.cursor() as cur:
            rows = cur.execute(
                "SELECT chat_id FROM chat_participants WHERE user_id = ? ORDER BY seq",
                [user_id],
            ).fetchall()
        return [row[0] for row in rows]

    def is_participant(self, chat_id: str, user_id: str) -> bool:
        with self._db.cursor() as cur:
            row = cur.execute(
                "SELECT 1 FROM chat_participants WHERE chat_id = ? AND user_id = ?",
                [chat_id, user_id],
            ).fetchone()
        return row is not None

    def find_direct(self, user_a: str, user_b: str) -> Optional[Chat]:
        """Return the direct chat between two users, if any."""
        with self._db.cursor() as cur:
            row = cur.execute(
                f"SELECT {CHAT_COLUMNS} FROM chats WHERE direct_key = ?",
                [direct_key(user_a, user_b)],
            ).fetchone()
            return hydrate_chats(cur, [row])[0] if row else None

    def group_name_taken(self, name: str) -> bool:
        with self._db.cursor() as cur:
            row = cur.execute(
                "SELECT 1 FROM chats WHERE group_name_key = ?", [group_name_key(name)]
            ).fetchone()
        return row is not None

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    @staticmethod
    def _insert_participant(
        cur: duckdb.DuckDBPyConnection,
        chat_id: str,
        user_id: str,
        is_admin: bool,
        joined_at: datetime,
    ) -> None:
        cur.execute(
            """
            INSERT INTO chat_participants (id, chat_id, user_id, is_admin, joined_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [str(uuid.uuid4()), chat_id, user_id, is_admin, joined_at],
        )

    def create_group(self, creator_id: str, name: str, member_ids: Iterable[str]) -> Chat:
        """Create a group chat; the creator becomes its admin.

        Raises:
            DuplicateNameError: If another group already uses the name.
        """
        name = name.strip()
        if self.group_name_taken(name):
            raise DuplicateNameError(name)

        chat_id = str(uuid.uuid4())
        now = datetime.utcnow()
        members = [m for m in dict.fromkeys(member_ids) if m != creator_id]
        try:
            with self._db.transaction() as cur:
                cur.execute(
                    """
                    INSERT INTO chats (id, is_group, group_name, group_name_key, direct_key,
                                       created_by, last_message_id, created_at, updated_at)
                    VALUES (?, TRUE, ?, ?, NULL, ?, NULL, ?, ?)
                    """,
                    [chat_id, name, group_name_key(name), creator_id, now, now],
                )
                self._insert_participant(cur, chat_id, creator_id, True, now)
                for member_id in members:
                    self._insert_participant(cur, chat_id, member_id, False, now)
        except duckdb.ConstraintException:
            # Lost a race with a concurrent create of the same name.
            raise DuplicateNameError(name) from None

        logger.info(
            "[ChatStore] Created group %s '%s' by %s with %d members",
            chat_id, name, creator_id, len(members) + 1,
        )
        return self.get(chat_id)

    def create_or_get_direct(self, user_a: str, user_b: str) -> Tuple[Chat, bool]:
        """Idempotent get-or-create of the direct chat between two users.

        Returns:
            Tuple of (chat, created). ``created`` is False when the chat
            already existed, including when a concurrent request won the
            insert race.
        """
        existing = self.find_direct(user_a, user_b)
        if existing is not None:
            return existing, False

        chat_id = str(uuid.uuid4())
        now = datetime.utcnow()
        try:
            with self._db.transaction() as cur:
                cur.execute(
                    """
                    INSERT INTO chats (id, is_group, group_name, group_name_key, direct_key,
                                       created_by, last_message_id, created_at, updated_at)
                    VALUES (?, FALSE, NULL, NULL, ?, ?, NULL, ?, ?)
                    """,
                    [chat_id, direct_key(user_a, user_b), user_a, now, now],
                )
                self._insert_participant(cur, chat_id, user_a, False, now)
                self._insert_participant(cur, chat_id, user_b, False, now)
        except duckdb.ConstraintException:
            existing = self.find_direct(user_a, user_b)
            if existing is None:
                raise
            logger.info("[ChatStore] Direct chat for %s/%s created concurrently; reusing %s",
                        user_a, user_b, existing.id)
            return existing, False

        logger.info("[ChatStore] Created direct chat %s between %s and %s", chat_id, user_a, user_b)
        return self.get(chat_id), True

    def add_participants(self, chat_id: str, user_ids: Iterable[str]) -> Tuple[Chat, List[str]]:
        """Add non-admin participants, skipping users already in the chat.

        Returns:
            Tuple of (refreshed chat, ids actually added).

        Raises:
            NotFoundError: If the chat does not exist.
        """
        requested = list(dict.fromkeys(user_ids))
        now = datetime.utcnow()
        with self._db.transaction() as cur:
            row = cur.execute("SELECT 1 FROM chats WHERE id = ?", [chat_id]).fetchone()
            if row is None:
                raise NotFoundError("Chat not found")
            present = {
                r[0] for r in cur.execute(
                    "SELECT user_id FROM chat_participants WHERE chat_id = ?", [chat_id]
                ).fetchall()
            }
            added = [user_id for user_id in requested if user_id not in present]
            for user_id in added:
                self._insert_participant(cur, chat_id, user_id, False, now)
            if added:
                cur.execute("UPDATE chats SET updated_at = ? WHERE id = ?", [now, chat_id])

        if added:
            logger.info("[ChatStore] Added %s to chat %s", added, chat_id)
        return self.get(chat_id), added

    @staticmethod
    def set_last_message(
        cur: duckdb.DuckDBPyConnection,
        chat_id: str,
        message_id: str,
        at: datetime,
    ) -> None:
        """Point the chat at its newest message, inside the caller's transaction."""
        cur.execute(
            "UPDATE chats SET last_message_id = ?, updated_at = ? WHERE id = ?",
            [message_id, at, chat_id],
        )

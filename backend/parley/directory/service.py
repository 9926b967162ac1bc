"""DuckDB-backed user directory.

Resolves user ids into :class:`User` records and tracks online presence.
The identity provider stays the source of truth; ``upsert`` refreshes the
local mirror whenever a principal is verified remotely.
"""
import logging
from typing import Dict, Iterable, List, Optional

from parley.database import Database

from .schemas import User, UserStatus

logger = logging.getLogger(__name__)

USER_COLUMNS = "id, first_name, last_name, email, avatar, is_online, status, created_at"


def row_to_user(row: tuple) -> User:
    return User(
        id=row[0],
        firstName=row[1],
        lastName=row[2],
        email=row[3],
        avatar=row[4],
        isOnline=row[5],
        status=UserStatus(row[6]),
        createdAt=row[7],
    )


class UserDirectory:
    """Lookups and presence updates over the ``users`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, user_id: str) -> Optional[User]:
        """Return the user, or None if unknown."""
        with self._db.cursor() as cur:
            row = cur.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", [user_id]
            ).fetchone()
        return row_to_user(row) if row else None

    def get_many(self, user_ids: Iterable[str]) -> Dict[str, User]:
        """Return the known users among *user_ids*, keyed by id."""
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._db.cursor() as cur:
            rows = cur.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE id IN ({placeholders})", ids
            ).fetchall()
        return {row[0]: row_to_user(row) for row in rows}

    def missing(self, user_ids: Iterable[str]) -> List[str]:
        """Return the ids in *user_ids* that do not resolve to a user."""
        ids = list(dict.fromkeys(user_ids))
        known = self.get_many(ids)
        return [user_id for user_id in ids if user_id not in known]

    def list_by_status(self, status: UserStatus, exclude_id: Optional[str] = None) -> List[User]:
        """List users in *status*, ordered by name, optionally skipping one id."""
        with self._db.cursor() as cur:
            rows = cur.execute(
                f"""
                SELECT {USER_COLUMNS} FROM users
                WHERE status = ? AND id <> ?
                ORDER BY lower(first_name), lower(last_name), email
                """,
                [status.value, exclude_id or ""],
            ).fetchall()
        return [row_to_user(row) for row in rows]

    def upsert(self, user: User) -> User:
        """Insert or refresh a user mirrored from the identity provider.

        Presence is owned locally and is never overwritten here.
        """
        with self._db.transaction() as cur:
            cur.execute(
                """
                INSERT INTO users (id, first_name, last_name, email, avatar, is_online, status, created_at)
                VALUES (?, ?, ?, ?, ?, FALSE, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    email = excluded.email,
                    avatar = excluded.avatar,
                    status = excluded.status
                """,
                [
                    user.id,
                    user.firstName,
                    user.lastName,
                    user.email,
                    user.avatar,
                    user.status.value,
                    user.createdAt,
                ],
            )
        logger.debug("[Directory] Upserted user %s", user.id)
        return self.get(user.id) or user

    def set_online(self, user_id: str, online: bool) -> None:
        """Record whether *user_id* currently has a live connection."""
        with self._db.transaction() as cur:
            cur.execute("UPDATE users SET is_online = ? WHERE id = ?", [online, user_id])
        logger.info("[Directory] User %s is now %s", user_id, "online" if online else "offline")

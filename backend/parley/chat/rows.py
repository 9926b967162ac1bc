"""Row mapping shared by the chat and message stores.

All helpers take the caller's cursor so relation loading happens inside
the same transaction/snapshot as the primary query.
"""
from typing import Dict, Iterable, List

import duckdb

from parley.directory.schemas import User
from parley.directory.service import USER_COLUMNS, row_to_user

from .schemas import Chat, Message, Participant

CHAT_COLUMNS = "id, is_group, group_name, created_by, last_message_id, created_at, updated_at"
MESSAGE_COLUMNS = "id, chat_id, sender_id, content, image, reply_to_id, created_at, updated_at"
PARTICIPANT_COLUMNS = "id, chat_id, user_id, is_admin, joined_at"


def _placeholders(values: List[str]) -> str:
    return ", ".join("?" for _ in values)


def fetch_users(cur: duckdb.DuckDBPyConnection, user_ids: Iterable[str]) -> Dict[str, User]:
    ids = list(dict.fromkeys(user_ids))
    if not ids:
        return {}
    rows = cur.execute(
        f"SELECT {USER_COLUMNS} FROM users WHERE id IN ({_placeholders(ids)})", ids
    ).fetchall()
    return {row[0]: row_to_user(row) for row in rows}


def count_replies(cur: duckdb.DuckDBPyConnection, message_ids: List[str]) -> Dict[str, int]:
    """Number of replies per message, derived from ``reply_to_id``."""
    if not message_ids:
        return {}
    rows = cur.execute(
        f"""
        SELECT reply_to_id, count(*) FROM messages
        WHERE reply_to_id IN ({_placeholders(message_ids)})
        GROUP BY reply_to_id
        """,
        message_ids,
    ).fetchall()
    return {row[0]: row[1] for row in rows}


def hydrate_messages(cur: duckdb.DuckDBPyConnection, rows: List[tuple]) -> List[Message]:
    """Turn ``MESSAGE_COLUMNS`` rows into Messages with senders and reply counts."""
    if not rows:
        return []
    senders = fetch_users(cur, (row[2] for row in rows))
    replies = count_replies(cur, [row[0] for row in rows])
    return [
        Message(
            id=row[0],
            chatId=row[1],
            senderId=row[2],
            sender=senders.get(row[2]),
            content=row[3],
            image=row[4],
            replyToId=row[5],
            replyCount=replies.get(row[0], 0),
            createdAt=row[6],
            updatedAt=row[7],
        )
        for row in rows
    ]


def hydrate_chats(cur: duckdb.DuckDBPyConnection, rows: List[tuple]) -> List[Chat]:
    """Turn ``CHAT_COLUMNS`` rows into Chats with participants and last message."""
    if not rows:
        return []
    chat_ids = [row[0] for row in rows]

    participant_rows = cur.execute(
        f"""
        SELECT {PARTICIPANT_COLUMNS} FROM chat_participants
        WHERE chat_id IN ({_placeholders(chat_ids)})
        ORDER BY seq
        """,
        chat_ids,
    ).fetchall()

    last_ids = [row[4] for row in rows if row[4]]
    last_messages: Dict[str, Message] = {}
    if last_ids:
        message_rows = cur.execute(
            f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id IN ({_placeholders(last_ids)})",
            last_ids,
        ).fetchall()
        last_messages = {m.id: m for m in hydrate_messages(cur, message_rows)}

    users = fetch_users(
        cur, [p[2] for p in participant_rows] + [row[3] for row in rows]
    )

    participants: Dict[str, List[Participant]] = {chat_id: [] for chat_id in chat_ids}
    for p in participant_rows:
        participants[p[1]].append(
            Participant(
                id=p[0],
                chatId=p[1],
                userId=p[2],
                user=users.get(p[2]),
                isAdmin=p[3],
                joinedAt=p[4],
            )
        )

    return [
        Chat(
            id=row[0],
            isGroup=row[1],
            groupName=row[2],
            createdById=row[3],
            createdBy=users.get(row[3]),
            participants=participants[row[0]],
            lastMessage=last_messages.get(row[4]) if row[4] else None,
            createdAt=row[5],
            updatedAt=row[6],
        )
        for row in rows
    ]

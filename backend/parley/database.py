"""DuckDB storage shared by the directory, chat and message stores.

Database Schema:
    users:             identities mirrored from the identity provider
    chats:             rooms; ``direct_key`` and ``group_name_key`` carry the
                       pair-uniqueness and name-uniqueness constraints
    chat_participants: user <-> chat join rows, unique per (chat_id, user_id)
    messages:          append-only; ``seq`` gives commit order

Thread Safety:
    A single DuckDB connection is opened per Database. Each operation takes
    the process lock and works on its own cursor, so store methods can run
    on worker threads (see :func:`run_bounded`). Writes run inside an
    explicit transaction and either commit fully or roll back.
"""
import asyncio
import logging
import threading
from contextlib import contextmanager
from contextvars import ContextVar, copy_context
from typing import Any, Callable, Iterator, Optional, TypeVar

import duckdb

from parley.errors import StoreTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SCHEMA = (
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    "CREATE SEQUENCE IF NOT EXISTS participants_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS users (
        id          VARCHAR PRIMARY KEY,
        first_name  VARCHAR NOT NULL DEFAULT '',
        last_name   VARCHAR NOT NULL DEFAULT '',
        email       VARCHAR NOT NULL,
        avatar      VARCHAR,
        is_online   BOOLEAN NOT NULL DEFAULT FALSE,
        status      VARCHAR NOT NULL DEFAULT 'VERIFIED',
        created_at  TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chats (
        id              VARCHAR PRIMARY KEY,
        is_group        BOOLEAN NOT NULL,
        group_name      VARCHAR,
        group_name_key  VARCHAR UNIQUE,
        direct_key      VARCHAR UNIQUE,
        created_by      VARCHAR NOT NULL,
        last_message_id VARCHAR,
        created_at      TIMESTAMP NOT NULL,
        updated_at      TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_participants (
        id        VARCHAR PRIMARY KEY,
        seq       BIGINT NOT NULL DEFAULT nextval('participants_seq'),
        chat_id   VARCHAR NOT NULL,
        user_id   VARCHAR NOT NULL,
        is_admin  BOOLEAN NOT NULL DEFAULT FALSE,
        joined_at TIMESTAMP NOT NULL,
        UNIQUE (chat_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id          VARCHAR PRIMARY KEY,
        seq         BIGINT NOT NULL DEFAULT nextval('messages_seq'),
        chat_id     VARCHAR NOT NULL,
        sender_id   VARCHAR NOT NULL,
        content     VARCHAR,
        image       VARCHAR,
        reply_to_id VARCHAR,
        created_at  TIMESTAMP NOT NULL,
        updated_at  TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_participants_user ON chat_participants(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_reply ON messages(reply_to_id)",
)


class Database:
    """Owns the DuckDB connection and the schema.

    Args:
        path: DuckDB file path, or ``":memory:"`` for an ephemeral store.
    """

    def __init__(self, path: str = ":memory:") -> None:
        self._path = path
        self._lock = threading.RLock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(path)
        self._initialize_db()
        logger.info("[Database] Initialized with db=%s", path)

    def _initialize_db(self) -> None:
        """Create tables, sequences and indexes. Safe to call repeatedly."""
        with self.transaction() as cur:
            for statement in _SCHEMA:
                cur.execute(statement)

    @contextmanager
    def cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Yield a cursor for reads, holding the process lock."""
        if self._connection is None:
            raise RuntimeError("Database is closed")
        with self._lock:
            cur = self._connection.cursor()
            try:
                yield cur
            finally:
                cur.close()

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Yield a cursor inside BEGIN/COMMIT; roll back on any exception.

        Under :func:`run_bounded` the commit only happens if the caller is
        still waiting for it.
        """
        gate = _commit_gate.get()
        if gate is not None:
            gate.check()
        with self.cursor() as cur:
            cur.begin()
            try:
                yield cur
            except BaseException:
                cur.rollback()
                raise
            if gate is None:
                cur.commit()
            else:
                gate.commit(cur)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


class CommitGate:
    """Decides, once, whether a bounded store call may still commit.

    :func:`run_bounded` installs one per call. The worker asks it for
    permission at commit time; the event loop closes it when the timeout
    fires. Whichever comes first wins, under the gate's lock.
    """

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        self._lock = threading.Lock()
        self._expired = False
        self._committed = False

    def expire(self) -> bool:
        """Close the gate. Returns False if a commit already went through."""
        with self._lock:
            if self._committed:
                return False
            self._expired = True
            return True

    def check(self) -> None:
        if self._expired:
            raise StoreTimeoutError(self.operation, self.timeout)

    def commit(self, cur: duckdb.DuckDBPyConnection) -> None:
        """Commit *cur* unless the caller has already given up on it."""
        with self._lock:
            if self._expired:
                cur.rollback()
                logger.info("[Database] Rolled back %s: caller timed out", self.operation)
                raise StoreTimeoutError(self.operation, self.timeout)
            cur.commit()
            self._committed = True


# Gate of the bounded call running on this worker thread, if any.
_commit_gate: ContextVar[Optional[CommitGate]] = ContextVar("commit_gate", default=None)


async def run_bounded(
    operation: str,
    timeout: float,
    fn: Callable[..., T],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Run a blocking store call on a worker thread, bounded by *timeout*.

    A worker thread cannot be stopped, so a timed-out call may still reach
    its commit later. The call's :class:`CommitGate` turns that commit into
    a rollback, so a caller that saw :class:`StoreTimeoutError` can retry
    without the first attempt ever having applied. If the worker committed
    just before the timeout fired, its result is returned instead.

    Raises:
        StoreTimeoutError: If the call does not finish in time.
    """
    gate = CommitGate(operation, timeout)

    def call() -> T:
        _commit_gate.set(gate)
        return fn(*args, **kwargs)

    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(None, copy_context().run, call)
    done, _ = await asyncio.wait({future}, timeout=timeout)
    if future in done:
        return future.result()

    if not gate.expire():
        # Committed between the deadline and now; finish the read-back.
        return await future
    # Whatever the abandoned worker ends with is discarded.
    future.add_done_callback(lambda f: f.cancelled() or f.exception())
    logger.warning("[Database] %s timed out after %ss", operation, timeout)
    raise StoreTimeoutError(operation, timeout)

"""Shared test fixtures and configuration for backend tests.

Every test gets a fresh in-memory DuckDB seeded with four users:
alice, bob and carol are VERIFIED, dave is still PENDING. Ids are UUIDs,
as the identity provider issues them.
"""
import json
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from parley.chat.messages import MessageStore
from parley.chat.service import ChatOrchestrator
from parley.chat.store import ChatStore
from parley.config import (
    AppSettings,
    ChatSettings,
    DatabaseSettings,
    EncryptionSecrets,
    JWTSecrets,
    Secrets,
)
from parley.context import CallContext
from parley.database import Database
from parley.directory.schemas import User, UserStatus
from parley.directory.service import UserDirectory
from parley.envelope.cipher import EnvelopeCipher
from parley.main import create_app

ENVELOPE_SECRET = "test-envelope-secret"
JWT_SECRET = "test-jwt-secret"

ALICE = "00000000-0000-4000-8000-000000000001"
BOB = "00000000-0000-4000-8000-000000000002"
CAROL = "00000000-0000-4000-8000-000000000003"
DAVE = "00000000-0000-4000-8000-000000000004"

SEED_USERS = [
    User(id=ALICE, firstName="Alice", lastName="Archer", email="alice@example.com"),
    User(id=BOB, firstName="Bob", lastName="Baker", email="bob@example.com"),
    User(id=CAROL, firstName="Carol", lastName="Cole", email="carol@example.com"),
    User(id=DAVE, firstName="Dave", lastName="Dunn", email="dave@example.com",
         status=UserStatus.PENDING),
]


def make_token(user_id: str, secret: str = JWT_SECRET, expires_in: int = 3600) -> str:
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {"sub": user_id, "iat": now, "exp": now + timedelta(seconds=expires_in)},
        secret,
        algorithm="HS256",
    )


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(
        database=DatabaseSettings(path=":memory:", operation_timeout_seconds=5.0),
        chat=ChatSettings(default_page_size=20, max_page_size=100),
        secrets=Secrets(
            encryption=EncryptionSecrets(secret_key=ENVELOPE_SECRET),
            jwt=JWTSecrets(secret_key=JWT_SECRET),
        ),
    )


@pytest.fixture
def db():
    database = Database(":memory:")
    directory = UserDirectory(database)
    for user in SEED_USERS:
        directory.upsert(user)
    yield database
    database.close()


@pytest.fixture
def directory(db) -> UserDirectory:
    return UserDirectory(db)


@pytest.fixture
def chats(db) -> ChatStore:
    return ChatStore(db)


@pytest.fixture
def messages(db, chats) -> MessageStore:
    return MessageStore(db, chats)


@pytest.fixture
def orchestrator(directory, chats, messages) -> ChatOrchestrator:
    return ChatOrchestrator(directory, chats, messages, ChatSettings())


@pytest.fixture
def ctx(directory):
    """Build a CallContext for a seeded user id."""
    def _ctx(user_id: str, timeout: float = 5.0) -> CallContext:
        return CallContext(principal=directory.get(user_id), timeout=timeout)
    return _ctx


@pytest.fixture
def cipher() -> EnvelopeCipher:
    return EnvelopeCipher(ENVELOPE_SECRET)


@pytest.fixture
def app(settings, db):
    return create_app(settings, db=db)


@pytest.fixture
def api_client(app):
    """TestClient with the lifespan started, so ``app.state`` is populated."""
    with TestClient(app) as client:
        yield client


def open_envelope(response, cipher: EnvelopeCipher) -> dict:
    """Decrypt a sealed HTTP response body."""
    token = json.loads(response.text)
    assert isinstance(token, str)
    return cipher.decrypt(token)

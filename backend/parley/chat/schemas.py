"""Pydantic schemas for chats, participants, messages and pages.

Records are plain data: relations are loaded explicitly by the stores
(participants with their users, last message with its sender) and never
lazily on attribute access. Field names are camelCase because they are
the wire format of both the HTTP and the WebSocket surfaces.

Request models (CreateChatRequest, SendMessageRequest, ...) validate the
bodies of the HTTP routes and the payloads of WebSocket events.
"""
from datetime import datetime
from typing import Annotated, List, Optional

from pydantic import BaseModel, Field, model_validator

from parley.directory.schemas import User

# Group names are compared case-insensitively; limits match the column size.
GROUP_NAME_MIN_LENGTH = 3
GROUP_NAME_MAX_LENGTH = 50

# Identity-provider user ids (any UUID version).
UUID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
UserId = Annotated[str, Field(pattern=UUID_PATTERN)]


# =============================================================================
# Records
# =============================================================================


class Participant(BaseModel):
    """A user's membership in a chat.

    Attributes:
        id: Participant row id.
        chatId: Owning chat.
        userId: Member's user id.
        user: Resolved member (None only if the directory lost the user).
        isAdmin: Admin flag; meaningful for group chats only.
        joinedAt: When the user joined (UTC).
    """
    id: str
    chatId: str
    userId: str
    user: Optional[User] = None
    isAdmin: bool = False
    joinedAt: datetime


class Message(BaseModel):
    """A chat message. Messages are append-only.

    ``replyCount`` is derived by querying messages whose ``replyToId``
    points at this one; there is no in-memory back-pointer.
    """
    id: str
    chatId: str
    senderId: str
    sender: Optional[User] = None
    content: Optional[str] = None
    image: Optional[str] = None
    replyToId: Optional[str] = None
    replyCount: int = 0
    createdAt: datetime
    updatedAt: datetime


class Chat(BaseModel):
    """A direct (two members) or group (named, N members) conversation.

    Attributes:
        lastMessage: Denormalized pointer to the newest committed message,
            used for room-list previews.
        messages: Only filled by the single-room view.
    """
    id: str
    isGroup: bool = False
    groupName: Optional[str] = None
    createdById: str
    createdBy: Optional[User] = None
    participants: List[Participant] = Field(default_factory=list)
    lastMessage: Optional[Message] = None
    messages: Optional[List[Message]] = None
    createdAt: datetime
    updatedAt: datetime

    def has_participant(self, user_id: str) -> bool:
        return any(p.userId == user_id for p in self.participants)

    @property
    def participant_ids(self) -> List[str]:
        return [p.userId for p in self.participants]


class PageResult(BaseModel):
    """One page window of a chat's history.

    ``currentPage`` counts from the oldest batch (page 1 = oldest), so a
    client knows it reached the beginning of history when ``lastPage`` is
    true. ``messages`` are ordered oldest to newest.
    """
    currentPage: int
    lastPage: bool
    totalPages: int
    totalMessages: int = 0
    messages: List[Message] = Field(default_factory=list)


# =============================================================================
# Requests
# =============================================================================


class CreateChatRequest(BaseModel):
    """Body of ``POST /rooms``.

    A group needs ``groupName`` and a non-empty, duplicate-free
    ``participants`` list; a direct chat needs ``participantId``.
    """
    isGroup: bool = False
    groupName: Optional[str] = None
    participants: Optional[List[str]] = None
    participantId: Optional[str] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "CreateChatRequest":
        if self.isGroup:
            if not self.participants:
                raise ValueError("participants cannot be empty for a group chat")
            if len(set(self.participants)) != len(self.participants):
                raise ValueError("participants must be unique")
            name = (self.groupName or "").strip()
            if not GROUP_NAME_MIN_LENGTH <= len(name) <= GROUP_NAME_MAX_LENGTH:
                raise ValueError(
                    f"groupName must be between {GROUP_NAME_MIN_LENGTH} "
                    f"and {GROUP_NAME_MAX_LENGTH} characters"
                )
            self.groupName = name
        elif not self.participantId:
            raise ValueError("participantId is required for a direct chat")
        return self


class SendMessageRequest(BaseModel):
    """Body of ``POST /rooms/{id}/message``."""
    content: Optional[str] = None
    image: Optional[str] = None
    replyToId: Optional[str] = None


class SendMessageEvent(SendMessageRequest):
    """Payload of the ``send-message`` WebSocket event."""
    chatId: str = Field(..., min_length=1)


class TypingEvent(BaseModel):
    """Payload of the ``typing`` WebSocket event."""
    chatId: str = Field(..., min_length=1)


class AddParticipantsRequest(BaseModel):
    """Body of ``POST /rooms/{id}/add-participants``."""
    userIds: List[UserId] = Field(..., min_length=1)


class AddParticipantsEvent(AddParticipantsRequest):
    """Payload of the ``add-participants`` WebSocket event."""
    roomId: str = Field(..., min_length=1)

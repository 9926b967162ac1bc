"""Pydantic schemas for directory users.

Users are owned by the identity provider; the chat core keeps a mirror so
rooms, participants and messages can resolve names and presence.
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class UserStatus(str, Enum):
    """Lifecycle status reported by the identity provider.

    Attributes:
        PENDING: Registration started, email not verified yet.
        VERIFIED: Email verified; the user can be discovered for new chats.
        CREATED: Account created but onboarding not finished.
    """
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    CREATED = "CREATED"


class User(BaseModel):
    """A user as seen by the chat core.

    Attributes:
        id: Identity-provider user id (UUID string).
        firstName: Given name.
        lastName: Family name.
        email: Primary email.
        avatar: Opaque avatar reference (URL or storage key).
        isOnline: True while at least one live connection is open.
        status: Lifecycle status.
    """
    id: str = Field(..., min_length=1, description="User ID")
    firstName: str = Field(default="", description="Given name")
    lastName: str = Field(default="", description="Family name")
    email: str = Field(..., description="Email address")
    avatar: Optional[str] = Field(default=None, description="Avatar reference")
    isOnline: bool = Field(default=False, description="Has a live connection")
    status: UserStatus = Field(default=UserStatus.VERIFIED, description="Lifecycle status")
    createdAt: datetime = Field(default_factory=datetime.utcnow, description="First seen (UTC)")

    @property
    def displayName(self) -> str:
        """Full name, falling back to the email address."""
        name = f"{self.firstName} {self.lastName}".strip()
        return name or self.email

"""Participant directory: user identities and online presence."""
from .schemas import User, UserStatus
from .service import UserDirectory

__all__ = ["User", "UserDirectory", "UserStatus"]

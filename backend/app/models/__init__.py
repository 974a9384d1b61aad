"""Database models."""

from app.models.session import UserSession
from app.models.user import AuthProvider, User, UserAuth

__all__ = [
    "AuthProvider",
    "User",
    "UserAuth",
    "UserSession",
]

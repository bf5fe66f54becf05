"""Database models."""

from app.models.phone_session import PhoneSession
from app.models.user import User

__all__ = [
    "PhoneSession",
    "User",
]

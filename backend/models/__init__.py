"""SQLAlchemy ORM models for the hotel booking backend."""

from backend.models.base import Base
from backend.models.room import Room
from backend.models.user import User, UserRole

__all__ = [
    "Base",
    "Room",
    "User",
    "UserRole",
]

"""User account model."""

from __future__ import annotations

import enum

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.models.base import Base


class UserRole(enum.StrEnum):
    """Roles in ascending order of privilege."""

    USER = "User"
    MANAGER = "Manager"
    ADMIN = "Admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]


_ROLE_RANK = {UserRole.USER: 0, UserRole.MANAGER: 1, UserRole.ADMIN: 2}


class User(Base):
    """Application user.

    Two-factor state lives on the user row: ``two_factor_secret`` holds the
    base32 TOTP secret (set at setup, confirmed when ``two_factor_enabled``
    flips), and ``recovery_codes`` holds a JSON list of SHA-256 hashes of the
    unredeemed recovery codes.
    """

    __tablename__ = "users"
    # Ids are never reused; session tokens carry them as ``sub``.
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default=UserRole.USER.value)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    two_factor_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    two_factor_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    recovery_codes: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_two_factor_used_at: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)

"""User management schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from backend.models.user import UserRole
from backend.schemas.auth import USERNAME_PATTERN, check_password_strength


class UserUpdateRequest(BaseModel):
    """Change username, password and (admins only) role."""

    username: str | None = Field(default=None, pattern=USERNAME_PATTERN)
    password: str | None = Field(default=None, min_length=8, max_length=128)
    role: UserRole | None = None

    @field_validator("password")
    @classmethod
    def password_must_be_strong(cls, v: str | None) -> str | None:
        _ = cls
        return check_password_strength(v) if v is not None else v


class RoleChangeRequest(BaseModel):
    role: UserRole

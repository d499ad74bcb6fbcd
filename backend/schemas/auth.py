"""Authentication schemas."""

from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, Field, field_validator

USERNAME_PATTERN = r"^[a-zA-Z0-9_-]{3,30}$"
_SPECIAL_CHARACTER = re.compile(r"[^A-Za-z0-9]")


def check_password_strength(password: str) -> str:
    """Require upper case, lower case, a digit and a special character."""
    missing = []
    if not any(c.isupper() for c in password):
        missing.append("an uppercase letter")
    if not any(c.islower() for c in password):
        missing.append("a lowercase letter")
    if not any(c.isdigit() for c in password):
        missing.append("a digit")
    if not _SPECIAL_CHARACTER.search(password):
        missing.append("a special character")
    if missing:
        raise ValueError("Password must contain " + ", ".join(missing))
    return password


class LoginRequest(BaseModel):
    """Login request."""

    username: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1, max_length=200)


class TwoFactorLoginRequest(BaseModel):
    """Second login step: pending token from the first step plus a code."""

    username: str = Field(min_length=1, max_length=50)
    two_factor_token: str = Field(min_length=1, max_length=200)
    code: str = Field(min_length=6, max_length=20)
    is_recovery_code: bool = False


class RegisterRequest(BaseModel):
    """Self-registration request. New accounts always get the User role."""

    username: str = Field(pattern=USERNAME_PATTERN)
    password: str = Field(min_length=8, max_length=128)

    @field_validator("password")
    @classmethod
    def password_must_be_strong(cls, v: str) -> str:
        _ = cls
        return check_password_strength(v)


class LoginResponse(BaseModel):
    """Either a session token or a pending second-factor token."""

    requires_two_factor: bool = False
    access_token: str | None = None
    two_factor_token: str | None = None
    token_type: Literal["bearer"] = "bearer"


class TokenResponse(BaseModel):
    """Session token response."""

    access_token: str
    token_type: Literal["bearer"] = "bearer"


class UserResponse(BaseModel):
    """User info response. Never includes credentials or 2FA material."""

    id: int
    username: str
    role: str
    is_active: bool
    two_factor_enabled: bool = False
    created_at: str
    updated_at: str

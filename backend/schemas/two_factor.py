"""Two-factor authentication schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field


class TwoFactorSetupResponse(BaseModel):
    """Enrollment material for an authenticator app."""

    secret_key: str
    qr_code_uri: str
    manual_entry_code: str


class TwoFactorCodeRequest(BaseModel):
    """A live TOTP code from the user's authenticator."""

    verification_code: str = Field(min_length=6, max_length=10)


class RecoveryCodesResponse(BaseModel):
    """One-time display of a fresh recovery-code batch."""

    recovery_codes: list[str]


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    recovery_codes_remaining: int
    last_used_at: str | None = None


class RecoveryCodeCountResponse(BaseModel):
    remaining: int

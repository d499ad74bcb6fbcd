"""Two-factor authentication management endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from backend.api.deps import get_two_factor, require_auth
from backend.models.user import User
from backend.schemas.two_factor import (
    RecoveryCodeCountResponse,
    RecoveryCodesResponse,
    TwoFactorCodeRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
)
from backend.services.datetime_service import format_timestamp
from backend.services.two_factor_service import TwoFactorEngine

router = APIRouter(prefix="/api/2fa", tags=["two-factor"])

_INVALID_CODE = "Invalid verification code"


def _group_secret(secret: str) -> str:
    return " ".join(secret[i : i + 4] for i in range(0, len(secret), 4))


@router.post("/setup", response_model=TwoFactorSetupResponse)
async def setup(
    user: Annotated[User, Depends(require_auth)],
    two_factor: Annotated[TwoFactorEngine, Depends(get_two_factor)],
) -> TwoFactorSetupResponse:
    """Start enrollment. Each call replaces any unconfirmed secret."""
    enrollment = await two_factor.begin_setup(str(user.id), user.username)
    if enrollment is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Two-factor authentication is already enabled",
        )
    return TwoFactorSetupResponse(
        secret_key=enrollment.secret,
        qr_code_uri=enrollment.provisioning_uri,
        manual_entry_code=_group_secret(enrollment.secret),
    )


@router.post("/enable", response_model=RecoveryCodesResponse)
async def enable(
    body: TwoFactorCodeRequest,
    user: Annotated[User, Depends(require_auth)],
    two_factor: Annotated[TwoFactorEngine, Depends(get_two_factor)],
) -> RecoveryCodesResponse:
    """Confirm enrollment with a live code and receive the recovery codes once."""
    codes = await two_factor.confirm_setup(str(user.id), body.verification_code)
    if codes is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=_INVALID_CODE)
    return RecoveryCodesResponse(recovery_codes=codes)


@router.post("/disable", status_code=204)
async def disable(
    body: TwoFactorCodeRequest,
    user: Annotated[User, Depends(require_auth)],
    two_factor: Annotated[TwoFactorEngine, Depends(get_two_factor)],
) -> None:
    """Turn 2FA off. Requires a live code."""
    if not await two_factor.verify_totp(str(user.id), body.verification_code):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=_INVALID_CODE)
    await two_factor.disable(str(user.id))


@router.get("/status", response_model=TwoFactorStatusResponse)
async def get_status(
    user: Annotated[User, Depends(require_auth)],
    two_factor: Annotated[TwoFactorEngine, Depends(get_two_factor)],
) -> TwoFactorStatusResponse:
    state = await two_factor.status(str(user.id))
    return TwoFactorStatusResponse(
        enabled=state.enabled,
        recovery_codes_remaining=state.recovery_codes_remaining,
        last_used_at=format_timestamp(state.last_used_at) if state.last_used_at else None,
    )


@router.post("/recovery-codes/regenerate", response_model=RecoveryCodesResponse)
async def regenerate_recovery_codes(
    body: TwoFactorCodeRequest,
    user: Annotated[User, Depends(require_auth)],
    two_factor: Annotated[TwoFactorEngine, Depends(get_two_factor)],
) -> RecoveryCodesResponse:
    """Replace all recovery codes. Requires a live code."""
    user_id = str(user.id)
    if not await two_factor.verify_totp(user_id, body.verification_code):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=_INVALID_CODE)
    codes = await two_factor.regenerate_recovery_codes(user_id)
    if codes is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Two-factor authentication is not enabled",
        )
    return RecoveryCodesResponse(recovery_codes=codes)


@router.get("/recovery-codes/count", response_model=RecoveryCodeCountResponse)
async def recovery_code_count(
    user: Annotated[User, Depends(require_auth)],
    two_factor: Annotated[TwoFactorEngine, Depends(get_two_factor)],
) -> RecoveryCodeCountResponse:
    state = await two_factor.status(str(user.id))
    return RecoveryCodeCountResponse(remaining=state.recovery_codes_remaining)

"""Authentication API endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import (
    get_auth_flow,
    get_session,
    get_settings,
    get_two_factor,
    require_auth,
)
from backend.config import Settings
from backend.models.user import User
from backend.schemas.auth import (
    LoginRequest,
    LoginResponse,
    RegisterRequest,
    TokenResponse,
    TwoFactorLoginRequest,
    UserResponse,
)
from backend.services.auth_service import AuthenticationFlow
from backend.services.two_factor_service import TwoFactorEngine
from backend.services.user_service import create_user, username_taken

router = APIRouter(prefix="/api/auth", tags=["auth"])


async def to_user_response(user: User, two_factor: TwoFactorEngine) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        role=user.role,
        is_active=user.is_active,
        two_factor_enabled=await two_factor.is_enabled(str(user.id)),
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


@router.post("/login", response_model=LoginResponse)
async def login(
    body: LoginRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    flow: Annotated[AuthenticationFlow, Depends(get_auth_flow)],
) -> LoginResponse:
    """Login with username and password."""
    outcome = await flow.begin_login(session, body.username, body.password)
    if outcome is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
        )
    if outcome.requires_two_factor:
        return LoginResponse(requires_two_factor=True, two_factor_token=outcome.pending_token)
    return LoginResponse(access_token=outcome.access_token)


@router.post("/login/2fa", response_model=TokenResponse)
async def login_two_factor(
    body: TwoFactorLoginRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    flow: Annotated[AuthenticationFlow, Depends(get_auth_flow)],
) -> TokenResponse:
    """Complete a login with the pending token and a TOTP or recovery code."""
    access_token = await flow.complete_two_factor_login(
        session,
        body.username,
        body.two_factor_token,
        body.code,
        is_recovery_code=body.is_recovery_code,
    )
    if access_token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid two-factor code or token, please login again",
        )
    return TokenResponse(access_token=access_token)


@router.post("/register", response_model=UserResponse, status_code=201)
async def register(
    body: RegisterRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    two_factor: Annotated[TwoFactorEngine, Depends(get_two_factor)],
) -> UserResponse:
    """Register a new user account."""
    if not settings.auth_self_registration:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Registration is disabled",
        )
    if await username_taken(session, body.username):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Username already taken",
        )
    user = await create_user(session, body.username, body.password)
    return await to_user_response(user, two_factor)


@router.get("/me", response_model=UserResponse)
async def get_me(
    user: Annotated[User, Depends(require_auth)],
    two_factor: Annotated[TwoFactorEngine, Depends(get_two_factor)],
) -> UserResponse:
    """Get current user info."""
    return await to_user_response(user, two_factor)

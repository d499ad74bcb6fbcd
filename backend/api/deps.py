"""Shared API dependencies: DB session, auth, security services."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from backend.config import Settings
from backend.models.user import User, UserRole
from backend.services.auth_service import AuthenticationFlow, decode_access_token
from backend.services.two_factor_service import TwoFactorEngine
from backend.services.user_status_service import UserStatusCache

security = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_two_factor(request: Request) -> TwoFactorEngine:
    engine: TwoFactorEngine = request.app.state.two_factor
    return engine


def get_auth_flow(request: Request) -> AuthenticationFlow:
    flow: AuthenticationFlow = request.app.state.auth_flow
    return flow


def get_user_status_cache(request: Request) -> UserStatusCache:
    cache: UserStatusCache = request.app.state.user_status_cache
    return cache


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


async def get_current_user(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
    session: AsyncSession = Depends(get_session),
) -> User | None:
    """Get current authenticated user, or None if not authenticated."""
    if credentials is None:
        return None

    settings: Settings = request.app.state.settings
    payload = decode_access_token(credentials.credentials, settings)
    if payload is None:
        return None
    user = await session.get(User, int(payload["sub"]))
    if user is None or not user.is_active:
        return None
    if payload.get("username") != user.username:
        return None
    return user


async def require_auth(
    user: Annotated[User | None, Depends(get_current_user)],
) -> User:
    """Require authentication. Raises 401 if not authenticated."""
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_role(minimum: UserRole) -> Callable[[User], Awaitable[User]]:
    """Build a dependency that requires at least ``minimum`` privilege."""

    async def dependency(user: Annotated[User, Depends(require_auth)]) -> User:
        if UserRole(user.role).rank < minimum.rank:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"{minimum.value} access required",
            )
        return user

    return dependency


require_manager = require_role(UserRole.MANAGER)
require_admin = require_role(UserRole.ADMIN)

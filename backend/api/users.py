"""User management endpoints.

Deactivation, activation, deletion and role changes notify the user-status
cache after the commit so that existing sessions are revalidated on their
next request.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.auth import to_user_response
from backend.api.deps import (
    get_session,
    get_two_factor,
    get_user_status_cache,
    require_admin,
    require_auth,
    require_manager,
)
from backend.models.user import User, UserRole
from backend.schemas.auth import UserResponse
from backend.schemas.user import RoleChangeRequest, UserUpdateRequest
from backend.services.two_factor_service import TwoFactorEngine
from backend.services.user_service import (
    delete_user,
    get_user,
    list_users,
    set_user_active,
    update_user,
    username_taken,
)
from backend.services.user_status_service import UserStatusCache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


async def _get_user_or_404(session: AsyncSession, user_id: int) -> User:
    user = await get_user(session, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


def _reject_self(actor: User, target: User, action: str) -> None:
    if actor.id == target.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Administrators cannot {action} their own account",
        )


@router.get("", response_model=list[UserResponse])
async def list_users_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
    two_factor: Annotated[TwoFactorEngine, Depends(get_two_factor)],
    _user: Annotated[User, Depends(require_manager)],
) -> list[UserResponse]:
    users = await list_users(session)
    return [await to_user_response(u, two_factor) for u in users]


@router.get("/{user_id}", response_model=UserResponse)
async def get_user_endpoint(
    user_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
    two_factor: Annotated[TwoFactorEngine, Depends(get_two_factor)],
    actor: Annotated[User, Depends(require_auth)],
) -> UserResponse:
    """Users may read their own record; managers and admins may read any."""
    if actor.id != user_id and UserRole(actor.role).rank < UserRole.MANAGER.rank:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    target = await _get_user_or_404(session, user_id)
    return await to_user_response(target, two_factor)


async def _apply_update(
    user_id: int,
    body: UserUpdateRequest,
    session: AsyncSession,
    two_factor: TwoFactorEngine,
    cache: UserStatusCache,
    actor: User,
) -> UserResponse:
    is_admin = actor.role == UserRole.ADMIN.value
    if actor.id != user_id and not is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    if body.role is not None and not is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Only administrators can change roles"
        )
    target = await _get_user_or_404(session, user_id)
    if body.role is not None and body.role != UserRole.ADMIN:
        _reject_self(actor, target, "demote")
    if body.username is not None and await username_taken(
        session, body.username, exclude_id=target.id
    ):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Username already taken")

    renamed = body.username is not None and body.username != target.username
    role_changed = await update_user(
        session, target, username=body.username, password=body.password, role=body.role
    )
    if role_changed:
        cache.on_user_role_changed(str(target.id))
    elif renamed:
        # Sessions issued under the old name must log in again.
        cache.invalidate(str(target.id))
    return await to_user_response(target, two_factor)


@router.put("/{user_id}", response_model=UserResponse)
async def replace_user_endpoint(
    user_id: int,
    body: UserUpdateRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    two_factor: Annotated[TwoFactorEngine, Depends(get_two_factor)],
    cache: Annotated[UserStatusCache, Depends(get_user_status_cache)],
    actor: Annotated[User, Depends(require_auth)],
) -> UserResponse:
    return await _apply_update(user_id, body, session, two_factor, cache, actor)


@router.patch("/{user_id}", response_model=UserResponse)
async def patch_user_endpoint(
    user_id: int,
    body: UserUpdateRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    two_factor: Annotated[TwoFactorEngine, Depends(get_two_factor)],
    cache: Annotated[UserStatusCache, Depends(get_user_status_cache)],
    actor: Annotated[User, Depends(require_auth)],
) -> UserResponse:
    return await _apply_update(user_id, body, session, two_factor, cache, actor)


@router.put("/{user_id}/role", response_model=UserResponse)
async def change_role_endpoint(
    user_id: int,
    body: RoleChangeRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    two_factor: Annotated[TwoFactorEngine, Depends(get_two_factor)],
    cache: Annotated[UserStatusCache, Depends(get_user_status_cache)],
    actor: Annotated[User, Depends(require_admin)],
) -> UserResponse:
    target = await _get_user_or_404(session, user_id)
    if body.role != UserRole.ADMIN:
        _reject_self(actor, target, "demote")
    if await update_user(session, target, role=body.role):
        cache.on_user_role_changed(str(target.id))
        logger.info("Admin %s changed role of user %s to %s", actor.id, target.id, body.role)
    return await to_user_response(target, two_factor)


@router.post("/{user_id}/deactivate", response_model=UserResponse)
async def deactivate_user_endpoint(
    user_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
    two_factor: Annotated[TwoFactorEngine, Depends(get_two_factor)],
    cache: Annotated[UserStatusCache, Depends(get_user_status_cache)],
    actor: Annotated[User, Depends(require_admin)],
) -> UserResponse:
    target = await _get_user_or_404(session, user_id)
    _reject_self(actor, target, "deactivate")
    await set_user_active(session, target, False)
    cache.on_user_deactivated(str(target.id))
    return await to_user_response(target, two_factor)


@router.post("/{user_id}/activate", response_model=UserResponse)
async def activate_user_endpoint(
    user_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
    two_factor: Annotated[TwoFactorEngine, Depends(get_two_factor)],
    cache: Annotated[UserStatusCache, Depends(get_user_status_cache)],
    _actor: Annotated[User, Depends(require_admin)],
) -> UserResponse:
    target = await _get_user_or_404(session, user_id)
    if await set_user_active(session, target, True):
        cache.invalidate(str(target.id))
    return await to_user_response(target, two_factor)


@router.delete("/{user_id}", status_code=204)
async def delete_user_endpoint(
    user_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
    cache: Annotated[UserStatusCache, Depends(get_user_status_cache)],
    actor: Annotated[User, Depends(require_admin)],
) -> None:
    target = await _get_user_or_404(session, user_id)
    _reject_self(actor, target, "delete")
    await delete_user(session, target)
    cache.invalidate(str(user_id))

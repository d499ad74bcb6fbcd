"""User account management.

Functions here only touch the database. Callers that change a user's active
flag or role must notify the user-status cache after the commit.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select

from backend.models.user import User, UserRole
from backend.services.auth_service import get_user_by_username, hash_password
from backend.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


async def list_users(session: AsyncSession) -> list[User]:
    result = await session.execute(select(User).order_by(User.id))
    return list(result.scalars().all())


async def get_user(session: AsyncSession, user_id: int) -> User | None:
    return await session.get(User, user_id)


async def username_taken(
    session: AsyncSession, username: str, *, exclude_id: int | None = None
) -> bool:
    existing = await get_user_by_username(session, username)
    return existing is not None and existing.id != exclude_id


async def create_user(
    session: AsyncSession,
    username: str,
    password: str,
    role: UserRole = UserRole.USER,
) -> User:
    now = format_iso(now_utc())
    user = User(
        username=username,
        password_hash=hash_password(password),
        role=role.value,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    logger.info("Created user %s with role %s", user.id, user.role)
    return user


async def update_user(
    session: AsyncSession,
    user: User,
    *,
    username: str | None = None,
    password: str | None = None,
    role: UserRole | None = None,
) -> bool:
    """Apply account changes. Returns True if the role changed."""
    role_changed = role is not None and role.value != user.role
    if username is not None:
        user.username = username
    if password is not None:
        user.password_hash = hash_password(password)
    if role is not None:
        user.role = role.value
    user.updated_at = format_iso(now_utc())
    await session.commit()
    await session.refresh(user)
    return role_changed


async def set_user_active(session: AsyncSession, user: User, active: bool) -> bool:
    """Activate or deactivate a user. Returns True if the flag changed."""
    if user.is_active == active:
        return False
    user.is_active = active
    user.updated_at = format_iso(now_utc())
    await session.commit()
    logger.info("User %s %s", user.id, "activated" if active else "deactivated")
    return True


async def delete_user(session: AsyncSession, user: User) -> None:
    await session.delete(user)
    await session.commit()
    logger.info("Deleted user %s", user.id)


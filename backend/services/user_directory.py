"""SQL-backed user directory consulted by the user-status cache."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from backend.exceptions import InternalServerError
from backend.models.user import User
from backend.services.user_status_service import UserStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


class SqlUserDirectory:
    """Look up live account status in the users table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def lookup(self, user_id: str) -> UserStatus | None:
        if not user_id.isdigit():
            return None
        try:
            async with self._session_factory() as session:
                user = await session.get(User, int(user_id))
        except SQLAlchemyError as exc:
            raise InternalServerError(f"User directory lookup failed for {user_id}") from exc
        if user is None:
            return None
        return UserStatus(is_active=user.is_active, role=user.role, username=user.username)

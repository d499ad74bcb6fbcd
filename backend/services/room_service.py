"""Room catalogue business logic."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from backend.models.room import Room
from backend.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from backend.schemas.room import RoomCreate


async def list_rooms(
    session: AsyncSession,
    *,
    available_only: bool = False,
    min_capacity: int | None = None,
    max_price: float | None = None,
) -> list[Room]:
    """Return rooms ordered by id, optionally filtered."""
    stmt = select(Room).order_by(Room.id)
    if available_only:
        stmt = stmt.where(Room.is_available.is_(True))
    if min_capacity is not None:
        stmt = stmt.where(Room.capacity >= min_capacity)
    if max_price is not None:
        stmt = stmt.where(Room.price_per_night <= max_price)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_room(session: AsyncSession, room_id: int) -> Room | None:
    return await session.get(Room, room_id)


async def create_room(session: AsyncSession, data: RoomCreate) -> Room:
    now = format_iso(now_utc())
    room = Room(**data.model_dump(), created_at=now, updated_at=now)
    session.add(room)
    await session.commit()
    await session.refresh(room)
    return room


async def update_room(session: AsyncSession, room: Room, changes: dict[str, Any]) -> Room:
    """Apply ``changes`` (field -> value) and bump ``updated_at``."""
    for field_name, value in changes.items():
        setattr(room, field_name, value)
    room.updated_at = format_iso(now_utc())
    await session.commit()
    await session.refresh(room)
    return room


async def delete_room(session: AsyncSession, room: Room) -> None:
    await session.delete(room)
    await session.commit()

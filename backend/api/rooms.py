"""Room catalogue endpoints."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_session, require_admin, require_manager
from backend.models.room import Room
from backend.models.user import User
from backend.schemas.room import RoomCreate, RoomResponse, RoomUpdate
from backend.services.room_service import (
    create_room,
    delete_room,
    get_room,
    list_rooms,
    update_room,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rooms", tags=["rooms"])


async def _get_room_or_404(session: AsyncSession, room_id: int) -> Room:
    room = await get_room(session, room_id)
    if room is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    return room


@router.get("", response_model=list[RoomResponse])
async def list_rooms_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
    available: Annotated[bool, Query()] = False,
    min_capacity: Annotated[int | None, Query(ge=1, le=20)] = None,
    max_price: Annotated[float | None, Query(gt=0)] = None,
) -> list[RoomResponse]:
    """List rooms. Public."""
    rooms = await list_rooms(
        session, available_only=available, min_capacity=min_capacity, max_price=max_price
    )
    return [RoomResponse.model_validate(room) for room in rooms]


@router.get("/{room_id}", response_model=RoomResponse)
async def get_room_endpoint(
    room_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> RoomResponse:
    room = await _get_room_or_404(session, room_id)
    return RoomResponse.model_validate(room)


@router.post("", response_model=RoomResponse, status_code=201)
async def create_room_endpoint(
    body: RoomCreate,
    session: Annotated[AsyncSession, Depends(get_session)],
    user: Annotated[User, Depends(require_manager)],
) -> RoomResponse:
    room = await create_room(session, body)
    logger.info("User %s created room %s", user.id, room.id)
    return RoomResponse.model_validate(room)


@router.put("/{room_id}", response_model=RoomResponse)
async def replace_room_endpoint(
    room_id: int,
    body: RoomCreate,
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_manager)],
) -> RoomResponse:
    """Replace every field of a room."""
    room = await _get_room_or_404(session, room_id)
    room = await update_room(session, room, body.model_dump())
    return RoomResponse.model_validate(room)


@router.patch("/{room_id}", response_model=RoomResponse)
async def patch_room_endpoint(
    room_id: int,
    body: RoomUpdate,
    session: Annotated[AsyncSession, Depends(get_session)],
    _user: Annotated[User, Depends(require_manager)],
) -> RoomResponse:
    """Update only the fields present in the request."""
    room = await _get_room_or_404(session, room_id)
    changes = body.model_dump(exclude_unset=True)
    for required in ("name", "capacity", "price_per_night", "is_available"):
        if required in changes and changes[required] is None:
            raise HTTPException(
                status_code=422,
                detail=f"{required} cannot be null",
            )
    room = await update_room(session, room, changes)
    return RoomResponse.model_validate(room)


@router.delete("/{room_id}", status_code=204)
async def delete_room_endpoint(
    room_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
    user: Annotated[User, Depends(require_admin)],
) -> None:
    room = await _get_room_or_404(session, room_id)
    await delete_room(session, room)
    logger.info("User %s deleted room %s", user.id, room_id)

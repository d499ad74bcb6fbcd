"""Room schemas."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class RoomCreate(BaseModel):
    """Request to create a room."""

    name: str = Field(min_length=1, max_length=100)
    capacity: int = Field(ge=1, le=20)
    price_per_night: float = Field(ge=0.01, le=10_000)
    is_available: bool = True
    room_type: str | None = Field(default=None, max_length=50)
    description: str | None = Field(default=None, max_length=500)


class RoomUpdate(BaseModel):
    """Partial room update. Omitted fields are left unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    capacity: int | None = Field(default=None, ge=1, le=20)
    price_per_night: float | None = Field(default=None, ge=0.01, le=10_000)
    is_available: bool | None = None
    room_type: str | None = Field(default=None, max_length=50)
    description: str | None = Field(default=None, max_length=500)


class RoomResponse(BaseModel):
    """Room as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    capacity: int
    price_per_night: float
    is_available: bool
    room_type: str | None = None
    description: str | None = None
    created_at: str
    updated_at: str

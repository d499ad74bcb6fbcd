"""Health check endpoints."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/health", tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str


class DatabaseHealthResponse(BaseModel):
    database: str
    user_count: int | None = None
    room_count: int | None = None


async def _ping(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except Exception:
        logger.warning("Health check database query failed", exc_info=True)
        return False
    return True


@router.get("", response_model=HealthResponse)
async def health_check(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> HealthResponse:
    """Health check endpoint for monitoring and load balancers."""
    db_ok = await _ping(session)
    return HealthResponse(
        status="ok" if db_ok else "degraded",
        version=request.app.version,
        database="ok" if db_ok else "error",
    )


@router.get("/db", response_model=DatabaseHealthResponse)
async def database_health(
    session: Annotated[AsyncSession, Depends(get_session)],
) -> DatabaseHealthResponse:
    """Database connectivity plus collection sizes."""
    if not await _ping(session):
        return DatabaseHealthResponse(database="error")
    users = await session.execute(text("SELECT COUNT(*) FROM users"))
    rooms = await session.execute(text("SELECT COUNT(*) FROM rooms"))
    return DatabaseHealthResponse(
        database="ok",
        user_count=int(users.scalar_one()),
        room_count=int(rooms.scalar_one()),
    )

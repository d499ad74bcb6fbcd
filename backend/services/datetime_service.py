"""Clock abstraction and ISO timestamp helpers."""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Source of wall-clock time in Unix seconds."""

    def now(self) -> float: ...


class SystemClock:
    """Clock backed by ``time.time()``."""

    def now(self) -> float:
        return time.time()


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(UTC)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.isoformat()


def format_timestamp(timestamp: float) -> str:
    """Format Unix seconds as an ISO 8601 UTC string."""
    return datetime.fromtimestamp(timestamp, UTC).isoformat()


def parse_timestamp(value: str | None) -> float | None:
    """Parse an ISO 8601 string back into Unix seconds. Unparseable values yield None."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.timestamp()

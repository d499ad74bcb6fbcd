"""Time-bounded cache of user account status used to revalidate session tokens.

Session tokens carry the role and active flag that were true at issuance. The
cache holds the live values for a short TTL so that an admin deactivation or
role change takes effect without waiting for the token to expire.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from backend.services.datetime_service import SystemClock

if TYPE_CHECKING:
    from backend.services.datetime_service import Clock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserStatus:
    """Live account status as reported by the user directory."""

    is_active: bool
    role: str
    username: str | None = None


@dataclass(frozen=True)
class UserStatusEntry:
    """Cached status for one user."""

    user_id: str
    is_active: bool
    role: str
    cached_at: float
    username: str | None = None

    @property
    def status(self) -> UserStatus:
        return UserStatus(is_active=self.is_active, role=self.role, username=self.username)


class UserDirectory(Protocol):
    """Authoritative source of user status."""

    async def lookup(self, user_id: str) -> UserStatus | None: ...


class UserStatusCache:
    """Resolve user status through a TTL cache in front of a ``UserDirectory``.

    Only active users are cached. An inactive result is returned to the caller
    and any entry for that user is dropped immediately. Directory errors
    propagate so the caller can fail closed.

    While a lookup for a user is in flight, invalidating that user bumps its
    generation. The lookup then does not store its result, so it cannot
    re-populate the cache with the pre-invalidation status. Generations are
    tracked only for users with lookups in flight.
    """

    def __init__(
        self,
        directory: UserDirectory,
        ttl_seconds: float = 300,
        clock: Clock | None = None,
        max_entries: int = 10_000,
    ) -> None:
        self._directory = directory
        self._ttl = ttl_seconds
        self._clock: Clock = clock if clock is not None else SystemClock()
        self._max_entries = max_entries
        self._entries: dict[str, UserStatusEntry] = {}
        self._in_flight: dict[str, int] = {}
        self._generations: dict[str, int] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._entries

    def _fresh_entry(self, user_id: str, now: float) -> UserStatusEntry | None:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            if now - entry.cached_at >= self._ttl:
                del self._entries[user_id]
                return None
            return entry

    async def resolve(self, user_id: str) -> UserStatus | None:
        """Return the user's status, or None if the directory does not know the user."""
        now = self._clock.now()
        entry = self._fresh_entry(user_id, now)
        if entry is not None:
            return entry.status

        with self._lock:
            self._in_flight[user_id] = self._in_flight.get(user_id, 0) + 1
            generation = self._generations.get(user_id, 0)
        try:
            status = await self._directory.lookup(user_id)
            if status is None or not status.is_active:
                self.invalidate(user_id)
                return status
            with self._lock:
                if self._generations.get(user_id, 0) == generation:
                    self._store(user_id, status)
            return status
        finally:
            with self._lock:
                remaining = self._in_flight[user_id] - 1
                if remaining:
                    self._in_flight[user_id] = remaining
                else:
                    del self._in_flight[user_id]
                    self._generations.pop(user_id, None)

    def _store(self, user_id: str, status: UserStatus) -> None:
        if len(self._entries) >= self._max_entries and user_id not in self._entries:
            oldest = min(self._entries, key=lambda k: self._entries[k].cached_at)
            del self._entries[oldest]
        self._entries[user_id] = UserStatusEntry(
            user_id=user_id,
            is_active=status.is_active,
            role=status.role,
            cached_at=self._clock.now(),
            username=status.username,
        )

    def invalidate(self, user_id: str) -> None:
        """Drop the cached entry so the next resolution reads the directory."""
        with self._lock:
            self._entries.pop(user_id, None)
            if user_id in self._in_flight:
                self._generations[user_id] = self._generations.get(user_id, 0) + 1

    def on_user_deactivated(self, user_id: str) -> None:
        logger.info("Invalidating cached status for deactivated user %s", user_id)
        self.invalidate(user_id)

    def on_user_role_changed(self, user_id: str) -> None:
        logger.info("Invalidating cached status for user %s after role change", user_id)
        self.invalidate(user_id)

    def sweep(self) -> int:
        """Remove expired entries. Returns the number removed."""
        now = self._clock.now()
        with self._lock:
            expired = [
                key for key, entry in self._entries.items() if now - entry.cached_at >= self._ttl
            ]
            for key in expired:
                del self._entries[key]
        return len(expired)

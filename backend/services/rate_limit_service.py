"""In-memory sliding-window rate limiter for the admission pipeline. State is lost on restart.

Every (client, endpoint-class) pair owns three independent windows: a 10 s
burst window, a one-minute window and a one-day window. A request is recorded
in all three windows only when none of them is at its ceiling.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from backend.services.datetime_service import SystemClock

if TYPE_CHECKING:
    from collections.abc import Mapping

    from backend.services.datetime_service import Clock

logger = logging.getLogger(__name__)

BURST_WINDOW_SECONDS = 10
MINUTE_WINDOW_SECONDS = 60
DAILY_WINDOW_SECONDS = 86_400

DEFAULT_CLASS = "default"


@dataclass(frozen=True)
class EndpointClassLimit:
    """Request ceilings for one endpoint class."""

    burst_limit: int
    per_minute_limit: int
    daily_limit: int


DEFAULT_ENDPOINT_LIMITS: dict[str, EndpointClassLimit] = {
    "auth": EndpointClassLimit(burst_limit=5, per_minute_limit=20, daily_limit=100),
    "registration": EndpointClassLimit(burst_limit=3, per_minute_limit=10, daily_limit=50),
    "user-ops": EndpointClassLimit(burst_limit=30, per_minute_limit=100, daily_limit=500),
    "room-browse": EndpointClassLimit(burst_limit=60, per_minute_limit=200, daily_limit=1000),
    DEFAULT_CLASS: EndpointClassLimit(burst_limit=20, per_minute_limit=80, daily_limit=400),
}

DEFAULT_ENDPOINT_ROUTES: dict[str, str] = {
    "/api/auth/login": "auth",
    "/api/auth/register": "registration",
    "/api/2fa": "auth",
    "/api/users": "user-ops",
    "/api/rooms": "room-browse",
}


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one rate-limit check.

    ``reason`` is ``"burst"``, ``"per-minute"`` or ``"daily"`` on denial and
    ``None`` when allowed. ``retry_after`` is the width of the exceeded window
    in seconds (zero when allowed). Remaining counts reflect the state after
    the current request was recorded.
    """

    allowed: bool
    endpoint_class: str
    reason: str | None = None
    retry_after: int = 0
    remaining_burst: int = 0
    remaining_minute: int = 0
    remaining_daily: int = 0
    reset_seconds: int = 0


@dataclass
class ClientWindowCounter:
    """Timestamps for one (client, endpoint-class) pair, guarded by its own lock."""

    burst: deque[float] = field(default_factory=deque)
    minute: deque[float] = field(default_factory=deque)
    daily: deque[float] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock)
    retired: bool = False

    def prune(self, now: float) -> None:
        """Drop timestamps that have left their window. Caller holds ``lock``."""
        for window, width in (
            (self.burst, BURST_WINDOW_SECONDS),
            (self.minute, MINUTE_WINDOW_SECONDS),
            (self.daily, DAILY_WINDOW_SECONDS),
        ):
            cutoff = now - width
            while window and window[0] <= cutoff:
                window.popleft()

    def is_empty(self) -> bool:
        return not (self.burst or self.minute or self.daily)

    def record(self, now: float) -> None:
        self.burst.append(now)
        self.minute.append(now)
        self.daily.append(now)


class ClientWindowStore(Protocol):
    """Keyed storage for window counters."""

    def get_or_create(self, key: str) -> ClientWindowCounter: ...

    def keys(self) -> list[str]: ...

    def remove_if_idle(self, key: str, now: float) -> bool: ...


class InMemoryClientWindowStore:
    """Process-local counter storage.

    The store lock only guards the dictionary structure. Counting happens under
    the per-key lock of each ``ClientWindowCounter``, so unrelated clients never
    serialize on each other.
    """

    def __init__(self) -> None:
        self._counters: dict[str, ClientWindowCounter] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._counters)

    def __contains__(self, key: object) -> bool:
        return key in self._counters

    def get_or_create(self, key: str) -> ClientWindowCounter:
        with self._lock:
            counter = self._counters.get(key)
            if counter is None:
                counter = ClientWindowCounter()
                self._counters[key] = counter
            return counter

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._counters)

    def remove_if_idle(self, key: str, now: float) -> bool:
        """Remove the counter for ``key`` if no window holds a recent timestamp."""
        with self._lock:
            counter = self._counters.get(key)
            if counter is None:
                return False
            with counter.lock:
                counter.prune(now)
                if not counter.is_empty():
                    return False
                counter.retired = True
            del self._counters[key]
            return True


def _matches_prefix(path: str, prefix: str) -> bool:
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


def classify_endpoint(path: str, routes: Mapping[str, str]) -> str:
    """Map a request path onto an endpoint class by longest matching prefix."""
    normalized = path.lower().rstrip("/") or "/"
    best_class = DEFAULT_CLASS
    best_length = -1
    for prefix, endpoint_class in routes.items():
        candidate = prefix.lower()
        if len(candidate) > best_length and _matches_prefix(normalized, candidate):
            best_class = endpoint_class
            best_length = len(candidate)
    return best_class


def resolve_client_id(
    subject: str | None,
    forwarded_for: str | None,
    client_host: str | None,
) -> str:
    """Identify the caller: authenticated subject first, then source address."""
    if subject:
        return f"user:{subject}"
    if forwarded_for:
        first_hop = forwarded_for.split(",", maxsplit=1)[0].strip()
        if first_hop:
            return f"ip:{first_hop}"
    if client_host:
        return f"ip:{client_host}"
    return "ip:unknown"


class RateLimiter:
    """Burst, per-minute and daily ceilings per (client, endpoint-class) pair."""

    def __init__(
        self,
        limits: Mapping[str, EndpointClassLimit] | None = None,
        routes: Mapping[str, str] | None = None,
        store: ClientWindowStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._limits = dict(limits if limits is not None else DEFAULT_ENDPOINT_LIMITS)
        if DEFAULT_CLASS not in self._limits:
            self._limits[DEFAULT_CLASS] = DEFAULT_ENDPOINT_LIMITS[DEFAULT_CLASS]
        self._routes = dict(routes if routes is not None else DEFAULT_ENDPOINT_ROUTES)
        self._store: ClientWindowStore = store if store is not None else InMemoryClientWindowStore()
        self._clock: Clock = clock if clock is not None else SystemClock()

    @property
    def store(self) -> ClientWindowStore:
        return self._store

    def classify(self, path: str) -> str:
        return classify_endpoint(path, self._routes)

    def limit_for(self, endpoint_class: str) -> EndpointClassLimit:
        return self._limits.get(endpoint_class, self._limits[DEFAULT_CLASS])

    def check(
        self,
        client_id: str,
        endpoint_class: str,
        now: float | None = None,
    ) -> RateLimitDecision:
        """Count one request, or deny it with the first exceeded window."""
        if now is None:
            now = self._clock.now()
        limit = self.limit_for(endpoint_class)
        key = f"{endpoint_class}|{client_id}"
        while True:
            counter = self._store.get_or_create(key)
            with counter.lock:
                # A concurrent sweep may have detached this counter from the store.
                if counter.retired:
                    continue
                return self._evaluate(counter, limit, endpoint_class, now)

    def _evaluate(
        self,
        counter: ClientWindowCounter,
        limit: EndpointClassLimit,
        endpoint_class: str,
        now: float,
    ) -> RateLimitDecision:
        counter.prune(now)
        checks = (
            ("burst", counter.burst, limit.burst_limit, BURST_WINDOW_SECONDS),
            ("per-minute", counter.minute, limit.per_minute_limit, MINUTE_WINDOW_SECONDS),
            ("daily", counter.daily, limit.daily_limit, DAILY_WINDOW_SECONDS),
        )
        for reason, window, ceiling, width in checks:
            if len(window) >= ceiling:
                return RateLimitDecision(
                    allowed=False,
                    endpoint_class=endpoint_class,
                    reason=reason,
                    retry_after=width,
                    remaining_burst=max(limit.burst_limit - len(counter.burst), 0),
                    remaining_minute=max(limit.per_minute_limit - len(counter.minute), 0),
                    remaining_daily=max(limit.daily_limit - len(counter.daily), 0),
                    reset_seconds=width,
                )

        counter.record(now)
        return RateLimitDecision(
            allowed=True,
            endpoint_class=endpoint_class,
            remaining_burst=limit.burst_limit - len(counter.burst),
            remaining_minute=limit.per_minute_limit - len(counter.minute),
            remaining_daily=limit.daily_limit - len(counter.daily),
            reset_seconds=_seconds_until_reset(counter.minute, now),
        )

    def sweep(self, now: float | None = None) -> int:
        """Evict counters with no timestamps left in any window. Returns the eviction count."""
        if now is None:
            now = self._clock.now()
        removed = 0
        for key in self._store.keys():
            if self._store.remove_if_idle(key, now):
                removed += 1
        if removed:
            logger.debug("Rate limiter sweep evicted %d idle counters", removed)
        return removed


def _seconds_until_reset(window: deque[float], now: float) -> int:
    if not window:
        return MINUTE_WINDOW_SECONDS
    return max(int(window[0] + MINUTE_WINDOW_SECONDS - now), 1)

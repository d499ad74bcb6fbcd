"""TOTP two-factor authentication: enrollment, verification and recovery codes.

Per-user state moves through ``Disabled -> PendingSetup -> Enabled`` and back
to ``Disabled`` on disable. Logins for enabled users pass through a short-lived,
single-use pending token between the password check and the code check.

All mutations of one user's secret and recovery codes run under a per-user
``asyncio.Lock`` so two concurrent requests can never redeem the same recovery
code or confirm setup twice with different code batches.
"""

from __future__ import annotations

import asyncio
import dataclasses
import hashlib
import json
import logging
import secrets
import threading
import weakref
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

import pyotp
from sqlalchemy.exc import SQLAlchemyError

from backend.exceptions import InternalServerError
from backend.models.user import User
from backend.services.datetime_service import (
    SystemClock,
    format_iso,
    format_timestamp,
    now_utc,
    parse_timestamp,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from backend.services.datetime_service import Clock

logger = logging.getLogger(__name__)

TOTP_INTERVAL_SECONDS = 30
TOTP_DIGITS = 6
TOTP_VALID_WINDOW = 1

# No 0/O or 1/I so codes survive being read aloud or copied by hand.
RECOVERY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


@dataclass
class TwoFactorSecret:
    """Persisted 2FA state for one user. Recovery codes are held as SHA-256 hashes."""

    user_id: str
    secret: str
    recovery_code_hashes: set[str] = field(default_factory=set)
    enabled: bool = False
    last_used_at: float | None = None

    def copy(self) -> TwoFactorSecret:
        return dataclasses.replace(self, recovery_code_hashes=set(self.recovery_code_hashes))


@dataclass(frozen=True)
class TwoFactorSetup:
    """Enrollment material returned by ``begin_setup``."""

    secret: str
    provisioning_uri: str


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    recovery_codes_remaining: int
    last_used_at: float | None


@dataclass(frozen=True)
class PendingTwoFactorToken:
    """Proof that the first factor succeeded, waiting for the second."""

    token: str
    user_id: str
    issued_at: float
    expires_at: float


def normalize_recovery_code(code: str) -> str:
    return code.strip().replace("-", "").replace(" ", "").upper()


def hash_recovery_code(code: str) -> str:
    """Hash a recovery code (SHA-256) for safe storage."""
    return hashlib.sha256(normalize_recovery_code(code).encode()).hexdigest()


def generate_recovery_codes(count: int, length: int) -> list[str]:
    """Generate ``count`` distinct codes drawn from ``RECOVERY_CODE_ALPHABET``."""
    codes: list[str] = []
    seen: set[str] = set()
    while len(codes) < count:
        code = "".join(secrets.choice(RECOVERY_CODE_ALPHABET) for _ in range(length))
        if code not in seen:
            seen.add(code)
            codes.append(code)
    return codes


def verify_code(secret: str, code: str, now: float) -> bool:
    """Check a TOTP code at time steps c-1, c and c+1 around ``now``."""
    candidate = code.strip().replace(" ", "")
    if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
        return False
    totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL_SECONDS)
    return totp.verify(candidate, for_time=int(now), valid_window=TOTP_VALID_WINDOW)


class TwoFactorStore(Protocol):
    """Durable storage for per-user 2FA state."""

    async def get(self, user_id: str) -> TwoFactorSecret | None: ...

    async def save(self, state: TwoFactorSecret) -> None: ...

    async def clear(self, user_id: str) -> None: ...


class InMemoryTwoFactorStore:
    """Process-local 2FA state. Returns copies so callers cannot mutate stored state."""

    def __init__(self) -> None:
        self._states: dict[str, TwoFactorSecret] = {}

    async def get(self, user_id: str) -> TwoFactorSecret | None:
        state = self._states.get(user_id)
        return state.copy() if state is not None else None

    async def save(self, state: TwoFactorSecret) -> None:
        self._states[state.user_id] = state.copy()

    async def clear(self, user_id: str) -> None:
        self._states.pop(user_id, None)


class SqlTwoFactorStore:
    """2FA state persisted on the ``users`` row."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, user_id: str) -> TwoFactorSecret | None:
        if not user_id.isdigit():
            return None
        async with self._session_factory() as session:
            user = await session.get(User, int(user_id))
        if user is None or not user.two_factor_secret:
            return None
        hashes = json.loads(user.recovery_codes) if user.recovery_codes else []
        return TwoFactorSecret(
            user_id=user_id,
            secret=user.two_factor_secret,
            recovery_code_hashes=set(hashes),
            enabled=user.two_factor_enabled,
            last_used_at=parse_timestamp(user.last_two_factor_used_at),
        )

    async def save(self, state: TwoFactorSecret) -> None:
        async with self._session_factory() as session:
            user = await self._load(session, state.user_id)
            user.two_factor_secret = state.secret
            user.two_factor_enabled = state.enabled
            user.recovery_codes = json.dumps(sorted(state.recovery_code_hashes))
            user.last_two_factor_used_at = (
                format_timestamp(state.last_used_at) if state.last_used_at is not None else None
            )
            user.updated_at = format_iso(now_utc())
            await session.commit()

    async def clear(self, user_id: str) -> None:
        if not user_id.isdigit():
            return
        async with self._session_factory() as session:
            user = await session.get(User, int(user_id))
            if user is None:
                return
            user.two_factor_secret = None
            user.two_factor_enabled = False
            user.recovery_codes = None
            user.updated_at = format_iso(now_utc())
            await session.commit()

    @staticmethod
    async def _load(session: AsyncSession, user_id: str) -> User:
        try:
            user = await session.get(User, int(user_id))
        except (ValueError, SQLAlchemyError) as exc:
            raise InternalServerError(f"Cannot load 2FA state for user {user_id}") from exc
        if user is None:
            raise InternalServerError(f"Cannot save 2FA state for missing user {user_id}")
        return user


class PendingTokenStore(Protocol):
    """Keyed storage for pending second-factor tokens."""

    def put(self, token: PendingTwoFactorToken) -> None: ...

    def pop(self, token: str) -> PendingTwoFactorToken | None: ...

    def sweep(self, now: float) -> int: ...


class InMemoryPendingTokenStore:
    """Process-local pending tokens with a hard size cap."""

    def __init__(self, max_entries: int = 10_000) -> None:
        self._max_entries = max_entries
        self._tokens: dict[str, PendingTwoFactorToken] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._tokens)

    def put(self, token: PendingTwoFactorToken) -> None:
        with self._lock:
            if len(self._tokens) >= self._max_entries:
                oldest = min(self._tokens, key=lambda k: self._tokens[k].issued_at)
                del self._tokens[oldest]
            self._tokens[token.token] = token

    def pop(self, token: str) -> PendingTwoFactorToken | None:
        with self._lock:
            return self._tokens.pop(token, None)

    def sweep(self, now: float) -> int:
        with self._lock:
            expired = [k for k, t in self._tokens.items() if now >= t.expires_at]
            for k in expired:
                del self._tokens[k]
        return len(expired)


class TwoFactorEngine:
    """TOTP enrollment, code checks, recovery codes and pending login tokens."""

    def __init__(
        self,
        store: TwoFactorStore,
        pending_tokens: PendingTokenStore | None = None,
        clock: Clock | None = None,
        *,
        issuer: str = "HotelBookingAPI",
        pending_token_ttl_seconds: int = 600,
        recovery_code_count: int = 10,
        recovery_code_length: int = 8,
    ) -> None:
        self._store = store
        self._pending: PendingTokenStore = (
            pending_tokens if pending_tokens is not None else InMemoryPendingTokenStore()
        )
        self._clock: Clock = clock if clock is not None else SystemClock()
        self._issuer = issuer
        self._pending_ttl = pending_token_ttl_seconds
        self._recovery_code_count = recovery_code_count
        self._recovery_code_length = recovery_code_length
        self._user_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    def verify_code(self, secret: str, code: str, now: float | None = None) -> bool:
        return verify_code(secret, code, self._clock.now() if now is None else now)

    async def begin_setup(self, user_id: str, account_label: str) -> TwoFactorSetup | None:
        """Store a fresh unconfirmed secret. Returns None if 2FA is already enabled."""
        async with self._lock_for(user_id):
            existing = await self._store.get(user_id)
            if existing is not None and existing.enabled:
                return None
            secret = pyotp.random_base32()
            await self._store.save(TwoFactorSecret(user_id=user_id, secret=secret))
        uri = pyotp.TOTP(
            secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL_SECONDS
        ).provisioning_uri(name=account_label, issuer_name=self._issuer)
        logger.info("2FA setup started for user %s", user_id)
        return TwoFactorSetup(secret=secret, provisioning_uri=uri)

    async def confirm_setup(self, user_id: str, code: str) -> list[str] | None:
        """Enable 2FA if ``code`` matches the pending secret. Returns the recovery codes once."""
        async with self._lock_for(user_id):
            state = await self._store.get(user_id)
            if state is None or state.enabled:
                return None
            now = self._clock.now()
            if not verify_code(state.secret, code, now):
                logger.info("2FA setup confirmation failed for user %s", user_id)
                return None
            codes = generate_recovery_codes(self._recovery_code_count, self._recovery_code_length)
            state.enabled = True
            state.recovery_code_hashes = {hash_recovery_code(c) for c in codes}
            state.last_used_at = now
            await self._store.save(state)
        logger.info("2FA enabled for user %s", user_id)
        return codes

    async def verify_totp(self, user_id: str, code: str) -> bool:
        """Check a live code against an enabled secret and record the use."""
        async with self._lock_for(user_id):
            state = await self._store.get(user_id)
            if state is None or not state.enabled:
                return False
            now = self._clock.now()
            if not verify_code(state.secret, code, now):
                return False
            state.last_used_at = now
            await self._store.save(state)
            return True

    async def verify_recovery_code(self, user_id: str, code: str) -> bool:
        """Redeem a recovery code. The code is removed before this returns True."""
        async with self._lock_for(user_id):
            state = await self._store.get(user_id)
            if state is None or not state.enabled:
                return False
            code_hash = hash_recovery_code(code)
            if code_hash not in state.recovery_code_hashes:
                return False
            state.recovery_code_hashes.discard(code_hash)
            state.last_used_at = self._clock.now()
            await self._store.save(state)
        logger.info(
            "Recovery code redeemed for user %s (%d remaining)",
            user_id,
            len(state.recovery_code_hashes),
        )
        return True

    async def regenerate_recovery_codes(self, user_id: str) -> list[str] | None:
        """Replace the whole recovery-code batch. Returns None unless 2FA is enabled."""
        async with self._lock_for(user_id):
            state = await self._store.get(user_id)
            if state is None or not state.enabled:
                return None
            codes = generate_recovery_codes(self._recovery_code_count, self._recovery_code_length)
            state.recovery_code_hashes = {hash_recovery_code(c) for c in codes}
            await self._store.save(state)
        logger.info("Recovery codes regenerated for user %s", user_id)
        return codes

    async def disable(self, user_id: str) -> None:
        """Clear secret, recovery codes and the enabled flag. Safe to repeat."""
        async with self._lock_for(user_id):
            await self._store.clear(user_id)
        logger.info("2FA disabled for user %s", user_id)

    async def is_enabled(self, user_id: str) -> bool:
        state = await self._store.get(user_id)
        return state is not None and state.enabled

    async def status(self, user_id: str) -> TwoFactorStatus:
        state = await self._store.get(user_id)
        if state is None or not state.enabled:
            return TwoFactorStatus(enabled=False, recovery_codes_remaining=0, last_used_at=None)
        return TwoFactorStatus(
            enabled=True,
            recovery_codes_remaining=len(state.recovery_code_hashes),
            last_used_at=state.last_used_at,
        )

    def issue_pending_token(self, user_id: str) -> str:
        now = self._clock.now()
        token = secrets.token_urlsafe(32)
        self._pending.put(
            PendingTwoFactorToken(
                token=token,
                user_id=user_id,
                issued_at=now,
                expires_at=now + self._pending_ttl,
            )
        )
        return token

    def consume_pending_token(self, token: str, user_id: str) -> bool:
        """Validate and delete a pending token. A token never validates twice."""
        entry = self._pending.pop(token)
        if entry is None:
            logger.info("Unknown or reused pending 2FA token for user %s", user_id)
            return False
        if not secrets.compare_digest(entry.user_id, user_id):
            logger.warning("Pending 2FA token presented for a different user (%s)", user_id)
            return False
        if self._clock.now() >= entry.expires_at:
            logger.info("Expired pending 2FA token for user %s", user_id)
            return False
        return True

    def sweep_pending_tokens(self) -> int:
        return self._pending.sweep(self._clock.now())

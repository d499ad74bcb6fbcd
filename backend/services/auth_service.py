"""Authentication service: password hashing, session tokens and the login flow."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import bcrypt
from jose import JWTError, jwt
from sqlalchemy import select

from backend.models.user import User, UserRole
from backend.services.admission_service import Principal
from backend.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from backend.config import Settings
    from backend.services.two_factor_service import TwoFactorEngine

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
_DUMMY_PASSWORD_HASH = bcrypt.hashpw(b"hotel-dummy-password", bcrypt.gensalt()).decode("utf-8")


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))


def create_access_token(user: User, settings: Settings) -> str:
    """Create a signed session token carrying the user's role and active flag."""
    expire = datetime.now(UTC) + timedelta(minutes=settings.access_token_expire_minutes)
    claims: dict[str, Any] = {
        "sub": str(user.id),
        "username": user.username,
        "role": user.role,
        "is_active": user.is_active,
        "type": "access",
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "exp": expire,
    }
    return str(jwt.encode(claims, settings.secret_key, algorithm=ALGORITHM))


def decode_access_token(token: str, settings: Settings) -> dict[str, Any] | None:
    """Decode and validate a session token (signature, expiry, issuer, audience)."""
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[ALGORITHM],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
        )
    except JWTError:
        logger.debug("Failed to decode access token", exc_info=True)
        return None
    if payload.get("type") != "access":
        return None
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.isdigit():
        return None
    return payload


def principal_from_claims(payload: dict[str, Any]) -> Principal:
    """Build an admission principal from decoded token claims."""
    role = payload.get("role")
    return Principal(
        user_id=str(payload["sub"]),
        username=payload.get("username"),
        role=role if isinstance(role, str) else None,
        is_active=payload.get("is_active") is True,
    )


async def get_user_by_username(session: AsyncSession, username: str) -> User | None:
    stmt = select(User).where(User.username == username)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def authenticate_user(session: AsyncSession, username: str, password: str) -> User | None:
    """Authenticate a user by username and password. Deactivated accounts never authenticate."""
    user = await get_user_by_username(session, username)
    if user is None:
        # Run a dummy hash check to reduce username timing side channels.
        verify_password(password, _DUMMY_PASSWORD_HASH)
        logger.info("Login failed: unknown user")
        return None
    if not verify_password(password, user.password_hash):
        logger.info("Login failed: wrong password for user %s", user.id)
        return None
    if not user.is_active:
        logger.info("Login failed: user %s is deactivated", user.id)
        return None
    return user


@dataclass(frozen=True)
class LoginOutcome:
    """Result of the first login factor.

    Exactly one of ``access_token`` and ``pending_token`` is set.
    """

    user: User
    access_token: str | None = None
    pending_token: str | None = None

    @property
    def requires_two_factor(self) -> bool:
        return self.pending_token is not None


class AuthenticationFlow:
    """Login state machine: password, then a second factor when 2FA is enabled."""

    def __init__(self, two_factor: TwoFactorEngine, settings: Settings) -> None:
        self._two_factor = two_factor
        self._settings = settings

    async def begin_login(
        self, session: AsyncSession, username: str, password: str
    ) -> LoginOutcome | None:
        """Check the password. Returns None on failure."""
        user = await authenticate_user(session, username, password)
        if user is None:
            return None
        user_id = str(user.id)
        if await self._two_factor.is_enabled(user_id):
            logger.info("First factor accepted for user %s; awaiting second factor", user_id)
            pending_token = self._two_factor.issue_pending_token(user_id)
            return LoginOutcome(user=user, pending_token=pending_token)
        return LoginOutcome(user=user, access_token=create_access_token(user, self._settings))

    async def complete_two_factor_login(
        self,
        session: AsyncSession,
        username: str,
        pending_token: str,
        code: str,
        *,
        is_recovery_code: bool = False,
    ) -> str | None:
        """Redeem a pending token plus a TOTP or recovery code for a session token.

        The pending token is consumed on every attempt, so a failure means the
        caller has to start again from the password step.
        """
        user = await get_user_by_username(session, username)
        user_id = str(user.id) if user is not None else ""
        if not self._two_factor.consume_pending_token(pending_token, user_id):
            return None
        if user is None or not user.is_active:
            return None

        if is_recovery_code:
            verified = await self._two_factor.verify_recovery_code(user_id, code)
        else:
            verified = await self._two_factor.verify_totp(user_id, code)
        if not verified:
            logger.info("Second factor rejected for user %s", user_id)
            return None

        return create_access_token(user, self._settings)


async def ensure_admin_user(session: AsyncSession, settings: Settings) -> None:
    """Create the admin user if it doesn't exist."""
    existing = await get_user_by_username(session, settings.admin_username)

    if existing is None:
        now = format_iso(now_utc())
        admin = User(
            username=settings.admin_username,
            password_hash=hash_password(settings.admin_password),
            role=UserRole.ADMIN.value,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        session.add(admin)
        await session.commit()
        logger.info("Created admin user %s", settings.admin_username)

"""Unit tests for the authentication service."""

from __future__ import annotations

from typing import TYPE_CHECKING

import jwt
import pyotp
import pytest

from backend.models.user import User, UserRole
from backend.services.auth_service import (
    ALGORITHM,
    AuthenticationFlow,
    authenticate_user,
    create_access_token,
    decode_access_token,
    ensure_admin_user,
    get_user_by_username,
    hash_password,
    principal_from_claims,
    verify_password,
)
from backend.services.datetime_service import format_iso, now_utc
from backend.services.two_factor_service import (
    InMemoryPendingTokenStore,
    SqlTwoFactorStore,
    TwoFactorEngine,
)
from tests.conftest import ManualClock

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from backend.config import Settings

_DEFAULT_PASSWORD = "correcthorse1"


async def _create_user(
    session: AsyncSession,
    username: str = "testuser",
    password: str = _DEFAULT_PASSWORD,
    role: UserRole = UserRole.USER,
    is_active: bool = True,
) -> User:
    now = format_iso(now_utc())
    user = User(
        username=username,
        password_hash=hash_password(password),
        role=role.value,
        is_active=is_active,
        created_at=now,
        updated_at=now,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


class TestPasswordHashing:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("s3cret-pass")
        assert hashed != "s3cret-pass"
        assert verify_password("s3cret-pass", hashed)
        assert not verify_password("wrong", hashed)


class TestAccessToken:
    async def test_claims(self, db_session: AsyncSession, test_settings: Settings) -> None:
        user = await _create_user(db_session, role=UserRole.MANAGER)
        token = create_access_token(user, test_settings)

        payload = jwt.decode(
            token,
            test_settings.secret_key,
            algorithms=[ALGORITHM],
            audience=test_settings.jwt_audience,
            issuer=test_settings.jwt_issuer,
        )
        assert payload["sub"] == str(user.id)
        assert payload["username"] == "testuser"
        assert payload["role"] == "Manager"
        assert payload["is_active"] is True
        assert payload["type"] == "access"
        assert "exp" in payload

    async def test_decode_round_trip(
        self, db_session: AsyncSession, test_settings: Settings
    ) -> None:
        user = await _create_user(db_session)
        payload = decode_access_token(create_access_token(user, test_settings), test_settings)
        assert payload is not None
        principal = principal_from_claims(payload)
        assert principal.user_id == str(user.id)
        assert principal.role == "User"
        assert principal.is_active is True

    def test_wrong_secret_rejected(self, test_settings: Settings) -> None:
        forged = jwt.encode(
            {
                "sub": "1",
                "type": "access",
                "iss": test_settings.jwt_issuer,
                "aud": test_settings.jwt_audience,
            },
            "another-secret-key-with-enough-length-x",
            algorithm=ALGORITHM,
        )
        assert decode_access_token(forged, test_settings) is None

    def test_wrong_audience_rejected(self, test_settings: Settings) -> None:
        token = jwt.encode(
            {
                "sub": "1",
                "type": "access",
                "iss": test_settings.jwt_issuer,
                "aud": "SomeOtherService",
            },
            test_settings.secret_key,
            algorithm=ALGORITHM,
        )
        assert decode_access_token(token, test_settings) is None

    def test_wrong_type_rejected(self, test_settings: Settings) -> None:
        token = jwt.encode(
            {
                "sub": "1",
                "type": "refresh",
                "iss": test_settings.jwt_issuer,
                "aud": test_settings.jwt_audience,
            },
            test_settings.secret_key,
            algorithm=ALGORITHM,
        )
        assert decode_access_token(token, test_settings) is None

    def test_non_numeric_subject_rejected(self, test_settings: Settings) -> None:
        token = jwt.encode(
            {
                "sub": "admin",
                "type": "access",
                "iss": test_settings.jwt_issuer,
                "aud": test_settings.jwt_audience,
            },
            test_settings.secret_key,
            algorithm=ALGORITHM,
        )
        assert decode_access_token(token, test_settings) is None

    def test_garbage_rejected(self, test_settings: Settings) -> None:
        assert decode_access_token("not.a.token", test_settings) is None

    def test_missing_active_claim_reads_as_inactive(self) -> None:
        principal = principal_from_claims({"sub": "3", "role": "User"})
        assert principal.is_active is False


class TestAuthenticateUser:
    async def test_success(self, db_session: AsyncSession) -> None:
        await _create_user(db_session)
        user = await authenticate_user(db_session, "testuser", _DEFAULT_PASSWORD)
        assert user is not None
        assert user.username == "testuser"

    async def test_wrong_password(self, db_session: AsyncSession) -> None:
        await _create_user(db_session)
        assert await authenticate_user(db_session, "testuser", "wrong-pass") is None

    async def test_unknown_user(self, db_session: AsyncSession) -> None:
        assert await authenticate_user(db_session, "ghost", _DEFAULT_PASSWORD) is None

    async def test_deactivated_user(self, db_session: AsyncSession) -> None:
        await _create_user(db_session, is_active=False)
        assert await authenticate_user(db_session, "testuser", _DEFAULT_PASSWORD) is None


class TestEnsureAdminUser:
    async def test_creates_admin_once(
        self, db_session: AsyncSession, test_settings: Settings
    ) -> None:
        await ensure_admin_user(db_session, test_settings)
        await ensure_admin_user(db_session, test_settings)
        admin = await get_user_by_username(db_session, test_settings.admin_username)
        assert admin is not None
        assert admin.role == "Admin"
        assert verify_password(test_settings.admin_password, admin.password_hash)


class TestAuthenticationFlow:
    @pytest.fixture
    def clock(self) -> ManualClock:
        return ManualClock(start=1_700_000_010.0)

    @pytest.fixture
    def two_factor(
        self, session_factory: async_sessionmaker[AsyncSession], clock: ManualClock
    ) -> TwoFactorEngine:
        return TwoFactorEngine(
            SqlTwoFactorStore(session_factory), InMemoryPendingTokenStore(), clock
        )

    @pytest.fixture
    def flow(self, two_factor: TwoFactorEngine, test_settings: Settings) -> AuthenticationFlow:
        return AuthenticationFlow(two_factor, test_settings)

    async def _enable_2fa(
        self, two_factor: TwoFactorEngine, clock: ManualClock, user: User
    ) -> tuple[str, list[str]]:
        setup = await two_factor.begin_setup(str(user.id), user.username)
        assert setup is not None
        codes = await two_factor.confirm_setup(
            str(user.id), pyotp.TOTP(setup.secret).at(int(clock.now()))
        )
        assert codes is not None
        return setup.secret, codes

    async def test_password_only_login_issues_token(
        self, db_session: AsyncSession, flow: AuthenticationFlow
    ) -> None:
        await _create_user(db_session)
        outcome = await flow.begin_login(db_session, "testuser", _DEFAULT_PASSWORD)
        assert outcome is not None
        assert not outcome.requires_two_factor
        assert outcome.access_token

    async def test_bad_password_fails(
        self, db_session: AsyncSession, flow: AuthenticationFlow
    ) -> None:
        await _create_user(db_session)
        assert await flow.begin_login(db_session, "testuser", "nope-nope") is None

    async def test_two_factor_login(
        self,
        db_session: AsyncSession,
        flow: AuthenticationFlow,
        two_factor: TwoFactorEngine,
        clock: ManualClock,
        test_settings: Settings,
    ) -> None:
        user = await _create_user(db_session)
        secret, _codes = await self._enable_2fa(two_factor, clock, user)

        outcome = await flow.begin_login(db_session, "testuser", _DEFAULT_PASSWORD)
        assert outcome is not None
        assert outcome.requires_two_factor
        assert outcome.access_token is None
        assert outcome.pending_token is not None

        token = await flow.complete_two_factor_login(
            db_session,
            "testuser",
            outcome.pending_token,
            pyotp.TOTP(secret).at(int(clock.now())),
        )
        assert token is not None
        payload = decode_access_token(token, test_settings)
        assert payload is not None
        assert payload["sub"] == str(user.id)

    async def test_pending_token_cannot_be_reused(
        self,
        db_session: AsyncSession,
        flow: AuthenticationFlow,
        two_factor: TwoFactorEngine,
        clock: ManualClock,
    ) -> None:
        user = await _create_user(db_session)
        secret, _codes = await self._enable_2fa(two_factor, clock, user)
        outcome = await flow.begin_login(db_session, "testuser", _DEFAULT_PASSWORD)
        assert outcome is not None
        assert outcome.pending_token is not None
        code = pyotp.TOTP(secret).at(int(clock.now()))

        first = await flow.complete_two_factor_login(
            db_session, "testuser", outcome.pending_token, code
        )
        second = await flow.complete_two_factor_login(
            db_session, "testuser", outcome.pending_token, code
        )
        assert first is not None
        assert second is None

    async def test_failed_code_burns_pending_token(
        self,
        db_session: AsyncSession,
        flow: AuthenticationFlow,
        two_factor: TwoFactorEngine,
        clock: ManualClock,
    ) -> None:
        user = await _create_user(db_session)
        secret, _codes = await self._enable_2fa(two_factor, clock, user)
        outcome = await flow.begin_login(db_session, "testuser", _DEFAULT_PASSWORD)
        assert outcome is not None
        assert outcome.pending_token is not None

        wrong = pyotp.TOTP(secret).at(int(clock.now()) + 600)
        failed = await flow.complete_two_factor_login(
            db_session, "testuser", outcome.pending_token, wrong
        )
        assert failed is None
        retry = await flow.complete_two_factor_login(
            db_session,
            "testuser",
            outcome.pending_token,
            pyotp.TOTP(secret).at(int(clock.now())),
        )
        assert retry is None

    async def test_recovery_code_login(
        self,
        db_session: AsyncSession,
        flow: AuthenticationFlow,
        two_factor: TwoFactorEngine,
        clock: ManualClock,
    ) -> None:
        user = await _create_user(db_session)
        _secret, codes = await self._enable_2fa(two_factor, clock, user)
        outcome = await flow.begin_login(db_session, "testuser", _DEFAULT_PASSWORD)
        assert outcome is not None
        assert outcome.pending_token is not None

        token = await flow.complete_two_factor_login(
            db_session, "testuser", outcome.pending_token, codes[0], is_recovery_code=True
        )
        assert token is not None
        assert (await two_factor.status(str(user.id))).recovery_codes_remaining == 9

    async def test_pending_token_bound_to_username(
        self,
        db_session: AsyncSession,
        flow: AuthenticationFlow,
        two_factor: TwoFactorEngine,
        clock: ManualClock,
    ) -> None:
        user = await _create_user(db_session)
        await _create_user(db_session, username="other")
        secret, _codes = await self._enable_2fa(two_factor, clock, user)
        outcome = await flow.begin_login(db_session, "testuser", _DEFAULT_PASSWORD)
        assert outcome is not None
        assert outcome.pending_token is not None

        token = await flow.complete_two_factor_login(
            db_session,
            "other",
            outcome.pending_token,
            pyotp.TOTP(secret).at(int(clock.now())),
        )
        assert token is None

"""Per-request admission decision: size, injection patterns, rate limits, session revalidation.

Stages run in a fixed order and the first denial short-circuits the rest. Every
stage reports expected denials as values. Unexpected failures are converted at
this boundary: the rate limiter fails open, user revalidation fails closed.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from backend.services.rate_limit_service import resolve_client_id

if TYPE_CHECKING:
    from backend.services.pattern_filter_service import SuspiciousPatternFilter
    from backend.services.rate_limit_service import RateLimitDecision, RateLimiter
    from backend.services.user_status_service import UserStatusCache

logger = logging.getLogger(__name__)

SESSION_INVALID_MESSAGE = "Session is no longer valid, please login again"


class AdmissionReason(enum.StrEnum):
    """Machine-readable denial categories exposed to clients."""

    REQUEST_TOO_LARGE = "request-too-large"
    SUSPICIOUS_PATTERN = "suspicious-pattern"
    SESSION_INVALID = "session-invalid"
    AUTH_UNAVAILABLE = "auth-unavailable"


@dataclass(frozen=True)
class Principal:
    """Claims taken from a verified session token. Treated as a hint, not as truth."""

    user_id: str
    username: str | None = None
    role: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class AdmissionRequest:
    """Transport-neutral view of an inbound request.

    ``body_size`` counts the bytes actually received, which stops just past the
    size cap. ``body`` is set only for JSON bodies, the ones the pattern filter
    scans.
    """

    method: str
    path: str
    query_params: tuple[tuple[str, str], ...] = ()
    content_type: str | None = None
    content_length: int | None = None
    body: bytes | None = None
    body_size: int | None = None
    client_host: str | None = None
    forwarded_for: str | None = None
    principal: Principal | None = None


@dataclass(frozen=True)
class AdmissionDecision:
    """Allow, or deny with a status code, a reason and a generic message."""

    allowed: bool
    status_code: int = 200
    reason: str | None = None
    message: str | None = None
    retry_after: int | None = None
    rate_limit: RateLimitDecision | None = None
    principal: Principal | None = None


class AdmissionPipeline:
    """Compose the admission stages into one decision function."""

    def __init__(
        self,
        *,
        pattern_filter: SuspiciousPatternFilter,
        rate_limiter: RateLimiter | None = None,
        user_status: UserStatusCache | None = None,
        max_body_bytes: int = 1_048_576,
    ) -> None:
        self._pattern_filter = pattern_filter
        self._rate_limiter = rate_limiter
        self._user_status = user_status
        self._max_body_bytes = max_body_bytes

    @property
    def max_body_bytes(self) -> int:
        return self._max_body_bytes

    async def evaluate(self, request: AdmissionRequest) -> AdmissionDecision:
        client_id = resolve_client_id(
            request.principal.user_id if request.principal is not None else None,
            request.forwarded_for,
            request.client_host,
        )

        if self._is_oversized(request):
            logger.warning(
                "Blocked oversized request from %s to %s %s",
                client_id,
                request.method,
                request.path,
            )
            return AdmissionDecision(
                allowed=False,
                status_code=413,
                reason=AdmissionReason.REQUEST_TOO_LARGE,
                message="Request too large",
            )

        scan = self._pattern_filter.scan(
            request.query_params,
            method=request.method,
            content_type=request.content_type,
            body=request.body,
        )
        if scan.blocked:
            logger.warning(
                "Blocked suspicious request from %s to %s %s (family=%s, source=%s)",
                client_id,
                request.method,
                request.path,
                scan.family,
                scan.source,
            )
            return AdmissionDecision(
                allowed=False,
                status_code=400,
                reason=AdmissionReason.SUSPICIOUS_PATTERN,
                message="Request blocked",
            )

        rate = self._check_rate_limit(client_id, request.path)
        if rate is not None and not rate.allowed:
            logger.warning(
                "Rate limit exceeded for %s on %s (class=%s, window=%s)",
                client_id,
                request.path,
                rate.endpoint_class,
                rate.reason,
            )
            return AdmissionDecision(
                allowed=False,
                status_code=429,
                reason=rate.reason,
                message="Too many requests",
                retry_after=rate.retry_after,
                rate_limit=rate,
            )

        if request.principal is not None and self._user_status is not None:
            denial = await self._revalidate(request.principal, self._user_status)
            if denial is not None:
                return denial

        return AdmissionDecision(allowed=True, rate_limit=rate, principal=request.principal)

    def _is_oversized(self, request: AdmissionRequest) -> bool:
        if request.content_length is not None and request.content_length > self._max_body_bytes:
            return True
        if request.body_size is not None and request.body_size > self._max_body_bytes:
            return True
        return request.body is not None and len(request.body) > self._max_body_bytes

    def _check_rate_limit(self, client_id: str, path: str) -> RateLimitDecision | None:
        if self._rate_limiter is None:
            return None
        try:
            return self._rate_limiter.check(client_id, self._rate_limiter.classify(path))
        except Exception:
            logger.exception("Rate limiter failed for %s on %s; allowing request", client_id, path)
            return None

    async def _revalidate(
        self, principal: Principal, user_status: UserStatusCache
    ) -> AdmissionDecision | None:
        try:
            status = await user_status.resolve(principal.user_id)
        except Exception:
            logger.exception("User status lookup failed for user %s; denying", principal.user_id)
            return AdmissionDecision(
                allowed=False,
                status_code=503,
                reason=AdmissionReason.AUTH_UNAVAILABLE,
                message="Authentication temporarily unavailable",
            )

        if status is None:
            cause = "user no longer exists"
        elif not status.is_active:
            cause = "account is deactivated"
        elif not principal.is_active:
            cause = "token active flag does not match account"
        elif principal.role is not None and principal.role != status.role:
            cause = f"role changed from {principal.role} to {status.role}"
        elif (
            principal.username is not None
            and status.username is not None
            and principal.username != status.username
        ):
            cause = "token was issued for a different account name"
        else:
            return None

        user_status.invalidate(principal.user_id)
        logger.warning("Rejected session for user %s: %s", principal.user_id, cause)
        return AdmissionDecision(
            allowed=False,
            status_code=401,
            reason=AdmissionReason.SESSION_INVALID,
            message=SESSION_INVALID_MESSAGE,
        )

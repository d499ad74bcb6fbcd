"""Periodic sweep of expiring in-memory state (rate-limit counters, status cache, pending 2FA)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from backend.services.rate_limit_service import RateLimiter
    from backend.services.two_factor_service import TwoFactorEngine
    from backend.services.user_status_service import UserStatusCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepReport:
    rate_limit_counters: int
    status_entries: int
    pending_tokens: int


def run_sweep(
    rate_limiter: RateLimiter | None,
    user_status: UserStatusCache | None,
    two_factor: TwoFactorEngine | None,
) -> SweepReport:
    """Run one sweep over every component that holds expiring state."""
    report = SweepReport(
        rate_limit_counters=rate_limiter.sweep() if rate_limiter is not None else 0,
        status_entries=user_status.sweep() if user_status is not None else 0,
        pending_tokens=two_factor.sweep_pending_tokens() if two_factor is not None else 0,
    )
    logger.debug(
        "Maintenance sweep removed %d counters, %d status entries, %d pending tokens",
        report.rate_limit_counters,
        report.status_entries,
        report.pending_tokens,
    )
    return report


async def maintenance_loop(
    interval_seconds: float,
    rate_limiter: RateLimiter | None,
    user_status: UserStatusCache | None,
    two_factor: TwoFactorEngine | None,
) -> None:
    """Sweep every ``interval_seconds`` until cancelled. A failed sweep is logged and retried."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            run_sweep(rate_limiter, user_status, two_factor)
        except Exception:
            logger.exception("Maintenance sweep failed")

"""Response hardening headers applied to every response, including denials and errors."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.requests import Request
    from starlette.responses import Response
    from starlette.types import ASGIApp

    from backend.config import Settings

logger = logging.getLogger(__name__)

# Responses under these prefixes carry credentials or 2FA material.
_NO_STORE_PREFIXES = ("/api/auth/", "/api/2fa/")


@dataclass(frozen=True)
class SecurityHeadersConfig:
    """Header values applied by ``apply_security_headers``."""

    enabled: bool = True
    content_security_policy: str = (
        "default-src 'self'; script-src 'self'; style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data:; font-src 'self'"
    )
    hsts_max_age: int = 31_536_000
    frame_options: str = "DENY"
    xss_protection: str = "1; mode=block"
    referrer_policy: str = "strict-origin-when-cross-origin"
    permissions_policy: str = "geolocation=(), microphone=(), camera=()"

    @classmethod
    def from_settings(cls, settings: Settings) -> SecurityHeadersConfig:
        return cls(
            enabled=settings.security_headers_enabled,
            content_security_policy=settings.content_security_policy,
            hsts_max_age=settings.hsts_max_age,
            referrer_policy=settings.referrer_policy,
            permissions_policy=settings.permissions_policy,
        )


def apply_security_headers(
    response: Response,
    *,
    encrypted: bool,
    path: str,
    config: SecurityHeadersConfig,
) -> Response:
    """Decorate ``response`` with the hardening header set. HSTS only over TLS."""
    if not config.enabled:
        return response
    headers = response.headers
    headers["X-Frame-Options"] = config.frame_options
    headers["X-Content-Type-Options"] = "nosniff"
    headers["X-XSS-Protection"] = config.xss_protection
    if config.content_security_policy:
        headers["Content-Security-Policy"] = config.content_security_policy
    if encrypted:
        headers["Strict-Transport-Security"] = f"max-age={config.hsts_max_age}; includeSubDomains"
    headers["Referrer-Policy"] = config.referrer_policy
    headers["Permissions-Policy"] = config.permissions_policy
    if path.startswith(_NO_STORE_PREFIXES):
        headers["Cache-Control"] = "no-store"
        headers["Pragma"] = "no-cache"
    if "server" in headers:
        del headers["server"]
    return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Outermost middleware: every response leaving the app gets the hardening headers."""

    def __init__(self, app: ASGIApp, config: SecurityHeadersConfig | None = None) -> None:
        super().__init__(app)
        self.config = config or SecurityHeadersConfig()

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        try:
            response = await call_next(request)
        except Exception:
            # Unhandled errors still leave as a JSON 500 carrying the hardening headers.
            logger.exception("Unhandled error in %s %s", request.method, request.url.path)
            response = JSONResponse(status_code=500, content={"detail": "Internal server error"})
        return apply_security_headers(
            response,
            encrypted=request.url.scheme == "https",
            path=request.url.path,
            config=self.config,
        )

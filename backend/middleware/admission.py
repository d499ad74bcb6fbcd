"""Run every request through the admission pipeline before it reaches a route handler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from backend.services.admission_service import AdmissionRequest
from backend.services.auth_service import decode_access_token, principal_from_claims
from backend.services.pattern_filter_service import is_json_content_type

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.requests import Request
    from starlette.responses import Response

    from backend.config import Settings
    from backend.services.admission_service import (
        AdmissionDecision,
        AdmissionPipeline,
        Principal,
    )
    from backend.services.rate_limit_service import RateLimitDecision

logger = logging.getLogger(__name__)

_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


def _bearer_principal(request: Request, settings: Settings) -> Principal | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    payload = decode_access_token(token.strip(), settings)
    if payload is None:
        return None
    return principal_from_claims(payload)


def _content_length(request: Request) -> int | None:
    raw = request.headers.get("Content-Length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


async def _read_capped_body(request: Request, limit: int) -> tuple[bytes, int]:
    """Read the body, stopping once more than ``limit`` bytes have arrived.

    Returns the body and the number of bytes received. When the cap is passed
    the body is left partially read and the request must be denied.
    """
    chunks: list[bytes] = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > limit:
            return b"", received
        chunks.append(chunk)
    body = b"".join(chunks)
    # Cache the buffered body the way Request.body() does so the route handler can read it.
    request._body = body
    return body, received


def _rate_limit_headers(rate: RateLimitDecision) -> dict[str, str]:
    return {
        "X-RateLimit-Remaining": str(rate.remaining_minute),
        "X-RateLimit-Burst-Remaining": str(rate.remaining_burst),
        "X-RateLimit-Daily-Remaining": str(rate.remaining_daily),
        "X-RateLimit-Reset": str(rate.reset_seconds),
    }


def denial_response(decision: AdmissionDecision) -> JSONResponse:
    """Render a denial as JSON with only the generic message and the category."""
    content: dict[str, object] = {"detail": decision.message, "reason": decision.reason}
    headers: dict[str, str] = {}
    if decision.retry_after is not None:
        content["retry_after"] = decision.retry_after
        headers["Retry-After"] = str(decision.retry_after)
    if decision.rate_limit is not None:
        headers.update(_rate_limit_headers(decision.rate_limit))
    if decision.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    return JSONResponse(status_code=decision.status_code, content=content, headers=headers)


class AdmissionMiddleware(BaseHTTPMiddleware):
    """Short-circuit denied requests; annotate allowed ones with rate-limit headers."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        pipeline: AdmissionPipeline | None = getattr(request.app.state, "admission", None)
        if pipeline is None:
            return await call_next(request)
        settings: Settings = request.app.state.settings

        content_type = request.headers.get("Content-Type")
        content_length = _content_length(request)
        body: bytes | None = None
        body_size: int | None = None
        if request.method in _BODY_METHODS and (
            content_length is None or content_length <= pipeline.max_body_bytes
        ):
            raw_body, body_size = await _read_capped_body(request, pipeline.max_body_bytes)
            if is_json_content_type(content_type):
                body = raw_body

        admission_request = AdmissionRequest(
            method=request.method,
            path=request.url.path,
            query_params=tuple(request.query_params.multi_items()),
            content_type=content_type,
            content_length=content_length,
            body=body,
            body_size=body_size,
            client_host=request.client.host if request.client else None,
            forwarded_for=request.headers.get("X-Forwarded-For"),
            principal=_bearer_principal(request, settings),
        )
        decision = await pipeline.evaluate(admission_request)
        if not decision.allowed:
            return denial_response(decision)

        request.state.principal = decision.principal
        response = await call_next(request)
        if decision.rate_limit is not None:
            response.headers.update(_rate_limit_headers(decision.rate_limit))
        return response

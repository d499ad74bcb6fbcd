"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from starlette.middleware.trustedhost import TrustedHostMiddleware

from backend.api.auth import router as auth_router
from backend.api.health import router as health_router
from backend.api.rooms import router as rooms_router
from backend.api.two_factor import router as two_factor_router
from backend.api.users import router as users_router
from backend.config import Settings
from backend.database import create_engine, create_schema, ensure_sqlite_directory
from backend.exceptions import InternalServerError
from backend.middleware.admission import AdmissionMiddleware
from backend.middleware.security_headers import SecurityHeadersConfig, SecurityHeadersMiddleware
from backend.services.admission_service import AdmissionPipeline
from backend.services.auth_service import AuthenticationFlow, ensure_admin_user
from backend.services.maintenance_service import maintenance_loop
from backend.services.pattern_filter_service import SuspiciousPatternFilter
from backend.services.rate_limit_service import RateLimiter
from backend.services.two_factor_service import (
    InMemoryPendingTokenStore,
    SqlTwoFactorStore,
    TwoFactorEngine,
)
from backend.services.user_directory import SqlUserDirectory
from backend.services.user_status_service import UserStatusCache

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from backend.services.datetime_service import Clock

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)


def install_security_services(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    clock: Clock | None = None,
) -> None:
    """Wire the database-backed security services and the admission pipeline onto app state."""
    settings: Settings = app.state.settings

    user_status_cache = UserStatusCache(
        SqlUserDirectory(session_factory),
        ttl_seconds=settings.user_status_cache_ttl_seconds,
        clock=clock,
        max_entries=settings.user_status_cache_max_entries,
    )
    two_factor = TwoFactorEngine(
        SqlTwoFactorStore(session_factory),
        InMemoryPendingTokenStore(),
        clock,
        issuer=settings.two_factor_issuer,
        pending_token_ttl_seconds=settings.two_factor_pending_token_ttl_seconds,
        recovery_code_count=settings.recovery_code_count,
        recovery_code_length=settings.recovery_code_length,
    )
    app.state.user_status_cache = user_status_cache
    app.state.two_factor = two_factor
    app.state.auth_flow = AuthenticationFlow(two_factor, settings)
    app.state.admission = AdmissionPipeline(
        pattern_filter=app.state.pattern_filter,
        rate_limiter=app.state.rate_limiter if settings.rate_limit_enabled else None,
        user_status=user_status_cache,
        max_body_bytes=settings.max_request_body_bytes,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    settings.validate_runtime_security()
    _configure_logging(settings.debug)
    logger.info("Starting Hotel Booking API (debug=%s)", settings.debug)

    ensure_sqlite_directory(settings.database_url)
    try:
        engine, session_factory = create_engine(settings)
        app.state.engine = engine
        app.state.session_factory = session_factory
    except Exception as exc:
        logger.critical(
            "Failed to initialize database: %s. Check database path and permissions.", exc
        )
        raise

    try:
        await create_schema(engine)
    except Exception as exc:
        logger.critical("Failed to create database schema: %s.", exc)
        raise

    install_security_services(app, session_factory)

    try:
        async with session_factory() as session:
            await ensure_admin_user(session, settings)
    except Exception as exc:
        logger.critical("Failed to ensure admin user: %s.", exc)
        raise

    maintenance_task = asyncio.create_task(
        maintenance_loop(
            settings.maintenance_interval_seconds,
            app.state.rate_limiter,
            app.state.user_status_cache,
            app.state.two_factor,
        )
    )

    yield

    maintenance_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await maintenance_task

    try:
        await engine.dispose()
    except Exception as exc:
        logger.error("Error during engine disposal: %s", exc, exc_info=True)

    logger.info("Hotel Booking API stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    docs_enabled = settings.debug or settings.expose_docs

    app = FastAPI(
        title="Hotel Booking API",
        description="Hotel room booking backend with request admission and TOTP 2FA",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.settings = settings
    app.state.rate_limiter = RateLimiter(
        limits=settings.rate_limit_classes,
        routes=settings.rate_limit_routes,
    )
    app.state.pattern_filter = SuspiciousPatternFilter()

    # Starlette runs the last-added middleware first.
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(AdmissionMiddleware)

    cors_origins = (
        settings.cors_origins
        if settings.cors_origins
        else (["http://localhost:5173", "http://localhost:8000"] if settings.debug else [])
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "Retry-After",
            "X-RateLimit-Remaining",
            "X-RateLimit-Burst-Remaining",
            "X-RateLimit-Daily-Remaining",
            "X-RateLimit-Reset",
        ],
    )

    trusted_hosts = settings.trusted_hosts or (
        ["localhost", "127.0.0.1", "::1", "test", "testserver"] if settings.debug else []
    )
    if trusted_hosts:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

    app.add_middleware(
        SecurityHeadersMiddleware, config=SecurityHeadersConfig.from_settings(settings)
    )

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(two_factor_router)
    app.include_router(rooms_router)
    app.include_router(users_router)

    # Global exception handlers: safety net for unhandled exceptions

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(InternalServerError)
    async def internal_server_error_handler(
        request: Request, exc: InternalServerError
    ) -> JSONResponse:
        logger.error(
            "InternalServerError in %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.error("ValueError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        message = str(exc) or "Invalid value"
        return JSONResponse(
            status_code=422,
            content={"detail": message},
        )

    @app.exception_handler(TypeError)
    async def type_error_handler(request: Request, exc: TypeError) -> JSONResponse:
        logger.error(
            "[BUG] TypeError in %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    @app.exception_handler(OSError)
    async def os_error_handler(request: Request, exc: OSError) -> JSONResponse:
        if isinstance(exc, (ConnectionError, TimeoutError)):
            raise exc
        logger.error("OSError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Storage operation failed"},
        )

    @app.exception_handler(OperationalError)
    async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
        logger.error(
            "OperationalError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=503,
            content={"detail": "Database temporarily unavailable"},
        )

    return app


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "backend.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )

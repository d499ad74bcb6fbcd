"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from backend.services.rate_limit_service import (
    DEFAULT_CLASS,
    DEFAULT_ENDPOINT_LIMITS,
    DEFAULT_ENDPOINT_ROUTES,
    EndpointClassLimit,
)


class Settings(BaseSettings):
    """Hotel booking API settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    secret_key: str = "change-me-in-production"
    debug: bool = False
    expose_docs: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/hotel.db"

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)

    # CORS
    cors_origins: list[str] = Field(default_factory=list)
    trusted_hosts: list[str] = Field(default_factory=list)

    # Session tokens
    jwt_issuer: str = "HotelBookingAPI"
    jwt_audience: str = "HotelBookingAPIUsers"
    access_token_expire_minutes: int = Field(default=1440, ge=1)

    # Accounts
    auth_self_registration: bool = True
    admin_username: str = "admin"
    admin_password: str = "admin"

    # Response hardening
    security_headers_enabled: bool = True
    content_security_policy: str = (
        "default-src 'self'; "
        "script-src 'self'; "
        "style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data:; "
        "font-src 'self'"
    )
    hsts_max_age: int = Field(default=31_536_000, ge=0)
    referrer_policy: str = "strict-origin-when-cross-origin"
    permissions_policy: str = "geolocation=(), microphone=(), camera=()"

    # Request admission
    max_request_body_bytes: int = Field(default=1_048_576, ge=1)
    rate_limit_enabled: bool = True
    rate_limit_classes: dict[str, EndpointClassLimit] = Field(
        default_factory=lambda: dict(DEFAULT_ENDPOINT_LIMITS)
    )
    rate_limit_routes: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_ENDPOINT_ROUTES)
    )
    user_status_cache_ttl_seconds: int = Field(default=300, ge=1)
    user_status_cache_max_entries: int = Field(default=10_000, ge=1)
    maintenance_interval_seconds: int = Field(default=300, ge=1)

    # Two-factor authentication
    two_factor_issuer: str = "HotelBookingAPI"
    two_factor_pending_token_ttl_seconds: int = Field(default=600, ge=30)
    recovery_code_count: int = Field(default=10, ge=1, le=50)
    recovery_code_length: int = Field(default=8, ge=6, le=32)

    def validate_runtime_security(self) -> None:
        """Validate security-critical production settings."""
        violations: list[str] = []
        if DEFAULT_CLASS not in self.rate_limit_classes:
            violations.append(f"RATE_LIMIT_CLASSES must define a '{DEFAULT_CLASS}' class")
        unknown = sorted(
            {cls for cls in self.rate_limit_routes.values() if cls not in self.rate_limit_classes}
        )
        if unknown:
            violations.append(f"RATE_LIMIT_ROUTES reference undefined classes: {unknown}")

        if not self.debug:
            if self.secret_key == "change-me-in-production" or len(self.secret_key) < 32:
                violations.append(
                    "SECRET_KEY must be overridden with a high-entropy value (>=32 chars)"
                )
            if self.admin_password == "admin" or len(self.admin_password) < 12:
                violations.append(
                    "ADMIN_PASSWORD must be overridden with a strong value (>=12 chars)"
                )

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure production configuration: {joined}")

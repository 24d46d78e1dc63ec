"""Configuration for the webhook gateway.

All configuration is loaded from environment variables with sensible defaults.
"""

from __future__ import annotations

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = [
    "CHALLENGE_TTL_SECONDS",
    "DEFAULT_TOKEN_LIFETIME_SECONDS",
    "MAX_TOKEN_LIFETIME_SECONDS",
    "TOKEN_REFRESH_BUFFER_SECONDS",
    "GatewayConfig",
]

# QR challenges are only valid for a short handshake window
CHALLENGE_TTL_SECONDS = 300

# Cached OAuth tokens are treated as stale this long before they expire
TOKEN_REFRESH_BUFFER_SECONDS = 300

# Lifetime assumed when a token endpoint omits expires_in
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

# Upper bound on a token lifetime taken from a token endpoint
MAX_TOKEN_LIFETIME_SECONDS = 365 * 24 * 3600


class GatewayConfig(BaseSettings):
    """Gateway configuration.

    Environment Variables:
        WAHOOK_APP_NAME: Service name (default: wahook)
        WAHOOK_HOST / WAHOOK_PORT: Bind address (default: 0.0.0.0:5001)
        WAHOOK_LEGACY_WEBHOOK_URL: Global callback URL (falls back to WEBHOOK_BASE_URL)
        WAHOOK_HTTP_TIMEOUT: Outbound HTTP timeout in seconds (default: 10)
        WAHOOK_CHALLENGE_TTL: QR challenge lifetime in seconds (default: 300)
        WAHOOK_CHALLENGE_SWEEP_INTERVAL: Seconds between sweeps, 0 disables (default: 60)
        WAHOOK_TOKEN_REFRESH_BUFFER: OAuth refresh buffer in seconds (default: 300)
        WAHOOK_DEFAULT_TOKEN_LIFETIME: Token lifetime when unspecified (default: 3600)
        WAHOOK_SERIALIZE_TOKEN_REFRESH: Per-tenant token refresh lock (default: true)
        WAHOOK_DB_PATH: SQLite tenant database path (default: wahook.db)
        WAHOOK_REDIS_URL: Redis URL for challenges (falls back to REDIS_URL)
        WAHOOK_ADMIN_USER / WAHOOK_ADMIN_PASSWORD: Virtual admin credentials

    Example:
        >>> config = GatewayConfig()
        >>> config.challenge_ttl
        300
        >>> config = GatewayConfig(legacy_webhook_url="https://hooks.example.com")
    """

    model_config = SettingsConfigDict(
        env_prefix="WAHOOK_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = Field(
        default="wahook",
        description="Service name reported by health checks",
    )
    host: str = Field(
        default="0.0.0.0",
        description="Server host",
    )
    port: int = Field(
        default=5001,
        description="Server port",
        ge=1,
        le=65535,
    )

    # Delivery
    legacy_webhook_url: str | None = Field(
        default=None,
        description="Process-wide callback receiving every tenant's events unauthenticated",
        validation_alias=AliasChoices(
            "legacy_webhook_url",
            "WAHOOK_LEGACY_WEBHOOK_URL",
            "WEBHOOK_BASE_URL",
        ),
    )
    http_timeout: float = Field(
        default=10.0,
        description="Timeout for webhook POSTs and token fetches in seconds",
        ge=1,
        le=120,
    )

    # Challenge store
    challenge_ttl: int = Field(
        default=CHALLENGE_TTL_SECONDS,
        description="Lifetime of a stored QR challenge in seconds",
        ge=1,
    )
    challenge_sweep_interval: int = Field(
        default=60,
        description="Seconds between expired-challenge sweeps (0 disables)",
        ge=0,
    )
    redis_url: str | None = Field(
        default=None,
        description="Redis URL for challenge storage (memory when unset)",
        validation_alias=AliasChoices(
            "redis_url",
            "WAHOOK_REDIS_URL",
            "REDIS_URL",
        ),
    )

    # OAuth token cache
    token_refresh_buffer: int = Field(
        default=TOKEN_REFRESH_BUFFER_SECONDS,
        description="Refresh cached OAuth tokens this many seconds before expiry",
        ge=0,
    )
    default_token_lifetime: int = Field(
        default=DEFAULT_TOKEN_LIFETIME_SECONDS,
        description="Token lifetime assumed when expires_in is missing",
        ge=1,
    )
    serialize_token_refresh: bool = Field(
        default=True,
        description="Serialize token refresh per tenant to avoid redundant fetches",
    )

    # Tenants
    db_path: str = Field(
        default="wahook.db",
        description="SQLite database holding tenant records",
    )
    admin_user: str | None = Field(
        default=None,
        description="Username of the virtual admin principal",
    )
    admin_password: SecretStr | None = Field(
        default=None,
        description="Password of the virtual admin principal",
    )

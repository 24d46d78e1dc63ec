"""Pydantic models for tenants, webhook auth and outbound event bodies."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = [
    "AuthFingerprint",
    "HealthResponse",
    "MessageMedia",
    "MessageWebhookBody",
    "OAuthFormat",
    "Principal",
    "ReadinessErrorResponse",
    "ReadinessResponse",
    "SessionStatus",
    "SessionWebhookBody",
    "Tenant",
    "WebhookAuthType",
    "WebhookAuthUpdate",
]


class WebhookAuthType(str, Enum):
    """Authentication scheme applied to a tenant's outbound webhooks."""

    NONE = "none"
    BASIC = "basic"
    OAUTH = "oauth"
    BEARER = "bearer"

    @classmethod
    def parse(cls, value: str | WebhookAuthType | None) -> WebhookAuthType:
        """Normalize a stored value, mapping anything unknown to NONE."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.NONE


class OAuthFormat(str, Enum):
    """Body format of the OAuth token request.

    - OAUTH2: form-encoded client_credentials grant
    - JSON: JSON ``{username, password}`` for custom login endpoints
    """

    OAUTH2 = "oauth2"
    JSON = "json"

    @classmethod
    def parse(cls, value: str | OAuthFormat | None) -> OAuthFormat:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.OAUTH2


class SessionStatus(str, Enum):
    """Lifecycle states reported to the session webhook."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


# (type, username, password, token_url, format) at the time a token fetch started
AuthFingerprint = tuple[str, str | None, str | None, str | None, str]


class Tenant(BaseModel):
    """A gateway user; regular tenants own exactly one session named after them.

    The OAuth cache fields (``webhook_auth_token`` and
    ``webhook_auth_token_expiration``) are derived data and are reset whenever
    the auth configuration changes. For the ``bearer`` scheme the token field
    holds the user-supplied static token instead.
    """

    id: int = Field(description="Tenant identifier")
    username: str = Field(description="Unique username, also the session identifier")
    password_hash: str = Field(default="", repr=False)
    is_admin: bool = Field(default=False)
    callback_url: str | None = Field(default=None)
    webhook_auth_type: WebhookAuthType = Field(default=WebhookAuthType.NONE)
    webhook_auth_username: str | None = Field(default=None)
    webhook_auth_password: str | None = Field(default=None, repr=False)
    webhook_auth_token_url: str | None = Field(default=None)
    webhook_auth_token: str | None = Field(default=None, repr=False)
    webhook_auth_token_expiration: datetime | None = Field(default=None)
    webhook_oauth_format: OAuthFormat = Field(default=OAuthFormat.OAUTH2)
    created_at: datetime | None = Field(default=None)

    @property
    def session_id(self) -> str | None:
        """Session identifier owned by this tenant (admins own none)."""
        if self.is_admin:
            return None
        return self.username

    def auth_fingerprint(self) -> AuthFingerprint:
        """Identity of the current auth configuration, excluding cached tokens."""
        return (
            self.webhook_auth_type.value,
            self.webhook_auth_username,
            self.webhook_auth_password,
            self.webhook_auth_token_url,
            self.webhook_oauth_format.value,
        )


class WebhookAuthUpdate(BaseModel):
    """Change to a tenant's webhook auth configuration.

    Only provided fields are written. Applying any update clears the cached
    token first; ``webhook_auth_token`` (a static bearer token) is written
    after that reset.
    """

    webhook_auth_type: WebhookAuthType
    webhook_auth_username: str | None = None
    webhook_auth_password: str | None = None
    webhook_auth_token_url: str | None = None
    webhook_auth_token: str | None = None
    webhook_oauth_format: OAuthFormat | None = None

    @field_validator("webhook_auth_type", mode="before")
    @classmethod
    def normalize_auth_type(cls, v: Any) -> WebhookAuthType:
        """Unknown auth types fall back to none."""
        return WebhookAuthType.parse(v)

    @field_validator("webhook_oauth_format", mode="before")
    @classmethod
    def normalize_oauth_format(cls, v: Any) -> OAuthFormat | None:
        return None if v is None else OAuthFormat.parse(v)


class Principal(BaseModel):
    """Authenticated caller of the HTTP surface."""

    username: str
    is_admin: bool = False
    tenant: Tenant | None = None

    def can_access(self, session_id: str) -> bool:
        return self.is_admin or session_id == self.username


# =============================================================================
# Outbound event bodies
# =============================================================================


class MessageMedia(BaseModel):
    """Media references attached to a message (filled by a media collaborator)."""

    image: str | None = None
    video: str | None = None
    document: str | None = None
    audio: str | None = None


class MessageWebhookBody(BaseModel):
    """Body POSTed to ``<callback_url>`` for a received message."""

    session: str
    from_: str | None = Field(default=None, alias="from")
    message_id: str | None = Field(default=None, alias="messageId")
    message: str | None = None
    media: MessageMedia = Field(default_factory=MessageMedia)

    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class SessionWebhookBody(BaseModel):
    """Body POSTed to ``<callback_url>/session`` on a lifecycle transition."""

    session: str
    status: SessionStatus

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class HealthResponse(BaseModel):
    """Health check endpoint response schema."""

    status: Literal["ok"] = "ok"
    service: str
    version: str
    timestamp: str


class ReadinessResponse(BaseModel):
    """Readiness check success response schema."""

    status: Literal["ready"] = "ready"
    checks: dict[str, bool | str]
    timestamp: str


class ReadinessErrorResponse(BaseModel):
    """Readiness check failure response schema (HTTP 503)."""

    status: Literal["not_ready"] = "not_ready"
    checks: dict[str, bool | str]
    message: str
    timestamp: str

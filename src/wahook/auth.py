"""Authentication headers for outbound tenant webhooks.

Each tenant configures one scheme for its callback:

- ``none``: no headers
- ``basic``: ``Authorization: Basic base64(username:password)``
- ``bearer``: ``Authorization: Bearer <static token>``
- ``oauth``: ``Authorization: Bearer <access token>`` obtained from the
  tenant's token endpoint, cached on the tenant record and renewed when it is
  absent or inside the refresh buffer.

Header resolution never raises. Missing credentials, unreachable token
endpoints and malformed token responses all degrade to an empty header set
so delivery proceeds unauthenticated instead of being blocked.
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from wahook.config import (
    DEFAULT_TOKEN_LIFETIME_SECONDS,
    MAX_TOKEN_LIFETIME_SECONDS,
    TOKEN_REFRESH_BUFFER_SECONDS,
)
from wahook.errors import TokenFetchError
from wahook.locks import KeyedLock
from wahook.models import OAuthFormat, Tenant, WebhookAuthType

if TYPE_CHECKING:
    from collections.abc import Callable

    import httpx

    from wahook.locks import KeyedLockManager
    from wahook.tenants import TenantStoreProtocol

logger = logging.getLogger(__name__)

__all__ = [
    "OAuthTokenClient",
    "OAuthTokenResponse",
    "WebhookAuthResolver",
    "basic_auth_header",
    "is_token_expired",
    "parse_token_response",
]


class OAuthTokenResponse(BaseModel):
    """Normalized token endpoint response."""

    access_token: str
    expires_in: int | None = None
    token_type: str | None = None


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _coerce_expires_in(*candidates: Any) -> int | None:
    """First positive numeric candidate as whole seconds."""
    for candidate in candidates:
        if isinstance(candidate, bool) or candidate is None:
            continue
        try:
            seconds = int(float(candidate))
        except (TypeError, ValueError, OverflowError):
            continue
        if seconds > 0:
            return seconds
    return None


def parse_token_response(data: Any) -> OAuthTokenResponse:
    """Normalize the accepted token response shapes.

    Checked in order:
        1. ``{"access_token": ..., "expires_in": ...}`` (standard OAuth 2.0)
        2. ``{"token": ..., "expires_in" | "expiresIn": ...}``
        3. ``{"success": true, "data": {"token": ..., "expires_in" | "expiresIn": ...}}``

    Raises:
        TokenFetchError: If none of the shapes match.
    """
    if isinstance(data, dict):
        if data.get("access_token"):
            token_type = data.get("token_type")
            return OAuthTokenResponse(
                access_token=str(data["access_token"]),
                expires_in=_coerce_expires_in(data.get("expires_in")),
                token_type=str(token_type) if token_type else None,
            )

        if data.get("token"):
            return OAuthTokenResponse(
                access_token=str(data["token"]),
                expires_in=_coerce_expires_in(
                    data.get("expires_in"), data.get("expiresIn")
                ),
            )

        inner = data.get("data")
        if data.get("success") and isinstance(inner, dict) and inner.get("token"):
            return OAuthTokenResponse(
                access_token=str(inner["token"]),
                expires_in=_coerce_expires_in(
                    inner.get("expires_in"), inner.get("expiresIn")
                ),
            )

        shape = sorted(data.keys())
    else:
        shape = type(data).__name__

    raise TokenFetchError(f"Unexpected token response format: {shape}")


def is_token_expired(
    expiration: datetime | None,
    now: datetime,
    buffer_seconds: int = TOKEN_REFRESH_BUFFER_SECONDS,
) -> bool:
    """Check whether a cached token must be renewed.

    A token is still usable only while ``expiration - buffer`` lies strictly
    in the future.
    """
    if expiration is None:
        return True
    return _as_utc(expiration) - timedelta(seconds=buffer_seconds) <= _as_utc(now)


def _oauth_configured(tenant: Tenant) -> bool:
    return bool(
        tenant.webhook_auth_username
        and tenant.webhook_auth_password
        and tenant.webhook_auth_token_url
    )


def basic_auth_header(username: str, password: str) -> str:
    credentials = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
    return f"Basic {credentials}"


class OAuthTokenClient:
    """Fetches access tokens from tenant-configured token endpoints.

    Example:
        >>> client = OAuthTokenClient(timeout=10)
        >>> token = await client.fetch_token(
        ...     "client-id", "client-secret", "https://auth.example.com/token"
        ... )
        >>> token.access_token
        'eyJhbGciOi...'
    """

    def __init__(
        self,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the token client.

        Args:
            timeout: HTTP timeout in seconds
            client: Shared client to use instead of creating one
        """
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            import httpx

            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch_token(
        self,
        username: str,
        password: str,
        token_url: str,
        oauth_format: OAuthFormat = OAuthFormat.OAUTH2,
    ) -> OAuthTokenResponse:
        """Request a token from ``token_url``.

        Args:
            username: OAuth client ID or login username
            password: OAuth client secret or login password
            token_url: Token endpoint URL
            oauth_format: ``oauth2`` for a form-encoded client_credentials
                grant, ``json`` for a JSON ``{username, password}`` login

        Raises:
            TokenFetchError: On network errors, non-2xx responses, non-JSON
                bodies or unrecognized response shapes.
        """
        import httpx

        client = await self._get_client()
        try:
            if oauth_format == OAuthFormat.JSON:
                logger.debug(f"Fetching token (json) from {token_url}")
                response = await client.post(
                    token_url,
                    json={"username": username, "password": password},
                )
            else:
                logger.debug(f"Fetching token (client_credentials) from {token_url}")
                response = await client.post(
                    token_url,
                    data={
                        "grant_type": "client_credentials",
                        "client_id": username,
                        "client_secret": password,
                    },
                )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise TokenFetchError(
                f"Token endpoint returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise TokenFetchError(f"Token request failed: {type(e).__name__}: {e}") from e
        except httpx.InvalidURL as e:
            raise TokenFetchError(f"Invalid token URL: {e}") from e
        except ValueError as e:
            raise TokenFetchError("Token endpoint returned a non-JSON body") from e

        return parse_token_response(data)


class WebhookAuthResolver:
    """Produces the auth headers for a tenant's outbound webhook.

    The OAuth cache lives on the tenant record: fetched tokens are written
    back through the tenant store together with their absolute expiration.
    When a lock manager is supplied, the freshness-check-then-fetch sequence
    is serialized per tenant so concurrent deliveries share one fetch.

    Example:
        >>> resolver = WebhookAuthResolver(store, OAuthTokenClient())
        >>> await resolver.resolve_headers(tenant)
        {'Authorization': 'Bearer eyJhbGciOi...'}
    """

    def __init__(
        self,
        store: TenantStoreProtocol,
        token_client: OAuthTokenClient,
        refresh_buffer: int = TOKEN_REFRESH_BUFFER_SECONDS,
        default_token_lifetime: int = DEFAULT_TOKEN_LIFETIME_SECONDS,
        lock_manager: KeyedLockManager | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._store = store
        self._token_client = token_client
        self.refresh_buffer = refresh_buffer
        self.default_token_lifetime = default_token_lifetime
        self._locks = lock_manager
        self._clock = clock

    async def resolve_headers(self, tenant: Tenant | None) -> dict[str, str]:
        """Return the headers to attach for ``tenant`` (empty when none apply)."""
        if tenant is None:
            return {}

        try:
            return await self._resolve(tenant)
        except Exception as e:
            logger.exception(
                f"Unexpected error resolving webhook auth for '{tenant.username}': {e}"
            )
            return {}

    async def _resolve(self, tenant: Tenant) -> dict[str, str]:
        auth_type = WebhookAuthType.parse(tenant.webhook_auth_type)

        if auth_type == WebhookAuthType.BASIC:
            if tenant.webhook_auth_username and tenant.webhook_auth_password:
                return {
                    "Authorization": basic_auth_header(
                        tenant.webhook_auth_username, tenant.webhook_auth_password
                    )
                }
            logger.debug(f"Basic auth incomplete for tenant '{tenant.username}'")

        elif auth_type == WebhookAuthType.BEARER:
            if tenant.webhook_auth_token:
                return {"Authorization": f"Bearer {tenant.webhook_auth_token}"}
            logger.debug(f"Bearer token missing for tenant '{tenant.username}'")

        elif auth_type == WebhookAuthType.OAUTH:
            token = await self.get_valid_oauth_token(tenant)
            if token:
                return {"Authorization": f"Bearer {token}"}

        return {}

    async def get_valid_oauth_token(self, tenant: Tenant) -> str | None:
        """Return a usable OAuth token for tenant, renewing it if necessary.

        Returns None when OAuth is not fully configured or the fetch fails.
        """
        if not _oauth_configured(tenant):
            logger.info(f"OAuth not configured for tenant '{tenant.username}'")
            return None

        if self._locks is None:
            return await self._get_or_refresh(tenant)

        async with KeyedLock(self._locks, f"tenant:{tenant.id}"):
            return await self._get_or_refresh(tenant)

    async def _get_or_refresh(self, tenant: Tenant) -> str | None:
        # Another holder of the lock may have refreshed the token already
        current = self._store.get_by_id(tenant.id) or tenant
        if current.webhook_auth_type != WebhookAuthType.OAUTH or not _oauth_configured(
            current
        ):
            logger.info(
                f"Webhook auth for tenant '{tenant.username}' changed; skipping OAuth"
            )
            return None

        if current.webhook_auth_token and not is_token_expired(
            current.webhook_auth_token_expiration, self._clock(), self.refresh_buffer
        ):
            logger.debug(f"Using cached OAuth token for tenant '{tenant.username}'")
            return current.webhook_auth_token

        fingerprint = current.auth_fingerprint()
        logger.info(
            f"Fetching new OAuth token for tenant '{tenant.username}' "
            f"from {current.webhook_auth_token_url}"
        )
        try:
            response = await self._token_client.fetch_token(
                current.webhook_auth_username or "",
                current.webhook_auth_password or "",
                current.webhook_auth_token_url or "",
                current.webhook_oauth_format,
            )
        except TokenFetchError as e:
            logger.error(f"Failed to renew OAuth token for tenant '{tenant.username}': {e}")
            return None

        expires_in = min(
            response.expires_in or self.default_token_lifetime,
            MAX_TOKEN_LIFETIME_SECONDS,
        )
        expiration = self._clock() + timedelta(seconds=expires_in)

        if not self._store.save_oauth_token(
            current.id, response.access_token, expiration, fingerprint
        ):
            logger.warning(
                f"Webhook auth for tenant '{tenant.username}' changed during token "
                "fetch; discarding token"
            )
            return None

        tenant.webhook_auth_token = response.access_token
        tenant.webhook_auth_token_expiration = expiration
        logger.info(
            f"OAuth token stored for tenant '{tenant.username}', "
            f"expires at {expiration.isoformat()}"
        )
        return response.access_token

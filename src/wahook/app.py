"""Application factory for the webhook gateway.

Wires the tenant store, challenge store, auth resolver, delivery service and
dispatcher around a protocol client, and exposes the session endpoints used
by session-start flows and QR pollers.

Example:
    >>> from wahook.app import create_app
    >>> app = create_app(client=MyWhatsAppClient())
    >>> # uvicorn.run(app, host="0.0.0.0", port=5001)

Endpoints:
    GET  /health                 Liveness (no auth)
    GET  /ready                  Dependency checks (no auth)
    GET  /session                List sessions visible to the caller
    POST /session/start          Start the caller's own session
    POST /session/logout         Delete a session ({"session": ...})
    GET  /session/{session}/qr   Poll the pending QR challenge
    GET  /session/{session}/status

Authentication:
    HTTP Basic. Regular tenants authenticate with their bcrypt-hashed
    password and may only touch the session named after them. The virtual
    admin configured through WAHOOK_ADMIN_USER / WAHOOK_ADMIN_PASSWORD may
    touch any session but owns none.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from importlib.metadata import version as get_version
from typing import TYPE_CHECKING, Any

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel

from wahook.auth import OAuthTokenClient, WebhookAuthResolver
from wahook.challenges import (
    ChallengeStoreProtocol,
    MemoryChallengeStore,
    RedisChallengeStore,
)
from wahook.config import GatewayConfig
from wahook.delivery import WebhookDeliveryService
from wahook.dispatcher import EventDispatcher
from wahook.errors import ErrorCode, GatewayError, create_error_response
from wahook.locks import KeyedLockManager
from wahook.models import (
    HealthResponse,
    Principal,
    ReadinessErrorResponse,
    ReadinessResponse,
)
from wahook.sessions import SessionManager
from wahook.tenants import SQLiteTenantStore, TenantResolver, TenantStoreProtocol

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    import httpx

    from wahook.protocol import WhatsAppClient

logger = logging.getLogger(__name__)

__all__ = ["LogoutRequest", "create_app", "create_challenge_store"]


class LogoutRequest(BaseModel):
    session: str


async def check_redis_connection(redis_url: str) -> bool:
    """Check if Redis connection is healthy."""
    try:
        import redis.asyncio as redis

        client = redis.from_url(redis_url, decode_responses=True)
        await client.ping()
        await client.aclose()
        return True
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        return False


def create_challenge_store(config: GatewayConfig) -> ChallengeStoreProtocol:
    """Redis-backed store when a Redis URL is configured, memory otherwise."""
    if config.redis_url:
        import redis

        logger.info("Using Redis challenge store")
        return RedisChallengeStore(
            redis.Redis.from_url(config.redis_url), ttl=config.challenge_ttl
        )

    logger.info("Using in-memory challenge store")
    return MemoryChallengeStore(ttl=config.challenge_ttl)


def create_app(
    config: GatewayConfig | None = None,
    client: WhatsAppClient | None = None,
    *,
    tenant_store: TenantStoreProtocol | None = None,
    challenge_store: ChallengeStoreProtocol | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Create the gateway application.

    The factory stores its collaborators in app.state:
    - app.state.tenant_store, app.state.challenge_store
    - app.state.dispatcher, app.state.sessions

    Args:
        config: Gateway configuration (loads from environment if None)
        client: Protocol client the gateway drives and listens to
        tenant_store: Tenant storage (SQLite at ``config.db_path`` if None)
        challenge_store: Challenge storage (derived from config if None)
        http_client: Shared client for webhook POSTs and token fetches

    Returns:
        Configured FastAPI application ready for uvicorn

    Raises:
        ValueError: If no protocol client is supplied
    """
    if client is None:
        raise ValueError("A WhatsApp protocol client is required")

    if config is None:
        config = GatewayConfig()

    try:
        app_version = get_version("wahook")
    except Exception:
        app_version = "unknown"
        logger.warning("Could not determine package version")

    if tenant_store is None:
        tenant_store = SQLiteTenantStore(config.db_path)
    if challenge_store is None:
        challenge_store = create_challenge_store(config)

    token_client = OAuthTokenClient(timeout=config.http_timeout, client=http_client)
    delivery = WebhookDeliveryService(timeout=config.http_timeout, client=http_client)
    auth_resolver = WebhookAuthResolver(
        tenant_store,
        token_client,
        refresh_buffer=config.token_refresh_buffer,
        default_token_lifetime=config.default_token_lifetime,
        lock_manager=KeyedLockManager() if config.serialize_token_refresh else None,
    )
    dispatcher = EventDispatcher(
        TenantResolver(tenant_store),
        auth_resolver,
        delivery,
        challenge_store,
        legacy_webhook_url=config.legacy_webhook_url,
    )
    sessions = SessionManager(client, challenge_store)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context for startup and shutdown events."""
        logger.info(f"Starting {config.app_name} v{app_version}")
        logger.info(f"Listening on {config.host}:{config.port}")

        dispatcher.attach(client)

        sweep_task: asyncio.Task[None] | None = None
        if config.challenge_sweep_interval > 0:

            async def challenge_sweep_loop() -> None:
                """Periodically drop expired QR challenges."""
                while True:
                    await asyncio.sleep(config.challenge_sweep_interval)
                    try:
                        removed = challenge_store.sweep_expired()
                        if removed > 0:
                            logger.debug(f"Challenge sweep: removed {removed} entries")
                    except Exception as e:
                        logger.error(f"Challenge sweep failed: {e}")

            sweep_task = asyncio.create_task(challenge_sweep_loop())
            logger.info(
                f"Challenge sweep enabled: interval={config.challenge_sweep_interval}s"
            )

        yield

        if sweep_task is not None:
            sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweep_task

        await dispatcher.drain()
        await delivery.close()
        await token_client.close()
        logger.info("Shutting down gracefully...")

    app = FastAPI(
        title=config.app_name,
        version=app_version,
        description="WhatsApp webhook gateway",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )

    app.state.config = config
    app.state.tenant_store = tenant_store
    app.state.challenge_store = challenge_store
    app.state.dispatcher = dispatcher
    app.state.sessions = sessions

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.http_status,
            content={"detail": create_error_response(exc.code, exc.message)},
        )

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    basic = HTTPBasic(auto_error=False)

    def unauthorized(code: ErrorCode) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=create_error_response(code),
            headers={"WWW-Authenticate": "Basic"},
        )

    def is_admin_login(username: str, password: str) -> bool:
        if not config.admin_user or config.admin_password is None:
            return False
        return secrets.compare_digest(
            username.encode(), config.admin_user.encode()
        ) and secrets.compare_digest(
            password.encode(), config.admin_password.get_secret_value().encode()
        )

    def get_principal(
        request: Request,
        credentials: HTTPBasicCredentials | None = Depends(basic),
    ) -> Principal:
        """Resolve the caller from HTTP Basic credentials."""
        if credentials is None:
            raise unauthorized(ErrorCode.AUTH_REQUIRED)

        if is_admin_login(credentials.username, credentials.password):
            return Principal(username=credentials.username, is_admin=True)

        tenant = tenant_store.get_by_username(credentials.username)
        if tenant is None or not tenant_store.verify_password(
            tenant, credentials.password
        ):
            logger.warning(
                f"Authentication failed for "
                f"{request.client.host if request.client else 'unknown'} "
                f"on {request.url.path}"
            )
            raise unauthorized(ErrorCode.INVALID_CREDENTIALS)

        return Principal(username=tenant.username, is_admin=tenant.is_admin, tenant=tenant)

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    @app.get("/health", tags=["monitoring"], response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Health check endpoint for monitoring systems."""
        return HealthResponse(
            status="ok",
            service=config.app_name,
            version=app_version,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @app.get(
        "/ready",
        tags=["monitoring"],
        response_model=None,
        responses={
            200: {"model": ReadinessResponse},
            503: {"model": ReadinessErrorResponse},
        },
    )
    async def readiness() -> ReadinessResponse | JSONResponse:
        """Readiness check; 503 when the configured Redis is unreachable."""
        checks: dict[str, bool | str] = {
            "challenge_store": "redis" if config.redis_url else "memory",
        }
        timestamp = datetime.now(timezone.utc).isoformat()

        if config.redis_url:
            redis_healthy = await check_redis_connection(config.redis_url)
            checks["redis"] = redis_healthy

            if not redis_healthy:
                return JSONResponse(
                    status_code=503,
                    content=ReadinessErrorResponse(
                        status="not_ready",
                        checks=checks,
                        message="Redis connection failed",
                        timestamp=timestamp,
                    ).model_dump(),
                )

        return ReadinessResponse(status="ready", checks=checks, timestamp=timestamp)

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    @app.get("/session", tags=["session"])
    async def list_sessions(
        principal: Principal = Depends(get_principal),
    ) -> dict[str, Any]:
        """List running sessions; tenants only ever see their own."""
        return {"data": sessions.list_sessions(principal)}

    @app.post("/session/start", tags=["session"])
    async def start_session(
        principal: Principal = Depends(get_principal),
    ) -> dict[str, Any]:
        """Start the caller's session and return its first QR challenge."""
        result = await sessions.start_session(principal)
        if result.connected:
            return {"data": {"message": "Connected", "session": result.session}}
        return {"qr": result.qr, "session": result.session}

    @app.post("/session/logout", tags=["session"])
    async def logout(
        payload: LogoutRequest,
        principal: Principal = Depends(get_principal),
    ) -> dict[str, Any]:
        await sessions.logout(principal, payload.session)
        return {"data": "success"}

    @app.get("/session/{session}/qr", tags=["session"])
    async def get_qr(
        session: str,
        principal: Principal = Depends(get_principal),
    ) -> dict[str, Any]:
        """Poll the pending QR challenge of a session."""
        qr = sessions.get_qr(principal, session)
        return {"data": {"qr": qr, "session": session}}

    @app.get("/session/{session}/status", tags=["session"])
    async def get_status(
        session: str,
        principal: Principal = Depends(get_principal),
    ) -> dict[str, Any]:
        info = sessions.get_status(principal, session)
        return {"data": info.model_dump()}

    return app

"""Fan-out of protocol events to tenant and legacy webhooks.

For each inbound event the dispatcher resolves the owning tenant, builds the
canonical body and POSTs it to up to two destinations:

- the tenant's ``callback_url``, authenticated with the tenant's scheme
- the process-wide legacy URL, if configured, never authenticated

Destinations are delivered concurrently and independently. Failures are
logged per destination and never propagate back to the protocol layer.

Example:
    >>> dispatcher = EventDispatcher(resolver, auth_resolver, delivery, challenges)
    >>> dispatcher.attach(whatsapp_client)
    >>> # ... on shutdown
    >>> await dispatcher.drain()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from wahook.delivery import DeliveryResult
from wahook.events import (
    MessageReceived,
    build_message_body,
    build_session_body,
    should_ignore,
)
from wahook.models import SessionStatus

if TYPE_CHECKING:
    from collections.abc import Coroutine

    from wahook.auth import WebhookAuthResolver
    from wahook.challenges import ChallengeStoreProtocol
    from wahook.delivery import WebhookDeliveryService
    from wahook.models import Tenant
    from wahook.protocol import WhatsAppClient
    from wahook.tenants import TenantResolver

logger = logging.getLogger(__name__)

__all__ = ["Destination", "EventDispatcher", "session_url"]


def session_url(callback_url: str) -> str:
    """Session events go to ``<callback>/session``."""
    return f"{callback_url.rstrip('/')}/session"


@dataclass(frozen=True)
class Destination:
    """One outbound target; ``tenant`` is None for unauthenticated delivery."""

    url: str
    tenant: Tenant | None = None


class EventDispatcher:
    """Turns protocol events into zero, one or two webhook POSTs."""

    def __init__(
        self,
        tenant_resolver: TenantResolver,
        auth_resolver: WebhookAuthResolver,
        delivery: WebhookDeliveryService,
        challenges: ChallengeStoreProtocol,
        legacy_webhook_url: str | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            tenant_resolver: Maps session identifiers to tenants
            auth_resolver: Supplies per-tenant auth headers
            delivery: HTTP delivery service
            challenges: Challenge store cleared when a session connects
            legacy_webhook_url: Optional global callback receiving every event
        """
        self._tenants = tenant_resolver
        self._auth = auth_resolver
        self._delivery = delivery
        self._challenges = challenges
        self.legacy_webhook_url = legacy_webhook_url or None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._attached: list[WhatsAppClient] = []

        if self.legacy_webhook_url:
            logger.info(f"Legacy webhook enabled: {self.legacy_webhook_url}")

    # ------------------------------------------------------------------
    # Protocol wiring
    # ------------------------------------------------------------------

    def attach(self, client: WhatsAppClient) -> None:
        """Subscribe to the protocol client's message and lifecycle events.

        Attaching the same client again is a no-op.
        """
        if any(attached is client for attached in self._attached):
            logger.debug("Dispatcher already attached to protocol client")
            return
        self._attached.append(client)
        client.on_message_received(self.on_message_received)
        client.on_connecting(self.on_connecting)
        client.on_connected(self.on_connected)
        client.on_disconnected(self.on_disconnected)

    def on_message_received(self, raw: dict[str, Any]) -> None:
        self._schedule(self.handle_raw_message(raw))

    def on_connecting(self, session_id: str) -> None:
        logger.info(f"session: '{session_id}' connecting")
        self._schedule(
            self.handle_session_status(session_id, SessionStatus.CONNECTING)
        )

    def on_connected(self, session_id: str) -> None:
        logger.info(f"session: '{session_id}' connected")
        self._schedule(self.handle_session_status(session_id, SessionStatus.CONNECTED))

    def on_disconnected(self, session_id: str) -> None:
        logger.info(f"session: '{session_id}' disconnected")
        self._schedule(
            self.handle_session_status(session_id, SessionStatus.DISCONNECTED)
        )

    def _schedule(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Run a handler as its own task so events never wait on each other."""
        task = asyncio.get_running_loop().create_task(self._guarded(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except Exception as e:
            logger.exception(f"Event handler failed: {e}")

    @property
    def pending(self) -> int:
        """Number of handlers still running."""
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight handler to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_raw_message(self, raw: dict[str, Any]) -> list[DeliveryResult]:
        try:
            event = MessageReceived.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Dropping malformed message event: {e.error_count()} errors")
            return []
        return await self.handle_message(event)

    async def handle_message(self, event: MessageReceived) -> list[DeliveryResult]:
        """Deliver a received message to the session's destinations."""
        if should_ignore(event):
            return []

        tenant = self._tenants.resolve_by_session_id(event.session_id)
        destinations = self._destinations(tenant, session_event=False)
        if not destinations:
            logger.info(f"No callback URL configured for session: {event.session_id}")
            return []

        body = build_message_body(event).to_payload()
        return await self._fan_out(destinations, body)

    async def handle_session_status(
        self, session_id: str, status: SessionStatus
    ) -> list[DeliveryResult]:
        """Report a lifecycle transition to ``<callback>/session``.

        A ``connected`` transition also clears the session's pending QR
        challenge so pollers stop seeing it.
        """
        if status == SessionStatus.CONNECTED:
            self._challenges.remove(session_id)

        tenant = self._tenants.resolve_by_session_id(session_id)
        destinations = self._destinations(tenant, session_event=True)
        if not destinations:
            logger.debug(f"No session callback configured for session: {session_id}")
            return []

        body = build_session_body(session_id, status).to_payload()
        return await self._fan_out(destinations, body)

    def _destinations(
        self, tenant: Tenant | None, *, session_event: bool
    ) -> list[Destination]:
        destinations: list[Destination] = []

        if tenant is not None and tenant.callback_url:
            url = tenant.callback_url
            destinations.append(
                Destination(session_url(url) if session_event else url, tenant)
            )

        # Legacy delivery does not depend on a tenant being resolved
        if self.legacy_webhook_url:
            url = self.legacy_webhook_url
            destinations.append(Destination(session_url(url) if session_event else url))

        return destinations

    async def _fan_out(
        self, destinations: list[Destination], body: dict[str, Any]
    ) -> list[DeliveryResult]:
        results = await asyncio.gather(
            *(self._deliver(destination, body) for destination in destinations),
            return_exceptions=True,
        )

        outcomes: list[DeliveryResult] = []
        for destination, result in zip(destinations, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to send webhook to {destination.url}: {result}")
                outcomes.append(
                    DeliveryResult(url=destination.url, success=False, error=str(result))
                )
            else:
                outcomes.append(result)
        return outcomes

    async def _deliver(self, destination: Destination, body: dict[str, Any]) -> DeliveryResult:
        headers: dict[str, str] = {}
        if destination.tenant is not None:
            headers = await self._auth.resolve_headers(destination.tenant)
        return await self._delivery.deliver(destination.url, body, headers)

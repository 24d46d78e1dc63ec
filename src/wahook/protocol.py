"""Interface of the WhatsApp protocol layer the gateway sits on.

The protocol layer handles handshakes, multi-device pairing and QR
generation. The gateway only starts and deletes sessions, stores the QR
payloads it is handed, and reacts to lifecycle and message callbacks.
Concrete clients are supplied by the embedding application.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

__all__ = [
    "SessionInfo",
    "SessionUser",
    "WhatsAppClient",
]


class SessionUser(BaseModel):
    """Account a session is paired with."""

    id: str
    name: str | None = None


class SessionInfo(BaseModel):
    """Snapshot of a protocol session."""

    session_id: str
    user: SessionUser | None = None

    @property
    def is_connected(self) -> bool:
        return self.user is not None


class WhatsAppClient(ABC):
    """Protocol-layer operations and event subscriptions."""

    @abstractmethod
    async def start_session(
        self,
        session_id: str,
        on_qr: Callable[[str], None],
        on_connected: Callable[[], None],
    ) -> None:
        """Begin the handshake for ``session_id``.

        ``on_qr`` is called each time a new QR payload is issued;
        ``on_connected`` once pairing completes (possibly without any QR for
        sessions restored from credentials).
        """
        ...

    @abstractmethod
    def get_session(self, session_id: str) -> SessionInfo | None:
        ...

    @abstractmethod
    def list_sessions(self) -> list[str]:
        """Identifiers of every running session."""
        ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        ...

    @abstractmethod
    def on_message_received(
        self, listener: Callable[[dict[str, Any]], Awaitable[None] | None]
    ) -> None:
        """Register a listener receiving raw message payloads."""
        ...

    @abstractmethod
    def on_connecting(self, listener: Callable[[str], Awaitable[None] | None]) -> None:
        ...

    @abstractmethod
    def on_connected(self, listener: Callable[[str], Awaitable[None] | None]) -> None:
        ...

    @abstractmethod
    def on_disconnected(
        self, listener: Callable[[str], Awaitable[None] | None]
    ) -> None:
        ...

"""Session start, logout and QR polling on top of the protocol client.

A tenant's session identifier is always its username. Starting a session
waits for whichever comes first: a QR challenge (stored in the challenge
store so it can be polled later) or an immediate connection, which happens
when the protocol layer restores a session from saved credentials.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel

from wahook.errors import (
    AdminTenantError,
    ChallengeNotFoundError,
    SessionAlreadyConnectedError,
    SessionExistsError,
    SessionForbiddenError,
    SessionNotFoundError,
)
from wahook.protocol import SessionUser

if TYPE_CHECKING:
    from wahook.challenges import ChallengeStoreProtocol
    from wahook.models import Principal
    from wahook.protocol import WhatsAppClient

logger = logging.getLogger(__name__)

__all__ = [
    "SessionManager",
    "SessionStartResult",
    "SessionStatusInfo",
]


class SessionStartResult(BaseModel):
    """Outcome of starting a session: a QR to scan, or already connected."""

    session: str
    qr: str | None = None
    connected: bool = False


class SessionStatusInfo(BaseModel):
    """Snapshot returned to status pollers."""

    session: str
    exists: bool
    is_connected: bool
    has_qr: bool
    user: SessionUser | None = None


class SessionManager:
    """Session lifecycle operations performed on behalf of a principal.

    Example:
        >>> manager = SessionManager(client, MemoryChallengeStore())
        >>> result = await manager.start_session(principal)
        >>> result.qr
        '2@AbCd...'
    """

    def __init__(
        self,
        client: WhatsAppClient,
        challenges: ChallengeStoreProtocol,
    ) -> None:
        self._client = client
        self._challenges = challenges

    def _check_access(self, principal: Principal, session_id: str) -> None:
        if not principal.can_access(session_id):
            logger.warning(
                f"User '{principal.username}' denied access to session '{session_id}'"
            )
            raise SessionForbiddenError()

    async def start_session(self, principal: Principal) -> SessionStartResult:
        """Start the principal's own session.

        Raises:
            AdminTenantError: If the principal owns no session (admins)
            SessionExistsError: If the session is already running
        """
        if principal.is_admin or principal.tenant is None:
            raise AdminTenantError("Admin users do not own a session")

        session_id = principal.username
        if self._client.get_session(session_id) is not None:
            raise SessionExistsError()

        loop = asyncio.get_running_loop()
        outcome: asyncio.Future[str | None] = loop.create_future()

        def resolve(value: str | None) -> None:
            if not outcome.done():
                outcome.set_result(value)

        def on_qr(qr: str) -> None:
            # Every refreshed QR replaces the stored one; only the first resolves
            self._challenges.store(session_id, qr)
            resolve(qr)

        def on_connected() -> None:
            self._challenges.remove(session_id)
            resolve(None)

        logger.info(f"Starting session '{session_id}'")
        await self._client.start_session(session_id, on_qr, on_connected)
        qr = await outcome

        if qr is None:
            logger.info(f"Session '{session_id}' connected without QR")
            return SessionStartResult(session=session_id, connected=True)
        return SessionStartResult(session=session_id, qr=qr)

    def list_sessions(self, principal: Principal) -> list[str]:
        """Running sessions visible to the principal; the admin sees all."""
        return [
            session_id
            for session_id in self._client.list_sessions()
            if principal.can_access(session_id)
        ]

    async def logout(self, principal: Principal, session_id: str) -> None:
        """Delete a session and forget its pending challenge.

        Raises:
            SessionForbiddenError: If the principal may not touch the session
            SessionNotFoundError: If no such session is running
        """
        self._check_access(principal, session_id)
        if self._client.get_session(session_id) is None:
            raise SessionNotFoundError()
        await self._client.delete_session(session_id)
        self._challenges.remove(session_id)
        logger.info(f"Session '{session_id}' logged out by '{principal.username}'")

    def get_qr(self, principal: Principal, session_id: str) -> str:
        """Return the pending QR challenge for polling clients.

        Raises:
            SessionForbiddenError: If the principal may not see the session
            SessionAlreadyConnectedError: If no challenge is pending because
                the session has connected
            ChallengeNotFoundError: If no challenge is pending otherwise
        """
        self._check_access(principal, session_id)

        qr = self._challenges.get(session_id)
        if qr:
            return qr

        session = self._client.get_session(session_id)
        if session is not None and session.is_connected:
            raise SessionAlreadyConnectedError()
        raise ChallengeNotFoundError()

    def get_status(self, principal: Principal, session_id: str) -> SessionStatusInfo:
        self._check_access(principal, session_id)

        session = self._client.get_session(session_id)
        return SessionStatusInfo(
            session=session_id,
            exists=session is not None,
            is_connected=bool(session and session.is_connected),
            has_qr=self._challenges.get(session_id) is not None,
            user=session.user if session is not None else None,
        )

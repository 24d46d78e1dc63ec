"""Pytest configuration and shared fixtures for wahook tests."""

from __future__ import annotations

import inspect
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import pytest

from wahook.challenges import MemoryChallengeStore
from wahook.protocol import SessionInfo, SessionUser, WhatsAppClient
from wahook.tenants import MemoryTenantStore


class FakeWhatsAppClient(WhatsAppClient):
    """Scriptable protocol client.

    ``start_session`` replays ``script``: a list of ``("qr", payload)`` and
    ``("connected", None)`` steps passed to the callbacks in order.
    """

    def __init__(self) -> None:
        self.sessions: dict[str, SessionInfo] = {}
        self.deleted: list[str] = []
        self.script: list[tuple[str, str | None]] = [("qr", "2@first-qr")]
        self.listeners: dict[str, list[Callable[..., Any]]] = {
            "message": [],
            "connecting": [],
            "connected": [],
            "disconnected": [],
        }

    async def start_session(
        self,
        session_id: str,
        on_qr: Callable[[str], None],
        on_connected: Callable[[], None],
    ) -> None:
        self.sessions[session_id] = SessionInfo(session_id=session_id)
        for step, payload in self.script:
            if step == "qr":
                on_qr(payload or "")
            elif step == "connected":
                self.connect(session_id)
                on_connected()

    def connect(self, session_id: str, name: str = "Alice") -> None:
        self.sessions[session_id] = SessionInfo(
            session_id=session_id,
            user=SessionUser(id="15550001111:1@s.whatsapp.net", name=name),
        )

    def get_session(self, session_id: str) -> SessionInfo | None:
        return self.sessions.get(session_id)

    def list_sessions(self) -> list[str]:
        return list(self.sessions)

    async def delete_session(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)
        self.deleted.append(session_id)

    def on_message_received(self, listener: Callable[..., Any]) -> None:
        self.listeners["message"].append(listener)

    def on_connecting(self, listener: Callable[..., Any]) -> None:
        self.listeners["connecting"].append(listener)

    def on_connected(self, listener: Callable[..., Any]) -> None:
        self.listeners["connected"].append(listener)

    def on_disconnected(self, listener: Callable[..., Any]) -> None:
        self.listeners["disconnected"].append(listener)

    async def emit(self, event: str, payload: Any) -> None:
        """Invoke every listener for ``event`` the way a protocol layer would."""
        for listener in self.listeners[event]:
            result = listener(payload)
            if inspect.isawaitable(result):
                await result


class FakeClock:
    """Monotonic-style clock advanced manually."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUTCClock:
    """Wall clock returning a fixed, manually advanced UTC datetime."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def utc_clock() -> FakeUTCClock:
    return FakeUTCClock()


@pytest.fixture
def challenge_store(clock: FakeClock) -> MemoryChallengeStore:
    """Challenge store driven by the fake clock."""
    return MemoryChallengeStore(ttl=300, clock=clock)


@pytest.fixture
def tenant_store() -> MemoryTenantStore:
    return MemoryTenantStore()


@pytest.fixture
def whatsapp_client() -> FakeWhatsAppClient:
    return FakeWhatsAppClient()

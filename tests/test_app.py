"""Tests for the HTTP surface created by create_app."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from wahook.app import create_app, create_challenge_store
from wahook.challenges import MemoryChallengeStore, RedisChallengeStore
from wahook.config import GatewayConfig

if TYPE_CHECKING:
    from conftest import FakeWhatsAppClient

    from wahook.tenants import MemoryTenantStore


def make_config(**overrides: Any) -> GatewayConfig:
    fields: dict[str, Any] = {
        "admin_user": "root",
        "admin_password": "rootpw",
        "challenge_sweep_interval": 0,
        "redis_url": None,
        "legacy_webhook_url": None,
    }
    fields.update(overrides)
    return GatewayConfig(**fields)


@pytest.fixture
def app_client(
    whatsapp_client: FakeWhatsAppClient,
    tenant_store: MemoryTenantStore,
    challenge_store: MemoryChallengeStore,
) -> TestClient:
    tenant_store.create_tenant("alice", "alicepw")
    tenant_store.create_tenant("bob", "bobpw")
    app = create_app(
        make_config(),
        whatsapp_client,
        tenant_store=tenant_store,
        challenge_store=challenge_store,
    )
    return TestClient(app)


class TestMonitoring:
    """Tests for health and readiness endpoints."""

    def test_health_needs_no_auth(self, app_client: TestClient) -> None:
        response = app_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "wahook"
        assert "timestamp" in data

    def test_ready_with_memory_store(self, app_client: TestClient) -> None:
        response = app_client.get("/ready")

        assert response.status_code == 200
        assert response.json()["checks"] == {"challenge_store": "memory"}

    def test_ready_reports_redis_failure(
        self,
        whatsapp_client: FakeWhatsAppClient,
        tenant_store: MemoryTenantStore,
        challenge_store: MemoryChallengeStore,
    ) -> None:
        app = create_app(
            make_config(redis_url="redis://localhost:59999"),
            whatsapp_client,
            tenant_store=tenant_store,
            challenge_store=challenge_store,
        )

        with patch("wahook.app.check_redis_connection", return_value=False):
            response = TestClient(app).get("/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["redis"] is False


class TestAuthentication:
    """Tests for HTTP Basic authentication."""

    def test_missing_credentials(self, app_client: TestClient) -> None:
        response = app_client.get("/session/alice/status")

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "E010"
        assert response.headers["www-authenticate"] == "Basic"

    def test_wrong_password(self, app_client: TestClient) -> None:
        response = app_client.get("/session/alice/status", auth=("alice", "nope"))

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "E011"

    def test_unknown_user(self, app_client: TestClient) -> None:
        response = app_client.get("/session/alice/status", auth=("mallory", "x"))

        assert response.status_code == 401

    def test_other_tenants_session_forbidden(self, app_client: TestClient) -> None:
        response = app_client.get("/session/bob/status", auth=("alice", "alicepw"))

        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "E012"

    def test_admin_may_view_any_session(self, app_client: TestClient) -> None:
        response = app_client.get("/session/bob/status", auth=("root", "rootpw"))

        assert response.status_code == 200
        assert response.json()["data"]["session"] == "bob"

    def test_admin_wrong_password_not_admin(self, app_client: TestClient) -> None:
        response = app_client.get("/session/bob/status", auth=("root", "wrong"))

        assert response.status_code == 401


class TestSessionEndpoints:
    """Tests for session start, polling and logout."""

    def test_start_returns_qr(
        self, app_client: TestClient, challenge_store: MemoryChallengeStore
    ) -> None:
        response = app_client.post("/session/start", auth=("alice", "alicepw"))

        assert response.status_code == 200
        assert response.json() == {"qr": "2@first-qr", "session": "alice"}
        assert challenge_store.get("alice") == "2@first-qr"

    def test_start_already_connected(
        self, app_client: TestClient, whatsapp_client: FakeWhatsAppClient
    ) -> None:
        whatsapp_client.script = [("connected", None)]

        response = app_client.post("/session/start", auth=("alice", "alicepw"))

        assert response.json() == {"data": {"message": "Connected", "session": "alice"}}

    def test_start_twice(self, app_client: TestClient) -> None:
        app_client.post("/session/start", auth=("alice", "alicepw"))

        response = app_client.post("/session/start", auth=("alice", "alicepw"))

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "E100"

    def test_admin_cannot_start(self, app_client: TestClient) -> None:
        response = app_client.post("/session/start", auth=("root", "rootpw"))

        assert response.status_code == 400

    def test_qr_polling_lifecycle(
        self, app_client: TestClient, whatsapp_client: FakeWhatsAppClient
    ) -> None:
        """QR is served while pending and reported connected afterwards."""
        auth = ("alice", "alicepw")
        assert app_client.get("/session/alice/qr", auth=auth).status_code == 404

        app_client.post("/session/start", auth=auth)
        response = app_client.get("/session/alice/qr", auth=auth)
        assert response.status_code == 200
        assert response.json() == {"data": {"qr": "2@first-qr", "session": "alice"}}

        status = app_client.get("/session/alice/status", auth=auth).json()["data"]
        assert status["exists"] is True
        assert status["has_qr"] is True
        assert status["is_connected"] is False

    def test_connected_event_clears_qr(
        self,
        whatsapp_client: FakeWhatsAppClient,
        tenant_store: MemoryTenantStore,
        challenge_store: MemoryChallengeStore,
    ) -> None:
        """The lifespan attaches the dispatcher to the protocol client."""
        tenant_store.create_tenant("alice", "alicepw")
        app = create_app(
            make_config(),
            whatsapp_client,
            tenant_store=tenant_store,
            challenge_store=challenge_store,
        )
        auth = ("alice", "alicepw")

        with TestClient(app) as client:
            client.post("/session/start", auth=auth)
            whatsapp_client.connect("alice")
            client.portal.call(whatsapp_client.emit, "connected", "alice")
            client.portal.call(app.state.dispatcher.drain)

            response = client.get("/session/alice/qr", auth=auth)

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "E103"

    def test_logout(
        self, app_client: TestClient, whatsapp_client: FakeWhatsAppClient
    ) -> None:
        auth = ("alice", "alicepw")
        app_client.post("/session/start", auth=auth)

        response = app_client.post("/session/logout", json={"session": "alice"}, auth=auth)

        assert response.status_code == 200
        assert response.json() == {"data": "success"}
        assert whatsapp_client.deleted == ["alice"]

    def test_logout_missing_session(self, app_client: TestClient) -> None:
        response = app_client.post(
            "/session/logout", json={"session": "alice"}, auth=("alice", "alicepw")
        )

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "E101"

    def test_admin_lists_all_sessions(
        self, app_client: TestClient, whatsapp_client: FakeWhatsAppClient
    ) -> None:
        whatsapp_client.connect("alice")
        whatsapp_client.connect("bob")

        response = app_client.get("/session", auth=("root", "rootpw"))

        assert response.status_code == 200
        assert sorted(response.json()["data"]) == ["alice", "bob"]

    def test_tenant_lists_own_session(
        self, app_client: TestClient, whatsapp_client: FakeWhatsAppClient
    ) -> None:
        auth = ("alice", "alicepw")
        whatsapp_client.connect("bob")
        assert app_client.get("/session", auth=auth).json() == {"data": []}

        whatsapp_client.connect("alice")

        assert app_client.get("/session", auth=auth).json() == {"data": ["alice"]}

    def test_list_requires_auth(self, app_client: TestClient) -> None:
        assert app_client.get("/session").status_code == 401

    def test_logout_other_session_forbidden(self, app_client: TestClient) -> None:
        response = app_client.post(
            "/session/logout", json={"session": "bob"}, auth=("alice", "alicepw")
        )

        assert response.status_code == 403


class TestFactory:
    def test_requires_client(self) -> None:
        with pytest.raises(ValueError):
            create_app(make_config())

    def test_memory_challenge_store_by_default(self) -> None:
        store = create_challenge_store(make_config(challenge_ttl=42))

        assert isinstance(store, MemoryChallengeStore)
        assert store.ttl == 42

    def test_redis_challenge_store_when_configured(self) -> None:
        """Redis.from_url is lazy, so no server is needed."""
        store = create_challenge_store(make_config(redis_url="redis://localhost:6379/0"))

        assert isinstance(store, RedisChallengeStore)

    def test_state_exposes_collaborators(
        self,
        whatsapp_client: FakeWhatsAppClient,
        tenant_store: MemoryTenantStore,
    ) -> None:
        app = create_app(make_config(), whatsapp_client, tenant_store=tenant_store)

        assert app.state.tenant_store is tenant_store
        assert app.state.dispatcher.legacy_webhook_url is None

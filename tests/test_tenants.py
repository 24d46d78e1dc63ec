"""Tests for tenant storage and session resolution."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from wahook.errors import (
    AdminTenantError,
    InvalidSessionIdError,
    TenantExistsError,
    TenantNotFoundError,
)
from wahook.models import OAuthFormat, WebhookAuthType, WebhookAuthUpdate
from wahook.tenants import (
    MemoryTenantStore,
    SQLiteTenantStore,
    TenantResolver,
    TenantStoreProtocol,
    hash_password,
    validate_session_id,
    verify_password,
)

EXPIRY = datetime(2026, 1, 15, 13, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> TenantStoreProtocol:
    """Run each test against both backends."""
    if request.param == "memory":
        return MemoryTenantStore()
    return SQLiteTenantStore(tmp_path / "tenants.db")


def oauth_update(**overrides: str) -> WebhookAuthUpdate:
    fields = {
        "webhook_auth_type": "oauth",
        "webhook_auth_username": "client-id",
        "webhook_auth_password": "client-secret",
        "webhook_auth_token_url": "https://auth.example.com/token",
    }
    fields.update(overrides)
    return WebhookAuthUpdate(**fields)


class TestSessionIdValidation:
    """Tests for the username-as-session-id invariant."""

    @pytest.mark.parametrize("username", ["alice", "Bob_2", "team.sales-1", "a" * 64])
    def test_valid(self, username: str) -> None:
        assert validate_session_id(username) == username

    @pytest.mark.parametrize("username", ["", "has space", "slash/name", "a" * 65, "ümlaut"])
    def test_invalid(self, username: str) -> None:
        with pytest.raises(InvalidSessionIdError):
            validate_session_id(username)


class TestPasswords:
    """Tests for bcrypt password handling."""

    def test_hash_and_verify(self) -> None:
        hashed = hash_password("s3cret")

        assert hashed != "s3cret"
        assert verify_password("s3cret", hashed)
        assert not verify_password("wrong", hashed)

    def test_verify_against_garbage_hash(self) -> None:
        """A malformed stored hash never verifies."""
        assert not verify_password("s3cret", "not-a-bcrypt-hash")
        assert not verify_password("s3cret", "")


class TestWebhookAuthUpdate:
    """Tests for auth update normalization."""

    @pytest.mark.parametrize("value", ["digest", "", None, " BASIC "])
    def test_auth_type_normalized(self, value: str | None) -> None:
        update = WebhookAuthUpdate(webhook_auth_type=value)

        expected = WebhookAuthType.BASIC if value == " BASIC " else WebhookAuthType.NONE
        assert update.webhook_auth_type is expected

    def test_unknown_oauth_format_defaults_to_form(self) -> None:
        update = WebhookAuthUpdate(webhook_auth_type="oauth", webhook_oauth_format="xml")

        assert update.webhook_oauth_format is OAuthFormat.OAUTH2
        assert update.model_dump()["webhook_oauth_format"] == OAuthFormat.OAUTH2


class TestTenantStore:
    """Behavior shared by every tenant store backend."""

    def test_create_and_lookup(self, store: TenantStoreProtocol) -> None:
        """Created tenants are found by username and id with safe defaults."""
        tenant = store.create_tenant("alice", "pw")

        by_name = store.get_by_username("alice")
        assert by_name is not None
        assert by_name.id == tenant.id
        assert by_name.webhook_auth_type == WebhookAuthType.NONE
        assert by_name.webhook_oauth_format == OAuthFormat.OAUTH2
        assert by_name.callback_url is None
        assert store.get_by_id(tenant.id) is not None
        assert store.verify_password(by_name, "pw")

    def test_duplicate_username(self, store: TenantStoreProtocol) -> None:
        store.create_tenant("alice", "pw")
        with pytest.raises(TenantExistsError):
            store.create_tenant("alice", "other")

    def test_invalid_username_rejected(self, store: TenantStoreProtocol) -> None:
        """Regular tenants must be creatable as session identifiers."""
        with pytest.raises(InvalidSessionIdError):
            store.create_tenant("not valid", "pw")

    def test_list_and_delete(self, store: TenantStoreProtocol) -> None:
        alice = store.create_tenant("alice", "pw")
        store.create_tenant("bob", "pw")

        assert [t.username for t in store.list_tenants()] == ["alice", "bob"]
        assert store.delete_tenant(alice.id)
        assert not store.delete_tenant(alice.id)
        assert store.get_by_username("alice") is None

    def test_update_callback_url(self, store: TenantStoreProtocol) -> None:
        tenant = store.create_tenant("alice", "pw")

        updated = store.update_callback_url(tenant.id, "https://x/hook")

        assert updated.callback_url == "https://x/hook"
        fetched = store.get_by_id(tenant.id)
        assert fetched is not None
        assert fetched.callback_url == "https://x/hook"

    def test_update_missing_tenant(self, store: TenantStoreProtocol) -> None:
        with pytest.raises(TenantNotFoundError):
            store.update_callback_url(999, "https://x/hook")

    def test_admin_cannot_configure_webhooks(self, store: TenantStoreProtocol) -> None:
        admin = store.create_tenant("root", "pw", is_admin=True)

        with pytest.raises(AdminTenantError):
            store.update_callback_url(admin.id, "https://x/hook")
        with pytest.raises(AdminTenantError):
            store.update_webhook_auth(admin.id, oauth_update())

    def test_update_webhook_auth_applies_fields(
        self, store: TenantStoreProtocol
    ) -> None:
        tenant = store.create_tenant("alice", "pw")

        store.update_webhook_auth(tenant.id, oauth_update(webhook_oauth_format="json"))

        fetched = store.get_by_id(tenant.id)
        assert fetched is not None
        assert fetched.webhook_auth_type == WebhookAuthType.OAUTH
        assert fetched.webhook_auth_username == "client-id"
        assert fetched.webhook_auth_token_url == "https://auth.example.com/token"
        assert fetched.webhook_oauth_format == OAuthFormat.JSON

    def test_switching_to_bearer_clears_cached_token(
        self, store: TenantStoreProtocol
    ) -> None:
        """Changing the auth type drops the previously cached OAuth token."""
        tenant = store.create_tenant("alice", "pw")
        current = store.update_webhook_auth(tenant.id, oauth_update())
        assert store.save_oauth_token(
            tenant.id, "oauth-token", EXPIRY, current.auth_fingerprint()
        )

        store.update_webhook_auth(
            tenant.id, WebhookAuthUpdate(webhook_auth_type=WebhookAuthType.BEARER)
        )

        fetched = store.get_by_id(tenant.id)
        assert fetched is not None
        assert fetched.webhook_auth_type == WebhookAuthType.BEARER
        assert fetched.webhook_auth_token is None
        assert fetched.webhook_auth_token_expiration is None

    def test_any_auth_update_clears_token(self, store: TenantStoreProtocol) -> None:
        """Even re-saving identical settings invalidates the cache."""
        tenant = store.create_tenant("alice", "pw")
        current = store.update_webhook_auth(tenant.id, oauth_update())
        store.save_oauth_token(tenant.id, "oauth-token", EXPIRY, current.auth_fingerprint())

        store.update_webhook_auth(tenant.id, oauth_update())

        fetched = store.get_by_id(tenant.id)
        assert fetched is not None
        assert fetched.webhook_auth_token is None

    def test_static_bearer_token_written_after_reset(
        self, store: TenantStoreProtocol
    ) -> None:
        tenant = store.create_tenant("alice", "pw")

        store.update_webhook_auth(
            tenant.id,
            WebhookAuthUpdate(webhook_auth_type="bearer", webhook_auth_token="static"),
        )

        fetched = store.get_by_id(tenant.id)
        assert fetched is not None
        assert fetched.webhook_auth_token == "static"
        assert fetched.webhook_auth_token_expiration is None

    def test_unknown_auth_type_normalizes_to_none(
        self, store: TenantStoreProtocol
    ) -> None:
        tenant = store.create_tenant("alice", "pw")

        store.update_webhook_auth(
            tenant.id, WebhookAuthUpdate(webhook_auth_type="digest")
        )

        fetched = store.get_by_id(tenant.id)
        assert fetched is not None
        assert fetched.webhook_auth_type == WebhookAuthType.NONE

    def test_save_oauth_token_round_trip(self, store: TenantStoreProtocol) -> None:
        tenant = store.create_tenant("alice", "pw")
        current = store.update_webhook_auth(tenant.id, oauth_update())

        assert store.save_oauth_token(
            tenant.id, "tok", EXPIRY, current.auth_fingerprint()
        )

        fetched = store.get_by_id(tenant.id)
        assert fetched is not None
        assert fetched.webhook_auth_token == "tok"
        assert fetched.webhook_auth_token_expiration == EXPIRY

    def test_save_oauth_token_rejected_after_reconfiguration(
        self, store: TenantStoreProtocol
    ) -> None:
        """A token fetched under stale credentials is discarded."""
        tenant = store.create_tenant("alice", "pw")
        before = store.update_webhook_auth(tenant.id, oauth_update())
        store.update_webhook_auth(
            tenant.id, oauth_update(webhook_auth_password="rotated-secret")
        )

        saved = store.save_oauth_token(
            tenant.id, "stale", EXPIRY + timedelta(hours=1), before.auth_fingerprint()
        )

        assert not saved
        fetched = store.get_by_id(tenant.id)
        assert fetched is not None
        assert fetched.webhook_auth_token is None

    def test_returned_tenants_are_copies(self) -> None:
        """Mutating a returned record does not alter the memory store."""
        store = MemoryTenantStore()
        tenant = store.create_tenant("alice", "pw")

        tenant.callback_url = "https://mutated"

        fetched = store.get_by_id(tenant.id)
        assert fetched is not None
        assert fetched.callback_url is None


class TestSQLiteTenantStore:
    """SQLite specifics."""

    def test_persists_across_instances(self, tmp_path: Path) -> None:
        db_path = tmp_path / "tenants.db"
        SQLiteTenantStore(db_path).create_tenant("alice", "pw")

        reopened = SQLiteTenantStore(db_path)

        tenant = reopened.get_by_username("alice")
        assert tenant is not None
        assert reopened.verify_password(tenant, "pw")

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "dir" / "tenants.db"

        SQLiteTenantStore(db_path)

        assert db_path.exists()


class TestTenantResolver:
    """Tests for session-to-tenant resolution."""

    def test_resolves_regular_tenant(self, tenant_store: MemoryTenantStore) -> None:
        tenant_store.create_tenant("alice", "pw")

        resolved = TenantResolver(tenant_store).resolve_by_session_id("alice")

        assert resolved is not None
        assert resolved.username == "alice"

    def test_unknown_session(self, tenant_store: MemoryTenantStore) -> None:
        assert TenantResolver(tenant_store).resolve_by_session_id("ghost") is None

    def test_admin_never_resolved(self, tenant_store: MemoryTenantStore) -> None:
        """Admins own no session even if one shares their name."""
        tenant_store.create_tenant("root", "pw", is_admin=True)

        assert TenantResolver(tenant_store).resolve_by_session_id("root") is None

    def test_exact_match_only(self, tenant_store: MemoryTenantStore) -> None:
        tenant_store.create_tenant("alice", "pw")

        assert TenantResolver(tenant_store).resolve_by_session_id("Alice") is None

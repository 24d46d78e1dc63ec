"""Tenant storage and session-to-tenant resolution.

A regular tenant's session identifier IS its username; no separate
session-ownership table exists. The invariant is enforced when tenants are
created (see ``validate_session_id``) so resolution by exact username match
can never silently miss.

Backends:
    - MemoryTenantStore: non-persistent, for development and tests
    - SQLiteTenantStore: default persistent store (one ``tenants`` table)
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import bcrypt

from wahook.errors import (
    AdminTenantError,
    InvalidSessionIdError,
    TenantExistsError,
    TenantNotFoundError,
)
from wahook.models import (
    AuthFingerprint,
    OAuthFormat,
    Tenant,
    WebhookAuthType,
    WebhookAuthUpdate,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

__all__ = [
    "MemoryTenantStore",
    "SQLiteTenantStore",
    "TenantResolver",
    "TenantStoreProtocol",
    "hash_password",
    "validate_session_id",
    "verify_password",
]

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]{1,64}$")


def validate_session_id(username: str) -> str:
    """Ensure a username can double as a protocol session identifier.

    Raises:
        InvalidSessionIdError: If the username contains characters outside
            ``[A-Za-z0-9_.-]`` or is not 1-64 characters long.
    """
    if not SESSION_ID_PATTERN.match(username or ""):
        raise InvalidSessionIdError(
            f"Username '{username}' is not a valid session identifier"
        )
    return username


def hash_password(password: str) -> str:
    """Hash a password with bcrypt (72-byte input limit applies)."""
    return bcrypt.hashpw(password.encode("utf-8")[:72], bcrypt.gensalt()).decode(
        "utf-8"
    )


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        return False


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def apply_auth_update(tenant: Tenant, update: WebhookAuthUpdate) -> Tenant:
    """Return a copy of tenant with the auth update applied.

    The cached token and its expiration are always cleared first, so a token
    obtained under the previous configuration can never survive the change.
    """
    if tenant.is_admin:
        raise AdminTenantError()

    changes: dict[str, Any] = {
        "webhook_auth_type": WebhookAuthType.parse(update.webhook_auth_type),
        "webhook_auth_token": None,
        "webhook_auth_token_expiration": None,
    }
    provided = update.model_dump(exclude_unset=True)
    for field in (
        "webhook_auth_username",
        "webhook_auth_password",
        "webhook_auth_token_url",
        "webhook_auth_token",
    ):
        if field in provided:
            changes[field] = provided[field]
    if "webhook_oauth_format" in provided:
        changes["webhook_oauth_format"] = OAuthFormat.parse(
            provided["webhook_oauth_format"]
        )

    return tenant.model_copy(update=changes)


class TenantStoreProtocol(ABC):
    """Protocol for tenant storage backends."""

    @abstractmethod
    def create_tenant(
        self, username: str, password: str, is_admin: bool = False
    ) -> Tenant:
        """Create a tenant; regular tenants must have a valid session id."""
        ...

    @abstractmethod
    def get_by_username(self, username: str) -> Tenant | None:
        ...

    @abstractmethod
    def get_by_id(self, tenant_id: int) -> Tenant | None:
        ...

    @abstractmethod
    def list_tenants(self) -> list[Tenant]:
        ...

    @abstractmethod
    def delete_tenant(self, tenant_id: int) -> bool:
        """Delete a tenant. Returns True if it existed."""
        ...

    @abstractmethod
    def update_callback_url(self, tenant_id: int, callback_url: str | None) -> Tenant:
        ...

    @abstractmethod
    def update_webhook_auth(self, tenant_id: int, update: WebhookAuthUpdate) -> Tenant:
        """Apply an auth configuration change, invalidating any cached token."""
        ...

    @abstractmethod
    def save_oauth_token(
        self,
        tenant_id: int,
        token: str,
        expiration: datetime,
        fingerprint: AuthFingerprint,
    ) -> bool:
        """Write a fetched token back onto the tenant.

        The write only happens if the tenant's auth configuration still
        matches ``fingerprint``; returns False when it was discarded.
        """
        ...

    def verify_password(self, tenant: Tenant, password: str) -> bool:
        return verify_password(password, tenant.password_hash)


class MemoryTenantStore(TenantStoreProtocol):
    """In-memory tenant storage (non-persistent, for development/testing)."""

    def __init__(self) -> None:
        self._tenants: dict[int, Tenant] = {}
        self._by_username: dict[str, int] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def create_tenant(
        self, username: str, password: str, is_admin: bool = False
    ) -> Tenant:
        if not is_admin:
            validate_session_id(username)

        with self._lock:
            if username in self._by_username:
                raise TenantExistsError()

            tenant = Tenant(
                id=self._next_id,
                username=username,
                password_hash=hash_password(password),
                is_admin=is_admin,
                created_at=now_utc(),
            )
            self._next_id += 1
            self._tenants[tenant.id] = tenant
            self._by_username[username] = tenant.id

        logger.info(f"Created tenant '{username}' (id={tenant.id})")
        return tenant.model_copy()

    def get_by_username(self, username: str) -> Tenant | None:
        tenant_id = self._by_username.get(username)
        if tenant_id is None:
            return None
        return self.get_by_id(tenant_id)

    def get_by_id(self, tenant_id: int) -> Tenant | None:
        tenant = self._tenants.get(tenant_id)
        return tenant.model_copy() if tenant else None

    def list_tenants(self) -> list[Tenant]:
        return [tenant.model_copy() for tenant in self._tenants.values()]

    def delete_tenant(self, tenant_id: int) -> bool:
        with self._lock:
            tenant = self._tenants.pop(tenant_id, None)
            if tenant is None:
                return False
            self._by_username.pop(tenant.username, None)
        return True

    def _require(self, tenant_id: int) -> Tenant:
        tenant = self._tenants.get(tenant_id)
        if tenant is None:
            raise TenantNotFoundError()
        return tenant

    def update_callback_url(self, tenant_id: int, callback_url: str | None) -> Tenant:
        with self._lock:
            tenant = self._require(tenant_id)
            if tenant.is_admin:
                raise AdminTenantError()
            tenant = tenant.model_copy(update={"callback_url": callback_url})
            self._tenants[tenant_id] = tenant
        return tenant.model_copy()

    def update_webhook_auth(self, tenant_id: int, update: WebhookAuthUpdate) -> Tenant:
        with self._lock:
            tenant = apply_auth_update(self._require(tenant_id), update)
            self._tenants[tenant_id] = tenant
        logger.info(
            f"Webhook auth for tenant '{tenant.username}' set to "
            f"{tenant.webhook_auth_type.value}; cached token cleared"
        )
        return tenant.model_copy()

    def save_oauth_token(
        self,
        tenant_id: int,
        token: str,
        expiration: datetime,
        fingerprint: AuthFingerprint,
    ) -> bool:
        with self._lock:
            tenant = self._tenants.get(tenant_id)
            if tenant is None or tenant.auth_fingerprint() != fingerprint:
                return False
            self._tenants[tenant_id] = tenant.model_copy(
                update={
                    "webhook_auth_token": token,
                    "webhook_auth_token_expiration": expiration,
                }
            )
        return True


class SQLiteTenantStore(TenantStoreProtocol):
    """SQLite persistence for tenant records.

    Example:
        >>> store = SQLiteTenantStore("~/.wahook/tenants.db")
        >>> alice = store.create_tenant("alice", "s3cret")
        >>> store.update_callback_url(alice.id, "https://example.com/hook")
    """

    COLUMNS = (
        "id",
        "username",
        "password",
        "is_admin",
        "callback_url",
        "webhook_auth_type",
        "webhook_auth_username",
        "webhook_auth_password",
        "webhook_auth_token_url",
        "webhook_auth_token",
        "webhook_auth_token_expiration",
        "webhook_oauth_format",
        "created_at",
    )

    def __init__(self, db_path: Path | str = "wahook.db"):
        """Initialize database connection and schema.

        Args:
            db_path: Path to SQLite database file

        Raises:
            sqlite3.Error: If the schema cannot be created
        """
        self.db_path = Path(db_path).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection that commits on success and always closes."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS tenants (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT UNIQUE NOT NULL,
                    password TEXT NOT NULL,
                    is_admin INTEGER DEFAULT 0,
                    callback_url TEXT,
                    webhook_auth_type TEXT DEFAULT 'none',
                    webhook_auth_username TEXT,
                    webhook_auth_password TEXT,
                    webhook_auth_token_url TEXT,
                    webhook_auth_token TEXT,
                    webhook_auth_token_expiration TEXT,
                    webhook_oauth_format TEXT DEFAULT 'oauth2',
                    created_at TEXT NOT NULL
                );
            """)

    @staticmethod
    def _row_to_tenant(row: sqlite3.Row) -> Tenant:
        expiration = row["webhook_auth_token_expiration"]
        created_at = row["created_at"]
        return Tenant(
            id=row["id"],
            username=row["username"],
            password_hash=row["password"],
            is_admin=bool(row["is_admin"]),
            callback_url=row["callback_url"],
            webhook_auth_type=WebhookAuthType.parse(row["webhook_auth_type"]),
            webhook_auth_username=row["webhook_auth_username"],
            webhook_auth_password=row["webhook_auth_password"],
            webhook_auth_token_url=row["webhook_auth_token_url"],
            webhook_auth_token=row["webhook_auth_token"],
            webhook_auth_token_expiration=(
                datetime.fromisoformat(expiration) if expiration else None
            ),
            webhook_oauth_format=OAuthFormat.parse(row["webhook_oauth_format"]),
            created_at=datetime.fromisoformat(created_at) if created_at else None,
        )

    def _fetch_one(self, where: str, params: tuple[Any, ...]) -> Tenant | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {', '.join(self.COLUMNS)} FROM tenants WHERE {where}", params
            ).fetchone()
        return self._row_to_tenant(row) if row else None

    def create_tenant(
        self, username: str, password: str, is_admin: bool = False
    ) -> Tenant:
        if not is_admin:
            validate_session_id(username)

        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "INSERT INTO tenants (username, password, is_admin, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    (
                        username,
                        hash_password(password),
                        int(is_admin),
                        now_utc().isoformat(),
                    ),
                )
                tenant_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise TenantExistsError() from e

        logger.info(f"Created tenant '{username}' (id={tenant_id})")
        tenant = self.get_by_id(int(tenant_id or 0))
        if tenant is None:
            raise TenantNotFoundError()
        return tenant

    def get_by_username(self, username: str) -> Tenant | None:
        return self._fetch_one("username = ?", (username,))

    def get_by_id(self, tenant_id: int) -> Tenant | None:
        return self._fetch_one("id = ?", (tenant_id,))

    def list_tenants(self) -> list[Tenant]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {', '.join(self.COLUMNS)} FROM tenants ORDER BY id"
            ).fetchall()
        return [self._row_to_tenant(row) for row in rows]

    def delete_tenant(self, tenant_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM tenants WHERE id = ?", (tenant_id,))
            return cursor.rowcount > 0

    def _require(self, tenant_id: int) -> Tenant:
        tenant = self.get_by_id(tenant_id)
        if tenant is None:
            raise TenantNotFoundError()
        return tenant

    def update_callback_url(self, tenant_id: int, callback_url: str | None) -> Tenant:
        tenant = self._require(tenant_id)
        if tenant.is_admin:
            raise AdminTenantError()
        with self._connect() as conn:
            conn.execute(
                "UPDATE tenants SET callback_url = ? WHERE id = ?",
                (callback_url, tenant_id),
            )
        return self._require(tenant_id)

    def update_webhook_auth(self, tenant_id: int, update: WebhookAuthUpdate) -> Tenant:
        tenant = apply_auth_update(self._require(tenant_id), update)
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE tenants SET
                    webhook_auth_type = ?,
                    webhook_auth_username = ?,
                    webhook_auth_password = ?,
                    webhook_auth_token_url = ?,
                    webhook_auth_token = ?,
                    webhook_auth_token_expiration = NULL,
                    webhook_oauth_format = ?
                WHERE id = ?
                """,
                (
                    tenant.webhook_auth_type.value,
                    tenant.webhook_auth_username,
                    tenant.webhook_auth_password,
                    tenant.webhook_auth_token_url,
                    tenant.webhook_auth_token,
                    tenant.webhook_oauth_format.value,
                    tenant_id,
                ),
            )
        logger.info(
            f"Webhook auth for tenant '{tenant.username}' set to "
            f"{tenant.webhook_auth_type.value}; cached token cleared"
        )
        return tenant

    def save_oauth_token(
        self,
        tenant_id: int,
        token: str,
        expiration: datetime,
        fingerprint: AuthFingerprint,
    ) -> bool:
        auth_type, username, password, token_url, oauth_format = fingerprint
        # IS gives NULL-safe equality in SQLite
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE tenants SET
                    webhook_auth_token = ?,
                    webhook_auth_token_expiration = ?
                WHERE id = ?
                    AND webhook_auth_type IS ?
                    AND webhook_auth_username IS ?
                    AND webhook_auth_password IS ?
                    AND webhook_auth_token_url IS ?
                    AND webhook_oauth_format IS ?
                """,
                (
                    token,
                    expiration.isoformat(),
                    tenant_id,
                    auth_type,
                    username,
                    password,
                    token_url,
                    oauth_format,
                ),
            )
            return cursor.rowcount > 0


class TenantResolver:
    """Maps a protocol session identifier back to the owning tenant."""

    def __init__(self, store: TenantStoreProtocol) -> None:
        self._store = store

    def resolve_by_session_id(self, session_id: str) -> Tenant | None:
        """Return the regular tenant owning ``session_id``, or None.

        Absence is not an error; callers treat it as "no destination".
        Admin tenants hold no session and are never returned.
        """
        tenant = self._store.get_by_username(session_id)
        if tenant is None or tenant.is_admin:
            return None
        return tenant

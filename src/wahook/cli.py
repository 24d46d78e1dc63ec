"""CLI entry point for the webhook gateway."""

from __future__ import annotations

import importlib
import logging
import sys
from typing import TYPE_CHECKING, Any

import click

from wahook.config import GatewayConfig
from wahook.errors import GatewayError
from wahook.models import OAuthFormat, WebhookAuthType, WebhookAuthUpdate

if TYPE_CHECKING:
    from wahook.protocol import WhatsAppClient
    from wahook.tenants import SQLiteTenantStore

logger = logging.getLogger(__name__)


def load_client(path: str) -> WhatsAppClient:
    """Import ``module:factory`` and call the factory to build the client."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise click.BadParameter(
            f"expected 'module:factory', got '{path}'", param_hint="--client"
        )

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise click.BadParameter(
            f"cannot import '{module_name}': {e}", param_hint="--client"
        ) from e

    factory = getattr(module, attr, None)
    if factory is None:
        raise click.BadParameter(
            f"'{module_name}' has no attribute '{attr}'", param_hint="--client"
        )

    client: WhatsAppClient = factory() if callable(factory) else factory
    return client


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if debug:
        logging.getLogger("wahook").setLevel(logging.DEBUG)


def open_store(db_path: str | None) -> SQLiteTenantStore:
    from wahook.tenants import SQLiteTenantStore

    return SQLiteTenantStore(db_path or GatewayConfig().db_path)


@click.group()
def cli() -> None:
    """wahook - multi-tenant WhatsApp webhook gateway."""
    pass


@cli.command()
@click.option(
    "--client",
    "client_path",
    required=True,
    help="Protocol client factory as module:callable",
)
@click.option("--host", help="Bind host (default: WAHOOK_HOST or 0.0.0.0)")
@click.option("--port", type=int, help="Bind port (default: WAHOOK_PORT or 5001)")
@click.option("--debug", is_flag=True, help="Enable debug logging")
def serve(client_path: str, host: str | None, port: int | None, debug: bool) -> None:
    """Run the gateway HTTP server."""
    import uvicorn

    from wahook.app import create_app

    configure_logging(debug)

    overrides: dict[str, Any] = {}
    if host is not None:
        overrides["host"] = host
    if port is not None:
        overrides["port"] = port
    config = GatewayConfig(**overrides)

    app = create_app(config, load_client(client_path))
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level="debug" if debug else "info",
    )


@cli.group()
def tenant() -> None:
    """Manage tenants."""
    pass


db_path_option = click.option(
    "--db-path",
    type=click.Path(dir_okay=False),
    help="Path to tenant database (default: WAHOOK_DB_PATH or wahook.db)",
)


@tenant.command("create")
@click.argument("username")
@click.password_option()
@click.option("--admin", is_flag=True, help="Create an admin account")
@click.option("--callback-url", help="Webhook callback URL")
@db_path_option
def create_tenant(
    username: str,
    password: str,
    admin: bool,
    callback_url: str | None,
    db_path: str | None,
) -> None:
    """Create a tenant; its username is also its session identifier."""
    store = open_store(db_path)
    try:
        created = store.create_tenant(username, password, is_admin=admin)
        if callback_url:
            store.update_callback_url(created.id, callback_url)
    except GatewayError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    click.echo(f"Created tenant '{created.username}' (id={created.id})")


@tenant.command("list")
@db_path_option
def list_tenants(db_path: str | None) -> None:
    """List tenants and their webhook configuration."""
    tenants = open_store(db_path).list_tenants()
    if not tenants:
        click.echo("No tenants found.")
        return

    for entry in tenants:
        role = "admin" if entry.is_admin else "tenant"
        click.echo(f"{entry.id}: {entry.username} [{role}]")
        click.echo(f"  Callback: {entry.callback_url or '-'}")
        click.echo(f"  Auth:     {entry.webhook_auth_type.value}")


@tenant.command("set-callback")
@click.argument("username")
@click.argument("callback_url", required=False)
@db_path_option
def set_callback(username: str, callback_url: str | None, db_path: str | None) -> None:
    """Set (or clear, when omitted) a tenant's callback URL."""
    store = open_store(db_path)
    found = store.get_by_username(username)
    if found is None:
        click.echo(f"Error: tenant '{username}' not found", err=True)
        sys.exit(1)

    try:
        store.update_callback_url(found.id, callback_url or None)
    except GatewayError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    click.echo(f"Callback for '{username}': {callback_url or '-'}")


@tenant.command("set-auth")
@click.argument("username")
@click.argument(
    "auth_type", type=click.Choice([t.value for t in WebhookAuthType])
)
@click.option("--auth-username", help="Basic username or OAuth client ID")
@click.option("--auth-password", help="Basic password or OAuth client secret")
@click.option("--token-url", help="OAuth token endpoint")
@click.option("--token", help="Static bearer token")
@click.option(
    "--oauth-format",
    type=click.Choice([f.value for f in OAuthFormat]),
    help="Token request format (default: oauth2)",
)
@db_path_option
def set_auth(
    username: str,
    auth_type: str,
    auth_username: str | None,
    auth_password: str | None,
    token_url: str | None,
    token: str | None,
    oauth_format: str | None,
    db_path: str | None,
) -> None:
    """Configure how a tenant's webhooks authenticate."""
    store = open_store(db_path)
    found = store.get_by_username(username)
    if found is None:
        click.echo(f"Error: tenant '{username}' not found", err=True)
        sys.exit(1)

    fields: dict[str, Any] = {"webhook_auth_type": auth_type}
    for name, value in (
        ("webhook_auth_username", auth_username),
        ("webhook_auth_password", auth_password),
        ("webhook_auth_token_url", token_url),
        ("webhook_auth_token", token),
        ("webhook_oauth_format", oauth_format),
    ):
        if value is not None:
            fields[name] = value

    try:
        store.update_webhook_auth(found.id, WebhookAuthUpdate(**fields))
    except GatewayError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    click.echo(f"Webhook auth for '{username}' set to {auth_type}")


@tenant.command("delete")
@click.argument("username")
@db_path_option
def delete_tenant(username: str, db_path: str | None) -> None:
    store = open_store(db_path)
    found = store.get_by_username(username)
    if found is None or not store.delete_tenant(found.id):
        click.echo(f"Error: tenant '{username}' not found", err=True)
        sys.exit(1)

    click.echo(f"Deleted tenant '{username}'")


def main() -> None:
    """Main entry point for the wahook CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()

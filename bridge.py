#!/usr/bin/env python3
"""
Bridgeport CLI

Commands for running and poking at the integration runtime locally.

Usage:
    bridge providers
    bridge capabilities hubspot
    bridge webhook sign hubspot --body '{"type": "contact.creation"}'
    bridge webhook verify hubspot --body '...' --signature abc123
    bridge sync hubspot --user-id abc123 --since 2d
    bridge status hubspot --user-id abc123
    bridge serve --port 8000 --tunnel
"""

import asyncio
import os
import re
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Optional

import typer
from dateutil import parser as date_parser
from rich.console import Console
from rich.table import Table

from bridgeport_connector import (
    ConnectorRegistry,
    IntegrationError,
    SignatureScheme,
    WebhookVerifier,
    __version__,
)
from bridgeport_connector.config import (
    RuntimeSettings,
    build_governor,
    build_vault,
    configure_logging,
    connector_config_from_env,
    env_prefix,
    load_environment,
)
from bridgeport_connector.providers import REFERENCE_SPECS, HttpConnector, ProviderSpec

console = Console()

app = typer.Typer(
    name="bridge",
    help="Bridgeport CLI - SaaS integration runtime tool",
    no_args_is_help=True,
)


def version_callback(value: bool):
    """Show version and exit."""
    if value:
        console.print(f"[bold cyan]Bridgeport CLI[/bold cyan] version [green]{__version__}[/green]")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Verbose logging"),
):
    """Bridgeport CLI - SaaS integration runtime tool."""
    load_environment()
    configure_logging("DEBUG" if verbose else None)


# ============================================================================
# Helper Functions
# ============================================================================

SPECS: dict[str, ProviderSpec] = {spec.name: spec for spec in REFERENCE_SPECS}

SINCE_PATTERN = re.compile(r"^(\d+)([dhm])$")
SINCE_UNITS = {"d": "days", "h": "hours", "m": "minutes"}


def _spec(provider: str) -> ProviderSpec:
    spec = SPECS.get(provider)
    if spec is None:
        console.print(f"[red]❌ Unknown provider: {provider}[/red]")
        console.print(f"   Available: [cyan]{', '.join(sorted(SPECS))}[/cyan]")
        raise typer.Exit(1)
    return spec


def _parse_since(value: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """'2d', '12h', '30m' relative to now, or an ISO8601 timestamp."""
    if not value:
        return None
    now = now or datetime.now(UTC)
    match = SINCE_PATTERN.match(value.strip())
    if match:
        amount, unit = match.groups()
        return now - timedelta(**{SINCE_UNITS[unit]: int(amount)})
    try:
        parsed = date_parser.isoparse(value)
    except ValueError as e:
        raise typer.BadParameter(f"Expected 2d/12h/30m or an ISO8601 timestamp, got {value!r}") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _read_body(body: Optional[str], file: Optional[Path]) -> bytes:
    if file is not None:
        return file.read_bytes()
    if body is not None:
        return body.encode()
    console.print("[red]❌ Provide --body or --file[/red]")
    raise typer.Exit(1)


def _webhook_secret(provider: str, secret: Optional[str]) -> str:
    secret = secret or os.getenv(f"{env_prefix(provider)}_WEBHOOK_SECRET")
    if not secret:
        console.print(f"[red]❌ No webhook secret: pass --secret or set {env_prefix(provider)}_WEBHOOK_SECRET[/red]")
        raise typer.Exit(1)
    return secret


async def _session(
    provider: str,
    user_id: str,
    access_token: Optional[str],
    api_key: Optional[str],
    username: Optional[str],
    password: Optional[str],
) -> HttpConnector:
    """Connector for one user, authenticated from the given credentials."""
    settings = RuntimeSettings.from_env()
    registry = ConnectorRegistry(vault=build_vault(settings), governor=build_governor(settings))
    connector = registry.build(provider, user_id)

    credentials = {
        "access_token": access_token,
        "api_key": api_key,
        "username": username,
        "password": password,
    }
    given = {key: value for key, value in credentials.items() if value}
    config = connector_config_from_env(provider, user_id).model_copy(update=given)
    try:
        await connector.authenticate(config)
    except Exception:
        await connector.close()
        raise
    return connector


def _fail(e: IntegrationError) -> None:
    console.print(f"[red]❌ {type(e).__name__}: {e.message}[/red]")
    raise typer.Exit(1)


# ============================================================================
# Provider information
# ============================================================================


@app.command()
def providers():
    """List the registered providers."""
    table = Table(title="Providers")
    table.add_column("Provider", style="cyan")
    table.add_column("Name")
    table.add_column("Auth")
    table.add_column("Streams")
    table.add_column("Signature header", style="dim")

    for spec in SPECS.values():
        table.add_row(
            spec.name,
            spec.display_name,
            spec.auth_style.value,
            ", ".join(stream.name for stream in spec.streams),
            spec.signature_header,
        )

    console.print(table)


@app.command()
def capabilities(provider: str = typer.Argument(..., help="Provider name")):
    """Show what a provider connector can do and the scopes it needs."""
    spec = _spec(provider)

    table = Table(title=f"{spec.display_name} capabilities")
    table.add_column("Capability", style="cyan")
    table.add_column("Description")
    table.add_column("Scopes", style="dim")
    for capability in spec.capabilities:
        table.add_row(capability.name, capability.description, " ".join(capability.required_scopes) or "-")

    console.print(table)


# ============================================================================
# Webhooks
# ============================================================================

webhook_app = typer.Typer(help="Webhook signing and verification")
app.add_typer(webhook_app, name="webhook")


@webhook_app.command("sign")
def webhook_sign(
    provider: str = typer.Argument(..., help="Provider name"),
    body: Optional[str] = typer.Option(None, "--body", "-b", help="Raw body to sign"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="File holding the raw body"),
    secret: Optional[str] = typer.Option(None, "--secret", "-s", help="Webhook secret (defaults to env)"),
    timestamp: Optional[int] = typer.Option(None, "--timestamp", "-t", help="Unix timestamp for timestamped schemes (defaults to now)"),
):
    """
    Print the signature header(s) a provider would send for a body.

    Example:
        bridge webhook sign hubspot --body '{"type": "contact.creation"}'
    """
    spec = _spec(provider)
    raw = _read_body(body, file)
    verifier = WebhookVerifier(_webhook_secret(provider, secret))

    if spec.signature_scheme == SignatureScheme.BODY:
        signature = verifier.sign(raw, encoding=spec.signature_encoding)
        typer.echo(f"{spec.signature_header}: {spec.signature_prefix or ''}{signature}")
        return

    timestamp = timestamp or int(datetime.now(UTC).timestamp())
    signature = verifier.sign(raw, spec.signature_scheme, timestamp)
    if spec.signature_scheme == SignatureScheme.TIMESTAMPED:
        typer.echo(f"{spec.timestamp_header}: {timestamp}")
        typer.echo(f"{spec.signature_header}: {spec.signature_prefix or ''}{signature}")
    else:
        typer.echo(f"{spec.signature_header}: {signature}")


@webhook_app.command("verify")
def webhook_verify(
    provider: str = typer.Argument(..., help="Provider name"),
    signature: str = typer.Option(..., "--signature", help="Signature header value"),
    body: Optional[str] = typer.Option(None, "--body", "-b", help="Raw body"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="File holding the raw body"),
    secret: Optional[str] = typer.Option(None, "--secret", "-s", help="Webhook secret (defaults to env)"),
    timestamp: Optional[str] = typer.Option(None, "--timestamp", "-t", help="Timestamp header value, for timestamped schemes"),
):
    """Check a signature against a body. Exits 1 when it does not match."""
    spec = _spec(provider)
    raw = _read_body(body, file)
    verifier = WebhookVerifier(_webhook_secret(provider, secret))

    if verifier.verify(
        raw,
        signature,
        scheme=spec.signature_scheme,
        timestamp=timestamp,
        encoding=spec.signature_encoding,
        prefix=spec.signature_prefix,
        provider=provider,
    ):
        console.print("[green]✅ Signature valid[/green]")
        return

    console.print("[red]❌ Signature mismatch[/red]")
    raise typer.Exit(1)


# ============================================================================
# Sync and status
# ============================================================================


@app.command()
def sync(
    provider: str = typer.Argument(..., help="Provider name"),
    user_id: str = typer.Option(..., "--user-id", "-u", help="User ID"),
    since: Optional[str] = typer.Option(None, "--since", help="Only records modified after (2d, 12h, ISO8601)"),
    access_token: Optional[str] = typer.Option(None, "--access-token", envvar="BRIDGE_ACCESS_TOKEN"),
    api_key: Optional[str] = typer.Option(None, "--api-key", envvar="BRIDGE_API_KEY"),
    username: Optional[str] = typer.Option(None, "--username", envvar="BRIDGE_USERNAME"),
    password: Optional[str] = typer.Option(None, "--password", envvar="BRIDGE_PASSWORD"),
):
    """
    Run one sync pass for a user and print the result.

    Example:
        bridge sync hubspot --user-id abc123 --since 2d --access-token $TOKEN
    """
    _spec(provider)
    last_sync_time = _parse_since(since)

    async def run():
        connector = await _session(provider, user_id, access_token, api_key, username, password)
        async with connector:
            return await connector.sync(last_sync_time)

    console.print(f"🔄 Syncing [cyan]{provider}[/cyan] for user [cyan]{user_id}[/cyan]...")
    try:
        result = asyncio.run(run())
    except IntegrationError as e:
        _fail(e)

    table = Table(title=f"Sync {result.metadata.state.value}")
    table.add_column("Stream", style="cyan")
    table.add_column("Fetched", justify="right")
    table.add_column("Processed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Error", style="red")
    for stream in result.metadata.streams:
        table.add_row(
            stream.name,
            str(stream.items_fetched),
            str(stream.items_processed),
            str(stream.items_skipped),
            stream.error or "",
        )
    console.print(table)

    for error in result.errors:
        console.print(f"   [yellow]• {error}[/yellow]")

    if not result.success:
        raise typer.Exit(1)


@app.command()
def status(
    provider: str = typer.Argument(..., help="Provider name"),
    user_id: str = typer.Option(..., "--user-id", "-u", help="User ID"),
    access_token: Optional[str] = typer.Option(None, "--access-token", envvar="BRIDGE_ACCESS_TOKEN"),
    api_key: Optional[str] = typer.Option(None, "--api-key", envvar="BRIDGE_API_KEY"),
    username: Optional[str] = typer.Option(None, "--username", envvar="BRIDGE_USERNAME"),
    password: Optional[str] = typer.Option(None, "--password", envvar="BRIDGE_PASSWORD"),
):
    """Check a provider connection for a user."""
    _spec(provider)

    async def run():
        connector = await _session(provider, user_id, access_token, api_key, username, password)
        async with connector:
            return await connector.test_connection()

    try:
        connection = asyncio.run(run())
    except IntegrationError as e:
        _fail(e)

    if connection.is_connected:
        console.print(f"[green]✅ {provider} connected[/green]")
    else:
        console.print(f"[red]❌ {provider} not connected ({connection.failure.value}): {connection.error}[/red]")
    if connection.rate_limit_info:
        info = connection.rate_limit_info
        console.print(f"   Rate limit: [cyan]{info.remaining}/{info.limit}[/cyan] until {info.reset_time.isoformat()}")

    if not connection.is_connected:
        raise typer.Exit(1)


# ============================================================================
# Server
# ============================================================================


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to run on"),
    reload: bool = typer.Option(False, "--reload/--no-reload", help="Auto-reload on code changes"),
    tunnel: bool = typer.Option(False, "--tunnel/--no-tunnel", help="Expose the server through ngrok"),
):
    """
    Run the webhook and sync API server.

    With --tunnel the public ngrok URL is printed so providers can deliver
    webhooks to /v1/webhooks/{provider}.
    """
    import uvicorn

    console.print()
    console.print("[bold green]🚀 Starting Bridgeport[/bold green]")
    console.print("━" * 60)
    console.print(f"   Local:   [cyan]http://{host}:{port}[/cyan]")

    if tunnel:
        from pyngrok import ngrok

        public_url = ngrok.connect(port, "http").public_url
        console.print(f"   Public:  [cyan]{public_url}[/cyan]")
        for name in SPECS:
            console.print(f"   Webhook: [dim]{public_url}/v1/webhooks/{name}[/dim]")
    console.print()

    try:
        uvicorn.run("server.app:app", host=host, port=port, reload=reload)
    finally:
        if tunnel:
            ngrok.kill()


@app.command()
def version():
    """Show version information."""
    console.print("[bold]Bridgeport CLI[/bold]")
    console.print(f"Version: [cyan]{__version__}[/cyan]")


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    app()

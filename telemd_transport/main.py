"""
Command line entry point for telemd-transport.

Operator tooling for checking configuration, inspecting envelopes and making
one-off encrypted calls or meeting handshakes against a backend.
"""

import asyncio
import json
import sys
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from telemd_transport.core.config import (
    configuration_summary,
    get_settings,
    validate_required_settings,
)
from telemd_transport.core.exceptions import (
    ConfigurationError,
    SignalingError,
    TeleMDError,
    TransportError,
    ValidationError,
)
from telemd_transport.core.logging import set_correlation_id, setup_logging
from telemd_transport.core.models import SessionContext
from telemd_transport.crypto.envelope import EnvelopeCipher
from telemd_transport.data.api_client import EncryptedApiClient
from telemd_transport.data.app_config_client import AppConfigClient
from telemd_transport.data.signaling_client import SignalingClient

console = Console()


def _session_options(func):
    """Shared --session-id/--user-id/--organization-id options."""
    func = click.option("--organization-id", help="Organization id for the session")(func)
    func = click.option("--user-id", help="User id for the session")(func)
    func = click.option("--session-id", help="Session id returned by login")(func)
    return func


def _build_session(
    session_id: Optional[str], user_id: Optional[str], organization_id: Optional[str]
) -> Optional[SessionContext]:
    if not any([session_id, user_id, organization_id]):
        return None
    return SessionContext(session_id=session_id, user_id=user_id, organization_id=organization_id)


def parse_params(pairs: Tuple[str, ...]) -> dict:
    """Turn ``key=value`` arguments into a params mapping."""
    params = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got '{pair}'", param_hint="--param")
        params[key] = value
    return params


def _cipher(key: Optional[str]) -> EnvelopeCipher:
    if key:
        return EnvelopeCipher(key)
    return EnvelopeCipher.from_config(get_settings().crypto)


def _fail(label: str, error: Exception, debug: bool = False) -> None:
    console.print(f"[red]{label}:[/red] {error}")
    details = getattr(error, "details", None)
    if debug and details:
        console.print_json(data=details)
    sys.exit(1)


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines instead of rich output")
@click.option("--correlation-id", help="Set correlation ID for request tracing")
@click.pass_context
def main(ctx, debug: bool, json_logs: bool, correlation_id: Optional[str]):
    """Encrypted transport and signaling tools for the TiaTeleMD backend."""
    ctx.ensure_object(dict)

    setup_logging(debug=debug, rich_output=not json_logs)

    if correlation_id:
        set_correlation_id(correlation_id)

    ctx.obj["debug"] = debug
    ctx.obj["correlation_id"] = correlation_id


@main.command()
@click.option(
    "--component",
    type=click.Choice(["api", "signaling", "minimal"]),
    default="api",
    help="Component whose required settings are checked",
)
def config(component: str):
    """Show configuration summary and missing settings."""
    table = Table(title="telemd Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for name, value in configuration_summary().items():
        table.add_row(name, value)
    console.print(table)

    missing = validate_required_settings(component)
    if missing:
        console.print(f"[red]Missing settings for {component}:[/red]")
        for item in missing:
            console.print(f"  • {item}")
        sys.exit(1)
    console.print(f"[green]✓ Configuration complete for {component}[/green]")


@main.command()
@click.argument("plaintext")
@click.option("--key", help="Encryption key (defaults to TELEMD_ENCRYPTION_KEY)")
@click.pass_context
def encrypt(ctx, plaintext: str, key: Optional[str]):
    """Encrypt PLAINTEXT into an envelope ciphertext."""
    try:
        click.echo(_cipher(key).encrypt(plaintext))
    except TeleMDError as e:
        _fail("Encryption Error", e, ctx.obj["debug"])


@main.command()
@click.argument("ciphertext")
@click.option("--key", help="Encryption key (defaults to TELEMD_ENCRYPTION_KEY)")
@click.pass_context
def decrypt(ctx, ciphertext: str, key: Optional[str]):
    """Decrypt an envelope CIPHERTEXT."""
    try:
        plaintext = _cipher(key).decrypt(ciphertext).decode("utf-8", errors="replace")
    except TeleMDError as e:
        _fail("Decryption Error", e, ctx.obj["debug"])
        return
    try:
        console.print_json(plaintext)
    except (json.JSONDecodeError, TypeError):
        click.echo(plaintext)


@main.command()
@click.argument("operation")
@click.option("-p", "--param", "params", multiple=True, help="Request parameter as key=value")
@click.option("--timeout", type=float, help="Total deadline in seconds")
@_session_options
@click.pass_context
def call(
    ctx,
    operation: str,
    params: Tuple[str, ...],
    timeout: Optional[float],
    session_id: Optional[str],
    user_id: Optional[str],
    organization_id: Optional[str],
):
    """Make one encrypted call to OPERATION and print the decrypted response."""
    session = _build_session(session_id, user_id, organization_id)
    request_params = parse_params(params)

    async def run():
        async with EncryptedApiClient() as client:
            return await client.call(operation, request_params, session=session, timeout=timeout)

    try:
        response = asyncio.run(run())
    except ConfigurationError as e:
        _fail("Configuration Error", e, ctx.obj["debug"])
        return
    except ValidationError as e:
        _fail("Invalid Request", e, ctx.obj["debug"])
        return
    except TransportError as e:
        _fail(f"Transport Error ({e.kind.value})", e, ctx.obj["debug"])
        return

    style = "green" if response.ok else "yellow"
    console.print(f"[{style}]code {response.code}[/{style}] {response.message or ''}")
    console.print_json(data=response.model_dump(mode="json"))
    sys.exit(0 if response.ok else 2)


@main.command(name="app-config")
@click.argument("app_code")
@click.pass_context
def app_config(ctx, app_code: str):
    """Resolve APP_CODE into server, socket and conferencing URLs."""

    async def run():
        async with AppConfigClient() as client:
            return await client.fetch(app_code)

    try:
        remote = asyncio.run(run())
    except TeleMDError as e:
        _fail("App Config Error", e, ctx.obj["debug"])
        return

    table = Table(title=f"App code {app_code}")
    table.add_column("Storage key", style="cyan")
    table.add_column("Value")
    for key, value in remote.storage_items().items():
        table.add_row(key, value)
    if remote.turn:
        table.add_row("turn", remote.turn)
    console.print(table)


@main.command()
@click.argument("meeting_id", required=False)
@click.option("--create", "participants", multiple=True, help="Create a new meeting with this participant")
@click.option("--caller-name", default="", help="Caller name sent with --create")
@_session_options
@click.pass_context
def join(
    ctx,
    meeting_id: Optional[str],
    participants: Tuple[str, ...],
    caller_name: str,
    session_id: Optional[str],
    user_id: Optional[str],
    organization_id: Optional[str],
):
    """Connect to signaling and join MEETING_ID, or create a meeting with --create."""
    if not meeting_id and not participants:
        raise click.UsageError("Pass a MEETING_ID or at least one --create participant")

    session = _build_session(session_id, user_id, organization_id) or SessionContext()

    async def run():
        client = SignalingClient(session_provider=lambda: session)
        await client.init_socket()
        try:
            if participants:
                return await client.create_meeting(list(participants), caller_name=caller_name)
            return await client.join_existing_meeting(meeting_id)
        finally:
            await client.disconnect()

    try:
        room = asyncio.run(run())
    except ConfigurationError as e:
        _fail("Configuration Error", e, ctx.obj["debug"])
        return
    except SignalingError as e:
        reason = getattr(e, "reason", None)
        label = f"Signaling Error ({reason.value})" if reason else "Signaling Error"
        _fail(label, e, ctx.obj["debug"])
        return

    console.print(f"[green]✓ Room ready:[/green] {room.meeting_id}")
    console.print(room.url)


if __name__ == "__main__":
    main()

"""Gatehouse CLI - Command line interface."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from gatehouse.core.config import GatehouseSettings, get_config
from gatehouse.core.exceptions import (
    DiscoveryError,
    GatehouseError,
    TargetConnectionError,
    format_error_for_user,
)
from gatehouse.core.logging import configure_logging
from gatehouse.engine.engine import AccessEngine
from gatehouse.engine.targets import TargetListing
from gatehouse.models import AuthSession, AuthStatus, ConnectResult
from gatehouse.registry import ServerRegistry, load_servers

console = Console()
err_console = Console(stderr=True)

BANNER = """
  ____       _       _
 / ___| __ _| |_ ___| |__   ___  _   _ ___  ___
| |  _ / _` | __/ _ \\ '_ \\ / _ \\| | | / __|/ _ \\
| |_| | (_| | ||  __/ | | | (_) | |_| \\__ \\  __/
 \\____|\\__,_|\\__\\___|_| |_|\\___/ \\__,_|___/\\___|
        Log in once, reach every target
"""


def _fail(error: BaseException) -> None:
    """Print an error panel and exit with status 1."""
    if isinstance(error, GatehouseError):
        title = f"Error: {error.code}"
    else:
        title = "Error"
    console.print(Panel(f"[red]{format_error_for_user(error)}[/red]", title=title, border_style="red"))
    sys.exit(1)


def _settings(ctx: click.Context) -> GatehouseSettings:
    return ctx.obj["settings"]


def _registry(ctx: click.Context) -> ServerRegistry:
    registry = ctx.obj.get("registry")
    if registry is None:
        try:
            registry = load_servers(ctx.obj["servers_file"])
        except GatehouseError as e:
            _fail(e)
        ctx.obj["registry"] = registry
    return registry


def build_engine(settings: GatehouseSettings, registry: ServerRegistry) -> AccessEngine:
    """Create the engine used by the commands."""
    return AccessEngine.from_settings(settings, registry)


@click.group(invoke_without_command=True)
@click.option(
    "--servers", "-s",
    "servers_file",
    type=click.Path(),
    default=None,
    help="Path to the YAML, TOML or JSON server list (default: GATEHOUSE_SERVERS_FILE or servers.yaml)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
    help="Log level (default: warning, use --verbose for debug)",
)
@click.option("--log-json", is_flag=True, default=False, help="Render logs as JSON lines")
@click.pass_context
def main(
    ctx: click.Context,
    servers_file: str | None,
    verbose: bool,
    log_level: str | None,
    log_json: bool,
):
    """Gatehouse - Log in once, reach every target.

    Examples:

        gatehouse servers

        gatehouse login prod

        gatehouse targets prod --filter windows

        gatehouse connect prod ttcp_1234567890

    Use 'gatehouse COMMAND --help' for more info on specific commands.
    """
    try:
        settings = get_config()
    except ValueError as e:
        console.print(f"[red]Invalid settings:[/red] {e}")
        sys.exit(1)

    effective_level = "debug" if verbose else (log_level or settings.log_level)
    configure_logging(effective_level, json_output=log_json or settings.log_json)

    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    ctx.obj["servers_file"] = servers_file or settings.servers_file

    if ctx.invoked_subcommand is None:
        console.print(BANNER, style="cyan")
        console.print("Usage: gatehouse login SERVER", style="yellow")
        console.print("       gatehouse connect SERVER [TARGET]", style="yellow")
        console.print("\nCommands:", style="bold")
        console.print("  gatehouse servers   List configured servers", style="dim")
        console.print("  gatehouse methods   Show a server's OIDC auth methods", style="dim")
        console.print("  gatehouse logout    Forget a saved login", style="dim")
        console.print("  gatehouse targets   List targets after logging in", style="dim")
        console.print("  gatehouse clients   Show detected remote desktop clients", style="dim")
        console.print("  gatehouse version   Show version information", style="dim")


@main.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--check", is_flag=True, help="Check that each enabled server offers OIDC login")
@click.pass_context
def servers(ctx: click.Context, json_output: bool, check: bool):
    """List configured servers."""
    registry = _registry(ctx)
    oidc: dict[str, bool] = asyncio.run(_check_servers(ctx, registry)) if check else {}

    if json_output:
        listed = []
        for server in registry:
            entry = server.model_dump(mode="json")
            if check:
                entry["oidc"] = oidc.get(server.id)
            listed.append(entry)
        data = {
            "servers": listed,
            "errors": [{"server_id": e.server_id, "message": e.message} for e in registry.errors],
        }
        click.echo(json.dumps(data, indent=2))
        return

    if not len(registry):
        console.print("[dim]No servers configured[/dim]")
    else:
        table = Table(title="Servers")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("URL", style="dim")
        table.add_column("Provider")
        table.add_column("Enabled", justify="center")
        if check:
            table.add_column("OIDC", justify="center")
        for server in registry:
            enabled = "[green]Yes[/green]" if server.enabled else "[yellow]No[/yellow]"
            row = [server.id, server.name, server.url, server.oidc.provider_hints.name, enabled]
            if check:
                row.append(_oidc_cell(oidc.get(server.id)))
            table.add_row(*row)
        console.print(table)

    if registry.errors:
        console.print("[yellow bold]Invalid entries:[/yellow bold]")
        for error in registry.errors:
            console.print(f"  [yellow]-[/yellow] {format_error_for_user(error)}")


def _oidc_cell(supported: bool | None) -> str:
    if supported is None:
        return "[dim]-[/dim]"
    return "[green]Yes[/green]" if supported else "[red]No[/red]"


async def _check_servers(ctx: click.Context, registry: ServerRegistry) -> dict[str, bool]:
    async with build_engine(_settings(ctx), registry) as engine:
        return {s.id: await engine.verify_oidc_support(s.id) for s in registry.enabled()}


@main.command()
@click.argument("server_id")
@click.pass_context
def methods(ctx: click.Context, server_id: str):
    """Show the OIDC auth methods offered by SERVER_ID."""
    asyncio.run(_methods_async(ctx, server_id))


async def _methods_async(ctx: click.Context, server_id: str):
    async with build_engine(_settings(ctx), _registry(ctx)) as engine:
        try:
            found = await engine.discover_auth_methods(server_id)
        except GatehouseError as e:
            _fail(e)

        issuer = next((m.issuer for m in found if m.issuer), None)
        try:
            metadata: dict[str, Any] | None = await engine.issuer_metadata(server_id, issuer)
            unavailable = ""
        except DiscoveryError as e:
            metadata = None
            unavailable = e.message

    table = Table(title=f"Auth methods on {server_id}")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type", style="dim")
    table.add_column("Description")
    for method in found:
        table.add_row(method.id, method.name, method.type, method.description)
    console.print(table)

    if metadata is None:
        console.print(f"[dim]Issuer metadata unavailable: {unavailable}[/dim]")
        return
    lines = [f"[bold]Issuer:[/bold] {metadata['issuer']}"]
    for key in ("authorization_endpoint", "token_endpoint", "userinfo_endpoint"):
        if metadata.get(key):
            lines.append(f"[bold]{key.replace('_', ' ').capitalize()}:[/bold] {metadata[key]}")
    scopes = metadata.get("scopes_supported")
    if scopes:
        lines.append(f"[bold]Scopes:[/bold] {', '.join(str(s) for s in scopes)}")
    console.print(Panel("\n".join(lines), title="Identity provider", border_style="cyan"))


async def _login(
    engine: AccessEngine,
    server_id: str,
    auth_method_id: str | None,
    scope_id: str | None,
    out: Console = console,
) -> AuthSession:
    """Log in, asking for a scope when the server needs one."""
    out.print(f"Opening browser to log in to {server_id}...", style="yellow")
    session = await engine.authenticate(server_id, auth_method_id, scope_id)

    if session.status is AuthStatus.SCOPE_SELECTION:
        out.print("[bold]Choose a scope:[/bold]")
        for index, scope in enumerate(session.scopes, start=1):
            out.print(f"  {index}. {scope.name or scope.id} [dim]({scope.id})[/dim]")
        choice = click.prompt("Scope", type=click.IntRange(1, len(session.scopes)))
        await engine.resolve_scope(server_id, session.scopes[choice - 1].id)
        session = engine.sessions.completed(server_id)

    scope = (session.scope.name or session.scope.id) if session.scope else "none"
    user = session.token.user_id if session.token else ""
    out.print(
        Panel(
            f"[green]Logged in![/green]\n\n"
            f"[bold]Server:[/bold] {server_id}\n"
            f"[bold]User:[/bold] {user or 'unknown'}\n"
            f"[bold]Scope:[/bold] {scope}",
            title="Gatehouse",
            border_style="green",
        )
    )
    return session


async def _ensure_login(
    engine: AccessEngine,
    server_id: str,
    scope_id: str | None,
    out: Console = console,
) -> AuthSession:
    """Reuse the saved login for a server, or log in through the browser."""
    session = await engine.restore_session(server_id)
    if session is not None and (scope_id is None or (session.scope and session.scope.id == scope_id)):
        out.print(f"[dim]Using saved login for {server_id}[/dim]")
        return session
    return await _login(engine, server_id, None, scope_id, out=out)


@main.command()
@click.argument("server_id")
@click.option("--method", "-m", "auth_method_id", default=None, help="Auth method id (default: first OIDC method)")
@click.option("--scope", "scope_id", default=None, help="Scope id to bind the login to")
@click.pass_context
def login(ctx: click.Context, server_id: str, auth_method_id: str | None, scope_id: str | None):
    """Log in to SERVER_ID through the browser."""
    asyncio.run(_login_async(ctx, server_id, auth_method_id, scope_id))


async def _login_async(ctx: click.Context, server_id: str, auth_method_id: str | None, scope_id: str | None):
    async with build_engine(_settings(ctx), _registry(ctx)) as engine:
        try:
            await _login(engine, server_id, auth_method_id, scope_id)
        except GatehouseError as e:
            _fail(e)


@main.command()
@click.argument("server_id")
@click.pass_context
def logout(ctx: click.Context, server_id: str):
    """Forget the saved login for SERVER_ID."""
    asyncio.run(_logout_async(ctx, server_id))


async def _logout_async(ctx: click.Context, server_id: str):
    async with build_engine(_settings(ctx), _registry(ctx)) as engine:
        try:
            engine.server(server_id)
            logged_out = await engine.logout(server_id)
        except GatehouseError as e:
            _fail(e)

    if logged_out:
        console.print(f"[green]Logged out of {server_id}.[/green]")
    else:
        console.print(f"[dim]Not logged in to {server_id}[/dim]")


def _print_targets(listing: TargetListing, numbered: bool = False) -> None:
    if listing.is_empty:
        console.print("[dim]No targets available[/dim]")
        return

    table = Table(title=f"Targets on {listing.server_id}")
    if numbered:
        table.add_column("#", justify="right", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Type")
    table.add_column("Address")
    table.add_column("Port", justify="right")
    for index, target in enumerate(listing, start=1):
        row = [
            target.name,
            target.id,
            target.type,
            target.address or "-",
            str(target.default_port) if target.default_port else "-",
        ]
        if numbered:
            row.insert(0, str(index))
        table.add_row(*row)
    console.print(table)


@main.command()
@click.argument("server_id")
@click.option("--filter", "-f", "query", default="", help="Only show targets matching this text")
@click.option("--scope", "scope_id", default=None, help="Scope id to bind the login to")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def targets(ctx: click.Context, server_id: str, query: str, scope_id: str | None, json_output: bool):
    """Log in to SERVER_ID and list its targets."""
    asyncio.run(_targets_async(ctx, server_id, query, scope_id, json_output))


async def _targets_async(
    ctx: click.Context,
    server_id: str,
    query: str,
    scope_id: str | None,
    json_output: bool,
):
    async with build_engine(_settings(ctx), _registry(ctx)) as engine:
        try:
            out = err_console if json_output else console
            await _ensure_login(engine, server_id, scope_id, out=out)
            await engine.discover_targets(server_id)
            listing = engine.filter_targets(server_id, query)
        except GatehouseError as e:
            _fail(e)

    if json_output:
        data = [
            {
                "id": t.id,
                "name": t.name,
                "type": t.type,
                "address": t.address,
                "default_port": t.default_port,
                "scope_id": t.scope_id,
            }
            for t in listing
        ]
        click.echo(json.dumps(data, indent=2))
        return
    _print_targets(listing)


def _print_connection(result: ConnectResult) -> None:
    connection = result.connection
    lines = [
        "[green]Connection established![/green]\n",
        f"[bold]Target:[/bold] {connection.target_name}",
        f"[bold]Protocol:[/bold] {connection.protocol}",
        f"[bold]Local endpoint:[/bold] [cyan]{connection.endpoint}[/cyan]",
        f"[bold]Session:[/bold] {connection.session_id}",
    ]
    if result.launch.launched and result.launch.client:
        lines.append(f"[bold]Client:[/bold] {result.launch.client.name}")
    elif result.launch.manual:
        manual = result.launch.manual
        lines.append(f"\n[yellow]{manual.reason}.[/yellow]")
        lines.append(f"Connect your {manual.protocol} client to [cyan]{manual.endpoint}[/cyan]")
    console.print(Panel("\n".join(lines), title="Gatehouse", border_style="green"))


@main.command()
@click.argument("server_id")
@click.argument("target", required=False)
@click.option("--scope", "scope_id", default=None, help="Scope id to bind the login to")
@click.option("--no-launch", is_flag=True, default=False, help="Do not start a remote desktop client")
@click.pass_context
def connect(ctx: click.Context, server_id: str, target: str | None, scope_id: str | None, no_launch: bool):
    """Log in to SERVER_ID and open a local proxy to TARGET.

    TARGET is a target id or name; without it the targets are listed and
    one is picked interactively. The proxy stays up until Ctrl+C.
    """
    settings = _settings(ctx)
    if no_launch:
        settings = settings.model_copy(update={"auto_launch": False})
    try:
        asyncio.run(_connect_async(settings, _registry(ctx), server_id, target, scope_id))
    except KeyboardInterrupt:
        console.print("[green]Connection closed.[/green]")


async def _connect_async(
    settings: GatehouseSettings,
    registry: ServerRegistry,
    server_id: str,
    target: str | None,
    scope_id: str | None,
):
    async with build_engine(settings, registry) as engine:
        try:
            await _ensure_login(engine, server_id, scope_id)
            listing = await engine.discover_targets(server_id)
            chosen = _choose_target(listing, target)
            result = await engine.connect(server_id, chosen)
        except GatehouseError as e:
            _fail(e)

        _print_connection(result)
        console.print("\nPress Ctrl+C to disconnect.\n", style="dim")
        await _watch_connections(engine, engine.settings.health_interval)


async def _watch_connections(engine: AccessEngine, interval: float) -> None:
    """Block until every proxy is gone, reporting any that exit on their own."""
    while True:
        await asyncio.sleep(interval)
        for connection in await engine.check_connections():
            console.print(
                f"[red]Connection to {connection.target_name} lost[/red] "
                f"[dim]({connection.endpoint})[/dim]"
            )
        if not engine.active_connections():
            break
    _fail(TargetConnectionError("The local proxy exited"))


def _choose_target(listing: TargetListing, ref: str | None) -> str:
    if ref is not None:
        found = listing.find(ref)
        # Unknown refs are passed through as ids; authorization decides.
        return found.id if found else ref
    if listing.is_empty:
        raise GatehouseError("No targets available", server_id=listing.server_id)
    _print_targets(listing, numbered=True)
    choice = click.prompt("Target", type=click.IntRange(1, len(listing)))
    return listing.targets[choice - 1].id


@main.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def clients(ctx: click.Context, json_output: bool):
    """Show remote desktop clients detected on this machine."""
    from gatehouse.launcher import SystemLauncher

    settings = _settings(ctx)
    launcher = SystemLauncher(fullscreen=settings.fullscreen, resolution=settings.resolution)
    found = asyncio.run(launcher.detect())

    if json_output:
        data: list[dict[str, Any]] = [
            {"name": c.name, "path": c.executable_path, "type": c.client_type, "platform": c.platform}
            for c in found
        ]
        click.echo(json.dumps(data, indent=2))
        return

    if not found:
        console.print(f"[dim]No remote desktop clients found on {launcher.platform}[/dim]")
        return

    preferred = (settings.preferred_client or "").lower()
    default = next((c for c in found if preferred in (c.name.lower(), c.client_type.lower())), found[0])
    table = Table(title=f"Remote desktop clients ({launcher.platform})")
    table.add_column("Name", style="cyan")
    table.add_column("Type", style="dim")
    table.add_column("Path")
    table.add_column("Default", justify="center")
    for client in found:
        table.add_row(
            client.name,
            client.client_type,
            client.executable_path,
            "[green]Yes[/green]" if client is default else "",
        )
    console.print(table)


@main.command()
@click.pass_context
def version(ctx: click.Context):
    """Show version information."""
    from gatehouse import __version__
    from gatehouse.boundary.client import BoundaryClient
    from gatehouse.boundary.runner import BoundaryRunner

    settings = _settings(ctx)
    client = BoundaryClient(
        BoundaryRunner(cli_path=settings.boundary_cli_path, timeout=settings.command_timeout)
    )
    try:
        boundary_version = asyncio.run(client.verify_cli()) or "unknown"
    except GatehouseError:
        boundary_version = "[yellow]not found[/yellow]"

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")
    console.print(f"[bold]Boundary CLI:[/bold] {boundary_version}")


@main.group()
def config():
    """View configuration settings.

    All settings can be configured via environment variables with the
    GATEHOUSE_ prefix.

    Examples:

        gatehouse config show            # Show all config settings

        gatehouse config show --json     # Machine readable
    """
    pass


_ENV_NAMES = {
    "cli_path": "BOUNDARY_CLI_PATH",
    "level": "LOG_LEVEL",
    "json": "LOG_JSON",
}


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--section", "-s", help="Show only specific section (boundary, auth, connection, rdp, logging)")
@click.pass_context
def config_show(ctx: click.Context, json_output: bool, section: str | None):
    """Show current configuration settings.

    Values come from environment variables, a .env file or defaults.
    """
    display = _settings(ctx).to_display_dict()

    if section:
        section = section.lower()
        if section not in display:
            console.print(f"[red]Unknown section:[/red] {section}")
            console.print(f"[dim]Available: {', '.join(display.keys())}[/dim]")
            sys.exit(1)
        display = {section: display[section]}

    if json_output:
        click.echo(json.dumps(display, indent=2))
        return

    console.print("[bold]Current Configuration[/bold]\n")
    for section_name, settings in display.items():
        table = Table(title=section_name.replace("_", " ").title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_column("Env Variable", style="dim")

        for key, value in settings.items():
            env_var = f"GATEHOUSE_{_ENV_NAMES.get(key, key.upper())}"
            value_str = str(value) if value is not None else "[dim]None[/dim]"
            table.add_row(key, value_str, env_var)

        console.print(table)
        console.print()


if __name__ == "__main__":
    main()

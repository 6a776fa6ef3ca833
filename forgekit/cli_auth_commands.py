"""Authentication commands - login, logout, whoami."""
from datetime import datetime, timezone

import typer
from rich.console import Console

from forgekit.cli_support import (
    get_token_store,
    handle_cli_error,
    load_config,
    make_handshake_factory,
    print_info,
    print_success,
    print_warning,
)
from forgekit.core.errors import ForgeError

# Module-level console instance (will be set by register function)
console: Console = Console()


def _describe_remaining(expires_at: datetime) -> str:
    remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
    hours = int(remaining // 3600)
    days = hours // 24
    if days > 0:
        return f"in {days} days"
    if hours > 0:
        return f"in {hours} hours"
    return f"in {int(remaining // 60)} minutes"


def login(
    force: bool = typer.Option(False, "--force", "-f", help="Log in again even if a valid token is stored"),
):
    """Authenticate with ForgeKit through the browser."""
    config = load_config()
    try:
        store = get_token_store(config)
        if not force and store.get_token():
            info = store.get_token_info()
            who = (info.email or info.user_id) if info else "unknown user"
            print_info(console, f"Already logged in as {who}. Use --force to log in again.")
            return

        make_handshake_factory(config, store, console)().login()
        info = store.get_token_info()
        who = (info.email or info.user_id) if info else "unknown user"
        print_success(console, f"Logged in as {who}")
    except ForgeError as e:
        handle_cli_error(e, console)


def logout():
    """Clear the stored authentication token."""
    config = load_config()
    try:
        store = get_token_store(config)
        info = store.get_token_info()
        if info is None and not store.credential_file.exists():
            print_info(console, "No active session found")
            return

        if info is not None:
            console.print(f"🔓 Logging out user: {info.email or info.user_id}")
        store.clear_token()
        print_success(console, "Successfully logged out")
        if config.token_override:
            print_warning(console, "FORGEKIT_TOKEN is still set in the environment")
    except (ForgeError, OSError) as e:
        handle_cli_error(e, console)


def whoami():
    """Show current authentication status."""
    config = load_config()
    store = get_token_store(config)
    info = store.get_token_info()

    if info is None:
        console.print("[red]❌ Not authenticated[/red]")
        console.print("Run `forge login` to authenticate")
        raise typer.Exit(1)

    console.print("[green]✅ Authenticated as:[/green]")
    console.print(f"   Email: {info.email or 'Unknown'}")
    console.print(f"   User ID: {info.user_id}")
    if info.expires_at:
        console.print(f"   Token expires: {_describe_remaining(info.expires_at)}")
    if info.issued_at:
        console.print(f"   Logged in: {info.issued_at.astimezone().strftime('%Y-%m-%d')}")


def register_auth_commands(app: typer.Typer, shared_console: Console):
    """Register authentication commands with the main Typer app.

    Args:
        app: Main Typer application
        shared_console: Shared Rich console instance
    """
    global console
    console = shared_console

    app.command()(login)
    app.command()(logout)
    app.command()(whoami)

"""Shared utilities for ForgeKit CLI modules."""
from __future__ import annotations

import re
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape

from forgekit.core.config import ForgeConfig
from forgekit.core.errors import BuildError, ForgeError, ValidationError
from forgekit.core.login import LoginHandshake
from forgekit.core.secure_client import SecureClient
from forgekit.core.token_store import TokenStore

# Lines of each captured stream shown when a build fails
BUILD_OUTPUT_TAIL_LINES = 40

SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")


def setup_file_logging(log_file: Optional[str] = None, verbose: bool = False) -> None:
    """Set up file logging for CLI commands.

    Args:
        log_file: Path to log file (optional)
        verbose: Enable verbose logging
    """
    from forgekit.core.logger import set_verbose
    from forgekit.core.logger import setup_file_logging as _setup_file_logging
    _setup_file_logging(log_file=log_file, verbose=verbose)
    set_verbose(verbose)


def load_config() -> ForgeConfig:
    """Build the runtime configuration once per invocation."""
    return ForgeConfig.from_env()


def get_token_store(config: ForgeConfig) -> TokenStore:
    return TokenStore(config)


def get_secure_client(config: ForgeConfig) -> SecureClient:
    return SecureClient(config)


def make_handshake_factory(config: ForgeConfig, store: TokenStore, console: Console):
    """Return a callable creating login handshakes that print to ``console``."""

    def factory() -> LoginHandshake:
        return LoginHandshake(config, store, announce=lambda message: print_info(console, message))

    return factory


def confirm_action(message: str, yes_flag: bool = False) -> bool:
    """Prompt user for confirmation unless --force/--yes was given.

    Args:
        message: Confirmation message to display
        yes_flag: Skip prompt if True

    Returns:
        True if confirmed, False otherwise
    """
    if yes_flag:
        return True
    return typer.confirm(message, default=False)


def print_build_output(console: Console, error: BuildError, verbose: bool = False) -> None:
    """Show what each failed build attempt wrote.

    stderr is always shown; stdout is shown in verbose mode, or when the
    attempt wrote nothing to stderr.
    """
    if error.command:
        console.print(f"\n[bold]Build command:[/bold] {escape(error.command)}")
    for attempt in error.attempts:
        code = "not run" if attempt.returncode is None else f"exit code {attempt.returncode}"
        console.print(f"\n[bold]Attempt {attempt.attempt}[/bold] ({code})")
        streams = [("stderr", attempt.stderr)]
        if verbose or not attempt.stderr.strip():
            streams.insert(0, ("stdout", attempt.stdout))
        for label, text in streams:
            lines = text.strip().splitlines()[-BUILD_OUTPUT_TAIL_LINES:]
            if lines:
                console.print(f"   [dim]{label}:[/dim]")
                for line in lines:
                    console.print(f"   {escape(line)}", highlight=False)


def handle_cli_error(
    e: Exception,
    console: Console,
    verbose: bool = False,
    exit_code: int = 1,
    headline: bool = True,
) -> None:
    """Handle CLI errors with consistent formatting.

    ForgeKit errors print their message, every listed violation, captured
    build output and the remediation hints; anything else prints its
    string form.

    Args:
        e: Exception to handle
        console: Rich console for output
        verbose: Show exception traceback if True
        exit_code: Exit code to use
        headline: Print the ``Error:`` line (off when progress output already showed it)
    """
    if isinstance(e, ForgeError):
        if headline:
            console.print(f"[red]Error:[/red] {escape(e.message)}")
        if isinstance(e, ValidationError):
            for error in e.errors:
                console.print(f"   [red]•[/red] {escape(error)}")
            for warning in e.warnings:
                console.print(f"   [yellow]•[/yellow] {escape(warning)}")
        if isinstance(e, BuildError) and e.attempts:
            print_build_output(console, e, verbose=verbose)
        if e.hints:
            console.print("\n💡 Suggestions:")
            for hint in e.hints:
                console.print(f"   • {escape(hint)}")
    else:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
    if verbose:
        console.print_exception()
    raise typer.Exit(exit_code)


def print_success(console: Console, message: str, prefix: str = "✓") -> None:
    """Print success message with consistent formatting.

    Args:
        console: Rich console for output
        message: Success message
        prefix: Prefix symbol (default: ✓)
    """
    console.print(f"[green]{prefix}[/green] {message}")


def print_error(console: Console, message: str, prefix: str = "✗") -> None:
    """Print error message with consistent formatting."""
    console.print(f"[red]{prefix}[/red] {message}")


def print_warning(console: Console, message: str, prefix: str = "⚠") -> None:
    """Print warning message with consistent formatting."""
    console.print(f"[yellow]{prefix}[/yellow] {message}")


def print_info(console: Console, message: str, prefix: str = "ℹ") -> None:
    """Print info message with consistent formatting."""
    console.print(f"[cyan]{prefix}[/cyan] {message}")


def require_valid_slug(console: Console, slug: str) -> None:
    """Exit with an error unless ``slug`` is lowercase letters, digits and hyphens."""
    if not SLUG_PATTERN.match(slug):
        print_error(console, "Invalid slug format. Must contain only lowercase letters, numbers, and hyphens.")
        raise typer.Exit(1)

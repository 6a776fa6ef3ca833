#!/usr/bin/env python3
"""ForgeKit CLI - deploy scaffolded projects to ForgeKit hosting."""

import typer
from rich.console import Console

from forgekit import __version__
from forgekit.cli_auth_commands import register_auth_commands
from forgekit.cli_deploy_commands import register_deploy_commands
from forgekit.cli_manage_commands import register_manage_commands
from forgekit.core.logger import get_logger

app = typer.Typer(
    name="forge",
    help="""ForgeKit - deploy your project in one command

Quick start:
  forge login          # Authenticate in the browser
  forge deploy         # Build, bundle and upload
  forge deploy --dry-run
  forge list           # Show your deployments
  forge logs my-app    # Latest container logs

More commands: forge --help
""",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)


def _version_callback(value: bool):
    if value:
        console.print(f"ForgeKit CLI {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"
    ),
):
    """ForgeKit deployment CLI."""


# Attach modular subcommands
register_auth_commands(app, console)
register_deploy_commands(app, console)
register_manage_commands(app, console)

if __name__ == "__main__":
    app()

"""Deployment commands - deploy, delete."""
import os
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console

from forgekit.cli_progress import ProgressReporter
from forgekit.cli_support import (
    confirm_action,
    get_secure_client,
    get_token_store,
    handle_cli_error,
    load_config,
    make_handshake_factory,
    print_info,
    print_success,
    require_valid_slug,
    setup_file_logging,
)
from forgekit.core.errors import AuthenticationError, ForgeError, HTTPStatusError, NetworkError
from forgekit.core.env import parse_env_assignments
from forgekit.core.login import ensure_logged_in
from forgekit.core.orchestrator import DeployOptions, DeployOrchestrator, DeployPlan
from forgekit.core.retry import retry
from forgekit.core.secure_client import SecureClient

# Module-level console instance (will be set by register function)
console: Console = Console()


def _print_plan(plan: DeployPlan, skip_build: bool) -> None:
    console.print("\n[bold cyan]🔍 Dry Run - Deployment Preview:[/bold cyan]")
    console.print(f"   Build Directory: {plan.build_dir}")
    console.print(f"   Target URL: {plan.endpoint}")
    console.print(f"   Mode: {'Redeploy' if plan.redeploy else 'New deployment'} ({plan.slug})")
    console.print(f"   Skip Build: {'Yes' if skip_build else 'No'}")
    if plan.estimate is not None:
        console.print(
            f"   Bundle: {plan.estimate.file_count} files, {plan.estimate.megabytes:.2f} MB (estimated)"
        )
    if plan.env_names:
        console.print(f"   Environment: {', '.join(plan.env_names)}")
    print_success(console, "Dry run completed. Use `forge deploy` without --dry-run to actually deploy.")


def deploy(
    build_dir: Optional[str] = typer.Option(None, "--build-dir", help="Directory containing build output"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show detailed deployment progress and debugging information"),
    skip_build: bool = typer.Option(False, "--skip-build", help="Skip the build step (use existing build output)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be deployed without actually deploying"),
    env: Optional[List[str]] = typer.Option(None, "--env", "-e", help="Environment variable to inject (KEY=VALUE, repeatable)"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Write logs to this file"),
):
    """Build, bundle, and deploy to ForgeKit hosting."""
    setup_file_logging(log_file=log_file, verbose=verbose)
    config = load_config()
    reporter = ProgressReporter(console, verbose=verbose)

    try:
        explicit_env = parse_env_assignments(env or [])
        store = get_token_store(config)
        orchestrator = DeployOrchestrator(
            config,
            store,
            get_secure_client(config),
            handshake_factory=make_handshake_factory(config, store, console),
            listeners=[reporter],
        )
        result = orchestrator.deploy(DeployOptions(
            project_root=Path.cwd(),
            build_dir=build_dir,
            verbose=verbose,
            skip_build=skip_build,
            dry_run=dry_run,
            env=explicit_env,
            environ=dict(os.environ),
        ))
    except ForgeError as e:
        # The failed step line already carries the message
        handle_cli_error(e, console, verbose=verbose, headline=not reporter.failure_shown)
        return

    if result.dry_run:
        _print_plan(result.plan, skip_build)
        return

    console.print("\n[bold]🎉 Deployment Details:[/bold]")
    console.print(f"   URL: {result.url}")
    console.print(f"   Slug: {result.slug}")
    if result.build_id:
        console.print(f"   Build ID: {result.build_id}")


@retry(max_attempts=3, delay=2.0, exceptions=(NetworkError,))
def fetch_deployment(client: SecureClient, url: str, token: str) -> dict:
    """GET deployment details, retrying transient network failures."""
    response = client.get(url, headers={"Authorization": f"Bearer {token}"})
    return response.data if isinstance(response.data, dict) else {}


def delete(
    slug: str = typer.Argument(..., help="Deployment slug to delete"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
    keep_data: bool = typer.Option(False, "--keep-data", help="Keep persistent data (volumes) when deleting"),
):
    """Delete a deployment."""
    require_valid_slug(console, slug)

    config = load_config()
    try:
        store = get_token_store(config)
        token = ensure_logged_in(store, make_handshake_factory(config, store, console))
        client = get_secure_client(config)
        url = config.deployment_url(slug)

        console.print(f"🔍 Checking deployment: {slug}")
        try:
            info = fetch_deployment(client, url, token)
        except HTTPStatusError as e:
            raise _delete_error(e, slug) from e

        console.print("\n📦 Deployment Details:")
        console.print(f"   Slug: {info.get('slug', slug)}")
        console.print(f"   URL: {info.get('url') or 'Not available'}")
        console.print(f"   Status: {info.get('status') or 'unknown'}")
        console.print(f"   Created: {info.get('created_at') or 'Unknown'}")

        if not confirm_action(f"Are you sure you want to delete deployment '{slug}'?", yes_flag=force):
            print_info(console, "Deletion cancelled.")
            return

        console.print(f"🗑️ Deleting deployment: {slug}...")
        if keep_data:
            url = f"{url}?keep_data=true"
        try:
            client.delete(url, headers={"Authorization": f"Bearer {token}"})
        except HTTPStatusError as e:
            raise _delete_error(e, slug) from e
    except ForgeError as e:
        handle_cli_error(e, console)
        return

    print_success(console, f"Deployment '{slug}' has been deleted successfully.")
    if keep_data:
        print_info(console, "Persistent data (volumes) have been preserved.")
    else:
        print_info(console, "All data has been permanently deleted.")


def _delete_error(error: HTTPStatusError, slug: str) -> ForgeError:
    if error.status == 401:
        return AuthenticationError("Authentication failed. Try running `forge login` again.")
    if error.status == 403:
        return ForgeError("Access denied. You may not have permission to delete this deployment.")
    if error.status == 404:
        return ForgeError(f"Deployment '{slug}' not found.")
    if error.status == 409:
        reason = error.body.get("message") if isinstance(error.body, dict) else None
        return ForgeError(f"Cannot delete deployment '{slug}': {reason or 'Deployment may be in use'}")
    return ForgeError(f"Failed to delete deployment: server returned status {error.status}")


def register_deploy_commands(app: typer.Typer, shared_console: Console):
    """Register deployment commands with the main Typer app.

    Args:
        app: Main Typer application
        shared_console: Shared Rich console instance
    """
    global console
    console = shared_console

    app.command()(deploy)
    app.command()(delete)

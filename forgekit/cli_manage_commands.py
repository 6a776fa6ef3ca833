"""Deployment management commands - list, deployments:list, logs, stats, secrets:set."""
import json
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from forgekit.cli_support import (
    get_secure_client,
    get_token_store,
    handle_cli_error,
    load_config,
    make_handshake_factory,
    print_info,
    print_success,
    print_warning,
    require_valid_slug,
)
from forgekit.core.config import ForgeConfig
from forgekit.core.errors import AuthenticationError, ForgeError, HTTPStatusError
from forgekit.core.login import ensure_logged_in
from forgekit.core.orchestrator import slugify
from forgekit.core.project_store import ProjectStore
from forgekit.core.secure_client import SecureClient

# Module-level console instance (will be set by register function)
console: Console = Console()

MAX_LOG_LINES = 1000
LOGS_TIMEOUT = 30.0
ENV_FILE_PREFIX = ".env"

STATUS_ICONS = {
    "deployed": "🟢",
    "active": "🟢",
    "running": "🟢",
    "deploying": "🟡",
    "building": "🟡",
    "pending": "🟡",
    "failed": "🔴",
    "error": "🔴",
    "stopped": "🔴",
}

LEVEL_ICONS = {"error": "🔴", "warn": "🟡", "info": "🔵", "debug": "🟣"}


class OutputFormat(str, Enum):
    TABLE = "table"
    JSON = "json"


class LogLevel(str, Enum):
    ALL = "all"
    ERROR = "error"
    WARN = "warn"
    INFO = "info"
    DEBUG = "debug"


def status_icon(status: Optional[str]) -> str:
    return STATUS_ICONS.get((status or "").lower(), "⚪")


def format_bytes(value: Any) -> str:
    """Human readable size, e.g. ``1.5 MB``."""
    if not isinstance(value, (int, float)) or value <= 0:
        return "0 B"
    size = float(value)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            break
        size /= 1024
    return f"{size:.2f}".rstrip("0").rstrip(".") + f" {unit}"


def format_percent(value: Any) -> str:
    if value is None:
        return "N/A"
    try:
        return f"{float(value):.1f}%"
    except (TypeError, ValueError):
        return "N/A"


def format_uptime(seconds: Any) -> str:
    if not isinstance(seconds, (int, float)) or seconds <= 0:
        return "N/A"
    seconds = int(seconds)
    days, hours, minutes = seconds // 86400, seconds % 86400 // 3600, seconds % 3600 // 60
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def _parse_time(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def format_date(value: Any) -> str:
    parsed = _parse_time(value)
    return f"{parsed:%b} {parsed.day} {parsed.year}" if parsed else "Unknown"


def format_log_entry(entry: Any, raw: bool = False) -> str:
    """One log line: ``HH:MM:SS.mmm <icon> [source] message``."""
    if isinstance(entry, str):
        return entry
    if not isinstance(entry, dict):
        return str(entry)
    message = entry.get("message", "")
    if raw:
        return str(message)

    parsed = _parse_time(entry.get("timestamp"))
    timestamp = parsed.strftime("%H:%M:%S.%f")[:12] if parsed else "??:??:??.???"
    icon = LEVEL_ICONS.get(entry.get("level") or "info", "⚪")
    source = f"[{entry['source']}] " if entry.get("source") else ""
    return f"{timestamp} {icon} {source}{message}"


def _deployments_from(data: Any) -> List[Dict[str, Any]]:
    """Accept both ``{"deployments": [...]}`` and a bare list."""
    if isinstance(data, dict):
        data = data.get("deployments")
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]


def _connect(config: ForgeConfig) -> Tuple[SecureClient, Dict[str, str]]:
    """Authenticated client plus the Authorization header."""
    store = get_token_store(config)
    token = ensure_logged_in(store, make_handshake_factory(config, store, console))
    return get_secure_client(config), {"Authorization": f"Bearer {token}"}


def _api_error(error: HTTPStatusError, action: str, not_found: str, forbidden: str) -> ForgeError:
    if error.status == 401:
        return AuthenticationError("Authentication failed. Try running `forge login` again.")
    if error.status == 403:
        return ForgeError(forbidden)
    if error.status == 404:
        return ForgeError(not_found)
    detail = error.body.get("message") if isinstance(error.body, dict) else None
    return ForgeError(f"Failed to {action}: {detail or f'server returned status {error.status}'}")


def _fetch_deployments(config: ForgeConfig) -> List[Dict[str, Any]]:
    client, headers = _connect(config)
    try:
        response = client.get(config.api_url("deployments"), headers=headers)
    except HTTPStatusError as e:
        raise _api_error(
            e,
            "fetch deployments",
            not_found="Deployments endpoint not found. The API may have changed.",
            forbidden="Access denied. Check your permissions.",
        ) from e
    return _deployments_from(response.data)


def _deployed_at(deployment: Dict[str, Any]) -> Optional[str]:
    return deployment.get("deployedAt") or deployment.get("created_at") or deployment.get("updated_at")


def _deployed_sort_key(deployment: Dict[str, Any]) -> float:
    parsed = _parse_time(_deployed_at(deployment))
    return parsed.timestamp() if parsed else 0.0


def list_deployments(
    output_format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", help="Output format"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show detailed information"),
):
    """List all your deployments."""
    config = load_config()
    try:
        if output_format is OutputFormat.TABLE:
            console.print("📋 Fetching your deployments...")
        deployments = _fetch_deployments(config)
    except ForgeError as e:
        handle_cli_error(e, console)
        return

    if output_format is OutputFormat.JSON:
        console.print_json(json.dumps(deployments))
        return

    if not deployments:
        print_info(console, "No deployments found. Deploy your first project with `forge deploy`")
        return

    console.print(f"\n📦 Your Deployments ({len(deployments)}):\n")
    for deployment in deployments:
        status = deployment.get("status") or "unknown"
        console.print(f"{status_icon(status)} {escape(str(deployment.get('slug') or deployment.get('name')))}")
        console.print(f"   URL: {deployment.get('url') or 'Not available'}")
        if verbose:
            console.print(f"   Status: {status}")
            console.print(f"   Created: {format_date(deployment.get('created_at'))}")
            console.print(
                f"   Resources: {deployment.get('memory') or '?'}MB RAM, {deployment.get('cpu') or '?'} CPU"
            )
            if deployment.get("domain"):
                console.print(f"   Custom Domain: {deployment['domain']}")
        console.print()

    plural = "" if len(deployments) == 1 else "s"
    console.print(f"Total: {len(deployments)} deployment{plural}")


def deployments_list():
    """List all deployments for the current user, newest first."""
    config = load_config()
    try:
        console.print("🔍 Fetching deployments...")
        deployments = _fetch_deployments(config)
    except ForgeError as e:
        handle_cli_error(e, console)
        return

    if not deployments:
        print_info(console, "No deployments found.")
        return

    deployments.sort(key=_deployed_sort_key, reverse=True)

    table = Table(title="Deployed Projects", show_header=True, header_style="bold cyan")
    table.add_column("", no_wrap=True)
    table.add_column("Project", style="yellow")
    table.add_column("URL", style="blue")
    table.add_column("Deployed", style="dim")
    for deployment in deployments:
        url = str(deployment.get("subdomain") or deployment.get("url") or "N/A")
        table.add_row(
            status_icon(deployment.get("status") or "active"),
            escape(str(deployment.get("projectName") or deployment.get("slug") or "Unknown")),
            url.split("://", 1)[-1].rstrip("/"),
            format_date(_deployed_at(deployment)),
        )

    console.print()
    console.print(table)
    console.print(f"\nTotal deployments: {len(deployments)}")


def logs(
    slug: str = typer.Argument(..., help="Deployment slug to get logs for"),
    lines: int = typer.Option(100, "--lines", "-n", min=1, help=f"Number of lines to retrieve (max {MAX_LOG_LINES})"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output (not supported yet; shows latest logs)"),
    since: Optional[str] = typer.Option(None, "--since", help='Show logs since a time, e.g. "2h", "30m" or an ISO timestamp'),
    level: LogLevel = typer.Option(LogLevel.ALL, "--level", help="Filter logs by level"),
    raw: bool = typer.Option(False, "--raw", help="Output raw log messages without formatting"),
):
    """View container logs for a deployment."""
    require_valid_slug(console, slug)
    if lines > MAX_LOG_LINES:
        handle_cli_error(ForgeError(f"Maximum {MAX_LOG_LINES} lines allowed."), console)

    config = load_config()
    params = {"lines": lines}
    if since:
        params["since"] = since
    if level is not LogLevel.ALL:
        params["level"] = level.value
    url = f"{config.deployment_url(slug)}/logs?{urlencode(params)}"

    try:
        client, headers = _connect(config)
        if not raw:
            console.print(f"📄 Fetching logs for deployment: {slug}")
            console.print(f"   Lines: {lines}, Level: {level.value}" + (f", Since: {since}" if since else ""))
            console.print("─" * 60)
        if follow:
            print_warning(console, "Follow mode is not supported yet. Showing latest logs...")
        try:
            response = client.get(url, headers=headers, timeout=LOGS_TIMEOUT)
        except HTTPStatusError as e:
            raise _api_error(
                e,
                "fetch logs",
                not_found=f"Deployment '{slug}' not found or has no logs available.",
                forbidden="Access denied. You may not have permission to view logs for this deployment.",
            ) from e
    except ForgeError as e:
        handle_cli_error(e, console)
        return

    entries = response.data.get("logs") if isinstance(response.data, dict) else None
    if not entries:
        if not raw:
            print_info(console, "No logs found for this deployment.")
            console.print("💡 The container may not have started yet or may not be producing logs.")
        return

    for entry in entries:
        console.print(escape(format_log_entry(entry, raw=raw)), highlight=False)

    if not raw and len(entries) == lines:
        console.print("─" * 60)
        console.print(f"📄 Showing last {lines} lines. Use --lines to see more.")
    if follow and not raw:
        console.print("\n💡 Run this command again to see newer logs.")


def _print_deployment_stats(stats: Dict[str, Any]) -> None:
    status = stats.get("status") or "unknown"
    console.print(f"\n📦 {escape(str(stats.get('slug') or 'Unknown'))}")
    console.print(f"   Status: {status} {'🟢' if status == 'running' else '🔴'}")
    console.print(f"   URL: {stats.get('url') or 'Not available'}")
    console.print(f"   Uptime: {format_uptime(stats.get('uptime'))}")
    console.print("\n💾 Memory Usage:")
    console.print(f"   Current: {format_bytes(stats.get('memory_usage'))} / {format_bytes(stats.get('memory_limit'))}")
    console.print(f"   Usage: {format_percent(stats.get('memory_percent'))}")
    console.print("\n⚡ CPU Usage:")
    console.print(f"   Current: {format_percent(stats.get('cpu_percent'))}")
    console.print(f"   Limit: {stats.get('cpu_limit') or 'Unlimited'}")
    console.print("\n💽 Storage:")
    console.print(f"   Used: {format_bytes(stats.get('disk_usage'))}")
    console.print(f"   Available: {format_bytes(stats.get('disk_available'))}")
    console.print("\n🌐 Network:")
    console.print(f"   Traffic In: {format_bytes(stats.get('network_rx'))}")
    console.print(f"   Traffic Out: {format_bytes(stats.get('network_tx'))}")
    if stats.get("custom_domain"):
        console.print("\n🔗 Custom Domain:")
        console.print(f"   Domain: {stats['custom_domain']}")
        console.print(f"   SSL: {stats.get('ssl_status') or 'Unknown'}")


def _print_account_stats(deployments: List[Dict[str, Any]], summary: Optional[Dict[str, Any]]) -> None:
    table = Table(title=f"All Deployments ({len(deployments)})", show_header=True, header_style="bold cyan")
    table.add_column("", no_wrap=True)
    table.add_column("Slug", style="yellow")
    table.add_column("Memory")
    table.add_column("CPU")
    table.add_column("Uptime", style="dim")
    for deployment in deployments:
        table.add_row(
            "🟢" if deployment.get("status") == "running" else "🔴",
            escape(str(deployment.get("slug") or "Unknown")),
            f"{format_bytes(deployment.get('memory_usage'))} / {format_bytes(deployment.get('memory_limit'))} "
            f"({format_percent(deployment.get('memory_percent'))})",
            format_percent(deployment.get("cpu_percent")),
            format_uptime(deployment.get("uptime")),
        )
    console.print()
    console.print(table)

    if not summary:
        return
    console.print("\n📈 Account Summary:")
    console.print(f"   Total Deployments: {summary.get('total_deployments', 0)}")
    console.print(f"   Running: {summary.get('running_deployments', 0)}")
    console.print(
        f"   Total Memory Used: {format_bytes(summary.get('total_memory_used'))} / "
        f"{format_bytes(summary.get('total_memory_limit'))}"
    )
    console.print(f"   Total CPU Used: {format_percent(summary.get('total_cpu_percent'))}")
    console.print(f"   Plan: {summary.get('plan') or 'Free'}")
    quota = summary.get("quota")
    if isinstance(quota, dict):
        console.print(f"   Deployments: {quota.get('used_deployments')}/{quota.get('max_deployments')}")
        console.print(
            f"   Storage: {format_bytes(quota.get('used_storage'))} / {format_bytes(quota.get('max_storage'))}"
        )


def stats(
    slug: Optional[str] = typer.Argument(None, help="Deployment slug (all deployments when omitted)"),
    output_format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", help="Output format"),
    watch: bool = typer.Option(False, "--watch", "-w", help="Watch stats (not supported yet; shows one snapshot)"),
):
    """Show resource usage statistics."""
    if slug is not None:
        require_valid_slug(console, slug)

    config = load_config()
    url = f"{config.deployment_url(slug)}/stats" if slug else config.api_url("stats")
    try:
        client, headers = _connect(config)
        if watch:
            print_warning(console, "Watch mode is not supported yet. Showing a single snapshot.")
        if not slug and output_format is OutputFormat.TABLE:
            console.print("📊 Fetching resource usage statistics...")
        try:
            response = client.get(url, headers=headers)
        except HTTPStatusError as e:
            raise _api_error(
                e,
                "fetch stats",
                not_found=f"Deployment '{slug}' not found." if slug else "Stats endpoint not found.",
                forbidden="Access denied. You may not have permission to view stats.",
            ) from e
    except ForgeError as e:
        handle_cli_error(e, console)
        return

    data = response.data if isinstance(response.data, dict) else {}
    if output_format is OutputFormat.JSON:
        console.print_json(json.dumps(data))
    elif isinstance(data.get("deployment"), dict):
        _print_deployment_stats(data["deployment"])
    elif isinstance(data.get("deployments"), list):
        _print_account_stats(_deployments_from(data), data.get("summary"))
    else:
        print_info(console, "No stats available.")


def project_slug(project_root: Path) -> str:
    """Slug the deployment server knows this project by.

    Raises:
        ProjectConfigError: forgekit.json is missing or invalid
    """
    project = ProjectStore(project_root).load()
    if project.deployment is not None:
        return project.deployment.slug
    if project.slug:
        return project.slug
    if project.project_name:
        return slugify(project.project_name)
    raise ForgeError("Project slug not found in forgekit.json.")


def secrets_set(
    file: Path = typer.Argument(..., help="Path to the .env file to upload (e.g. .env, .env.local, .env.production)"),
    create: bool = typer.Option(False, "--create", help="Create the project on the server if it does not exist"),
):
    """Upload a .env file for deployment."""
    config = load_config()
    try:
        if not file.is_file():
            raise ForgeError(f"File not found: {file}")
        if not file.name.startswith(ENV_FILE_PREFIX):
            raise ForgeError(
                f"Invalid file type: {file}. Must be a .env, .env.local, or .env.production style file."
            )
        slug = project_slug(Path.cwd())
        denied = f'Access denied for project "{slug}".'
        console.print(f"🔐 Uploading {file}...")

        client, headers = _connect(config)
        try:
            client.get(config.api_url(f"projects/{slug}"), headers=headers)
        except HTTPStatusError as e:
            if e.status != 404:
                raise _api_error(e, "verify project", not_found="", forbidden=denied) from e
            if not create:
                raise ForgeError(
                    f'Project "{slug}" does not exist on the server.',
                    hints=["Run `forge deploy` first, or pass --create to create it"],
                ) from e
            try:
                client.post(config.api_url("projects"), json_body={"slug": slug}, headers=headers)
            except HTTPStatusError as create_error:
                raise _api_error(
                    create_error,
                    "create project",
                    not_found=f'Project "{slug}" could not be created.',
                    forbidden=denied,
                ) from create_error
            print_success(console, f'Project "{slug}" created.')

        with open(file, "rb") as handle:
            try:
                client.post(
                    config.api_url(f"env/{slug}"),
                    files={"file": (file.name, handle, "text/plain")},
                    headers=headers,
                )
            except HTTPStatusError as e:
                raise _api_error(
                    e,
                    "upload secrets",
                    not_found=f'Project "{slug}" not found on the server.',
                    forbidden=denied,
                ) from e
    except ForgeError as e:
        handle_cli_error(e, console)
        return

    print_success(console, f'Secrets uploaded for project "{slug}"')


def register_manage_commands(app: typer.Typer, shared_console: Console):
    """Register deployment management commands with the main Typer app.

    Args:
        app: Main Typer application
        shared_console: Shared Rich console instance
    """
    global console
    console = shared_console

    app.command("list")(list_deployments)
    app.command("ls", hidden=True)(list_deployments)
    app.command("deployments:list")(deployments_list)
    app.command()(logs)
    app.command()(stats)
    app.command("secrets:set")(secrets_set)

from __future__ import annotations

import json
import logging
import secrets
import threading
import webbrowser
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from mcp_env_manager.config import ENCRYPTION_KEY_ENV_VAR, STORAGE_DIR
from mcp_env_manager.package_manager import PackageManagerError
from mcp_env_manager.profiles import ProfileError
from mcp_env_manager.reconcile import CycleReport
from mcp_env_manager.registry import RegistryError
from mcp_env_manager.runner import RunnerError, parse_command, run_with_env
from mcp_env_manager.service import EnvManagerService, OrphanError, build_service
from mcp_env_manager.settings import SettingsError
from mcp_env_manager.storage import PersistenceError
from mcp_env_manager.vault import VaultError, generate_encryption_key, resolve_key_material, store_keyring_key

app = typer.Typer(help="MCP Env Manager: encrypted env profiles and local MCP server packages")
profile_app = typer.Typer(help="Manage environment profiles")
packages_app = typer.Typer(help="Manage locally installed server packages")
config_app = typer.Typer(help="Show and change installation settings")
app.add_typer(profile_app, name="profile")
app.add_typer(packages_app, name="packages")
app.add_typer(config_app, name="config")

console = Console()

LOOPBACK_HOSTS = {"127.0.0.1", "localhost", "::1"}
HANDLED_ERRORS = (
    PersistenceError,
    ProfileError,
    VaultError,
    RegistryError,
    PackageManagerError,
    OrphanError,
    SettingsError,
    RunnerError,
)


@dataclass
class CliState:
    storage_dir: Path
    service: EnvManagerService | None = None


def _service(ctx: typer.Context) -> EnvManagerService:
    state: CliState = ctx.obj
    if state.service is None:
        try:
            state.service = build_service(state.storage_dir)
        except HANDLED_ERRORS as exc:
            _fail(exc)
    return state.service


def _fail(exc: Exception) -> NoReturn:
    console.print(f"[red]{exc}[/red]")
    output = getattr(exc, "output", "")
    if output:
        console.print(output, markup=False, highlight=False)
    raise typer.Exit(code=1) from exc


@app.callback()
def main(
    ctx: typer.Context,
    storage_dir: Path = typer.Option(STORAGE_DIR, "--storage-dir", help="Where profiles, settings and the registry live"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    ctx.obj = CliState(storage_dir=storage_dir)


@app.command("init-key")
def init_key(
    force: bool = typer.Option(False, "--force", help="Replace a key already in the keyring"),
    show: bool = typer.Option(False, "--show", help="Print the generated key"),
) -> None:
    """Generate an encryption key and store it in the OS keyring."""
    if resolve_key_material() and not force:
        console.print("[yellow]An encryption key is already available[/yellow]")
        raise typer.Exit(code=0)

    key = generate_encryption_key()
    try:
        store_keyring_key(key)
    except VaultError as exc:
        console.print(f"[yellow]Keyring unavailable ({exc}); set {ENCRYPTION_KEY_ENV_VAR} instead[/yellow]")
        console.print(key)
        raise typer.Exit(code=1) from exc

    console.print("[green]Encryption key stored in the OS keyring[/green]")
    if show:
        console.print(key)


@profile_app.command("create")
def profile_create(
    ctx: typer.Context,
    name: str,
    description: str | None = typer.Option(None, "--description", "-d"),
) -> None:
    """Create a profile."""
    try:
        profile = _service(ctx).create_profile(name, description)
    except HANDLED_ERRORS as exc:
        _fail(exc)
    console.print(f"[green]Profile created:[/green] {profile.id}")


@profile_app.command("list")
def profile_list(ctx: typer.Context) -> None:
    """List profiles."""
    service = _service(ctx)
    active = service.active_profile_id()
    table = Table("", "ID", "Name", "Variables", "Updated")
    for profile in service.list_profiles():
        table.add_row(
            "*" if profile.id == active else "",
            profile.id,
            profile.name,
            str(len(profile.variables)),
            profile.updated_at.isoformat(timespec="seconds"),
        )
    console.print(table)


@profile_app.command("show")
def profile_show(ctx: typer.Context, profile_id: str) -> None:
    """Show a profile with sensitive values masked."""
    service = _service(ctx)
    try:
        profile = service.get_profile(profile_id)
        variables = service.list_vars(profile_id)
    except HANDLED_ERRORS as exc:
        _fail(exc)

    console.print(f"[bold]{profile.name}[/bold] ({profile.id})")
    if profile.description:
        console.print(profile.description)
    table = Table("Variable", "Value", "Sensitive", "Description")
    for name, env_var in variables.items():
        table.add_row(name, env_var.value, "yes" if env_var.sensitive else "", env_var.description or "")
    console.print(table)


@profile_app.command("update")
def profile_update(
    ctx: typer.Context,
    profile_id: str,
    name: str | None = typer.Option(None, "--name"),
    description: str | None = typer.Option(None, "--description", "-d"),
) -> None:
    """Rename a profile or change its description."""
    try:
        _service(ctx).update_profile(profile_id, name, description)
    except HANDLED_ERRORS as exc:
        _fail(exc)
    console.print(f"[green]Profile updated:[/green] {profile_id}")


@profile_app.command("delete")
def profile_delete(
    ctx: typer.Context,
    profile_id: str,
    force: bool = typer.Option(False, "--force", help="Delete even if it is the active profile"),
) -> None:
    """Delete a profile."""
    service = _service(ctx)
    if profile_id == service.active_profile_id() and not force:
        console.print("[red]Cannot delete the active profile without --force[/red]")
        raise typer.Exit(code=1)
    try:
        service.delete_profile(profile_id)
    except HANDLED_ERRORS as exc:
        _fail(exc)
    console.print(f"[green]Profile deleted:[/green] {profile_id}")


@profile_app.command("activate")
def profile_activate(ctx: typer.Context, profile_id: str) -> None:
    """Make a profile the active one."""
    try:
        _service(ctx).set_active_profile(profile_id)
    except HANDLED_ERRORS as exc:
        _fail(exc)
    console.print(f"[green]Active profile:[/green] {profile_id}")


@profile_app.command("set-var")
def profile_set_var(
    ctx: typer.Context,
    profile_id: str,
    name: str,
    value: str | None = typer.Argument(None, help="Prompted for (hidden) when omitted"),
    sensitive: bool = typer.Option(False, "--sensitive", "-s", help="Encrypt the value at rest"),
    description: str | None = typer.Option(None, "--description", "-d"),
) -> None:
    """Set a variable in a profile."""
    if value is None:
        value = typer.prompt(f"Value for {name}", hide_input=sensitive)
    try:
        _service(ctx).set_var(profile_id, name, value, sensitive, description)
    except HANDLED_ERRORS as exc:
        _fail(exc)
    console.print(f"[green]{name} stored in {profile_id}[/green]")


@profile_app.command("unset-var")
def profile_unset_var(ctx: typer.Context, profile_id: str, name: str) -> None:
    """Remove a variable from a profile."""
    try:
        _service(ctx).delete_var(profile_id, name)
    except HANDLED_ERRORS as exc:
        _fail(exc)
    console.print(f"[green]{name} removed from {profile_id}[/green]")


@profile_app.command("export")
def profile_export(
    ctx: typer.Context,
    profile_id: str,
    fmt: str = typer.Option("dotenv", "--format", "-f", help="dotenv, json or shell"),
) -> None:
    """Print a profile's variables in plaintext."""
    if fmt not in {"dotenv", "json", "shell"}:
        console.print(f"[red]Unknown format: {fmt}[/red]")
        raise typer.Exit(code=1)
    try:
        output = _service(ctx).render_export(profile_id, fmt)  # type: ignore[arg-type]
    except HANDLED_ERRORS as exc:
        _fail(exc)
    typer.echo(output, nl=False)


@packages_app.command("list")
def packages_list(ctx: typer.Context) -> None:
    """List installed packages and the host entries that use them."""
    table = Table("Package", "Version", "Used by", "Local path")
    for package in _service(ctx).list_packages():
        users = ", ".join(f"{ref.platform}:{ref.server_name}" for ref in package.used_by_configs)
        table.add_row(package.name, package.version, users or "[yellow]orphan[/yellow]", package.local_path)
    console.print(table)


@packages_app.command("install")
def packages_install(
    ctx: typer.Context,
    name: str,
    version: str | None = typer.Option(None, "--version"),
) -> None:
    """Install a package into the local installation directory."""
    try:
        package = _service(ctx).install_package(name, version)
    except HANDLED_ERRORS as exc:
        _fail(exc)
    console.print(f"[green]Installed {package.name} {package.version}[/green]")


@packages_app.command("update")
def packages_update(
    ctx: typer.Context,
    name: str,
    version: str | None = typer.Option(None, "--version"),
) -> None:
    """Reinstall a package at the latest (or given) version."""
    try:
        package = _service(ctx).update_package(name, version)
    except HANDLED_ERRORS as exc:
        _fail(exc)
    console.print(f"[green]{package.name} is at {package.version}[/green]")


@packages_app.command("remove-orphan")
def packages_remove_orphan(
    ctx: typer.Context,
    name: str,
    keep_files: bool = typer.Option(False, "--keep-files", help="Only drop the registry entry"),
) -> None:
    """Remove a package no host config uses anymore."""
    try:
        _service(ctx).remove_orphan(name, delete_files=not keep_files)
    except HANDLED_ERRORS as exc:
        _fail(exc)
    console.print(f"[green]Removed {name}[/green]")


def _print_report(report: CycleReport) -> None:
    console.print(f"Observed {report.observed} server entries")
    for name in report.installed:
        console.print(f"[green]installed[/green] {name}")
    for name, error in report.failed.items():
        console.print(f"[red]failed[/red] {name}: {error}")
    for ref in report.unmanaged:
        console.print(f"[dim]unmanaged[/dim] {ref.platform}:{ref.server_name}")
    for name in report.orphaned:
        console.print(f"[yellow]orphan[/yellow] {name}")
    for match in report.ambiguous:
        console.print(
            f"[yellow]ambiguous[/yellow] {match.reference.platform}:{match.reference.server_name} "
            f"-> {', '.join(match.candidates)}"
        )
    for platform, error in report.parse_errors.items():
        console.print(f"[red]parse error[/red] {platform}: {error}")
    for entry, error in report.skipped.items():
        console.print(f"[yellow]skipped[/yellow] {entry}: {error}")


@app.command("reconcile")
def reconcile(ctx: typer.Context) -> None:
    """Run one reconciliation cycle against every enabled host config."""
    try:
        report = _service(ctx).reconcile_now()
    except HANDLED_ERRORS as exc:
        _fail(exc)
    _print_report(report)


@app.command("watch")
def watch(ctx: typer.Context) -> None:
    """Watch host configs and reconcile on every change until interrupted."""
    service = _service(ctx)
    try:
        _print_report(service.start_watching())
    except HANDLED_ERRORS as exc:
        service.stop_watching()
        _fail(exc)

    console.print("[green]Watching host configs, Ctrl-C to stop[/green]")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        service.stop_watching()


@config_app.command("show")
def config_show(ctx: typer.Context) -> None:
    """Print the installation settings."""
    typer.echo(_service(ctx).settings.current.model_dump_json(indent=2, by_alias=True))


@config_app.command("watcher")
def config_watcher(
    ctx: typer.Context,
    host: str,
    enabled: bool | None = typer.Option(None, "--enable/--disable"),
    config_path: str | None = typer.Option(None, "--path", help="Host config file to watch"),
) -> None:
    """Enable, disable or repoint a host watcher."""
    try:
        config = _service(ctx).configure_watcher(host, enabled, config_path)
    except HANDLED_ERRORS as exc:
        _fail(exc)
    typer.echo(json.dumps(config.model_dump(by_alias=True)["watchers"][host], indent=2))


@config_app.command("installation")
def config_installation(
    ctx: typer.Context,
    installation_dir: str | None = typer.Option(None, "--dir"),
    package_manager: str | None = typer.Option(None, "--package-manager", help="npm, yarn or pnpm"),
    auto_localize: bool | None = typer.Option(None, "--auto-localize/--no-auto-localize"),
) -> None:
    """Change where and how packages are installed."""
    try:
        config = _service(ctx).configure_installation(installation_dir, package_manager, auto_localize)  # type: ignore[arg-type]
    except HANDLED_ERRORS as exc:
        _fail(exc)
    typer.echo(config.package_manager.model_dump_json(indent=2, by_alias=True))


@config_app.command("notifications")
def config_notifications(
    ctx: typer.Context,
    on_new_server: bool | None = typer.Option(None, "--new-server/--no-new-server"),
    on_update: bool | None = typer.Option(None, "--updates/--no-updates"),
) -> None:
    """Toggle notifications."""
    try:
        config = _service(ctx).configure_notifications(on_new_server, on_update)
    except HANDLED_ERRORS as exc:
        _fail(exc)
    typer.echo(config.notifications.model_dump_json(indent=2, by_alias=True))


@app.command("run")
def run_command(
    ctx: typer.Context,
    command: str = typer.Argument(..., help="Command string to execute"),
    profile: str | None = typer.Option(None, "--profile", "-p", help="Profile id (defaults to the active one)"),
) -> None:
    """Run a command with a profile's variables in its environment."""
    try:
        run_context = _service(ctx).build_run_context(profile)
        code = run_with_env(parse_command(command), run_context.injected_env)
    except HANDLED_ERRORS as exc:
        _fail(exc)
    raise typer.Exit(code=code)


@app.command("serve")
def serve(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", "--host", help="Bind host (loopback only)"),
    port: int = typer.Option(8765, "--port", help="Bind port"),
    open_browser: bool = typer.Option(False, "--open-browser", help="Open the API docs in a browser"),
    auth_token: str | None = typer.Option(None, "--auth-token", help="Token for mutating and export endpoints"),
    watch_hosts: bool = typer.Option(True, "--watch/--no-watch", help="Watch host configs while serving"),
) -> None:
    """Run the local tool API."""
    if host not in LOOPBACK_HOSTS:
        console.print("[red]API host must be loopback (127.0.0.1, localhost, ::1)[/red]")
        raise typer.Exit(code=1)

    service = _service(ctx)
    token = auth_token or secrets.token_urlsafe(24)
    url = f"http://{host}:{port}"

    import uvicorn

    from mcp_env_manager.api import create_app

    console.print(f"[green]API:[/green] {url}")
    console.print("[yellow]Use this token for write and export calls (X-MCP-Env-Token):[/yellow]")
    console.print(token)

    if open_browser:
        webbrowser.open(f"{url}/docs", new=1, autoraise=True)

    try:
        if watch_hosts:
            service.start_watching()
        uvicorn.run(create_app(service, token), host=host, port=port, log_level="info")
    except HANDLED_ERRORS as exc:
        _fail(exc)
    except OSError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        service.stop_watching()


if __name__ == "__main__":
    app()

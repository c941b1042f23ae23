"""CLI entry point for boardsync."""

import asyncio
import json as jsonmod
import logging
from pathlib import Path

import click

from boardsync.app_state import AppState
from boardsync.boards_config import BoardsConfig
from boardsync.config import (
    ProjectConfig,
    get_config_value,
    list_config,
    load_project_config_or_default,
    set_config_value,
)
from boardsync.discovery import ArduinoCliBoardsService, DiscoveryError, DiscoveryWatcher
from boardsync.messages import OPEN_BOARDS_DIALOG, ClickMessageService, CommandRegistry
from boardsync.notifications import NotificationCenter
from boardsync.packages import ArduinoCliPackages, PackageError
from boardsync.protocol import Board, Port
from boardsync.provider import BoardsServiceProvider
from boardsync.storage import (
    LATEST_BOARDS_CONFIG,
    LATEST_VALID_BOARDS_CONFIG,
    JsonFileStore,
    StorageError,
)

_ERRORS = (DiscoveryError, PackageError, StorageError)


@click.group()
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              help="Override [logging] level from boardsync.toml.")
@click.pass_context
def main(ctx, log_level):
    """Keep the selected board and port in sync with attached devices."""
    project_dir = Path.cwd()
    config = load_project_config_or_default(project_dir)
    level = (log_level or config.logging.level).upper()
    logging.basicConfig(level=getattr(logging, level, logging.WARNING),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.obj = {"project_dir": project_dir, "config": config}


def _open_boards_dialog(name):
    click.echo(f"Select a board again with: boardsync select --board \"{name}\" --fqbn <FQBN> --port <PORT>")


def _build_provider(ctx, *, launch_url=None, interactive=False):
    """Wire a provider to arduino-cli discovery and the project's state file."""
    project_dir: Path = ctx.obj["project_dir"]
    config: ProjectConfig = ctx.obj["config"]
    commands = CommandRegistry()
    commands.register(OPEN_BOARDS_DIALOG, _open_boards_dialog)
    return BoardsServiceProvider(
        boards_service=ArduinoCliBoardsService(cli=config.discovery.cli, timeout=config.discovery.timeout),
        notification_center=NotificationCenter(),
        store=JsonFileStore(config.storage_path(project_dir)),
        message_service=ClickMessageService(interactive=interactive),
        command_service=commands,
        app_state=AppState(),
        launch_url=launch_url,
    )


async def _start(provider):
    provider.on_start()
    provider.app_state.reach("ready")
    await provider.reconciled()
    await provider.idle()


def _fail(e, use_json=False):
    if use_json:
        click.echo(jsonmod.dumps({"error": str(e)}), err=True)
    else:
        click.echo(f"Error: {e}", err=True)
    raise SystemExit(1)


def _format_board(board):
    marker = "*" if board.selected else " "
    address = board.port.address if board.port else "-"
    protocol = board.port.protocol if board.port else "-"
    fqbn = board.fqbn or "(no FQBN)"
    return f"{marker} {address:<25} {protocol:<9} {board.name:<28} {fqbn:<28} {board.state.name.lower()}"


@main.command()
@click.option("--json", "use_json", is_flag=True, help="Output JSON.")
@click.pass_context
def ports(ctx, use_json):
    """List available ports."""
    config: ProjectConfig = ctx.obj["config"]
    service = ArduinoCliBoardsService(cli=config.discovery.cli, timeout=config.discovery.timeout)
    try:
        state = asyncio.run(service.snapshot())
    except DiscoveryError as e:
        _fail(e, use_json)

    if use_json:
        click.echo(jsonmod.dumps([p.to_dict() for p in state.ports], indent=2))
        return
    if not state.ports:
        click.echo("No ports found.")
        return
    for p in state.ports:
        label = f" ({p.label})" if p.label and p.label != p.address else ""
        click.echo(f"  {p.address:<25} {p.protocol}{label}")


@main.command()
@click.option("--json", "use_json", is_flag=True, help="Output JSON.")
@click.pass_context
def boards(ctx, use_json):
    """List available boards, with the current selection marked."""
    provider = _build_provider(ctx)

    async def _run():
        try:
            await _start(provider)
            return provider.available_boards
        finally:
            provider.on_stop()

    try:
        available = asyncio.run(_run())
    except _ERRORS as e:
        _fail(e, use_json)

    if use_json:
        click.echo(jsonmod.dumps([b.to_dict() for b in available], indent=2))
        return
    if not available:
        click.echo("No boards available. Is a board connected?")
        return
    for b in available:
        click.echo(_format_board(b))


@main.command()
@click.option("--board", "board_name", required=True, type=str, help="Board name (e.g. 'Arduino Uno').")
@click.option("--fqbn", type=str, help="Fully qualified board name (e.g. arduino:avr:uno).")
@click.option("--port", "address", type=str, help="Port address (e.g. /dev/ttyACM0, COM5).")
@click.option("--protocol", type=str, default="serial", show_default=True, help="Port protocol.")
@click.pass_context
def select(ctx, board_name, fqbn, address, protocol):
    """Select a board and port."""
    provider = _build_provider(ctx)
    config = BoardsConfig(
        selected_board=Board(name=board_name, fqbn=fqbn),
        selected_port=Port(address=address, protocol=protocol) if address else None,
    )

    async def _run():
        try:
            await _start(provider)
            await provider.set_boards_config(config)
            if provider.can_upload_to(silent=True):
                uploadable = True
            else:
                uploadable = False
                provider.can_upload_to(silent=False)
            await provider.idle()
            return provider.boards_config, uploadable
        finally:
            provider.on_stop()

    try:
        selected, uploadable = asyncio.run(_run())
    except _ERRORS as e:
        _fail(e)

    click.echo(f"Selected {selected}")
    if not uploadable:
        click.echo("The selection can be used to verify but not to upload.")


@main.command()
@click.option("--json", "use_json", is_flag=True, help="Output JSON.")
@click.pass_context
def status(ctx, use_json):
    """Show the persisted board selections."""
    project_dir: Path = ctx.obj["project_dir"]
    config: ProjectConfig = ctx.obj["config"]
    store = JsonFileStore(config.storage_path(project_dir))

    async def _load():
        return await store.get(LATEST_BOARDS_CONFIG), await store.get(LATEST_VALID_BOARDS_CONFIG)

    try:
        latest, latest_valid = asyncio.run(_load())
    except StorageError as e:
        _fail(e, use_json)

    # Query string accepted by `watch --launch-url` to restore the valid selection.
    query = BoardsConfig.from_dict(latest_valid).to_search_query() if latest_valid else None
    if use_json:
        click.echo(jsonmod.dumps({"latest": latest, "latest_valid": latest_valid, "query": query}, indent=2))
        return
    click.echo(f"Latest selection:       {BoardsConfig.from_dict(latest) if latest else 'N/A'}")
    click.echo(f"Latest valid selection: {BoardsConfig.from_dict(latest_valid) if latest_valid else 'N/A'}")
    if query:
        click.echo(f"Launch URL query:       ?{query}")


@main.command()
@click.option("--launch-url", type=str, help="URL with fqbn/name/address/protocol query parameters to restore from.")
@click.option("--duration", type=float, default=None, help="Stop after this many seconds.")
@click.pass_context
def watch(ctx, launch_url, duration):
    """Follow attached boards and keep the selection in sync."""
    config: ProjectConfig = ctx.obj["config"]
    provider = _build_provider(ctx, launch_url=launch_url, interactive=True)
    watcher = DiscoveryWatcher(provider.boards_service, provider.notification_center,
                               interval=config.discovery.poll_interval)

    provider.on_boards_config_changed.subscribe(lambda c: click.echo(f"Selection: {c}"))

    def _on_boards(available):
        click.echo("Available boards:")
        for b in available:
            click.echo(f"  {_format_board(b)}")

    provider.on_available_boards_changed.subscribe(_on_boards)

    async def _run():
        provider.on_start()
        provider.app_state.reach("ready")
        await provider.reconciled()
        runner = asyncio.ensure_future(watcher.run())
        try:
            if duration is not None:
                await asyncio.sleep(duration)
                watcher.stop()
            await runner
        finally:
            watcher.stop()
            await provider.idle()
            provider.on_stop()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Stopped.")
    except _ERRORS as e:
        _fail(e)


@main.command()
@click.argument("query", required=False)
@click.option("--json", "use_json", is_flag=True, help="Output JSON.")
@click.pass_context
def search(ctx, query, use_json):
    """Search boards of installed and known platforms."""
    provider = _build_provider(ctx)
    try:
        found = asyncio.run(provider.search_boards(query))
    except DiscoveryError as e:
        _fail(e, use_json)

    if use_json:
        click.echo(jsonmod.dumps([b.to_dict() for b in found], indent=2))
        return
    click.echo(f"Boards ({len(found)}):\n")
    for b in found:
        click.echo(f"  {b.name:<40} {b.fqbn or ''}")


@main.command("user-fields")
@click.option("--json", "use_json", is_flag=True, help="Output JSON.")
@click.pass_context
def user_fields(ctx, use_json):
    """Show the upload fields the selected board asks for."""
    provider = _build_provider(ctx)

    async def _run():
        try:
            await _start(provider)
            return provider.boards_config, await provider.selected_board_user_fields()
        finally:
            provider.on_stop()

    try:
        selected, fields = asyncio.run(_run())
    except _ERRORS as e:
        _fail(e, use_json)

    if use_json:
        click.echo(jsonmod.dumps([f.to_dict() for f in fields], indent=2))
        return
    if not fields:
        click.echo(f"No upload fields for {selected}.")
        return
    for f in fields:
        secret = " (secret)" if f.secret else ""
        click.echo(f"  {f.name:<20} {f.label}{secret}")


@main.group()
def core():
    """Install or uninstall board packages."""
    pass


def _run_package_op(ctx, op):
    config: ProjectConfig = ctx.obj["config"]
    provider = _build_provider(ctx)
    packages = ArduinoCliPackages(provider.notification_center, cli=config.discovery.cli)

    async def _run():
        try:
            await _start(provider)
            package = await op(packages)
            await provider.idle()
            return package, provider.boards_config
        finally:
            provider.on_stop()

    try:
        return asyncio.run(_run())
    except _ERRORS as e:
        _fail(e)


@core.command("install")
@click.argument("package_id")
@click.option("--version", type=str, help="Platform version.")
@click.option("--additional-urls", type=str, help="Comma-separated package index URLs.")
@click.pass_context
def core_install(ctx, package_id, version, additional_urls):
    """Install a board package (e.g. arduino:avr)."""
    urls = [u for u in (additional_urls or "").split(",") if u]
    package, selected = _run_package_op(ctx, lambda p: p.install(package_id, version, urls or None))
    click.echo(f"Installed {package.id}@{package.installed_version} ({len(package.boards)} boards)")
    click.echo(f"Selection: {selected}")


@core.command("uninstall")
@click.argument("package_id")
@click.pass_context
def core_uninstall(ctx, package_id):
    """Uninstall a board package."""
    package, selected = _run_package_op(ctx, lambda p: p.uninstall(package_id))
    click.echo(f"Uninstalled {package.id}")
    click.echo(f"Selection: {selected}")


@main.command("config")
@click.argument("key", required=False)
@click.argument("value", required=False)
@click.option("--list", "show_list", is_flag=True, help="Show all config values.")
@click.pass_context
def config_cmd(ctx, key, value, show_list):
    """Get or set boardsync.toml configuration values."""
    project_dir = ctx.obj["project_dir"]

    if show_list:
        values = list_config(project_dir)
        if not values:
            click.echo("No configuration found.")
            return
        for k, v in sorted(values.items()):
            click.echo(f"  {k} = {v}")
        return

    if key and value:
        try:
            set_config_value(project_dir, key, value)
        except ValueError as e:
            _fail(e)
        click.echo(f"Set {key} = {value}")
        return

    if key:
        val = get_config_value(project_dir, key)
        if val is None:
            click.echo(f"{key} is not set.")
        else:
            click.echo(f"{key} = {val}")
        return

    click.echo("Usage: boardsync config <KEY> [VALUE] or boardsync config --list")

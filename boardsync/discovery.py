"""Device discovery: attached boards and available ports."""

from __future__ import annotations

import asyncio
import json
import logging
import subprocess
from abc import ABC, abstractmethod

from serial.tools.list_ports import comports

from boardsync.notifications import NotificationCenter
from boardsync.protocol import (
    AttachedBoardsChangeEvent,
    AttachedBoardsState,
    Board,
    Port,
    UserField,
)

logger = logging.getLogger(__name__)


class DiscoveryError(Exception):
    """Raised when the discovery backend fails or returns garbage."""
    pass


class BoardsService(ABC):
    """Source of attached boards and available ports."""

    @abstractmethod
    async def get_attached_boards(self) -> list[Board]:
        """Boards recognized on a port. Every returned board carries its port."""

    @abstractmethod
    async def get_available_ports(self) -> list[Port]:
        """Every currently visible port, recognized or not."""

    async def search_boards(self, query: str | None = None) -> list[Board]:
        """Boards that could be installed or selected. Optional."""
        return []

    async def get_board_user_fields(self, fqbn: str, protocol: str) -> list[UserField]:
        """Fields the upload tool of ``fqbn`` asks for on ``protocol``. Optional."""
        return []

    async def snapshot(self) -> AttachedBoardsState:
        boards, ports = await asyncio.gather(self.get_attached_boards(), self.get_available_ports())
        return AttachedBoardsState(boards=tuple(boards), ports=tuple(ports))


def package_id_from_fqbn(fqbn: str | None) -> str | None:
    """vendor:arch:board[:options] -> vendor:arch."""
    if not fqbn:
        return None
    parts = fqbn.split(":")
    if len(parts) < 3:
        return None
    return ":".join(parts[:2])


def _platform_id(entry: dict) -> str | None:
    platform = entry.get("platform") or {}
    metadata = platform.get("metadata") or {}
    return metadata.get("id") or platform.get("id") or package_id_from_fqbn(entry.get("fqbn"))


def _parse_board(entry: dict, port: Port | None = None) -> Board:
    fqbn = entry.get("fqbn") or None
    return Board(
        name=entry.get("name") or fqbn or "Unknown",
        fqbn=fqbn,
        package_id=_platform_id(entry),
        port=port,
    )


def parse_board_list(data) -> AttachedBoardsState:
    """Parse `arduino-cli board list --format json` output.

    Newer releases wrap entries in {"detected_ports": [...]}, older ones
    print the bare list.
    """
    if isinstance(data, dict):
        entries = data.get("detected_ports", [])
    elif isinstance(data, list):
        entries = data
    else:
        raise DiscoveryError(f"Unexpected board list output: {type(data).__name__}")

    boards: list[Board] = []
    ports: list[Port] = []
    for entry in entries:
        port_info = entry.get("port", {})
        address = port_info.get("address", "")
        if not address:
            continue
        port = Port(
            address=address,
            protocol=port_info.get("protocol", "serial"),
            label=port_info.get("label", ""),
        )
        ports.append(port)
        for match in entry.get("matching_boards") or []:
            boards.append(_parse_board(match, port))
    return AttachedBoardsState(boards=tuple(boards), ports=tuple(ports))


def parse_board_listall(data) -> list[Board]:
    """Parse `arduino-cli board listall --format json` output."""
    if not isinstance(data, dict):
        raise DiscoveryError(f"Unexpected board listall output: {type(data).__name__}")
    return [_parse_board(entry) for entry in data.get("boards") or []]


def parse_user_fields(properties, protocol: str) -> list[UserField]:
    """Upload user fields from `board details --show-properties` output.

    The upload tool is ``upload.tool.<protocol>`` (or plain ``upload.tool``),
    and its fields are the ``tools.<tool>.upload.field.<name>=<label>`` entries.
    """
    props = {}
    for line in properties or []:
        key, sep, value = line.partition("=")
        if sep:
            props[key] = value

    tool = props.get(f"upload.tool.{protocol}") or props.get("upload.tool")
    if not tool:
        return []
    prefix = f"tools.{tool}.upload.field."
    fields = []
    for key, label in props.items():
        name = key[len(prefix):]
        if not key.startswith(prefix) or "." in name:
            continue
        secret = props.get(f"{prefix}{name}.secret", "").lower() == "true"
        fields.append(UserField(tool_id=tool, name=name, label=label, secret=secret))
    return fields


def list_serial_ports() -> list[Port]:
    """Serial ports as seen by pyserial, without board identity."""
    return [Port(address=p.device, protocol="serial", label=p.description or "") for p in comports()]


class ArduinoCliBoardsService(BoardsService):
    """Discovery through arduino-cli, falling back to pyserial when it is not installed."""

    def __init__(self, cli: str = "arduino-cli", timeout: float = 10):
        self.cli = cli
        self.timeout = timeout

    def _run_json(self, *args: str):
        cmd = [self.cli, *args, "--format", "json"]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise DiscoveryError(f"{' '.join(cmd)} timed out after {self.timeout}s") from e

        if result.returncode != 0:
            raise DiscoveryError(
                f"{' '.join(cmd)} failed with exit code {result.returncode}: {result.stderr.strip()}"
            )
        try:
            return json.loads(result.stdout or "null")
        except json.JSONDecodeError as e:
            raise DiscoveryError(f"Invalid JSON from {' '.join(cmd)}: {e}") from e

    def _snapshot_sync(self) -> AttachedBoardsState:
        try:
            data = self._run_json("board", "list")
        except FileNotFoundError:
            logger.info("%s not found, listing serial ports with pyserial", self.cli)
            return AttachedBoardsState(ports=tuple(list_serial_ports()))
        return parse_board_list(data)

    async def snapshot(self) -> AttachedBoardsState:
        return await asyncio.to_thread(self._snapshot_sync)

    async def get_attached_boards(self) -> list[Board]:
        return list((await self.snapshot()).boards)

    async def get_available_ports(self) -> list[Port]:
        return list((await self.snapshot()).ports)

    async def search_boards(self, query: str | None = None) -> list[Board]:
        args = ["board", "listall"]
        if query:
            args.append(query)
        try:
            data = await asyncio.to_thread(self._run_json, *args)
        except FileNotFoundError as e:
            raise DiscoveryError(f"{self.cli} not found") from e
        return parse_board_listall(data)

    async def get_board_user_fields(self, fqbn: str, protocol: str) -> list[UserField]:
        args = ["board", "details", "-b", fqbn, "--show-properties=expanded"]
        try:
            data = await asyncio.to_thread(self._run_json, *args)
        except FileNotFoundError as e:
            raise DiscoveryError(f"{self.cli} not found") from e
        if not isinstance(data, dict):
            raise DiscoveryError(f"Unexpected board details output: {type(data).__name__}")
        return parse_user_fields(data.get("build_properties"), protocol)


class DiscoveryWatcher:
    """Polls a BoardsService and publishes changes through the notification center."""

    def __init__(
        self,
        service: BoardsService,
        notification_center: NotificationCenter,
        interval: float = 2.0,
    ):
        self.service = service
        self.notification_center = notification_center
        self.interval = interval
        self._state = AttachedBoardsState()
        self._stopped = asyncio.Event()

    @property
    def state(self) -> AttachedBoardsState:
        return self._state

    async def poll_once(self) -> AttachedBoardsChangeEvent | None:
        """Take one snapshot. Returns the fired event, or None if nothing changed."""
        new_state = await self.service.snapshot()
        event = AttachedBoardsChangeEvent(old_state=self._state, new_state=new_state)
        self._state = new_state
        if event.is_empty():
            return None
        self.notification_center.notify_attached_boards_did_change(event)
        return event

    async def run(self) -> None:
        self._stopped.clear()
        while not self._stopped.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(self._stopped.wait(), self.interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopped.set()

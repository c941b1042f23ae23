"""Board package install/uninstall through arduino-cli."""

from __future__ import annotations

import asyncio
import json
import logging
import subprocess

from boardsync.discovery import package_id_from_fqbn
from boardsync.notifications import NotificationCenter
from boardsync.protocol import Board, BoardsPackage

logger = logging.getLogger(__name__)


class PackageError(Exception):
    """Raised when arduino-cli cannot install, uninstall or list a package."""
    pass


def _boards_of(entries, package_id: str) -> tuple[Board, ...]:
    return tuple(
        Board(name=b.get("name") or b["fqbn"], fqbn=b.get("fqbn") or None, package_id=package_id)
        for b in entries or []
        if b.get("fqbn") or b.get("name")
    )


def parse_core_list(data, package_id: str) -> BoardsPackage | None:
    """Find one installed platform in `arduino-cli core list --format json` output.

    Handles both {"platforms": [...]} with per-release board lists and the
    older bare list with a flat "boards" key.
    """
    if isinstance(data, dict):
        platforms = data.get("platforms") or []
    else:
        platforms = data or []
    for platform in platforms:
        if platform.get("id") != package_id:
            continue
        version = platform.get("installed_version") or platform.get("installed")
        release = (platform.get("releases") or {}).get(version) or {}
        name = release.get("name") or platform.get("name") or package_id
        boards = release.get("boards") if release else platform.get("boards")
        return BoardsPackage(
            id=package_id,
            name=name,
            installed_version=version,
            boards=_boards_of(boards, package_id),
        )
    return None


class ArduinoCliPackages:
    """Installs platforms and announces the result on the notification center."""

    def __init__(self, notification_center: NotificationCenter, cli: str = "arduino-cli", timeout: float = 600):
        self.notification_center = notification_center
        self.cli = cli
        self.timeout = timeout

    def _run(self, *args: str) -> str:
        cmd = [self.cli, *args]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise PackageError(f"{self.cli} not found. Install from https://arduino.github.io/arduino-cli/") from e
        except subprocess.TimeoutExpired as e:
            raise PackageError(f"{' '.join(cmd)} timed out after {self.timeout}s") from e
        if result.returncode != 0:
            raise PackageError(f"{' '.join(cmd)} failed: {result.stderr.strip() or result.stdout.strip()}")
        return result.stdout

    def _installed(self, package_id: str) -> BoardsPackage | None:
        out = self._run("core", "list", "--format", "json")
        try:
            data = json.loads(out or "null")
        except json.JSONDecodeError as e:
            raise PackageError(f"Invalid JSON from core list: {e}") from e
        package = parse_core_list(data, package_id)
        if package and not package.boards:
            package = BoardsPackage(
                id=package.id,
                name=package.name,
                installed_version=package.installed_version,
                boards=self._listall(package_id),
            )
        return package

    def _listall(self, package_id: str) -> tuple[Board, ...]:
        out = self._run("board", "listall", "--format", "json")
        try:
            data = json.loads(out or "{}")
        except json.JSONDecodeError as e:
            raise PackageError(f"Invalid JSON from board listall: {e}") from e
        entries = [
            b for b in data.get("boards") or []
            if package_id_from_fqbn(b.get("fqbn")) == package_id
        ]
        return _boards_of(entries, package_id)

    async def installed(self, package_id: str) -> BoardsPackage | None:
        return await asyncio.to_thread(self._installed, package_id)

    async def install(
        self,
        package_id: str,
        version: str | None = None,
        additional_urls: list[str] | None = None,
    ) -> BoardsPackage:
        ref = f"{package_id}@{version}" if version else package_id
        args = ["core", "install", ref]
        if additional_urls:
            args += ["--additional-urls", ",".join(additional_urls)]
        await asyncio.to_thread(self._run, *args)

        package = await self.installed(package_id)
        if package is None:
            raise PackageError(f"{package_id} is not listed as installed after install")
        logger.info("Installed %s[%s] with %d boards", package.id, package.installed_version, len(package.boards))
        self.notification_center.notify_platform_did_install(package)
        return package

    async def uninstall(self, package_id: str) -> BoardsPackage:
        # The boards must be read before they disappear.
        package = await self.installed(package_id)
        if package is None:
            raise PackageError(f"{package_id} is not installed")
        await asyncio.to_thread(self._run, "core", "uninstall", package_id)

        uninstalled = BoardsPackage(id=package.id, name=package.name, boards=package.boards)
        logger.info("Uninstalled %s", package.id)
        self.notification_center.notify_platform_did_uninstall(uninstalled)
        return uninstalled

"""Persistent key-value store for selections and remembered boards."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from boardsync.config import STATE_DIRNAME, ensure_state_dir
from boardsync.protocol import Port

logger = logging.getLogger(__name__)

LATEST_VALID_BOARDS_CONFIG = "latest-valid-boards-config"
LATEST_BOARDS_CONFIG = "latest-boards-config"


class StorageError(Exception):
    """Raised when the persisted state cannot be read back."""
    pass


def last_selected_board_on_port_key(port: Port | str) -> str:
    # Only the address is part of the key, so the same address on two
    # protocols shares one entry.
    address = port if isinstance(port, str) else port.address
    return f"last-selected-board-on-port:{address}"


class KeyValueStore(ABC):
    """Scoped get/set of JSON-compatible values by string key."""

    @abstractmethod
    async def get(self, key: str):
        """Return the stored value, or None if the key was never set."""

    @abstractmethod
    async def set(self, key: str, value) -> None:
        """Store a JSON-compatible value. None clears the key."""


class MemoryStore(KeyValueStore):
    """In-process store. Values are copied in and out so callers never share them."""

    def __init__(self, data: dict | None = None):
        self._data: dict = copy.deepcopy(data) if data else {}

    async def get(self, key: str):
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value) -> None:
        if value is None:
            self._data.pop(key, None)
        else:
            self._data[key] = json.loads(json.dumps(value))

    def snapshot(self) -> dict:
        return copy.deepcopy(self._data)


class JsonFileStore(KeyValueStore):
    """All keys in a single JSON document, e.g. .boardsync/state.json.

    Writes are serialized; the newest write for a key wins.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt state file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"Corrupt state file {self.path}: expected an object")
        return data

    def _write(self, key: str, value) -> None:
        data = self._read()
        if value is None:
            data.pop(key, None)
        else:
            data[key] = value
        # Only the dedicated state directory gets the catch-all .gitignore.
        if self.path.parent.name == STATE_DIRNAME:
            ensure_state_dir(self.path.parent)
        else:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        tmp.replace(self.path)

    async def get(self, key: str):
        data = await asyncio.to_thread(self._read)
        return data.get(key)

    async def set(self, key: str, value) -> None:
        async with self._lock:
            logger.debug("Storing %s in %s", key, self.path)
            await asyncio.to_thread(self._write, key, value)

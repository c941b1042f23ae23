"""Port, board and package value types for boardsync."""

from __future__ import annotations

import re
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Port:
    """A connection endpoint reported by discovery (e.g. serial /dev/ttyUSB0)."""
    address: str
    protocol: str = "serial"
    label: str = field(default="", compare=False)

    def to_dict(self) -> dict:
        return {"address": self.address, "protocol": self.protocol, "label": self.label}

    @classmethod
    def from_dict(cls, data: dict) -> Port:
        return cls(
            address=data["address"],
            protocol=data.get("protocol", "serial"),
            label=data.get("label", "") or "",
        )

    def __str__(self) -> str:
        return f"{self.address} ({self.protocol})"


@dataclass(frozen=True)
class Board:
    """A hardware target. ``fqbn`` is unset when the board's package is missing."""
    name: str
    fqbn: str | None = None
    package_id: str | None = None
    port: Port | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "fqbn": self.fqbn,
            "package_id": self.package_id,
            "port": self.port.to_dict() if self.port else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Board:
        port = data.get("port")
        return cls(
            name=data["name"],
            fqbn=data.get("fqbn") or None,
            package_id=data.get("package_id") or None,
            port=Port.from_dict(port) if port else None,
        )


def port_same_as(left: Port | None, right: Port | None) -> bool:
    """True if both ports exist and share address and protocol."""
    if left is None or right is None:
        return False
    return left.address == right.address and left.protocol == right.protocol


def board_equals(left: Board, right: Board) -> bool:
    """Name and FQBN identity. An unset FQBN only equals another unset FQBN."""
    return left.name == right.name and left.fqbn == right.fqbn


@dataclass(frozen=True)
class UserField:
    """A value the upload tool asks the user for, e.g. a network board's password."""
    tool_id: str
    name: str
    label: str
    secret: bool = False
    value: str = ""

    def to_dict(self) -> dict:
        return {
            "tool_id": self.tool_id,
            "name": self.name,
            "label": self.label,
            "secret": self.secret,
            "value": self.value,
        }


_DIGITS = re.compile(r"(\d+)")


def _natural_key(value: str | None) -> list:
    parts = _DIGITS.split((value or "").casefold())
    # Even indexes are text, odd indexes are digit runs.
    return [(0, int(part), "") if i % 2 else (1, 0, part) for i, part in enumerate(parts)]


def natural_compare(left: str | None, right: str | None) -> int:
    """Human ordering of addresses: COM2 < COM10, case-insensitive."""
    lkey, rkey = _natural_key(left), _natural_key(right)
    if lkey < rkey:
        return -1
    if lkey > rkey:
        return 1
    return 0


@dataclass(frozen=True)
class BoardsPackage:
    """An installable platform (e.g. arduino:avr) and the boards it provides."""
    id: str
    name: str = ""
    installed_version: str | None = None
    boards: tuple[Board, ...] = ()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "installed_version": self.installed_version,
            "boards": [b.to_dict() for b in self.boards],
        }


@dataclass(frozen=True)
class AttachedBoardsState:
    """One discovery snapshot: boards with a port, plus every visible port."""
    boards: tuple[Board, ...] = ()
    ports: tuple[Port, ...] = ()


@dataclass(frozen=True)
class AttachedBoardsDiff:
    attached_boards: tuple[Board, ...] = ()
    detached_boards: tuple[Board, ...] = ()
    attached_ports: tuple[Port, ...] = ()
    detached_ports: tuple[Port, ...] = ()


def _board_on_port_same_as(left: Board, right: Board) -> bool:
    return board_equals(left, right) and port_same_as(left.port, right.port)


@dataclass(frozen=True)
class AttachedBoardsChangeEvent:
    old_state: AttachedBoardsState
    new_state: AttachedBoardsState

    def diff(self) -> AttachedBoardsDiff:
        old, new = self.old_state, self.new_state
        return AttachedBoardsDiff(
            attached_boards=tuple(
                b for b in new.boards if not any(_board_on_port_same_as(b, o) for o in old.boards)
            ),
            detached_boards=tuple(
                b for b in old.boards if not any(_board_on_port_same_as(b, n) for n in new.boards)
            ),
            attached_ports=tuple(
                p for p in new.ports if not any(port_same_as(p, o) for o in old.ports)
            ),
            detached_ports=tuple(
                p for p in old.ports if not any(port_same_as(p, n) for n in new.ports)
            ),
        )

    def is_empty(self) -> bool:
        d = self.diff()
        return not (d.attached_boards or d.detached_boards or d.attached_ports or d.detached_ports)

    def __str__(self) -> str:
        d = self.diff()
        lines = []
        for board in d.attached_boards:
            lines.append(f"  - Attached board: {board.name} on {board.port}")
        for board in d.detached_boards:
            lines.append(f"  - Detached board: {board.name} from {board.port}")
        for port in d.attached_ports:
            lines.append(f"  - New port is available on {port}")
        for port in d.detached_ports:
            lines.append(f"  - Port is no longer available on {port}")
        return "\n".join(lines)

"""Available boards: what the user can pick from right now."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from functools import cmp_to_key

from boardsync.protocol import Board, natural_compare


class BoardState(IntEnum):
    """How the identity of an available board was determined. Lower sorts first."""
    RECOGNIZED = 0  # reported by discovery
    GUESSED = 1     # remembered from an earlier selection on the same port
    INCOMPLETE = 2  # nothing known, or the selection has no live port


@dataclass(frozen=True)
class AvailableBoard(Board):
    state: BoardState = BoardState.INCOMPLETE
    selected: bool = False

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["state"] = self.state.name.lower()
        data["selected"] = self.selected
        return data


def _protocol(board: AvailableBoard) -> str | None:
    return board.port.protocol if board.port else None


def _address(board: AvailableBoard) -> str | None:
    return board.port.address if board.port else None


def compare_available_boards(left: AvailableBoard, right: AvailableBoard) -> int:
    """Serial first, then network, then anything else.

    The state only breaks ties between boards of the same protocol; the port
    address (natural order) decides the rest.
    """
    lproto, rproto = _protocol(left), _protocol(right)
    if lproto == "serial" and rproto != "serial":
        return -1
    if lproto != "serial" and rproto == "serial":
        return 1
    if lproto == "network" and rproto != "network":
        return -1
    if lproto != "network" and rproto == "network":
        return 1
    if lproto == rproto:
        if left.state < right.state:
            return -1
        if left.state > right.state:
            return 1
    return natural_compare(_address(left), _address(right))


def sort_available_boards(boards) -> list[AvailableBoard]:
    return sorted(boards, key=cmp_to_key(compare_available_boards))

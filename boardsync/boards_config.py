"""The user's selected board and port."""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import parse_qs, urlencode, urlparse

from boardsync.protocol import Board, Port, board_equals, port_same_as


@dataclass(frozen=True)
class BoardsConfig:
    selected_board: Board | None = None
    selected_port: Port | None = None

    def same_as(self, board: Board) -> bool:
        """True if ``board`` (with its port) is exactly this selection."""
        return (
            self.selected_board is not None
            and board_equals(board, self.selected_board)
            and port_same_as(self.selected_port, board.port)
        )

    def to_dict(self) -> dict:
        return {
            "selected_board": self.selected_board.to_dict() if self.selected_board else None,
            "selected_port": self.selected_port.to_dict() if self.selected_port else None,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> BoardsConfig:
        if not data:
            return cls()
        board = data.get("selected_board")
        port = data.get("selected_port")
        return cls(
            selected_board=Board.from_dict(board) if board else None,
            selected_port=Port.from_dict(port) if port else None,
        )

    @classmethod
    def from_url(cls, url: str) -> BoardsConfig | None:
        """Read a selection from launch URL query parameters.

        ``fqbn`` and ``address`` are required; ``protocol`` defaults to serial
        and ``name`` to the FQBN.
        """
        query = parse_qs(urlparse(url).query)

        def _param(key: str) -> str | None:
            values = query.get(key)
            return values[0] if values else None

        fqbn = _param("fqbn")
        address = _param("address")
        if not fqbn or not address:
            return None
        return cls(
            selected_board=Board(name=_param("name") or fqbn, fqbn=fqbn),
            selected_port=Port(address=address, protocol=_param("protocol") or "serial"),
        )

    def to_search_query(self) -> str:
        params = {}
        if self.selected_board:
            params["name"] = self.selected_board.name
            if self.selected_board.fqbn:
                params["fqbn"] = self.selected_board.fqbn
        if self.selected_port:
            params["protocol"] = self.selected_port.protocol
            params["address"] = self.selected_port.address
        return urlencode(params)

    def __str__(self) -> str:
        if not self.selected_board:
            return "<no board selected>"
        board = self.selected_board.name
        if self.selected_board.fqbn:
            board += f" [{self.selected_board.fqbn}]"
        if self.selected_port:
            return f"{board} on {self.selected_port}"
        return board

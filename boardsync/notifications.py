"""Hub for discovery and package lifecycle events."""

from __future__ import annotations

from boardsync.events import EventSource
from boardsync.protocol import AttachedBoardsChangeEvent, BoardsPackage


class NotificationCenter:
    def __init__(self):
        self.on_attached_boards_did_change = EventSource()
        self.on_platform_did_install = EventSource()
        self.on_platform_did_uninstall = EventSource()

    def notify_attached_boards_did_change(self, event: AttachedBoardsChangeEvent) -> None:
        self.on_attached_boards_did_change.fire(event)

    def notify_platform_did_install(self, package: BoardsPackage) -> None:
        self.on_platform_did_install.fire(package)

    def notify_platform_did_uninstall(self, package: BoardsPackage) -> None:
        self.on_platform_did_uninstall.fire(package)

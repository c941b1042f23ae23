"""Reconciles the user's board/port selection with the devices actually attached.

The provider owns the selected configuration, the latest discovery snapshot and
the derived list of available boards. Every trigger (discovery change, package
install/uninstall, user selection, startup restore) funnels into the same
persist -> reconcile -> notify path, so subscribers only ever observe one
consistent state.

All mutation happens on the event loop that runs the provider. Work that has
to touch the store is scheduled as background tasks; ``set_boards_config``
and the ``notify_*`` handlers return those tasks so callers can await them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace

from boardsync.app_state import AppState
from boardsync.available import (
    AvailableBoard,
    BoardState,
    compare_available_boards,
    sort_available_boards,
)
from boardsync.boards_config import BoardsConfig
from boardsync.discovery import BoardsService
from boardsync.events import DisposableCollection, EventSource
from boardsync.messages import (
    COULD_NOT_FIND_PREVIOUSLY_SELECTED,
    NO_BOARDS_SELECTED,
    NO_FQBN,
    NO_PORTS_SELECTED,
    OPEN_BOARDS_DIALOG,
    RESELECT_LATER,
    YES,
    CommandService,
    MessageService,
)
from boardsync.notifications import NotificationCenter
from boardsync.protocol import (
    AttachedBoardsChangeEvent,
    Board,
    BoardsPackage,
    Port,
    UserField,
    board_equals,
    port_same_as,
)
from boardsync.storage import (
    LATEST_BOARDS_CONFIG,
    LATEST_VALID_BOARDS_CONFIG,
    KeyValueStore,
    last_selected_board_on_port_key,
)

logger = logging.getLogger(__name__)

UNKNOWN_BOARD_NAME = "Unknown"


class WaitTimeoutError(TimeoutError):
    """Raised by wait_until_available when the board did not show up in time."""
    pass


def _plain_board(board: Board) -> Board:
    """Identity only: drops the port and any AvailableBoard extras."""
    return Board(name=board.name, fqbn=board.fqbn, package_id=board.package_id)


def _boards_changed(new: list[AvailableBoard], old: list[AvailableBoard]) -> bool:
    if len(new) != len(old):
        return True
    for left, right in zip(new, old):
        if (
            left.fqbn != right.fqbn
            or compare_available_boards(left, right) != 0
            or left.selected != right.selected
        ):
            return True
    return False


class BoardsServiceProvider:
    def __init__(
        self,
        boards_service: BoardsService,
        notification_center: NotificationCenter,
        store: KeyValueStore,
        message_service: MessageService,
        command_service: CommandService,
        app_state: AppState,
        launch_url: str | None = None,
    ):
        self.boards_service = boards_service
        self.notification_center = notification_center
        self.store = store
        self.message_service = message_service
        self.command_service = command_service
        self.app_state = app_state
        self.launch_url = launch_url

        self.on_boards_config_changed = EventSource()
        self.on_available_boards_changed = EventSource()
        self.on_available_ports_changed = EventSource()

        # Used for auto-reconnect: some boards re-enumerate on another port
        # after an upload (e.g. COM5 -> COM10 on Windows).
        self._latest_valid_boards_config: BoardsConfig | None = None
        self._latest_boards_config: BoardsConfig | None = None
        self._boards_config = BoardsConfig()
        self._attached_boards: list[Board] = []
        self._available_ports: list[Port] = []
        self._available_boards: list[AvailableBoard] = []

        self._subscriptions = DisposableCollection()
        self._tasks: set[asyncio.Task] = set()
        self._init_task: asyncio.Task | None = None
        self._hydrated = asyncio.Event()
        self._reconcile_lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()

    # -- Lifecycle -------------------------------------------------------------

    def on_start(self) -> asyncio.Task:
        """Subscribe to discovery and package events and start initialization.

        Initialization waits for the "ready" app state. Events that arrive
        earlier are queued until the persisted state has been loaded.
        """
        if self._init_task is not None:
            return self._init_task
        nc = self.notification_center
        self._subscriptions.push(nc.on_attached_boards_did_change.subscribe(self.notify_attached_boards_changed))
        self._subscriptions.push(nc.on_platform_did_install.subscribe(self.notify_platform_installed))
        self._subscriptions.push(nc.on_platform_did_uninstall.subscribe(self.notify_platform_uninstalled))
        if not self.app_state.has_reached("ready"):
            logger.debug("Deferring board reconciliation until the application is ready")
        self._init_task = self._spawn(self._initialize())
        return self._init_task

    def on_stop(self) -> None:
        self._subscriptions.dispose()
        for task in list(self._tasks):
            task.cancel()

    async def _initialize(self) -> None:
        await self.app_state.reached("ready")
        try:
            state = await self.boards_service.snapshot()
            self._attached_boards = list(state.boards)
            self._available_ports = list(state.ports)
            await self.load_state()
        finally:
            self._hydrated.set()
        self.on_available_ports_changed.fire(self.available_ports)
        await self._reconcile_available_boards()
        self.try_reconnect()

    async def reconciled(self) -> None:
        """Wait for the first reconciliation after startup. Re-raises its failure."""
        if self._init_task is None:
            raise RuntimeError("on_start() has not been called")
        await asyncio.shield(self._init_task)

    async def idle(self) -> None:
        """Wait until every pending persist/reconcile/notify chain has settled."""
        while self._tasks:
            await asyncio.wait(list(self._tasks))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Board reconciliation task failed", exc_info=task.exception())

    # -- State accessors -------------------------------------------------------

    @property
    def boards_config(self) -> BoardsConfig:
        return self._boards_config

    @property
    def latest_boards_config(self) -> BoardsConfig | None:
        return self._latest_boards_config

    @property
    def latest_valid_boards_config(self) -> BoardsConfig | None:
        return self._latest_valid_boards_config

    @property
    def attached_boards(self) -> list[Board]:
        return list(self._attached_boards)

    @property
    def available_ports(self) -> list[Port]:
        return list(self._available_ports)

    @property
    def available_boards(self) -> list[AvailableBoard]:
        return list(self._available_boards)

    # -- Selection -------------------------------------------------------------

    def set_boards_config(self, config: BoardsConfig) -> asyncio.Task:
        """Replace the selection now; persist, reconcile and notify in the background."""
        self._update_boards_config(config)
        return self._spawn(self._save_reconcile_notify())

    def _update_boards_config(self, config: BoardsConfig) -> None:
        logger.debug("Board config changed: %s", json.dumps(config.to_dict()))
        self._boards_config = config
        self._latest_boards_config = config
        if self.can_upload_to(config):
            self._latest_valid_boards_config = config

    async def _save_reconcile_notify(self) -> None:
        await self._hydrated.wait()
        try:
            await self.save_state()
        finally:
            try:
                await self._reconcile_available_boards()
            finally:
                self.on_boards_config_changed.fire(self._boards_config)

    def can_verify(self, config: BoardsConfig | None = None, *, silent: bool = True) -> bool:
        """True if a board is selected, so a build can run."""
        if config is None:
            config = self._boards_config
        if config.selected_board is None:
            if not silent:
                self._warn(NO_BOARDS_SELECTED)
            return False
        return True

    def can_upload_to(self, config: BoardsConfig | None = None, *, silent: bool = True) -> bool:
        """True if a board with an FQBN and a port are both selected."""
        if config is None:
            config = self._boards_config
        if not self.can_verify(config, silent=silent):
            return False

        name = config.selected_board.name
        if config.selected_port is None:
            if not silent:
                self._warn(NO_PORTS_SELECTED.format(name=name))
            return False
        if not config.selected_board.fqbn:
            if not silent:
                self._warn(NO_FQBN.format(name=name))
            return False
        return True

    def _warn(self, message: str) -> None:
        self._spawn(self.message_service.warn(message))

    async def wait_until_available(self, board: Board, timeout: float | None = None) -> None:
        """Wait until ``board`` shows up on ``board.port`` among the available boards.

        With a positive ``timeout`` (seconds) raises WaitTimeoutError once it
        elapses; otherwise waits indefinitely.
        """
        if board.port is None:
            raise ValueError("wait_until_available needs a board with a port")

        def find(boards) -> bool:
            return any(board_equals(board, b) and port_same_as(board.port, b.port) for b in boards)

        if find(self._available_boards):
            return

        found = asyncio.get_running_loop().create_future()

        def on_change(boards) -> None:
            if not found.done() and find(boards):
                found.set_result(None)

        subscription = self.on_available_boards_changed.subscribe(on_change)
        try:
            if timeout and timeout > 0:
                try:
                    await asyncio.wait_for(found, timeout)
                except asyncio.TimeoutError as e:
                    raise WaitTimeoutError(f"Timeout after {timeout} seconds.") from e
            else:
                await found
        finally:
            subscription.dispose()

    async def search_boards(self, query: str | None = None) -> list[Board]:
        return await self.boards_service.search_boards(query)

    async def selected_board_user_fields(self) -> list[UserField]:
        """Upload fields (e.g. credentials) the selected board needs on its port's protocol."""
        board = self._boards_config.selected_board
        port = self._boards_config.selected_port
        if board is None or port is None:
            return []
        if not board.fqbn:
            return []
        return await self.boards_service.get_board_user_fields(board.fqbn, port.protocol)

    # -- Discovery and package events -----------------------------------------

    def notify_attached_boards_changed(self, event: AttachedBoardsChangeEvent) -> asyncio.Task:
        return self._spawn(self._handle_attached_boards_changed(event))

    async def _handle_attached_boards_changed(self, event: AttachedBoardsChangeEvent) -> None:
        await self._hydrated.wait()
        if not event.is_empty():
            logger.info("Attached boards and available ports changed:\n%s", event)
        self._attached_boards = list(event.new_state.boards)
        self._available_ports = list(event.new_state.ports)
        self.on_available_ports_changed.fire(self.available_ports)
        await self._reconcile_available_boards()
        self.try_reconnect()

    def notify_platform_installed(self, package: BoardsPackage) -> asyncio.Task | None:
        logger.info("Boards package installed: %s", json.dumps(package.to_dict()))
        config = self._boards_config
        selected = config.selected_board
        if selected is None:
            return None

        installed = next((b for b in package.boards if b.name == selected.name), None)
        if installed is not None and (not selected.fqbn or selected.fqbn == installed.fqbn):
            logger.info(
                "Board package %s[%s] was installed. Updating the FQBN of the currently selected %s board. [FQBN: %s]",
                package.id, package.installed_version, selected.name, installed.fqbn,
            )
            board = Board(
                name=installed.name,
                fqbn=installed.fqbn,
                package_id=installed.package_id or package.id,
            )
            return self.set_boards_config(replace(config, selected_board=board))

        # The board name can change between package versions. Unselect it
        # rather than keep a board that no longer has an FQBN.
        if installed is None and selected.package_id == package.id:
            cleared = self.set_boards_config(BoardsConfig())
            return self._spawn(self._clear_and_prompt_reselect(cleared, selected, package))

        # Re-set the same config: a second package the board depends on may
        # just have been installed.
        return self.set_boards_config(config)

    async def _clear_and_prompt_reselect(
        self, cleared: asyncio.Task, board: Board, package: BoardsPackage
    ) -> bool:
        """True if the user chose to reselect the board now."""
        answer = await self._prompt_reselect(board, package)
        await cleared
        return answer

    async def _prompt_reselect(self, board: Board, package: BoardsPackage) -> bool:
        message = COULD_NOT_FIND_PREVIOUSLY_SELECTED.format(name=board.name, package=package.name or package.id)
        answer = await self.message_service.warn(message, RESELECT_LATER, YES)
        if answer != YES:
            return False
        await self.command_service.execute_command(OPEN_BOARDS_DIALOG, board.name)
        return True

    def notify_platform_uninstalled(self, package: BoardsPackage) -> asyncio.Task | None:
        logger.info("Boards package uninstalled: %s", json.dumps(package.to_dict()))
        config = self._boards_config
        selected = config.selected_board
        if selected is None or not selected.fqbn:
            return None

        uninstalled = next((b for b in package.boards if b.name == selected.name), None)
        if uninstalled is None or uninstalled.fqbn != selected.fqbn:
            return None

        # A live, recognized board keeps its FQBN: discovery still reports it.
        if any(
            b.selected and b.state == BoardState.RECOGNIZED and board_equals(b, selected)
            for b in self._available_boards
        ):
            return None

        logger.info(
            "Board package %s was uninstalled. Discarding the FQBN of the currently selected %s board.",
            package.id, selected.name,
        )
        return self.set_boards_config(replace(config, selected_board=Board(name=selected.name)))

    # -- Reconnect -------------------------------------------------------------

    def try_reconnect(self) -> bool:
        """Re-select the latest valid board if it reappeared, possibly on a new port."""
        latest = self._latest_valid_boards_config
        if latest is None or self.can_upload_to(self._boards_config):
            return False

        latest_board, latest_port = latest.selected_board, latest.selected_port
        candidates = [
            b for b in self._available_boards
            if b.state != BoardState.INCOMPLETE
            and b.fqbn == latest_board.fqbn
            and b.name == latest_board.name
        ]
        for board in candidates:
            if port_same_as(latest_port, board.port):
                logger.info("Reconnecting %s on %s", latest_board.name, board.port)
                self.set_boards_config(latest)
                return True
        # The port may have changed, only the protocol has to match.
        for board in candidates:
            if board.port is not None and board.port.protocol == latest_port.protocol:
                logger.info("Reconnecting %s on new port %s", latest_board.name, board.port)
                self.set_boards_config(replace(latest, selected_port=board.port))
                return True
        return False

    # -- Reconciliation --------------------------------------------------------

    async def _reconcile_available_boards(self) -> None:
        async with self._reconcile_lock:
            await self._reconcile()

    async def _reconcile(self) -> None:
        available_ports = list(self._available_ports)

        # Keep the board but drop a port that went away. This bypasses
        # set_boards_config: the pass is already running.
        selected_port = self._boards_config.selected_port
        if selected_port and not any(port_same_as(p, selected_port) for p in available_ports):
            self._update_boards_config(BoardsConfig(selected_board=self._boards_config.selected_board))
            self.on_boards_config_changed.fire(self._boards_config)

        config = self._boards_config
        attached = [b for b in self._attached_boards if b.port is not None]

        # Serial ports are always listed. Other protocols only with a recognized board.
        candidate_ports: list[Port] = []
        seen_addresses: set[str] = set()
        for port in available_ports:
            if port.address in seen_addresses:
                continue
            if port.protocol == "serial" or any(b.port.address == port.address for b in attached):
                candidate_ports.append(port)
                seen_addresses.add(port.address)

        boards: list[AvailableBoard] = []
        for port in candidate_ports:
            board = next((b for b in attached if port_same_as(port, b.port)), None)
            if board is not None:
                state = BoardState.RECOGNIZED
            else:
                board = await self._get_last_selected_board_on_port(port)
                state = BoardState.GUESSED
            if board is None:
                boards.append(AvailableBoard(name=UNKNOWN_BOARD_NAME, port=port, state=BoardState.INCOMPLETE))
                continue
            available = AvailableBoard(
                name=board.name,
                fqbn=board.fqbn,
                package_id=board.package_id,
                port=port,
                state=state,
            )
            boards.append(replace(available, selected=config.same_as(available)))

        selected_board = config.selected_board
        if selected_board is not None and not any(b.selected for b in boards):
            # The selection takes over the slot of whatever sits on its port.
            if config.selected_port is not None:
                boards = [
                    b for b in boards
                    if b.port is None or b.port.address != config.selected_port.address
                ]
            boards.append(AvailableBoard(
                name=selected_board.name,
                fqbn=selected_board.fqbn,
                package_id=selected_board.package_id,
                port=config.selected_port,
                state=BoardState.INCOMPLETE,
                selected=True,
            ))

        boards = sort_available_boards(boards)
        if _boards_changed(boards, self._available_boards):
            self._available_boards = boards
            self.on_available_boards_changed.fire(self.available_boards)

    # -- Persistence -----------------------------------------------------------

    async def _get_last_selected_board_on_port(self, port: Port) -> Board | None:
        data = await self.store.get(last_selected_board_on_port_key(port))
        return Board.from_dict(data) if data else None

    async def save_state(self) -> None:
        # Remember the board per port so a third-party board discovery cannot
        # identify can still be shown by name next time.
        async with self._save_lock:
            config = self._boards_config
            if config.selected_board is not None and config.selected_port is not None:
                await self.store.set(
                    last_selected_board_on_port_key(config.selected_port),
                    _plain_board(config.selected_board).to_dict(),
                )
            latest_valid = self._latest_valid_boards_config
            latest = self._latest_boards_config
            await asyncio.gather(
                self.store.set(LATEST_VALID_BOARDS_CONFIG, latest_valid.to_dict() if latest_valid else None),
                self.store.set(LATEST_BOARDS_CONFIG, latest.to_dict() if latest else None),
            )

    async def load_state(self) -> None:
        """Restore the selection: latest valid config, else latest config, else the launch URL."""
        stored_valid = await self.store.get(LATEST_VALID_BOARDS_CONFIG)
        if stored_valid:
            valid = BoardsConfig.from_dict(stored_valid)
            if self.can_upload_to(valid):
                self._latest_valid_boards_config = valid
                self.set_boards_config(valid)
                return
            logger.warning("Ignoring stored board config that cannot be uploaded to: %s", valid)

        stored = await self.store.get(LATEST_BOARDS_CONFIG)
        latest = BoardsConfig.from_dict(stored) if stored else None
        if latest is None and self.launch_url:
            latest = BoardsConfig.from_url(self.launch_url)
        if latest is not None:
            self._latest_boards_config = latest
            self.set_boards_config(latest)

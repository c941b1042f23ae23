"""User-facing warnings and commands the engine can trigger."""

from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from typing import Callable

import click

OPEN_BOARDS_DIALOG = "open-boards-dialog"

NO_BOARDS_SELECTED = "No boards selected."
NO_PORTS_SELECTED = "No ports selected for board: '{name}'."
NO_FQBN = (
    'The FQBN is not available for the selected board "{name}". '
    "Do you have the corresponding core installed?"
)
COULD_NOT_FIND_PREVIOUSLY_SELECTED = (
    "Could not find previously selected board '{name}' in installed platform '{package}'. "
    "Please manually reselect the board you want to use. Do you want to reselect it now?"
)
RESELECT_LATER = "Reselect later"
YES = "Yes"


class MessageService(ABC):
    @abstractmethod
    async def warn(self, message: str, *actions: str) -> str | None:
        """Show a warning. Returns the chosen action, or None if dismissed."""


class CommandService(ABC):
    @abstractmethod
    async def execute_command(self, command_id: str, *args):
        """Run a registered command and return its result."""


class CommandNotFoundError(Exception):
    """Raised when executing a command id nobody registered."""
    pass


class CommandRegistry(CommandService):
    """CommandService backed by plain callables (sync or async)."""

    def __init__(self):
        self._commands: dict[str, Callable] = {}

    def register(self, command_id: str, handler: Callable) -> None:
        self._commands[command_id] = handler

    async def execute_command(self, command_id: str, *args):
        handler = self._commands.get(command_id)
        if handler is None:
            raise CommandNotFoundError(f"Unknown command: {command_id}")
        result = handler(*args)
        if inspect.isawaitable(result):
            result = await result
        return result


class ClickMessageService(MessageService):
    """Warnings on the terminal. Prompts for an action only when interactive."""

    def __init__(self, interactive: bool = False):
        self.interactive = interactive

    async def warn(self, message: str, *actions: str) -> str | None:
        click.echo(f"Warning: {message}", err=True)
        if not actions or not self.interactive:
            return None
        for i, action in enumerate(actions, 1):
            click.echo(f"  {i}. {action}", err=True)
        # Prompt off the event loop so discovery keeps polling meanwhile.
        choice = await asyncio.to_thread(
            click.prompt, "Choose", type=click.IntRange(1, len(actions)), err=True
        )
        return actions[choice - 1]

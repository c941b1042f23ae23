"""One-shot application lifecycle signals."""

from __future__ import annotations

import asyncio


class AppState:
    """Named states that are reached once and stay reached (e.g. "ready")."""

    def __init__(self):
        self._events: dict[str, asyncio.Event] = {}

    def _event(self, state: str) -> asyncio.Event:
        if state not in self._events:
            self._events[state] = asyncio.Event()
        return self._events[state]

    def reach(self, state: str) -> None:
        self._event(state).set()

    def has_reached(self, state: str) -> bool:
        return self._event(state).is_set()

    async def reached(self, state: str) -> None:
        await self._event(state).wait()

"""Observer registry used for every change notification in boardsync."""

from __future__ import annotations

from typing import Callable


class Subscription:
    """Handle returned by EventSource.subscribe. dispose() may be called repeatedly."""

    def __init__(self, source: EventSource, handler: Callable):
        self._source = source
        self._handler = handler

    @property
    def disposed(self) -> bool:
        return self._source is None

    def dispose(self) -> None:
        if self._source is not None:
            self._source.remove(self._handler)
            self._source = None


class EventSource:
    """Synchronous fan-out to handlers, in subscription order."""

    def __init__(self):
        self._handlers: list[Callable] = []

    def subscribe(self, handler: Callable) -> Subscription:
        self._handlers.append(handler)
        return Subscription(self, handler)

    __call__ = subscribe

    def remove(self, handler: Callable) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def handlers(self) -> tuple:
        return tuple(self._handlers)

    def fire(self, *args, **kwargs) -> None:
        # Snapshot: handlers may unsubscribe while being notified.
        for handler in tuple(self._handlers):
            handler(*args, **kwargs)


class DisposableCollection:
    def __init__(self):
        self._items: list[Subscription] = []

    def push(self, subscription: Subscription) -> Subscription:
        self._items.append(subscription)
        return subscription

    def dispose(self) -> None:
        while self._items:
            self._items.pop().dispose()

    def __len__(self) -> int:
        return len(self._items)

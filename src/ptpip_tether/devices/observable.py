"""Observable state holder.

A minimal state stream: it always has a current value, notifies callback
subscribers synchronously on change, and feeds async iterators through
per-consumer queues. Updates must be made from the event loop thread when
async consumers exist.

Example:
    state = Observable(ConnectionState.DISCONNECTED)
    unsubscribe = state.subscribe(lambda s: print("now", s))
    state.set(ConnectionState.CONNECTING)
    unsubscribe()
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Generic, TypeVar

from ptpip_tether.observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class Observable(Generic[T]):
    """Current value plus change notifications.

    Args:
        initial: Starting value.
        distinct: Skip notifications when the new value equals the current
            one.
    """

    def __init__(self, initial: T, distinct: bool = True) -> None:
        self._value = initial
        self._distinct = distinct
        self._subscribers: list[Callable[[T], None]] = []
        self._queues: set[asyncio.Queue[T]] = set()

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> bool:
        """Update the value and notify subscribers.

        Returns:
            True if subscribers were notified.
        """
        if self._distinct and value == self._value:
            return False
        self._value = value
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception:  # noqa: BLE001 - one subscriber must not break others
                logger.exception("Observable subscriber failed")
        for queue in list(self._queues):
            queue.put_nowait(value)
        return True

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register ``callback`` for future values.

        Returns:
            A function that removes the subscription. Safe to call twice.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers) + len(self._queues)

    async def updates(self) -> AsyncIterator[T]:
        """Yield the current value, then every subsequent value."""
        queue: asyncio.Queue[T] = asyncio.Queue()
        self._queues.add(queue)
        try:
            yield self._value
            while True:
                yield await queue.get()
        finally:
            self._queues.discard(queue)

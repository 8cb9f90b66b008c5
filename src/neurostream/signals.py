"""Latest-value signals for session state.

A ``StateSignal`` holds one value and fans every change out to the
watchers iterating it.  A new watcher receives the current value first,
then each later change in order.  Setting an equal value is a no-op.

Usage::

    async for devices in manager.devices_signal.watch():
        ...
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Generic, TypeVar

logger = logging.getLogger("neurostream.signals")

T = TypeVar("T")


class ConnectionState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class StateSignal(Generic[T]):
    def __init__(self, name: str, initial: T) -> None:
        self.name = name
        self._value = initial
        self._watchers: set[asyncio.Queue] = set()

    @property
    def value(self) -> T:
        return self._value

    @property
    def watcher_count(self) -> int:
        return len(self._watchers)

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self._value = value
        logger.debug("%s changed (%d watcher(s))", self.name, len(self._watchers))
        for queue in self._watchers:
            queue.put_nowait(value)

    async def watch(self) -> AsyncIterator[T]:
        """Yield the current value, then every change until the caller stops."""
        queue: asyncio.Queue = asyncio.Queue()
        queue.put_nowait(self._value)
        self._watchers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._watchers.discard(queue)

"""Subscription multiplexer: many logical listeners, few transport streams.

Every logical request is keyed by (metric, sorted labels, atomic flag,
transport kind).  Requests sharing a key share one ``PhysicalSubscription``;
its listener count is the number of attached ``MetricSubscription`` handles.

Lifecycle of a key:

    subscribe (first)  → entry inserted, opener task started, pump started on open
    subscribe (any)    → attach to the entry and wait until it is ready
    unsubscribe (last) → entry removed and pump cancelled, handle released

The lookup and insert of an entry happen in one step with no ``await`` in
between, so interleaved subscribers can never create two physical
subscriptions for one key.  All mutation happens on the event loop thread,
so no locks are needed.

The opener runs as its own task rather than inside the first subscriber, so
cancelling that subscriber only detaches it.  Siblings waiting on the same
key still receive the stream.

Delivery: a single pump task per physical subscription reads the transport
stream and hands each value, in order, to every attached listener's queue.
Label narrowing for non-atomic subsets happens per listener at that point;
the transport always sends the full object.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from neurostream.errors import StateError, TransportUnsupportedError
from neurostream.models import MetricSubscriptionRequest, SubscriptionKey, TransportKind
from neurostream.transports.base import MetricTransport, TransportHandle

logger = logging.getLogger("neurostream.multiplexer")

_listener_ids = itertools.count(1)
_physical_ids = itertools.count(1)

_END = object()


@dataclass
class _StreamError:
    error: BaseException


# ---------------------------------------------------------------------------
# Logical listener handle
# ---------------------------------------------------------------------------


class MetricSubscription:
    """Handle for one logical listener.

    Iterate it to receive values; unsubscribe to detach.  Usable as an async
    context manager::

        async with await client.subscribe("brainwaves", "powerByBand") as sub:
            async for epoch in sub:
                ...

    Iteration ends when the caller unsubscribes or the physical stream ends.
    If the stream fails, or the session tears the subscription down with a
    reason, the error is raised from iteration.
    """

    def __init__(
        self,
        multiplexer: "SubscriptionMultiplexer",
        request: MetricSubscriptionRequest,
        key: SubscriptionKey,
        unwrap: str | None = None,
    ) -> None:
        self.id = next(_listener_ids)
        self.request = request
        self.key = key
        self._multiplexer = multiplexer
        self._unwrap = unwrap
        self._queue: asyncio.Queue = asyncio.Queue()
        self._physical: PhysicalSubscription | None = None
        self._closed = False
        self._finished = False
        self._exhausted = False

    def __repr__(self) -> str:
        return f"<MetricSubscription #{self.id} {self.key}>"

    @property
    def transport(self) -> TransportKind:
        return self.key.transport

    @property
    def active(self) -> bool:
        return not (self._closed or self._finished)

    @property
    def physical(self) -> "PhysicalSubscription | None":
        return self._physical

    # -- called by the multiplexer ------------------------------------

    def _deliver(self, value: Any) -> None:
        if self._closed or self._finished:
            return
        self._queue.put_nowait(self._narrow(value))

    def _narrow(self, value: Any) -> Any:
        if isinstance(value, dict) and not self.request.atomic and self.request.labels:
            value = {
                label: value[label]
                for label in self.request.normalized_labels
                if label in value
            }
        if self._unwrap is not None and isinstance(value, dict):
            return value.get(self._unwrap)
        return value

    def _finish(self, error: BaseException | None = None) -> None:
        if self._closed or self._finished:
            return
        self._finished = True
        self._queue.put_nowait(_END if error is None else _StreamError(error))

    def _close(self) -> None:
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_END)

    # -- public --------------------------------------------------------

    def unsubscribe(self) -> None:
        self._multiplexer.unsubscribe(self)

    def __aiter__(self) -> "MetricSubscription":
        return self

    async def __anext__(self) -> Any:
        if self._closed or self._exhausted:
            raise StopAsyncIteration
        item = await self._queue.get()
        if self._closed or item is _END:
            self._exhausted = True
            raise StopAsyncIteration
        if isinstance(item, _StreamError):
            self._exhausted = True
            raise item.error
        return item

    async def get(self, timeout: float | None = None) -> Any:
        """Return the next value, waiting at most ``timeout`` seconds."""
        return await asyncio.wait_for(self.__anext__(), timeout)

    async def __aenter__(self) -> "MetricSubscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.unsubscribe()


# ---------------------------------------------------------------------------
# Physical subscription
# ---------------------------------------------------------------------------


class PhysicalSubscription:
    """One transport stream shared by every listener with the same key."""

    def __init__(
        self,
        key: SubscriptionKey,
        request: MetricSubscriptionRequest,
        transport: MetricTransport,
    ) -> None:
        self.id = next(_physical_ids)
        self.key = key
        self.request = request
        self.transport = transport
        self.handle: TransportHandle | None = None
        self.listeners: dict[int, MetricSubscription] = {}
        self.ready = asyncio.Event()
        self.error: BaseException | None = None
        self.task: asyncio.Task | None = None
        self.closed = False

    def __repr__(self) -> str:
        return f"<PhysicalSubscription #{self.id} {self.key} listeners={self.listener_count}>"

    @property
    def listener_count(self) -> int:
        return len(self.listeners)

    def attach(self, listener: MetricSubscription) -> None:
        self.listeners[listener.id] = listener
        listener._physical = self

    def detach(self, listener: MetricSubscription) -> bool:
        return self.listeners.pop(listener.id, None) is not None


# ---------------------------------------------------------------------------
# Multiplexer
# ---------------------------------------------------------------------------


class SubscriptionMultiplexer:
    """Reference-count logical subscriptions onto physical ones.

    Args:
        transports: TransportKind → MetricTransport adapter.
    """

    def __init__(self, transports: Mapping[TransportKind, MetricTransport] | None = None) -> None:
        self._transports: dict[TransportKind, MetricTransport] = dict(transports or {})
        self._physical: dict[SubscriptionKey, PhysicalSubscription] = {}
        self._closing: set[asyncio.Task] = set()

    def set_transport(self, kind: TransportKind, transport: MetricTransport) -> None:
        self._transports[kind] = transport

    def physical(self, key: SubscriptionKey) -> PhysicalSubscription | None:
        return self._physical.get(key)

    @property
    def physical_count(self) -> int:
        return len(self._physical)

    def listener_count(self, key: SubscriptionKey) -> int:
        physical = self._physical.get(key)
        return physical.listener_count if physical else 0

    # ------------------------------------------------------------------
    # Subscribe / unsubscribe
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        request: MetricSubscriptionRequest,
        kind: TransportKind,
        unwrap: str | None = None,
    ) -> MetricSubscription:
        """Attach a new logical listener, creating the physical stream if needed.

        Raises:
            TransportUnsupportedError: No transport configured for ``kind``.
            Exception: Whatever the transport raised while opening the stream.
            StateError: The open was cancelled before the stream was established.
        """
        transport = self._transports.get(kind)
        if transport is None:
            raise TransportUnsupportedError(f"No {kind.value} transport is configured")

        key = request.key(kind)
        listener = MetricSubscription(self, request, key, unwrap=unwrap)

        # No await between lookup and insert.
        physical = self._physical.get(key)
        created = physical is None
        if physical is None:
            physical = PhysicalSubscription(key, request, transport)
            self._physical[key] = physical
            logger.info("Creating physical subscription %s", key)
        physical.attach(listener)
        if created:
            self._track(self._open(physical))

        try:
            await physical.ready.wait()
        except BaseException:
            self.unsubscribe(listener)
            raise
        if physical.error is not None:
            raise physical.error
        logger.debug("Attached listener #%d to %s (count=%d)", listener.id, key, physical.listener_count)
        return listener

    def unsubscribe(self, listener: MetricSubscription) -> None:
        """Detach ``listener``.  Idempotent; the count drops exactly once."""
        if listener._closed:
            return
        listener._close()
        physical = listener._physical
        if physical is None or not physical.detach(listener):
            return
        logger.debug(
            "Detached listener #%d from %s (count=%d)",
            listener.id,
            physical.key,
            physical.listener_count,
        )
        if physical.listener_count == 0 and not physical.closed:
            self._teardown(physical)

    def close_all(self, reason: BaseException | None = None) -> None:
        """Tear down every physical subscription.

        Listeners stop iterating; with a ``reason`` they raise it instead.
        """
        physicals = list(self._physical.values())
        if physicals:
            logger.info("Tearing down %d physical subscription(s)", len(physicals))
        for physical in physicals:
            listeners = list(physical.listeners.values())
            physical.listeners.clear()
            self._teardown(physical)
            for listener in listeners:
                listener._finish(reason)

    async def wait_closed(self) -> None:
        """Wait until every pending open and handle release has finished."""
        while self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _open(self, physical: PhysicalSubscription) -> None:
        try:
            handle = await physical.transport.open(physical.request)
        except asyncio.CancelledError as exc:
            self._fail(physical, exc)
            raise
        except Exception as exc:
            self._fail(physical, exc)
            return

        if physical.closed:
            # Everyone left while the transport call was in flight.
            logger.debug("Releasing %s opened after teardown", physical.key)
            self._track(self._release(physical.transport, handle))
        else:
            physical.handle = handle
            physical.task = asyncio.get_running_loop().create_task(self._pump(physical))
        physical.ready.set()

    def _fail(self, physical: PhysicalSubscription, exc: BaseException) -> None:
        logger.warning("Could not open %s: %r", physical.key, exc)
        physical.closed = True
        if self._physical.get(physical.key) is physical:
            del self._physical[physical.key]
        if isinstance(exc, Exception):
            physical.error = exc
        else:
            physical.error = StateError(
                f"Subscription to {physical.key.metric} was cancelled before it was established"
            )
        for listener in physical.listeners.values():
            listener._close()
        physical.listeners.clear()
        physical.ready.set()

    def _teardown(self, physical: PhysicalSubscription) -> None:
        physical.closed = True
        if self._physical.get(physical.key) is physical:
            del self._physical[physical.key]
        logger.info("Tearing down physical subscription %s", physical.key)
        if physical.task is not None and physical.handle is not None:
            physical.task.cancel()
            self._track(self._release_after(physical.task, physical.transport, physical.handle))
        # else: open() still in flight; _open releases the handle when it lands

    def _discard(self, physical: PhysicalSubscription, error: BaseException | None) -> None:
        physical.closed = True
        if self._physical.get(physical.key) is physical:
            del self._physical[physical.key]
        listeners = list(physical.listeners.values())
        physical.listeners.clear()
        for listener in listeners:
            listener._finish(error)

    async def _pump(self, physical: PhysicalSubscription) -> None:
        assert physical.handle is not None
        try:
            async for value in physical.handle.stream:
                for listener in list(physical.listeners.values()):
                    listener._deliver(value)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Stream for %s failed: %s", physical.key, exc)
            self._discard(physical, exc)
        else:
            logger.info("Stream for %s ended", physical.key)
            self._discard(physical, None)
        self._track(self._release(physical.transport, physical.handle))

    async def _release_after(
        self, task: asyncio.Task, transport: MetricTransport, handle: TransportHandle
    ) -> None:
        await asyncio.gather(task, return_exceptions=True)
        await self._release(transport, handle)

    async def _release(self, transport: MetricTransport, handle: TransportHandle) -> None:
        try:
            await transport.release(handle)
        except Exception as exc:
            logger.warning("Failed to release %s transport handle: %s", handle.kind.value, exc)

    def _track(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

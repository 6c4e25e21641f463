"""Multi-listener event streams for query subscriptions.

A QueryEventStream opens its subscription lazily, when the first listener
attaches, and shares it between all listeners. When the last listener
detaches the subscription is cancelled; a listener attaching after that
opens a brand-new subscription instead of replaying stale state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from ..errors import BoundaryError
from ..protocol import Event
from ..types import QueryEvent

logger = logging.getLogger(__name__)

OpenSubscription = Callable[[], AsyncIterator[Event]]

_CLOSED = object()


class StreamListener:
    """One listener attached to a QueryEventStream.

    Iterate it asynchronously to receive events in the order the worker
    emitted them. Iteration stops when the listener is cancelled or the
    worker closes the stream, and raises if the subscription failed.

    Usage:
        async with stream.listen() as listener:
            async for event in listener:
                ...
    """

    def __init__(self, stream: QueryEventStream) -> None:
        self._stream = stream
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._cancelled = False

    @property
    def closed(self) -> bool:
        return self._closed or self._cancelled

    def cancel(self) -> None:
        """Detach from the stream. Safe to call more than once."""
        if self._cancelled:
            return
        self._cancelled = True
        self._queue.put_nowait(_CLOSED)
        self._stream._detach(self)

    def _deliver(self, event: QueryEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def _finish(self, error: BaseException | None = None) -> None:
        if self.closed:
            return
        self._closed = True
        if error is not None:
            self._queue.put_nowait(error)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> StreamListener:
        return self

    async def __anext__(self) -> QueryEvent:
        if self._cancelled:
            raise StopAsyncIteration
        item = await self._queue.get()
        if self._cancelled or item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def __aenter__(self) -> StreamListener:
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.cancel()


class QueryEventStream:
    """A lazily opened, shared, cancellable stream of query events.

    Listeners attach with listen(), or implicitly by iterating the stream
    itself with `async for`.
    """

    def __init__(self, open_subscription: OpenSubscription, description: str = "") -> None:
        self._open_subscription = open_subscription
        self._description = description
        self._listeners: list[StreamListener] = []
        self._pump: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return f"QueryEventStream({self._description!r}, listeners={len(self._listeners)})"

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def is_active(self) -> bool:
        """True while a subscription is open (or opening) for this stream."""
        return self._pump is not None

    def listen(self) -> StreamListener:
        """Attach a new listener, opening the subscription if needed."""
        listener = StreamListener(self)
        self._listeners.append(listener)
        if self._pump is None:
            logger.debug(f"Opening subscription for {self._description}")
            self._pump = asyncio.create_task(self._run())
        return listener

    def __aiter__(self) -> AsyncIterator[QueryEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[QueryEvent]:
        listener = self.listen()
        try:
            async for event in listener:
                yield event
        finally:
            listener.cancel()

    async def first(self) -> QueryEvent:
        """Wait for the next event, then detach.

        Raises:
            BoundaryError: If the stream ends before any event arrives
        """
        listener = self.listen()
        try:
            async for event in listener:
                return event
        finally:
            listener.cancel()
        raise BoundaryError(f"Stream {self._description} ended without events", code="stream_end")

    def _detach(self, listener: StreamListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)
        if not self._listeners and self._pump is not None:
            logger.debug(f"Last listener detached, cancelling subscription for {self._description}")
            pump, self._pump = self._pump, None
            pump.cancel()

    async def _run(self) -> None:
        current = asyncio.current_task()
        error: Exception | None = None
        source = self._open_subscription()
        try:
            async for event in source:
                query_event = QueryEvent.model_validate(event.data.get("event", {}))
                for listener in list(self._listeners):
                    listener._deliver(query_event)
        except Exception as e:
            logger.warning(f"Subscription for {self._description} failed: {e}")
            error = e
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()

        # The worker ended the stream (or it failed): close current listeners
        # so the next listen() opens a fresh subscription.
        if self._pump is current:
            self._pump = None
            listeners, self._listeners = self._listeners, []
            for listener in listeners:
                listener._finish(error)

"""Command Handler - replays commands against live database objects.

Runs inside the worker. For every command it rebuilds the live reference
(and, where the operation needs it, the query with its ordering, bounds
and limit), invokes the matching live operation and yields correlated
events. Every transport of the worker (in-process, stdio, WebSocket)
delegates here, so behavior is identical however commands arrive.
"""

from __future__ import annotations

import contextlib
import inspect
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from ..backend import DatabaseRegistry, LiveDatabase, LiveQuery, LiveReference
from ..errors import (
    InvalidArgumentError,
    RtdbIsolateError,
    UnsupportedOperationError,
    error_code,
)
from ..types import QueryEvent
from .commands import DATABASE_OPERATIONS, Address, Command, OperationType
from .events import Event
from .filter import ORDER_BY_KEY, QueryFilter

logger = logging.getLogger(__name__)


def build_query(reference: LiveReference, filter: QueryFilter) -> LiveQuery:
    """Apply a QueryFilter to a live reference.

    Ordering first, then the start bound, the end bound and the limit.
    When ordering by key the bound key alone is the cursor; otherwise the
    bound value is applied with its key as tie-breaker, and a sentinel key
    is simply left out.
    """
    query: LiveQuery = reference
    match filter.order_by:
        case ".key":
            query = query.order_by_key()
        case ".priority":
            query = query.order_by_priority()
        case ".value":
            query = query.order_by_value()
        case child:
            query = query.order_by_child(child)

    if filter.has_start:
        if filter.order_by == ORDER_BY_KEY:
            query = query.start_at(filter.start_key)
        elif isinstance(filter.start_key, str):
            query = query.start_at(filter.start_value, filter.start_key)
        else:
            query = query.start_at(filter.start_value)

    if filter.has_end:
        if filter.order_by == ORDER_BY_KEY:
            query = query.end_at(filter.end_key)
        elif isinstance(filter.end_key, str):
            query = query.end_at(filter.end_value, filter.end_key)
        else:
            query = query.end_at(filter.end_value)

    if filter.limit is not None:
        if filter.reversed:
            query = query.limit_to_last(filter.limit)
        else:
            query = query.limit_to_first(filter.limit)
    return query


# Each entry takes the resolved live object and returns the bound function
# to call with the command's arguments.
_DATABASE_FUNCTIONS: dict[OperationType, Callable[[LiveDatabase], Callable[..., Any]]] = {
    OperationType.GO_OFFLINE: lambda db: db.go_offline,
    OperationType.GO_ONLINE: lambda db: db.go_online,
    OperationType.PURGE_OUTSTANDING_WRITES: lambda db: db.purge_outstanding_writes,
    OperationType.SET_PERSISTENCE_CACHE_SIZE_BYTES: lambda db: db.set_persistence_cache_size_bytes,
    OperationType.SET_PERSISTENCE_ENABLED: lambda db: db.set_persistence_enabled,
}

_QUERY_FUNCTIONS: dict[
    OperationType, Callable[[LiveReference, QueryFilter], Callable[..., Any]]
] = {
    OperationType.KEEP_SYNCED: lambda ref, f: build_query(ref, f).keep_synced,
    OperationType.SET: lambda ref, f: ref.set,
    OperationType.SET_PRIORITY: lambda ref, f: ref.set_priority,
    OperationType.UPDATE: lambda ref, f: ref.update,
    OperationType.DISCONNECT_CANCEL: lambda ref, f: ref.on_disconnect.cancel,
    OperationType.DISCONNECT_SET_WITH_PRIORITY: lambda ref, f: ref.on_disconnect.set_with_priority,
    OperationType.DISCONNECT_UPDATE: lambda ref, f: ref.on_disconnect.update,
    OperationType.ON: lambda ref, f: build_query(ref, f).on,
}

if set(_DATABASE_FUNCTIONS) != DATABASE_OPERATIONS or (
    set(_DATABASE_FUNCTIONS) | set(_QUERY_FUNCTIONS)
) != set(OperationType):
    raise RuntimeError("Operation dispatch tables do not cover OperationType exactly")


class CommandHandler:
    """Handles protocol commands and yields correlated events.

    Usage:
        handler = CommandHandler(DatabaseRegistry(open_database))

        async for event in handler.handle(command):
            await send(event)

    Single-shot operations yield one final `result` or `error` event.
    `on` yields a `query.event` per live event and ends with
    `stream.end` when the live source is exhausted; cancelling the
    consuming task closes the live source.
    """

    def __init__(self, registry: DatabaseRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> DatabaseRegistry:
        return self._registry

    async def handle(self, command: Command) -> AsyncIterator[Event]:
        """Process a command and yield correlated events."""
        logger.debug(f"Handling command: {command.cmd} (id={command.id})")

        try:
            match command.operation:
                case None:
                    raise UnsupportedOperationError(f"Unsupported operation: {command.cmd}")
                case OperationType.ON:
                    async with contextlib.aclosing(self._subscribe(command)) as events:
                        async for event in events:
                            yield event
                case _:
                    value = await self.execute(command)
                    yield Event.result(command.id, value)

        except RtdbIsolateError as e:
            logger.warning(f"Command {command.id} ({command.cmd}) failed: {e}")
            yield Event.error(command.id, str(e), code=error_code(e))
        except Exception as e:
            logger.exception(f"Error handling command {command.id}: {e}")
            yield Event.error(command.id, str(e), code=error_code(e))

    async def execute(self, command: Command) -> Any:
        """Resolve and invoke a single-shot operation, returning its result."""
        operation = command.operation
        if operation is None or operation.is_streaming:
            raise UnsupportedOperationError(f"Cannot execute operation: {command.cmd}")

        function = self.resolve(command)
        result = function(*command.args, **command.kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    def resolve(self, command: Command) -> Callable[..., Any]:
        """Resolve a command to the bound live function it should call.

        Raises:
            UnsupportedOperationError: If the operation tag is unknown
            InvalidArgumentError: If the command is not addressed properly
        """
        operation = command.operation
        if operation is None:
            raise UnsupportedOperationError(f"Unsupported operation: {command.cmd}")

        address = command.address
        if address is None:
            raise InvalidArgumentError(f"Command {command.cmd} has no address")

        database = self._registry.resolve(address.app_name, address.database_url)

        if operation in _DATABASE_FUNCTIONS:
            return _DATABASE_FUNCTIONS[operation](database)

        if not address.is_query_scoped:
            raise InvalidArgumentError(f"Command {command.cmd} requires a path")
        reference = self._resolve_reference(database, address)
        return _QUERY_FUNCTIONS[operation](reference, address.filter or QueryFilter())

    def _resolve_reference(self, database: LiveDatabase, address: Address) -> LiveReference:
        reference = database.reference()
        for segment in address.segments:
            reference = reference.child(segment)
        return reference

    async def _subscribe(self, command: Command) -> AsyncIterator[Event]:
        """Open the live event source and forward its events."""
        source = self.resolve(command)(*command.args, **command.kwargs)
        if inspect.isawaitable(source):
            source = await source

        sequence = 0
        try:
            async for item in source:
                event = QueryEvent.model_validate(item)
                yield Event.query_event(command.id, event.model_dump(mode="json"), sequence)
                sequence += 1
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()

        logger.debug(f"Live source for {command.id} ended after {sequence} events")
        yield Event.stream_end(command.id, sequence)

"""Client-side query and reference proxies.

Proxies are immutable values of (database, path segments, filter). Builder
methods (ordering, bounds, limits) and navigation (child, parent, root,
push) are pure and never cross the boundary. Terminal methods package
one Command and hand it to the database's boundary.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..errors import InvalidArgumentError, UnimplementedError
from ..protocol import (
    ANY_KEY,
    MAX_KEY,
    MIN_KEY,
    ORDER_BY_KEY,
    ORDER_BY_PRIORITY,
    ORDER_BY_VALUE,
    Command,
    KeySentinel,
    OperationType,
    QueryFilter,
    encode_path,
    parse_bound_key,
    split_child_path,
    validate_order_by_child,
)
from ..types import (
    CHILD_ADDED,
    CHILD_CHANGED,
    CHILD_MOVED,
    CHILD_REMOVED,
    QUERY_EVENT_TYPES,
    VALUE,
    QueryEvent,
)
from .stream import QueryEventStream

if TYPE_CHECKING:
    from .database import ProxyDatabase

_ORDER_BY_KEY_ONE_ARGUMENT = (
    "When ordering by key, you may only pass one argument to start_at(), end_at(), or equal_to()"
)


def _validate_limit(limit: Any) -> int:
    if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
        raise InvalidArgumentError(f"Limit must be a positive integer, got {limit!r}")
    return limit


def _validate_bound_value(value: Any) -> Any:
    if value is not None and not isinstance(value, str | int | float | bool):
        raise InvalidArgumentError(
            f"Bound values must be strings, numbers, booleans or None, got {type(value).__name__}"
        )
    return value


@dataclass(frozen=True)
class ProxyQuery:
    """A query whose operations are executed by the worker."""

    database: ProxyDatabase
    path_segments: tuple[str, ...] = ()
    filter: QueryFilter = field(default_factory=QueryFilter)

    @property
    def path(self) -> str:
        """The encoded path of this location ('' for the root)."""
        return encode_path(self.path_segments)

    def reference(self) -> ProxyReference:
        """The reference to this query's location, without the filter."""
        return ProxyReference(self.database, self.path_segments)

    # =========================================================================
    # Builders
    # =========================================================================

    def _with_filter(self, filter: QueryFilter) -> ProxyQuery:
        return ProxyQuery(self.database, self.path_segments, filter)

    def order_by_key(self) -> ProxyQuery:
        f = self.filter
        sentinel_bound = isinstance(f.start_key, KeySentinel) or isinstance(f.end_key, KeySentinel)
        if f.has_value_bounds or sentinel_bound:
            raise InvalidArgumentError(
                "order_by_key() cannot be combined with value bounds; call it before "
                "start_at(), end_at() or equal_to()"
            )
        return self._with_filter(f.copy_with(order_by=ORDER_BY_KEY))

    def order_by_priority(self) -> ProxyQuery:
        return self._with_filter(self.filter.copy_with(order_by=ORDER_BY_PRIORITY))

    def order_by_value(self) -> ProxyQuery:
        return self._with_filter(self.filter.copy_with(order_by=ORDER_BY_VALUE))

    def order_by_child(self, child: str) -> ProxyQuery:
        return self._with_filter(self.filter.copy_with(order_by=validate_order_by_child(child)))

    def _cursor(self, value: Any, key: Any, sentinel: KeySentinel) -> tuple[Any, Any]:
        # When ordering by key the single argument is the key itself
        if self.filter.orders_by_key:
            if key != sentinel:
                raise InvalidArgumentError(_ORDER_BY_KEY_ONE_ARGUMENT)
            return None, value if isinstance(value, str) else None
        return _validate_bound_value(value), key

    def start_at(self, value: Any, key: Any = MIN_KEY) -> ProxyQuery:
        value, key = self._cursor(value, key, MIN_KEY)
        return self._with_filter(
            self.filter.copy_with(start_key=parse_bound_key(key, MIN_KEY), start_value=value)
        )

    def end_at(self, value: Any, key: Any = MAX_KEY) -> ProxyQuery:
        value, key = self._cursor(value, key, MAX_KEY)
        return self._with_filter(
            self.filter.copy_with(end_key=parse_bound_key(key, MAX_KEY), end_value=value)
        )

    def equal_to(self, value: Any, key: Any = ANY_KEY) -> ProxyQuery:
        """Restrict to children matching `value` (and `key`, if given).

        Without a key every child name matches; the bounds then use the
        min/max sentinels. With a key both bounds use that key.
        """
        if key is ANY_KEY:
            return self.end_at(value).start_at(value)
        return self.end_at(value, key).start_at(value, key)

    def limit_to_first(self, limit: int) -> ProxyQuery:
        return self._with_filter(
            self.filter.copy_with(limit=_validate_limit(limit), reversed=False)
        )

    def limit_to_last(self, limit: int) -> ProxyQuery:
        return self._with_filter(
            self.filter.copy_with(limit=_validate_limit(limit), reversed=True)
        )

    # =========================================================================
    # Terminal operations
    # =========================================================================

    def _command(
        self,
        operation: OperationType,
        args: tuple[Any, ...] = (),
        kwargs: Mapping[str, Any] | None = None,
    ) -> Command:
        return Command.query_call(
            operation,
            self.database.app_name,
            self.database.database_url,
            self.path_segments,
            self.filter,
            args,
            kwargs,
        )

    async def _invoke(
        self,
        operation: OperationType,
        args: tuple[Any, ...] = (),
        kwargs: Mapping[str, Any] | None = None,
    ) -> Any:
        return await self.database.boundary.execute(self._command(operation, args, kwargs))

    async def keep_synced(self, value: bool) -> None:
        """Keep this query's data synchronized in the worker's cache."""
        await self._invoke(OperationType.KEEP_SYNCED, (value,))

    def on(self, event_type: str) -> QueryEventStream:
        """Stream events of `event_type` for this query.

        The subscription opens when the first listener attaches. Each
        opening sends a new `on` command.
        """
        if event_type not in QUERY_EVENT_TYPES:
            raise InvalidArgumentError(f"{event_type!r} is not a valid event type")

        def open_subscription():
            return self.database.boundary.subscribe(
                self._command(OperationType.ON, (event_type,))
            )

        return QueryEventStream(open_subscription, description=f"{event_type} at /{self.path}")

    def on_value(self) -> QueryEventStream:
        return self.on(VALUE)

    def on_child_added(self) -> QueryEventStream:
        return self.on(CHILD_ADDED)

    def on_child_changed(self) -> QueryEventStream:
        return self.on(CHILD_CHANGED)

    def on_child_removed(self) -> QueryEventStream:
        return self.on(CHILD_REMOVED)

    def on_child_moved(self) -> QueryEventStream:
        return self.on(CHILD_MOVED)

    async def once(self, event_type: str = VALUE) -> QueryEvent:
        """Wait for a single event, then close the subscription."""
        return await self.on(event_type).first()


@dataclass(frozen=True)
class ProxyReference(ProxyQuery):
    """A reference to a location, with navigation and write operations."""

    @property
    def key(self) -> str | None:
        """The last path segment, or None at the root."""
        return self.path_segments[-1] if self.path_segments else None

    @property
    def url(self) -> str:
        base = self.database.database_url.rstrip("/")
        return f"{base}/{self.path}" if self.path else f"{base}/"

    @property
    def on_disconnect(self) -> ProxyDisconnect:
        return ProxyDisconnect(self)

    # =========================================================================
    # Navigation
    # =========================================================================

    def child(self, path: str) -> ProxyReference:
        """Reference to a relative path, e.g. 'fred' or 'fred/name/first'."""
        return ProxyReference(self.database, self.path_segments + split_child_path(path))

    def parent(self) -> ProxyReference | None:
        """The parent location, or None at the root."""
        if not self.path_segments:
            return None
        return ProxyReference(self.database, self.path_segments[:-1])

    def root(self) -> ProxyReference:
        return ProxyReference(self.database)

    def push(self) -> ProxyReference:
        """Reference to a new child with a generated, time-ordered name."""
        return self.child(self.database.push_ids.next())

    # =========================================================================
    # Writes
    # =========================================================================

    async def set(self, value: Any, priority: Any = None) -> None:
        """Overwrite the data at this location. None removes it."""
        await self._invoke(OperationType.SET, (value,), {"priority": priority})

    async def set_with_priority(self, value: Any, priority: Any) -> None:
        await self.set(value, priority=priority)

    async def set_priority(self, priority: Any) -> None:
        await self._invoke(OperationType.SET_PRIORITY, (priority,))

    async def update(self, value: Mapping[str, Any]) -> None:
        """Write only the given children, leaving the others untouched."""
        await self._invoke(OperationType.UPDATE, (dict(value),))

    async def remove(self) -> None:
        await self.set(None)

    async def run_transaction(self, transaction_handler: Any, **kwargs: Any) -> Any:
        raise UnimplementedError("Transactions are not supported through the worker boundary")


@dataclass(frozen=True)
class ProxyDisconnect:
    """Writes the server performs when this client disconnects."""

    reference: ProxyReference

    async def cancel(self) -> None:
        """Cancel every queued disconnect write at this location."""
        await self.reference._invoke(OperationType.DISCONNECT_CANCEL)

    async def set_with_priority(self, value: Any, priority: Any) -> None:
        await self.reference._invoke(OperationType.DISCONNECT_SET_WITH_PRIORITY, (value, priority))

    async def set(self, value: Any) -> None:
        await self.set_with_priority(value, None)

    async def remove(self) -> None:
        await self.set(None)

    async def update(self, value: Mapping[str, Any]) -> None:
        await self.reference._invoke(OperationType.DISCONNECT_UPDATE, (dict(value),))

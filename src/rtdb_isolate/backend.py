"""Interfaces of the live database objects inside the worker.

The sync engine, local cache and conflict resolution are not part of this
package. The worker only needs the surface below, which any real-time
database client can provide through a thin adapter. Methods may be plain
or async; the dispatcher awaits whatever is awaitable.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class LiveQuery(Protocol):
    """A live query inside the worker."""

    def order_by_key(self) -> LiveQuery: ...

    def order_by_priority(self) -> LiveQuery: ...

    def order_by_value(self) -> LiveQuery: ...

    def order_by_child(self, child: str) -> LiveQuery: ...

    def start_at(self, value: Any, key: str | None = None) -> LiveQuery: ...

    def end_at(self, value: Any, key: str | None = None) -> LiveQuery: ...

    def limit_to_first(self, limit: int) -> LiveQuery: ...

    def limit_to_last(self, limit: int) -> LiveQuery: ...

    def keep_synced(self, value: bool) -> Any: ...

    def on(self, event_type: str) -> AsyncIterator[Any]:
        """Open a continuous event source.

        Yields QueryEvent instances or mappings that validate as one.
        """
        ...


@runtime_checkable
class LiveDisconnect(Protocol):
    """Server-side write operations queued for when the client disconnects."""

    def cancel(self) -> Any: ...

    def set_with_priority(self, value: Any, priority: Any) -> Any: ...

    def update(self, value: dict[str, Any]) -> Any: ...


@runtime_checkable
class LiveReference(LiveQuery, Protocol):
    """A live reference inside the worker."""

    def child(self, path: str) -> LiveReference: ...

    @property
    def on_disconnect(self) -> LiveDisconnect: ...

    def set(self, value: Any, priority: Any = None) -> Any: ...

    def set_priority(self, priority: Any) -> Any: ...

    def update(self, value: dict[str, Any]) -> Any: ...


@runtime_checkable
class LiveDatabase(Protocol):
    """A live database connection inside the worker."""

    def reference(self) -> LiveReference: ...

    def go_online(self) -> Any: ...

    def go_offline(self) -> Any: ...

    def purge_outstanding_writes(self) -> Any: ...

    def set_persistence_cache_size_bytes(self, cache_size_bytes: int) -> Any: ...

    def set_persistence_enabled(self, enabled: bool) -> Any: ...


DatabaseFactory = Callable[[str, str], LiveDatabase]


class DatabaseRegistry:
    """Resolves a database identity to one live database instance.

    The factory is called once per (app_name, database_url) pair; later
    lookups reuse the instance so every command addressed to the same
    database acts on the same connection and cache.
    """

    def __init__(self, factory: DatabaseFactory) -> None:
        self._factory = factory
        self._databases: dict[tuple[str, str], LiveDatabase] = {}

    def resolve(self, app_name: str, database_url: str) -> LiveDatabase:
        key = (app_name, database_url)
        database = self._databases.get(key)
        if database is None:
            logger.info(f"Opening database {database_url} for app {app_name}")
            database = self._factory(app_name, database_url)
            self._databases[key] = database
        return database

    def __contains__(self, key: object) -> bool:
        return key in self._databases

    def __len__(self) -> int:
        return len(self._databases)

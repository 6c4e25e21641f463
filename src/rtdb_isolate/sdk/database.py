"""Client-side database proxy.

ProxyDatabase is the entry point of the client API. It never touches the
network or the cache itself: whole-database operations become commands
executed by the worker, and reference() hands out proxy references that
do the same for their location.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from ..errors import UnimplementedError
from ..protocol import Command, OperationType
from .push_ids import PushIdGenerator
from .query import ProxyReference
from .transport import ClientBoundary

logger = logging.getLogger(__name__)

DEFAULT_APP_NAME = "[DEFAULT]"


class ProxyDatabase:
    """A database whose live connection runs in a worker.

    Usage:
        async with create_local_boundary(handler) as boundary:
            database = ProxyDatabase(boundary, "https://example.firebaseio.com")
            await database.reference("users/ada").set({"name": "Ada"})
    """

    def __init__(
        self,
        boundary: ClientBoundary,
        database_url: str,
        app_name: str = DEFAULT_APP_NAME,
        push_ids: PushIdGenerator | None = None,
    ) -> None:
        self._boundary = boundary
        self._database_url = database_url
        self._app_name = app_name
        self.push_ids = push_ids or PushIdGenerator()

    def __repr__(self) -> str:
        return f"ProxyDatabase({self._database_url!r}, app_name={self._app_name!r})"

    @property
    def boundary(self) -> ClientBoundary:
        return self._boundary

    @property
    def database_url(self) -> str:
        return self._database_url

    @property
    def app_name(self) -> str:
        return self._app_name

    @property
    def server_time(self) -> datetime:
        raise UnimplementedError("Server time is not available through the worker boundary")

    def reference(self, path: str | None = None) -> ProxyReference:
        """Get a reference to the root, or to `path` below it."""
        root = ProxyReference(self)
        return root.child(path) if path else root

    async def _invoke(self, operation: OperationType, *args: Any) -> Any:
        command = Command.database_call(operation, self._app_name, self._database_url, args)
        logger.debug(f"Database call {operation.value} (id={command.id})")
        return await self._boundary.execute(command)

    async def go_offline(self) -> None:
        await self._invoke(OperationType.GO_OFFLINE)

    async def go_online(self) -> None:
        await self._invoke(OperationType.GO_ONLINE)

    async def purge_outstanding_writes(self) -> None:
        """Drop every write the worker has not yet synchronized."""
        await self._invoke(OperationType.PURGE_OUTSTANDING_WRITES)

    async def set_persistence_cache_size_bytes(self, cache_size_bytes: int) -> None:
        await self._invoke(OperationType.SET_PERSISTENCE_CACHE_SIZE_BYTES, cache_size_bytes)

    async def set_persistence_enabled(self, enabled: bool) -> bool:
        """Toggle local persistence. Returns whether the setting was applied."""
        return bool(await self._invoke(OperationType.SET_PERSISTENCE_ENABLED, enabled))

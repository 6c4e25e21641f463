"""Command definitions for the protocol layer.

A Command is one database operation captured on the client side: the
operation tag, where it applies (database identity, path and query filter)
and its arguments. Commands are immutable and fully self-describing, so
the worker can replay them without any state from the sending process.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .filter import QueryFilter
from .paths import decode_path, encode_path


class OperationType(str, Enum):
    """The closed set of operations a worker can execute."""

    # Whole-database scope
    GO_OFFLINE = "goOffline"
    GO_ONLINE = "goOnline"
    PURGE_OUTSTANDING_WRITES = "purgeOutstandingWrites"
    SET_PERSISTENCE_CACHE_SIZE_BYTES = "setPersistenceCacheSizeBytes"
    SET_PERSISTENCE_ENABLED = "setPersistenceEnabled"

    # Query/reference scope
    KEEP_SYNCED = "keepSynced"
    SET = "set"
    SET_PRIORITY = "setPriority"
    UPDATE = "update"
    DISCONNECT_CANCEL = "disconnectCancel"
    DISCONNECT_SET_WITH_PRIORITY = "disconnectSetWithPriority"
    DISCONNECT_UPDATE = "disconnectUpdate"
    ON = "on"

    @property
    def is_database_scoped(self) -> bool:
        return self in DATABASE_OPERATIONS

    @property
    def is_streaming(self) -> bool:
        return self is OperationType.ON


DATABASE_OPERATIONS = frozenset(
    {
        OperationType.GO_OFFLINE,
        OperationType.GO_ONLINE,
        OperationType.PURGE_OUTSTANDING_WRITES,
        OperationType.SET_PERSISTENCE_CACHE_SIZE_BYTES,
        OperationType.SET_PERSISTENCE_ENABLED,
    }
)


class ControlType(str, Enum):
    """Protocol-level messages that are not database operations."""

    SUBSCRIPTION_CANCEL = "subscription.cancel"


class Address(BaseModel):
    """Where a command applies.

    `path` is None for whole-database operations. Otherwise it holds the
    encoded path (``""`` for the root) and `filter` the query state.
    """

    model_config = ConfigDict(frozen=True)

    app_name: str
    database_url: str
    path: str | None = None
    filter: QueryFilter | None = None

    @property
    def is_query_scoped(self) -> bool:
        return self.path is not None

    @property
    def segments(self) -> tuple[str, ...]:
        """Decoded path segments."""
        return decode_path(self.path or "")


def _command_id() -> str:
    return f"cmd_{uuid.uuid4().hex[:12]}"


class Command(BaseModel):
    """A command from the client proxies to the worker.

    Example (reference write):
        {
            "id": "cmd_abc123def456",
            "cmd": "set",
            "address": {
                "app_name": "[DEFAULT]",
                "database_url": "https://example.firebaseio.com",
                "path": "users/ada",
                "filter": {"order_by": ".priority", ...}
            },
            "args": [{"name": "Ada"}],
            "kwargs": {"priority": null}
        }

    The worker answers with Events whose `correlation_id` is the
    command's `id`.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_command_id)
    cmd: str
    address: Address | None = None
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] = Field(default_factory=dict)

    @property
    def operation(self) -> OperationType | None:
        """The operation tag, or None if it is not a known operation."""
        try:
            return OperationType(self.cmd)
        except ValueError:
            return None

    @property
    def is_control(self) -> bool:
        return self.cmd in {c.value for c in ControlType}

    @classmethod
    def database_call(
        cls,
        operation: OperationType,
        app_name: str,
        database_url: str,
        args: Iterable[Any] = (),
    ) -> Command:
        """Build a whole-database command."""
        return cls(
            cmd=operation.value,
            address=Address(app_name=app_name, database_url=database_url),
            args=tuple(args),
        )

    @classmethod
    def query_call(
        cls,
        operation: OperationType,
        app_name: str,
        database_url: str,
        segments: Iterable[str],
        filter: QueryFilter,
        args: Iterable[Any] = (),
        kwargs: Mapping[str, Any] | None = None,
    ) -> Command:
        """Build a query/reference-scoped command."""
        return cls(
            cmd=operation.value,
            address=Address(
                app_name=app_name,
                database_url=database_url,
                path=encode_path(segments),
                filter=filter,
            ),
            args=tuple(args),
            kwargs=dict(kwargs or {}),
        )

    @classmethod
    def cancel(cls, subscription_id: str) -> Command:
        """Build the control message that closes a subscription."""
        return cls(cmd=ControlType.SUBSCRIPTION_CANCEL.value, args=(subscription_id,))

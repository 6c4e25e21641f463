"""rtdb-isolate - run a real-time database client behind a worker boundary.

Client code uses ProxyDatabase and its references and queries. Every
terminal operation becomes a Command that a worker replays against the
live database through the CommandHandler.
"""

from .errors import (
    BoundaryError,
    InvalidArgumentError,
    RtdbIsolateError,
    UnimplementedError,
    UnsupportedOperationError,
)
from .protocol import Command, CommandHandler, Event, OperationType, QueryFilter
from .sdk import ProxyDatabase, ProxyQuery, ProxyReference, QueryEventStream
from .types import DataSnapshot, QueryEvent

__version__ = "0.1.0"

__all__ = [
    "BoundaryError",
    "InvalidArgumentError",
    "RtdbIsolateError",
    "UnimplementedError",
    "UnsupportedOperationError",
    "Command",
    "CommandHandler",
    "Event",
    "OperationType",
    "QueryFilter",
    "ProxyDatabase",
    "ProxyQuery",
    "ProxyReference",
    "QueryEventStream",
    "DataSnapshot",
    "QueryEvent",
]

"""Command protocol between client proxies and the worker.

Key concepts:
- QueryFilter: immutable ordering/range/limit state of a query
- Command: one operation with its address and arguments (client → worker)
- Event: results and subscription events (worker → client), correlated
  to their command by id
- CommandHandler: replays commands against live database objects
"""

from .commands import DATABASE_OPERATIONS, Address, Command, ControlType, OperationType
from .events import Event, EventType
from .filter import (
    ANY_KEY,
    MAX_KEY,
    MIN_KEY,
    ORDER_BY_KEY,
    ORDER_BY_PRIORITY,
    ORDER_BY_VALUE,
    KeySentinel,
    QueryFilter,
    compare_keys,
    parse_bound_key,
    validate_key,
    validate_order_by_child,
)
from .handler import CommandHandler, build_query
from .paths import decode_path, encode_path, split_child_path

__all__ = [
    "Address",
    "Command",
    "ControlType",
    "DATABASE_OPERATIONS",
    "OperationType",
    "Event",
    "EventType",
    "ANY_KEY",
    "MAX_KEY",
    "MIN_KEY",
    "ORDER_BY_KEY",
    "ORDER_BY_PRIORITY",
    "ORDER_BY_VALUE",
    "KeySentinel",
    "QueryFilter",
    "compare_keys",
    "parse_bound_key",
    "validate_key",
    "validate_order_by_child",
    "CommandHandler",
    "build_query",
    "decode_path",
    "encode_path",
    "split_child_path",
]

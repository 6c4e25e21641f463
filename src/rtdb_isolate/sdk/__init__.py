"""rtdb-isolate SDK - client proxies for a database running in a worker.

Provides multiple boundary modes:
- local: worker runs as tasks in the same event loop
- stdio: launch the worker as a subprocess
- websocket: connect to a running HTTP worker
- mock: for testing without a worker
"""

from .database import DEFAULT_APP_NAME, ProxyDatabase
from .push_ids import PushIdGenerator
from .query import ProxyDisconnect, ProxyQuery, ProxyReference
from .stream import QueryEventStream, StreamListener
from .transport import (
    BaseBoundary,
    BoundaryState,
    ClientBoundary,
    LocalBoundary,
    MockBoundary,
    StdioBoundary,
    WebSocketBoundary,
    create_local_boundary,
    create_mock_boundary,
    create_stdio_boundary,
    create_websocket_boundary,
)

__all__ = [
    # Proxies
    "DEFAULT_APP_NAME",
    "ProxyDatabase",
    "ProxyDisconnect",
    "ProxyQuery",
    "ProxyReference",
    "PushIdGenerator",
    # Streams
    "QueryEventStream",
    "StreamListener",
    # Boundaries
    "BaseBoundary",
    "BoundaryState",
    "ClientBoundary",
    "LocalBoundary",
    "MockBoundary",
    "StdioBoundary",
    "WebSocketBoundary",
    "create_local_boundary",
    "create_mock_boundary",
    "create_stdio_boundary",
    "create_websocket_boundary",
]

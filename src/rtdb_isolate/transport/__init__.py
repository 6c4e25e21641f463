"""Worker-side transports.

- stdio: newline-delimited JSON for subprocess workers
- WebSocket: served by the HTTP app (see rtdb_isolate.routes)
"""

from .stdio import StdioWorker, run_stdio_worker

__all__ = [
    "StdioWorker",
    "run_stdio_worker",
]

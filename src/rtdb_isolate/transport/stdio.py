"""stdio worker.

Serves the command protocol on stdin/stdout so a client can run the
worker as a subprocess (see StdioBoundary).

Wire format (newline-delimited JSON, UTF-8 encoded):
- Input (stdin):  {"id": "cmd_123", "cmd": "set", "address": {...}, "args": [...]}
- Output (stdout): {"id": "evt_456", "type": "result", "correlation_id": "cmd_123", ...}

Logging goes to stderr; stdout carries protocol events only.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import sys
from typing import BinaryIO

from ..protocol import Command, CommandHandler, Event
from ..worker import WorkerServer, invalid_command_event

logger = logging.getLogger(__name__)

ENCODING = "utf-8"

# Always LF on output, whatever the platform
NEWLINE = "\n"


class StdioWorker:
    """Runs a WorkerServer over a pair of binary streams.

    Commands are submitted as they arrive, so a long-lived subscription
    never blocks the commands read after it. At EOF in-flight single-shot
    commands are finished and open subscriptions are cancelled.

    Usage:
        worker = StdioWorker(handler)
        await worker.run()  # Blocks until stdin closes

    Example session:
        → {"id":"c1","cmd":"setPersistenceEnabled","address":{...},"args":[true]}
        ← {"id":"e1","type":"result","correlation_id":"c1","data":{"value":true},"final":true}
        → {"id":"c2","cmd":"on","address":{...,"path":"users"},"args":["value"]}
        ← {"id":"e2","type":"query.event","correlation_id":"c2","data":{"event":{...}},"sequence":0}
        → {"id":"c3","cmd":"subscription.cancel","args":["c2"]}
    """

    def __init__(
        self,
        handler: CommandHandler,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
    ):
        self._reader = io.TextIOWrapper(
            stdin if stdin is not None else sys.stdin.buffer,
            encoding=ENCODING,
            errors="replace",
            newline="",  # Accept LF, CRLF and CR
        )
        self._writer = io.TextIOWrapper(
            stdout if stdout is not None else sys.stdout.buffer,
            encoding=ENCODING,
            errors="replace",
            newline=NEWLINE,
            write_through=True,
        )
        self._server = WorkerServer(handler, self._send_event)
        self._running = False

    @property
    def server(self) -> WorkerServer:
        return self._server

    async def run(self) -> None:
        """Process commands until stdin closes."""
        self._running = True
        await self._send_event(Event.connected({"transport": "stdio", "encoding": ENCODING}))

        try:
            while self._running:
                line = await self._read_line()
                if line is None:
                    break

                line = line.strip()
                if line.startswith("\ufeff"):
                    line = line[1:]
                if not line:
                    continue

                await self._process_line(line)

        except asyncio.CancelledError:
            logger.info("stdio worker cancelled")
            raise
        finally:
            self._running = False
            await self._server.shutdown()

    def stop(self) -> None:
        self._running = False

    async def _read_line(self) -> str | None:
        loop = asyncio.get_running_loop()
        line = await loop.run_in_executor(None, self._reader.readline)
        return line or None

    async def _process_line(self, line: str) -> None:
        try:
            command = Command.model_validate_json(line.encode(ENCODING))
        except ValueError as e:
            logger.warning(f"Parse error: {e}")
            await self._send_event(invalid_command_event(line, e))
            return

        logger.debug(f"Received command: {command.cmd} (id={command.id})")
        await self._server.submit(command)

    async def _send_event(self, event: Event) -> None:
        self._writer.write(event.model_dump_json() + NEWLINE)
        self._writer.flush()


async def run_stdio_worker(handler: CommandHandler) -> None:
    """Serve `handler` on this process's stdin/stdout."""
    if sys.platform == "win32":
        import msvcrt

        msvcrt.setmode(sys.stdin.fileno(), os.O_BINARY)
        msvcrt.setmode(sys.stdout.fileno(), os.O_BINARY)

    worker = StdioWorker(handler)
    await worker.run()

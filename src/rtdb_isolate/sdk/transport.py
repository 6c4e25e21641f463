"""Client-side boundary between the proxies and the worker.

The proxies depend only on the ClientBoundary protocol:
- execute(command): single-shot, resolves to the operation's result
- subscribe(command): a stream of events for an `on` command

Implementations ship commands as JSON to a worker that runs somewhere
else (another task, a subprocess, a server) and route the correlated
events back. Responses are matched to commands by id, so any number of
callers may execute and subscribe concurrently.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any, Protocol, runtime_checkable

import websockets

from ..config import BoundaryConfig
from ..errors import BoundaryError, UnsupportedOperationError, error_from_code
from ..protocol import Command, CommandHandler, Event, EventType, OperationType
from ..types import QueryEvent
from ..worker import WorkerServer

logger = logging.getLogger(__name__)

TRANSPORT_CLOSED = "transport_closed"
TRANSPORT_ERROR = "transport_error"


class BoundaryState(str, Enum):
    """Connection state machine."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


@runtime_checkable
class ClientBoundary(Protocol):
    """Protocol the client proxies use to reach the worker."""

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def execute(self, command: Command) -> Any:
        """Send a single-shot command and return its result.

        Raises:
            BoundaryError: If the command could not be delivered or the
                worker failed to run it
            InvalidArgumentError, UnsupportedOperationError,
            UnimplementedError: Re-raised from the worker
        """
        ...

    def subscribe(self, command: Command) -> AsyncIterator[Event]:
        """Send an `on` command and yield its `query.event` events.

        The stream ends when the worker closes it. Closing the iterator
        early cancels the subscription on the worker.
        """
        ...


def _raise_for_error(event: Event) -> None:
    if event.is_error():
        raise error_from_code(event.data.get("error", "Unknown error"), event.data.get("code"))


class BaseBoundary(ABC):
    """Base class for boundaries with common functionality.

    Provides:
    - State management
    - Routing of correlated events to the waiting caller
    - Background reader task management
    - Subscription cancellation when a stream is closed early
    """

    def __init__(self, config: BoundaryConfig):
        self.config = config
        self._state = BoundaryState.DISCONNECTED
        self._pending: dict[str, asyncio.Queue[Event]] = {}
        self._reader_task: asyncio.Task[None] | None = None
        # True from a successful _do_connect() until _do_disconnect() has run,
        # even if the worker went away in between
        self._resources_open = False
        self._lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()

    @property
    def state(self) -> BoundaryState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == BoundaryState.CONNECTED

    @property
    def in_flight(self) -> list[str]:
        """Ids of commands still waiting for their final event."""
        return list(self._pending)

    async def connect(self) -> None:
        """Establish the connection to the worker."""
        async with self._lock:
            if self._state == BoundaryState.CONNECTED:
                return

            # Leftovers of a connection the worker closed
            await self._release()

            self._state = BoundaryState.CONNECTING
            try:
                await self._do_connect()
                self._resources_open = True
                self._state = BoundaryState.CONNECTED
                self._reader_task = asyncio.create_task(self._read_loop())
                logger.info(f"{self.__class__.__name__} connected")
            except Exception as e:
                self._state = BoundaryState.DISCONNECTED
                raise BoundaryError(f"Failed to connect: {e}", code=TRANSPORT_ERROR) from e

    async def disconnect(self) -> None:
        """Close the connection. Waiting callers fail with BoundaryError."""
        async with self._lock:
            if self._state == BoundaryState.DISCONNECTED and not self._resources_open:
                return

            self._state = BoundaryState.CLOSED
            await self._release()
            self._state = BoundaryState.DISCONNECTED
            logger.info(f"{self.__class__.__name__} disconnected")

    async def _release(self) -> None:
        """Stop the reader, fail waiting callers and release worker resources."""
        if self._reader_task:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None

        await self._fail_pending("Boundary disconnected", TRANSPORT_CLOSED)

        if self._resources_open:
            self._resources_open = False
            await self._do_disconnect()

    async def execute(self, command: Command) -> Any:
        """Send a single-shot command and return its result value."""
        if command.operation is OperationType.ON:
            raise UnsupportedOperationError("'on' opens a stream and must be subscribed")

        queue = self._register(command)
        try:
            await self._send(command)
            if self.config.timeout is None:
                event = await queue.get()
            else:
                event = await asyncio.wait_for(queue.get(), timeout=self.config.timeout)
        except TimeoutError as e:
            raise BoundaryError(f"Command {command.cmd} timed out", code="timeout") from e
        finally:
            self._pending.pop(command.id, None)

        _raise_for_error(event)
        return event.data.get("value")

    async def subscribe(self, command: Command) -> AsyncIterator[Event]:
        """Send an `on` command and yield its events until the stream ends."""
        if command.operation is not OperationType.ON:
            raise UnsupportedOperationError(f"Only 'on' can be subscribed, got {command.cmd!r}")

        queue = self._register(command)
        # Set before sending: a send cancelled mid-write may still reach the worker
        sent = True
        finished = False
        try:
            try:
                await self._send(command)
            except BoundaryError:
                sent = False
                raise
            while True:
                event = await queue.get()
                if event.is_error() or event.final:
                    finished = True
                    _raise_for_error(event)
                    return
                yield event
        finally:
            self._pending.pop(command.id, None)
            if sent and not finished and self.is_connected:
                try:
                    await self._send(Command.cancel(command.id))
                except BoundaryError as e:
                    logger.warning(f"Failed to cancel subscription {command.id}: {e}")

    def _register(self, command: Command) -> asyncio.Queue[Event]:
        if not self.is_connected:
            raise BoundaryError("Boundary not connected", code="not_connected")
        if command.id in self._pending:
            raise BoundaryError(
                f"Command {command.id} is already in flight", code="duplicate_command"
            )
        queue: asyncio.Queue[Event] = asyncio.Queue()
        self._pending[command.id] = queue
        return queue

    async def _send(self, command: Command) -> None:
        try:
            async with self._send_lock:
                await self._do_send(command)
        except BoundaryError:
            raise
        except Exception as e:
            raise BoundaryError(
                f"Failed to send command {command.cmd}: {e}", code=TRANSPORT_ERROR
            ) from e
        logger.debug(f"Sent command: {command.cmd} (id={command.id})")

    async def _fail_pending(self, message: str, code: str) -> None:
        for command_id, queue in list(self._pending.items()):
            await queue.put(Event.error(command_id, message, code=code))

    async def _read_loop(self) -> None:
        """Background task reading events and routing them."""
        try:
            async for event in self._receive_events():
                queue = self._pending.get(event.correlation_id or "")
                if queue is not None:
                    await queue.put(event)
                elif event.type == EventType.CONNECTED.value:
                    logger.debug(f"Worker connected: {event.data}")
                else:
                    logger.debug(
                        f"Dropping {event.type} event for inactive command {event.correlation_id}"
                    )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Read loop error: {e}")
            await self._fail_pending(f"Transport error: {e}", TRANSPORT_ERROR)
            self._state = BoundaryState.DISCONNECTED
            return

        if self._state == BoundaryState.CONNECTED:
            logger.warning(f"{self.__class__.__name__}: worker closed the connection")
            self._state = BoundaryState.DISCONNECTED
            await self._fail_pending("Worker closed the connection", TRANSPORT_CLOSED)

    # Abstract methods for subclasses
    @abstractmethod
    async def _do_connect(self) -> None:
        """Implementation-specific connection logic."""
        ...

    @abstractmethod
    async def _do_disconnect(self) -> None:
        """Implementation-specific disconnection logic."""
        ...

    @abstractmethod
    async def _do_send(self, command: Command) -> None:
        """Implementation-specific send logic."""
        ...

    @abstractmethod
    def _receive_events(self) -> AsyncIterator[Event]:
        """Implementation-specific receive logic. Must be an async generator."""
        ...

    async def __aenter__(self) -> BaseBoundary:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()


class LocalBoundary(BaseBoundary):
    """Boundary to a worker running as tasks in the same event loop.

    Commands and events are still serialized to JSON on the way through,
    so anything that works here works across a process boundary too.
    """

    def __init__(self, handler: CommandHandler, config: BoundaryConfig | None = None):
        super().__init__(config or BoundaryConfig(mode="local"))
        self._handler = handler
        self._server: WorkerServer | None = None
        self._outbox: asyncio.Queue[str | None] | None = None

    async def _do_connect(self) -> None:
        self._outbox = asyncio.Queue()
        self._server = WorkerServer(self._handler, self._emit)
        await self._emit(Event.connected({"transport": "local"}))

    async def _do_disconnect(self) -> None:
        if self._server:
            await self._server.shutdown()
            self._server = None
        if self._outbox:
            await self._outbox.put(None)
            self._outbox = None

    async def _emit(self, event: Event) -> None:
        if self._outbox is not None:
            await self._outbox.put(event.model_dump_json())

    async def _do_send(self, command: Command) -> None:
        if self._server is None:
            raise ConnectionError("Worker not running")
        await self._server.submit(Command.model_validate_json(command.model_dump_json()))

    async def _receive_events(self) -> AsyncIterator[Event]:
        outbox = self._outbox
        if outbox is None:
            raise ConnectionError("Worker not running")
        while True:
            line = await outbox.get()
            if line is None:
                break
            yield Event.model_validate_json(line)


class StdioBoundary(BaseBoundary):
    """Boundary to a worker subprocess over stdin/stdout.

    Launches the worker (by default `rtdb-isolate --stdio`) and talks
    newline-delimited JSON:
    - Commands: JSON object + newline to subprocess stdin
    - Events: JSON object + newline from subprocess stdout
    """

    def __init__(self, config: BoundaryConfig | None = None):
        super().__init__(config or BoundaryConfig(mode="stdio"))
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None

    async def _do_connect(self) -> None:
        """Launch the worker subprocess."""
        cmd = self.config.command

        env = None
        if self.config.env:
            env = {**os.environ, **self.config.env}

        self._process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.config.working_directory,
            env=env,
        )

        self._stderr_task = asyncio.create_task(self._read_stderr())

        logger.info(f"Launched worker: {' '.join(cmd)} (pid={self._process.pid})")

    async def _do_disconnect(self) -> None:
        """Close stdin and terminate the worker."""
        if self._process:
            if self._process.stdin:
                self._process.stdin.close()
            if self._process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=5.0)
            except TimeoutError:
                self._process.kill()
                await self._process.wait()
            logger.info(f"Worker terminated (pid={self._process.pid})")
            self._process = None

        if self._stderr_task:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
            self._stderr_task = None

    async def _do_send(self, command: Command) -> None:
        """Send command as JSON line to stdin."""
        if not self._process or not self._process.stdin:
            raise ConnectionError("Worker not running")

        line = command.model_dump_json() + "\n"
        self._process.stdin.write(line.encode("utf-8"))
        await self._process.stdin.drain()

    async def _receive_events(self) -> AsyncIterator[Event]:
        """Read events from stdout."""
        if not self._process or not self._process.stdout:
            raise ConnectionError("Worker not running")

        while True:
            line = await self._process.stdout.readline()
            if not line:
                # EOF - worker exited
                break

            line_str = line.decode("utf-8").strip()
            if not line_str:
                continue

            if not line_str.startswith("{"):
                logger.debug(f"Skipping non-JSON line: {line_str[:50]}")
                continue

            try:
                yield Event.model_validate(json.loads(line_str))
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning(f"Failed to parse event: {e} (line: {line_str[:50]})")

    async def _read_stderr(self) -> None:
        """Forward worker stderr to the debug log."""
        if not self._process or not self._process.stderr:
            return

        while True:
            line = await self._process.stderr.readline()
            if not line:
                break
            logger.debug(f"[worker stderr] {line.decode('utf-8').strip()}")


class WebSocketBoundary(BaseBoundary):
    """Boundary to a worker served over WebSocket (`rtdb-isolate --http`).

    Every text frame sent is a Command, every frame received an Event.
    """

    def __init__(self, config: BoundaryConfig | None = None):
        super().__init__(config or BoundaryConfig(mode="websocket"))
        self._ws: Any = None  # websockets client connection

    @property
    def ws_url(self) -> str:
        base = self.config.url.replace("http://", "ws://").replace("https://", "wss://")
        return f"{base.rstrip('/')}/ws"

    async def _do_connect(self) -> None:
        self._ws = await websockets.connect(self.ws_url, ping_interval=30, ping_timeout=10)

        event = Event.model_validate_json(await self._ws.recv())
        if event.type != EventType.CONNECTED.value:
            await self._ws.close()
            self._ws = None
            raise ConnectionError(f"Unexpected first event: {event.type}")

        logger.info(f"WebSocket connected to {self.ws_url}")

    async def _do_disconnect(self) -> None:
        if self._ws:
            await self._ws.close()
            self._ws = None

    async def _do_send(self, command: Command) -> None:
        if not self._ws:
            raise ConnectionError("WebSocket not connected")
        await self._ws.send(command.model_dump_json())

    async def _receive_events(self) -> AsyncIterator[Event]:
        if not self._ws:
            raise ConnectionError("WebSocket not connected")

        async for data in self._ws:
            try:
                yield Event.model_validate_json(data)
            except ValueError as e:
                logger.warning(f"Invalid WebSocket frame: {e}")


class MockBoundary(BaseBoundary):
    """Mock boundary for testing.

    Records every command, answers single-shot commands with canned
    results and lets tests push events into open subscriptions. No worker
    and no I/O, but events still go through the normal routing.

    Usage:
        boundary = MockBoundary()
        boundary.set_response(OperationType.SET_PERSISTENCE_ENABLED, True)
        await boundary.connect()

        database = ProxyDatabase(boundary, database_url="https://db.example")
        assert await database.set_persistence_enabled(True) is True
        assert boundary.recorded_commands[0].cmd == "setPersistenceEnabled"
    """

    def __init__(self, config: BoundaryConfig | None = None) -> None:
        super().__init__(config or BoundaryConfig(mode="mock"))
        self._responses: dict[str, Any] = {}
        self._errors: dict[str, tuple[str, str]] = {}
        self._initial_events: list[dict[str, Any]] = []
        self._recorded_commands: list[Command] = []
        self._open: dict[str, int] = {}
        self._incoming: asyncio.Queue[Event] = asyncio.Queue()

    @property
    def recorded_commands(self) -> list[Command]:
        """All commands sent through this boundary, control messages included."""
        return self._recorded_commands.copy()

    @property
    def subscribe_count(self) -> int:
        return sum(1 for c in self._recorded_commands if c.operation is OperationType.ON)

    @property
    def open_subscriptions(self) -> list[str]:
        return list(self._open)

    @property
    def cancelled_subscriptions(self) -> list[str]:
        return [c.args[0] for c in self._recorded_commands if c.is_control]

    def set_response(self, operation: OperationType | str, value: Any) -> None:
        """Set the result returned for an operation."""
        self._responses[_cmd(operation)] = value

    def set_error(self, operation: OperationType | str, message: str, code: str) -> None:
        """Make an operation fail with the given worker error code."""
        self._errors[_cmd(operation)] = (message, code)

    def set_initial_events(self, events: list[QueryEvent | dict[str, Any]]) -> None:
        """Events delivered to every new subscription right after it opens."""
        self._initial_events = [QueryEvent.model_validate(e).model_dump(mode="json") for e in events]

    async def emit(
        self, event: QueryEvent | dict[str, Any], subscription_id: str | None = None
    ) -> None:
        """Push a query event into one or all open subscriptions."""
        payload = QueryEvent.model_validate(event).model_dump(mode="json")
        targets = [subscription_id] if subscription_id else list(self._open)
        for target in targets:
            if target in self._open:
                await self._push(target, payload)

    async def end_stream(self, subscription_id: str) -> None:
        """Close a subscription from the worker side."""
        sequence = self._open.pop(subscription_id, None)
        await self._incoming.put(Event.stream_end(subscription_id, sequence))

    def clear(self) -> None:
        """Clear recorded commands and canned responses."""
        self._recorded_commands.clear()
        self._responses.clear()
        self._errors.clear()
        self._initial_events = []

    async def _push(self, subscription_id: str, payload: dict[str, Any]) -> None:
        sequence = self._open[subscription_id]
        self._open[subscription_id] = sequence + 1
        await self._incoming.put(Event.query_event(subscription_id, payload, sequence))

    async def _do_connect(self) -> None:
        pass

    async def _do_disconnect(self) -> None:
        self._open.clear()

    async def _do_send(self, command: Command) -> None:
        """Record command and queue the canned response."""
        # Commands must be serializable, exactly as with a real worker
        command = Command.model_validate_json(command.model_dump_json())
        self._recorded_commands.append(command)

        if command.is_control:
            self._open.pop(command.args[0], None)
            return

        if command.cmd in self._errors:
            message, code = self._errors[command.cmd]
            await self._incoming.put(Event.error(command.id, message, code=code))
            return

        if command.operation is OperationType.ON:
            self._open[command.id] = 0
            for payload in self._initial_events:
                await self._push(command.id, payload)
            return

        await self._incoming.put(Event.result(command.id, self._responses.get(command.cmd)))

    async def _receive_events(self) -> AsyncIterator[Event]:
        while True:
            yield await self._incoming.get()


def _cmd(operation: OperationType | str) -> str:
    return operation.value if isinstance(operation, OperationType) else operation


# Factory functions


def create_local_boundary(
    handler: CommandHandler, timeout: float | None = None
) -> LocalBoundary:
    """Create a boundary to an in-process worker using `handler`."""
    return LocalBoundary(handler, BoundaryConfig(mode="local", timeout=timeout))


def create_stdio_boundary(
    command: list[str] | None = None,
    working_directory: str | None = None,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
) -> StdioBoundary:
    """Create a boundary to a worker subprocess.

    Args:
        command: Worker command line (default: ["rtdb-isolate", "--stdio"])
        working_directory: CWD for the subprocess
        env: Additional environment variables, e.g. RTDB_ISOLATE_BACKEND
        timeout: Timeout for single-shot commands
    """
    config = BoundaryConfig(mode="stdio", working_directory=working_directory, env=env, timeout=timeout)
    if command:
        config.command = command
    return StdioBoundary(config)


def create_websocket_boundary(
    url: str = BoundaryConfig.url, timeout: float | None = None
) -> WebSocketBoundary:
    """Create a boundary to a worker served over WebSocket."""
    return WebSocketBoundary(BoundaryConfig(mode="websocket", url=url, timeout=timeout))


def create_mock_boundary() -> MockBoundary:
    """Create a mock boundary for testing."""
    return MockBoundary()

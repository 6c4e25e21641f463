"""Worker-side command loop.

A WorkerServer sits between a transport and the CommandHandler. It runs
every command in its own task so slow operations and long-lived
subscriptions never block each other, writes each command's events in the
order the handler yields them, and closes subscriptions when the client
sends `subscription.cancel`.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable

from pydantic import ValidationError

from .backend import DatabaseRegistry
from .config import WorkerConfig, load_backend_factory
from .errors import INVALID_ARGUMENT, PARSE_ERROR, WORKER_ERROR
from .protocol import Command, CommandHandler, ControlType, Event, OperationType

logger = logging.getLogger(__name__)

SendEvent = Callable[[Event], Awaitable[None]]


def create_handler(config: WorkerConfig) -> CommandHandler:
    """Build the command handler for the backend named in `config`.

    Raises:
        ValueError: If no backend is configured or the backend path is malformed
        ImportError: If the backend module cannot be imported
    """
    if not config.backend:
        raise ValueError("No backend configured (use --backend or RTDB_ISOLATE_BACKEND)")
    factory = load_backend_factory(config.backend)
    logger.info(f"Using database backend {config.backend}")
    return CommandHandler(DatabaseRegistry(factory))


def invalid_command_event(raw: str | bytes, error: ValueError) -> Event:
    """Build the error event answering a frame that is not a valid Command.

    A JSON object that carries a string `id` but fails validation (a
    malformed filter, an unknown field type) is answered on that id with
    INVALID_ARGUMENT, so the waiting caller fails instead of hanging.
    Anything else is an uncorrelated PARSE_ERROR.
    """
    try:
        payload = json.loads(raw)
    except ValueError:
        payload = None
    command_id = payload.get("id") if isinstance(payload, dict) else None
    if isinstance(error, ValidationError) and isinstance(command_id, str):
        return Event.error(command_id, f"Invalid command: {error}", code=INVALID_ARGUMENT)
    return Event.error(None, f"Invalid command: {error}", code=PARSE_ERROR)


class WorkerServer:
    """Runs commands from one client connection.

    Usage:
        server = WorkerServer(handler, send=transport.send_event)
        await server.submit(command)   # for every incoming command
        await server.shutdown()        # when the connection closes
    """

    def __init__(self, handler: CommandHandler, send: SendEvent) -> None:
        self._handler = handler
        self._send = send
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._subscriptions: set[str] = set()

    @property
    def active_commands(self) -> list[str]:
        return list(self._tasks)

    @property
    def active_subscriptions(self) -> list[str]:
        return [command_id for command_id in self._tasks if command_id in self._subscriptions]

    async def submit(self, command: Command) -> None:
        """Start processing a command. Returns once it has been scheduled."""
        if command.cmd == ControlType.SUBSCRIPTION_CANCEL.value:
            await self._cancel(command)
            return

        if command.id in self._tasks:
            await self._send(
                Event.error(command.id, f"Command {command.id} is already running", WORKER_ERROR)
            )
            return

        if command.operation is OperationType.ON:
            self._subscriptions.add(command.id)
        self._tasks[command.id] = asyncio.create_task(self._run(command))

    async def _run(self, command: Command) -> None:
        try:
            async with contextlib.aclosing(self._handler.handle(command)) as events:
                async for event in events:
                    await self._send_or_report(event)
        except Exception as e:
            logger.exception(f"Command {command.id} could not deliver its events: {e}")
        finally:
            self._tasks.pop(command.id, None)
            self._subscriptions.discard(command.id)

    async def _send_or_report(self, event: Event) -> None:
        try:
            await self._send(event)
        except Exception as e:
            if not event.correlation_id or event.is_error():
                raise
            logger.exception(f"Failed to send event for {event.correlation_id}: {e}")
            await self._send(
                Event.error(event.correlation_id, f"Failed to send result: {e}", WORKER_ERROR)
            )

    async def _cancel(self, command: Command) -> None:
        subscription_id = command.args[0] if command.args else None
        task = self._tasks.get(subscription_id) if isinstance(subscription_id, str) else None
        if task is None:
            logger.debug(f"Cancel for unknown or finished command {subscription_id}")
            return

        logger.debug(f"Cancelling subscription {subscription_id}")
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def shutdown(self) -> None:
        """Finish in-flight single-shot commands and cancel subscriptions."""
        for command_id in self.active_subscriptions:
            self._tasks[command_id].cancel()

        tasks = list(self._tasks.values())
        if tasks:
            logger.info(f"Worker shutting down with {len(tasks)} active commands")
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Command task failed during shutdown: {result}")

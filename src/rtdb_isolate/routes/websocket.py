"""WebSocket endpoint serving the command protocol.

Each connection gets its own WorkerServer. Every text frame received is a
Command, every frame sent an Event; the first frame sent is `connected`.
"""

from __future__ import annotations

import asyncio
import logging

from starlette.routing import WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from ..protocol import Command, CommandHandler, Event
from ..worker import WorkerServer, invalid_command_event

logger = logging.getLogger(__name__)


class WebSocketWorkerSession:
    """One client connection to the worker.

    Closing the socket cancels the client's subscriptions and lets its
    in-flight single-shot commands finish.
    """

    def __init__(self, websocket: WebSocket, handler: CommandHandler):
        self.websocket = websocket
        self.server = WorkerServer(handler, self.send_event)
        self._send_lock = asyncio.Lock()

    async def handle(self) -> None:
        await self.websocket.accept()
        try:
            await self.send_event(Event.connected({"transport": "websocket"}))
            while True:
                text = await self.websocket.receive_text()
                await self._handle_frame(text)
        except WebSocketDisconnect:
            logger.info("WebSocket client disconnected")
        except Exception as e:
            logger.exception(f"WebSocket error: {e}")
        finally:
            await self.server.shutdown()

    async def _handle_frame(self, text: str) -> None:
        try:
            command = Command.model_validate_json(text)
        except ValueError as e:
            logger.warning(f"Invalid WebSocket frame: {e}")
            await self.send_event(invalid_command_event(text, e))
            return
        await self.server.submit(command)

    async def send_event(self, event: Event) -> None:
        if self.websocket.client_state != WebSocketState.CONNECTED:
            logger.debug(f"Dropping {event.type} event for closed connection")
            return
        async with self._send_lock:
            await self.websocket.send_text(event.model_dump_json())


async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for worker clients.

    URL: /ws
    """
    session = WebSocketWorkerSession(websocket, websocket.app.state.handler)
    await session.handle()


websocket_routes = [
    WebSocketRoute("/ws", websocket_endpoint),
]

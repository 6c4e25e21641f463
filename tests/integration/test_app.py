"""Integration tests for the worker HTTP application."""

import asyncio

import pytest
import uvicorn
from starlette.testclient import TestClient

from rtdb_isolate.app import create_app
from rtdb_isolate.errors import PARSE_ERROR
from rtdb_isolate.protocol import Command, OperationType, QueryFilter
from rtdb_isolate.sdk import ProxyDatabase, create_websocket_boundary

DB_URL = "https://db.example"


@pytest.fixture
def client(handler):
    return TestClient(create_app(handler))


def query_command(op, path, args=()):
    return Command.query_call(op, "[DEFAULT]", DB_URL, path.split("/"), QueryFilter(), args)


class TestHealth:
    """Test the health endpoint."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "databases": 0}


class TestWebSocket:
    """Test the command protocol over WebSocket."""

    def test_connected_then_result(self, client, live_database):
        command = query_command(OperationType.SET, "users/ada", [{"name": "Ada"}])

        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["type"] == "connected"

            ws.send_text(command.model_dump_json())
            event = ws.receive_json()

        assert event["type"] == "result"
        assert event["correlation_id"] == command.id
        assert live_database.data[("users", "ada")] == {"name": "Ada"}

    def test_subscription_and_cancel(self, client, live_database):
        subscribe = query_command(OperationType.ON, "users", ["value"])
        write = query_command(OperationType.SET, "users", [{"n": 1}])

        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text(subscribe.model_dump_json())
            initial = ws.receive_json()

            ws.send_text(write.model_dump_json())
            received = [ws.receive_json(), ws.receive_json()]

            ws.send_text(Command.cancel(subscribe.id).model_dump_json())
            ws.send_text(query_command(OperationType.SET, "users", [2]).model_dump_json())
            after_cancel = ws.receive_json()

        assert initial["type"] == "query.event"
        assert initial["sequence"] == 0
        by_type = {e["type"]: e for e in received}
        assert by_type["query.event"]["data"]["event"]["snapshot"]["value"] == {"n": 1}
        assert by_type["result"]["correlation_id"] == write.id
        assert after_cancel["type"] == "result"
        assert live_database.sources == []

    def test_invalid_frame(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text("not json")
            event = ws.receive_json()

        assert event["type"] == "error"
        assert event["data"]["code"] == PARSE_ERROR

    def test_health_counts_databases(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text(
                Command.database_call(OperationType.GO_ONLINE, "[DEFAULT]", DB_URL).model_dump_json()
            )
            ws.receive_json()

        assert client.get("/health").json()["databases"] == 1


class TestWebSocketBoundary:
    """Drive a served worker through WebSocketBoundary."""

    @pytest.mark.asyncio
    async def test_round_trip(self, handler, live_database, eventually):
        server = uvicorn.Server(
            uvicorn.Config(create_app(handler), host="127.0.0.1", port=0, log_level="warning")
        )
        serving = asyncio.create_task(server.serve())
        try:
            await eventually(lambda: server.started, timeout=5.0)
            port = server.servers[0].sockets[0].getsockname()[1]

            async with create_websocket_boundary(f"http://127.0.0.1:{port}", timeout=5) as boundary:
                ref = ProxyDatabase(boundary, DB_URL).reference("users/ada")

                async with ref.on_value().listen() as listener:
                    await asyncio.wait_for(anext(listener), 5.0)
                    await ref.set("Ada")
                    changed = await asyncio.wait_for(anext(listener), 5.0)
        finally:
            server.should_exit = True
            await serving

        assert changed.snapshot.value == "Ada"
        assert live_database.data[("users", "ada")] == "Ada"

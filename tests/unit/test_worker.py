"""Unit tests for the WorkerServer command loop."""

import asyncio
import json

import pytest

from rtdb_isolate.config import WorkerConfig
from rtdb_isolate.protocol import Command, OperationType, QueryFilter
from rtdb_isolate.errors import INVALID_ARGUMENT, PARSE_ERROR
from rtdb_isolate.worker import WorkerServer, create_handler, invalid_command_event

DB_URL = "https://db.example"


class Outbox:
    """Collects events sent by a WorkerServer."""

    def __init__(self):
        self.events = []

    async def send(self, event):
        self.events.append(event)

    def for_command(self, command_id):
        return [e for e in self.events if e.correlation_id == command_id]


def on_command(event_type="value", segments=("users",)):
    return Command.query_call(
        OperationType.ON, "[DEFAULT]", DB_URL, segments, QueryFilter(), [event_type]
    )


class TestSingleShotCommands:
    """Test single-shot commands through the worker."""

    @pytest.mark.asyncio
    async def test_result_is_sent(self, handler, eventually):
        outbox = Outbox()
        server = WorkerServer(handler, outbox.send)
        command = Command.database_call(OperationType.GO_ONLINE, "[DEFAULT]", DB_URL)

        await server.submit(command)
        await eventually(lambda: outbox.for_command(command.id))

        [event] = outbox.for_command(command.id)
        assert event.type == "result"
        assert server.active_commands == []

    @pytest.mark.asyncio
    async def test_duplicate_id_is_rejected(self, handler, eventually):
        outbox = Outbox()
        server = WorkerServer(handler, outbox.send)
        command = on_command()

        await server.submit(command)
        await server.submit(command)
        await eventually(lambda: any(e.is_error() for e in outbox.events))

        error = next(e for e in outbox.events if e.is_error())
        assert "already running" in error.data["error"]
        assert server.active_subscriptions == [command.id]

        await server.shutdown()


class TestSubscriptions:
    """Test subscription lifecycle on the worker."""

    @pytest.mark.asyncio
    async def test_cancel_closes_live_source(self, handler, live_database, eventually):
        outbox = Outbox()
        server = WorkerServer(handler, outbox.send)
        command = on_command()

        await server.submit(command)
        await eventually(lambda: outbox.for_command(command.id))
        await server.submit(Command.cancel(command.id))

        assert server.active_subscriptions == []
        assert live_database.sources == []
        assert live_database.calls_named("off")

    @pytest.mark.asyncio
    async def test_cancel_while_sending_closes_live_source(self, handler, live_database):
        sending = asyncio.Event()

        async def stalled_send(event):
            sending.set()
            await asyncio.Event().wait()

        server = WorkerServer(handler, stalled_send)
        command = on_command()

        await server.submit(command)
        await asyncio.wait_for(sending.wait(), timeout=2)
        await server.submit(Command.cancel(command.id))

        assert server.active_subscriptions == []
        assert live_database.sources == []
        assert live_database.calls_named("off")

    @pytest.mark.asyncio
    async def test_subscription_does_not_block_other_commands(self, handler, live_database, eventually):
        outbox = Outbox()
        server = WorkerServer(handler, outbox.send)
        subscription = on_command()
        write = Command.query_call(
            OperationType.SET, "[DEFAULT]", DB_URL, ("users",), QueryFilter(), [{"ada": 1}]
        )

        await server.submit(subscription)
        await server.submit(write)
        await eventually(lambda: len(outbox.for_command(subscription.id)) == 2)

        events = outbox.for_command(subscription.id)
        assert [e.sequence for e in events] == [0, 1]
        assert events[1].data["event"]["snapshot"]["value"] == {"ada": 1}
        assert outbox.for_command(write.id)[0].type == "result"

        await server.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_for_unknown_command_is_ignored(self, handler):
        outbox = Outbox()
        server = WorkerServer(handler, outbox.send)

        await server.submit(Command.cancel("cmd_unknown"))

        assert outbox.events == []


class TestShutdown:
    """Test worker shutdown."""

    @pytest.mark.asyncio
    async def test_finishes_single_shot_and_cancels_subscriptions(self, handler, live_database, eventually):
        outbox = Outbox()
        server = WorkerServer(handler, outbox.send)
        subscription = on_command()
        await server.submit(subscription)
        await eventually(lambda: live_database.sources)

        write = Command.query_call(
            OperationType.SET, "[DEFAULT]", DB_URL, ("other",), QueryFilter(), [1]
        )
        await server.submit(write)
        await server.shutdown()

        assert outbox.for_command(write.id)[0].type == "result"
        assert live_database.sources == []
        assert server.active_commands == []

    @pytest.mark.asyncio
    async def test_send_failure_is_reported(self, handler, eventually):
        sent = []

        async def flaky_send(event):
            if event.type == "result":
                raise TypeError("not serializable")
            sent.append(event)

        server = WorkerServer(handler, flaky_send)
        command = Command.database_call(OperationType.GO_ONLINE, "[DEFAULT]", DB_URL)

        await server.submit(command)
        await eventually(lambda: sent)

        assert sent[0].is_error()
        assert sent[0].correlation_id == command.id


class TestCreateHandler:
    """Test building a handler from worker configuration."""

    def test_requires_backend(self):
        with pytest.raises(ValueError, match="No backend"):
            create_handler(WorkerConfig())

    def test_loads_factory(self):
        handler = create_handler(WorkerConfig(backend="collections:OrderedDict"))

        assert len(handler.registry) == 0


class TestInvalidCommandEvent:
    """Test error events for frames that do not parse as a Command."""

    def test_invalid_json_is_uncorrelated(self):
        with pytest.raises(ValueError) as exc_info:
            Command.model_validate_json("{broken")

        event = invalid_command_event("{broken", exc_info.value)

        assert event.correlation_id is None
        assert event.data["code"] == PARSE_ERROR

    def test_invalid_command_with_id_is_correlated(self):
        raw = json.dumps(
            {
                "id": "c1",
                "cmd": "keepSynced",
                "address": {
                    "app_name": "[DEFAULT]",
                    "database_url": DB_URL,
                    "path": "users",
                    "filter": {"limit": 0},
                },
                "args": [True],
            }
        )
        with pytest.raises(ValueError) as exc_info:
            Command.model_validate_json(raw)

        event = invalid_command_event(raw, exc_info.value)

        assert event.correlation_id == "c1"
        assert event.data["code"] == INVALID_ARGUMENT

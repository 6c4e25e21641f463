"""End-to-end tests: proxies → LocalBoundary → worker → live database."""

import asyncio

import pytest

from rtdb_isolate.errors import WORKER_ERROR, BoundaryError, InvalidArgumentError
from rtdb_isolate.sdk import BoundaryState, ProxyDatabase, create_local_boundary

DB_URL = "https://db.example"


class TestSingleShot:
    """Test single-shot operations across the boundary."""

    @pytest.mark.asyncio
    async def test_write_reaches_live_database(self, handler, live_database):
        async with create_local_boundary(handler) as boundary:
            database = ProxyDatabase(boundary, DB_URL)

            await database.reference("users/ada").set({"name": "Ada"}, priority=1)
            await database.reference("users/ada").update({"born": 1815})

        assert live_database.calls_named("set") == [("set", ("users", "ada"), {"name": "Ada"}, 1)]
        assert live_database.data[("users", "ada")] == {"name": "Ada", "born": 1815}

    @pytest.mark.asyncio
    async def test_database_operation_result(self, handler, live_database):
        async with create_local_boundary(handler) as boundary:
            database = ProxyDatabase(boundary, DB_URL)

            assert await database.set_persistence_enabled(True) is True
            await database.set_persistence_cache_size_bytes(10_000_000)

        assert live_database.calls_named("set_persistence_cache_size_bytes") == [
            ("set_persistence_cache_size_bytes", 10_000_000)
        ]

    @pytest.mark.asyncio
    async def test_query_state_is_replayed(self, handler, live_database):
        async with create_local_boundary(handler) as boundary:
            query = (
                ProxyDatabase(boundary, DB_URL)
                .reference("users")
                .order_by_child("age")
                .start_at(18)
                .end_at(65, "zed")
                .limit_to_first(2)
            )

            await query.keep_synced(True)

        [(_, path, steps, value)] = live_database.calls_named("keep_synced")
        assert path == ("users",)
        assert steps == (
            ("order_by_child", "age"),
            ("start_at", 18),
            ("end_at", 65, "zed"),
            ("limit_to_first", 2),
        )
        assert value is True

    @pytest.mark.asyncio
    async def test_concurrent_commands_are_correlated(self, handler, live_database):
        async with create_local_boundary(handler) as boundary:
            root = ProxyDatabase(boundary, DB_URL).reference("items")

            await asyncio.gather(*(root.child(str(i)).set(i) for i in range(20)))

        assert {live_database.data[("items", str(i))] for i in range(20)} == set(range(20))


class TestErrors:
    """Test error propagation across the boundary."""

    @pytest.mark.asyncio
    async def test_worker_exception(self, handler, live_database):
        live_database.raise_on["purge_outstanding_writes"] = RuntimeError("disk full")

        async with create_local_boundary(handler) as boundary:
            with pytest.raises(BoundaryError, match="disk full") as exc_info:
                await ProxyDatabase(boundary, DB_URL).purge_outstanding_writes()

        assert exc_info.value.code == WORKER_ERROR

    @pytest.mark.asyncio
    async def test_domain_error_keeps_its_type(self, handler, live_database):
        live_database.raise_on["set_priority"] = InvalidArgumentError("priority must be scalar")

        async with create_local_boundary(handler) as boundary:
            with pytest.raises(InvalidArgumentError, match="scalar"):
                await ProxyDatabase(boundary, DB_URL).reference("a").set_priority({"x": 1})

    @pytest.mark.asyncio
    async def test_unserializable_argument(self, handler, live_database):
        async with create_local_boundary(handler) as boundary:
            with pytest.raises(BoundaryError) as exc_info:
                await ProxyDatabase(boundary, DB_URL).reference("a").set(object())

            assert exc_info.value.code == "transport_error"
            assert boundary.in_flight == []

        assert live_database.calls == []

    @pytest.mark.asyncio
    async def test_not_connected(self, handler):
        boundary = create_local_boundary(handler)

        with pytest.raises(BoundaryError) as exc_info:
            await ProxyDatabase(boundary, DB_URL).go_online()

        assert exc_info.value.code == "not_connected"
        assert boundary.state == BoundaryState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_timeout(self, handler, live_database):
        async def slow_go_offline():
            await asyncio.sleep(0.3)

        live_database.go_offline = slow_go_offline

        async with create_local_boundary(handler, timeout=0.05) as boundary:
            with pytest.raises(BoundaryError) as exc_info:
                await ProxyDatabase(boundary, DB_URL).go_offline()

        assert exc_info.value.code == "timeout"


class TestSubscriptions:
    """Test live subscriptions across the boundary."""

    @pytest.mark.asyncio
    async def test_value_events_follow_writes(self, handler, live_database):
        async with create_local_boundary(handler) as boundary:
            ref = ProxyDatabase(boundary, DB_URL).reference("users/ada")

            async with ref.on_value().listen() as listener:
                initial = await asyncio.wait_for(anext(listener), 1.0)
                await ref.set({"name": "Ada"})
                changed = await asyncio.wait_for(anext(listener), 1.0)

        assert initial.snapshot.value is None
        assert not initial.snapshot.exists
        assert changed.snapshot.value == {"name": "Ada"}
        assert changed.snapshot.key == "ada"

    @pytest.mark.asyncio
    async def test_detach_closes_live_source_and_reattach_reopens(self, handler, live_database, eventually):
        async with create_local_boundary(handler) as boundary:
            stream = ProxyDatabase(boundary, DB_URL).reference("users").on_value()
            first, second = stream.listen(), stream.listen()
            await asyncio.wait_for(anext(first), 1.0)
            await asyncio.wait_for(anext(second), 1.0)
            assert len(live_database.sources) == 1

            first.cancel()
            second.cancel()
            await eventually(lambda: live_database.sources == [])

            third = stream.listen()
            await asyncio.wait_for(anext(third), 1.0)
            assert len(live_database.calls_named("on")) == 2
            third.cancel()

    @pytest.mark.asyncio
    async def test_once(self, handler, live_database, eventually):
        live_database.data[("config",)] = {"theme": "dark"}

        async with create_local_boundary(handler) as boundary:
            event = await ProxyDatabase(boundary, DB_URL).reference("config").once()

            assert event.snapshot.value == {"theme": "dark"}
            await eventually(lambda: live_database.sources == [])

    @pytest.mark.asyncio
    async def test_disconnect_closes_subscriptions(self, handler, live_database):
        boundary = create_local_boundary(handler)
        await boundary.connect()
        listener = ProxyDatabase(boundary, DB_URL).reference("users").on_value().listen()
        await asyncio.wait_for(anext(listener), 1.0)

        await boundary.disconnect()

        assert live_database.sources == []
        with pytest.raises(BoundaryError):
            await asyncio.wait_for(anext(listener), 1.0)

"""Pytest configuration and shared fixtures.

FakeLiveDatabase stands in for a real database client inside the worker.
It records every call it receives, keeps written values by path and feeds
`value` events to open sources at the written path.
"""

import asyncio
from typing import Any

import pytest

from rtdb_isolate.backend import DatabaseRegistry
from rtdb_isolate.protocol import CommandHandler


class FakeSource:
    """One open `on()` event source."""

    def __init__(self, path: tuple[str, ...], steps: tuple, event_type: str):
        self.path = path
        self.steps = steps
        self.event_type = event_type
        self.queue: asyncio.Queue[Any] = asyncio.Queue()
        self.closed = False


class FakeLiveQuery:
    def __init__(self, database: "FakeLiveDatabase", path: tuple[str, ...], steps: tuple = ()):
        self.database = database
        self.path = path
        self.steps = steps

    def _step(self, *step: Any) -> "FakeLiveQuery":
        return FakeLiveQuery(self.database, self.path, self.steps + (step,))

    def order_by_key(self):
        return self._step("order_by_key")

    def order_by_priority(self):
        return self._step("order_by_priority")

    def order_by_value(self):
        return self._step("order_by_value")

    def order_by_child(self, child):
        return self._step("order_by_child", child)

    def start_at(self, *args):
        return self._step("start_at", *args)

    def end_at(self, *args):
        return self._step("end_at", *args)

    def limit_to_first(self, limit):
        return self._step("limit_to_first", limit)

    def limit_to_last(self, limit):
        return self._step("limit_to_last", limit)

    def keep_synced(self, value):
        self.database.record("keep_synced", self.path, self.steps, value)

    async def on(self, event_type):
        source = FakeSource(self.path, self.steps, event_type)
        self.database.sources.append(source)
        self.database.record("on", self.path, self.steps, event_type)
        try:
            if event_type == "value":
                yield self.database.value_event(self.path)
            while True:
                item = await source.queue.get()
                if item is None:
                    return
                yield item
        finally:
            source.closed = True
            self.database.sources.remove(source)
            self.database.record("off", self.path, self.steps, event_type)


class FakeDisconnect:
    def __init__(self, database: "FakeLiveDatabase", path: tuple[str, ...]):
        self.database = database
        self.path = path

    def cancel(self):
        self.database.record("disconnect_cancel", self.path)

    def set_with_priority(self, value, priority):
        self.database.record("disconnect_set_with_priority", self.path, value, priority)

    async def update(self, value):
        self.database.record("disconnect_update", self.path, value)


class FakeLiveReference(FakeLiveQuery):
    def child(self, path):
        return FakeLiveReference(self.database, self.path + (path,))

    @property
    def on_disconnect(self):
        return FakeDisconnect(self.database, self.path)

    async def set(self, value, priority=None):
        self.database.record("set", self.path, value, priority)
        self.database.write(self.path, value)

    def set_priority(self, priority):
        self.database.record("set_priority", self.path, priority)

    def update(self, value):
        self.database.record("update", self.path, value)
        current = self.database.data.get(self.path)
        merged = {**(current if isinstance(current, dict) else {}), **value}
        self.database.write(self.path, merged)


class FakeLiveDatabase:
    def __init__(self, app_name: str = "[DEFAULT]", database_url: str = "https://db.example"):
        self.app_name = app_name
        self.database_url = database_url
        self.calls: list[tuple] = []
        self.data: dict[tuple[str, ...], Any] = {}
        self.sources: list[FakeSource] = []
        self.raise_on: dict[str, Exception] = {}
        self.persistence_enabled = False

    def record(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if name in self.raise_on:
            raise self.raise_on[name]

    def calls_named(self, name: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == name]

    def value_event(self, path: tuple[str, ...]) -> dict[str, Any]:
        return {
            "type": "value",
            "snapshot": {"key": path[-1] if path else None, "value": self.data.get(path)},
        }

    def write(self, path: tuple[str, ...], value: Any) -> None:
        self.data[path] = value
        for source in self.sources:
            if source.path == path and source.event_type == "value":
                source.queue.put_nowait(self.value_event(path))

    def end_sources(self) -> None:
        for source in list(self.sources):
            source.queue.put_nowait(None)

    def reference(self):
        return FakeLiveReference(self, ())

    def go_online(self):
        self.record("go_online")

    def go_offline(self):
        self.record("go_offline")

    def purge_outstanding_writes(self):
        self.record("purge_outstanding_writes")

    def set_persistence_cache_size_bytes(self, cache_size_bytes):
        self.record("set_persistence_cache_size_bytes", cache_size_bytes)

    async def set_persistence_enabled(self, enabled):
        self.record("set_persistence_enabled", enabled)
        self.persistence_enabled = enabled
        return True


async def _eventually(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Wait until predicate() is true, failing the test after `timeout`."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def live_database():
    """A single fake live database."""
    return FakeLiveDatabase()


@pytest.fixture
def opened_databases():
    """Identities the registry factory was called with."""
    return []


@pytest.fixture
def registry(live_database, opened_databases):
    def factory(app_name, database_url):
        opened_databases.append((app_name, database_url))
        return live_database

    return DatabaseRegistry(factory)


@pytest.fixture
def handler(registry):
    return CommandHandler(registry)


@pytest.fixture
def eventually():
    return _eventually

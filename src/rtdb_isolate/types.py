"""Payload types carried by subscription streams."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

VALUE = "value"
CHILD_ADDED = "child_added"
CHILD_CHANGED = "child_changed"
CHILD_REMOVED = "child_removed"
CHILD_MOVED = "child_moved"

QUERY_EVENT_TYPES = frozenset({VALUE, CHILD_ADDED, CHILD_CHANGED, CHILD_REMOVED, CHILD_MOVED})


class DataSnapshot(BaseModel):
    """The data at a location when an event fired."""

    key: str | None = None
    value: Any = None
    priority: Any = None

    @property
    def exists(self) -> bool:
        return self.value is not None


class QueryEvent(BaseModel):
    """One event emitted by a query subscription."""

    type: str
    snapshot: DataSnapshot = Field(default_factory=DataSnapshot)
    previous_sibling_key: str | None = None

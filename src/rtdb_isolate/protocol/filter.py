"""Query filter state and key validation.

A QueryFilter is the complete ordering/range/limit state of a query. It is
built up on the client by the proxy builder methods and replayed on the
worker by the dispatcher, so it must survive a JSON round trip unchanged.
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictInt, model_validator

from ..errors import InvalidArgumentError

ORDER_BY_KEY = ".key"
ORDER_BY_PRIORITY = ".priority"
ORDER_BY_VALUE = ".value"

RESERVED_ORDERINGS = frozenset({ORDER_BY_KEY, ORDER_BY_PRIORITY, ORDER_BY_VALUE})

# Characters that may never appear in a key
_INVALID_KEY_CHARS = re.compile(r"[.#$/\[\]]")


class KeySentinel(BaseModel):
    """Out-of-band marker for an unspecified bound key.

    Serializes as ``{"sentinel": "min"}`` so it can never be confused with
    a real key string.
    """

    model_config = ConfigDict(frozen=True)

    sentinel: Literal["min", "max"]

    def __repr__(self) -> str:
        return f"{self.sentinel.upper()}_KEY"


MIN_KEY = KeySentinel(sentinel="min")
MAX_KEY = KeySentinel(sentinel="max")


class _AnyKey:
    """Default key of equal_to(): matches any name at the bound value."""

    def __repr__(self) -> str:
        return "ANY_KEY"


ANY_KEY = _AnyKey()

BoundKey = str | KeySentinel


class _Unset:
    def __repr__(self) -> str:
        return "<unset>"


_UNSET: Any = _Unset()


class QueryFilter(BaseModel):
    """Immutable ordering, range and limit descriptor of a query."""

    model_config = ConfigDict(frozen=True)

    order_by: str = ORDER_BY_PRIORITY
    start_key: BoundKey | None = None
    start_value: Any = None
    end_key: BoundKey | None = None
    end_value: Any = None
    limit: Annotated[StrictInt, Field(gt=0)] | None = None
    reversed: bool = False

    @model_validator(mode="after")
    def _check_key_ordering(self) -> QueryFilter:
        # Mirrors the query builder checks for filters parsed off the wire
        if self.order_by != ORDER_BY_KEY:
            return self
        if self.has_value_bounds:
            raise ValueError("bound values are not allowed when ordering by key")
        for key in (self.start_key, self.end_key):
            if key is not None and not isinstance(key, str):
                raise ValueError(f"bound key {key!r} must be a string when ordering by key")
        return self

    @property
    def orders_by_key(self) -> bool:
        return self.order_by == ORDER_BY_KEY

    @property
    def has_start(self) -> bool:
        return self.start_key is not None or self.start_value is not None

    @property
    def has_end(self) -> bool:
        return self.end_key is not None or self.end_value is not None

    @property
    def has_value_bounds(self) -> bool:
        return self.start_value is not None or self.end_value is not None

    def copy_with(
        self,
        *,
        order_by: str = _UNSET,
        start_key: BoundKey | None = _UNSET,
        start_value: Any = _UNSET,
        end_key: BoundKey | None = _UNSET,
        end_value: Any = _UNSET,
        limit: int | None = _UNSET,
        reversed: bool = _UNSET,
    ) -> QueryFilter:
        """Return a new filter with the given fields replaced.

        Fields that are not passed keep their current value; passing None
        clears a field.
        """
        changes = {
            "order_by": order_by,
            "start_key": start_key,
            "start_value": start_value,
            "end_key": end_key,
            "end_value": end_value,
            "limit": limit,
            "reversed": reversed,
        }
        return self.model_copy(
            update={name: value for name, value in changes.items() if value is not _UNSET}
        )


def validate_key(key: Any) -> str:
    """Check that key is a non-empty string without reserved characters."""
    if not isinstance(key, str) or not key or _INVALID_KEY_CHARS.search(key):
        raise InvalidArgumentError(
            f"{key!r} is not a valid key. Keys must be non-empty strings and "
            'can\'t contain ".", "#", "$", "/", "[", or "]"'
        )
    return key


def parse_bound_key(key: Any, allowed_sentinel: KeySentinel) -> BoundKey:
    """Turn a user-supplied bound key into its filter representation.

    Args:
        key: The key passed to start_at()/end_at()/equal_to()
        allowed_sentinel: The sentinel that means "unspecified" in this
            position (MIN_KEY for start bounds, MAX_KEY for end bounds)

    Returns:
        The sentinel itself or the validated key string

    Raises:
        InvalidArgumentError: If the key is None or malformed
    """
    if key == allowed_sentinel:
        return allowed_sentinel
    if key is None:
        raise InvalidArgumentError(
            "When ordering by key, the argument passed to start_at(), end_at(), "
            "or equal_to() must be a non-null string"
        )
    return validate_key(key)


def validate_order_by_child(name: Any) -> str:
    """Check a child name passed to order_by_child()."""
    if not isinstance(name, str) or not name:
        raise InvalidArgumentError(f"{name!r} is not a valid child")
    if name.startswith("$"):
        raise InvalidArgumentError(
            f"{name!r} is not a valid child: names starting with '$' are reserved"
        )
    return name


def compare_keys(a: BoundKey, b: BoundKey) -> int:
    """Compare two bound keys, treating the sentinels as absolute bounds.

    Returns a negative number, zero or a positive number like cmp().
    """

    def rank(key: BoundKey) -> tuple[int, str]:
        if key == MIN_KEY:
            return (0, "")
        if key == MAX_KEY:
            return (2, "")
        return (1, key)  # type: ignore[return-value]

    left, right = rank(a), rank(b)
    return (left > right) - (left < right)

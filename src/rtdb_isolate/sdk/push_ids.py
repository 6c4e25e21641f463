"""Chronologically ordered, collision-resistant child names for push()."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


def _now_millis() -> int:
    return int(time.time() * 1000)


class PushIdGenerator:
    """Generates 20-character push ids.

    The first 8 characters encode the timestamp in milliseconds, the last
    12 are random. Ids sort lexicographically in generation order: within
    the same millisecond (or if the clock goes backwards) the random part
    of the previous id is incremented instead of drawn again.
    """

    def __init__(self, clock: Callable[[], int] = _now_millis) -> None:
        self._clock = clock
        self._last_time = -1
        self._last_random: list[int] = [0] * 12

    def next(self) -> str:
        now = max(self._clock(), self._last_time)
        duplicate_time = now == self._last_time
        self._last_time = now

        timestamp_chars = []
        for _ in range(8):
            timestamp_chars.append(PUSH_CHARS[now % 64])
            now //= 64
        if now:
            raise ValueError("Timestamp does not fit in a push id")

        if not duplicate_time:
            self._last_random = [secrets.randbelow(64) for _ in range(12)]
        else:
            i = 11
            while i >= 0 and self._last_random[i] == 63:
                self._last_random[i] = 0
                i -= 1
            if i < 0:
                raise RuntimeError("Push id space exhausted for this millisecond")
            self._last_random[i] += 1

        return "".join(reversed(timestamp_chars)) + "".join(
            PUSH_CHARS[n] for n in self._last_random
        )

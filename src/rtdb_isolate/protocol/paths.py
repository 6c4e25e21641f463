"""Path codec for commands.

Paths travel as a single string: every segment percent-encoded on its own,
then joined with '/'. decode_path() is the exact inverse of encode_path(),
so a segment may even contain '/' or '%' and still arrive intact.
"""

from __future__ import annotations

from collections.abc import Iterable
from urllib.parse import quote, unquote

from ..errors import InvalidArgumentError


def decode_segment(segment: str) -> str:
    """Percent-decode one segment; invalid UTF-8 escapes are rejected."""
    try:
        return unquote(segment, errors="strict")
    except UnicodeDecodeError as e:
        raise InvalidArgumentError(f"{segment!r} is not a valid percent-encoded path segment") from e


def encode_segment(segment: str) -> str:
    return quote(segment, safe="")


def encode_path(segments: Iterable[str]) -> str:
    """Encode decoded path segments into the wire representation."""
    return "/".join(encode_segment(segment) for segment in segments)


def decode_path(path: str) -> tuple[str, ...]:
    """Decode a wire path back into its segments. The root is ``""``."""
    if not path:
        return ()
    return tuple(decode_segment(segment) for segment in path.split("/"))


def split_child_path(path: str) -> tuple[str, ...]:
    """Split a user-supplied relative child path.

    Pieces are separated by '/', individually percent-decoded, and empty
    pieces (leading, trailing or doubled slashes) are dropped.
    """
    return tuple(decode_segment(piece) for piece in path.split("/") if piece)

"""Error types shared by the client proxies, the boundary and the worker.

Worker-side failures travel back as `error` events carrying one of the
codes below. The client re-raises the domain errors as their own types;
anything else surfaces as a single opaque BoundaryError.
"""

from __future__ import annotations

INVALID_ARGUMENT = "INVALID_ARGUMENT"
UNSUPPORTED_OPERATION = "UNSUPPORTED_OPERATION"
UNIMPLEMENTED = "UNIMPLEMENTED"
WORKER_ERROR = "WORKER_ERROR"
PARSE_ERROR = "PARSE_ERROR"


class RtdbIsolateError(Exception):
    """Base class for all errors raised by this package."""

    code: str = WORKER_ERROR


class InvalidArgumentError(RtdbIsolateError, ValueError):
    """A query builder or terminal call received a malformed argument."""

    code = INVALID_ARGUMENT


class UnsupportedOperationError(RtdbIsolateError):
    """An operation tag could not be resolved to a known function."""

    code = UNSUPPORTED_OPERATION


class UnimplementedError(RtdbIsolateError, NotImplementedError):
    """Surface area that has no backing implementation yet."""

    code = UNIMPLEMENTED


class BoundaryError(RtdbIsolateError, ConnectionError):
    """The boundary failed to deliver a command or its response.

    Covers serialization failures, an unreachable worker, worker-side
    exceptions and timeouts. No retries are attempted.
    """

    def __init__(self, message: str, code: str = WORKER_ERROR):
        super().__init__(message)
        self.code = code


_ERRORS_BY_CODE: dict[str, type[RtdbIsolateError]] = {
    INVALID_ARGUMENT: InvalidArgumentError,
    UNSUPPORTED_OPERATION: UnsupportedOperationError,
    UNIMPLEMENTED: UnimplementedError,
}


def error_code(exc: BaseException) -> str:
    """Get the wire code used to report an exception."""
    if isinstance(exc, RtdbIsolateError):
        return exc.code
    return WORKER_ERROR


def error_from_code(message: str, code: str | None) -> RtdbIsolateError:
    """Rebuild the client-side exception for a worker error event."""
    error_type = _ERRORS_BY_CODE.get(code or "")
    if error_type is None:
        return BoundaryError(message, code=code or WORKER_ERROR)
    return error_type(message)

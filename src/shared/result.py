"""Explicit success/failure values for service calls.

Bitbucket operations return ``Ok`` or ``Err`` instead of raising, so every
caller has to decide what a failed upstream call means for it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, TypeVar, Union

from shared.http_client import UpstreamError

T = TypeVar("T")


class ErrorKind(str, Enum):
    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UPSTREAM = "upstream"
    TRANSPORT = "transport"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str

    @property
    def is_ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


def error_kind_for_status(status_code: int | None) -> ErrorKind:
    if status_code is None:
        return ErrorKind.TRANSPORT
    if status_code in (401, 403):
        return ErrorKind.UNAUTHORIZED
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 409:
        return ErrorKind.CONFLICT
    if 400 <= status_code < 500:
        return ErrorKind.BAD_REQUEST
    return ErrorKind.UPSTREAM


def capture(fn: Callable[[], T]) -> Result[T]:
    """Run ``fn`` and fold an :class:`UpstreamError` into an ``Err``.

    Anything else is a programming error and propagates.
    """
    try:
        return Ok(fn())
    except UpstreamError as exc:
        return Err(error_kind_for_status(exc.status_code), str(exc))


def unwrap_or_raise(result: Result[Any], exc_type: type[Exception] = RuntimeError) -> Any:
    if isinstance(result, Err):
        raise exc_type(result.message)
    return result.value

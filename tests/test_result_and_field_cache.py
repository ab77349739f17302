from __future__ import annotations

import pytest

from shared.field_cache import FieldCache
from shared.http_client import UpstreamError
from shared.result import Err, ErrorKind, Ok, capture, error_kind_for_status, unwrap_or_raise


@pytest.mark.parametrize(
    ("status", "kind"),
    [
        (None, ErrorKind.TRANSPORT),
        (400, ErrorKind.BAD_REQUEST),
        (401, ErrorKind.UNAUTHORIZED),
        (403, ErrorKind.UNAUTHORIZED),
        (404, ErrorKind.NOT_FOUND),
        (409, ErrorKind.CONFLICT),
        (422, ErrorKind.BAD_REQUEST),
        (500, ErrorKind.UPSTREAM),
    ],
)
def test_error_kind_for_status(status, kind) -> None:
    assert error_kind_for_status(status) is kind


def test_capture_wraps_success_and_upstream_failure() -> None:
    assert capture(lambda: 42) == Ok(42)

    def failing() -> None:
        raise UpstreamError("GET", "https://x/y", "missing", 404)

    result = capture(failing)
    assert isinstance(result, Err)
    assert result.kind is ErrorKind.NOT_FOUND
    assert result.message == "HTTP GET Error: missing (Status: 404)"
    assert not result.is_ok


def test_capture_lets_programming_errors_through() -> None:
    with pytest.raises(KeyError):
        capture(lambda: {}["nope"])


def test_unwrap_or_raise() -> None:
    assert unwrap_or_raise(Ok("v")) == "v"
    with pytest.raises(LookupError, match="gone"):
        unwrap_or_raise(Err(ErrorKind.NOT_FOUND, "gone"), LookupError)


def test_field_cache_loads_once_until_refresh() -> None:
    loads = []

    def loader() -> list[dict]:
        loads.append(1)
        return [{"id": f"customfield_{len(loads)}"}]

    cache = FieldCache(loader)
    assert not cache.is_loaded
    assert cache.get() == [{"id": "customfield_1"}]
    assert cache.get() == [{"id": "customfield_1"}]
    assert len(loads) == 1

    assert cache.get(refresh=True) == [{"id": "customfield_2"}]
    cache.invalidate()
    assert not cache.is_loaded
    assert cache.get() == [{"id": "customfield_3"}]


def test_field_cache_treats_non_list_as_empty() -> None:
    cache = FieldCache(lambda: {"unexpected": True})  # type: ignore[arg-type,return-value]
    assert cache.get() == []
    assert cache.is_loaded

"""Cursor-following pagination for Bitbucket Server list endpoints.

Bitbucket pages look like ``{"values": [...], "size": n, "isLastPage": bool,
"nextPageStart": int}``, but every field is optional in practice. A missing
``isLastPage`` means the last page and a missing ``nextPageStart`` ends the
walk, so a misbehaving upstream can never keep the loop going.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from shared.logging import ContextAdapter

DEFAULT_LIMIT = 25
MAX_LIMIT = 100
ALL_ITEMS_CAP = 1000

Fetcher = Callable[[str, dict[str, Any]], Any]


class PaginationTimeout(Exception):
    """The aggregate walk ran past its deadline before finishing."""


@dataclass(frozen=True)
class ArrayListing:
    values: list[Any]


@dataclass(frozen=True)
class EnvelopeListing:
    values: list[Any]
    start: Optional[int] = None
    limit: Optional[int] = None
    size: Optional[int] = None
    is_last_page: Optional[bool] = None
    next_page_start: Optional[int] = None


@dataclass(frozen=True)
class EmptyListing:
    values: list[Any] = field(default_factory=list)


Listing = Union[ArrayListing, EnvelopeListing, EmptyListing]


def decode_listing(payload: Any) -> Listing:
    """Decode a raw list-endpoint body once into one of the three listing shapes."""
    if isinstance(payload, dict) and isinstance(payload.get("values"), list):
        return EnvelopeListing(
            values=payload["values"],
            start=payload.get("start"),
            limit=payload.get("limit"),
            size=payload.get("size"),
            is_last_page=payload.get("isLastPage"),
            next_page_start=payload.get("nextPageStart"),
        )
    if isinstance(payload, list):
        return ArrayListing(values=payload)
    if isinstance(payload, dict):
        # An envelope without values still carries usable paging metadata.
        return EnvelopeListing(
            values=[],
            start=payload.get("start"),
            limit=payload.get("limit"),
            size=payload.get("size"),
            is_last_page=payload.get("isLastPage"),
            next_page_start=payload.get("nextPageStart"),
        )
    return EmptyListing()


def _meta(listing: Listing, name: str) -> Any:
    return getattr(listing, name, None)


@dataclass
class PaginatedResult:
    values: list[Any]
    limit: int
    size: int
    is_last_page: bool
    fetched_pages: int
    total_fetched: int
    start: Optional[int] = None
    next_page_start: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "values": self.values,
            "limit": self.limit,
            "size": self.size,
            "isLastPage": self.is_last_page,
            "fetchedPages": self.fetched_pages,
            "totalFetched": self.total_fetched,
        }
        if self.start is not None:
            payload["start"] = self.start
        if self.next_page_start is not None:
            payload["nextPageStart"] = self.next_page_start
        return payload


def normalize_limit(
    value: Optional[float],
    default_limit: int = DEFAULT_LIMIT,
    max_limit: int = MAX_LIMIT,
) -> int:
    """Clamp a requested page size into ``[1, max_limit]``. Never raises."""
    if value is None:
        return default_limit
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default_limit
    if math.isnan(number):
        return default_limit
    if not math.isfinite(number) or math.floor(number) < 1:
        return 1
    return max(1, min(math.floor(number), max_limit))


class Paginator:
    """Fetch one page, or walk every page up to a cap.

    ``fetch`` is the transport's ``get(path, params) -> JSON`` capability. The
    paginator keeps no state between calls.
    """

    def __init__(
        self,
        fetch: Fetcher,
        logger: Optional[ContextAdapter] = None,
        max_limit: int = MAX_LIMIT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._logger = logger
        self._max_limit = max_limit
        self._clock = clock

    def normalize_limit(self, value: Optional[float], default_limit: int = DEFAULT_LIMIT) -> int:
        return normalize_limit(value, default_limit=min(default_limit, self._max_limit), max_limit=self._max_limit)

    def _debug(self, message: str, **fields: Any) -> None:
        if self._logger is not None:
            self._logger.debug(message, extra=fields)

    def _request(self, path: str, params: dict[str, Any], description: Optional[str], page: int) -> Listing:
        self._debug(
            "Calling Bitbucket API",
            path=path,
            description=description or path,
            page=page,
            start=params.get("start"),
        )
        return decode_listing(self._fetch(path, params))

    def fetch_values(
        self,
        path: str,
        start: Optional[int] = None,
        limit: Optional[float] = None,
        all: bool = False,
        params: Optional[dict[str, Any]] = None,
        default_limit: int = DEFAULT_LIMIT,
        max_items: int = ALL_ITEMS_CAP,
        description: Optional[str] = None,
        deadline_seconds: Optional[float] = None,
    ) -> PaginatedResult:
        resolved_limit = self.normalize_limit(limit if limit is not None else default_limit, default_limit)
        extra_params = dict(params or {})

        if not all or start is not None:
            if all:
                self._debug(
                    "Explicit start given, fetching a single page instead of all pages",
                    path=path,
                    description=description or path,
                    start=start,
                )
            request_params = {**extra_params, "limit": resolved_limit}
            if start is not None:
                request_params["start"] = start
            listing = self._request(path, request_params, description, page=1)
            values = list(listing.values)
            reported_start = _meta(listing, "start")
            reported_limit = _meta(listing, "limit")
            reported_size = _meta(listing, "size")
            is_last_page = _meta(listing, "is_last_page")
            return PaginatedResult(
                values=values,
                start=reported_start if reported_start is not None else start,
                limit=reported_limit if reported_limit is not None else resolved_limit,
                size=reported_size if reported_size is not None else len(values),
                is_last_page=is_last_page if is_last_page is not None else True,
                next_page_start=_meta(listing, "next_page_start"),
                fetched_pages=1,
                total_fetched=len(values),
            )

        return self._fetch_all(path, extra_params, resolved_limit, max_items, description, deadline_seconds)

    def _fetch_all(
        self,
        path: str,
        extra_params: dict[str, Any],
        resolved_limit: int,
        max_items: int,
        description: Optional[str],
        deadline_seconds: Optional[float],
    ) -> PaginatedResult:
        aggregated: list[Any] = []
        fetched_pages = 0
        current_start = 0
        first_start: Optional[int] = None
        first_limit = resolved_limit
        deadline = self._clock() + deadline_seconds if deadline_seconds is not None else None

        while len(aggregated) < max_items:
            if deadline is not None and fetched_pages > 0 and self._clock() > deadline:
                raise PaginationTimeout(
                    f"Pagination of {description or path} exceeded {deadline_seconds}s "
                    f"after {fetched_pages} pages"
                )

            listing = self._request(
                path,
                {**extra_params, "start": current_start, "limit": resolved_limit},
                description,
                page=fetched_pages + 1,
            )
            fetched_pages += 1

            if fetched_pages == 1:
                first_start = _meta(listing, "start")
                reported_limit = _meta(listing, "limit")
                first_limit = reported_limit if reported_limit is not None else resolved_limit

            aggregated.extend(listing.values)

            if _meta(listing, "is_last_page") is True:
                break

            next_page_start = _meta(listing, "next_page_start")
            if not next_page_start:
                break

            if len(aggregated) >= max_items:
                self._debug(
                    "Bitbucket pagination cap reached",
                    path=path,
                    description=description or path,
                    max_items=max_items,
                )
                break

            self._debug(
                "Following Bitbucket pagination nextPageStart",
                path=path,
                description=description or path,
                next_page_start=next_page_start,
                fetched_pages=fetched_pages,
                total_fetched=len(aggregated),
            )
            current_start = next_page_start

        if len(aggregated) > max_items:
            del aggregated[max_items:]

        return PaginatedResult(
            values=aggregated,
            start=first_start,
            limit=first_limit,
            size=len(aggregated),
            is_last_page=True,
            fetched_pages=fetched_pages,
            total_fetched=len(aggregated),
        )

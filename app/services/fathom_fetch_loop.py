from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.services.fathom_api_client import FathomApiClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncWindow:
    start: datetime | None = None
    end: datetime | None = None

    @property
    def is_bounded(self) -> bool:
        return self.start is not None or self.end is not None


def iterate_call_pages(
    client: FathomApiClient,
    window: SyncWindow,
    *,
    page_size: int,
    safety_cap: int,
    single_page: bool = False,
) -> Iterator[list[dict[str, Any]]]:
    """Yield pages of raw call payloads for ``window``.

    Follows ``next_cursor`` when the provider returns one and falls back to
    offset paging while pages come back full. Never yields more than
    ``safety_cap`` records in total.
    """
    page_size = max(page_size, 1)
    created_after = _format_bound(window.start)
    created_before = _format_bound(window.end)

    fetched = 0
    offset = 0
    cursor: str | None = None
    while True:
        page = client.list_meetings(
            created_after=created_after,
            created_before=created_before,
            limit=page_size,
            cursor=cursor,
            offset=offset,
        )
        items = page.items
        remaining = safety_cap - fetched
        if len(items) > remaining:
            items = items[:remaining]
        fetched += len(items)
        logger.info(
            "Fetched Fathom page offset=%s cursor=%s count=%s total=%s",
            offset,
            cursor,
            len(items),
            fetched,
        )
        if items:
            yield items

        if single_page:
            return
        if fetched >= safety_cap:
            logger.warning("Fathom sync safety cap reached cap=%s", safety_cap)
            return

        if page.next_cursor:
            if page.next_cursor == cursor:
                return
            cursor = page.next_cursor
            continue
        if cursor is not None or len(page.items) < page_size:
            return
        offset += page_size


def fetch_unwindowed_page(client: FathomApiClient, *, page_size: int) -> list[dict[str, Any]]:
    page = client.list_meetings(limit=max(page_size, 1), offset=0)
    logger.info("Fetched unwindowed Fathom page count=%s", len(page.items))
    return page.items


def _format_bound(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")

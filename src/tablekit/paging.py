"""Draining of paginated store queries into a single result."""

from __future__ import annotations

import logging
from typing import AsyncIterator

from tablekit.filters import QueryFilter
from tablekit.store import EntityRecord, Page, TableStoreClient

logger = logging.getLogger(__name__)

DEFAULT_RESULTS_PER_PAGE = 1000


class PageDrainer:
    """Follow continuation tokens until the store reports the last page.

    The store is trusted to terminate pagination; a store that keeps
    returning tokens makes ``drain`` accumulate without bound.
    """

    def __init__(
        self,
        client: TableStoreClient,
        *,
        results_per_page: int = DEFAULT_RESULTS_PER_PAGE,
    ) -> None:
        if results_per_page < 1:
            raise ValueError(f"results_per_page must be at least 1, got {results_per_page}")
        self._client = client
        self.results_per_page = results_per_page

    async def iter_pages(self, query_filter: QueryFilter = None) -> AsyncIterator[Page]:
        """Yield each page in store order, one request at a time."""
        token = None
        page_number = 0
        while True:
            page = await self._client.query_page(
                query_filter,
                results_per_page=self.results_per_page,
                continuation_token=token,
            )
            page_number += 1
            logger.debug(
                "Fetched page %d (%d entities) from table '%s'",
                page_number,
                len(page.records),
                self._client.table_name,
            )
            yield page
            token = page.continuation_token
            if token is None:
                return

    async def drain(self, query_filter: QueryFilter = None) -> list[EntityRecord]:
        """Return every matching record across all pages, in store order."""
        records: list[EntityRecord] = []
        async for page in self.iter_pages(query_filter):
            records.extend(page.records)
        return records

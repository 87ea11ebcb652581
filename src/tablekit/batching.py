"""Chunked, sequential submission of bulk operations as store transactions."""

from __future__ import annotations

import logging
from itertools import islice
from typing import Iterable, Iterator, TypeVar

from tablekit.store import EntityRecord, OperationKind, TableStoreClient, TransactionAction

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_BATCH_SIZE = 100


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Split ``items`` into consecutive lists of at most ``size`` elements.

    Chunk ``i`` holds exactly the inputs at positions ``[i*size, (i+1)*size)``.
    """
    if size < 1:
        raise ValueError(f"Chunk size must be at least 1, got {size}")
    it = iter(items)
    while True:
        chunk = list(islice(it, size))
        if not chunk:
            return
        yield chunk


class BatchExecutor:
    """Submit one logical bulk operation as a sequence of store transactions.

    Chunks are submitted one at a time in input order. A failing chunk stops
    the run and its error propagates unchanged; chunks already committed are
    not rolled back.
    """

    def __init__(
        self,
        client: TableStoreClient,
        *,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
    ) -> None:
        limit = client.max_transaction_size
        if not 1 <= max_batch_size <= limit:
            raise ValueError(
                f"max_batch_size must be between 1 and {limit} for table "
                f"'{client.table_name}', got {max_batch_size}"
            )
        self._client = client
        self.max_batch_size = max_batch_size

    async def submit(self, records: Iterable[EntityRecord], kind: OperationKind) -> int:
        """Apply ``kind`` to every record. Returns the number of transactions submitted.

        Every action is built before the first submission, so invalid input
        (a conditional kind on a record without an etag) raises ValueError
        with nothing written.
        """
        all_actions = [TransactionAction(kind, record) for record in records]
        submitted = 0
        for index, actions in enumerate(chunked(all_actions, self.max_batch_size)):
            logger.debug(
                "Submitting %s chunk %d (%d entities) to table '%s'",
                kind.value,
                index,
                len(actions),
                self._client.table_name,
            )
            try:
                await self._client.submit_transaction(actions)
            except Exception:
                logger.warning(
                    "%s chunk %d failed on table '%s'; %d earlier chunk(s) remain committed",
                    kind.value,
                    index,
                    self._client.table_name,
                    submitted,
                )
                raise
            submitted += 1
        return submitted

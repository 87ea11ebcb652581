"""Generic typed repository over a table store client."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Generic, Iterable, TypeVar

from tablekit.batching import BatchExecutor
from tablekit.config import TableKitConfig
from tablekit.filters import QueryFilter
from tablekit.paging import PageDrainer
from tablekit.store import ETAG_ANY, OperationKind, TableStoreClient, UpdateMode
from tablekit.types import TableEntity

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=TableEntity)


class TableRepository(Generic[E]):
    """CRUD access to one table for one entity type.

    Single-entity calls go straight to the store client. The ``*_many``
    variants are split into store-sized transactions and submitted in order;
    if one transaction fails the earlier ones stay committed and the error is
    raised. ``query`` follows continuation tokens until the result is
    complete.

    Subclass it per entity type, or use it directly::

        repo = TableRepository(Customer, open_table_store("customers"))
        await repo.ensure_table()
    """

    def __init__(
        self,
        entity_type: type[E],
        client: TableStoreClient,
        *,
        config: TableKitConfig | None = None,
    ) -> None:
        cfg = config or TableKitConfig()
        self.entity_type = entity_type
        self.client = client
        self._batches = BatchExecutor(client, max_batch_size=cfg.max_batch_size)
        self._pages = PageDrainer(client, results_per_page=cfg.results_per_page)

    @property
    def table_name(self) -> str:
        return self.client.table_name

    async def ensure_table(self) -> None:
        """Create the backing table if it does not exist yet. Idempotent."""
        await self.client.create_table_if_not_exists()

    async def close(self) -> None:
        await self.client.close()

    # --- Writes ---

    async def add(self, entity: E) -> str:
        """Insert ``entity``. Raises ConflictError if the key already exists.

        Returns the etag of the stored version.
        """
        return await self.client.add_entity(entity.to_record())

    async def add_many(self, entities: Iterable[E]) -> None:
        """Insert every entity, one transaction per chunk."""
        await self._submit(entities, OperationKind.ADD)

    async def update(
        self,
        entity: E,
        *,
        if_match: str = ETAG_ANY,
        mode: UpdateMode = UpdateMode.REPLACE,
    ) -> str:
        """Update an existing entity.

        Args:
            entity: The entity to write. Its key must already exist.
            if_match: Etag the stored entity must carry. ``"*"`` writes
                unconditionally; any other value fails with ConflictError
                if the stored version differs.
            mode: REPLACE drops stored properties missing from ``entity``;
                MERGE keeps them.

        Returns:
            The etag of the new version.
        """
        return await self.client.update_entity(entity.to_record(), mode=mode, if_match=if_match)

    async def update_many(self, entities: Iterable[E], *, conditional: bool = False) -> None:
        """Replace every entity, one transaction per chunk.

        With ``conditional=True`` each entity's own etag must match the stored
        version, otherwise its whole chunk fails with ConflictError.
        """
        kind = OperationKind.REPLACE_IF_MATCH if conditional else OperationKind.REPLACE
        await self._submit(entities, kind)

    async def merge_many(self, entities: Iterable[E], *, conditional: bool = True) -> None:
        """Merge every entity into its stored version, one transaction per chunk."""
        kind = OperationKind.MERGE_IF_MATCH if conditional else OperationKind.MERGE
        await self._submit(entities, kind)

    async def upsert(self, entity: E, *, mode: UpdateMode = UpdateMode.REPLACE) -> str:
        """Replace ``entity`` if it exists, insert it otherwise."""
        return await self.client.upsert_entity(entity.to_record(), mode=mode)

    async def upsert_many(self, entities: Iterable[E]) -> None:
        await self._submit(entities, OperationKind.UPSERT_REPLACE)

    async def delete(self, partition_key: str, row_key: str, *, if_match: str = ETAG_ANY) -> None:
        """Delete one entity.

        Deleting an entity that does not exist is a no-op on every store, with
        or without ``if_match``. An existing entity whose etag differs from
        ``if_match`` raises ConflictError. Inside ``delete_many`` a missing
        entity fails its whole chunk.
        """
        await self.client.delete_entity(partition_key, row_key, if_match=if_match)

    async def delete_many(self, entities: Iterable[E], *, conditional: bool = False) -> None:
        kind = OperationKind.DELETE_IF_MATCH if conditional else OperationKind.DELETE
        await self._submit(entities, kind)

    async def _submit(self, entities: Iterable[E], kind: OperationKind) -> None:
        records = [entity.to_record() for entity in entities]
        count = await self._batches.submit(records, kind)
        logger.debug(
            "%s of %d %s entities done in %d transaction(s)",
            kind.value,
            len(records),
            self.entity_type.__entity_name__,
            count,
        )

    # --- Reads ---

    async def get(self, partition_key: str, row_key: str) -> E:
        """Fetch one entity. Raises EntityNotFoundError if it does not exist."""
        record = await self.client.get_entity(partition_key, row_key)
        return self.entity_type.from_record(record)

    async def query(self, query_filter: QueryFilter = None) -> list[E]:
        """Return every entity matching ``query_filter``, across all pages.

        ``query_filter`` is forwarded to the store untouched: a
        FilterExpression such as ``Customer.tier == "Gold"``, a store-native
        filter string, or None for the whole table. If any page request fails
        the error is raised and nothing is returned.
        """
        records = await self._pages.drain(query_filter)
        return [self.entity_type.from_record(r) for r in records]

    async def iter_query(self, query_filter: QueryFilter = None) -> AsyncIterator[E]:
        """Stream matching entities page by page."""
        async for page in self._pages.iter_pages(query_filter):
            for record in page.records:
                yield self.entity_type.from_record(record)

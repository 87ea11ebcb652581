"""In-process table store with the semantics of a transactional wide-column store."""

from __future__ import annotations

import copy
import itertools
import logging
from datetime import datetime, timezone
from typing import Any, Sequence

from tablekit.errors import ConflictError, EntityNotFoundError, StoreUnavailableError
from tablekit.filters import FilterExpression, QueryFilter, matches_filter
from tablekit.store import (
    ETAG_ANY,
    EntityRecord,
    OperationKind,
    Page,
    TransactionAction,
    UpdateMode,
)

logger = logging.getLogger(__name__)

MAX_TRANSACTION_SIZE = 100


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryTableStore:
    """Table store kept in a dict, for tests and local development.

    Mirrors the reference store closely enough to exercise repository code:
    etags change on every write, transactions are all-or-nothing, limited to
    ``max_transaction_size`` actions on one partition, and queries return
    pages in (partition_key, row_key) order with a continuation token.
    """

    def __init__(
        self, table_name: str, *, max_transaction_size: int = MAX_TRANSACTION_SIZE
    ) -> None:
        self.table_name = table_name
        self.max_transaction_size = max_transaction_size
        self._created = False
        self._rows: dict[tuple[str, str], EntityRecord] = {}
        self._etag_counter = itertools.count(1)

    # --- Helpers ---

    def _require_table(self, operation: str) -> None:
        if not self._created:
            raise StoreUnavailableError(operation, f"Table '{self.table_name}' does not exist")

    def _next_etag(self) -> str:
        return f'W/"{next(self._etag_counter)}"'

    def _stamp(self, record: EntityRecord, fields: dict[str, Any]) -> EntityRecord:
        return EntityRecord(
            partition_key=record.partition_key,
            row_key=record.row_key,
            fields=copy.deepcopy(fields),
            etag=self._next_etag(),
            timestamp=_now(),
        )

    def _check_match(
        self,
        rows: dict[tuple[str, str], EntityRecord],
        key: tuple[str, str],
        if_match: str,
        operation: str,
    ) -> EntityRecord:
        current = rows.get(key)
        if current is None:
            raise ConflictError(operation, f"Entity {key!r} does not exist", status=404)
        if if_match != ETAG_ANY and current.etag != if_match:
            raise ConflictError(
                operation,
                f"Etag mismatch for {key!r}: stored {current.etag}, expected {if_match}",
                status=412,
            )
        return current

    def _apply(
        self,
        rows: dict[tuple[str, str], EntityRecord],
        kind: OperationKind,
        record: EntityRecord,
        if_match: str,
        operation: str,
    ) -> str | None:
        key = record.key
        if kind == OperationKind.ADD:
            if key in rows:
                raise ConflictError(operation, f"Entity {key!r} already exists", status=409)
            rows[key] = self._stamp(record, record.fields)
        elif kind in (
            OperationKind.REPLACE,
            OperationKind.REPLACE_IF_MATCH,
            OperationKind.MERGE,
            OperationKind.MERGE_IF_MATCH,
        ):
            current = self._check_match(rows, key, if_match, operation)
            fields = record.fields
            if kind.update_mode == UpdateMode.MERGE:
                fields = {**current.fields, **record.fields}
            rows[key] = self._stamp(record, fields)
        elif kind in (OperationKind.UPSERT_REPLACE, OperationKind.UPSERT_MERGE):
            current = rows.get(key)
            fields = record.fields
            if current is not None and kind == OperationKind.UPSERT_MERGE:
                fields = {**current.fields, **record.fields}
            rows[key] = self._stamp(record, fields)
        elif kind in (OperationKind.DELETE, OperationKind.DELETE_IF_MATCH):
            self._check_match(rows, key, if_match, operation)
            del rows[key]
            return None
        else:
            raise ValueError(f"Unsupported operation kind: {kind}")
        return rows[key].etag

    # --- TableStoreClient ---

    async def create_table_if_not_exists(self) -> None:
        if not self._created:
            logger.info("Creating in-memory table '%s'", self.table_name)
        self._created = True

    async def get_entity(self, partition_key: str, row_key: str) -> EntityRecord:
        self._require_table("get_entity")
        record = self._rows.get((partition_key, row_key))
        if record is None:
            raise EntityNotFoundError(partition_key, row_key)
        return copy.deepcopy(record)

    async def add_entity(self, record: EntityRecord) -> str:
        self._require_table("add_entity")
        etag = self._apply(self._rows, OperationKind.ADD, record, ETAG_ANY, "add_entity")
        assert etag is not None
        return etag

    async def update_entity(
        self,
        record: EntityRecord,
        *,
        mode: UpdateMode = UpdateMode.REPLACE,
        if_match: str = ETAG_ANY,
    ) -> str:
        self._require_table("update_entity")
        kind = OperationKind.MERGE if mode == UpdateMode.MERGE else OperationKind.REPLACE
        etag = self._apply(self._rows, kind, record, if_match, "update_entity")
        assert etag is not None
        return etag

    async def upsert_entity(
        self, record: EntityRecord, *, mode: UpdateMode = UpdateMode.REPLACE
    ) -> str:
        self._require_table("upsert_entity")
        kind = OperationKind.UPSERT_REPLACE
        if mode == UpdateMode.MERGE:
            kind = OperationKind.UPSERT_MERGE
        etag = self._apply(self._rows, kind, record, ETAG_ANY, "upsert_entity")
        assert etag is not None
        return etag

    async def delete_entity(
        self, partition_key: str, row_key: str, *, if_match: str = ETAG_ANY
    ) -> None:
        self._require_table("delete_entity")
        key = (partition_key, row_key)
        if key not in self._rows:
            return
        self._apply(
            self._rows,
            OperationKind.DELETE,
            EntityRecord(partition_key=partition_key, row_key=row_key),
            if_match,
            "delete_entity",
        )

    async def submit_transaction(self, actions: Sequence[TransactionAction]) -> None:
        self._require_table("submit_transaction")
        if not actions:
            return
        if len(actions) > self.max_transaction_size:
            raise ValueError(
                f"Transaction has {len(actions)} actions; the limit is {self.max_transaction_size}"
            )
        partitions = {a.record.partition_key for a in actions}
        if len(partitions) > 1:
            raise ValueError("All entities in a transaction must have the same partition_key")
        keys = [a.record.key for a in actions]
        if len(set(keys)) != len(keys):
            raise ValueError("A transaction cannot address the same entity twice")

        staged = dict(self._rows)
        for action in actions:
            self._apply(staged, action.kind, action.record, action.if_match, "submit_transaction")
        self._rows = staged

    async def query_page(
        self,
        query_filter: QueryFilter,
        *,
        results_per_page: int,
        continuation_token: Any = None,
    ) -> Page:
        self._require_table("query_page")
        if isinstance(query_filter, str):
            raise ValueError("InMemoryTableStore only accepts FilterExpression filters")

        matched = [
            self._rows[key]
            for key in sorted(self._rows)
            if self._matches(self._rows[key], query_filter)
        ]
        if continuation_token is not None:
            start = (continuation_token["PartitionKey"], continuation_token["RowKey"])
            matched = [r for r in matched if r.key >= start]

        page = matched[:results_per_page]
        token = None
        if len(matched) > results_per_page:
            nxt = matched[results_per_page]
            token = {"PartitionKey": nxt.partition_key, "RowKey": nxt.row_key}
        return Page(records=[copy.deepcopy(r) for r in page], continuation_token=token)

    @staticmethod
    def _matches(record: EntityRecord, expr: FilterExpression | None) -> bool:
        data = {
            **record.fields,
            "partition_key": record.partition_key,
            "row_key": record.row_key,
            "timestamp": record.timestamp,
        }
        return matches_filter(data, expr)

    async def close(self) -> None:
        return None

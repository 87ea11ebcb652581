"""Table store client contract, shared value types and storage binding."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, Sequence, runtime_checkable
from urllib.parse import urlparse

from tablekit.config import TableKitConfig
from tablekit.errors import StoreConfigurationError

if TYPE_CHECKING:
    from tablekit.filters import QueryFilter

# Wildcard etag: the write applies whatever the stored version is.
ETAG_ANY = "*"


@dataclass
class EntityRecord:
    """Untyped entity as exchanged with store clients."""

    partition_key: str
    row_key: str
    fields: dict[str, Any] = field(default_factory=dict)
    etag: str | None = None
    timestamp: datetime | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.partition_key, self.row_key)


class UpdateMode(str, Enum):
    """How an update treats properties missing from the written entity."""

    REPLACE = "replace"
    MERGE = "merge"


class OperationKind(str, Enum):
    """What a transaction does to each entity it contains."""

    ADD = "add"
    REPLACE = "replace"
    REPLACE_IF_MATCH = "replace_if_match"
    MERGE = "merge"
    MERGE_IF_MATCH = "merge_if_match"
    UPSERT_REPLACE = "upsert_replace"
    UPSERT_MERGE = "upsert_merge"
    DELETE = "delete"
    DELETE_IF_MATCH = "delete_if_match"

    @property
    def conditional(self) -> bool:
        return self in (
            OperationKind.REPLACE_IF_MATCH,
            OperationKind.MERGE_IF_MATCH,
            OperationKind.DELETE_IF_MATCH,
        )

    @property
    def update_mode(self) -> UpdateMode:
        if self in (OperationKind.MERGE, OperationKind.MERGE_IF_MATCH, OperationKind.UPSERT_MERGE):
            return UpdateMode.MERGE
        return UpdateMode.REPLACE


@dataclass(frozen=True)
class TransactionAction:
    """One entity operation inside a transaction."""

    kind: OperationKind
    record: EntityRecord

    def __post_init__(self) -> None:
        if self.kind.conditional and not self.record.etag:
            raise ValueError(
                f"{self.kind.value} requires an etag on entity "
                f"({self.record.partition_key!r}, {self.record.row_key!r})"
            )

    @property
    def if_match(self) -> str:
        if self.kind.conditional:
            assert self.record.etag is not None
            return self.record.etag
        return ETAG_ANY


@dataclass
class Page:
    """One page of a filtered query. ``continuation_token`` is None on the last page."""

    records: list[EntityRecord]
    continuation_token: Any = None


@runtime_checkable
class TableStoreClient(Protocol):
    """Capability set a table store must provide to back a repository.

    Every call addresses a single table chosen when the client is built.
    Errors are reported with the tablekit taxonomy: ConflictError,
    EntityNotFoundError and StoreUnavailableError.
    """

    table_name: str
    max_transaction_size: int

    async def create_table_if_not_exists(self) -> None: ...

    async def get_entity(self, partition_key: str, row_key: str) -> EntityRecord: ...

    async def add_entity(self, record: EntityRecord) -> str: ...

    async def update_entity(
        self,
        record: EntityRecord,
        *,
        mode: UpdateMode = UpdateMode.REPLACE,
        if_match: str = ETAG_ANY,
    ) -> str: ...

    async def upsert_entity(
        self, record: EntityRecord, *, mode: UpdateMode = UpdateMode.REPLACE
    ) -> str: ...

    async def delete_entity(
        self, partition_key: str, row_key: str, *, if_match: str = ETAG_ANY
    ) -> None: ...

    async def submit_transaction(self, actions: Sequence[TransactionAction]) -> None: ...

    async def query_page(
        self,
        query_filter: QueryFilter,
        *,
        results_per_page: int,
        continuation_token: Any = None,
    ) -> Page: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class StoreTarget:
    """Resolved storage target from a storage URI."""

    backend: str
    uri: str
    endpoint: str | None = None
    region: str | None = None


def parse_store_target(storage_uri: str | None = None) -> StoreTarget:
    """Resolve a backend target from a storage URI.

    Supported forms: ``memory://``, ``azure://<account-host>`` (or bare
    ``azure://`` when a connection string is configured) and
    ``dynamodb://<region>``.
    """
    if storage_uri is None:
        return StoreTarget(backend="memory", uri="memory://")

    parsed = urlparse(storage_uri)

    if parsed.scheme == "memory":
        return StoreTarget(backend="memory", uri=storage_uri)

    if parsed.scheme == "azure":
        endpoint = f"https://{parsed.netloc}" if parsed.netloc else None
        return StoreTarget(backend="azure", uri=storage_uri, endpoint=endpoint)

    if parsed.scheme == "dynamodb":
        return StoreTarget(backend="dynamodb", uri=storage_uri, region=parsed.netloc or None)

    raise StoreConfigurationError(
        f"Unsupported storage URI scheme '{parsed.scheme}' for '{storage_uri}'"
    )


def open_table_store(
    table_name: str,
    *,
    storage_uri: str | None = None,
    config: TableKitConfig | None = None,
) -> TableStoreClient:
    """Open a store client for ``table_name`` from a storage URI."""
    target = parse_store_target(storage_uri)
    cfg = config or TableKitConfig()

    if target.backend == "memory":
        from tablekit.memory import InMemoryTableStore

        return InMemoryTableStore(table_name)

    if target.backend == "azure":
        from tablekit.azure_tables import AzureTableStore

        return AzureTableStore.from_config(table_name, config=cfg, endpoint=target.endpoint)

    if target.backend == "dynamodb":
        from tablekit.dynamodb import DynamoDBTableStore

        return DynamoDBTableStore(table_name, config=cfg, region=target.region)

    raise StoreConfigurationError(f"Unsupported backend '{target.backend}'")

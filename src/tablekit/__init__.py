"""tablekit: typed repositories over wide-column table stores."""

__version__ = "0.1.0"

from tablekit.batching import BatchExecutor, chunked
from tablekit.config import TableKitConfig
from tablekit.errors import (
    ConflictError,
    EntityNotFoundError,
    StoreConfigurationError,
    StoreUnavailableError,
    TableKitError,
)
from tablekit.filters import FilterExpression
from tablekit.memory import InMemoryTableStore
from tablekit.paging import PageDrainer
from tablekit.repository import TableRepository
from tablekit.store import (
    ETAG_ANY,
    EntityRecord,
    OperationKind,
    Page,
    TableStoreClient,
    TransactionAction,
    UpdateMode,
    open_table_store,
)
from tablekit.types import Field, TableEntity

__all__ = [
    "__version__",
    "TableEntity",
    "Field",
    "FilterExpression",
    "TableRepository",
    "TableStoreClient",
    "InMemoryTableStore",
    "open_table_store",
    "BatchExecutor",
    "PageDrainer",
    "chunked",
    "EntityRecord",
    "TransactionAction",
    "OperationKind",
    "UpdateMode",
    "Page",
    "ETAG_ANY",
    "TableKitConfig",
    "TableKitError",
    "ConflictError",
    "EntityNotFoundError",
    "StoreUnavailableError",
    "StoreConfigurationError",
]

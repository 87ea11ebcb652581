"""Azure Table Storage client built on the async azure-data-tables SDK."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from azure.core import MatchConditions
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
)
from azure.data.tables import EntityProperty, TransactionOperation
from azure.data.tables import UpdateMode as AzureUpdateMode
from azure.data.tables.aio import TableServiceClient

from tablekit.config import TableKitConfig
from tablekit.errors import (
    ConflictError,
    EntityNotFoundError,
    StoreConfigurationError,
    StoreUnavailableError,
)
from tablekit.filters import (
    ComparisonExpression,
    LogicalExpression,
    QueryFilter,
    prefix_upper_bound,
)
from tablekit.store import (
    ETAG_ANY,
    EntityRecord,
    OperationKind,
    Page,
    TransactionAction,
    UpdateMode,
)

logger = logging.getLogger(__name__)

# Azure rejects transactions with more than 100 actions.
MAX_TRANSACTION_SIZE = 100

_SYSTEM_PROPERTIES = {
    "partition_key": "PartitionKey",
    "row_key": "RowKey",
    "timestamp": "Timestamp",
}

_ODATA_OPS = {
    "==": "eq",
    "!=": "ne",
    ">": "gt",
    ">=": "ge",
    "<": "lt",
    "<=": "le",
}

_CONFLICT_STATUSES = {404, 409, 412}


def compile_odata_filter(expr: Any, parameters: dict[str, Any]) -> str:
    """Compile a FilterExpression tree into an OData filter with ``@pN`` parameters."""
    if isinstance(expr, ComparisonExpression):
        prop = _SYSTEM_PROPERTIES.get(expr.field_name, expr.field_name)

        def param(value: Any) -> str:
            name = f"p{len(parameters)}"
            parameters[name] = value
            return f"@{name}"

        if expr.op in _ODATA_OPS:
            return f"{prop} {_ODATA_OPS[expr.op]} {param(expr.value)}"
        if expr.op == "STARTSWITH":
            lower = param(expr.value)
            upper = param(prefix_upper_bound(expr.value))
            return f"({prop} ge {lower} and {prop} lt {upper})"
        if expr.op == "IN":
            if not expr.value:
                raise ValueError(f"in_() on '{expr.field_name}' requires at least one value")
            parts = [f"{prop} eq {param(v)}" for v in expr.value]
            return f"({' or '.join(parts)})"
        raise ValueError(f"Operator '{expr.op}' is not supported by Azure Table Storage")
    if isinstance(expr, LogicalExpression):
        if expr.op == "NOT":
            return f"not ({compile_odata_filter(expr.children[0], parameters)})"
        if expr.op in ("AND", "OR"):
            joiner = f" {expr.op.lower()} "
            return f"({joiner.join(compile_odata_filter(c, parameters) for c in expr.children)})"
    raise ValueError(f"Unknown filter expression type: {type(expr)}")


def _to_azure_entity(record: EntityRecord) -> dict[str, Any]:
    return {"PartitionKey": record.partition_key, "RowKey": record.row_key, **record.fields}


def _from_azure_entity(entity: Mapping[str, Any]) -> EntityRecord:
    fields: dict[str, Any] = {}
    for name, value in entity.items():
        if name in ("PartitionKey", "RowKey"):
            continue
        if isinstance(value, EntityProperty):
            value = value.value
        fields[name] = value
    metadata = getattr(entity, "metadata", {}) or {}
    return EntityRecord(
        partition_key=entity["PartitionKey"],
        row_key=entity["RowKey"],
        fields=fields,
        etag=metadata.get("etag"),
        timestamp=metadata.get("timestamp"),
    )


def _match_kwargs(if_match: str) -> dict[str, Any]:
    if if_match == ETAG_ANY:
        return {}
    return {"etag": if_match, "match_condition": MatchConditions.IfNotModified}


def _azure_mode(mode: UpdateMode) -> AzureUpdateMode:
    return AzureUpdateMode.MERGE if mode == UpdateMode.MERGE else AzureUpdateMode.REPLACE


def _transaction_operation(action: TransactionAction) -> tuple[Any, ...]:
    kind = action.kind
    record = action.record
    if kind == OperationKind.ADD:
        return (TransactionOperation.CREATE, _to_azure_entity(record))
    if kind in (OperationKind.UPSERT_REPLACE, OperationKind.UPSERT_MERGE):
        return (
            TransactionOperation.UPSERT,
            _to_azure_entity(record),
            {"mode": _azure_mode(kind.update_mode)},
        )
    if kind in (OperationKind.DELETE, OperationKind.DELETE_IF_MATCH):
        key = {"PartitionKey": record.partition_key, "RowKey": record.row_key}
        return (TransactionOperation.DELETE, key, _match_kwargs(action.if_match))
    return (
        TransactionOperation.UPDATE,
        _to_azure_entity(record),
        {"mode": _azure_mode(kind.update_mode), **_match_kwargs(action.if_match)},
    )


def _translate_error(operation: str, err: AzureError) -> Exception:
    if isinstance(err, (ResourceExistsError, ResourceModifiedError, ResourceNotFoundError)):
        return ConflictError(operation, err.message, status=getattr(err, "status_code", None))
    if isinstance(err, HttpResponseError) and err.status_code in _CONFLICT_STATUSES:
        return ConflictError(operation, err.message, status=err.status_code)
    return StoreUnavailableError(operation, str(err))


class AzureTableStore:
    """Table store client for one Azure Storage table."""

    max_transaction_size = MAX_TRANSACTION_SIZE

    def __init__(
        self,
        table_name: str,
        service_client: TableServiceClient,
        *,
        credential: Any | None = None,
    ) -> None:
        self.table_name = table_name
        self._service = service_client
        self._table = service_client.get_table_client(table_name)
        self._credential = credential

    @classmethod
    def from_config(
        cls,
        table_name: str,
        *,
        config: TableKitConfig,
        endpoint: str | None = None,
    ) -> AzureTableStore:
        """Build a client from a connection string, or an endpoint with Entra ID credentials."""
        transport = {
            "retry_total": config.max_transport_attempts,
            "connection_timeout": config.request_timeout_s,
            "read_timeout": config.request_timeout_s,
        }
        if config.azure_connection_string:
            service = TableServiceClient.from_connection_string(
                config.azure_connection_string, **transport
            )
            return cls(table_name, service)

        endpoint = endpoint or config.azure_endpoint
        if not endpoint:
            raise StoreConfigurationError(
                "Azure table store needs azure_connection_string or an account endpoint"
            )
        from azure.identity.aio import DefaultAzureCredential

        credential = DefaultAzureCredential()
        service = TableServiceClient(endpoint=endpoint, credential=credential, **transport)
        return cls(table_name, service, credential=credential)

    async def create_table_if_not_exists(self) -> None:
        try:
            await self._service.create_table_if_not_exists(self.table_name)
        except AzureError as e:
            raise StoreUnavailableError("create_table", str(e)) from e
        logger.info("Ensured Azure table '%s'", self.table_name)

    async def get_entity(self, partition_key: str, row_key: str) -> EntityRecord:
        try:
            entity = await self._table.get_entity(partition_key, row_key)
        except ResourceNotFoundError as e:
            raise EntityNotFoundError(partition_key, row_key) from e
        except AzureError as e:
            raise StoreUnavailableError("get_entity", str(e)) from e
        return _from_azure_entity(entity)

    async def add_entity(self, record: EntityRecord) -> str:
        try:
            metadata = await self._table.create_entity(_to_azure_entity(record))
        except AzureError as e:
            raise _translate_error("add_entity", e) from e
        return metadata["etag"]

    async def update_entity(
        self,
        record: EntityRecord,
        *,
        mode: UpdateMode = UpdateMode.REPLACE,
        if_match: str = ETAG_ANY,
    ) -> str:
        try:
            metadata = await self._table.update_entity(
                _to_azure_entity(record), mode=_azure_mode(mode), **_match_kwargs(if_match)
            )
        except AzureError as e:
            raise _translate_error("update_entity", e) from e
        return metadata["etag"]

    async def upsert_entity(
        self, record: EntityRecord, *, mode: UpdateMode = UpdateMode.REPLACE
    ) -> str:
        try:
            metadata = await self._table.upsert_entity(
                _to_azure_entity(record), mode=_azure_mode(mode)
            )
        except AzureError as e:
            raise _translate_error("upsert_entity", e) from e
        return metadata["etag"]

    async def delete_entity(
        self, partition_key: str, row_key: str, *, if_match: str = ETAG_ANY
    ) -> None:
        try:
            await self._table.delete_entity(partition_key, row_key, **_match_kwargs(if_match))
        except AzureError as e:
            raise _translate_error("delete_entity", e) from e

    async def submit_transaction(self, actions: Sequence[TransactionAction]) -> None:
        if not actions:
            return
        if len(actions) > self.max_transaction_size:
            raise ValueError(
                f"Transaction has {len(actions)} actions; the limit is {self.max_transaction_size}"
            )
        operations = [_transaction_operation(a) for a in actions]
        try:
            await self._table.submit_transaction(operations)
        except AzureError as e:
            # TableTransactionError carries the status of the failing action.
            raise _translate_error("submit_transaction", e) from e

    async def query_page(
        self,
        query_filter: QueryFilter,
        *,
        results_per_page: int,
        continuation_token: Any = None,
    ) -> Page:
        try:
            if query_filter is None:
                paged = self._table.list_entities(results_per_page=results_per_page)
            elif isinstance(query_filter, str):
                paged = self._table.query_entities(
                    query_filter, results_per_page=results_per_page
                )
            else:
                parameters: dict[str, Any] = {}
                odata = compile_odata_filter(query_filter, parameters)
                paged = self._table.query_entities(
                    odata, parameters=parameters, results_per_page=results_per_page
                )

            # One page per call; the caller owns the continuation loop.
            pages = paged.by_page(continuation_token=continuation_token)
            async for page in pages:
                records = [_from_azure_entity(entity) async for entity in page]
                return Page(records=records, continuation_token=pages.continuation_token)
        except AzureError as e:
            raise StoreUnavailableError("query_page", str(e)) from e
        return Page(records=[], continuation_token=None)

    async def close(self) -> None:
        await self._table.close()
        await self._service.close()
        if self._credential is not None:
            await self._credential.close()

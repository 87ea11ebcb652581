"""Amazon DynamoDB table store client on boto3.

Tables use ``PartitionKey`` as hash key and ``RowKey`` as range key. DynamoDB
has no native entity version, so every write stamps an ``ETag`` and a
``Timestamp`` attribute and conditional writes compare against ``ETag``.
boto3 is synchronous; calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from functools import partial
from typing import Any, Callable, Sequence

import boto3
from boto3.dynamodb.conditions import Attr, ConditionBase
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from tablekit.config import TableKitConfig
from tablekit.errors import ConflictError, EntityNotFoundError, StoreUnavailableError
from tablekit.filters import ComparisonExpression, LogicalExpression, QueryFilter
from tablekit.store import (
    ETAG_ANY,
    EntityRecord,
    OperationKind,
    Page,
    TransactionAction,
    UpdateMode,
)

logger = logging.getLogger(__name__)

# TransactWriteItems accepts at most 100 actions.
MAX_TRANSACTION_SIZE = 100

PARTITION_KEY_ATTR = "PartitionKey"
ROW_KEY_ATTR = "RowKey"
ETAG_ATTR = "ETag"
TIMESTAMP_ATTR = "Timestamp"

_RESERVED_ATTRS = {PARTITION_KEY_ATTR, ROW_KEY_ATTR, ETAG_ATTR, TIMESTAMP_ATTR}

_SYSTEM_ATTRS = {
    "partition_key": PARTITION_KEY_ATTR,
    "row_key": ROW_KEY_ATTR,
    "timestamp": TIMESTAMP_ATTR,
}

_CONFLICT_CODES = {"ConditionalCheckFailedException", "TransactionConflictException"}
_CONFLICT_REASONS = {"ConditionalCheckFailed", "TransactionConflict"}


def _to_dynamo(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _to_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_dynamo(v) for v in value]
    return value


def _from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamo(v) for v in value]
    return value


def compile_condition(expr: Any) -> ConditionBase:
    """Compile a FilterExpression tree into a boto3 condition."""
    if isinstance(expr, ComparisonExpression):
        attr = Attr(_SYSTEM_ATTRS.get(expr.field_name, expr.field_name))
        value = _to_dynamo(expr.value)
        if expr.op == "==":
            return attr.eq(value)
        if expr.op == "!=":
            return attr.ne(value)
        if expr.op == ">":
            return attr.gt(value)
        if expr.op == ">=":
            return attr.gte(value)
        if expr.op == "<":
            return attr.lt(value)
        if expr.op == "<=":
            return attr.lte(value)
        if expr.op == "STARTSWITH":
            return attr.begins_with(value)
        if expr.op == "IN":
            if not value:
                raise ValueError(f"in_() on '{expr.field_name}' requires at least one value")
            return attr.is_in(value)
        raise ValueError(f"Operator '{expr.op}' is not supported by DynamoDB")
    if isinstance(expr, LogicalExpression):
        if expr.op == "NOT":
            return ~compile_condition(expr.children[0])
        if expr.op in ("AND", "OR"):
            children = [compile_condition(c) for c in expr.children]
            combined = children[0]
            for child in children[1:]:
                combined = combined & child if expr.op == "AND" else combined | child
            return combined
    raise ValueError(f"Unknown filter expression type: {type(expr)}")


def _key(partition_key: str, row_key: str) -> dict[str, str]:
    return {PARTITION_KEY_ATTR: partition_key, ROW_KEY_ATTR: row_key}


def _record_from_item(item: dict[str, Any]) -> EntityRecord:
    ts = item.get(TIMESTAMP_ATTR)
    return EntityRecord(
        partition_key=item[PARTITION_KEY_ATTR],
        row_key=item[ROW_KEY_ATTR],
        fields={k: _from_dynamo(v) for k, v in item.items() if k not in _RESERVED_ATTRS},
        etag=item.get(ETAG_ATTR),
        timestamp=datetime.fromisoformat(ts) if ts else None,
    )


def _write_condition(*, must_exist: bool, if_match: str) -> ConditionBase | None:
    if not must_exist:
        return None
    condition: ConditionBase = Attr(PARTITION_KEY_ATTR).exists()
    if if_match != ETAG_ANY:
        condition = condition & Attr(ETAG_ATTR).eq(if_match)
    return condition


def _error_code(err: ClientError) -> str:
    return err.response.get("Error", {}).get("Code", "")


def _translate_error(operation: str, err: Exception) -> Exception:
    if isinstance(err, ClientError):
        code = _error_code(err)
        if code in _CONFLICT_CODES:
            return ConflictError(operation, str(err), status=412)
        if code == "TransactionCanceledException":
            reasons = {r.get("Code") for r in err.response.get("CancellationReasons", [])}
            if reasons & _CONFLICT_REASONS:
                return ConflictError(operation, str(err), status=412)
    return StoreUnavailableError(operation, str(err))


class DynamoDBTableStore:
    """Table store client for one DynamoDB table."""

    max_transaction_size = MAX_TRANSACTION_SIZE

    def __init__(
        self,
        table_name: str,
        *,
        config: TableKitConfig | None = None,
        region: str | None = None,
        resource: Any | None = None,
    ) -> None:
        cfg = config or TableKitConfig()
        self.table_name = table_name
        if resource is None:
            region_name = region or cfg.dynamodb_region
            session = boto3.Session(region_name=region_name)
            resource = session.resource(
                "dynamodb",
                region_name=region_name,
                endpoint_url=cfg.dynamodb_endpoint_url,
                config=BotoConfig(
                    connect_timeout=cfg.request_timeout_s,
                    read_timeout=cfg.request_timeout_s,
                    retries={"max_attempts": cfg.max_transport_attempts, "mode": "standard"},
                ),
            )
        self._resource = resource
        self._table = resource.Table(table_name)
        # The resource's client applies the same type serialization as the table.
        self._client = resource.meta.client

    async def _call(
        self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Any:
        try:
            return await asyncio.to_thread(partial(fn, *args, **kwargs))
        except (ClientError, BotoCoreError) as e:
            raise _translate_error(operation, e) from e

    def _item(self, record: EntityRecord, etag: str, now: datetime) -> dict[str, Any]:
        item = {k: _to_dynamo(v) for k, v in record.fields.items()}
        item.update(_key(record.partition_key, record.row_key))
        item[ETAG_ATTR] = etag
        item[TIMESTAMP_ATTR] = now.isoformat()
        return item

    def _merge_update(self, record: EntityRecord, etag: str, now: datetime) -> dict[str, Any]:
        names: dict[str, str] = {"#etag": ETAG_ATTR, "#ts": TIMESTAMP_ATTR}
        values: dict[str, Any] = {":etag": etag, ":ts": now.isoformat()}
        assignments = ["#etag = :etag", "#ts = :ts"]
        for i, (name, value) in enumerate(record.fields.items()):
            names[f"#f{i}"] = name
            values[f":f{i}"] = _to_dynamo(value)
            assignments.append(f"#f{i} = :f{i}")
        return {
            "Key": _key(record.partition_key, record.row_key),
            "UpdateExpression": "SET " + ", ".join(assignments),
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
        }

    def _transact_item(self, action: TransactionAction, now: datetime) -> dict[str, Any]:
        kind = action.kind
        record = action.record
        etag = uuid.uuid4().hex
        exists = _write_condition(must_exist=True, if_match=action.if_match)

        if kind in (OperationKind.DELETE, OperationKind.DELETE_IF_MATCH):
            body: dict[str, Any] = {
                "TableName": self.table_name,
                "Key": _key(record.partition_key, record.row_key),
                "ConditionExpression": exists,
            }
            return {"Delete": body}

        if kind.update_mode == UpdateMode.MERGE:
            body = {"TableName": self.table_name, **self._merge_update(record, etag, now)}
            op = "Update"
        else:
            body = {"TableName": self.table_name, "Item": self._item(record, etag, now)}
            op = "Put"

        if kind == OperationKind.ADD:
            body["ConditionExpression"] = Attr(PARTITION_KEY_ATTR).not_exists()
        elif kind not in (OperationKind.UPSERT_REPLACE, OperationKind.UPSERT_MERGE):
            body["ConditionExpression"] = exists
        return {op: body}

    def _ensure_table(self) -> None:
        try:
            self._client.describe_table(TableName=self.table_name)
            return
        except ClientError as e:
            if _error_code(e) != "ResourceNotFoundException":
                raise

        logger.info("Creating DynamoDB table '%s'", self.table_name)
        try:
            self._client.create_table(
                TableName=self.table_name,
                KeySchema=[
                    {"AttributeName": PARTITION_KEY_ATTR, "KeyType": "HASH"},
                    {"AttributeName": ROW_KEY_ATTR, "KeyType": "RANGE"},
                ],
                AttributeDefinitions=[
                    {"AttributeName": PARTITION_KEY_ATTR, "AttributeType": "S"},
                    {"AttributeName": ROW_KEY_ATTR, "AttributeType": "S"},
                ],
                BillingMode="PAY_PER_REQUEST",
            )
        except ClientError as e:
            # Created concurrently by another caller.
            if _error_code(e) != "ResourceInUseException":
                raise
        self._client.get_waiter("table_exists").wait(TableName=self.table_name)

    # --- TableStoreClient ---

    async def create_table_if_not_exists(self) -> None:
        await self._call("create_table", self._ensure_table)

    async def get_entity(self, partition_key: str, row_key: str) -> EntityRecord:
        resp = await self._call(
            "get_entity",
            self._table.get_item,
            Key=_key(partition_key, row_key),
            ConsistentRead=True,
        )
        item = resp.get("Item")
        if item is None:
            raise EntityNotFoundError(partition_key, row_key)
        return _record_from_item(item)

    async def add_entity(self, record: EntityRecord) -> str:
        etag = uuid.uuid4().hex
        await self._call(
            "add_entity",
            self._table.put_item,
            Item=self._item(record, etag, datetime.now(timezone.utc)),
            ConditionExpression=Attr(PARTITION_KEY_ATTR).not_exists(),
        )
        return etag

    async def update_entity(
        self,
        record: EntityRecord,
        *,
        mode: UpdateMode = UpdateMode.REPLACE,
        if_match: str = ETAG_ANY,
    ) -> str:
        etag = uuid.uuid4().hex
        now = datetime.now(timezone.utc)
        condition = _write_condition(must_exist=True, if_match=if_match)
        if mode == UpdateMode.MERGE:
            await self._call(
                "update_entity",
                self._table.update_item,
                ConditionExpression=condition,
                **self._merge_update(record, etag, now),
            )
        else:
            await self._call(
                "update_entity",
                self._table.put_item,
                Item=self._item(record, etag, now),
                ConditionExpression=condition,
            )
        return etag

    async def upsert_entity(
        self, record: EntityRecord, *, mode: UpdateMode = UpdateMode.REPLACE
    ) -> str:
        etag = uuid.uuid4().hex
        now = datetime.now(timezone.utc)
        if mode == UpdateMode.MERGE:
            await self._call(
                "upsert_entity", self._table.update_item, **self._merge_update(record, etag, now)
            )
        else:
            await self._call(
                "upsert_entity", self._table.put_item, Item=self._item(record, etag, now)
            )
        return etag

    async def delete_entity(
        self, partition_key: str, row_key: str, *, if_match: str = ETAG_ANY
    ) -> None:
        kwargs: dict[str, Any] = {"Key": _key(partition_key, row_key)}
        if if_match != ETAG_ANY:
            # A missing entity is not a conflict, as on Azure.
            absent = Attr(PARTITION_KEY_ATTR).not_exists()
            kwargs["ConditionExpression"] = absent | Attr(ETAG_ATTR).eq(if_match)
        await self._call("delete_entity", self._table.delete_item, **kwargs)

    async def submit_transaction(self, actions: Sequence[TransactionAction]) -> None:
        if not actions:
            return
        if len(actions) > self.max_transaction_size:
            raise ValueError(
                f"Transaction has {len(actions)} actions; the limit is {self.max_transaction_size}"
            )
        now = datetime.now(timezone.utc)
        items = [self._transact_item(a, now) for a in actions]
        await self._call(
            "submit_transaction", self._client.transact_write_items, TransactItems=items
        )

    async def query_page(
        self,
        query_filter: QueryFilter,
        *,
        results_per_page: int,
        continuation_token: Any = None,
    ) -> Page:
        if isinstance(query_filter, str):
            raise ValueError("DynamoDBTableStore only accepts FilterExpression filters")
        kwargs: dict[str, Any] = {"Limit": results_per_page}
        if query_filter is not None:
            kwargs["FilterExpression"] = compile_condition(query_filter)
        if continuation_token is not None:
            kwargs["ExclusiveStartKey"] = continuation_token
        resp = await self._call("query_page", self._table.scan, **kwargs)
        records = [_record_from_item(item) for item in resp.get("Items", [])]
        return Page(records=records, continuation_token=resp.get("LastEvaluatedKey"))

    async def close(self) -> None:
        await asyncio.to_thread(self._client.close)

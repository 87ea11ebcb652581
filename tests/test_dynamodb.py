"""Tests for the DynamoDB client against a boto3 resource double."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any

import pytest
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError, EndpointConnectionError

from tablekit import ConflictError, EntityNotFoundError, StoreUnavailableError
from tablekit.dynamodb import (
    DynamoDBTableStore,
    _from_dynamo,
    _to_dynamo,
    _translate_error,
    compile_condition,
)
from tablekit.filters import FieldProxy
from tablekit.store import EntityRecord, OperationKind, TransactionAction, UpdateMode

age = FieldProxy("age")


def _client_error(code: str, operation: str = "PutItem", **extra: Any) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}, **extra}, operation)


class FakeTable:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.items: dict[tuple[str, str], dict[str, Any]] = {}
        self.scan_response: dict[str, Any] = {"Items": []}
        self.failure: Exception | None = None

    def _record(self, name: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((name, kwargs))
        if self.failure is not None:
            raise self.failure

    def get_item(self, **kwargs: Any) -> dict[str, Any]:
        self._record("get_item", kwargs)
        key = (kwargs["Key"]["PartitionKey"], kwargs["Key"]["RowKey"])
        item = self.items.get(key)
        return {"Item": item} if item is not None else {}

    def put_item(self, **kwargs: Any) -> dict[str, Any]:
        self._record("put_item", kwargs)
        return {}

    def update_item(self, **kwargs: Any) -> dict[str, Any]:
        self._record("update_item", kwargs)
        return {}

    def delete_item(self, **kwargs: Any) -> dict[str, Any]:
        self._record("delete_item", kwargs)
        return {}

    def scan(self, **kwargs: Any) -> dict[str, Any]:
        self._record("scan", kwargs)
        return self.scan_response


class FakeClient:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.table_exists = False
        self.failure: Exception | None = None
        self.closed = False

    def describe_table(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("describe_table", kwargs))
        if not self.table_exists:
            raise _client_error("ResourceNotFoundException", "DescribeTable")
        return {"Table": {"TableName": kwargs["TableName"]}}

    def create_table(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("create_table", kwargs))
        self.table_exists = True
        return {}

    def get_waiter(self, name: str) -> Any:
        return SimpleNamespace(wait=lambda **kwargs: self.calls.append((f"wait:{name}", kwargs)))

    def transact_write_items(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("transact_write_items", kwargs))
        if self.failure is not None:
            raise self.failure
        return {}

    def close(self) -> None:
        self.closed = True


class FakeResource:
    def __init__(self) -> None:
        self.table = FakeTable()
        self.meta = SimpleNamespace(client=FakeClient())

    def Table(self, name: str) -> FakeTable:  # noqa: N802
        return self.table


@pytest.fixture
def resource():
    return FakeResource()


@pytest.fixture
def dynamo_store(resource):
    return DynamoDBTableStore("customers", resource=resource)


class TestValueConversion:
    def test_to_dynamo(self):
        ts = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert _to_dynamo(1.5) == Decimal("1.5")
        assert _to_dynamo(True) is True
        assert _to_dynamo(ts) == ts.isoformat()
        assert _to_dynamo({"a": [0.25]}) == {"a": [Decimal("0.25")]}

    def test_from_dynamo(self):
        assert _from_dynamo(Decimal("3")) == 3
        assert isinstance(_from_dynamo(Decimal("3")), int)
        assert _from_dynamo(Decimal("2.5")) == 2.5
        assert _from_dynamo({"xs": [Decimal("1")]}) == {"xs": [1]}


class TestCompileCondition:
    def test_comparisons(self):
        assert compile_condition(age > 3) == Attr("age").gt(3)
        assert compile_condition(age <= 3) == Attr("age").lte(3)
        assert compile_condition(FieldProxy("row_key").startswith("c")) == Attr(
            "RowKey"
        ).begins_with("c")
        assert compile_condition(age.in_([1, 2])) == Attr("age").is_in([1, 2])

    def test_float_values_become_decimals(self):
        assert compile_condition(age == 1.5) == Attr("age").eq(Decimal("1.5"))

    def test_logical(self):
        expr = ~((age > 1) | (age < 0))
        assert compile_condition(expr) == ~(Attr("age").gt(1) | Attr("age").lt(0))

    def test_empty_in_rejected(self):
        with pytest.raises(ValueError):
            compile_condition(age.in_([]))


class TestTranslateError:
    def test_conditional_check_is_conflict(self):
        err = _translate_error("op", _client_error("ConditionalCheckFailedException"))
        assert isinstance(err, ConflictError)
        assert err.status == 412

    def test_cancelled_transaction_with_condition_failure_is_conflict(self):
        error = _client_error(
            "TransactionCanceledException",
            "TransactWriteItems",
            CancellationReasons=[{"Code": "None"}, {"Code": "ConditionalCheckFailed"}],
        )
        assert isinstance(_translate_error("op", error), ConflictError)

    def test_throttling_is_unavailable(self):
        error = _client_error("ProvisionedThroughputExceededException")
        assert isinstance(_translate_error("op", error), StoreUnavailableError)

    def test_transport_error_is_unavailable(self):
        error = EndpointConnectionError(endpoint_url="http://localhost:8000")
        assert isinstance(_translate_error("op", error), StoreUnavailableError)


class TestTransactItems:
    def _action(self, kind: OperationKind, etag: str | None = None) -> TransactionAction:
        record = EntityRecord(partition_key="p", row_key="r", fields={"n": 1.5}, etag=etag)
        return TransactionAction(kind, record)

    def test_add_requires_absence(self, dynamo_store):
        now = datetime.now(timezone.utc)
        item = dynamo_store._transact_item(self._action(OperationKind.ADD), now)
        put = item["Put"]
        assert put["TableName"] == "customers"
        assert put["Item"]["n"] == Decimal("1.5")
        assert put["Item"]["Timestamp"] == now.isoformat()
        assert put["ConditionExpression"] == Attr("PartitionKey").not_exists()

    def test_upsert_is_unconditional(self, dynamo_store):
        item = dynamo_store._transact_item(
            self._action(OperationKind.UPSERT_REPLACE), datetime.now(timezone.utc)
        )
        assert "ConditionExpression" not in item["Put"]

    def test_conditional_merge_checks_etag(self, dynamo_store):
        item = dynamo_store._transact_item(
            self._action(OperationKind.MERGE_IF_MATCH, etag="abc"), datetime.now(timezone.utc)
        )
        update = item["Update"]
        assert update["UpdateExpression"] == "SET #etag = :etag, #ts = :ts, #f0 = :f0"
        assert update["ExpressionAttributeNames"]["#f0"] == "n"
        assert update["ConditionExpression"] == (
            Attr("PartitionKey").exists() & Attr("ETag").eq("abc")
        )

    def test_delete(self, dynamo_store):
        item = dynamo_store._transact_item(
            self._action(OperationKind.DELETE), datetime.now(timezone.utc)
        )
        assert item["Delete"]["Key"] == {"PartitionKey": "p", "RowKey": "r"}
        assert item["Delete"]["ConditionExpression"] == Attr("PartitionKey").exists()


@pytest.mark.asyncio
class TestDynamoDBTableStore:
    async def test_create_table_when_missing(self, dynamo_store, resource):
        await dynamo_store.create_table_if_not_exists()
        names = [c[0] for c in resource.meta.client.calls]
        assert names == ["describe_table", "create_table", "wait:table_exists"]

        await dynamo_store.create_table_if_not_exists()
        assert resource.meta.client.calls[-1][0] == "describe_table"

    async def test_get_entity_round_trip(self, dynamo_store, resource):
        ts = datetime(2024, 1, 1, tzinfo=timezone.utc)
        resource.table.items[("p", "r")] = {
            "PartitionKey": "p",
            "RowKey": "r",
            "ETag": "e1",
            "Timestamp": ts.isoformat(),
            "age": Decimal("41"),
        }
        record = await dynamo_store.get_entity("p", "r")
        assert record.fields == {"age": 41}
        assert record.etag == "e1"
        assert record.timestamp == ts
        assert resource.table.calls[-1][1]["ConsistentRead"] is True

    async def test_get_missing_entity(self, dynamo_store):
        with pytest.raises(EntityNotFoundError):
            await dynamo_store.get_entity("p", "nope")

    async def test_add_conflict(self, dynamo_store, resource):
        resource.table.failure = _client_error("ConditionalCheckFailedException")
        with pytest.raises(ConflictError):
            await dynamo_store.add_entity(EntityRecord(partition_key="p", row_key="r"))

    async def test_writes_return_fresh_etags(self, dynamo_store, resource):
        record = EntityRecord(partition_key="p", row_key="r", fields={"n": 1})
        first = await dynamo_store.add_entity(record)
        second = await dynamo_store.update_entity(record, if_match=first)
        assert first != second
        name, kwargs = resource.table.calls[-1]
        assert name == "put_item"
        assert kwargs["Item"]["ETag"] == second
        assert kwargs["ConditionExpression"] == (
            Attr("PartitionKey").exists() & Attr("ETag").eq(first)
        )

    async def test_merge_update_uses_update_item(self, dynamo_store, resource):
        record = EntityRecord(partition_key="p", row_key="r", fields={"n": 1})
        await dynamo_store.update_entity(record, mode=UpdateMode.MERGE)
        assert resource.table.calls[-1][0] == "update_item"

    async def test_upsert_merge(self, dynamo_store, resource):
        record = EntityRecord(partition_key="p", row_key="r", fields={"n": 1})
        await dynamo_store.upsert_entity(record, mode=UpdateMode.MERGE)
        name, kwargs = resource.table.calls[-1]
        assert name == "update_item"
        assert "ConditionExpression" not in kwargs

    async def test_conditional_delete(self, dynamo_store, resource):
        await dynamo_store.delete_entity("p", "r", if_match="e1")
        name, kwargs = resource.table.calls[-1]
        assert name == "delete_item"
        assert kwargs["ConditionExpression"] == (
            Attr("PartitionKey").not_exists() | Attr("ETag").eq("e1")
        )

    async def test_unconditional_delete_has_no_condition(self, dynamo_store, resource):
        await dynamo_store.delete_entity("p", "r")
        _, kwargs = resource.table.calls[-1]
        assert "ConditionExpression" not in kwargs

    async def test_submit_transaction(self, dynamo_store, resource):
        actions = [
            TransactionAction(OperationKind.ADD, EntityRecord(partition_key="p", row_key=str(i)))
            for i in range(3)
        ]
        await dynamo_store.submit_transaction(actions)
        name, kwargs = resource.meta.client.calls[-1]
        assert name == "transact_write_items"
        assert [list(item) for item in kwargs["TransactItems"]] == [["Put"]] * 3

    async def test_submit_transaction_conflict(self, dynamo_store, resource):
        resource.meta.client.failure = _client_error(
            "TransactionCanceledException",
            "TransactWriteItems",
            CancellationReasons=[{"Code": "ConditionalCheckFailed"}],
        )
        actions = [
            TransactionAction(OperationKind.ADD, EntityRecord(partition_key="p", row_key="x"))
        ]
        with pytest.raises(ConflictError):
            await dynamo_store.submit_transaction(actions)

    async def test_query_page_scans_with_token(self, dynamo_store, resource):
        resource.table.scan_response = {
            "Items": [{"PartitionKey": "p", "RowKey": "r", "age": Decimal("5")}],
            "LastEvaluatedKey": {"PartitionKey": "p", "RowKey": "r"},
        }
        page = await dynamo_store.query_page(
            age > 3, results_per_page=25, continuation_token={"PartitionKey": "p", "RowKey": "a"}
        )
        assert [r.fields for r in page.records] == [{"age": 5}]
        assert page.continuation_token == {"PartitionKey": "p", "RowKey": "r"}
        _, kwargs = resource.table.calls[-1]
        assert kwargs["Limit"] == 25
        assert kwargs["ExclusiveStartKey"] == {"PartitionKey": "p", "RowKey": "a"}
        assert kwargs["FilterExpression"] == Attr("age").gt(3)

    async def test_query_page_rejects_string_filters(self, dynamo_store):
        with pytest.raises(ValueError):
            await dynamo_store.query_page("age > 3", results_per_page=10)

    async def test_close(self, dynamo_store, resource):
        await dynamo_store.close()
        assert resource.meta.client.closed

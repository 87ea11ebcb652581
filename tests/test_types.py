"""Tests for TableEntity, Field and record conversion."""

from __future__ import annotations

from datetime import datetime, timezone

import pydantic
import pytest

from tablekit import Field, TableEntity
from tablekit.filters import TRUE_EQ_ERROR, ComparisonExpression
from tablekit.store import EntityRecord
from tests.models import Customer, Order


class TestField:
    def test_field_default(self):
        f = Field(default="hello")
        assert f.has_default()
        assert f.get_default() == "hello"

    def test_field_default_factory(self):
        f = Field(default_factory=list)
        assert f.has_default()
        assert f.get_default() == []
        assert f.get_default() is not f.get_default()

    def test_field_no_default(self):
        f = Field()
        assert not f.has_default()
        with pytest.raises(ValueError):
            f.get_default()

    def test_class_access_builds_filter(self):
        expr = Customer.name == "Alice"
        assert isinstance(expr, ComparisonExpression)
        assert expr.field_name == "name"
        assert expr.op == "=="
        assert expr.value == "Alice"

    def test_identity_fields_are_queryable(self):
        expr = Customer.partition_key == "eu"
        assert expr.field_name == "partition_key"

    def test_bool_comparison_requires_helper(self):
        with pytest.raises(TypeError, match="is_true"):
            Customer.active == True  # noqa: E712
        assert TRUE_EQ_ERROR.startswith("Use .is_true()")


class TestTableEntity:
    def test_declared_fields_exclude_system_fields(self):
        assert Customer.__entity_fields__ == ("name", "age", "email", "tier", "active")
        assert Customer.__entity_name__ == "Customer"

    def test_defaults_applied(self):
        c = Customer(partition_key="eu", row_key="1", name="A", age=3)
        assert c.tier == "Standard"
        assert c.active is True
        assert c.email is None
        assert c.etag is None
        assert c.timestamp is None

    def test_validation_errors_surface(self):
        with pytest.raises(pydantic.ValidationError):
            Customer(partition_key="eu", row_key="1", name="A", age="not a number")

    def test_identity_is_required(self):
        with pytest.raises(pydantic.ValidationError):
            Customer(row_key="1", name="A", age=3)

    def test_subclass_can_pin_partition_key(self):
        order = Order(row_key="o1", total_amount=1.0)
        assert order.partition_key == "orders"
        assert order.tags == []

    def test_custom_entity_name(self):
        class Invoice(TableEntity, name="invoices"):
            amount: Field[int]

        assert Invoice.__entity_name__ == "invoices"
        assert Invoice(partition_key="p", row_key="r", amount=5).amount == 5

    def test_inheritance_keeps_parent_fields(self):
        class VipCustomer(Customer):
            perks: Field[int] = 0

        vip = VipCustomer(partition_key="eu", row_key="v", name="V", age=40, perks=3)
        assert VipCustomer.__entity_fields__[-1] == "perks"
        assert vip.tier == "Standard"
        assert vip.perks == 3

    def test_to_record(self):
        c = Customer(partition_key="eu", row_key="1", name="A", age=3, etag='W/"1"')
        record = c.to_record()
        assert record.key == ("eu", "1")
        assert record.etag == 'W/"1"'
        assert record.fields == {
            "name": "A",
            "age": 3,
            "email": None,
            "tier": "Standard",
            "active": True,
        }

    def test_from_record_ignores_unknown_properties(self):
        ts = datetime(2024, 1, 1, tzinfo=timezone.utc)
        record = EntityRecord(
            partition_key="eu",
            row_key="1",
            fields={"name": "A", "age": 3, "legacy_column": "x"},
            etag='W/"7"',
            timestamp=ts,
        )
        c = Customer.from_record(record)
        assert c.name == "A"
        assert c.etag == 'W/"7"'
        assert c.timestamp == ts
        assert not hasattr(c, "legacy_column")

    def test_equality_ignores_store_metadata(self):
        a = Customer(partition_key="eu", row_key="1", name="A", age=3, etag="x")
        b = Customer(partition_key="eu", row_key="1", name="A", age=3, etag="y")
        assert a == b
        assert a != Customer(partition_key="eu", row_key="2", name="A", age=3)

    def test_repr(self):
        c = Customer(partition_key="eu", row_key="1", name="A", age=3)
        assert repr(c).startswith("Customer(partition_key='eu', row_key='1', name='A'")

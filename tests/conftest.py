"""Shared test fixtures for tablekit tests."""

from __future__ import annotations

import pytest
import pytest_asyncio

from tablekit import InMemoryTableStore, TableRepository
from tests.models import Customer, Order


@pytest_asyncio.fixture
async def store():
    """Create an in-memory store with its table already created."""
    s = InMemoryTableStore("customers")
    await s.create_table_if_not_exists()
    yield s
    await s.close()


@pytest.fixture
def repo(store):
    """Customer repository over the in-memory store."""
    return TableRepository(Customer, store)


@pytest_asyncio.fixture
async def order_repo():
    r = TableRepository(Order, InMemoryTableStore("orders"))
    await r.ensure_table()
    yield r
    await r.close()

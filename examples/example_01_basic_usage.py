"""Example 1: Basic repository usage.

This example demonstrates:
- Declaring a TableEntity with Field annotations
- Opening a store from a storage URI
- Single-entity add/get/update/delete
- Bulk inserts split into store-sized transactions
- Filtered queries that follow continuation tokens

Set TABLEKIT_STORAGE_URI (e.g. ``azure://`` plus TABLEKIT_AZURE_CONNECTION_STRING)
to run against a real store; the default is in-memory.
"""

import asyncio
import logging
import os

from tablekit import Field, TableEntity, TableKitConfig, TableRepository, open_table_store


class Customer(TableEntity):
    """Customer row, partitioned by region."""

    name: Field[str]
    age: Field[int]
    tier: Field[str] = Field(default="Standard")
    active: Field[bool] = Field(default=True)


async def main():
    logging.basicConfig(level=logging.INFO)
    print("=" * 80)
    print("EXAMPLE 1: BASIC REPOSITORY USAGE")
    print("=" * 80)

    config = TableKitConfig(
        azure_connection_string=os.environ.get("TABLEKIT_AZURE_CONNECTION_STRING"),
        results_per_page=25,
    )
    store = open_table_store(
        "customers", storage_uri=os.environ.get("TABLEKIT_STORAGE_URI"), config=config
    )
    repo = TableRepository(Customer, store, config=config)
    await repo.ensure_table()
    print(f"\n✓ Table '{repo.table_name}' ready")

    # Single entities
    etag = await repo.add(Customer(partition_key="eu", row_key="alice", name="Alice", age=34))
    print(f"\n1. Added alice (etag {etag})")

    alice = await repo.get("eu", "alice")
    alice.tier = "Gold"
    etag = await repo.update(alice, if_match=alice.etag)
    print(f"2. Promoted alice to {alice.tier} (etag {etag})")

    # Bulk insert: 120 rows become two transactions
    customers = [
        Customer(partition_key="eu", row_key=f"c{i:04d}", name=f"Customer {i}", age=18 + i % 60)
        for i in range(120)
    ]
    await repo.add_many(customers)
    print(f"3. Added {len(customers)} customers in bulk")

    # Queries drain every page
    everyone = await repo.query()
    print(f"4. Table holds {len(everyone)} customers")

    seniors = await repo.query((Customer.age >= 70) & Customer.active.is_true())
    print(f"5. {len(seniors)} active customers aged 70+")

    print("6. First five 'c00' customers, streamed page by page:")
    count = 0
    async for customer in repo.iter_query(Customer.row_key.startswith("c00")):
        if count < 5:
            print(f"   - {customer.row_key}: {customer.name}")
        count += 1

    await repo.delete_many(customers)
    await repo.delete("eu", "alice")
    print(f"\n✓ Cleaned up, {len(await repo.query())} customers left")

    await repo.close()


if __name__ == "__main__":
    asyncio.run(main())

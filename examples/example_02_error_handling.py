"""Example 2: Conflicts, retries and partial bulk failures.

This example demonstrates:
- ConflictError on add of an existing key
- Optimistic concurrency: re-read, re-apply, resubmit
- EntityNotFoundError on point reads
- A bulk write that fails midway and leaves earlier chunks committed
"""

import asyncio

from tablekit import (
    ConflictError,
    EntityNotFoundError,
    Field,
    InMemoryTableStore,
    TableEntity,
    TableRepository,
)


class Account(TableEntity):
    owner: Field[str]
    balance: Field[int] = Field(default=0)


async def deposit(repo, partition_key, row_key, amount, attempts=3):
    """Add ``amount`` to an account, retrying when another writer got there first."""
    for attempt in range(1, attempts + 1):
        account = await repo.get(partition_key, row_key)
        account.balance += amount
        try:
            await repo.update(account, if_match=account.etag)
            return account.balance
        except ConflictError:
            print(f"  ↻ Attempt {attempt} lost the race, re-reading")
    raise RuntimeError(f"Gave up after {attempts} attempts")


async def main():
    print("=" * 80)
    print("EXAMPLE 2: CONFLICTS, RETRIES AND PARTIAL BULK FAILURES")
    print("=" * 80)

    repo = TableRepository(Account, InMemoryTableStore("accounts"))
    await repo.ensure_table()

    print("\n1. Adding an account twice:")
    await repo.add(Account(partition_key="acct", row_key="a1", owner="Alice"))
    try:
        await repo.add(Account(partition_key="acct", row_key="a1", owner="Alice"))
    except ConflictError as e:
        print(f"  ✓ Rejected: {e}")

    print("\n2. Concurrent deposits:")
    stale = await repo.get("acct", "a1")
    await deposit(repo, "acct", "a1", 50)
    try:
        stale.balance += 10
        await repo.update(stale, if_match=stale.etag)
    except ConflictError:
        print("  ✓ Stale write rejected")
    balance = await deposit(repo, "acct", "a1", 10)
    print(f"  ✓ Balance is now {balance}")

    print("\n3. Reading a missing account:")
    try:
        await repo.get("acct", "missing")
    except EntityNotFoundError as e:
        print(f"  ✓ {e}")

    print("\n4. Bulk insert colliding in the second chunk:")
    await repo.add(Account(partition_key="bulk", row_key="r0150", owner="Early bird"))
    accounts = [
        Account(partition_key="bulk", row_key=f"r{i:04d}", owner=f"Owner {i}") for i in range(250)
    ]
    try:
        await repo.add_many(accounts)
    except ConflictError as e:
        print(f"  ✗ Bulk insert stopped: {e}")
    stored = await repo.query(Account.partition_key == "bulk")
    print(f"  ✓ {len(stored)} rows stored: first chunk kept, second rolled back, third skipped")

    await repo.close()


if __name__ == "__main__":
    asyncio.run(main())

"""Structured error types for tablekit."""

from __future__ import annotations


class TableKitError(Exception):
    """Base error for all tablekit errors."""


class ConflictError(TableKitError):
    """Raised when a write violates an existence or etag precondition.

    Covers add on an existing key, update on a missing key and etag mismatch
    on conditional writes. Callers re-read, re-apply and resubmit.
    """

    def __init__(self, operation: str, detail: str, *, status: int | None = None) -> None:
        self.operation = operation
        self.detail = detail
        self.status = status
        super().__init__(f"Conflict during {operation}: {detail}")


class EntityNotFoundError(TableKitError):
    """Raised when a point get addresses a missing entity."""

    def __init__(self, partition_key: str, row_key: str) -> None:
        self.partition_key = partition_key
        self.row_key = row_key
        super().__init__(
            f"Entity not found: partition_key={partition_key!r}, row_key={row_key!r}"
        )


class StoreUnavailableError(TableKitError):
    """Raised when the table store fails for reasons unrelated to data semantics."""

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"Table store error during {operation}: {detail}")


class StoreConfigurationError(TableKitError):
    """Raised when a storage URI or client configuration cannot be resolved."""

    def __init__(self, message: str) -> None:
        super().__init__(message)

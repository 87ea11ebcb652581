"""Configuration for tablekit repositories and store clients."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class TableKitConfig:
    """Configuration for repositories and store clients."""

    max_batch_size: int = 100
    results_per_page: int = 1000
    azure_connection_string: str | None = None
    azure_endpoint: str | None = None
    dynamodb_region: str | None = None
    dynamodb_endpoint_url: str | None = None
    request_timeout_s: float = 10.0
    max_transport_attempts: int = 3

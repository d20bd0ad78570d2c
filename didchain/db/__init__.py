"""
Database Layer for the DID resolver

Provides:
- LogStore abstraction (InMemory for dev, Postgres for prod)
- Connection configuration
"""

from .store import (
    LogStore,
    InMemoryLogStore,
    PostgresLogStore,
    LogStoreError,
    SCHEMA_SQL,
    create_log_store,
)
from .config import DatabaseConfig, LogStoreDriver, get_database_url, get_logstore_driver

__all__ = [
    "LogStore",
    "InMemoryLogStore",
    "PostgresLogStore",
    "LogStoreError",
    "SCHEMA_SQL",
    "create_log_store",
    "DatabaseConfig",
    "LogStoreDriver",
    "get_database_url",
    "get_logstore_driver",
]

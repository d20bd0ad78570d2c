"""
Log Document Store

This module defines the LogStore interface and provides two implementations:
- InMemoryLogStore: For development and testing
- PostgresLogStore: For production, shared between resolver instances

The LogStore caches the LogDocument of a complete traversal per DID, so a
later resolution only has to walk the blocks changed since topBlock.

WRITE CONTRACT:
A save never moves a DID backwards. If the stored document already has a
higher topBlock than the incoming one, the incoming one is dropped and
save() returns False:

    if store.save(did, log):
        ...  # log is now the cached document

Cached documents are always complete prefixes of the chain; truncated
(selector-stopped) traversals must never be saved.
"""

import logging
from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Callable, Optional

from psycopg2.extras import Json

from ..errors import LogStoreError
from ..schemas import LogDocument
from .config import DatabaseConfig, LogStoreDriver, get_database_url, get_logstore_driver


logger = logging.getLogger(__name__)


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LogStore(ABC):
    """
    Abstract base class for cached log documents.

    Implementations must ensure:
    1. get() returns an independent copy (callers may mutate it)
    2. save() is monotonic in topBlock per DID
    3. Concurrent saves for the same DID keep the highest topBlock
    """

    @abstractmethod
    def get(self, did: str) -> Optional[LogDocument]:
        """Cached log document for a DID, or None."""
        pass

    @abstractmethod
    def save(self, did: str, log: LogDocument) -> bool:
        """
        Store a log document.

        Returns:
            True if stored, False if a newer document was already cached
        """
        pass

    @abstractmethod
    def delete(self, did: str) -> bool:
        """Remove a cached document. Returns True if one existed."""
        pass

    @abstractmethod
    def list_dids(self) -> list[str]:
        """All DIDs with a cached document, sorted."""
        pass

    @abstractmethod
    def count(self) -> int:
        """Number of cached documents."""
        pass

    def clear(self) -> int:
        """Remove every cached document. Returns the number removed."""
        removed = 0
        for did in self.list_dids():
            if self.delete(did):
                removed += 1
        return removed


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryLogStore(LogStore):
    """
    In-memory implementation of LogStore.

    Suitable for:
    - Development
    - Testing
    - Single-instance deployments

    NOT suitable for:
    - Multi-instance deployments (no shared state)
    """

    def __init__(self):
        self._logs: dict[str, LogDocument] = {}
        self._lock = Lock()

    def get(self, did: str) -> Optional[LogDocument]:
        with self._lock:
            log = self._logs.get(did)
            return log.model_copy(deep=True) if log is not None else None

    def save(self, did: str, log: LogDocument) -> bool:
        with self._lock:
            existing = self._logs.get(did)
            if existing is not None and existing.top_block > log.top_block:
                logger.debug(
                    f"Ignoring stale log for {did}: "
                    f"{log.top_block} < cached {existing.top_block}"
                )
                return False
            self._logs[did] = log.model_copy(deep=True)
            return True

    def delete(self, did: str) -> bool:
        with self._lock:
            return self._logs.pop(did, None) is not None

    def list_dids(self) -> list[str]:
        with self._lock:
            return sorted(self._logs)

    def count(self) -> int:
        with self._lock:
            return len(self._logs)

    def clear(self) -> int:
        with self._lock:
            removed = len(self._logs)
            self._logs.clear()
            return removed


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

# json rather than jsonb: jsonb reorders object keys, and entry order is
# the order selectors and rendered documents see
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS did_logs (
    did         TEXT PRIMARY KEY,
    top_block   BIGINT NOT NULL,
    document    JSON NOT NULL,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


class PostgresLogStore(LogStore):
    """
    PostgreSQL implementation of LogStore.

    Provides:
    - Durability (cached logs survive restarts)
    - Multi-instance support (shared database)
    - Monotonic upsert enforced by the database itself

    Each operation opens its own connection from the factory, so one store
    instance can be shared across threads.

    Usage:
        store = PostgresLogStore(lambda: psycopg2.connect(dsn))
        store.init_schema()
        store.save(did, log)
    """

    STATEMENT_TIMEOUT_MS = 10000

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            statement_timeout_ms: Max statement execution time (ms). Default 10000.
        """
        self._connection_factory = connection_factory
        self._statement_timeout_ms = statement_timeout_ms

    def _execute(self, sql: str, params: tuple = (), fetch: Optional[str] = None, commit: bool = False):
        conn = self._connection_factory()
        cursor = conn.cursor()
        try:
            cursor.execute(f"SET statement_timeout = '{self._statement_timeout_ms}ms'")
            cursor.execute(sql, params)
            result = None
            if fetch == "one":
                result = cursor.fetchone()
            elif fetch == "all":
                result = cursor.fetchall()
            elif fetch == "rowcount":
                result = cursor.rowcount
            if commit:
                conn.commit()
            return result
        except Exception as e:
            try:
                conn.rollback()
            except Exception:
                logger.debug("Rollback failed on broken connection")
            raise LogStoreError(f"Log store query failed: {e}") from e
        finally:
            try:
                cursor.close()
            finally:
                conn.close()

    def init_schema(self) -> None:
        """Create the did_logs table if it does not exist."""
        self._execute(SCHEMA_SQL, commit=True)

    def get(self, did: str) -> Optional[LogDocument]:
        row = self._execute(
            "SELECT document FROM did_logs WHERE did = %s",
            (did,),
            fetch="one",
        )
        if row is None:
            return None
        return LogDocument.from_json_dict(row[0])

    def save(self, did: str, log: LogDocument) -> bool:
        rowcount = self._execute(
            """
            INSERT INTO did_logs (did, top_block, document, updated_at)
            VALUES (%s, %s, %s, now())
            ON CONFLICT (did) DO UPDATE
                SET top_block = EXCLUDED.top_block,
                    document = EXCLUDED.document,
                    updated_at = now()
                WHERE EXCLUDED.top_block >= did_logs.top_block
            """,
            (did, log.top_block, Json(log.to_json_dict())),
            fetch="rowcount",
            commit=True,
        )
        return rowcount > 0

    def delete(self, did: str) -> bool:
        rowcount = self._execute(
            "DELETE FROM did_logs WHERE did = %s",
            (did,),
            fetch="rowcount",
            commit=True,
        )
        return rowcount > 0

    def list_dids(self) -> list[str]:
        rows = self._execute("SELECT did FROM did_logs ORDER BY did", fetch="all")
        return [row[0] for row in rows]

    def count(self) -> int:
        return self._execute("SELECT COUNT(*) FROM did_logs", fetch="one")[0]

    def clear(self) -> int:
        return self._execute("DELETE FROM did_logs", fetch="rowcount", commit=True)


# ============================================================
# FACTORY
# ============================================================

def create_log_store() -> LogStore:
    """
    Create the LogStore selected by the environment.

    Returns:
        InMemoryLogStore when no database is configured or it is unreachable
        PostgresLogStore otherwise
    """
    if get_logstore_driver() == LogStoreDriver.MEMORY:
        logger.info("Using in-memory log store (no persistence)")
        return InMemoryLogStore()

    if get_database_url() is None:
        logger.warning("LOGSTORE_DRIVER is psycopg2 but no database configured; using in-memory log store")
        return InMemoryLogStore()

    return _create_psycopg2_store(DatabaseConfig.from_env())


def _create_psycopg2_store(config: DatabaseConfig) -> LogStore:
    """Create PostgresLogStore with psycopg2, falling back to memory if unreachable."""
    import psycopg2

    def connection_factory():
        return psycopg2.connect(**config.connect_kwargs())

    try:
        test_conn = connection_factory()
        test_conn.close()
    except psycopg2.Error as e:
        logger.error(f"Could not connect to {config.to_url(include_password=False)}: {e}; using in-memory log store")
        return InMemoryLogStore()

    store = PostgresLogStore(connection_factory, statement_timeout_ms=config.statement_timeout_ms)
    store.init_schema()
    logger.info(f"PostgreSQL log store at {config.host}:{config.port}/{config.database}")
    return store

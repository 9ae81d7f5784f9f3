"""Transactional keyed-payload backends used by the batch upserter."""

import sqlite3
import time
from abc import ABC, abstractmethod

import psycopg
import structlog
from psycopg import sql

from recordsync.errors import PersistenceError

log = structlog.stdlib.get_logger()


class PersistenceBackend(ABC):
    """Abstract interface for a store of (id, payload) rows per collection.

    Each collection is a table with a 64-bit integer primary key column `id`
    and an opaque JSON payload column `data`. Callers validate collection
    names before they reach a backend.
    """

    @abstractmethod
    def begin(self) -> None:
        """Open a transaction.

        Raises:
            PersistenceError: If a transaction is already open or cannot start
        """
        pass

    @abstractmethod
    def execute_upsert(self, collection: str, identifier: int, payload: str, timeout: float) -> None:
        """Insert the payload for identifier, or overwrite the stored one.

        A failed statement must leave the surrounding transaction usable so the
        caller can keep accumulating per-record outcomes.

        Args:
            collection: Validated collection (table) name
            identifier: Record identifier
            payload: Canonical JSON of the record
            timeout: Statement budget in seconds

        Raises:
            PersistenceError: If the statement fails or exceeds its timeout
        """
        pass

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass

    @abstractmethod
    def ensure_collection(self, collection: str) -> None:
        """Create the collection table if it does not exist."""
        pass

    @abstractmethod
    def fetch_payload(self, collection: str, identifier: int) -> str | None:
        """Return the stored payload for identifier, or None."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class PostgresBackend(PersistenceBackend):
    """PostgreSQL backend (psycopg 3) storing payloads as JSONB.

    The connection runs in autocommit mode and batch transactions are opened
    with an explicit BEGIN. Every record then runs inside its own savepoint
    (a nested ``conn.transaction()`` block) so one failing row does not abort
    the enclosing transaction.
    """

    def __init__(self, dsn: str, connect_timeout: int = 10):
        self._dsn = dsn
        self._connect_timeout = connect_timeout
        self._conn: psycopg.Connection | None = None
        self._in_transaction = False

    def _connection(self) -> psycopg.Connection:
        if self._conn is None or self._conn.closed:
            try:
                self._conn = psycopg.connect(
                    self._dsn, connect_timeout=self._connect_timeout, autocommit=True
                )
            except psycopg.Error as e:
                log.error("postgres_connect_failed", error=str(e))
                raise PersistenceError(f"Failed to connect to PostgreSQL: {e}") from e
            log.info("postgres_connected")
        return self._conn

    def begin(self) -> None:
        if self._in_transaction:
            raise PersistenceError("transaction already open")
        conn = self._connection()
        if conn.info.transaction_status != psycopg.pq.TransactionStatus.IDLE:
            raise PersistenceError(
                f"connection is not idle: {conn.info.transaction_status.name}"
            )
        try:
            conn.execute("BEGIN")
        except psycopg.Error as e:
            raise PersistenceError(f"failed to begin transaction: {e}") from e
        self._in_transaction = True

    def execute_upsert(self, collection: str, identifier: int, payload: str, timeout: float) -> None:
        conn = self._require_transaction()
        query = sql.SQL(
            "INSERT INTO {} (id, data) VALUES (%s, %s::jsonb) "
            "ON CONFLICT (id) DO UPDATE SET data = EXCLUDED.data"
        ).format(sql.Identifier(collection))
        timeout_ms = max(1, int(timeout * 1000))

        try:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        "SELECT set_config('statement_timeout', %s, true)", (f"{timeout_ms}ms",)
                    )
                    cur.execute(query, (identifier, payload))
        except psycopg.errors.QueryCanceled as e:
            raise PersistenceError(f"upsert timed out after {timeout:.3f}s") from e
        except psycopg.Error as e:
            raise PersistenceError(f"upsert failed: {e}") from e

    def commit(self) -> None:
        conn = self._require_transaction()
        try:
            conn.execute("COMMIT")
        except psycopg.Error as e:
            raise PersistenceError(f"commit failed: {e}") from e
        finally:
            self._in_transaction = False

    def rollback(self) -> None:
        self._in_transaction = False
        if self._conn is None or self._conn.closed:
            return
        if self._conn.info.transaction_status == psycopg.pq.TransactionStatus.IDLE:
            return
        try:
            self._conn.execute("ROLLBACK")
        except psycopg.Error as e:
            raise PersistenceError(f"rollback failed: {e}") from e

    def ensure_collection(self, collection: str) -> None:
        conn = self._connection()
        query = sql.SQL(
            "CREATE TABLE IF NOT EXISTS {} (id BIGINT PRIMARY KEY, data JSONB NOT NULL)"
        ).format(sql.Identifier(collection))
        try:
            with conn.transaction():
                conn.execute(query)
        except psycopg.Error as e:
            raise PersistenceError(f"failed to create collection '{collection}': {e}") from e
        log.info("collection_ensured", collection=collection, backend="postgres")

    def fetch_payload(self, collection: str, identifier: int) -> str | None:
        conn = self._connection()
        query = sql.SQL("SELECT data::text FROM {} WHERE id = %s").format(
            sql.Identifier(collection)
        )
        try:
            with conn.transaction():
                row = conn.execute(query, (identifier,)).fetchone()
        except psycopg.Error as e:
            raise PersistenceError(f"failed to read '{collection}' id={identifier}: {e}") from e
        return row[0] if row else None

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
        self._conn = None
        self._in_transaction = False

    def _require_transaction(self) -> psycopg.Connection:
        if not self._in_transaction or self._conn is None:
            raise PersistenceError("no open transaction")
        return self._conn


def _quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class SqliteBackend(PersistenceBackend):
    """SQLite backend for local runs and tests.

    Transactions are managed explicitly (autocommit connection plus BEGIN).
    A statement timeout bounds both the lock wait (``PRAGMA busy_timeout``)
    and execution, through a progress handler that interrupts the running
    statement once its deadline has passed.
    """

    # VM instructions between progress handler calls
    PROGRESS_STEPS = 16

    def __init__(self, path: str = ":memory:", busy_timeout: float = 5.0):
        self._path = path
        self._busy_timeout_ms = int(busy_timeout * 1000)
        self._conn = sqlite3.connect(
            path, timeout=busy_timeout, isolation_level=None, check_same_thread=False
        )
        self._in_transaction = False

    def begin(self) -> None:
        if self._in_transaction:
            raise PersistenceError("transaction already open")
        try:
            self._conn.execute("BEGIN")
        except sqlite3.Error as e:
            raise PersistenceError(f"failed to begin transaction: {e}") from e
        self._in_transaction = True

    def execute_upsert(self, collection: str, identifier: int, payload: str, timeout: float) -> None:
        if not self._in_transaction:
            raise PersistenceError("no open transaction")

        table = _quote_identifier(collection)
        try:
            self._conn.execute(f"PRAGMA busy_timeout = {max(1, int(timeout * 1000))}")
            self._conn.execute("SAVEPOINT record_upsert")
        except sqlite3.Error as e:
            raise PersistenceError(f"failed to open record savepoint: {e}") from e

        deadline = time.monotonic() + timeout
        self._conn.set_progress_handler(
            lambda: 1 if time.monotonic() > deadline else 0, self.PROGRESS_STEPS
        )
        try:
            self._conn.execute(
                f"INSERT INTO {table} (id, data) VALUES (?, ?) "
                "ON CONFLICT(id) DO UPDATE SET data = excluded.data",
                (identifier, payload),
            )
        except sqlite3.Error as e:
            self._reset_statement_limits()
            self._discard_savepoint()
            if isinstance(e, sqlite3.OperationalError) and "interrupted" in str(e):
                raise PersistenceError(f"upsert timed out after {timeout:.3f}s") from e
            raise PersistenceError(f"upsert failed: {e}") from e

        self._reset_statement_limits()
        try:
            self._conn.execute("RELEASE record_upsert")
        except sqlite3.Error as e:
            raise PersistenceError(f"failed to release record savepoint: {e}") from e

    def _reset_statement_limits(self) -> None:
        self._conn.set_progress_handler(None, self.PROGRESS_STEPS)
        self._conn.execute(f"PRAGMA busy_timeout = {self._busy_timeout_ms}")

    def _discard_savepoint(self) -> None:
        # An interrupted statement can roll back the whole transaction
        if not self._conn.in_transaction:
            log.warning("sqlite_transaction_aborted")
            self._in_transaction = False
            return
        try:
            self._conn.execute("ROLLBACK TO record_upsert")
            self._conn.execute("RELEASE record_upsert")
        except sqlite3.Error as e:
            raise PersistenceError(f"failed to roll back record savepoint: {e}") from e

    def commit(self) -> None:
        try:
            self._conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise PersistenceError(f"commit failed: {e}") from e
        finally:
            self._in_transaction = self._conn.in_transaction

    def rollback(self) -> None:
        self._in_transaction = False
        if not self._conn.in_transaction:
            return
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            raise PersistenceError(f"rollback failed: {e}") from e

    def ensure_collection(self, collection: str) -> None:
        table = _quote_identifier(collection)
        try:
            self._conn.execute(
                f"CREATE TABLE IF NOT EXISTS {table} (id INTEGER PRIMARY KEY, data TEXT NOT NULL)"
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"failed to create collection '{collection}': {e}") from e
        log.info("collection_ensured", collection=collection, backend="sqlite")

    def fetch_payload(self, collection: str, identifier: int) -> str | None:
        table = _quote_identifier(collection)
        try:
            row = self._conn.execute(
                f"SELECT data FROM {table} WHERE id = ?", (identifier,)
            ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"failed to read '{collection}' id={identifier}: {e}") from e
        return row[0] if row else None

    def count(self, collection: str) -> int:
        table = _quote_identifier(collection)
        return self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def close(self) -> None:
        self._conn.close()
        self._in_transaction = False


def create_backend(backend: str, dsn: str) -> PersistenceBackend:
    """Build the backend named in the storage configuration."""
    if backend == "postgres":
        return PostgresBackend(dsn)
    if backend == "sqlite":
        return SqliteBackend(dsn)
    raise ValueError(f"Unsupported storage backend: {backend}")

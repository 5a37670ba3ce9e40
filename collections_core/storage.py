"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). Records are stored as JSON documents keyed by an
integer id. Backends support transactions and a conditional update
(compare-and-swap) used for optimistic concurrency.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Sequence, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import StoreError


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: int
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal and Enum values to plain strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        # Convert ISO strings back to datetime objects
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    """Deep copy through JSON to prevent external mutation"""
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: int, data: Dict[str, Any]) -> None:
        """Save (insert or replace) a record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table, ordered by id"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: int) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters, ordered by id"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def next_id(self, table: str) -> int:
        """Allocate the next integer id for a table"""
        pass

    @abstractmethod
    def update_if(self, table: str, record_id: int, expected: Dict[str, Any],
                  changes: Dict[str, Any]) -> int:
        """
        Apply changes only if every expected field still holds.

        Returns:
            Number of affected records (0 or 1)
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @property
    def in_transaction(self) -> bool:
        """Whether the calling thread has an open transaction"""
        return False

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Inside an already open transaction this joins it, and the enclosing
        transaction decides whether the writes are committed.
        """
        if self.in_transaction:
            yield
            return

        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Transactions are per thread and buffer their writes; other threads only
    ever see committed data. The first write of a transaction (save,
    update_if or next_id) takes the writer lock, which is held until commit
    or rollback, so a compare-and-swap is always checked against the latest
    committed record. A writer that cannot get the lock within ``timeout``
    seconds gets a retryable StoreError.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._data: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._writer_lock = threading.Lock()
        self._local = threading.local()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    @property
    def _pending(self) -> Optional[Dict[str, Dict[int, Dict[str, Any]]]]:
        return getattr(self._local, 'pending', None)

    @property
    def in_transaction(self) -> bool:
        return self._pending is not None

    def _acquire_writer(self) -> None:
        if not self._writer_lock.acquire(timeout=self.timeout):
            raise StoreError(f"Timed out after {self.timeout}s waiting for the in-memory writer lock")

    @contextmanager
    def _write(self):
        """
        Yield the buffer a write goes to.

        Outside a transaction the write is applied as soon as the block ends.
        """
        pending = self._pending
        if pending is not None:
            if not self._local.holds_writer:
                self._acquire_writer()
                self._local.holds_writer = True
            yield pending
            return

        self._acquire_writer()
        try:
            pending = {}
            yield pending
            self._apply(pending)
        finally:
            self._writer_lock.release()

    def _apply(self, pending: Dict[str, Dict[int, Dict[str, Any]]]) -> None:
        with self._lock:
            for table, rows in pending.items():
                self._ensure_table(table)
                self._data[table].update(rows)

    def _table_view(self, table: str) -> Dict[int, Dict[str, Any]]:
        """Committed rows overlaid with the calling thread's pending writes"""
        with self._lock:
            self._ensure_table(table)
            rows = dict(self._data[table])
        pending = self._pending
        if pending and table in pending:
            rows.update(pending[table])
        return rows

    def save(self, table: str, record_id: int, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._write() as pending:
            pending.setdefault(table, {})[record_id] = _copy(data)
            with self._lock:
                self._sequences[table] = max(self._sequences.get(table, 0), record_id)

    def load(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._table_view(table).get(record_id)
        if record:
            return _copy(record)
        return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        rows = self._table_view(table)
        return [_copy(rows[key]) for key in sorted(rows)]

    def exists(self, table: str, record_id: int) -> bool:
        """Check if a record exists"""
        return record_id in self._table_view(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        rows = self._table_view(table)
        return [_copy(rows[key]) for key in sorted(rows) if _matches(rows[key], filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._table_view(table))

    def next_id(self, table: str) -> int:
        """Allocate the next id; ids are never reused, even after rollback"""
        with self._write():
            highest = max(self._table_view(table), default=0)
            with self._lock:
                next_value = max(self._sequences.get(table, 0), highest) + 1
                self._sequences[table] = next_value
            return next_value

    def update_if(self, table: str, record_id: int, expected: Dict[str, Any],
                  changes: Dict[str, Any]) -> int:
        """Compare-and-swap while holding the writer lock"""
        with self._write() as pending:
            current = self._table_view(table).get(record_id)
            if current is None or not _matches(current, expected):
                return 0

            updated = dict(current)
            updated.update(_copy(changes))
            pending.setdefault(table, {})[record_id] = updated
            return 1

    def begin_transaction(self) -> None:
        """Start a transaction for the calling thread"""
        if not self.in_transaction:
            self._local.pending = {}
            self._local.holds_writer = False

    def _end_transaction(self) -> None:
        holds_writer = getattr(self._local, 'holds_writer', False)
        self._local.pending = None
        self._local.holds_writer = False
        if holds_writer:
            self._writer_lock.release()

    def commit(self) -> None:
        """Apply the calling thread's buffered writes"""
        pending = self._pending
        if pending is None:
            return
        try:
            self._apply(pending)
        finally:
            self._end_transaction()

    def rollback(self) -> None:
        """Discard the calling thread's buffered writes"""
        if self._pending is None:
            return
        self._end_transaction()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    File databases use one connection per thread in WAL mode. A transaction
    reads in autocommit mode until its first write (save, update_if or
    next_id), which issues BEGIN IMMEDIATE and holds the database write lock
    until commit or rollback. Conditional updates are a single UPDATE that
    checks the expected fields with json_extract.

    ``:memory:`` databases exist only inside their connection, so they keep
    one shared connection and a transaction holds the storage lock from
    begin to commit/rollback.

    Lock waits longer than ``timeout`` seconds become a retryable StoreError.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 30.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        self._lock = threading.RLock()
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._tables = set()
        self._closed = False

        self._shared = self.db_path == ":memory:"
        self._shared_connection = self._connect() if self._shared else None

        if not self._shared:
            # WAL is a property of the database file
            self._execute("PRAGMA journal_mode = WAL")

    def _connect(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreError(f"Storage for {self.db_path} is closed")
        # Autocommit mode; transactions are started explicitly with BEGIN IMMEDIATE
        connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=self.timeout
        )
        connection.row_factory = sqlite3.Row
        if not self._shared:
            connection.execute("PRAGMA synchronous = NORMAL")
        with self._lock:
            self._connections.append(connection)
        return connection

    @property
    def _connection(self) -> sqlite3.Connection:
        if self._shared:
            return self._shared_connection
        connection = getattr(self._local, 'connection', None)
        if connection is None:
            connection = self._connect()
            self._local.connection = connection
        return connection

    @property
    def _state(self) -> Optional[str]:
        """Transaction phase: None, "pending" before the first write, "active" after"""
        return getattr(self._local, 'state', None)

    @property
    def in_transaction(self) -> bool:
        return self._state is not None

    def _acquire_shared(self) -> None:
        if not self._lock.acquire(timeout=self.timeout):
            raise StoreError(f"Timed out after {self.timeout}s waiting for a transaction on {self.db_path}")

    @contextmanager
    def _guard(self):
        """Serialize use of the shared in-memory connection"""
        if not self._shared:
            yield
            return
        self._acquire_shared()
        try:
            yield
        finally:
            self._lock.release()

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.OperationalError as e:
            message = str(e)
            if "locked" in message or "busy" in message:
                raise StoreError(f"Database {self.db_path} is busy: {message}") from e
            raise

    def _begin_write(self) -> None:
        """Open the database transaction on the first write"""
        if self._state == "pending":
            self._execute("BEGIN IMMEDIATE")
            self._local.state = "active"

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id INTEGER PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        # Schema created inside a transaction is only known once committed
        if not self._connection.in_transaction:
            self._tables.add(table)

    def save(self, table: str, record_id: int, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._guard():
            self._ensure_table(table)
            self._begin_write()

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def load(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT data FROM {table} ORDER BY id
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: int) -> bool:
        """Check if a record exists"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT data FROM {table} ORDER BY id
            """)

            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                if _matches(record, filters):
                    results.append(record)

            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def next_id(self, table: str) -> int:
        """Allocate the next id (MAX(id) + 1) under the write lock"""
        with self._guard():
            self._ensure_table(table)
            self._begin_write()
            cursor = self._execute(f"""
                SELECT COALESCE(MAX(id), 0) + 1 AS next_id FROM {table}
            """)
            return cursor.fetchone()['next_id']

    def update_if(self, table: str, record_id: int, expected: Dict[str, Any],
                  changes: Dict[str, Any]) -> int:
        """Compare-and-swap as a single UPDATE on the stored document"""
        assignments = []
        params: List[Any] = []
        for key, value in changes.items():
            assignments.append("?, json(?)")
            params.extend([f'$."{key}"', json.dumps(value, default=str)])

        conditions = []
        condition_params: List[Any] = []
        for key, value in expected.items():
            conditions.append("json_extract(data, ?) IS ?")
            condition_params.extend([f'$."{key}"', value])

        where = " AND ".join(["id = ?"] + conditions)
        now = datetime.now(timezone.utc).isoformat()

        with self._guard():
            self._ensure_table(table)
            self._begin_write()
            cursor = self._execute(f"""
                UPDATE {table} SET data = json_set(data, {", ".join(assignments)}), updated_at = ?
                WHERE {where}
            """, params + [now, record_id] + condition_params)
            return cursor.rowcount

    def begin_transaction(self) -> None:
        """Start a transaction for the calling thread; BEGIN is deferred to the first write"""
        if self.in_transaction:
            return
        if self._shared:
            self._acquire_shared()
        self._local.state = "pending"

    def _end_transaction(self) -> None:
        self._local.state = None
        if self._shared:
            self._lock.release()

    def commit(self) -> None:
        """Commit current transaction"""
        state = self._state
        if state is None:
            return
        try:
            if state == "active":
                try:
                    self._execute("COMMIT")
                except (sqlite3.Error, StoreError):
                    if self._connection.in_transaction:
                        self._connection.execute("ROLLBACK")
                    raise
        finally:
            self._end_transaction()

    def rollback(self) -> None:
        """Rollback current transaction"""
        state = self._state
        if state is None:
            return
        try:
            if state == "active" and self._connection.in_transaction:
                self._execute("ROLLBACK")
        finally:
            self._end_transaction()

    def close(self) -> None:
        """Close every connection opened by this storage"""
        with self._lock:
            self._closed = True
            for connection in self._connections:
                connection.close()
            self._connections.clear()
            self._shared_connection = None
            self._local = threading.local()


MEMORY_URL = "memory://"
SQLITE_URL_PREFIX = "sqlite:///"


def create_storage(database_url: str, timeout: float = 30.0) -> StorageInterface:
    """
    Create a storage backend from a URL.

    Supported forms: ``memory://`` and ``sqlite:///<path>``
    (``sqlite:///:memory:`` for an in-memory SQLite database).
    """
    if database_url == MEMORY_URL:
        return InMemoryStorage(timeout=timeout)
    if database_url.startswith(SQLITE_URL_PREFIX):
        db_path = database_url[len(SQLITE_URL_PREFIX):] or ":memory:"
        return SQLiteStorage(db_path, timeout=timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")

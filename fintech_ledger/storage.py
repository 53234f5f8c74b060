"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). All monetary values stored as Decimal
strings.

Both backends support atomic multi-row transactions and conditional
compare-and-swap writes, which is what the transfer engine relies on for
serializing balance mutations.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict, field
from pathlib import Path
from contextlib import contextmanager


class StorageConflictError(Exception):
    """A conditional write or commit lost a race with a concurrent writer"""


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
        return result


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    # Deep copy to prevent external mutation
    return json.loads(json.dumps(data, default=str))


def _matches(record: Optional[Dict[str, Any]], expected: Dict[str, Any]) -> bool:
    if record is None:
        return False
    return all(key in record and record[key] == value for key, value in expected.items())


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def compare_and_swap(self, table: str, record_id: str,
                         expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        """
        Replace a record only if its current fields match ``expected``

        Returns False when the record is missing or any expected field
        differs. Inside a transaction the expectation is checked again at
        commit time, and a mismatch there raises StorageConflictError.
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

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()


@dataclass
class _PendingTransaction:
    """Writes staged by one thread until commit"""
    writes: Dict[Tuple[str, str], Dict[str, Any]] = field(default_factory=dict)
    expectations: Dict[Tuple[str, str], Dict[str, Any]] = field(default_factory=dict)
    depth: int = 1


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Transactions are optimistic: each thread stages its writes privately and
    reads its own staged writes. Commit validates every compare-and-swap
    expectation against the committed data and applies all writes under one
    lock, so other threads never see a half-applied transaction and disjoint
    transactions do not block each other.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def _pending(self) -> Optional[_PendingTransaction]:
        return getattr(self._local, 'transaction', None)

    def _ensure_table(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}
        return self._data[table]

    def _write(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Apply a single committed write"""
        self._ensure_table(table)[record_id] = data

    def _view(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows of a table overlaid with this thread's staged writes"""
        with self._lock:
            rows = dict(self._ensure_table(table))
        pending = self._pending()
        if pending:
            for (staged_table, record_id), data in pending.writes.items():
                if staged_table == table:
                    rows[record_id] = data
        return rows

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        pending = self._pending()
        if pending:
            pending.writes[(table, record_id)] = _copy(data)
            return
        with self._lock:
            self._write(table, record_id, _copy(data))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        pending = self._pending()
        if pending and (table, record_id) in pending.writes:
            return _copy(pending.writes[(table, record_id)])
        with self._lock:
            record = self._ensure_table(table).get(record_id)
            if record:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [_copy(record) for record in self._view(table).values()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return record_id in self._view(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [
            _copy(record) for record in self._view(table).values()
            if _matches(record, filters)
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._view(table))

    def compare_and_swap(self, table: str, record_id: str,
                         expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        """Conditionally replace a record"""
        pending = self._pending()
        key = (table, record_id)
        if pending:
            current = pending.writes.get(key)
            if current is None:
                with self._lock:
                    current = self._ensure_table(table).get(record_id)
            if not _matches(current, expected):
                return False
            if key not in pending.writes:
                pending.expectations[key] = dict(expected)
            pending.writes[key] = _copy(data)
            return True

        with self._lock:
            if not _matches(self._ensure_table(table).get(record_id), expected):
                return False
            self._write(table, record_id, _copy(data))
            return True

    def begin_transaction(self) -> None:
        """Start staging writes for the calling thread"""
        pending = self._pending()
        if pending:
            pending.depth += 1
        else:
            self._local.transaction = _PendingTransaction()

    def commit(self) -> None:
        """Validate expectations and apply staged writes atomically"""
        pending = self._pending()
        if not pending:
            return
        pending.depth -= 1
        if pending.depth > 0:
            return

        self._local.transaction = None
        with self._lock:
            for (table, record_id), expected in pending.expectations.items():
                if not _matches(self._ensure_table(table).get(record_id), expected):
                    raise StorageConflictError(
                        f"Record {table}/{record_id} was modified by a concurrent transaction"
                    )
            for (table, record_id), data in pending.writes.items():
                self._write(table, record_id, data)

    def rollback(self) -> None:
        """Discard staged writes"""
        self._local.transaction = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    One connection is shared between threads. A transaction holds the
    connection lock from BEGIN IMMEDIATE until COMMIT/ROLLBACK, and the write
    lock at the database level keeps other processes out for the same span.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are started explicitly
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = FULL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters on top-level JSON keys"""
        with self._lock:
            self._ensure_table(table)
            conditions = []
            params: List[Any] = []
            for key, value in filters.items():
                conditions.append("json_extract(data, ?) = ?")
                params.extend([f"$.{key}", value])

            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} {where_clause}
                ORDER BY created_at, rowid
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def compare_and_swap(self, table: str, record_id: str,
                         expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        """Conditionally replace a record using the previously read row as the guard"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row is None or not _matches(json.loads(row['data']), expected):
                return False

            now = datetime.now(timezone.utc).isoformat()
            cursor = self._connection.execute(f"""
                UPDATE {table} SET data = ?, updated_at = ?
                WHERE id = ? AND data = ?
            """, (json.dumps(data, default=str), now, record_id, row['data']))
            return cursor.rowcount == 1

    def begin_transaction(self) -> None:
        """Start a database transaction and hold the connection for this thread"""
        self._lock.acquire()
        if self._depth == 0:
            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                self._lock.release()
                raise StorageConflictError(f"Could not start transaction: {e}") from e
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        try:
            if self._depth == 0:
                return
            self._depth -= 1
            if self._depth == 0:
                try:
                    self._connection.execute("COMMIT")
                except sqlite3.OperationalError:
                    self._connection.execute("ROLLBACK")
                    self._tables = set()
                    raise
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        try:
            if self._depth > 0:
                self._depth = 0
                self._connection.execute("ROLLBACK")
                # Tables created inside the transaction are gone again
                self._tables = set()
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, timeout: float = 5.0) -> StorageInterface:
    """
    Create a storage backend from a URL

    Args:
        database_url: ``memory://`` or ``sqlite:///path`` (``sqlite://`` for in-memory SQLite)
        timeout: Seconds SQLite waits for the database write lock

    Returns:
        Storage backend instance
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:", timeout=timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")

"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing), SQLite and PostgreSQL persistence. All monetary values are stored
as Decimal strings.

Mutating operations run inside an explicit unit of work: ``atomic()`` yields
a ``StorageTransaction`` handle that callers pass to every read and write
belonging to the operation. Writes made through the handle become visible to
other callers only when the block exits cleanly; any exception rolls them
back. ``StorageTransaction.lock`` takes exclusive per-record locks that are
held until the unit of work ends.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, Iterator, List, Optional, Any, Set, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import LockTimeoutError


def _copy(data: Any) -> Any:
    """Deep copy through JSON to prevent external mutation"""
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


class StorageTransaction(ABC):
    """
    Handle for one unit of work.

    Reads see this unit's own staged writes first, then committed data.
    """

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def lock(self, table: str, record_ids: Iterable[str]) -> None:
        """
        Acquire exclusive locks on the given records, in sorted id order.

        Take every lock an operation needs in a single call; acquiring them
        piecemeal defeats the global ordering that prevents deadlocks.
        """
        pass

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None


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
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def begin_transaction(self) -> StorageTransaction:
        """Start a unit of work"""
        pass

    @abstractmethod
    def commit(self, transaction: StorageTransaction) -> None:
        """Make the unit's writes visible and release its locks"""
        pass

    @abstractmethod
    def rollback(self, transaction: StorageTransaction) -> None:
        """Discard the unit's writes and release its locks"""
        pass

    @contextmanager
    def atomic(self) -> Iterator[StorageTransaction]:
        """Context manager for atomic operations"""
        transaction = self.begin_transaction()
        try:
            yield transaction
        except BaseException:
            self.rollback(transaction)
            raise
        self.commit(transaction)


class _InMemoryTransaction(StorageTransaction):
    """Buffers writes until commit; holds per-record locks"""

    def __init__(self, storage: 'InMemoryStorage'):
        self._storage = storage
        self._writes: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._held: Set[Tuple[str, str]] = set()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        staged = self._writes.get(table, {}).get(record_id)
        if staged is not None:
            return _copy(staged)
        return self._storage.load(table, record_id)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._writes.setdefault(table, {})[record_id] = _copy(data)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        records = self._storage._snapshot(table)
        records.update(_copy(self._writes.get(table, {})))
        return [record for record in records.values() if _matches(record, filters)]

    def lock(self, table: str, record_ids: Iterable[str]) -> None:
        timeout = self._storage.lock_timeout
        for record_id in sorted(set(record_ids)):
            key = (table, record_id)
            if key in self._held:
                continue
            if not self._storage._acquire_record(key, timeout):
                raise LockTimeoutError(table, record_id, timeout)
            self._held.add(key)

    def _staged(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        return self._writes

    def _release(self) -> None:
        self._writes = {}
        for key in self._held:
            self._storage._release_record(key)
        self._held = set()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self, lock_timeout: Optional[float] = None):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        # key -> [lock, number of transactions holding or waiting on it]
        self._record_locks: Dict[Tuple[str, str], List[Any]] = {}
        self.lock_timeout = lock_timeout

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _acquire_record(self, key: Tuple[str, str], timeout: Optional[float]) -> bool:
        with self._lock:
            entry = self._record_locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        if entry[0].acquire(timeout=-1 if timeout is None else timeout):
            return True
        self._forget_record(key)
        return False

    def _release_record(self, key: Tuple[str, str]) -> None:
        with self._lock:
            record_lock = self._record_locks[key][0]
        record_lock.release()
        self._forget_record(key)

    def _forget_record(self, key: Tuple[str, str]) -> None:
        with self._lock:
            entry = self._record_locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._record_locks[key]

    def _snapshot(self, table: str) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return _copy(self._data[table])

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                _copy(record) for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> StorageTransaction:
        return _InMemoryTransaction(self)

    def commit(self, transaction: StorageTransaction) -> None:
        """Apply all staged writes under the storage lock, then release row locks"""
        with self._lock:
            for table, records in transaction._staged().items():
                self._ensure_table(table)
                self._data[table].update(records)
        transaction._release()

    def rollback(self, transaction: StorageTransaction) -> None:
        transaction._release()


class _ConnectionTransaction(StorageTransaction):
    """Unit of work on a connection-backed store; the database keeps the staged state"""

    def __init__(self, storage: Union['SQLiteStorage', 'PostgreSQLStorage']):
        self._storage = storage

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.load(table, record_id)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._storage.save(table, record_id, data)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self._storage.find(table, filters)

    def lock(self, table: str, record_ids: Iterable[str]) -> None:
        self._storage._lock_rows(table, sorted(set(record_ids)))


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    A unit of work runs under ``BEGIN IMMEDIATE``, which holds the database
    write lock until commit, so row locks are implied by the transaction.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", lock_timeout: Optional[float] = None):
        self.db_path = str(db_path)
        self.lock_timeout = lock_timeout
        # Autocommit mode; transactions are opened explicitly
        self._connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=lock_timeout if lock_timeout is not None else 5.0
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
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

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

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
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> StorageTransaction:
        """Start a database transaction holding the write lock"""
        timeout = self.lock_timeout
        if not self._lock.acquire(timeout=-1 if timeout is None else timeout):
            raise LockTimeoutError("database", self.db_path, timeout)
        try:
            self._connection.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError:
            self._lock.release()
            raise
        return _ConnectionTransaction(self)

    def _lock_rows(self, table: str, record_ids: List[str]) -> None:
        # BEGIN IMMEDIATE already holds the database write lock
        self._ensure_table(table)

    def commit(self, transaction: StorageTransaction) -> None:
        """Commit current transaction; a failed commit is rolled back"""
        try:
            self._connection.commit()
        except BaseException:
            self._connection.rollback()
            raise
        finally:
            self._lock.release()

    def rollback(self, transaction: StorageTransaction) -> None:
        """Rollback current transaction"""
        try:
            self._connection.rollback()
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with row-level locking via SELECT ... FOR UPDATE"""

    def __init__(self, connection_string: str, lock_timeout: Optional[float] = None):
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self.lock_timeout = lock_timeout
        self._connection = None
        self._lock = threading.RLock()
        self._in_transaction = False
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually

    def _finish(self) -> None:
        """Commit implicit statement-level transactions outside a unit of work"""
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        data JSONB NOT NULL,
                        created_at TIMESTAMP DEFAULT NOW(),
                        updated_at TIMESTAMP DEFAULT NOW()
                    )
                """)
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_data
                    ON {table} USING gin(data)
                """)
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                    ON {table}(created_at)
                """)
                self._finish()
            finally:
                cursor.close()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc)
            data_json = json.dumps(data, default=str)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = EXCLUDED.updated_at
                """, (record_id, data_json, now, now))
                self._finish()
            finally:
                cursor.close()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT data FROM {table} WHERE id = %s
                """, (record_id,))
                row = cursor.fetchone()
                self._finish()
                if row:
                    return dict(row['data'])
                return None
            finally:
                cursor.close()

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self.find(table, {})

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                if not filters:
                    cursor.execute(f"""
                        SELECT data FROM {table} ORDER BY created_at
                    """)
                else:
                    cursor.execute(f"""
                        SELECT data FROM {table}
                        WHERE data @> %s::jsonb
                        ORDER BY created_at
                    """, (json.dumps(filters, default=str),))
                rows = cursor.fetchall()
                self._finish()
                return [dict(row['data']) for row in rows]
            finally:
                cursor.close()

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT COUNT(*) as count FROM {table}
                """)
                result = cursor.fetchone()['count']
                self._finish()
                return result
            finally:
                cursor.close()

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"DELETE FROM {table}")
                self._finish()
            finally:
                cursor.close()

    def begin_transaction(self) -> StorageTransaction:
        """Start a database transaction"""
        timeout = self.lock_timeout
        if not self._lock.acquire(timeout=-1 if timeout is None else timeout):
            raise LockTimeoutError("database", "connection", timeout)
        # PostgreSQL transactions start automatically with the first statement
        self._in_transaction = True
        if timeout is not None:
            cursor = self._connection.cursor()
            try:
                cursor.execute("SET LOCAL lock_timeout = %s", (f"{int(timeout * 1000)}ms",))
            finally:
                cursor.close()
        return _ConnectionTransaction(self)

    def _lock_rows(self, table: str, record_ids: List[str]) -> None:
        self._ensure_table(table)
        cursor = self._connection.cursor()
        try:
            cursor.execute(f"""
                SELECT id FROM {table}
                WHERE id = ANY(%s)
                ORDER BY id
                FOR UPDATE
            """, (record_ids,))
        except self.psycopg2.errors.LockNotAvailable:
            raise LockTimeoutError(table, ",".join(record_ids), self.lock_timeout)
        finally:
            cursor.close()

    def commit(self, transaction: StorageTransaction) -> None:
        """Commit current transaction; a failed commit is rolled back"""
        try:
            self._connection.commit()
        except BaseException:
            self._connection.rollback()
            raise
        finally:
            self._in_transaction = False
            self._lock.release()

    def rollback(self, transaction: StorageTransaction) -> None:
        """Rollback current transaction"""
        try:
            self._connection.rollback()
        finally:
            self._in_transaction = False
            self._lock.release()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, lock_timeout: Optional[float] = None) -> StorageInterface:
    """
    Build a storage backend from a URL.

    Supported forms: ``memory://``, ``sqlite:///path/to.db``,
    ``sqlite:///:memory:``, ``postgresql://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(lock_timeout=lock_timeout)
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):], lock_timeout=lock_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, lock_timeout=lock_timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")

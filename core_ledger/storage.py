"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). Records are JSON documents kept per table in
insertion order. Both backends give all-or-nothing ``atomic()`` units.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import DuplicateRecordError, StoreUnavailable


_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


def _check_identifier(name: str) -> str:
    """Table and field names are interpolated into SQL, so keep them plain"""
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid storage identifier: {name!r}")
    return name


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(data, default=str))


@dataclass
class StorageRecord:
    """Base class for mutable stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        if isinstance(data.get('created_at'), str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if isinstance(data.get('updated_at'), str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or update a record, keeping its original position"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; raises DuplicateRecordError on collision"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters, in insertion order"""
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
    def create_index(self, table: str, field: str, unique: bool = False) -> None:
        """Create a secondary index on a top-level document field"""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start (or join) a transaction for the calling thread"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the calling thread's transaction at the outermost level"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the calling thread's transaction"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations

        Nested blocks join the outermost one. commit() cleans up after
        itself if it fails, so it is kept outside the rollback handler.
        """
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()


class _TransactionState(threading.local):
    def __init__(self):
        self.depth = 0
        self.rollback_only = False
        # table -> record_id -> document, or None for a staged delete
        self.pending: Dict[str, Dict[str, Optional[Dict[str, Any]]]] = {}


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Writes made inside a transaction are staged per thread and become
    visible to other threads only on commit.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique: Dict[str, List[str]] = {}
        self._lock = threading.RLock()
        self._tx = _TransactionState()

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def _visible(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with this thread's staged writes"""
        self._ensure_table(table)
        rows = dict(self._data[table])
        for record_id, data in self._tx.pending.get(table, {}).items():
            if data is None:
                rows.pop(record_id, None)
            else:
                rows[record_id] = data
        return rows

    def _check_unique(self, table: str, record_id: str, data: Dict[str, Any],
                      rows: Dict[str, Dict[str, Any]]) -> None:
        for field in self._unique.get(table, []):
            value = data.get(field)
            if value is None:
                continue
            for other_id, other in rows.items():
                if other_id != record_id and other.get(field) == value:
                    raise DuplicateRecordError(
                        f"Duplicate value for {table}.{field}: {value!r}",
                        table=table, field=field
                    )

    def _write(self, table: str, record_id: str, data: Optional[Dict[str, Any]]) -> None:
        if self._tx.depth:
            self._tx.pending.setdefault(table, {})[record_id] = data
            return
        self._ensure_table(table)
        if data is None:
            self._data[table].pop(record_id, None)
        else:
            self._data[table][record_id] = data

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            data = _copy(data)
            self._check_unique(table, record_id, data, self._visible(table))
            self._write(table, record_id, data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a record, refusing to overwrite"""
        with self._lock:
            rows = self._visible(table)
            if record_id in rows:
                raise DuplicateRecordError(
                    f"Record {record_id} already exists in {table}", table=table, field="id"
                )
            data = _copy(data)
            self._check_unique(table, record_id, data, rows)
            self._write(table, record_id, data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            record = self._visible(table).get(record_id)
            if record:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            return [_copy(record) for record in self._visible(table).values()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            return record_id in self._visible(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            results = []
            for record in self._visible(table).values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(_copy(record))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            return len(self._visible(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            for record_id in list(self._visible(table)):
                self._write(table, record_id, None)

    def create_index(self, table: str, field: str, unique: bool = False) -> None:
        """Only unique indexes change behaviour in memory"""
        with self._lock:
            self._ensure_table(table)
            if unique and field not in self._unique.setdefault(table, []):
                self._check_existing_unique(table, field)
                self._unique[table].append(field)

    def _check_existing_unique(self, table: str, field: str) -> None:
        seen = set()
        for record in self._data[table].values():
            value = record.get(field)
            if value is None:
                continue
            if value in seen:
                raise DuplicateRecordError(
                    f"Cannot create unique index on {table}.{field}: duplicate {value!r}",
                    table=table, field=field
                )
            seen.add(value)

    def begin_transaction(self) -> None:
        """Start or join this thread's transaction"""
        if self._tx.depth == 0:
            self._tx.pending = {}
            self._tx.rollback_only = False
        self._tx.depth += 1

    def commit(self) -> None:
        """Apply staged writes in one step"""
        if self._tx.depth == 0:
            return
        self._tx.depth -= 1
        if self._tx.depth:
            return

        pending, self._tx.pending = self._tx.pending, {}
        if self._tx.rollback_only:
            self._tx.rollback_only = False
            raise StoreUnavailable("Transaction was marked rollback-only by a nested block")

        with self._lock:
            # Another thread may have committed a conflicting unique value
            # since these writes were staged
            for table, writes in pending.items():
                self._ensure_table(table)
                rows = dict(self._data[table])
                for record_id, data in writes.items():
                    if data is None:
                        rows.pop(record_id, None)
                    else:
                        rows[record_id] = data
                for record_id, data in writes.items():
                    if data is not None:
                        self._check_unique(table, record_id, data, rows)

            for table, writes in pending.items():
                for record_id, data in writes.items():
                    if data is None:
                        self._data[table].pop(record_id, None)
                    else:
                        self._data[table][record_id] = data

    def rollback(self) -> None:
        """Discard staged writes"""
        if self._tx.depth == 0:
            return
        self._tx.depth -= 1
        if self._tx.depth:
            self._tx.rollback_only = True
            return
        self._tx.pending = {}
        self._tx.rollback_only = False

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all committed data for debugging/inspection"""
        with self._lock:
            return _copy(self._data)


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    A single connection is shared by all threads. A transaction holds the
    storage lock from BEGIN until COMMIT/ROLLBACK, so other threads wait
    rather than interleave statements into it.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        try:
            # Autocommit mode; transactions are opened explicitly with BEGIN
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open database {self.db_path}: {e}")
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._rollback_only = False
        self._tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._execute("PRAGMA journal_mode = WAL")
                self._execute("PRAGMA synchronous = FULL")

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self._connection is None:
            raise StoreUnavailable("Storage is closed")
        try:
            return self._connection.execute(sql, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Database error: {e}")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        _check_identifier(table)
        with self._lock:
            self._execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Upsert a record; rowid and created_at are kept on update"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)
            try:
                self._execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        data = excluded.data,
                        updated_at = excluded.updated_at
                """, (record_id, data_json, now, now))
            except sqlite3.IntegrityError as e:
                raise DuplicateRecordError(f"Constraint violated in {table}: {e}", table=table)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a record, refusing to overwrite"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)
            try:
                self._execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, data_json, now, now))
            except sqlite3.IntegrityError as e:
                raise DuplicateRecordError(f"Constraint violated in {table}: {e}", table=table)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,)).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT data FROM {table} ORDER BY rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,)).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using json_extract"""
        with self._lock:
            self._ensure_table(table)
            conditions = []
            params = []
            for key, value in filters.items():
                _check_identifier(key)
                conditions.append(f"json_extract(data, '$.{key}') IS ?")
                params.append(value)

            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._execute(f"""
                SELECT data FROM {table} {where_clause} ORDER BY rowid
            """, tuple(params))
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """).fetchone()
            return row['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")

    def create_index(self, table: str, field: str, unique: bool = False) -> None:
        """Expression index on a JSON document field"""
        _check_identifier(field)
        with self._lock:
            self._ensure_table(table)
            kind = "UNIQUE INDEX" if unique else "INDEX"
            try:
                self._execute(f"""
                    CREATE {kind} IF NOT EXISTS idx_{table}_{field}
                    ON {table}(json_extract(data, '$.{field}'))
                """)
            except sqlite3.IntegrityError as e:
                raise DuplicateRecordError(
                    f"Cannot create unique index on {table}.{field}: {e}",
                    table=table, field=field
                )

    def begin_transaction(self) -> None:
        """Start a database transaction, holding the storage lock until it ends"""
        self._lock.acquire()
        if self._depth == 0:
            try:
                self._execute("BEGIN IMMEDIATE")
            except StoreUnavailable:
                self._lock.release()
                raise
            self._rollback_only = False
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth:
                return
            if self._rollback_only:
                self._rollback_only = False
                self._tables.clear()
                self._execute("ROLLBACK")
                raise StoreUnavailable("Transaction was marked rollback-only by a nested block")
            try:
                self._execute("COMMIT")
            except StoreUnavailable:
                self._tables.clear()
                if self._connection is not None and self._connection.in_transaction:
                    self._connection.rollback()
                raise
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth:
                self._rollback_only = True
                return
            self._rollback_only = False
            # DDL issued inside the transaction is undone as well
            self._tables.clear()
            if self._connection is not None and self._connection.in_transaction:
                self._execute("ROLLBACK")
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(backend: str = "sqlite", database_path: Union[str, Path] = "ledger.db") -> StorageInterface:
    """Build a storage backend by name"""
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(database_path)
    raise ValueError(f"Unknown storage backend: {backend}")

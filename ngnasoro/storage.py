"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Besides plain save/load, backends offer two conditional writes that the
repayment pipeline relies on instead of read-then-write sequences:
``insert_if_absent`` (claim a key once) and ``update_where``
(compare-and-swap on field values).
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Sequence, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import ConfigurationError


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._lock = threading.RLock()
        # Per-thread nesting depth of atomic blocks
        self._local = threading.local()

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
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
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
    def insert_if_absent(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Insert a record only if its id is free. Returns True if inserted."""
        pass

    @abstractmethod
    def update_where(self, table: str, record_id: str, expected: Dict[str, Any],
                     changes: Dict[str, Any]) -> bool:
        """
        Apply ``changes`` to a record only while every field in ``expected``
        still holds the given value. Returns True if the record was updated.
        """
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
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
        """
        Context manager for atomic operations. Nested blocks join the outer one.

        The outermost block holds the backend lock until it commits or rolls
        back, so other threads' reads and writes wait behind the transaction.
        """
        depth = getattr(self._local, 'depth', 0)
        if depth:
            self._local.depth = depth + 1
            try:
                yield
            finally:
                self._local.depth = depth
            return

        with self._lock:
            self.begin_transaction()
            self._local.depth = 1
            try:
                yield
            except BaseException:
                self.rollback()
                raise
            else:
                self.commit()
            finally:
                self._local.depth = 0


class InMemoryStorage(StorageInterface):
    """
    In-memory storage for tests and the ``memory`` backend

    Records are deep-copied through JSON on the way in and out, so they look
    exactly as they would after a round trip through SQLite. Inside a
    transaction every write first journals the row it replaces; rollback
    replays the journal backwards.
    """

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._journal: Optional[List[Tuple[str, str, Optional[Dict[str, Any]]]]] = None

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    @staticmethod
    def _copy(data: Any) -> Any:
        return json.loads(json.dumps(data, default=str))

    def _journal_row(self, table: str, record_id: str) -> None:
        if self._journal is not None:
            previous = self._table(table).get(record_id)
            self._journal.append((table, record_id, None if previous is None else self._copy(previous)))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._journal_row(table, record_id)
            self._table(table)[record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return None if record is None else self._copy(record)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._journal_row(table, record_id)
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                self._copy(record)
                for record in self._table(table).values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def insert_if_absent(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        with self._lock:
            rows = self._table(table)
            if record_id in rows:
                return False
            self._journal_row(table, record_id)
            rows[record_id] = self._copy(data)
            return True

    def update_where(self, table: str, record_id: str, expected: Dict[str, Any],
                     changes: Dict[str, Any]) -> bool:
        with self._lock:
            record = self._table(table).get(record_id)
            if record is None or not _matches(record, expected):
                return False
            self._journal_row(table, record_id)
            record.update(self._copy(changes))
            return True

    def clear_table(self, table: str) -> None:
        with self._lock:
            for record_id in list(self._table(table)):
                self._journal_row(table, record_id)
            self._data[table] = {}

    def begin_transaction(self) -> None:
        with self._lock:
            if self._journal is None:
                self._journal = []

    def commit(self) -> None:
        with self._lock:
            self._journal = None

    def rollback(self) -> None:
        with self._lock:
            journal, self._journal = self._journal or [], None
            for table, record_id, previous in reversed(journal):
                rows = self._table(table)
                if previous is None:
                    rows.pop(record_id, None)
                else:
                    rows[record_id] = previous

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage for persistence

    Each table keeps the record as a JSON document in ``data``. Filters in
    ``find`` and the expectations of ``update_where`` are evaluated inside
    SQLite with ``json_extract``, so only scalar filter values are supported.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        super().__init__()
        # Transactions are opened implicitly on the first write and ended by hand
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._in_transaction = False
        self._tables: set = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        self._connection.execute(
            f"CREATE TABLE IF NOT EXISTS {table} ("
            "id TEXT PRIMARY KEY, data TEXT NOT NULL, "
            "created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
        )
        self._connection.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table}(created_at)"
        )
        # A table created inside a transaction disappears on rollback
        if not self._in_transaction:
            self._connection.commit()
            self._tables.add(table)

    def _execute(self, table: str, sql: str, params: Sequence[Any] = (),
                 write: bool = False) -> sqlite3.Cursor:
        """Run one statement against ``table`` (``{table}`` in ``sql``) under the lock"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(sql.format(table=table), list(params))
            if write and not self._in_transaction:
                self._connection.commit()
            return cursor

    @staticmethod
    def _where(filters: Dict[str, Any]) -> Tuple[str, List[Any]]:
        """SQL conditions matching records whose fields hold the given values"""
        conditions: List[str] = []
        params: List[Any] = []
        for key, value in filters.items():
            path = f"$.{key}"
            if value is None:
                # json_type tells a JSON null apart from a missing key
                conditions.append("json_type(data, ?) = 'null'")
                params.append(path)
            else:
                conditions.append("json_extract(data, ?) = ?")
                params.extend([path, value])
        return " AND ".join(conditions) or "1", params

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = self._now()
        self._execute(
            table,
            "INSERT INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at",
            (record_id, json.dumps(data, default=str), now, now),
            write=True
        )

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = self._execute(table, "SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        cursor = self._execute(table, "DELETE FROM {table} WHERE id = ?", (record_id,), write=True)
        return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        cursor = self._execute(table, "SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,))
        return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        where, params = self._where(filters)
        cursor = self._execute(
            table, f"SELECT data FROM {{table}} WHERE {where} ORDER BY created_at, id", params
        )
        return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        return self._execute(table, "SELECT COUNT(*) FROM {table}").fetchone()[0]

    def insert_if_absent(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        now = self._now()
        cursor = self._execute(
            table,
            "INSERT OR IGNORE INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (record_id, json.dumps(data, default=str), now, now),
            write=True
        )
        return cursor.rowcount == 1

    def update_where(self, table: str, record_id: str, expected: Dict[str, Any],
                     changes: Dict[str, Any]) -> bool:
        with self._lock:
            current = self.load(table, record_id)
            if current is None:
                return False
            current.update(json.loads(json.dumps(changes, default=str)))

            # The expectations are re-checked by the UPDATE itself so another
            # connection to the same file cannot slip a write in between
            where, params = self._where(expected)
            cursor = self._execute(
                table,
                f"UPDATE {{table}} SET data = ?, updated_at = ? WHERE id = ? AND {where}",
                [json.dumps(current, default=str), self._now(), record_id, *params],
                write=True
            )
            return cursor.rowcount == 1

    def clear_table(self, table: str) -> None:
        self._execute(table, "DELETE FROM {table}", write=True)

    def begin_transaction(self) -> None:
        with self._lock:
            self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(backend: str, sqlite_path: str = ":memory:") -> StorageInterface:
    """Build the storage backend named in configuration"""
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(sqlite_path)
    raise ConfigurationError(f"Unknown storage backend: {backend}")

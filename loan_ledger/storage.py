"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite (persistence) and PostgreSQL. Records are JSON documents keyed by id;
all monetary values stored as Decimal strings.

Besides plain CRUD, every backend supports set-based conditional updates
(``update_where``) so batch jobs can transition many rows in one statement.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Tuple, Sequence
from decimal import Decimal
from datetime import datetime, date, timezone
import sqlite3
import json
import re
import copy
import threading
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from contextlib import contextmanager, nullcontext


# (field, operator, value); operators listed in OPERATORS
Condition = Tuple[str, str, Any]

OPERATORS = ('eq', 'ne', 'in', 'not_in', 'lt', 'lte', 'gt', 'gte')

_FIELD_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


@dataclass(frozen=True)
class Subquery:
    """
    Ids of the records of ``table`` matching ``conditions``. Usable as the
    value of an ``in`` / ``not_in`` condition; SQL backends render it as a
    nested SELECT so the parameter count stays fixed.
    """
    table: str
    conditions: Tuple[Condition, ...] = ()


def subquery_tables(conditions: Sequence[Condition]) -> List[str]:
    """Tables referenced by subqueries inside conditions"""
    tables = []
    for _, _, value in conditions:
        if isinstance(value, Subquery):
            tables.append(value.table)
            tables.extend(subquery_tables(value.conditions))
    return tables


def _json_value(value: Any) -> Any:
    """Normalize a value the way it is stored inside the JSON document"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple, set)):
        return [_json_value(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _json_value(v) for k, v in value.items()}
    return value


def _check_condition(field: str, op: str) -> None:
    if not _FIELD_RE.match(field):
        raise ValueError(f"Invalid field name in condition: {field!r}")
    if op not in OPERATORS:
        raise ValueError(f"Unsupported condition operator: {op!r}")


def _check_subquery(op: str, subquery: Subquery) -> None:
    if op not in ('in', 'not_in'):
        raise ValueError(f"Subqueries only work with in / not_in, got {op!r}")
    if not _FIELD_RE.match(subquery.table):
        raise ValueError(f"Invalid table name: {subquery.table!r}")


def matches(record: Dict[str, Any], conditions: Sequence[Condition]) -> bool:
    """Evaluate conditions against a stored record"""
    for field, op, value in conditions:
        _check_condition(field, op)
        if isinstance(value, Subquery):
            raise ValueError("Subqueries must be resolved by the storage backend")
        value = _json_value(value)
        actual = record.get(field)
        if op == 'eq':
            ok = actual == value
        elif op == 'ne':
            ok = actual != value
        elif op == 'in':
            ok = actual in value
        elif op == 'not_in':
            ok = actual not in value
        elif actual is None:
            ok = False
        elif op == 'lt':
            ok = actual < value
        elif op == 'lte':
            ok = actual <= value
        elif op == 'gt':
            ok = actual > value
        else:
            ok = actual >= value
        if not ok:
            return False
    return True


def _filters_to_conditions(filters: Dict[str, Any]) -> List[Condition]:
    return [(key, 'eq', value) for key, value in filters.items()]


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
        # Convert Decimal, date and enum values to JSON-friendly forms
        for key, value in result.items():
            result[key] = _json_value(value)
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
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def query(self, table: str, conditions: Sequence[Condition]) -> List[Dict[str, Any]]:
        """Find records matching all conditions"""
        pass

    @abstractmethod
    def update_where(self, table: str, conditions: Sequence[Condition],
                     changes: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Apply ``changes`` to every record matching ``conditions`` in a single
        set-based update. Returns the updated records.
        """
        pass

    @abstractmethod
    def delete_where(self, table: str, conditions: Sequence[Condition]) -> int:
        """Delete every record matching ``conditions``"""
        pass

    @abstractmethod
    def count(self, table: str, conditions: Sequence[Condition] = ()) -> int:
        """Count records in table, optionally only those matching conditions"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching equality filters"""
        return self.query(table, _filters_to_conditions(filters))

    def lock_record(self, table: str, record_id: str) -> None:
        """Row-lock a record for the rest of the transaction (default no-op)"""
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

    def _transaction_lock(self):
        """Lock held for the whole duration of an atomic block"""
        return nullcontext()

    def _ensure_table(self, table: str) -> None:
        pass

    def _ensure_tables(self, table: str, conditions: Sequence[Condition]) -> None:
        # Subqueried tables must exist before the statement references them
        self._ensure_table(table)
        for subquery_table in subquery_tables(conditions):
            self._ensure_table(subquery_table)

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations; nested blocks join the outer one"""
        with self._transaction_lock():
            depth = getattr(self, '_atomic_depth', 0)
            if depth == 0:
                self.begin_transaction()
            self._atomic_depth = depth + 1
            try:
                yield
            except BaseException:
                self._atomic_depth = depth
                if depth == 0:
                    self.rollback()
                raise
            self._atomic_depth = depth
            if depth == 0:
                self.commit()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _transaction_lock(self):
        return self._lock

    def _resolve(self, conditions: Sequence[Condition]) -> List[Condition]:
        """Replace subqueries with the ids they select"""
        resolved = []
        for field, op, value in conditions:
            if isinstance(value, Subquery):
                _check_subquery(op, value)
                inner = self._resolve(value.conditions)
                value = [
                    record_id for record_id, record in self._data.get(value.table, {}).items()
                    if matches(record, inner)
                ]
            resolved.append((field, op, value))
        return resolved

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                # Deep copy to prevent external mutation
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def query(self, table: str, conditions: Sequence[Condition]) -> List[Dict[str, Any]]:
        """Find records matching all conditions"""
        with self._lock:
            self._ensure_table(table)
            conditions = self._resolve(conditions)
            return [
                json.loads(json.dumps(record))
                for record in self._data[table].values()
                if matches(record, conditions)
            ]

    def update_where(self, table: str, conditions: Sequence[Condition],
                     changes: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Apply changes to all matching records under one lock acquisition"""
        stored_changes = json.loads(json.dumps(
            {k: _json_value(v) for k, v in changes.items()}, default=str
        ))
        with self._lock:
            self._ensure_table(table)
            conditions = self._resolve(conditions)
            updated = []
            for record in self._data[table].values():
                if matches(record, conditions):
                    record.update(stored_changes)
                    updated.append(json.loads(json.dumps(record)))
            return updated

    def delete_where(self, table: str, conditions: Sequence[Condition]) -> int:
        """Delete all matching records"""
        with self._lock:
            self._ensure_table(table)
            conditions = self._resolve(conditions)
            doomed = [
                record_id for record_id, record in self._data[table].items()
                if matches(record, conditions)
            ]
            for record_id in doomed:
                del self._data[table][record_id]
            return len(doomed)

    def count(self, table: str, conditions: Sequence[Condition] = ()) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            if not conditions:
                return len(self._data[table])
            conditions = self._resolve(conditions)
            return sum(1 for record in self._data[table].values() if matches(record, conditions))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Snapshot the data so a rollback can restore it"""
        with self._lock:
            if self._snapshot is None:
                self._snapshot = copy.deepcopy(self._data)

    def commit(self) -> None:
        """Drop the rollback snapshot"""
        with self._lock:
            self._snapshot = None

    def rollback(self) -> None:
        """Restore the snapshot taken when the transaction began"""
        with self._lock:
            if self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


def _sql_conditions(conditions: Sequence[Condition], field_expr, placeholder: str,
                    to_param=lambda v: v) -> Tuple[str, List[Any]]:
    """Translate conditions into a WHERE clause over a JSON document column"""
    clauses = []
    params: List[Any] = []
    sql_ops = {'eq': '=', 'ne': '!=', 'lt': '<', 'lte': '<=', 'gt': '>', 'gte': '>='}
    for field, op, value in conditions:
        _check_condition(field, op)
        expr = field_expr(field)
        if isinstance(value, Subquery):
            _check_subquery(op, value)
            inner_where, inner_params = _sql_conditions(
                value.conditions, field_expr, placeholder, to_param
            )
            keyword = "IN" if op == 'in' else "NOT IN"
            clauses.append(f"{expr} {keyword} (SELECT id FROM {value.table} WHERE {inner_where})")
            params.extend(inner_params)
            continue
        value = _json_value(value)
        if op in ('in', 'not_in'):
            values = list(value)
            if not values:
                clauses.append("1 = 0" if op == 'in' else "1 = 1")
                continue
            marks = ", ".join([placeholder] * len(values))
            keyword = "IN" if op == 'in' else "NOT IN"
            clauses.append(f"{expr} {keyword} ({marks})")
            params.extend(to_param(v) for v in values)
        elif value is None and op in ('eq', 'ne'):
            clauses.append(f"{expr} IS {'NOT ' if op == 'ne' else ''}NULL")
        else:
            clauses.append(f"{expr} {sql_ops[op]} {placeholder}")
            params.append(to_param(value))
    where = " AND ".join(clauses) if clauses else "1 = 1"
    return where, params


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Set isolation_level to 'DEFERRED' to enable manual transaction control
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _transaction_lock(self):
        return self._lock

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if not _FIELD_RE.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
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
            # Create index on timestamps for better query performance
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            if not self._in_transaction:
                self._connection.commit()
            self._tables.add(table)

    def _maybe_commit(self) -> None:
        # Only commit if not in transaction
        if not self._in_transaction:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))
            self._maybe_commit()

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
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._maybe_commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    @staticmethod
    def _field(field: str) -> str:
        return f"json_extract(data, '$.{field}')"

    def query(self, table: str, conditions: Sequence[Condition]) -> List[Dict[str, Any]]:
        """Find records matching all conditions using json_extract"""
        where, params = _sql_conditions(conditions, self._field, "?")
        with self._lock:
            self._ensure_tables(table, conditions)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE {where} ORDER BY created_at
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def update_where(self, table: str, conditions: Sequence[Condition],
                     changes: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Single UPDATE ... RETURNING statement over all matching rows"""
        if not changes:
            return []
        where, where_params = _sql_conditions(conditions, self._field, "?")
        set_parts = []
        set_params: List[Any] = []
        for key, value in changes.items():
            _check_condition(key, 'eq')
            set_parts.append(f"'$.{key}', ?")
            set_params.append(_json_value(value))
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._ensure_tables(table, conditions)
            cursor = self._connection.execute(f"""
                UPDATE {table}
                SET data = json_set(data, {', '.join(set_parts)}), updated_at = ?
                WHERE {where}
                RETURNING data
            """, set_params + [now] + where_params)
            rows = cursor.fetchall()
            self._maybe_commit()
            return [json.loads(row['data']) for row in rows]

    def delete_where(self, table: str, conditions: Sequence[Condition]) -> int:
        """Delete all rows matching the conditions"""
        where, params = _sql_conditions(conditions, self._field, "?")
        with self._lock:
            self._ensure_tables(table, conditions)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE {where}", params)
            self._maybe_commit()
            return cursor.rowcount

    def count(self, table: str, conditions: Sequence[Condition] = ()) -> int:
        """Count records in table"""
        where, params = _sql_conditions(conditions, self._field, "?")
        with self._lock:
            self._ensure_tables(table, conditions)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table} WHERE {where}
            """, params)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._maybe_commit()

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if not self._in_transaction:
                # SQLite with isolation_level='DEFERRED' automatically starts transactions
                # We just need to track the state
                self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False
                # Tables created inside the transaction are gone too
                self._tables.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables: set = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually

    def _transaction_lock(self):
        return self._lock

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if not _FIELD_RE.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        if table in self._tables:
            return
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

                # Only commit if not in transaction
                if not self._in_transaction:
                    self._connection.commit()
                self._tables.add(table)
            finally:
                cursor.close()

    @contextmanager
    def _cursor(self, commit: bool = False):
        cursor = self._connection.cursor()
        try:
            yield cursor
            if commit and not self._in_transaction:
                self._connection.commit()
        finally:
            cursor.close()

    @staticmethod
    def _field(field: str) -> str:
        return f"data ->> '{field}'"

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            data_json = json.dumps(data, default=str)
            with self._cursor(commit=True) as cursor:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = EXCLUDED.updated_at
                """, (record_id, data_json, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
                row = cursor.fetchone()
                return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self.query(table, [])

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor(commit=True) as cursor:
                cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
                return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
                return cursor.fetchone() is not None

    def query(self, table: str, conditions: Sequence[Condition]) -> List[Dict[str, Any]]:
        """Find records using JSONB text operators"""
        # ->> yields text, so compare against text parameters
        where, params = _sql_conditions(conditions, self._field, "%s", to_param=str)
        with self._lock:
            self._ensure_tables(table, conditions)
            with self._cursor() as cursor:
                cursor.execute(f"""
                    SELECT data FROM {table} WHERE {where} ORDER BY created_at
                """, params)
                return [dict(row['data']) for row in cursor.fetchall()]

    def update_where(self, table: str, conditions: Sequence[Condition],
                     changes: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Single UPDATE ... RETURNING statement merging the changes into the document"""
        if not changes:
            return []
        where, params = _sql_conditions(conditions, self._field, "%s", to_param=str)
        patch = json.dumps({k: _json_value(v) for k, v in changes.items()}, default=str)
        with self._lock:
            self._ensure_tables(table, conditions)
            with self._cursor(commit=True) as cursor:
                cursor.execute(f"""
                    UPDATE {table}
                    SET data = data || %s::jsonb, updated_at = NOW()
                    WHERE {where}
                    RETURNING data
                """, [patch] + params)
                return [dict(row['data']) for row in cursor.fetchall()]

    def delete_where(self, table: str, conditions: Sequence[Condition]) -> int:
        where, params = _sql_conditions(conditions, self._field, "%s", to_param=str)
        with self._lock:
            self._ensure_tables(table, conditions)
            with self._cursor(commit=True) as cursor:
                cursor.execute(f"DELETE FROM {table} WHERE {where}", params)
                return cursor.rowcount

    def lock_record(self, table: str, record_id: str) -> None:
        """SELECT ... FOR UPDATE; the row stays locked until commit/rollback"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s FOR UPDATE", (record_id,))

    def count(self, table: str, conditions: Sequence[Condition] = ()) -> int:
        """Count records in table"""
        where, params = _sql_conditions(conditions, self._field, "%s", to_param=str)
        with self._lock:
            self._ensure_tables(table, conditions)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT COUNT(*) as count FROM {table} WHERE {where}", params)
                return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor(commit=True) as cursor:
                cursor.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if not self._in_transaction:
                # PostgreSQL transactions start automatically
                self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False
                self._tables.clear()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """Build a storage backend from a database URL"""
    if database_url in ("memory://", "memory", ""):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")

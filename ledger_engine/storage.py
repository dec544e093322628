"""
Storage Backend Module

Provides the document store the ledger runs on: items addressed by a
(partition key, sort key) pair, secondary indexes, conditional single-item
writes, small all-or-nothing multi-item writes, point and batch gets, and
key-condition queries paged with an opaque continuation token.

Two implementations share the semantics in DocumentStore: in-memory
(testing) and SQLite (persistence). Monetary values are stored as Decimal
strings and version counters as integers.
"""

import base64
import contextvars
import json
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .conditions import Condition, KeyCondition
from .errors import (
    ConditionalCheckFailedError, DeadlineExceededError, StorageError,
    TransactionCanceledError, ValidationError
)


@dataclass
class IndexSchema:
    """Secondary index: items are grouped by partition_key and ordered by sort_key"""
    name: str
    partition_key: str
    sort_key: str


@dataclass
class TableSchema:
    """Primary key layout of a table plus its secondary indexes"""
    name: str
    partition_key: str
    sort_key: str
    indexes: Dict[str, IndexSchema] = field(default_factory=dict)

    def key_of(self, item: Dict[str, Any]) -> Dict[str, Any]:
        """Extract the primary key attributes of an item"""
        try:
            return {
                self.partition_key: item[self.partition_key],
                self.sort_key: item[self.sort_key]
            }
        except KeyError as e:
            raise ValidationError(f"Item for table {self.name} is missing key attribute {e}")

    def key_tuple(self, key: Dict[str, Any]) -> Tuple[Any, Any]:
        try:
            return key[self.partition_key], key[self.sort_key]
        except KeyError as e:
            raise ValidationError(f"Key for table {self.name} is missing attribute {e}")


@dataclass
class QueryPage:
    """One page of query results"""
    items: List[Dict[str, Any]]
    last_evaluated_key: Optional[Dict[str, Any]] = None

    @property
    def has_more(self) -> bool:
        return self.last_evaluated_key is not None


@dataclass
class Put:
    """Write item for transact_write: create or replace a whole item"""
    table: str
    item: Dict[str, Any]
    condition: Optional[Condition] = None


@dataclass
class Update:
    """
    Write item for transact_write: modify attributes of one item.

    set_values replaces attributes; add_values increments numeric attributes,
    treating a missing attribute as zero.
    """
    table: str
    key: Dict[str, Any]
    set_values: Dict[str, Any] = field(default_factory=dict)
    add_values: Dict[str, Any] = field(default_factory=dict)
    condition: Optional[Condition] = None


WriteItem = Union[Put, Update]


# Deadline for backend calls made in the current context
_deadline = contextvars.ContextVar('storage_deadline', default=None)


@contextmanager
def deadline(seconds: Optional[float]):
    """
    Bound every backend call made inside the block by a shared time budget.

    None lifts any enclosing deadline for the block, for writes that must be
    attempted regardless of how long the surrounding call has taken.
    """
    expires_at = None if seconds is None else time.monotonic() + seconds
    token = _deadline.set(expires_at)
    try:
        yield
    finally:
        _deadline.reset(token)


def check_deadline() -> None:
    """Raise DeadlineExceededError when the current budget is spent"""
    expires_at = _deadline.get()
    if expires_at is not None and time.monotonic() >= expires_at:
        raise DeadlineExceededError("Deadline exceeded before storage call")


def encode_token(key: Optional[Dict[str, Any]]) -> str:
    """Turn a last-evaluated key into an opaque continuation token"""
    if not key:
        return ""
    raw = json.dumps(key, sort_keys=True, separators=(',', ':'), default=str)
    return base64.urlsafe_b64encode(raw.encode('utf-8')).decode('ascii')


def decode_token(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """Inverse of encode_token; empty token means first page"""
    if not token:
        return None
    try:
        key = json.loads(base64.urlsafe_b64decode(token.encode('ascii')))
    except (ValueError, UnicodeError) as e:
        raise ValidationError(f"Malformed continuation token: {e}")
    if not isinstance(key, dict) or not key:
        raise ValidationError("Malformed continuation token: not a key")
    return key


def _add(current: Any, delta: Any) -> Any:
    """Numeric increment that keeps integers integral and amounts as Decimal strings"""
    if isinstance(current, int) and isinstance(delta, int) and not isinstance(delta, bool):
        return current + delta
    return str(Decimal(str(current)) + Decimal(str(delta)))


def _copy(item: Dict[str, Any]) -> Dict[str, Any]:
    # Deep copy to prevent external mutation, Decimals become strings
    return json.loads(json.dumps(item, default=str))


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def create_table(self, schema: TableSchema) -> None:
        """Register a table and its indexes"""
        pass

    @abstractmethod
    def get_item(self, table: str, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Point read by full primary key"""
        pass

    @abstractmethod
    def batch_get(self, table: str, keys: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Read several items; missing keys are simply absent from the result"""
        pass

    @abstractmethod
    def put_item(self, table: str, item: Dict[str, Any],
                 condition: Optional[Condition] = None) -> None:
        """Create or replace an item, optionally guarded by a precondition"""
        pass

    @abstractmethod
    def update_item(self, table: str, key: Dict[str, Any],
                    set_values: Optional[Dict[str, Any]] = None,
                    add_values: Optional[Dict[str, Any]] = None,
                    condition: Optional[Condition] = None) -> Dict[str, Any]:
        """Modify one item atomically and return its new state"""
        pass

    @abstractmethod
    def transact_write(self, items: List[WriteItem]) -> List[Dict[str, Any]]:
        """Apply several writes all-or-nothing and return the new item states"""
        pass

    @abstractmethod
    def query(self, table: str, key_condition: KeyCondition,
              index_name: Optional[str] = None,
              filter_condition: Optional[Condition] = None,
              limit: Optional[int] = None,
              exclusive_start_key: Optional[Dict[str, Any]] = None,
              scan_forward: bool = True) -> QueryPage:
        """Query one partition of a table or index"""
        pass

    @abstractmethod
    def scan(self, table: str, filter_condition: Optional[Condition] = None) -> List[Dict[str, Any]]:
        """Read every item of a table (maintenance and tests only)"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass


class DocumentStore(StorageInterface):
    """
    Shared document store semantics on top of four backend primitives:
    _read, _write, _scan and the _atomic context manager. Everything that
    evaluates a condition and then writes does so inside one _atomic block.
    """

    def __init__(self):
        self._schemas: Dict[str, TableSchema] = {}

    # Backend primitives

    @abstractmethod
    def _read(self, table: str, key: Tuple[Any, Any]) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def _write(self, table: str, key: Tuple[Any, Any], item: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def _scan(self, table: str, partition: Any = None) -> Iterable[Dict[str, Any]]:
        """All items of a table, or of one primary partition when given"""
        pass

    @abstractmethod
    def _atomic(self):
        """Context manager serialising a read-check-write sequence"""
        pass

    def _register(self, schema: TableSchema) -> None:
        self._schemas[schema.name] = schema

    # Shared semantics

    def _schema(self, table: str) -> TableSchema:
        schema = self._schemas.get(table)
        if schema is None:
            raise StorageError(f"Unknown table: {table}")
        return schema

    def create_table(self, schema: TableSchema) -> None:
        """Register a table and its indexes"""
        self._register(schema)

    def get_item(self, table: str, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Point read by full primary key"""
        check_deadline()
        schema = self._schema(table)
        with self._atomic():
            return self._read(table, schema.key_tuple(key))

    def batch_get(self, table: str, keys: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Read several items; missing keys are simply absent from the result"""
        check_deadline()
        schema = self._schema(table)
        results = []
        with self._atomic():
            for key in keys:
                item = self._read(table, schema.key_tuple(key))
                if item is not None:
                    results.append(item)
        return results

    def put_item(self, table: str, item: Dict[str, Any],
                 condition: Optional[Condition] = None) -> None:
        """Create or replace an item, optionally guarded by a precondition"""
        self.transact_write([Put(table=table, item=item, condition=condition)], single=True)

    def update_item(self, table: str, key: Dict[str, Any],
                    set_values: Optional[Dict[str, Any]] = None,
                    add_values: Optional[Dict[str, Any]] = None,
                    condition: Optional[Condition] = None) -> Dict[str, Any]:
        """Modify one item atomically and return its new state"""
        update = Update(table=table, key=key, set_values=set_values or {},
                        add_values=add_values or {}, condition=condition)
        return self.transact_write([update], single=True)[0]

    def transact_write(self, items: List[WriteItem], single: bool = False) -> List[Dict[str, Any]]:
        """
        Apply several writes all-or-nothing.

        Every condition is evaluated against the state before any write is
        applied. When one fails nothing is written and TransactionCanceledError
        lists a reason per item (ConditionalCheckFailedError for single writes).

        Returns:
            The new state of every written item, in input order
        """
        check_deadline()
        if not items:
            raise ValidationError("transact_write needs at least one item")

        with self._atomic():
            staged = []
            reasons = []
            seen = set()
            for op in items:
                schema = self._schema(op.table)
                if isinstance(op, Put):
                    key = schema.key_tuple(schema.key_of(op.item))
                else:
                    key = schema.key_tuple(op.key)
                if (op.table, key) in seen:
                    raise ValidationError("transact_write cannot touch the same item twice")
                seen.add((op.table, key))

                current = self._read(op.table, key)
                if op.condition is not None and not op.condition.evaluate(current):
                    reasons.append("ConditionalCheckFailed")
                    staged.append((op.table, key, current))
                    continue
                reasons.append(None)
                staged.append((op.table, key, self._apply(schema, op, current)))

            if any(reasons):
                if single:
                    raise ConditionalCheckFailedError(
                        f"Condition check failed on {items[0].table}", item=staged[0][2]
                    )
                raise TransactionCanceledError(
                    f"Transaction cancelled, reasons: {reasons}", reasons=reasons
                )

            for table, key, new_item in staged:
                self._write(table, key, new_item)
            return [_copy(new_item) for _, _, new_item in staged]

    def _apply(self, schema: TableSchema, op: WriteItem,
               current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if isinstance(op, Put):
            return _copy(op.item)

        key_names = (schema.partition_key, schema.sort_key)
        for name in list(op.set_values) + list(op.add_values):
            if name in key_names:
                raise ValidationError(f"Cannot update key attribute {name}")

        new_item = dict(current) if current else dict(op.key)
        new_item.update(op.set_values)
        for name, delta in op.add_values.items():
            new_item[name] = _add(new_item.get(name, 0), delta)
        return _copy(new_item)

    def query(self, table: str, key_condition: KeyCondition,
              index_name: Optional[str] = None,
              filter_condition: Optional[Condition] = None,
              limit: Optional[int] = None,
              exclusive_start_key: Optional[Dict[str, Any]] = None,
              scan_forward: bool = True) -> QueryPage:
        """
        Query one partition of a table or index.

        Items are ordered by the sort key (index sort key, then table sort
        key for indexes). The filter is applied before the limit, so a page
        holds up to `limit` matching items and last_evaluated_key is only set
        when more matching items remain.

        Args:
            table: Table name
            key_condition: Partition equality plus optional sort key test
            index_name: Secondary index to query instead of the table
            filter_condition: Extra test on non-key attributes
            limit: Maximum items in the page
            exclusive_start_key: last_evaluated_key of the previous page
            scan_forward: Ascending order when True

        Returns:
            QueryPage
        """
        check_deadline()
        schema = self._schema(table)
        if index_name:
            index = schema.indexes.get(index_name)
            if index is None:
                raise StorageError(f"Unknown index {index_name} on table {table}")
            partition_key, sort_key = index.partition_key, index.sort_key
        else:
            partition_key, sort_key = schema.partition_key, schema.sort_key

        try:
            partition_value, sort_condition = key_condition.split(partition_key, sort_key)
        except ValueError as e:
            raise ValidationError(str(e))

        def order(item: Dict[str, Any]) -> Tuple:
            if index_name:
                return (item.get(sort_key), item.get(schema.sort_key))
            return (item.get(sort_key),)

        with self._atomic():
            if index_name:
                source = self._scan(table)
            else:
                source = self._scan(table, partition=partition_value)
            candidates = [
                item for item in source
                if item.get(partition_key) == partition_value
                and sort_key in item
                and (sort_condition is None or sort_condition.evaluate(item))
            ]

        candidates.sort(key=order, reverse=not scan_forward)

        if exclusive_start_key:
            required = {partition_key, sort_key, schema.sort_key}
            missing = sorted(name for name in required if name not in exclusive_start_key)
            if missing:
                raise ValidationError(f"Continuation token does not fit this query, missing {missing}")
            if exclusive_start_key[partition_key] != partition_value:
                raise ValidationError("Continuation token belongs to a different partition")
            start = order(exclusive_start_key)
            try:
                if scan_forward:
                    candidates = [item for item in candidates if order(item) > start]
                else:
                    candidates = [item for item in candidates if order(item) < start]
            except TypeError as e:
                raise ValidationError(f"Continuation token does not fit this query: {e}")

        if filter_condition is not None:
            candidates = [item for item in candidates if filter_condition.evaluate(item)]

        last_key = None
        if limit is not None and len(candidates) > limit:
            candidates = candidates[:limit]
            last_item = candidates[-1]
            last_key = schema.key_of(last_item)
            if index_name:
                last_key[partition_key] = last_item[partition_key]
                last_key[sort_key] = last_item[sort_key]

        return QueryPage(items=[_copy(item) for item in candidates], last_evaluated_key=last_key)

    def scan(self, table: str, filter_condition: Optional[Condition] = None) -> List[Dict[str, Any]]:
        """Read every item of a table (maintenance and tests only)"""
        check_deadline()
        self._schema(table)
        with self._atomic():
            items = list(self._scan(table))
        if filter_condition is not None:
            items = [item for item in items if filter_condition.evaluate(item)]
        return [_copy(item) for item in items]


class InMemoryStorage(DocumentStore):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[Tuple[Any, Any], Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _register(self, schema: TableSchema) -> None:
        with self._lock:
            super()._register(schema)
            self._data.setdefault(schema.name, {})

    @contextmanager
    def _atomic(self):
        with self._lock:
            yield

    def _read(self, table: str, key: Tuple[Any, Any]) -> Optional[Dict[str, Any]]:
        record = self._data[table].get(key)
        if record is not None:
            return _copy(record)
        return None

    def _write(self, table: str, key: Tuple[Any, Any], item: Dict[str, Any]) -> None:
        self._data[table][key] = _copy(item)

    def _scan(self, table: str, partition: Any = None) -> Iterable[Dict[str, Any]]:
        return [
            record for key, record in self._data[table].items()
            if partition is None or key[0] == partition
        ]

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(DocumentStore):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 10.0):
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly in _atomic
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _register(self, schema: TableSchema) -> None:
        """Ensure table exists with proper schema"""
        with self._lock:
            super()._register(schema)
            self._execute(f"""
                CREATE TABLE IF NOT EXISTS {schema.name} (
                    pk TEXT NOT NULL,
                    sk TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (pk, sk)
                )
            """)

    def _execute(self, sql: str, params: tuple = ()):
        try:
            return self._connection.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageError(f"SQLite error: {e}", cause=e)

    @contextmanager
    def _atomic(self):
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._execute("ROLLBACK")
                raise
            self._depth -= 1
            if outermost:
                self._execute("COMMIT")

    @staticmethod
    def _encode(value: Any) -> str:
        return json.dumps(value, default=str)

    def _read(self, table: str, key: Tuple[Any, Any]) -> Optional[Dict[str, Any]]:
        cursor = self._execute(
            f"SELECT data FROM {table} WHERE pk = ? AND sk = ?",
            (self._encode(key[0]), self._encode(key[1]))
        )
        row = cursor.fetchone()
        if row:
            return json.loads(row['data'])
        return None

    def _write(self, table: str, key: Tuple[Any, Any], item: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        pk, sk = self._encode(key[0]), self._encode(key[1])
        self._execute(f"""
            INSERT OR REPLACE INTO {table} (pk, sk, data, created_at, updated_at)
            VALUES (?, ?, ?,
                COALESCE((SELECT created_at FROM {table} WHERE pk = ? AND sk = ?), ?),
                ?)
        """, (pk, sk, json.dumps(item, default=str), pk, sk, now, now))

    def _scan(self, table: str, partition: Any = None) -> Iterable[Dict[str, Any]]:
        if partition is None:
            cursor = self._execute(f"SELECT data FROM {table} ORDER BY created_at")
        else:
            cursor = self._execute(
                f"SELECT data FROM {table} WHERE pk = ? ORDER BY created_at",
                (self._encode(partition),)
            )
        return [json.loads(row['data']) for row in cursor.fetchall()]

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None

"""SQLite-backed persistence helpers for the workshop engine."""

from __future__ import annotations

import logging
import pickle
import sqlite3
from contextlib import contextmanager
from typing import Generic, Iterator, List, Optional, TypeVar

from .domain import (
    ConsumptionRecord,
    InventoryItem,
    InventoryMovement,
    Invoice,
    OrderItem,
    ServiceOrder,
    ServiceOrderCall,
    Task,
    TimeSession,
)
from .repository import (
    DuplicateRecordError,
    KeyFunc,
    RecordNotFoundError,
    open_session_key,
    order_number_key,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SQLiteRepository(Generic[T]):
    """Repository implementation that persists records inside SQLite.

    Records are stored as pickled payloads. When ``unique_key`` is given,
    its value is written to a ``UNIQUE`` column so the database rejects a
    second record with the same key even across processes.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        table: str,
        unique_key: Optional[KeyFunc] = None,
    ) -> None:
        self._connection = connection
        self._table = table
        self._unique_key = unique_key
        connection.execute(
            f"CREATE TABLE IF NOT EXISTS {table} ("  # nosec - static table names
            "id TEXT PRIMARY KEY, unique_key TEXT UNIQUE, payload BLOB NOT NULL)"
        )

    def _key(self, item: T) -> Optional[str]:
        return self._unique_key(item) if self._unique_key is not None else None

    def _select(self, column: str, value: str) -> Optional[T]:
        row = self._connection.execute(
            f"SELECT payload FROM {self._table} WHERE {column} = ?", (value,)
        ).fetchone()
        return pickle.loads(row[0]) if row is not None else None

    def _write(self, statement: str, item_id: str, item: T, *, insert_only: bool) -> None:
        key = self._key(item)
        try:
            self._connection.execute(statement, (item_id, key, pickle.dumps(item)))
        except sqlite3.IntegrityError as exc:
            if insert_only and self._select("id", item_id) is not None:
                raise DuplicateRecordError(
                    f"Record with id {item_id!r} already exists in {self._table}"
                ) from exc
            raise DuplicateRecordError(
                f"Unique key {key!r} is already taken in {self._table}"
            ) from exc

    # ------------------------------------------------------------------
    # CRUD operations
    # ------------------------------------------------------------------
    def add(self, item_id: str, item: T) -> None:
        self._write(
            f"INSERT INTO {self._table} (id, unique_key, payload) VALUES (?, ?, ?)",
            item_id,
            item,
            insert_only=True,
        )

    def upsert(self, item_id: str, item: T) -> None:
        self._write(
            f"INSERT INTO {self._table} (id, unique_key, payload) VALUES (?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET unique_key = excluded.unique_key, "
            "payload = excluded.payload",
            item_id,
            item,
            insert_only=False,
        )

    def get(self, item_id: str) -> T:
        item = self._select("id", item_id)
        if item is None:
            raise RecordNotFoundError(f"No {self._table} record with id {item_id!r}")
        return item

    def find_by_key(self, key: str) -> Optional[T]:
        return self._select("unique_key", key)

    def remove(self, item_id: str) -> None:
        deleted = self._connection.execute(
            f"DELETE FROM {self._table} WHERE id = ?", (item_id,)
        ).rowcount
        if not deleted:
            raise RecordNotFoundError(f"No {self._table} record with id {item_id!r}")

    def list(self) -> List[T]:
        rows = self._connection.execute(
            f"SELECT payload FROM {self._table} ORDER BY rowid"
        ).fetchall()
        return [pickle.loads(row[0]) for row in rows]


class WorkshopDatabase:
    """One SQLite file holding a table per aggregate.

    The connection runs in autocommit mode; :meth:`transaction` opens an
    explicit ``BEGIN IMMEDIATE`` block so that everything read inside it is
    protected by the database write lock until the block commits. Nested
    blocks join the outermost one.
    """

    TABLES = (
        ("orders", "orders", order_number_key),
        ("items", "service_order_items", None),
        ("tasks", "tasks", None),
        ("sessions", "time_sessions", open_session_key),
        ("inventory", "inventory", None),
        ("consumptions", "consumption_records", None),
        ("movements", "inventory_movements", None),
        ("invoices", "invoices", None),
        ("calls", "order_calls", None),
    )

    orders: SQLiteRepository[ServiceOrder]
    items: SQLiteRepository[OrderItem]
    tasks: SQLiteRepository[Task]
    sessions: SQLiteRepository[TimeSession]
    inventory: SQLiteRepository[InventoryItem]
    consumptions: SQLiteRepository[ConsumptionRecord]
    movements: SQLiteRepository[InventoryMovement]
    invoices: SQLiteRepository[Invoice]
    calls: SQLiteRepository[ServiceOrderCall]

    def __init__(self, path: str) -> None:
        self.path = path
        self.connection = sqlite3.connect(
            path, check_same_thread=False, isolation_level=None, timeout=30.0
        )
        self._depth = 0
        for attribute, table, unique_key in self.TABLES:
            setattr(self, attribute, SQLiteRepository(self.connection, table, unique_key))

    @contextmanager
    def transaction(self) -> Iterator["WorkshopDatabase"]:
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return
        self.connection.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self
        except BaseException:
            self.connection.execute("ROLLBACK")
            logger.debug("Rolled back transaction on %s", self.path)
            raise
        else:
            self.connection.execute("COMMIT")
        finally:
            self._depth = 0

    def close(self) -> None:
        self.connection.close()

    def __enter__(self) -> "WorkshopDatabase":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = ["SQLiteRepository", "WorkshopDatabase"]

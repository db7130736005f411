"""SQLite store for LensFlow aggregates.

Each aggregate lives in its own table of pickled payloads keyed by the same
identifier the in-memory repositories use, so the service layer can run on
either store unchanged.
"""

from __future__ import annotations

import logging
import pickle
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Generic, Iterator, List, Optional, Sequence, TypeVar

from .domain import Order, Organization, Product, User
from .repository import DuplicateRecordError, RecordNotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TABLES = ("orders", "users", "organizations", "products")


def _stamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteRepository(Generic[T]):
    """Repository over one SQLite table; rows keep their insertion order."""

    def __init__(
        self, connection: sqlite3.Connection, table: str, lock: Optional[threading.RLock] = None
    ) -> None:
        if table not in TABLES:
            raise ValueError(f"Unknown table {table!r}")
        self._connection = connection
        self._table = table
        self._lock = lock or threading.RLock()
        self._write(
            f"CREATE TABLE IF NOT EXISTS {table} ("
            "seq INTEGER PRIMARY KEY AUTOINCREMENT, "
            "id TEXT NOT NULL UNIQUE, "
            "payload BLOB NOT NULL, "
            "stored_at TEXT NOT NULL)"
        )

    def _write(self, sql: str, params: Sequence[Any] = ()) -> int:
        with self._lock:
            cursor = self._connection.execute(sql, params)
            self._connection.commit()
            return cursor.rowcount

    def _rows(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._connection.execute(sql, params).fetchall()

    def __contains__(self, item_id: object) -> bool:
        if not isinstance(item_id, str):
            return False
        return bool(self._rows(f"SELECT 1 FROM {self._table} WHERE id = ?", (item_id,)))

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())

    def __len__(self) -> int:
        (row,) = self._rows(f"SELECT COUNT(*) FROM {self._table}")
        return int(row[0])

    def add(self, item_id: str, item: T) -> None:
        try:
            self._write(
                f"INSERT INTO {self._table} (id, payload, stored_at) VALUES (?, ?, ?)",
                (item_id, pickle.dumps(item), _stamp()),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateRecordError(f"Record with id {item_id!r} already exists") from exc

    def upsert(self, item_id: str, item: T) -> None:
        self._write(
            f"INSERT INTO {self._table} (id, payload, stored_at) VALUES (?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET payload = excluded.payload, "
            "stored_at = excluded.stored_at",
            (item_id, pickle.dumps(item), _stamp()),
        )

    def find(self, item_id: str) -> Optional[T]:
        rows = self._rows(f"SELECT payload FROM {self._table} WHERE id = ?", (item_id,))
        return pickle.loads(rows[0]["payload"]) if rows else None

    def get(self, item_id: str) -> T:
        item = self.find(item_id)
        if item is None:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found")
        return item

    def remove(self, item_id: str) -> None:
        if not self._write(f"DELETE FROM {self._table} WHERE id = ?", (item_id,)):
            raise RecordNotFoundError(f"Record with id {item_id!r} not found")

    def list(self) -> List[T]:
        rows = self._rows(f"SELECT payload FROM {self._table} ORDER BY seq")
        return [pickle.loads(row["payload"]) for row in rows]


class LensFlowDatabase:
    """SQLite repositories for orders, users, organizations and products."""

    def __init__(self, path: str) -> None:
        connection = sqlite3.connect(path, check_same_thread=False)
        connection.row_factory = sqlite3.Row
        if path != ":memory:":
            connection.execute("PRAGMA journal_mode=WAL")
        self._connection = connection
        lock = threading.RLock()
        self.orders = SQLiteRepository[Order](connection, "orders", lock)
        self.users = SQLiteRepository[User](connection, "users", lock)
        self.organizations = SQLiteRepository[Organization](connection, "organizations", lock)
        self.products = SQLiteRepository[Product](connection, "products", lock)
        logger.debug("Opened LensFlow database at %s", path)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._connection

    def close(self) -> None:
        self._connection.close()

    def __enter__(self) -> "LensFlowDatabase":
        return self

    def __exit__(self, exc_type, exc, traceback) -> None:
        self.close()


__all__ = ["SQLiteRepository", "LensFlowDatabase", "TABLES"]

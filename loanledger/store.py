"""Persistent document store backed by SQLite with audit logging."""
from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional

from loanledger.errors import DuplicateRecordError

COLLECTIONS = ("users", "lends", "loans", "payments")


def normalize_address(address: Any) -> str:
    return str(address or "").strip().lower()


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _json_dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=_json_default)


def _json_loads(raw: str) -> Dict[str, Any]:
    return json.loads(raw) if raw else {}


class LedgerStore:
    """Thread-safe store holding users, allowances, loans and payments.

    Documents are JSON blobs addressed by ``(collection, key)``. Decimal values
    are written as strings. ``transaction()`` groups several writes into one
    SQLite transaction; writes outside a transaction commit immediately.
    """

    def __init__(self, db_path: Optional[str] = None, *, timeout: float = 10.0) -> None:
        self._db_path = db_path or os.getenv("LEDGER_DB_PATH", "./data/ledger.db")
        os.makedirs(os.path.dirname(os.path.abspath(self._db_path)), exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, timeout=timeout, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._lock = threading.RLock()
        self._depth = 0
        self._create_schema()

    def _create_schema(self) -> None:
        with self._conn:  # type: ignore[call-arg]
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    key TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    PRIMARY KEY (collection, key)
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entity TEXT NOT NULL,
                    event TEXT NOT NULL,
                    metadata TEXT,
                    timestamp INTEGER NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_events_entity ON events(entity)
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_events (
                    key TEXT PRIMARY KEY,
                    event_name TEXT NOT NULL,
                    transaction_hash TEXT,
                    block_number INTEGER,
                    processed_at INTEGER NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cursors (
                    name TEXT PRIMARY KEY,
                    block_number INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )

    @contextmanager
    def transaction(self) -> Iterator["LedgerStore"]:
        """Run the enclosed writes atomically; nested calls join the outer one."""
        with self._lock:
            self._depth += 1
            try:
                yield self
            except BaseException:
                if self._depth == 1:
                    self._conn.rollback()
                raise
            else:
                if self._depth == 1:
                    self._conn.commit()
            finally:
                self._depth -= 1

    def _fetch(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        cursor = self._conn.execute(
            "SELECT data FROM documents WHERE collection = ? AND key = ?",
            (collection, key),
        )
        row = cursor.fetchone()
        return _json_loads(row[0]) if row else None

    def find(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._fetch(collection, str(key))

    def exists(self, collection: str, key: str) -> bool:
        return self.find(collection, key) is not None

    def find_all(
        self,
        collection: str,
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            cursor = self._conn.execute(
                "SELECT data FROM documents WHERE collection = ? ORDER BY created_at ASC, key ASC",
                (collection,),
            )
            documents = [_json_loads(row[0]) for row in cursor.fetchall()]
        if predicate is None:
            return documents
        return [document for document in documents if predicate(document)]

    def create(self, collection: str, key: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(payload)
        record.setdefault("id", uuid.uuid4().hex)
        timestamp = int(time.time())
        with self.transaction():
            try:
                self._conn.execute(
                    "INSERT INTO documents(collection, key, data, created_at, updated_at) VALUES(?, ?, ?, ?, ?)",
                    (collection, str(key), _json_dumps(record), timestamp, timestamp),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecordError(
                    f"{collection} record {key} already exists", {"collection": collection, "key": str(key)}
                ) from exc
        return _json_loads(_json_dumps(record))

    def update(self, collection: str, key: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the whole document stored under ``key``."""
        encoded = _json_dumps(payload)
        with self.transaction():
            cursor = self._conn.execute(
                "UPDATE documents SET data = ?, updated_at = ? WHERE collection = ? AND key = ?",
                (encoded, int(time.time()), collection, str(key)),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"{collection} record {key} not found")
        return _json_loads(encoded)

    def record_event(self, entity: str, event: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        metadata = metadata or {}
        timestamp = int(time.time())
        with self.transaction():
            self._conn.execute(
                "INSERT INTO events(entity, event, metadata, timestamp) VALUES(?, ?, ?, ?)",
                (entity, event, _json_dumps(metadata), timestamp),
            )
        return {"event": event, "metadata": _json_loads(_json_dumps(metadata)), "timestamp": timestamp}

    def history(self, entity: str) -> List[Dict[str, Any]]:
        with self._lock:
            cursor = self._conn.execute(
                "SELECT event, metadata, timestamp FROM events WHERE entity = ? ORDER BY id ASC",
                (entity,),
            )
            return [
                {"event": event, "metadata": _json_loads(metadata), "timestamp": ts}
                for event, metadata, ts in cursor.fetchall()
            ]

    def is_processed(self, key: str) -> bool:
        with self._lock:
            cursor = self._conn.execute("SELECT 1 FROM processed_events WHERE key = ?", (key,))
            return cursor.fetchone() is not None

    def claim_event(
        self,
        key: str,
        event_name: str,
        *,
        transaction_hash: Optional[str] = None,
        block_number: Optional[int] = None,
    ) -> bool:
        """Mark an observed log as processed. Returns False when already claimed."""
        with self.transaction():
            try:
                self._conn.execute(
                    """
                    INSERT INTO processed_events(key, event_name, transaction_hash, block_number, processed_at)
                    VALUES(?, ?, ?, ?, ?)
                    """,
                    (key, event_name, transaction_hash, block_number, int(time.time())),
                )
            except sqlite3.IntegrityError:
                return False
        return True

    def get_cursor(self, name: str) -> Optional[int]:
        with self._lock:
            cursor = self._conn.execute("SELECT block_number FROM cursors WHERE name = ?", (name,))
            row = cursor.fetchone()
            return int(row[0]) if row else None

    def set_cursor(self, name: str, block_number: int) -> None:
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO cursors(name, block_number, updated_at) VALUES(?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    block_number = excluded.block_number,
                    updated_at = excluded.updated_at
                """,
                (name, int(block_number), int(time.time())),
            )

    def close(self) -> None:
        with self._lock:
            self._conn.close()


__all__ = ["COLLECTIONS", "LedgerStore", "normalize_address"]

"""Injected storage abstractions used by the engine.

The engine never touches sqlite directly: it is handed a key-value store (device
ids, fraud audit entries) and a transaction history store. Both come in a
sqlite-backed flavour for the app and an in-memory flavour for tests.
"""
import asyncio
import json
import sqlite3
import weakref
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from payguard.models.transaction import TransactionHistoryEntry


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def append(self, key: str, value: Any, limit: int) -> List[Any]: ...


class InMemoryKeyValueStore:
    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def append(self, key: str, value: Any, limit: int) -> List[Any]:
        """Prepend ``value`` to the list at ``key``, keeping the newest ``limit``."""
        items = [value] + list(self._data.get(key) or [])
        self._data[key] = items[:limit]
        return self._data[key]


class SqliteKeyValueStore:
    """JSON values in the ``kv_store`` table."""

    def __init__(self, connection: sqlite3.Connection):
        self._conn = connection

    def get(self, key: str) -> Optional[Any]:
        row = self._conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return json.loads(row["value"])

    def set(self, key: str, value: Any) -> None:
        self._conn.execute(
            """INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                              updated_at = excluded.updated_at""",
            (key, json.dumps(value, default=str), datetime.now(timezone.utc).isoformat()),
        )
        self._conn.commit()

    def append(self, key: str, value: Any, limit: int) -> List[Any]:
        items = [value] + list(self.get(key) or [])
        items = items[:limit]
        self.set(key, items)
        return items


class TransactionHistoryStore(ABC):
    """Append-only history with per-user write serialization.

    ``user_lock`` must be held across the read-check-append sequence so two
    concurrent requests from the same user cannot both see a stale history.
    """

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @asynccontextmanager
    async def user_lock(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        async with lock:
            yield

    @abstractmethod
    def append(self, entry: TransactionHistoryEntry) -> None: ...

    @abstractmethod
    def query(self, user_id: str, since: datetime) -> List[TransactionHistoryEntry]: ...


class InMemoryHistoryStore(TransactionHistoryStore):
    def __init__(self) -> None:
        super().__init__()
        self._entries: Dict[str, List[TransactionHistoryEntry]] = defaultdict(list)

    def append(self, entry: TransactionHistoryEntry) -> None:
        self._entries[entry.user_id].append(entry)

    def query(self, user_id: str, since: datetime) -> List[TransactionHistoryEntry]:
        return [e for e in self._entries.get(user_id, []) if e.timestamp >= since]


class SqliteHistoryStore(TransactionHistoryStore):
    def __init__(self, connection: sqlite3.Connection):
        super().__init__()
        self._conn = connection

    def append(self, entry: TransactionHistoryEntry) -> None:
        self._conn.execute(
            """INSERT OR IGNORE INTO transaction_history
               (transaction_id, user_id, amount, payment_method, success, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                entry.transaction_id,
                entry.user_id,
                entry.amount,
                entry.payment_method,
                1 if entry.success else 0,
                entry.timestamp.isoformat(),
            ),
        )
        self._conn.commit()

    def query(self, user_id: str, since: datetime) -> List[TransactionHistoryEntry]:
        rows = self._conn.execute(
            """SELECT * FROM transaction_history
               WHERE user_id = ? AND created_at >= ?
               ORDER BY created_at ASC""",
            (user_id, since.isoformat()),
        ).fetchall()
        return [
            TransactionHistoryEntry(
                user_id=row["user_id"],
                transaction_id=row["transaction_id"],
                timestamp=datetime.fromisoformat(row["created_at"]),
                amount=row["amount"],
                payment_method=row["payment_method"],
                success=bool(row["success"]),
            )
            for row in rows
        ]

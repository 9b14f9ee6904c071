"""
Key/value storage tiers mirrored by the tiered cache.

A tier only has to store strings under string keys. Two implementations
ship here: an in-process area standing in for session-scoped storage, and
a SQLite file for durable storage that survives restarts.
"""
import sqlite3
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol, runtime_checkable
from contextlib import contextmanager

from .errors import StorageUnavailableError

logger = logging.getLogger("cache.storage")


@runtime_checkable
class StorageArea(Protocol):
    """
    Minimal string key/value store, shaped like a browser storage area.

    Implementations raise StorageUnavailableError when they cannot serve a
    call; the cache treats that as a signal to fall back to memory.
    """

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def clear(self) -> None: ...

    def keys(self) -> List[str]: ...


class MemoryStorage:
    """
    Process-local storage area.

    Lives as long as the object does, so handing the same instance to a
    fresh cache simulates a reload within one session. ``quota_bytes``
    bounds the summed size of keys and values; writes past it raise
    StorageUnavailableError.
    """

    def __init__(self, quota_bytes: Optional[int] = None, name: str = "session"):
        self.name = name
        self.quota_bytes = quota_bytes
        self._items: Dict[str, str] = {}

    def _used_bytes(self, excluding: Optional[str] = None) -> int:
        return sum(
            len(k) + len(v) for k, v in self._items.items() if k != excluding
        )

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        if self.quota_bytes is not None:
            needed = self._used_bytes(excluding=key) + len(key) + len(value)
            if needed > self.quota_bytes:
                raise StorageUnavailableError(
                    f"Quota exceeded for {self.name} storage "
                    f"({needed} > {self.quota_bytes} bytes)",
                    tier=self.name,
                )
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def clear(self) -> None:
        self._items.clear()

    def keys(self) -> List[str]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)


SCHEMA = """
CREATE TABLE IF NOT EXISTS storage (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SQLiteStorage:
    """
    SQLite-backed durable storage area.

    Every sqlite3 failure is re-raised as StorageUnavailableError so callers
    only have one error type to degrade on.
    """

    def __init__(self, db_path: Path, name: str = "local"):
        self.name = name
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_db()
        except (OSError, sqlite3.Error) as e:
            raise StorageUnavailableError(
                f"Cannot open {self.name} storage at {self.db_path}: {e}",
                tier=self.name,
            ) from e

    def _init_db(self):
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _guard(self, action: str):
        try:
            with self._lock:
                yield
        except sqlite3.Error as e:
            raise StorageUnavailableError(
                f"{self.name} storage {action} failed: {e}", tier=self.name
            ) from e

    def get_item(self, key: str) -> Optional[str]:
        with self._guard("read"), self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM storage WHERE key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        with self._guard("write"), self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO storage (key, value) VALUES (?, ?)",
                (key, value),
            )
            conn.commit()

    def remove_item(self, key: str) -> None:
        with self._guard("delete"), self._get_connection() as conn:
            conn.execute("DELETE FROM storage WHERE key = ?", (key,))
            conn.commit()

    def clear(self) -> None:
        with self._guard("clear"), self._get_connection() as conn:
            conn.execute("DELETE FROM storage")
            conn.commit()
        logger.info(f"Cleared {self.name} storage at {self.db_path}")

    def keys(self) -> List[str]:
        with self._guard("scan"), self._get_connection() as conn:
            rows = conn.execute("SELECT key FROM storage").fetchall()
        return [row[0] for row in rows]

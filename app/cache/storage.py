"""
Cache storage: named, versioned partitions on a pluggable backend.

Two backends share one interface:
- SqliteCacheBackend: durable, survives worker restarts
- MemoryCacheBackend: in-process, for tests and ephemeral gateways
"""
import json
import sqlite3
import threading
import time
import logging
from collections import OrderedDict
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Set

from .core import CacheCategory, CacheEntry, CachedResponse, FetchRequest, StorageError

logger = logging.getLogger("cache.storage")


SCHEMA = """
CREATE TABLE IF NOT EXISTS partitions (
    name TEXT PRIMARY KEY,
    created_at REAL NOT NULL
);

-- seq gives insertion order; a rewrite of the same key gets a new seq
CREATE TABLE IF NOT EXISTS entries (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    partition TEXT NOT NULL REFERENCES partitions(name) ON DELETE CASCADE,
    key TEXT NOT NULL,
    url TEXT NOT NULL,
    status INTEGER NOT NULL,
    headers TEXT NOT NULL,
    body BLOB NOT NULL,
    stored_at REAL NOT NULL,
    UNIQUE(partition, key)
);

CREATE INDEX IF NOT EXISTS idx_entries_partition ON entries(partition, seq);
"""


class CacheBackend(Protocol):
    """
    Storage interface for partitions and their entries.

    Implementations:
    - SqliteCacheBackend: file-backed
    - MemoryCacheBackend: dict-backed
    """

    def create_partition(self, name: str) -> None:
        """Create the partition if it does not exist (idempotent)."""
        ...

    def delete_partition(self, name: str) -> bool:
        """Delete a partition and all its entries. True if it existed."""
        ...

    def partition_names(self) -> List[str]:
        ...

    def get_entry(self, partition: str, key: str) -> Optional[CacheEntry]:
        ...

    def put_entry(self, partition: str, entry: CacheEntry) -> None:
        """Insert or replace; a replaced key moves to the end of insertion order."""
        ...

    def delete_entry(self, partition: str, key: str) -> bool:
        ...

    def entries(self, partition: str) -> List[CacheEntry]:
        """All entries, oldest insertion first."""
        ...


class SqliteCacheBackend:
    """SQLite-based durable cache storage."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=10)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open cache database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    def create_partition(self, name: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO partitions (name, created_at) VALUES (?, ?)",
                (name, time.time()),
            )
            conn.commit()

    def delete_partition(self, name: str) -> bool:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM entries WHERE partition = ?", (name,))
            cursor = conn.execute("DELETE FROM partitions WHERE name = ?", (name,))
            conn.commit()
            return cursor.rowcount > 0

    def partition_names(self) -> List[str]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT name FROM partitions ORDER BY created_at, name")
            return [row["name"] for row in rows.fetchall()]

    def get_entry(self, partition: str, key: str) -> Optional[CacheEntry]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM entries WHERE partition = ? AND key = ?",
                (partition, key),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def put_entry(self, partition: str, entry: CacheEntry) -> None:
        response = entry.response
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO partitions (name, created_at) VALUES (?, ?)",
                (partition, time.time()),
            )
            conn.execute(
                "DELETE FROM entries WHERE partition = ? AND key = ?",
                (partition, entry.key),
            )
            conn.execute(
                """
                INSERT INTO entries (partition, key, url, status, headers, body, stored_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    partition,
                    entry.key,
                    response.url,
                    response.status,
                    json.dumps(dict(response.headers)),
                    sqlite3.Binary(response.body),
                    entry.stored_at,
                ),
            )
            conn.commit()

    def delete_entry(self, partition: str, key: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM entries WHERE partition = ? AND key = ?",
                (partition, key),
            )
            conn.commit()
            return cursor.rowcount > 0

    def entries(self, partition: str) -> List[CacheEntry]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM entries WHERE partition = ? ORDER BY seq",
                (partition,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def _row_to_entry(self, row: sqlite3.Row) -> CacheEntry:
        return CacheEntry(
            key=row["key"],
            response=CachedResponse(
                status=row["status"],
                body=bytes(row["body"]),
                headers=json.loads(row["headers"]),
                url=row["url"],
            ),
            stored_at=row["stored_at"],
        )


class MemoryCacheBackend:
    """Thread-safe in-memory cache storage."""

    def __init__(self):
        self._partitions: Dict[str, "OrderedDict[str, CacheEntry]"] = {}
        self._lock = threading.RLock()

    def create_partition(self, name: str) -> None:
        with self._lock:
            self._partitions.setdefault(name, OrderedDict())

    def delete_partition(self, name: str) -> bool:
        with self._lock:
            return self._partitions.pop(name, None) is not None

    def partition_names(self) -> List[str]:
        with self._lock:
            return list(self._partitions)

    def get_entry(self, partition: str, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._partitions.get(partition, {}).get(key)
            if entry is None:
                return None
            return CacheEntry(key=entry.key, response=entry.response.clone(), stored_at=entry.stored_at)

    def put_entry(self, partition: str, entry: CacheEntry) -> None:
        with self._lock:
            store = self._partitions.setdefault(partition, OrderedDict())
            store.pop(entry.key, None)
            store[entry.key] = CacheEntry(
                key=entry.key, response=entry.response.clone(), stored_at=entry.stored_at
            )

    def delete_entry(self, partition: str, key: str) -> bool:
        with self._lock:
            return self._partitions.get(partition, {}).pop(key, None) is not None

    def entries(self, partition: str) -> List[CacheEntry]:
        with self._lock:
            return list(self._partitions.get(partition, {}).values())


class Partition:
    """
    Handle to one named partition.

    Handles are cheap; two handles with the same name address the same storage.
    """

    def __init__(self, name: str, category: CacheCategory, backend: CacheBackend):
        self.name = name
        self.category = category
        self._backend = backend

    def __eq__(self, other):
        return isinstance(other, Partition) and other.name == self.name

    def __hash__(self):
        return hash(self.name)

    def __repr__(self):
        return f"<Partition(name='{self.name}')>"

    def match(self, request: FetchRequest) -> Optional[CacheEntry]:
        return self._backend.get_entry(self.name, request.cache_key)

    def put(self, request: FetchRequest, response: CachedResponse, stored_at: Optional[float] = None) -> None:
        entry = CacheEntry(
            key=request.cache_key,
            response=response.clone(),
            stored_at=stored_at if stored_at is not None else time.time(),
        )
        self._backend.put_entry(self.name, entry)

    def delete(self, key: str) -> bool:
        return self._backend.delete_entry(self.name, key)

    def entries(self) -> List[CacheEntry]:
        return self._backend.entries(self.name)

    def keys(self) -> List[str]:
        """Entry keys in insertion order."""
        return [entry.key for entry in self.entries()]

    def count(self) -> int:
        return len(self.entries())


class CacheStoreRegistry:
    """
    Maps categories to the current generation's partitions.

    Partition names are "<prefix>-<category>-<version>"; anything carrying the
    prefix but not in the current set belongs to an older generation.
    """

    def __init__(self, backend: CacheBackend, version: str, prefix: str = "hockey-hub"):
        self.backend = backend
        self.version = version
        self.prefix = prefix

    def partition_name(self, category: CacheCategory) -> str:
        return f"{self.prefix}-{category.value}-{self.version}"

    def current_names(self) -> Set[str]:
        """The version set of this generation."""
        return {self.partition_name(category) for category in CacheCategory}

    def open(self, category: CacheCategory) -> Partition:
        """Open (creating if needed) the current partition for a category."""
        name = self.partition_name(category)
        self.backend.create_partition(name)
        return Partition(name, category, self.backend)

    def list_partitions(self) -> List[str]:
        return self.backend.partition_names()

    def _owned(self, names: Iterable[str]) -> List[str]:
        return [name for name in names if name.startswith(f"{self.prefix}-")]

    def delete_stale(self, current_names: Set[str]) -> List[str]:
        """
        Delete every app partition whose name is not in current_names.

        Returns:
            Names of deleted partitions
        """
        deleted = []
        for name in self._owned(self.list_partitions()):
            if name in current_names:
                continue
            logger.info(f"Deleting stale partition: {name}")
            self.backend.delete_partition(name)
            deleted.append(name)
        return deleted

    def delete_all(self) -> int:
        """Delete every partition belonging to this app, any generation."""
        names = self._owned(self.list_partitions())
        for name in names:
            self.backend.delete_partition(name)
        logger.info(f"Cleared {len(names)} cache partitions")
        return len(names)

    def invalidate(self, url: str) -> int:
        """
        Remove the GET entry for a URL from every current partition.

        Returns:
            Number of entries removed
        """
        key = FetchRequest(url=url).cache_key
        existing = set(self.list_partitions())
        removed = 0
        for name in self.current_names() & existing:
            if self.backend.delete_entry(name, key):
                removed += 1
        if removed:
            logger.info(f"Invalidated {removed} entries for {url}")
        return removed

    def get_stats(self) -> Dict[str, int]:
        """Entry count per existing app partition."""
        return {
            name: len(self.backend.entries(name))
            for name in self._owned(self.list_partitions())
        }

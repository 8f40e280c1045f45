"""
Result Cache

Persistent key/value storage for provider responses and aggregated result
sets, so repeated requests within the TTL window never touch the provider.

Features:
- Content-addressed keys (SHA-256 over a normalized query description)
- Entries stamped with creation time and schema version
- Interchangeable backends: JSON files, SQLite, in-memory
- Corrupt entries are treated as a miss and removed
- Expired entries stay readable through ``get_stale`` until swept
"""

import hashlib
import json
import logging
import os
import re
import sqlite3
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from scholar_aggregator.errors import CacheCorrupt

logger = logging.getLogger(__name__)

# Bump to invalidate every cached entry after a payload format change
SCHEMA_VERSION = "1.3"

# 7 days for search results
DEFAULT_TTL = 7 * 24 * 60 * 60

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_\-]+$")


def make_cache_key(
    query: str,
    start: Any = 0,
    num: Any = 0,
    scope: Optional[str] = None,
    version: str = SCHEMA_VERSION,
) -> str:
    """
    Derive a deterministic cache key for a logical query.

    The query text is lower-cased and trimmed and the pagination values are
    coerced to integers, so requests differing only in case or surrounding
    whitespace share a key. Scope, pagination and schema version are all part
    of the digest.

    Args:
        query: Free-text query
        start: Result offset
        num: Result count
        scope: Optional discriminator (e.g. "authorDiscovery")
        version: Schema version tag

    Returns:
        64-character hex digest
    """
    key_data = {
        "query": str(query).lower().strip(),
        "start": int(start),
        "num": int(num),
        "scope": scope,
        "version": version,
    }
    key_string = json.dumps(key_data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(key_string.encode("utf-8")).hexdigest()


def _short(key: str) -> str:
    return f"{key[:8]}..."


@dataclass
class CacheEntry:
    """A cached payload with its creation time and schema version."""
    key: str
    payload: Any
    created_at: float
    version: str

    def age_seconds(self, now: float) -> float:
        return now - self.created_at

    def is_valid(self, now: float, ttl: float, version: str) -> bool:
        return self.version == version and self.age_seconds(now) < ttl

    def to_dict(self) -> dict:
        return {
            "createdAt": self.created_at,
            "version": self.version,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, key: str, data: Any) -> "CacheEntry":
        """Build an entry from its stored form, raising CacheCorrupt if malformed."""
        if not isinstance(data, dict):
            raise CacheCorrupt(key, "entry is not an object")
        created_at = data.get("createdAt")
        version = data.get("version")
        if isinstance(created_at, bool) or not isinstance(created_at, (int, float)):
            raise CacheCorrupt(key, "missing createdAt")
        if not isinstance(version, str) or not version:
            raise CacheCorrupt(key, "missing version")
        if "payload" not in data:
            raise CacheCorrupt(key, "missing payload")
        return cls(
            key=key,
            payload=data["payload"],
            created_at=float(created_at),
            version=version,
        )


class KeyValueStore(ABC):
    """
    TTL-versioned key/value store for JSON-compatible payloads.

    Subclasses only implement raw entry I/O; validity rules, sweeping and
    statistics live here so every backend behaves the same way.

    Example:
        store = JsonFileCacheStore("./data/cache")
        key = make_cache_key("cardiac vexus", 0, 20)
        store.put(key, {"records": []})
        payload = store.get(key)  # None if missing, expired or corrupt
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        version: str = SCHEMA_VERSION,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            ttl: Maximum entry age in seconds (default: 7 days)
            version: Current schema version; other versions are misses
            clock: Time source, injectable for tests
        """
        self.ttl = ttl
        self.version = version
        self._clock = clock

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _read_entry(self, key: str) -> Optional[CacheEntry]:
        """Return the stored entry, None if absent. Raise CacheCorrupt if unreadable."""

    @abstractmethod
    def _write_entry(self, entry: CacheEntry) -> None:
        """Persist an entry, replacing any previous one."""

    @abstractmethod
    def _iter_keys(self) -> Iterable[str]:
        """Yield every stored key."""

    @abstractmethod
    def _entry_size(self, key: str) -> int:
        """Stored size of an entry in bytes."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove an entry. Returns True if something was deleted."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Human-readable backend location for stats output."""

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def _load(self, key: str) -> Optional[CacheEntry]:
        try:
            return self._read_entry(key)
        except CacheCorrupt as e:
            logger.warning(f"{e}; removing entry")
            self.delete(key)
            return None

    def get(self, key: str) -> Optional[Any]:
        """
        Get a payload if the entry exists, has the current schema version and
        is younger than the TTL.

        Args:
            key: Cache key

        Returns:
            Cached payload or None
        """
        entry = self._load(key)
        if entry is None:
            return None

        now = self._clock()
        if not entry.is_valid(now, self.ttl, self.version):
            logger.info(
                f"Cache expired for {_short(key)} "
                f"(version={entry.version}, age={entry.age_seconds(now) / 86400:.1f} days)"
            )
            return None

        logger.info(
            f"Cache hit for {_short(key)} (age={entry.age_seconds(now) / 86400:.1f} days)"
        )
        return entry.payload

    def get_stale(self, key: str) -> Optional[Tuple[Any, float]]:
        """
        Get a payload regardless of age, as long as its schema version matches.

        Used only as a degraded fallback when the provider is rate limiting.

        Returns:
            (payload, age_seconds) or None
        """
        entry = self._load(key)
        if entry is None or entry.version != self.version:
            return None
        return entry.payload, entry.age_seconds(self._clock())

    def put(self, key: str, payload: Any) -> None:
        """
        Store a payload, fully overwriting any previous entry.

        Args:
            key: Cache key
            payload: JSON-compatible value
        """
        entry = CacheEntry(
            key=key,
            payload=payload,
            created_at=self._clock(),
            version=self.version,
        )
        self._write_entry(entry)
        logger.debug(f"Cached entry {_short(key)}")

    def _is_sweepable(self, key: str, now: float) -> bool:
        try:
            entry = self._read_entry(key)
        except CacheCorrupt:
            return True
        return entry is not None and not entry.is_valid(now, self.ttl, self.version)

    def _listed_keys(self, action: str) -> list:
        """Snapshot of stored keys; an unreadable backend counts as empty."""
        try:
            return list(self._iter_keys())
        except (OSError, sqlite3.Error) as e:
            logger.warning(f"Cache {action} skipped, cannot list {self.location}: {e}")
            return []

    def sweep(self) -> int:
        """
        Delete every expired, outdated or corrupt entry.

        Errors on individual entries are logged and skipped.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        removed = 0
        for key in self._listed_keys("sweep"):
            try:
                if self._is_sweepable(key, now):
                    self.delete(key)
                    removed += 1
            except Exception as e:
                logger.warning(f"Could not sweep cache entry {_short(key)}: {e}")

        if removed:
            logger.info(f"Cache sweep removed {removed} entries")
        return removed

    def clear(self) -> int:
        """Delete every entry. Returns the number removed."""
        removed = 0
        for key in self._listed_keys("clear"):
            if self.delete(key):
                removed += 1
        logger.info(f"Cache cleared ({removed} entries)")
        return removed

    def stats(self) -> Dict[str, Any]:
        """Count valid and expired entries and total storage size."""
        now = self._clock()
        valid = 0
        expired = 0
        total_size = 0

        for key in self._listed_keys("stats"):
            try:
                total_size += self._entry_size(key)
                entry = self._read_entry(key)
            except (CacheCorrupt, OSError, sqlite3.Error):
                expired += 1
                continue
            if entry is not None and entry.is_valid(now, self.ttl, self.version):
                valid += 1
            else:
                expired += 1

        return {
            "total_entries": valid + expired,
            "valid_entries": valid,
            "expired_entries": expired,
            "total_size_kb": round(total_size / 1024),
            "ttl_seconds": self.ttl,
            "version": self.version,
            "location": self.location,
        }


class JsonFileCacheStore(KeyValueStore):
    """
    One JSON file per key in a cache directory.

    Writes go to a temporary file that is atomically renamed over the
    target, so a concurrent reader sees either the old or the new entry.
    """

    def __init__(self, cache_dir: str = "./data/cache", **kwargs):
        super().__init__(**kwargs)
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    @property
    def location(self) -> str:
        return str(self.cache_dir)

    def _path_for(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            key = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.cache_dir / f"{key}.json"

    def _read_entry(self, key: str) -> Optional[CacheEntry]:
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValueError) as e:
            raise CacheCorrupt(key, str(e)) from e
        return CacheEntry.from_dict(key, data)

    def _write_entry(self, entry: CacheEntry) -> None:
        path = self._path_for(entry.key)
        fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(entry.to_dict(), f, ensure_ascii=False, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _iter_keys(self) -> Iterable[str]:
        for path in self.cache_dir.glob("*.json"):
            yield path.stem

    def _entry_size(self, key: str) -> int:
        return self._path_for(key).stat().st_size

    def delete(self, key: str) -> bool:
        path = self._path_for(key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False


class SqliteCacheStore(KeyValueStore):
    """Cache entries in a single SQLite table."""

    def __init__(self, path: str = "./data/cache.sqlite", **kwargs):
        super().__init__(**kwargs)
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @property
    def location(self) -> str:
        return str(self.path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_entries (
                    key TEXT PRIMARY KEY,
                    created_at REAL,
                    version TEXT,
                    payload TEXT
                )
                """
            )

    def _read_entry(self, key: str) -> Optional[CacheEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT created_at, version, payload FROM cache_entries WHERE key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return None
        try:
            payload = json.loads(row["payload"])
        except (TypeError, ValueError) as e:
            raise CacheCorrupt(key, str(e)) from e
        return CacheEntry.from_dict(
            key,
            {"createdAt": row["created_at"], "version": row["version"], "payload": payload},
        )

    def _write_entry(self, entry: CacheEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cache_entries (key, created_at, version, payload)
                VALUES (?, ?, ?, ?)
                """,
                (entry.key, entry.created_at, entry.version, json.dumps(entry.payload)),
            )

    def _iter_keys(self) -> Iterable[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key FROM cache_entries").fetchall()
        return [row["key"] for row in rows]

    def _entry_size(self, key: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT length(payload) AS size FROM cache_entries WHERE key = ?",
                (key,),
            ).fetchone()
        return int(row["size"] or 0) if row else 0

    def delete(self, key: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            return cursor.rowcount > 0


class MemoryCacheStore(KeyValueStore):
    """
    Thread-safe in-process store.

    Payloads are kept JSON-encoded so callers never share mutable state with
    the cache, matching the persistent backends.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._entries: Dict[str, Tuple[float, str, str]] = {}
        self._lock = threading.RLock()

    @property
    def location(self) -> str:
        return "memory"

    def _read_entry(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            raw = self._entries.get(key)
        if raw is None:
            return None
        created_at, version, payload_json = raw
        try:
            payload = json.loads(payload_json)
        except ValueError as e:
            raise CacheCorrupt(key, str(e)) from e
        return CacheEntry(key=key, payload=payload, created_at=created_at, version=version)

    def _write_entry(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.key] = (
                entry.created_at,
                entry.version,
                json.dumps(entry.payload),
            )

    def _iter_keys(self) -> Iterable[str]:
        with self._lock:
            return list(self._entries)

    def _entry_size(self, key: str) -> int:
        with self._lock:
            raw = self._entries.get(key)
        return len(raw[2].encode("utf-8")) if raw else 0

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None


def create_store(backend: str = "file", **kwargs) -> KeyValueStore:
    """
    Build a store by backend name.

    Args:
        backend: "file", "sqlite" or "memory"
        **kwargs: Passed to the backend constructor

    Returns:
        KeyValueStore instance
    """
    backends = {
        "file": JsonFileCacheStore,
        "sqlite": SqliteCacheStore,
        "memory": MemoryCacheStore,
    }
    if backend not in backends:
        raise ValueError(f"Unknown cache backend: {backend!r}")
    return backends[backend](**kwargs)

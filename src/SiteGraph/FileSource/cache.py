# === NAVMAP v1 ===
# {
#   "module": "SiteGraph.FileSource.cache",
#   "purpose": "Durable content cache with reservation-based deduplication of in-flight fetches",
#   "sections": [
#     {"id": "derive-cache-key", "name": "derive_cache_key", "anchor": "function-derive-cache-key", "kind": "function"},
#     {"id": "cacheentry", "name": "CacheEntry", "anchor": "class-cacheentry", "kind": "class"},
#     {"id": "cachestore", "name": "CacheStore", "anchor": "class-cachestore", "kind": "class"},
#     {"id": "sqlitecachestore", "name": "SQLiteCacheStore", "anchor": "class-sqlitecachestore", "kind": "class"},
#     {"id": "inflightregistry", "name": "InflightRegistry", "anchor": "class-inflightregistry", "kind": "class"},
#     {"id": "contentcache", "name": "ContentCache", "anchor": "class-contentcache", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Durable content cache and dedup store.

Responsibilities
----------------
- Derive deterministic cache keys from a source URL plus optional explicit
  name/extension (:func:`derive_cache_key`).
- Persist ``cache_key -> CacheEntry`` mappings through a narrow
  :class:`CacheStore` capability (``get``/``set``). :class:`SQLiteCacheStore`
  is the durable implementation; :class:`InMemoryCacheStore` backs tests and
  hosts that keep their own persistence.
- Collapse concurrent requests for one key onto a single fetch with
  :class:`InflightRegistry` reservations: the first caller gets a
  :class:`CacheMiss` and populates the key, later callers get a
  :class:`CachePending` and wait for the same outcome.
- Own the on-disk layout under the cache root and promote finished downloads
  into ``files/`` under a cross-process lock, appending a disambiguating
  suffix when another resource already holds the file name.

Layout
------
``<root>/files/``            committed downloads
``<root>/buffers/<digest>/`` materialised in-memory buffers
``<root>/tmp/``              in-progress ``.part-*.tmp`` files
``<root>/locks/``            filelock files
``<root>/index.sqlite``      durable index (when opened via :func:`open_cache_store`)
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import threading
from concurrent import futures
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable

from SiteGraph.FileSource.cancellation import CancellationToken
from SiteGraph.FileSource.errors import (
    DownloadCancelled,
    FileSourceError,
    HashError,
    NamingConflict,
    StorageIOError,
)
from SiteGraph.FileSource.fingerprint import (
    DEFAULT_ALGORITHM,
    Fingerprint,
    FingerprintMode,
    compute_fingerprint,
    fingerprint_from_dict,
    fingerprint_to_dict,
)
from SiteGraph.FileSource.io_utils import discard_part_file, promote_file
from SiteGraph.FileSource.locks import cache_lock
from SiteGraph.FileSource.naming import disambiguate, normalize_extension

__all__ = [
    "CacheEntry",
    "CacheStore",
    "InMemoryCacheStore",
    "SQLiteCacheStore",
    "open_cache_store",
    "derive_cache_key",
    "Reservation",
    "InflightRegistry",
    "CacheHit",
    "CacheMiss",
    "CachePending",
    "ContentCache",
]

logger = logging.getLogger(__name__)

INDEX_FILE_NAME = "index.sqlite"


def derive_cache_key(url: str, *, name: Optional[str] = None, ext: Optional[str] = None) -> str:
    """Return the SHA-256 cache key for a resource.

    Examples:
        >>> derive_cache_key("https://example.com/a.jpg") == derive_cache_key("https://example.com/a.jpg")
        True
        >>> derive_cache_key("https://example.com/a.jpg") == derive_cache_key(
        ...     "https://example.com/a.jpg", ext=".png")
        False
    """

    payload = json.dumps(
        {"url": url, "name": name or None, "ext": normalize_extension(ext) or None},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry:
    """A committed cache slot. ``local_path`` always names a complete file."""

    cache_key: str
    local_path: str
    fingerprint: Fingerprint
    created_at: datetime
    source_url: Optional[str] = None
    size_bytes: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cache_key": self.cache_key,
            "local_path": self.local_path,
            "fingerprint": fingerprint_to_dict(self.fingerprint),
            "created_at": self.created_at.isoformat(),
            "source_url": self.source_url,
            "size_bytes": self.size_bytes,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CacheEntry":
        return cls(
            cache_key=str(payload["cache_key"]),
            local_path=str(payload["local_path"]),
            fingerprint=fingerprint_from_dict(payload["fingerprint"]),
            created_at=datetime.fromisoformat(payload["created_at"]),
            source_url=payload.get("source_url"),
            size_bytes=payload.get("size_bytes"),
        )


# ============================================================================
# Persistence
# ============================================================================


@runtime_checkable
class CacheStore(Protocol):
    """Host-supplied persistence for ``cache_key -> entry payload``."""

    def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    def set(self, key: str, value: Dict[str, Any]) -> None: ...


class InMemoryCacheStore:
    """Process-local :class:`CacheStore`; contents vanish with the process."""

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self._data.get(key)
            return dict(value) if value is not None else None

    def set(self, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            self._data[key] = dict(value)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    cache_key  TEXT PRIMARY KEY,
    payload    TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class SQLiteCacheStore:
    """SQLite-backed :class:`CacheStore` that survives process restarts.

    A single connection is shared across threads and guarded by a lock; WAL
    mode lets a second build process read while this one writes.
    """

    def __init__(self, path: Union[str, Path], wal_mode: bool = True) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        try:
            self.conn = sqlite3.connect(str(self.path), check_same_thread=False, timeout=30.0)
            self.conn.row_factory = sqlite3.Row
            if wal_mode:
                self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.executescript(_SCHEMA)
            self.conn.commit()
        except sqlite3.Error as e:
            raise StorageIOError(f"Cannot open cache index {self.path}: {e}") from e
        logger.debug("Opened cache index at %s", self.path)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            try:
                row = self.conn.execute(
                    "SELECT payload FROM cache_entries WHERE cache_key = ?", (key,)
                ).fetchone()
            except sqlite3.Error as e:
                raise StorageIOError(f"Cache index read failed: {e}") from e
        if row is None:
            return None
        return json.loads(row["payload"])

    def set(self, key: str, value: Dict[str, Any]) -> None:
        payload = json.dumps(value, sort_keys=True)
        with self._lock:
            try:
                self.conn.execute(
                    """
                    INSERT INTO cache_entries (cache_key, payload, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(cache_key) DO UPDATE SET
                        payload = excluded.payload,
                        updated_at = excluded.updated_at
                    """,
                    (key, payload, _utcnow().isoformat(timespec="seconds")),
                )
                self.conn.commit()
            except sqlite3.Error as e:
                raise StorageIOError(f"Cache index write failed: {e}") from e

    def keys(self) -> List[str]:
        with self._lock:
            rows = self.conn.execute("SELECT cache_key FROM cache_entries ORDER BY cache_key")
            return [row[0] for row in rows.fetchall()]

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.conn.execute("SELECT COUNT(*) FROM cache_entries").fetchone()[0]
        return {"path": str(self.path), "entries": total}

    def close(self) -> None:
        with self._lock:
            if self.conn:
                self.conn.close()
                logger.debug("Cache index closed")

    def __enter__(self) -> "SQLiteCacheStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def open_cache_store(cache_root: Union[str, Path]) -> SQLiteCacheStore:
    """Open (creating if needed) the durable index under ``cache_root``."""

    return SQLiteCacheStore(Path(cache_root) / INDEX_FILE_NAME)


# ============================================================================
# In-flight reservations
# ============================================================================


@dataclass(eq=False)
class Reservation:
    """Exclusive right to populate ``key``; waiters share ``future``."""

    key: str
    future: "futures.Future[CacheEntry]" = field(default_factory=futures.Future)
    previous: Optional[CacheEntry] = None
    waiters: int = 0

    @property
    def settled(self) -> bool:
        return self.future.done()


@dataclass(frozen=True)
class CacheHit:
    entry: CacheEntry


@dataclass(frozen=True)
class CacheMiss:
    reservation: Reservation


@dataclass(frozen=True)
class CachePending:
    reservation: Reservation


LookupResult = Union[CacheHit, CacheMiss, CachePending]


class InflightRegistry:
    """Shared map of cache keys with an outstanding fetch.

    Mutations happen under a single guard; the critical sections only touch
    the dictionary, so contention stays negligible even with thousands of keys.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._pending: Dict[str, Reservation] = {}

    def join(self, key: str) -> Optional[Reservation]:
        """Return the outstanding reservation for ``key`` as a new waiter, if any."""

        with self._guard:
            existing = self._pending.get(key)
            if existing is not None:
                existing.waiters += 1
            return existing

    def reserve(self, key: str, previous: Optional[CacheEntry] = None) -> tuple[Reservation, bool]:
        """Reserve ``key``; return ``(reservation, is_owner)``."""

        with self._guard:
            existing = self._pending.get(key)
            if existing is not None:
                existing.waiters += 1
                return existing, False
            reservation = Reservation(key=key, previous=previous)
            self._pending[key] = reservation
            return reservation, True

    def release(self, reservation: Reservation) -> None:
        with self._guard:
            if self._pending.get(reservation.key) is reservation:
                del self._pending[reservation.key]

    def waiters(self, key: str) -> int:
        with self._guard:
            reservation = self._pending.get(key)
            return reservation.waiters if reservation is not None else 0

    def pending_keys(self) -> List[str]:
        with self._guard:
            return list(self._pending)

    def __len__(self) -> int:
        with self._guard:
            return len(self._pending)

    def __contains__(self, key: object) -> bool:
        with self._guard:
            return key in self._pending


# ============================================================================
# Content cache
# ============================================================================


class ContentCache:
    """Reservation-aware view over a :class:`CacheStore` and a cache root.

    Args:
        store: Persistence capability for cache entries.
        root: Cache root directory; see the module docstring for its layout.
        fingerprint_mode: Strategy used to validate hits when ``verify_hits``.
        algorithm: Digest algorithm for exact fingerprints.
        verify_hits: Recompute the fingerprint of a hit and treat a mismatch as
            a miss. Existence of the cached file is always checked.
        lock_timeout_s: Timeout for the cross-process commit/promotion locks.
        registry: In-flight registry; pass one explicitly to share it.
    """

    def __init__(
        self,
        store: CacheStore,
        root: Union[str, Path],
        *,
        fingerprint_mode: Union[FingerprintMode, str] = FingerprintMode.EXACT,
        algorithm: str = DEFAULT_ALGORITHM,
        verify_hits: bool = False,
        lock_timeout_s: float = 30.0,
        registry: Optional[InflightRegistry] = None,
    ) -> None:
        self.store = store
        self.root = Path(root).expanduser().resolve()
        self.fingerprint_mode = FingerprintMode(fingerprint_mode)
        self.algorithm = algorithm
        self.verify_hits = verify_hits
        self.lock_timeout_s = lock_timeout_s
        self.registry = registry or InflightRegistry()
        self._names_guard = threading.Lock()
        for directory in (self.files_dir, self.tmp_dir, self.buffers_dir):
            directory.mkdir(parents=True, exist_ok=True)

    @property
    def files_dir(self) -> Path:
        return self.root / "files"

    @property
    def tmp_dir(self) -> Path:
        return self.root / "tmp"

    @property
    def buffers_dir(self) -> Path:
        return self.root / "buffers"

    # -- lookups --------------------------------------------------------

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the stored entry for ``key`` without validating or reserving."""

        payload = self.store.get(key)
        if payload is None:
            return None
        try:
            return CacheEntry.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "ignoring malformed cache entry",
                extra={"stage": "cache", "cache_key": key, "error": str(exc)},
            )
            return None

    def _is_valid(self, entry: CacheEntry) -> bool:
        path = Path(entry.local_path)
        if not path.is_file():
            return False
        if not self.verify_hits:
            return True
        try:
            current = compute_fingerprint(path, self.fingerprint_mode, algorithm=self.algorithm)
        except HashError:
            return False
        return current == entry.fingerprint

    def lookup_or_reserve(self, key: str) -> LookupResult:
        """Return a hit, a fresh reservation, or the reservation to wait on."""

        pending = self.registry.join(key)
        if pending is not None:
            return CachePending(pending)

        stored = self.get(key)
        if stored is not None and self._is_valid(stored):
            return CacheHit(stored)

        reservation, is_owner = self.registry.reserve(key, previous=stored)
        if not is_owner:
            return CachePending(reservation)

        # Another owner may have committed and released between our read and
        # the reservation; hand the slot back rather than fetch twice.
        latest = self.get(key)
        if latest is not None and latest != stored and Path(latest.local_path).is_file():
            self.registry.release(reservation)
            reservation.future.set_result(latest)
            return CacheHit(latest)
        if stored is not None:
            logger.info(
                "cache entry invalid, refetching",
                extra={"stage": "cache", "cache_key": key, "path": stored.local_path},
            )
        return CacheMiss(reservation)

    def wait(
        self,
        reservation: Reservation,
        *,
        timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
        poll_interval: float = 0.05,
    ) -> CacheEntry:
        """Block until the owner of ``reservation`` settles it.

        Raises:
            The owner's terminal error, or :class:`DownloadCancelled` when
            ``cancel_token`` fires first, or :class:`TimeoutError`.
        """

        if cancel_token is None:
            done, _ = futures.wait([reservation.future], timeout=timeout)
        else:
            waited = 0.0
            while True:
                done, _ = futures.wait([reservation.future], timeout=poll_interval)
                if done:
                    break
                cancel_token.raise_if_cancelled()
                waited += poll_interval
                if timeout is not None and waited >= timeout:
                    break
        if not done:
            raise TimeoutError(f"Timed out waiting for cache key {reservation.key}")
        return reservation.future.result()

    # -- settlement -----------------------------------------------------

    def commit(
        self,
        reservation: Reservation,
        local_path: Union[str, Path],
        fingerprint: Fingerprint,
        *,
        source_url: Optional[str] = None,
        size_bytes: Optional[int] = None,
    ) -> CacheEntry:
        """Persist the entry, then publish it to every waiter."""

        if reservation.settled:
            raise RuntimeError(f"Reservation for {reservation.key} already settled")
        entry = CacheEntry(
            cache_key=reservation.key,
            local_path=str(Path(local_path).resolve()),
            fingerprint=fingerprint,
            created_at=_utcnow(),
            source_url=source_url,
            size_bytes=size_bytes,
        )
        try:
            with cache_lock(self.root, "commit", reservation.key, timeout=self.lock_timeout_s):
                self.store.set(reservation.key, entry.to_dict())
        except StorageIOError as exc:
            exc.url = exc.url or source_url
            self.abort(reservation, exc)
            raise
        except OSError as exc:
            error = StorageIOError(f"Cannot persist cache entry: {exc}", url=source_url)
            self.abort(reservation, error)
            raise error from exc

        self.registry.release(reservation)
        reservation.future.set_result(entry)
        logger.debug(
            "cache commit",
            extra={"stage": "cache", "cache_key": reservation.key, "path": entry.local_path},
        )
        return entry

    def abort(self, reservation: Reservation, error: Optional[BaseException] = None) -> None:
        """Release ``reservation`` without recording anything."""

        self.registry.release(reservation)
        if not reservation.settled:
            reservation.future.set_exception(
                error or FileSourceError(f"Acquisition of {reservation.key} aborted")
            )
        if not isinstance(error, DownloadCancelled):
            logger.debug(
                "cache reservation aborted",
                extra={"stage": "cache", "cache_key": reservation.key, "error": str(error)},
            )

    # -- file placement -------------------------------------------------

    def promote(
        self,
        tmp_path: Union[str, Path],
        file_name: str,
        cache_key: str,
        *,
        force_suffix: bool = False,
        replace: Optional[Union[str, Path]] = None,
        url: Optional[str] = None,
    ) -> Path:
        """Move a finished download into ``files/`` under a free name.

        The bare ``file_name`` is used when free (or when it is ``replace``,
        the stale file of this same key). Otherwise, or when ``force_suffix``
        is set, the name gets a suffix derived from ``cache_key``. The suffixed
        name belongs to that key alone, so a file already sitting there (left
        behind by an index that was lost or reset) is overwritten.

        Raises:
            NamingConflict: If the suffixed name is taken by something that is
                not a regular file.
            StorageIOError: If the move fails.
        """

        replace_path = Path(replace).resolve() if replace else None
        suffixed = disambiguate(file_name, cache_key)
        candidates = [] if force_suffix else [file_name]
        candidates.append(suffixed)

        with self._names_guard:
            try:
                with cache_lock(self.root, "names", "files", timeout=self.lock_timeout_s):
                    for candidate in candidates:
                        target = self.files_dir / candidate
                        if candidate == suffixed:
                            if target.exists() and not target.is_file():
                                break
                        elif target.exists() and target.resolve() != replace_path:
                            continue
                        return promote_file(tmp_path, target)
            except OSError as exc:
                discard_part_file(tmp_path)
                raise StorageIOError(
                    f"Cannot move download into cache: {exc}",
                    url=url,
                    details={"cache_key": cache_key},
                ) from exc

        discard_part_file(tmp_path)
        raise NamingConflict(
            f"No usable file name for {file_name!r}; tried {', '.join(candidates)}",
            url=url,
            details={"cache_key": cache_key, "candidates": candidates},
        )

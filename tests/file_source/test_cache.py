"""
Content Cache Tests

Key Scenarios:
- Reservations: miss grants ownership, later lookups wait, abort reopens
- Commit publishes one entry to every waiter and persists it durably
- Hits are validated against the filesystem (and fingerprints when asked)
- Promotion into ``files/`` claims free names and disambiguates collisions

Usage:
    pytest tests/file_source/test_cache.py
"""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from SiteGraph.FileSource.cache import (
    CacheEntry,
    CacheHit,
    CacheMiss,
    CachePending,
    ContentCache,
    InMemoryCacheStore,
    SQLiteCacheStore,
    derive_cache_key,
    open_cache_store,
)
from SiteGraph.FileSource.errors import NamingConflict, NetworkError
from SiteGraph.FileSource.fingerprint import FingerprintMode, compute_fingerprint
from SiteGraph.FileSource.io_utils import open_part_file
from SiteGraph.FileSource.locks import lock_metrics_snapshot


def _write_tmp(cache: ContentCache, payload: bytes) -> Path:
    handle, tmp_path = open_part_file(cache.tmp_dir)
    with handle:
        handle.write(payload)
    return tmp_path


def _commit(cache: ContentCache, key: str, name: str, payload: bytes) -> CacheEntry:
    outcome = cache.lookup_or_reserve(key)
    assert isinstance(outcome, CacheMiss)
    path = cache.promote(_write_tmp(cache, payload), name, key)
    return cache.commit(outcome.reservation, path, compute_fingerprint(path))


@pytest.fixture
def cache(tmp_path: Path) -> ContentCache:
    return ContentCache(InMemoryCacheStore(), tmp_path / "cache")


def test_cache_key_is_deterministic() -> None:
    url = "https://example.com/a.jpg"
    assert derive_cache_key(url) == derive_cache_key(url)
    assert derive_cache_key(url) != derive_cache_key(url, name="a")
    assert derive_cache_key(url) != derive_cache_key(url, ext=".png")
    assert derive_cache_key(url, ext="png") == derive_cache_key(url, ext=".png")
    assert len(derive_cache_key(url)) == 64


def test_layout_created(cache: ContentCache) -> None:
    for directory in (cache.files_dir, cache.tmp_dir, cache.buffers_dir):
        assert directory.is_dir()


def test_miss_commit_then_hit(cache: ContentCache) -> None:
    entry = _commit(cache, "k1", "a.txt", b"hello")

    assert Path(entry.local_path) == (cache.files_dir / "a.txt").resolve()
    assert entry.created_at.tzinfo is not None
    outcome = cache.lookup_or_reserve("k1")
    assert isinstance(outcome, CacheHit)
    assert outcome.entry == entry
    assert cache.registry.pending_keys() == []


def test_second_lookup_waits_on_outstanding_reservation(cache: ContentCache) -> None:
    first = cache.lookup_or_reserve("k1")
    second = cache.lookup_or_reserve("k1")

    assert isinstance(first, CacheMiss)
    assert isinstance(second, CachePending)
    assert second.reservation is first.reservation
    assert cache.registry.waiters("k1") == 1

    results = []
    waiter = threading.Thread(target=lambda: results.append(cache.wait(second.reservation)))
    waiter.start()
    path = cache.promote(_write_tmp(cache, b"data"), "k1.bin", "k1")
    entry = cache.commit(first.reservation, path, compute_fingerprint(path))
    waiter.join(timeout=5)

    assert results == [entry]


def test_abort_releases_key_and_fails_waiters(cache: ContentCache) -> None:
    owner = cache.lookup_or_reserve("k1")
    pending = cache.lookup_or_reserve("k1")
    error = NetworkError("boom", url="https://example.com/x")

    cache.abort(owner.reservation, error)

    with pytest.raises(NetworkError):
        cache.wait(pending.reservation)
    assert cache.get("k1") is None
    assert "k1" not in cache.registry
    assert isinstance(cache.lookup_or_reserve("k1"), CacheMiss)


def test_commit_on_settled_reservation_is_rejected(cache: ContentCache) -> None:
    outcome = cache.lookup_or_reserve("k1")
    cache.abort(outcome.reservation)
    path = cache.promote(_write_tmp(cache, b"late"), "late.bin", "k1")

    with pytest.raises(RuntimeError):
        cache.commit(outcome.reservation, path, compute_fingerprint(path))
    assert cache.get("k1") is None


def test_wait_times_out(cache: ContentCache) -> None:
    outcome = cache.lookup_or_reserve("k1")
    with pytest.raises(TimeoutError):
        cache.wait(outcome.reservation, timeout=0.05)
    cache.abort(outcome.reservation)


def test_missing_file_is_a_miss(cache: ContentCache) -> None:
    entry = _commit(cache, "k1", "a.txt", b"hello")
    Path(entry.local_path).unlink()

    outcome = cache.lookup_or_reserve("k1")
    assert isinstance(outcome, CacheMiss)
    assert outcome.reservation.previous == entry
    cache.abort(outcome.reservation)


def test_verify_hits_detects_modified_content(tmp_path: Path) -> None:
    cache = ContentCache(InMemoryCacheStore(), tmp_path / "cache", verify_hits=True)
    entry = _commit(cache, "k1", "a.txt", b"hello")
    assert isinstance(cache.lookup_or_reserve("k1"), CacheHit)

    Path(entry.local_path).write_bytes(b"HELLO")
    outcome = cache.lookup_or_reserve("k1")
    assert isinstance(outcome, CacheMiss)

    # Refetching the same key may overwrite its own stale file.
    path = cache.promote(
        _write_tmp(cache, b"hello"), "a.txt", "k1", replace=outcome.reservation.previous.local_path
    )
    assert path.name == "a.txt"
    cache.commit(outcome.reservation, path, compute_fingerprint(path))
    assert isinstance(cache.lookup_or_reserve("k1"), CacheHit)


def test_verify_hits_with_proxy_mode(tmp_path: Path) -> None:
    cache = ContentCache(
        InMemoryCacheStore(),
        tmp_path / "cache",
        fingerprint_mode=FingerprintMode.PROXY,
        verify_hits=True,
    )
    outcome = cache.lookup_or_reserve("k1")
    path = cache.promote(_write_tmp(cache, b"hello"), "a.txt", "k1")
    cache.commit(outcome.reservation, path, compute_fingerprint(path, FingerprintMode.PROXY))

    assert isinstance(cache.lookup_or_reserve("k1"), CacheHit)


def test_sqlite_store_survives_restart(tmp_path: Path) -> None:
    root = tmp_path / "cache"
    store = open_cache_store(root)
    cache = ContentCache(store, root)
    entry = _commit(cache, "k1", "a.txt", b"hello")
    store.close()

    with open_cache_store(root) as reopened:
        assert isinstance(reopened, SQLiteCacheStore)
        restarted = ContentCache(reopened, root)
        outcome = restarted.lookup_or_reserve("k1")
        assert isinstance(outcome, CacheHit)
        assert outcome.entry == entry
        assert reopened.keys() == ["k1"]
        assert reopened.stats()["entries"] == 1


def test_sqlite_store_overwrites_entry(tmp_path: Path) -> None:
    with SQLiteCacheStore(tmp_path / "index.sqlite") as store:
        store.set("k", {"v": 1})
        store.set("k", {"v": 2})
        assert store.get("k") == {"v": 2}
        assert store.get("missing") is None


def test_malformed_entry_is_ignored(cache: ContentCache) -> None:
    cache.store.set("k1", {"cache_key": "k1"})
    assert cache.get("k1") is None
    assert isinstance(cache.lookup_or_reserve("k1"), CacheMiss)


def test_promote_disambiguates_taken_names(cache: ContentCache) -> None:
    first = cache.promote(_write_tmp(cache, b"one"), "a-file.jpg", "aaaaaaaa1111")
    second = cache.promote(_write_tmp(cache, b"two"), "a-file.jpg", "bbbbbbbb2222")

    assert first.name == "a-file.jpg"
    assert second.name == "a-file-bbbbbbbb.jpg"
    assert first.read_bytes() == b"one"
    assert second.read_bytes() == b"two"


def test_promote_force_suffix(cache: ContentCache) -> None:
    path = cache.promote(_write_tmp(cache, b"one"), "a-file.jpg", "cccccccc3333", force_suffix=True)
    assert path.name == "a-file-cccccccc.jpg"


def test_promote_overwrites_orphaned_suffixed_file(cache: ContentCache) -> None:
    (cache.files_dir / "a-file.jpg").write_bytes(b"x")
    (cache.files_dir / "a-file-dddddddd.jpg").write_bytes(b"stale")

    path = cache.promote(_write_tmp(cache, b"fresh"), "a-file.jpg", "dddddddd4444")

    assert path.name == "a-file-dddddddd.jpg"
    assert path.read_bytes() == b"fresh"
    assert (cache.files_dir / "a-file.jpg").read_bytes() == b"x"


def test_promote_raises_naming_conflict_when_suffix_unusable(cache: ContentCache) -> None:
    (cache.files_dir / "a-file.jpg").write_bytes(b"x")
    (cache.files_dir / "a-file-dddddddd.jpg").mkdir()
    tmp = _write_tmp(cache, b"z")

    with pytest.raises(NamingConflict) as excinfo:
        cache.promote(tmp, "a-file.jpg", "dddddddd4444", url="https://example.com/a-file.jpg")

    assert excinfo.value.to_dict()["url"] == "https://example.com/a-file.jpg"
    assert excinfo.value.details["cache_key"] == "dddddddd4444"
    assert not tmp.exists()


def test_commits_and_name_claims_take_cross_process_locks(cache: ContentCache) -> None:
    lock_metrics_snapshot(reset=True)

    _commit(cache, "k1", "a.txt", b"hello")

    snapshot = lock_metrics_snapshot()
    assert snapshot["commit"]["acquire_total"] == 1
    assert snapshot["names"]["acquire_total"] == 1
    assert snapshot["commit"]["timeout_total"] == 0
    assert (cache.root / "locks").is_dir()

# === NAVMAP v1 ===
# {
#   "module": "SiteGraph.FileSource.locks",
#   "purpose": "Cross-process file locks guarding cache index commits and name claims",
#   "sections": [
#     {"id": "cache-lock", "name": "cache_lock", "anchor": "function-cache-lock", "kind": "function"},
#     {"id": "lock-metrics-snapshot", "name": "lock_metrics_snapshot", "anchor": "function-lock-metrics-snapshot", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""File-based locking for the FileSource content cache.

Responsibilities
----------------
- Map a (category, target) pair to a well-known lock file under
  ``<cache_root>/locks`` so two build processes sharing a cache root never
  commit the same key or claim the same file name concurrently.
- Record acquisition/hold timings via :func:`lock_metrics_snapshot` to help
  troubleshoot contention.

Design Notes
------------
- Locks are implemented with :mod:`filelock`. In-process serialisation is
  handled by the in-flight registry; these locks only add the cross-process
  guarantee, so they are held for the commit critical section only.
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Union

from filelock import FileLock, Timeout

__all__ = ["Timeout", "cache_lock", "lock_metrics_snapshot"]

LOGGER = logging.getLogger(__name__)
logging.getLogger("filelock").setLevel(logging.INFO)

_LOCK_DIR_NAME = "locks"
_DEFAULT_TIMEOUT = 30.0
_DEFAULT_POLL_INTERVAL = 0.05  # seconds


@dataclass
class _LockMetrics:
    acquire_total: int = 0
    timeout_total: int = 0
    wait_ms_sum: float = 0.0
    hold_ms_sum: float = 0.0


_metrics_guard = threading.Lock()
_metrics: Dict[str, _LockMetrics] = {}


def _lock_file_for(root: Path, category: str, target: str) -> Path:
    digest = hashlib.sha256(target.encode("utf-8")).hexdigest()[:24]
    lock_dir = root / _LOCK_DIR_NAME
    lock_dir.mkdir(parents=True, exist_ok=True)
    return lock_dir / f"{category}.{digest}.lock"


def _record(category: str, *, wait_ms: float, hold_ms: float = 0.0, timed_out: bool = False) -> None:
    with _metrics_guard:
        metrics = _metrics.setdefault(category, _LockMetrics())
        metrics.wait_ms_sum += wait_ms
        metrics.hold_ms_sum += hold_ms
        if timed_out:
            metrics.timeout_total += 1
        else:
            metrics.acquire_total += 1


@contextlib.contextmanager
def cache_lock(
    root: Union[str, Path],
    category: str,
    target: str,
    *,
    timeout: float = _DEFAULT_TIMEOUT,
) -> Iterator[None]:
    """Hold an exclusive cross-process lock for ``target`` within ``category``.

    Raises:
        filelock.Timeout: If the lock is not acquired within ``timeout`` seconds.
    """

    lock_file = _lock_file_for(Path(root), category, target)
    lock = FileLock(str(lock_file), timeout=timeout, thread_local=False)
    start = time.monotonic()
    try:
        lock.acquire(timeout=timeout, poll_interval=_DEFAULT_POLL_INTERVAL)
    except Timeout:
        wait_ms = (time.monotonic() - start) * 1000.0
        LOGGER.info(
            "lock-timeout category=%s wait_ms=%.3f lock_file=%s", category, wait_ms, lock_file
        )
        _record(category, wait_ms=wait_ms, timed_out=True)
        raise

    acquired_at = time.monotonic()
    wait_ms = (acquired_at - start) * 1000.0
    try:
        yield None
    finally:
        lock.release()
        hold_ms = (time.monotonic() - acquired_at) * 1000.0
        _record(category, wait_ms=wait_ms, hold_ms=hold_ms)
        LOGGER.debug(
            "lock-release category=%s hold_ms=%.3f wait_ms=%.3f", category, hold_ms, wait_ms
        )


def lock_metrics_snapshot(*, reset: bool = False) -> Dict[str, Dict[str, float]]:
    """Return collected lock metrics, optionally clearing them."""

    with _metrics_guard:
        snapshot = {
            category: {
                "acquire_total": metrics.acquire_total,
                "timeout_total": metrics.timeout_total,
                "wait_ms_sum": metrics.wait_ms_sum,
                "hold_ms_sum": metrics.hold_ms_sum,
            }
            for category, metrics in _metrics.items()
        }
        if reset:
            _metrics.clear()
        return snapshot

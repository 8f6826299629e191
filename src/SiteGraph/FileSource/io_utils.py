# === NAVMAP v1 ===
# {
#   "module": "SiteGraph.FileSource.io_utils",
#   "purpose": "Atomic cache file writes and Content-Length verification",
#   "sections": [
#     {
#       "id": "sizemismatcherror",
#       "name": "SizeMismatchError",
#       "anchor": "class-sizemismatcherror",
#       "kind": "class"
#     },
#     {
#       "id": "atomic-write-stream",
#       "name": "atomic_write_stream",
#       "anchor": "function-atomic-write-stream",
#       "kind": "function"
#     },
#     {
#       "id": "atomic-write-bytes",
#       "name": "atomic_write_bytes",
#       "anchor": "function-atomic-write-bytes",
#       "kind": "function"
#     },
#     {
#       "id": "promote-file",
#       "name": "promote_file",
#       "anchor": "function-promote-file",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Atomic file write utilities for the FileSource content cache.

**Responsibilities**
--------------------
- Write payload streams to a temporary ``.part-*.tmp`` file, fsync it, and only
  then rename it into place, so a cache path never holds a partial file.
- Verify the byte count against ``Content-Length`` when the server sent one.
- Remove temporary files on every failure path.

**Integration Points**
----------------------
- :mod:`SiteGraph.FileSource.download` streams HTTP bodies into the cache's
  ``tmp/`` directory with :func:`open_part_file` and promotes them with
  :func:`promote_file` once the name is final.
- :mod:`SiteGraph.FileSource.materialize` persists in-memory buffers with
  :func:`atomic_write_bytes`.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import BinaryIO, Iterable, Optional, Tuple, Union

__all__ = [
    "SizeMismatchError",
    "atomic_write_stream",
    "atomic_write_bytes",
    "open_part_file",
    "promote_file",
    "discard_part_file",
    "fsync_directory",
]

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


class SizeMismatchError(Exception):
    """Raised when written bytes don't match the ``Content-Length`` header.

    Attributes:
        expected: Expected bytes (from Content-Length header).
        actual: Actual bytes successfully written to disk.
    """

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Size mismatch: expected {expected} bytes, got {actual} bytes")


def fsync_directory(directory: PathLike) -> None:
    """Flush directory metadata so a preceding rename survives a crash."""

    try:
        dir_fd = os.open(str(directory), os.O_DIRECTORY)
    except (AttributeError, OSError):
        # O_DIRECTORY is unavailable on Windows; rename durability is best effort there.
        return
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)


def open_part_file(directory: PathLike) -> Tuple[BinaryIO, Path]:
    """Create a fresh temporary file inside ``directory`` and open it for writing."""

    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(directory), prefix=".part-", suffix=".tmp")
    return os.fdopen(fd, "wb"), Path(tmp_path)


def discard_part_file(path: Optional[PathLike]) -> None:
    if path is None:
        return
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def promote_file(tmp_path: PathLike, dest_path: PathLike) -> Path:
    """Atomically move a completed temporary file to ``dest_path``.

    ``tmp_path`` and ``dest_path`` must live on the same filesystem; the cache
    keeps its ``tmp/`` directory under the same root for that reason.
    """

    dest = Path(dest_path)
    dest.parent.mkdir(parents=True, exist_ok=True)
    os.replace(tmp_path, dest)
    fsync_directory(dest.parent)
    return dest


def atomic_write_stream(
    dest_path: PathLike,
    byte_iter: Iterable[bytes],
    *,
    expected_len: Optional[int] = None,
) -> int:
    """Write ``byte_iter`` to ``dest_path`` atomically.

    Args:
        dest_path: Final file location. Parent directories are created.
        byte_iter: Iterable yielding chunks of bytes; empty chunks are skipped.
        expected_len: Expected size; ``None`` skips verification.

    Returns:
        Number of bytes written.

    Raises:
        SizeMismatchError: If ``expected_len`` is given and differs from the
            number of bytes written. The temporary file is removed first.
        OSError: If file I/O fails (permission denied, disk full, etc.).
    """

    dest = Path(dest_path)
    handle, tmp_path = open_part_file(dest.parent)
    bytes_written = 0

    try:
        with handle:
            for chunk in byte_iter:
                if chunk:
                    handle.write(chunk)
                    bytes_written += len(chunk)
            handle.flush()
            os.fsync(handle.fileno())

        if expected_len is not None and bytes_written != expected_len:
            raise SizeMismatchError(expected_len, bytes_written)

        promote_file(tmp_path, dest)
        return bytes_written
    except BaseException:
        discard_part_file(tmp_path)
        raise


def atomic_write_bytes(dest_path: PathLike, data: bytes) -> int:
    """Write ``data`` to ``dest_path`` atomically and return its length."""

    return atomic_write_stream(dest_path, (data,), expected_len=len(data))

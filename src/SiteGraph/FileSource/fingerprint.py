# === NAVMAP v1 ===
# {
#   "module": "SiteGraph.FileSource.fingerprint",
#   "purpose": "Exact (streaming digest) and proxy (size + mtime) content fingerprints",
#   "sections": [
#     {"id": "fingerprintmode", "name": "FingerprintMode", "anchor": "class-fingerprintmode", "kind": "class"},
#     {"id": "exactdigest", "name": "ExactDigest", "anchor": "class-exactdigest", "kind": "class"},
#     {"id": "proxytuple", "name": "ProxyTuple", "anchor": "class-proxytuple", "kind": "class"},
#     {"id": "hashaccumulator", "name": "HashAccumulator", "anchor": "class-hashaccumulator", "kind": "class"},
#     {"id": "compute-fingerprint", "name": "compute_fingerprint", "anchor": "function-compute-fingerprint", "kind": "function"},
#     {"id": "persistence", "name": "fingerprint_to_dict", "anchor": "function-fingerprint-to-dict", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Content fingerprints used to decide whether a file changed between builds.

**Strategies**
--------------
``EXACT``
  Streams the file through a cryptographic digest (MD5 by default, any
  :mod:`hashlib` algorithm with at least a 128-bit digest is accepted). Memory
  use is bounded by the chunk size, so arbitrarily large files are fine.

``PROXY``
  Reads only ``st_size`` and ``st_mtime_ns``. Two files with identical size and
  modification time are reported as identical even if a byte changed; callers
  choose this mode knowingly in exchange for skipping content I/O.

Fingerprints of different strategies never compare equal, because they are
distinct frozen dataclasses.
"""

from __future__ import annotations

import enum
import hashlib
import io
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Dict, Optional, Union

from SiteGraph.FileSource.errors import HashError

__all__ = [
    "DEFAULT_ALGORITHM",
    "FingerprintMode",
    "ExactDigest",
    "ProxyTuple",
    "Fingerprint",
    "HashAccumulator",
    "compute_fingerprint",
    "hash_stream",
    "hash_file",
    "hash_bytes",
    "proxy_fingerprint",
    "fingerprint_to_dict",
    "fingerprint_from_dict",
    "fingerprint_token",
    "fingerprint_path",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_ALGORITHM = "md5"
DEFAULT_CHUNK_SIZE = 1 << 20
_MIN_DIGEST_BITS = 128

PathLike = Union[str, os.PathLike]


class FingerprintMode(str, enum.Enum):
    """Fingerprint strategy applied uniformly by a source instance."""

    EXACT = "exact"
    PROXY = "proxy"


@dataclass(frozen=True)
class ExactDigest:
    """Hex digest of the complete file content."""

    hex: str
    algorithm: str = DEFAULT_ALGORITHM


@dataclass(frozen=True)
class ProxyTuple:
    """File size and modification time, as reported by the filesystem."""

    size_bytes: int
    mtime_ns: int


Fingerprint = Union[ExactDigest, ProxyTuple]


class HashAccumulator:
    """Incremental digest with explicit ``init`` / ``update`` / ``finalize`` steps.

    The accumulator is reusable: calling :meth:`init` again discards any state.
    Feeding data after :meth:`finalize` raises :class:`HashError` rather than
    silently producing a digest of a different byte sequence.

    Examples:
        >>> acc = HashAccumulator()
        >>> acc.init()
        >>> acc.update(b"hello ")
        >>> acc.update(b"world")
        >>> acc.finalize().hex
        '5eb63bbbe01eeed093cb22bb8f5acdc3'
    """

    __slots__ = ("algorithm", "_hasher", "_finalized", "bytes_seen")

    def __init__(self, algorithm: str = DEFAULT_ALGORITHM) -> None:
        normalized = (algorithm or DEFAULT_ALGORITHM).lower()
        try:
            probe = hashlib.new(normalized)
        except ValueError as exc:
            raise ValueError(f"Unsupported digest algorithm '{algorithm}'") from exc
        if probe.digest_size * 8 < _MIN_DIGEST_BITS:
            raise ValueError(
                f"Digest algorithm '{algorithm}' is too weak "
                f"({probe.digest_size * 8} bits < {_MIN_DIGEST_BITS})"
            )
        self.algorithm = normalized
        self._hasher: Optional[Any] = None
        self._finalized = False
        self.bytes_seen = 0

    def init(self) -> None:
        self._hasher = hashlib.new(self.algorithm)
        self._finalized = False
        self.bytes_seen = 0

    def update(self, chunk: bytes) -> None:
        if self._finalized:
            raise HashError("Hash accumulator already finalized")
        if self._hasher is None:
            self.init()
        if chunk:
            self._hasher.update(chunk)
            self.bytes_seen += len(chunk)

    def finalize(self) -> ExactDigest:
        if self._finalized:
            raise HashError("Hash accumulator already finalized")
        if self._hasher is None:
            self.init()
        self._finalized = True
        return ExactDigest(hex=self._hasher.hexdigest(), algorithm=self.algorithm)


def hash_stream(
    stream: BinaryIO,
    *,
    algorithm: str = DEFAULT_ALGORITHM,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> ExactDigest:
    """Digest ``stream`` incrementally until EOF."""

    accumulator = HashAccumulator(algorithm)
    accumulator.init()
    try:
        for chunk in iter(lambda: stream.read(chunk_size), b""):
            accumulator.update(chunk)
    except OSError as exc:
        raise HashError(
            f"Stream failed after {accumulator.bytes_seen} bytes: {exc}",
            details={"bytes_hashed": accumulator.bytes_seen},
        ) from exc
    return accumulator.finalize()


def hash_file(
    path: PathLike,
    *,
    algorithm: str = DEFAULT_ALGORITHM,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> ExactDigest:
    """Digest the file at ``path`` without loading it into memory."""

    try:
        with open(path, "rb") as stream:
            return hash_stream(stream, algorithm=algorithm, chunk_size=chunk_size)
    except HashError:
        raise
    except OSError as exc:
        raise HashError(f"Cannot hash {path}: {exc}", details={"path": str(path)}) from exc


def hash_bytes(data: bytes, *, algorithm: str = DEFAULT_ALGORITHM) -> ExactDigest:
    accumulator = HashAccumulator(algorithm)
    accumulator.init()
    accumulator.update(data)
    return accumulator.finalize()


def proxy_fingerprint(path: PathLike) -> ProxyTuple:
    """Return the size/mtime proxy for ``path`` from filesystem metadata only."""

    try:
        stat = os.stat(path)
    except OSError as exc:
        raise HashError(f"Cannot stat {path}: {exc}", details={"path": str(path)}) from exc
    return ProxyTuple(size_bytes=stat.st_size, mtime_ns=stat.st_mtime_ns)


def compute_fingerprint(
    source: Union[PathLike, BinaryIO, bytes],
    mode: Union[FingerprintMode, str] = FingerprintMode.EXACT,
    *,
    algorithm: str = DEFAULT_ALGORITHM,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Fingerprint:
    """Compute the fingerprint of ``source`` using ``mode``.

    Args:
        source: A filesystem path, an open binary stream, or raw bytes.
        mode: :class:`FingerprintMode` or its string value.
        algorithm: Digest algorithm for ``EXACT`` mode.
        chunk_size: Read size used while streaming.

    Returns:
        :class:`ExactDigest` or :class:`ProxyTuple`.

    Raises:
        HashError: If the source cannot be read to completion.
        ValueError: If ``PROXY`` mode is requested for a source without
            filesystem metadata (bytes or an anonymous stream).
    """

    resolved = FingerprintMode(mode)
    if resolved is FingerprintMode.PROXY:
        if isinstance(source, (bytes, bytearray, memoryview)) or isinstance(source, io.IOBase):
            raise ValueError("Proxy fingerprints require a filesystem path")
        return proxy_fingerprint(source)

    if isinstance(source, (bytes, bytearray, memoryview)):
        return hash_bytes(bytes(source), algorithm=algorithm)
    if hasattr(source, "read"):
        return hash_stream(source, algorithm=algorithm, chunk_size=chunk_size)  # type: ignore[arg-type]
    return hash_file(source, algorithm=algorithm, chunk_size=chunk_size)  # type: ignore[arg-type]


def fingerprint_to_dict(fingerprint: Fingerprint) -> Dict[str, Any]:
    """Serialise ``fingerprint`` for the durable cache index."""

    if isinstance(fingerprint, ExactDigest):
        return {"kind": "exact", "algorithm": fingerprint.algorithm, "hex": fingerprint.hex}
    if isinstance(fingerprint, ProxyTuple):
        return {"kind": "proxy", "size": fingerprint.size_bytes, "mtime_ns": fingerprint.mtime_ns}
    raise TypeError(f"Not a fingerprint: {fingerprint!r}")


def fingerprint_from_dict(payload: Dict[str, Any]) -> Fingerprint:
    kind = payload.get("kind")
    if kind == "exact":
        return ExactDigest(hex=str(payload["hex"]), algorithm=str(payload.get("algorithm", DEFAULT_ALGORITHM)))
    if kind == "proxy":
        return ProxyTuple(size_bytes=int(payload["size"]), mtime_ns=int(payload["mtime_ns"]))
    raise ValueError(f"Unknown fingerprint kind: {kind!r}")


def fingerprint_token(fingerprint: Fingerprint) -> str:
    """Compact string form, e.g. ``md5:5eb6...`` or ``proxy:11:1700000000000000000``."""

    if isinstance(fingerprint, ExactDigest):
        return f"{fingerprint.algorithm}:{fingerprint.hex}"
    return f"proxy:{fingerprint.size_bytes}:{fingerprint.mtime_ns}"


def fingerprint_path(
    path: Path,
    mode: Union[FingerprintMode, str],
    *,
    algorithm: str = DEFAULT_ALGORITHM,
) -> Fingerprint:
    """Fingerprint a committed cache file, logging the strategy used."""

    fingerprint = compute_fingerprint(path, mode, algorithm=algorithm)
    LOGGER.debug(
        "fingerprint computed",
        extra={"stage": "fingerprint", "path": str(path), "token": fingerprint_token(fingerprint)},
    )
    return fingerprint

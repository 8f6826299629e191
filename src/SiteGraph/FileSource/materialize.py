# === NAVMAP v1 ===
# {
#   "module": "SiteGraph.FileSource.materialize",
#   "purpose": "Wrap committed local files and in-memory buffers into FileNode records",
#   "sections": [
#     {"id": "filenode", "name": "FileNode", "anchor": "class-filenode", "kind": "class"},
#     {"id": "nodesink", "name": "NodeSink", "anchor": "class-nodesink", "kind": "class"},
#     {"id": "identitysource", "name": "IdentitySource", "anchor": "class-identitysource", "kind": "class"},
#     {"id": "filenodematerializer", "name": "FileNodeMaterializer", "anchor": "class-filenodematerializer", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""File node materialisation.

Nodes are built from the final filesystem metadata of a committed file, so
they never describe a file that is still being written. The materializer
hands each node to a host-supplied :class:`NodeSink` and draws identities
from an :class:`IdentitySource`; it never talks to the node graph itself.
"""

from __future__ import annotations

import itertools
import logging
import mimetypes
import os
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Union, runtime_checkable

from SiteGraph.FileSource.cache import CacheHit, CachePending, ContentCache
from SiteGraph.FileSource.errors import FileSourceError, StorageIOError
from SiteGraph.FileSource.fingerprint import (
    DEFAULT_ALGORITHM,
    ExactDigest,
    Fingerprint,
    FingerprintMode,
    ProxyTuple,
    fingerprint_path,
    fingerprint_to_dict,
    fingerprint_token,
    hash_bytes,
)
from SiteGraph.FileSource.io_utils import atomic_write_bytes
from SiteGraph.FileSource.naming import (
    SNIFF_BYTES,
    is_recognizable_extension,
    media_type_from_content_type,
    normalize_extension,
    sanitize_file_name,
    sniff_extension,
)

__all__ = [
    "FileNode",
    "NodeSink",
    "IdentitySource",
    "RecordingNodeSink",
    "CallbackNodeSink",
    "UUIDIdentitySource",
    "SequentialIdentitySource",
    "CallableIdentitySource",
    "FileNodeMaterializer",
]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileNode:
    """Descriptive record of one ingested file.

    ``extension`` keeps its leading dot (``".jpg"``), ``name`` is the stem and
    ``base`` the full file name.
    """

    identity: str
    absolute_path: str
    extension: str
    name: str
    base: str
    size_bytes: int
    modified_time: datetime
    fingerprint: Fingerprint
    media_type: Optional[str] = None
    parent_identity: Optional[str] = None
    source_url: Optional[str] = None

    @property
    def content_digest(self) -> str:
        return fingerprint_token(self.fingerprint)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "absolute_path": self.absolute_path,
            "extension": self.extension,
            "name": self.name,
            "base": self.base,
            "size_bytes": self.size_bytes,
            "modified_time": self.modified_time.isoformat(),
            "fingerprint": fingerprint_to_dict(self.fingerprint),
            "content_digest": self.content_digest,
            "media_type": self.media_type,
            "parent_identity": self.parent_identity,
            "source_url": self.source_url,
        }


# ============================================================================
# Host capabilities
# ============================================================================


@runtime_checkable
class NodeSink(Protocol):
    """Receives every node the materializer produces."""

    def create(self, node: FileNode) -> None: ...


@runtime_checkable
class IdentitySource(Protocol):
    """Hands out unique node identities."""

    def next(self) -> str: ...


class RecordingNodeSink:
    """Sink that keeps created nodes in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.nodes: List[FileNode] = []

    def create(self, node: FileNode) -> None:
        with self._lock:
            self.nodes.append(node)


class CallbackNodeSink:
    """Adapt a plain ``callable(node)`` to :class:`NodeSink`."""

    def __init__(self, callback: Callable[[FileNode], Any]) -> None:
        self._callback = callback

    def create(self, node: FileNode) -> None:
        self._callback(node)


class UUIDIdentitySource:
    def next(self) -> str:
        return str(uuid.uuid4())


class SequentialIdentitySource:
    """Deterministic identities (``node-1``, ``node-2``, ...) for tests and dry runs."""

    def __init__(self, prefix: str = "node") -> None:
        self.prefix = prefix
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def next(self) -> str:
        with self._lock:
            return f"{self.prefix}-{next(self._counter)}"


class CallableIdentitySource:
    """Adapt a zero-argument ``callable() -> str`` to :class:`IdentitySource`."""

    def __init__(self, factory: Callable[[], Any]) -> None:
        self._factory = factory

    def next(self) -> str:
        return str(self._factory())


# ============================================================================
# Materializer
# ============================================================================


class FileNodeMaterializer:
    """Build :class:`FileNode` records for files owned by a :class:`ContentCache`."""

    def __init__(
        self,
        cache: ContentCache,
        sink: NodeSink,
        identities: IdentitySource,
        *,
        fingerprint_mode: Union[FingerprintMode, str] = FingerprintMode.EXACT,
        algorithm: str = DEFAULT_ALGORITHM,
    ) -> None:
        self.cache = cache
        self.sink = sink
        self.identities = identities
        self.fingerprint_mode = FingerprintMode(fingerprint_mode)
        self.algorithm = algorithm

    def _node_fingerprint(
        self, path: Path, stat: os.stat_result, known: Optional[Fingerprint]
    ) -> Fingerprint:
        if self.fingerprint_mode is FingerprintMode.PROXY:
            return ProxyTuple(size_bytes=stat.st_size, mtime_ns=stat.st_mtime_ns)
        if isinstance(known, ExactDigest) and known.algorithm == self.algorithm:
            return known
        return fingerprint_path(path, self.fingerprint_mode, algorithm=self.algorithm)

    def from_path(
        self,
        path: Union[str, Path],
        *,
        parent_identity: Optional[str] = None,
        source_url: Optional[str] = None,
        fingerprint: Optional[Fingerprint] = None,
        media_type: Optional[str] = None,
    ) -> FileNode:
        """Create a node for an existing, fully written local file.

        Raises:
            StorageIOError: If the file is missing or not a regular file.
            HashError: If hashing the file fails part-way.
        """

        resolved = Path(path).expanduser().resolve()
        try:
            stat = resolved.stat()
        except OSError as exc:
            raise StorageIOError(f"Cannot stat {resolved}: {exc}", url=source_url) from exc
        if not resolved.is_file():
            raise StorageIOError(f"Not a regular file: {resolved}", url=source_url)

        node = FileNode(
            identity=self.identities.next(),
            absolute_path=str(resolved),
            extension=resolved.suffix,
            name=resolved.stem,
            base=resolved.name,
            size_bytes=stat.st_size,
            modified_time=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            fingerprint=self._node_fingerprint(resolved, stat, fingerprint),
            media_type=(
                mimetypes.guess_type(resolved.name, strict=False)[0]
                or media_type_from_content_type(media_type)
            ),
            parent_identity=parent_identity,
            source_url=source_url,
        )
        self.sink.create(node)
        LOGGER.debug(
            "node created",
            extra={"stage": "materialize", "identity": node.identity, "path": node.absolute_path},
        )
        return node

    def from_buffer(
        self,
        data: bytes,
        *,
        name: Optional[str] = None,
        ext: Optional[str] = None,
        parent_identity: Optional[str] = None,
    ) -> FileNode:
        """Write ``data`` into the cache and create a node for it.

        The file lands at ``buffers/<digest>/<name or digest><ext>``; identical
        content with the same name resolves to the same file. Without an
        explicit ``ext`` the extension is sniffed from the leading bytes.

        Raises:
            ValueError: If ``data`` is empty.
        """

        if not data:
            raise ValueError("Cannot materialise an empty buffer")
        payload = bytes(data)
        if name and not ext:
            stem_part, suffix = os.path.splitext(name)
            if stem_part and is_recognizable_extension(suffix):
                name, ext = stem_part, suffix
        digest = hash_bytes(payload, algorithm=self.algorithm)
        extension = normalize_extension(ext) or sniff_extension(payload[:SNIFF_BYTES]) or ""
        stem = sanitize_file_name(name, fallback=digest.hex) if name else digest.hex
        key = f"buffer:{digest.hex}:{name or ''}:{extension}"

        outcome = self.cache.lookup_or_reserve(key)
        if isinstance(outcome, CacheHit):
            entry = outcome.entry
        elif isinstance(outcome, CachePending):
            entry = self.cache.wait(outcome.reservation)
        else:
            reservation = outcome.reservation
            target = self.cache.buffers_dir / digest.hex / f"{stem}{extension}"
            try:
                if not target.is_file():
                    atomic_write_bytes(target, payload)
                stored = (
                    digest
                    if self.fingerprint_mode is FingerprintMode.EXACT
                    else fingerprint_path(target, self.fingerprint_mode)
                )
                entry = self.cache.commit(reservation, target, stored, size_bytes=len(payload))
            except FileSourceError as exc:
                self.cache.abort(reservation, exc)
                raise
            except OSError as exc:
                error = StorageIOError(f"Cannot write buffer to {target}: {exc}")
                self.cache.abort(reservation, error)
                raise error from exc

        return self.from_path(
            entry.local_path,
            parent_identity=parent_identity,
            fingerprint=digest,
        )

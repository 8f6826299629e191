"""
File Node Materializer Tests

Key Scenarios:
- Nodes describe the final on-disk file (path, size, mtime, fingerprint)
- Buffers land under ``buffers/<digest>/`` and dedupe on identical content
- The fingerprint strategy of the instance applies to every node
- Host capabilities accept any object with ``create`` / ``next``

Usage:
    pytest tests/file_source/test_materialize.py
"""

from __future__ import annotations

import hashlib
import os
from datetime import timezone
from pathlib import Path

import pytest

from SiteGraph.FileSource.cache import ContentCache, InMemoryCacheStore
from SiteGraph.FileSource.errors import StorageIOError
from SiteGraph.FileSource.fingerprint import ExactDigest, FingerprintMode, ProxyTuple
from SiteGraph.FileSource.materialize import (
    CallableIdentitySource,
    CallbackNodeSink,
    FileNodeMaterializer,
    IdentitySource,
    NodeSink,
    RecordingNodeSink,
    SequentialIdentitySource,
    UUIDIdentitySource,
)

from tests.fixtures.payloads import PNG_BYTES


@pytest.fixture
def cache(tmp_path: Path) -> ContentCache:
    return ContentCache(InMemoryCacheStore(), tmp_path / "cache")


@pytest.fixture
def materializer(cache, sink, identities) -> FileNodeMaterializer:
    return FileNodeMaterializer(cache, sink, identities)


def test_from_path_describes_final_file(tmp_path: Path, materializer, sink) -> None:
    path = tmp_path / "report.pdf"
    path.write_bytes(b"%PDF-1.4 body")

    node = materializer.from_path(path, parent_identity="site-1", source_url="https://e.com/r.pdf")

    stat = path.stat()
    assert node.identity == "node-1"
    assert node.absolute_path == str(path.resolve())
    assert node.extension == ".pdf"
    assert node.name == "report"
    assert node.base == "report.pdf"
    assert node.size_bytes == stat.st_size
    assert node.modified_time.tzinfo is timezone.utc
    assert node.modified_time.timestamp() == pytest.approx(stat.st_mtime)
    assert node.fingerprint == ExactDigest(hashlib.md5(b"%PDF-1.4 body").hexdigest())
    assert node.media_type == "application/pdf"
    assert node.parent_identity == "site-1"
    assert node.source_url == "https://e.com/r.pdf"
    assert sink.nodes == [node]


def test_from_path_media_type_falls_back_without_parameters(tmp_path: Path, materializer) -> None:
    path = tmp_path / "feed"
    path.write_bytes(b"entries")

    node = materializer.from_path(path, media_type="application/x-sitegraph-feed; charset=utf-8")

    assert node.extension == ""
    assert node.media_type == "application/x-sitegraph-feed"


def test_from_path_reuses_known_digest(tmp_path: Path, materializer) -> None:
    path = tmp_path / "a.txt"
    path.write_bytes(b"hello")
    known = ExactDigest("0" * 32)

    assert materializer.from_path(path, fingerprint=known).fingerprint == known
    # A digest of another algorithm is not trusted.
    other = ExactDigest("0" * 64, "sha256")
    assert materializer.from_path(path, fingerprint=other).fingerprint != other


def test_proxy_mode_nodes(tmp_path: Path, cache, sink, identities) -> None:
    materializer = FileNodeMaterializer(
        cache, sink, identities, fingerprint_mode=FingerprintMode.PROXY
    )
    path = tmp_path / "a.txt"
    path.write_bytes(b"hello")

    node = materializer.from_path(path, fingerprint=ExactDigest("0" * 32))

    stat = path.stat()
    assert node.fingerprint == ProxyTuple(stat.st_size, stat.st_mtime_ns)
    assert node.content_digest == f"proxy:{stat.st_size}:{stat.st_mtime_ns}"


def test_from_path_rejects_missing_and_directories(tmp_path: Path, materializer, sink) -> None:
    with pytest.raises(StorageIOError):
        materializer.from_path(tmp_path / "absent.bin")
    with pytest.raises(StorageIOError):
        materializer.from_path(tmp_path)
    assert sink.nodes == []


def test_from_buffer_writes_under_digest_directory(materializer, cache, sink) -> None:
    node = materializer.from_buffer(PNG_BYTES, parent_identity="page-1")

    digest = hashlib.md5(PNG_BYTES).hexdigest()
    path = Path(node.absolute_path)
    assert path == (cache.buffers_dir / digest / f"{digest}.png").resolve()
    assert path.read_bytes() == PNG_BYTES
    assert node.extension == ".png"
    assert node.fingerprint == ExactDigest(digest)
    assert node.parent_identity == "page-1"
    assert node.source_url is None
    assert sink.nodes == [node]


def test_from_buffer_with_name_and_extension(materializer) -> None:
    node = materializer.from_buffer(b"col\n1\n", name="table:1", ext="csv")

    assert node.base == "table-1.csv"
    assert node.media_type == "text/csv"


def test_from_buffer_splits_extension_from_name(materializer) -> None:
    node = materializer.from_buffer(b"plain text", name="notes.txt")

    assert node.base == "notes.txt"


def test_identical_buffers_share_one_file(materializer, cache, sink) -> None:
    first = materializer.from_buffer(b"same bytes", name="x")
    second = materializer.from_buffer(b"same bytes", name="x")

    assert first.absolute_path == second.absolute_path
    assert first.identity != second.identity
    assert len(sink.nodes) == 2
    assert [path for path in cache.buffers_dir.rglob("*") if path.is_file()] == [
        Path(first.absolute_path)
    ]


def test_from_buffer_rewrites_a_deleted_file(materializer) -> None:
    first = materializer.from_buffer(b"fragile", name="f", ext=".bin")
    os.unlink(first.absolute_path)

    second = materializer.from_buffer(b"fragile", name="f", ext=".bin")

    assert second.absolute_path == first.absolute_path
    assert Path(second.absolute_path).read_bytes() == b"fragile"


def test_empty_buffer_rejected(materializer) -> None:
    with pytest.raises(ValueError):
        materializer.from_buffer(b"")


def test_node_to_dict(tmp_path: Path, materializer) -> None:
    path = tmp_path / "a.txt"
    path.write_bytes(b"hello")

    payload = materializer.from_path(path).to_dict()

    assert payload["base"] == "a.txt"
    assert payload["fingerprint"]["kind"] == "exact"
    assert payload["content_digest"].startswith("md5:")
    assert payload["modified_time"].endswith("+00:00")


def test_capability_adapters() -> None:
    created = []
    sink = CallbackNodeSink(created.append)
    counter = iter(range(100, 200))
    identities = CallableIdentitySource(lambda: next(counter))

    assert isinstance(sink, NodeSink)
    assert isinstance(RecordingNodeSink(), NodeSink)
    assert isinstance(identities, IdentitySource)
    assert identities.next() == "100"
    assert isinstance(UUIDIdentitySource().next(), str)
    sequential = SequentialIdentitySource("img")
    assert [sequential.next(), sequential.next()] == ["img-1", "img-2"]

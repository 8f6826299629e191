"""
FileSource API Tests

Key Scenarios:
- Remote acquisition produces one node per call, backed by one cached file
- Repeated and concurrent acquisitions reuse the cached file
- Module-level entry points accept plain callables as host capabilities
- Failures surface as typed errors and never create nodes

Usage:
    pytest tests/file_source/test_api.py
"""

from __future__ import annotations

import hashlib
import itertools
import threading
import time
from pathlib import Path

import httpx
import pytest

from SiteGraph.FileSource import (
    AcquisitionRequest,
    AuthError,
    FileNode,
    FileSource,
    InMemoryCacheStore,
    NetworkError,
    acquire_remote_file,
    materialize_from_buffer,
)
from SiteGraph.FileSource.http_client import build_http_client
from SiteGraph.FileSource.materialize import RecordingNodeSink, SequentialIdentitySource

from tests.fixtures.payloads import JPEG_BYTES, make_config


def test_acquire_remote_file_creates_node(tmp_path, routes, make_source, sink) -> None:
    url = "https://cdn.example.com/img/hero"
    routes.respond(url, JPEG_BYTES, headers={"Content-Type": "image/jpeg"})
    source = make_source(make_config(tmp_path))

    node = source.acquire_remote_file(url, "page-7")

    assert isinstance(node, FileNode)
    assert node.base == "hero.jpg"
    assert node.parent_identity == "page-7"
    assert node.source_url == url
    assert node.media_type == "image/jpeg"
    assert node.size_bytes == len(JPEG_BYTES)
    assert node.content_digest == "md5:" + hashlib.md5(JPEG_BYTES).hexdigest()
    assert Path(node.absolute_path).read_bytes() == JPEG_BYTES
    assert sink.nodes == [node]


def test_media_type_from_header_drops_parameters(tmp_path, routes, make_source) -> None:
    url = "https://example.com/api/feed"
    routes.respond(
        url, b"entry one", headers={"Content-Type": "application/x-sitegraph-feed; charset=utf-8"}
    )
    source = make_source(make_config(tmp_path))

    node = source.acquire_remote_file(url)

    assert node.base == "feed"
    assert node.media_type == "application/x-sitegraph-feed"


def test_repeat_acquisition_reuses_cached_file(tmp_path, routes, make_source, sink) -> None:
    url = "https://example.com/doc.pdf"
    routes.respond(url, b"%PDF-1.5")
    source = make_source(make_config(tmp_path))

    first = source.acquire_remote_file(url, "a")
    second = source.acquire_remote_file(url, "b")

    assert routes.count(url) == 1
    assert first.absolute_path == second.absolute_path
    assert first.identity != second.identity
    assert [node.parent_identity for node in sink.nodes] == ["a", "b"]


def test_cache_survives_new_instances(tmp_path, routes, make_source) -> None:
    url = "https://example.com/doc.pdf"
    routes.respond(url, b"%PDF-1.5")
    config = make_config(tmp_path)

    make_source(config).acquire_remote_file(url)
    make_source(config).acquire_remote_file(url)

    assert routes.count(url) == 1


def test_concurrent_acquisitions_share_one_download(tmp_path, routes, make_source, sink) -> None:
    url = "https://example.com/big.bin"

    def slow(request: httpx.Request) -> httpx.Response:
        time.sleep(0.2)
        return httpx.Response(200, content=b"big")

    routes.add(url, slow)
    source = make_source(make_config(tmp_path))
    barrier = threading.Barrier(4)

    def worker() -> None:
        barrier.wait()
        source.acquire_remote_file(url)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert routes.count(url) == 1
    assert len(sink.nodes) == 4
    assert len({node.absolute_path for node in sink.nodes}) == 1
    assert len({node.identity for node in sink.nodes}) == 4


def test_acquire_many_returns_errors_in_place(tmp_path, routes, make_source, sink) -> None:
    routes.respond("https://example.com/ok.txt", b"ok")
    routes.respond("https://example.com/locked.txt", b"", status_code=401)
    source = make_source(make_config(tmp_path))

    outcomes = source.acquire_many(
        [
            AcquisitionRequest("https://example.com/ok.txt", parent_identity="p"),
            AcquisitionRequest("https://example.com/locked.txt"),
            AcquisitionRequest("https://example.com/absent.txt"),
        ]
    )

    assert isinstance(outcomes[0], FileNode)
    assert outcomes[0].parent_identity == "p"
    assert isinstance(outcomes[1], AuthError)
    assert isinstance(outcomes[2], NetworkError)
    assert sink.nodes == [outcomes[0]]


def test_failed_acquisition_creates_no_node(tmp_path, routes, make_source, sink) -> None:
    source = make_source(make_config(tmp_path))

    with pytest.raises(NetworkError):
        source.acquire_remote_file("https://example.com/missing.png")
    assert sink.nodes == []


def test_local_file_and_buffer(tmp_path, make_source, sink) -> None:
    source = make_source(make_config(tmp_path))
    local = tmp_path / "notes.md"
    local.write_text("# notes", encoding="utf-8")

    from_disk = source.materialize_local_file(local, parent_identity="root")
    from_memory = source.materialize_from_buffer(JPEG_BYTES, name="thumb")

    assert from_disk.base == "notes.md"
    assert from_memory.base == "thumb.jpg"
    assert sink.nodes == [from_disk, from_memory]


def test_instrumentation_exposed(tmp_path, routes, make_source) -> None:
    routes.respond("https://example.com/a.txt", b"a")
    source = make_source(make_config(tmp_path))

    source.acquire_remote_file("https://example.com/a.txt")

    assert source.instrumentation.snapshot()["started"] == 1


def test_module_level_acquire_with_callables(tmp_path, routes) -> None:
    url = "https://example.com/report.pdf"
    routes.respond(url, b"%PDF-1.7")
    config = make_config(tmp_path)
    created = []
    counter = itertools.count(1)
    store = InMemoryCacheStore()

    with build_http_client(config, transport=routes.transport()) as client:
        node = acquire_remote_file(
            url,
            "parent-1",
            store,
            created.append,
            lambda: f"id-{next(counter)}",
            extra_headers={"Accept": "application/pdf"},
            config=config,
            client=client,
        )
        again = acquire_remote_file(
            url, None, store, created.append, lambda: f"id-{next(counter)}", config=config, client=client
        )

    assert created == [node, again]
    assert node.identity == "id-1"
    assert again.identity == "id-2"
    assert routes.count(url) == 1
    assert routes.requests[0].headers["Accept"] == "application/pdf"


def test_module_level_buffer_with_callables(tmp_path) -> None:
    created = []
    node = materialize_from_buffer(
        b"hello buffer",
        InMemoryCacheStore(),
        created.append,
        lambda: "fixed-id",
        name="greeting",
        ext="txt",
        config=make_config(tmp_path),
    )

    assert created == [node]
    assert node.identity == "fixed-id"
    assert node.base == "greeting.txt"
    assert Path(node.absolute_path).read_bytes() == b"hello buffer"


def test_context_manager_closes_owned_client(tmp_path) -> None:
    with FileSource(
        make_config(tmp_path), InMemoryCacheStore(), RecordingNodeSink(), SequentialIdentitySource()
    ) as source:
        client = source.coordinator.client
    assert client.is_closed

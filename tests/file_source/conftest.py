"""Shared fixtures for FileSource tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, List

import pytest

from SiteGraph.FileSource.api import FileSource
from SiteGraph.FileSource.cache import ContentCache, InMemoryCacheStore
from SiteGraph.FileSource.config import FileSourceConfig
from SiteGraph.FileSource.download import DownloadCoordinator, InflightGauge
from SiteGraph.FileSource.http_client import build_http_client
from SiteGraph.FileSource.materialize import RecordingNodeSink, SequentialIdentitySource

from tests.fixtures.payloads import make_config


@pytest.fixture
def config(tmp_path: Path) -> FileSourceConfig:
    return make_config(tmp_path)


@pytest.fixture
def store() -> InMemoryCacheStore:
    return InMemoryCacheStore()


@pytest.fixture
def sink() -> RecordingNodeSink:
    return RecordingNodeSink()


@pytest.fixture
def identities() -> SequentialIdentitySource:
    return SequentialIdentitySource("node")


@pytest.fixture
def sleeps() -> List[float]:
    """Backoff sleeps requested by the retry controller (never actually slept)."""

    return []


@pytest.fixture
def make_coordinator(routes, store, sleeps) -> Callable[..., DownloadCoordinator]:
    created: List[DownloadCoordinator] = []

    def _factory(config: FileSourceConfig, **kwargs: Any) -> DownloadCoordinator:
        cache = kwargs.pop("cache", None) or ContentCache(
            store,
            config.cache.root_dir,
            fingerprint_mode=config.fingerprint.mode,
            verify_hits=config.cache.verify_hits,
        )
        client = build_http_client(config, transport=routes.transport())
        coordinator = DownloadCoordinator(
            config,
            cache,
            client=client,
            instrumentation=kwargs.pop("instrumentation", None) or InflightGauge(),
            sleep=sleeps.append,
        )
        created.append(coordinator)
        return coordinator

    yield _factory
    for coordinator in created:
        coordinator.client.close()


@pytest.fixture
def make_source(routes, store, sink, identities, sleeps) -> Callable[..., FileSource]:
    created: List[FileSource] = []

    def _factory(config: FileSourceConfig) -> FileSource:
        source = FileSource(
            config,
            store,
            sink,
            identities,
            client=build_http_client(config, transport=routes.transport()),
            sleep=sleeps.append,
        )
        created.append(source)
        return source

    yield _factory
    for source in created:
        source.coordinator.client.close()

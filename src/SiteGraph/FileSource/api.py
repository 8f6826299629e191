"""Public entry points for acquiring remote files and ingesting buffers.

:class:`FileSource` wires one configuration to a content cache, a download
coordinator and a node materializer. A build keeps one instance per source
so the in-flight registry and concurrency ceiling are shared by every request
that source issues, and the fingerprint strategy applies to all its nodes.

The module-level :func:`acquire_remote_file` and :func:`materialize_from_buffer`
accept plain host callbacks and run against a short-lived instance.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Iterable, List, Mapping, Optional, Union

import httpx

from SiteGraph.FileSource.cache import CacheStore, ContentCache, open_cache_store
from SiteGraph.FileSource.cancellation import CancellationToken
from SiteGraph.FileSource.config.models import FileSourceConfig
from SiteGraph.FileSource.download import (
    AcquisitionRequest,
    AuthCredentials,
    DownloadCoordinator,
    FetchInstrumentation,
)
from SiteGraph.FileSource.errors import FileSourceError
from SiteGraph.FileSource.materialize import (
    CallableIdentitySource,
    CallbackNodeSink,
    FileNode,
    FileNodeMaterializer,
    IdentitySource,
    NodeSink,
)

__all__ = [
    "FileSource",
    "acquire_remote_file",
    "materialize_from_buffer",
    "open_cache_store",
]

LOGGER = logging.getLogger(__name__)


class FileSource:
    """Acquire remote files and local buffers as :class:`FileNode` records.

    Args:
        config: Effective configuration.
        cache_store: Durable ``cache_key -> entry`` persistence supplied by the host.
        node_sink: Receives every created node.
        identity_source: Supplies node identities.
        client: Optional pre-built HTTPX client (tests inject a mock transport).
        instrumentation: Observer of concurrency slot usage.
        sleep: Replacement for the backoff sleep between retry attempts.
    """

    def __init__(
        self,
        config: FileSourceConfig,
        cache_store: CacheStore,
        node_sink: NodeSink,
        identity_source: IdentitySource,
        *,
        client: Optional[httpx.Client] = None,
        instrumentation: Optional[FetchInstrumentation] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.config = config
        self.cache = ContentCache(
            cache_store,
            config.cache.root_dir,
            fingerprint_mode=config.fingerprint.mode,
            algorithm=config.fingerprint.algorithm,
            verify_hits=config.cache.verify_hits,
            lock_timeout_s=config.cache.lock_timeout_s,
        )
        self.coordinator = DownloadCoordinator(
            config,
            self.cache,
            client=client,
            instrumentation=instrumentation,
            sleep=sleep,
        )
        self.materializer = FileNodeMaterializer(
            self.cache,
            node_sink,
            identity_source,
            fingerprint_mode=config.fingerprint.mode,
            algorithm=config.fingerprint.algorithm,
        )

    @property
    def instrumentation(self) -> FetchInstrumentation:
        return self.coordinator.instrumentation

    def acquire_remote_file(
        self,
        url: str,
        parent_identity: Optional[str] = None,
        *,
        auth: Optional[AuthCredentials] = None,
        headers: Optional[Mapping[str, str]] = None,
        ext: Optional[str] = None,
        name: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> FileNode:
        """Download ``url`` (or reuse the cached copy) and create its node."""

        request = AcquisitionRequest(
            url=url,
            parent_identity=parent_identity,
            name=name,
            ext=ext,
            auth=auth,
            headers=headers or {},
        )
        result = self.coordinator.acquire(request, cancel_token=cancel_token)
        return self.materializer.from_path(
            result.entry.local_path,
            parent_identity=parent_identity,
            source_url=url,
            fingerprint=result.entry.fingerprint,
            media_type=result.content_type,
        )

    def acquire_many(
        self,
        requests: Iterable[AcquisitionRequest],
        *,
        max_workers: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[Union[FileNode, FileSourceError]]:
        """Acquire a batch; failures are returned in place of their nodes."""

        outcomes: List[Union[FileNode, FileSourceError]] = []
        for result in self.coordinator.acquire_many(
            requests, max_workers=max_workers, cancel_token=cancel_token
        ):
            if isinstance(result, FileSourceError):
                outcomes.append(result)
                continue
            try:
                outcomes.append(
                    self.materializer.from_path(
                        result.entry.local_path,
                        parent_identity=result.request.parent_identity,
                        source_url=result.request.url,
                        fingerprint=result.entry.fingerprint,
                        media_type=result.content_type,
                    )
                )
            except FileSourceError as exc:
                outcomes.append(exc)
        return outcomes

    def materialize_from_buffer(
        self,
        data: bytes,
        *,
        name: Optional[str] = None,
        ext: Optional[str] = None,
        parent_identity: Optional[str] = None,
    ) -> FileNode:
        return self.materializer.from_buffer(
            data, name=name, ext=ext, parent_identity=parent_identity
        )

    def materialize_local_file(
        self, path: Union[str, Path], parent_identity: Optional[str] = None
    ) -> FileNode:
        return self.materializer.from_path(path, parent_identity=parent_identity)

    def close(self) -> None:
        self.coordinator.close()

    def __enter__(self) -> "FileSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _as_sink(node_creator: Union[NodeSink, Callable[[FileNode], Any]]) -> NodeSink:
    if isinstance(node_creator, NodeSink):
        return node_creator
    return CallbackNodeSink(node_creator)


def _as_identity_source(
    identity_generator: Union[IdentitySource, Callable[[], Any]],
) -> IdentitySource:
    if isinstance(identity_generator, IdentitySource):
        return identity_generator
    return CallableIdentitySource(identity_generator)


def acquire_remote_file(
    url: str,
    parent_identity: Optional[str],
    cache_handle: CacheStore,
    node_creator: Union[NodeSink, Callable[[FileNode], Any]],
    identity_generator: Union[IdentitySource, Callable[[], Any]],
    *,
    auth: Optional[AuthCredentials] = None,
    extra_headers: Optional[Mapping[str, str]] = None,
    ext: Optional[str] = None,
    name: Optional[str] = None,
    config: Optional[FileSourceConfig] = None,
    client: Optional[httpx.Client] = None,
) -> FileNode:
    """Acquire one remote file with host-supplied cache and node callbacks.

    Repeated calls share nothing in memory; concurrent duplicates should go
    through one :class:`FileSource` instead.
    """

    with FileSource(
        config or FileSourceConfig(),
        cache_handle,
        _as_sink(node_creator),
        _as_identity_source(identity_generator),
        client=client,
    ) as source:
        return source.acquire_remote_file(
            url,
            parent_identity,
            auth=auth,
            headers=extra_headers,
            ext=ext,
            name=name,
        )


def materialize_from_buffer(
    data: bytes,
    cache_handle: CacheStore,
    node_creator: Union[NodeSink, Callable[[FileNode], Any]],
    identity_generator: Union[IdentitySource, Callable[[], Any]],
    *,
    name: Optional[str] = None,
    ext: Optional[str] = None,
    parent_identity: Optional[str] = None,
    config: Optional[FileSourceConfig] = None,
) -> FileNode:
    """Write ``data`` into the cache and create its node."""

    with FileSource(
        config or FileSourceConfig(),
        cache_handle,
        _as_sink(node_creator),
        _as_identity_source(identity_generator),
    ) as source:
        return source.materialize_from_buffer(
            data, name=name, ext=ext, parent_identity=parent_identity
        )

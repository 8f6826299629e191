# === NAVMAP v1 ===
# {
#   "module": "SiteGraph.FileSource.__init__",
#   "purpose": "Public API for remote file acquisition and content fingerprinting.",
#   "sections": []
# }
# === /NAVMAP ===

"""Remote file acquisition and content fingerprinting for SiteGraph builds.

Typical use::

    from SiteGraph.FileSource import FileSource, RecordingNodeSink, UUIDIdentitySource
    from SiteGraph.FileSource import load_config, open_cache_store

    config = load_config("filesource.yaml")
    store = open_cache_store(config.cache.root_dir)
    with FileSource(config, store, RecordingNodeSink(), UUIDIdentitySource()) as source:
        node = source.acquire_remote_file("https://example.com/logo.png", "page-1")
"""

from .api import FileSource, acquire_remote_file, materialize_from_buffer
from .cache import (
    CacheEntry,
    CacheStore,
    ContentCache,
    InMemoryCacheStore,
    SQLiteCacheStore,
    derive_cache_key,
    open_cache_store,
)
from .cancellation import CancellationToken
from .config import FileSourceConfig, load_config
from .download import AcquisitionRequest, DownloadCoordinator, FetchResult, InflightGauge
from .errors import (
    AuthError,
    DownloadCancelled,
    FileSourceError,
    HashError,
    NamingConflict,
    NetworkError,
    StorageIOError,
)
from .fingerprint import ExactDigest, FingerprintMode, ProxyTuple, compute_fingerprint
from .materialize import (
    FileNode,
    FileNodeMaterializer,
    IdentitySource,
    NodeSink,
    RecordingNodeSink,
    SequentialIdentitySource,
    UUIDIdentitySource,
)

__all__ = [
    "FileSource",
    "acquire_remote_file",
    "materialize_from_buffer",
    "open_cache_store",
    "CacheEntry",
    "CacheStore",
    "ContentCache",
    "InMemoryCacheStore",
    "SQLiteCacheStore",
    "derive_cache_key",
    "CancellationToken",
    "FileSourceConfig",
    "load_config",
    "AcquisitionRequest",
    "DownloadCoordinator",
    "FetchResult",
    "InflightGauge",
    "FileSourceError",
    "NetworkError",
    "AuthError",
    "NamingConflict",
    "StorageIOError",
    "HashError",
    "DownloadCancelled",
    "FingerprintMode",
    "ExactDigest",
    "ProxyTuple",
    "compute_fingerprint",
    "FileNode",
    "FileNodeMaterializer",
    "NodeSink",
    "IdentitySource",
    "RecordingNodeSink",
    "SequentialIdentitySource",
    "UUIDIdentitySource",
]

"""
FileSource Configuration Package

Example:
    from SiteGraph.FileSource.config import load_config

    config = load_config(
        path="filesource.yaml",
        cli_overrides={"download": {"max_concurrent_downloads": 32}},
    )
    config_id = config.config_hash()
"""

from .loader import export_config_schema, load_config
from .models import (
    CacheConfig,
    DownloadPolicy,
    FileSourceConfig,
    FingerprintConfig,
    HttpClientConfig,
)

__all__ = [
    "FileSourceConfig",
    "DownloadPolicy",
    "HttpClientConfig",
    "CacheConfig",
    "FingerprintConfig",
    "load_config",
    "export_config_schema",
]

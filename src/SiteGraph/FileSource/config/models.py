"""
Pydantic v2 Configuration Models for FileSource

Provides strict, typed configuration for the FileSource subsystems:
- Download policy (concurrency ceiling, stall detection, retries, backoff)
- HTTP client settings (user agent, TLS, redirects)
- Content cache location and hit validation
- Fingerprint strategy
- Top-level FileSourceConfig as single source of truth

All models use extra="forbid" for strict validation. Environment variables
and CLI overrides follow: file < env < CLI precedence (see ``loader``).
"""

from __future__ import annotations

import hashlib
import json
from typing import ClassVar, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from SiteGraph.FileSource.fingerprint import FingerprintMode, HashAccumulator

# ============================================================================
# Download & HTTP
# ============================================================================


class DownloadPolicy(BaseModel):
    """Concurrency, stall detection, and retry behaviour for remote fetches."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    max_concurrent_downloads: int = Field(
        default=200, description="Global ceiling on simultaneous network fetches"
    )
    stall_retry_limit: int = Field(
        default=3, description="Total attempts per request (initial attempt included)"
    )
    stall_timeout_s: float = Field(
        default=30.0, description="Abort an attempt when no bytes arrive for this long"
    )
    connect_timeout_s: float = Field(
        default=30.0, description="Per-attempt connection establishment timeout"
    )
    chunk_size_bytes: int = Field(default=1 << 16, description="Stream read size")
    backoff_multiplier: float = Field(
        default=0.5, description="Multiplier for randomized exponential backoff"
    )
    backoff_max_s: float = Field(default=10.0, description="Maximum wait between attempts")
    retry_after_cap_s: float = Field(
        default=60.0, description="Maximum Retry-After value honoured"
    )
    retry_statuses: List[int] = Field(
        default_factory=lambda: [408, 429, 500, 502, 503, 504],
        description="HTTP status codes that trigger another attempt",
    )
    verify_content_length: bool = Field(
        default=True, description="Treat bodies shorter than Content-Length as transient failures"
    )

    @field_validator("max_concurrent_downloads", "stall_retry_limit", "chunk_size_bytes")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Must be >= 1")
        return v

    @field_validator("stall_timeout_s", "connect_timeout_s")
    @classmethod
    def validate_timeouts(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Timeouts must be > 0")
        return v

    @field_validator("backoff_multiplier", "backoff_max_s", "retry_after_cap_s")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Must be >= 0")
        return v

    @field_validator("retry_statuses")
    @classmethod
    def validate_statuses(cls, v: List[int]) -> List[int]:
        for status in v:
            if not 400 <= status <= 599:
                raise ValueError(f"Retry status {status} is not an HTTP error status")
        return v


class HttpClientConfig(BaseModel):
    """Configuration for the shared HTTPX client."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    user_agent: str = Field(default="SiteGraph-FileSource/1.0", description="User-Agent string")
    verify_tls: bool = Field(default=True, description="Verify TLS certificates")
    follow_redirects: bool = Field(default=True, description="Follow HTTP redirects")
    max_redirects: int = Field(default=5, description="Redirect hops before giving up")
    max_connections: int = Field(default=256, description="Connection pool size")

    @field_validator("max_redirects")
    @classmethod
    def validate_redirects(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_redirects must be >= 0")
        return v

    @field_validator("max_connections")
    @classmethod
    def validate_connections(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_connections must be >= 1")
        return v


# ============================================================================
# Cache & Fingerprints
# ============================================================================


class CacheConfig(BaseModel):
    """Location and behaviour of the durable content cache."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    root_dir: str = Field(default=".cache/sitegraph-filesource", description="Cache root")
    verify_hits: bool = Field(
        default=False, description="Recompute fingerprints of cache hits before trusting them"
    )
    lock_timeout_s: float = Field(default=30.0, description="Cross-process lock timeout")

    @field_validator("root_dir")
    @classmethod
    def validate_root(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("root_dir must not be empty")
        return v

    @field_validator("lock_timeout_s")
    @classmethod
    def validate_lock_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("lock_timeout_s must be > 0")
        return v


class FingerprintConfig(BaseModel):
    """Fingerprint strategy applied to every node of a source instance."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid", use_enum_values=False)

    mode: FingerprintMode = Field(default=FingerprintMode.EXACT, description="exact or proxy")
    algorithm: str = Field(default="md5", description="Digest algorithm for exact mode")

    @field_validator("algorithm")
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        HashAccumulator(v)
        return v.lower()


# ============================================================================
# Top-Level Configuration
# ============================================================================


class FileSourceConfig(BaseModel):
    """Single source of truth for a FileSource instance."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    download: DownloadPolicy = Field(default_factory=DownloadPolicy)
    http: HttpClientConfig = Field(default_factory=HttpClientConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    fingerprint: FingerprintConfig = Field(default_factory=FingerprintConfig)

    def config_hash(self) -> str:
        """Return a stable SHA-256 of the effective configuration."""

        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

# === NAVMAP v1 ===
# {
#   "module": "SiteGraph.FileSource.errors",
#   "purpose": "Failure taxonomy for remote file acquisition, caching, and fingerprinting.",
#   "sections": [
#     {"id": "base", "name": "FileSourceError", "anchor": "class-filesourceerror", "kind": "class"},
#     {"id": "network", "name": "NetworkError", "anchor": "class-networkerror", "kind": "class"},
#     {"id": "auth", "name": "AuthError", "anchor": "class-autherror", "kind": "class"},
#     {"id": "naming", "name": "NamingConflict", "anchor": "class-namingconflict", "kind": "class"},
#     {"id": "storage", "name": "StorageIOError", "anchor": "class-storageioerror", "kind": "class"},
#     {"id": "hash", "name": "HashError", "anchor": "class-hasherror", "kind": "class"},
#     {"id": "cancel", "name": "DownloadCancelled", "anchor": "class-downloadcancelled", "kind": "class"},
#     {"id": "actionable", "name": "get_actionable_error_message", "anchor": "function-get-actionable-error-message", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Failure taxonomy for remote file acquisition, caching, and fingerprinting.

Responsibilities
----------------
- Define the terminal error kinds surfaced to callers of the acquisition entry
  points (``NetworkError``, ``AuthError``, ``NamingConflict``,
  ``StorageIOError`` and its ``HashError`` refinement).
- Define the internal, retryable conditions (``StallError``,
  ``RetryableStatusError``) that the retry controller consumes and never lets
  escape once attempts are exhausted.
- Provide :func:`get_actionable_error_message` so CLI output and logs carry a
  remediation hint next to the failure kind.

Design Notes
------------
- Every terminal error carries the source URL and a ``kind`` string so the
  host build system can report failures without inspecting class hierarchies.
- ``StorageIOError`` subclasses :class:`OSError`; code that already handles
  disk failures generically keeps working.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = (
    "FileSourceError",
    "NetworkError",
    "AuthError",
    "NamingConflict",
    "StorageIOError",
    "HashError",
    "DownloadCancelled",
    "StallError",
    "RetryableStatusError",
    "get_actionable_error_message",
)


class FileSourceError(Exception):
    """Base class for all acquisition failures."""

    kind = "file_source_error"

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serialisable description of the failure."""

        payload: Dict[str, Any] = {
            "kind": self.kind,
            "message": str(self),
            "url": self.url,
        }
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class NetworkError(FileSourceError):
    """Raised when a fetch fails for good (retries exhausted or non-retryable status)."""

    kind = "network"

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        attempts: int = 0,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, url=url, details=details)
        self.status_code = status_code
        self.attempts = attempts
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["status_code"] = self.status_code
        payload["attempts"] = self.attempts
        return payload


class AuthError(FileSourceError):
    """Raised when the remote endpoint rejects the supplied credentials."""

    kind = "auth"

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, url=url, details=details)
        self.status_code = status_code


class NamingConflict(FileSourceError):
    """Raised when no free local file name remains after disambiguation."""

    kind = "naming_conflict"


class StorageIOError(FileSourceError, OSError):
    """Raised when reading or writing local cache files fails."""

    kind = "io"


class HashError(StorageIOError):
    """Raised when a fingerprint computation is interrupted before completion."""

    kind = "hash"


class DownloadCancelled(FileSourceError):
    """Raised when the caller cancelled an acquisition before it settled."""

    kind = "cancelled"


class StallError(Exception):
    """A transfer made no forward progress within the stall window."""

    def __init__(self, url: str, stall_timeout_s: float, bytes_received: int) -> None:
        super().__init__(
            f"No data received from {url} for {stall_timeout_s:.1f}s "
            f"(received {bytes_received} bytes so far)"
        )
        self.url = url
        self.stall_timeout_s = stall_timeout_s
        self.bytes_received = bytes_received


class RetryableStatusError(Exception):
    """The server answered with a status that is worth another attempt."""

    def __init__(self, url: str, status_code: int, retry_after: Optional[float] = None) -> None:
        super().__init__(f"HTTP {status_code} from {url}")
        self.url = url
        self.status_code = status_code
        self.retry_after = retry_after


def get_actionable_error_message(
    http_status: Optional[int],
    kind: Optional[str] = None,
) -> tuple[str, Optional[str]]:
    """Return a ``(message, suggestion)`` pair describing a failed acquisition.

    Examples:
        >>> msg, hint = get_actionable_error_message(404)
        >>> msg
        'Resource not found (HTTP 404)'
    """

    if http_status == 401:
        return (
            "Authentication required (HTTP 401)",
            "Pass credentials with the request or check that they are still valid",
        )
    if http_status == 403:
        return (
            "Access forbidden (HTTP 403)",
            "Check the credentials or access permissions for this resource",
        )
    if http_status == 404:
        return (
            "Resource not found (HTTP 404)",
            "The upstream data references a file that no longer exists",
        )
    if http_status == 429:
        return (
            "Rate limited (HTTP 429)",
            "Lower max_concurrent_downloads or retry the build later",
        )
    if http_status is not None and 500 <= http_status < 600:
        return (
            f"Server error (HTTP {http_status})",
            "The remote host is failing; retry the build later",
        )
    if kind == "stall":
        return (
            "Transfer stalled",
            "Increase stall_timeout_s or stall_retry_limit for slow hosts",
        )
    if kind == "timeout":
        return (
            "Connection timed out",
            "Increase connect_timeout_s or check network connectivity",
        )
    if kind == "naming_conflict":
        return ("Local file name collision", "Pass an explicit name for this resource")
    if kind in {"io", "hash"}:
        return ("Local disk failure", "Check free space and permissions of the cache root")
    if http_status is not None:
        return (f"HTTP error {http_status}", None)
    return ("Download failed", None)

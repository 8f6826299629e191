"""Cooperative cancellation for in-flight acquisitions.

Acquisitions run on worker threads, so cancellation is cooperative: the
download coordinator checks the token while waiting for a concurrency slot,
between streamed chunks, and between retry attempts. Cleanup (temporary file
removal, reservation release) therefore always runs on the worker that owns
the resources.
"""

from __future__ import annotations

import threading
from typing import Optional

from SiteGraph.FileSource.errors import DownloadCancelled

__all__ = ["CancellationToken"]


class CancellationToken:
    """Thread-safe cancellation token.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel()
        >>> token.is_cancelled()
        True
    """

    def __init__(self) -> None:
        self._is_cancelled = threading.Event()

    def cancel(self) -> None:
        """Signal that cancellation has been requested."""
        self._is_cancelled.set()

    def is_cancelled(self) -> bool:
        return self._is_cancelled.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block up to ``timeout`` seconds; return ``True`` if cancelled meanwhile."""
        return self._is_cancelled.wait(timeout)

    def raise_if_cancelled(self, url: Optional[str] = None) -> None:
        if self._is_cancelled.is_set():
            raise DownloadCancelled("Acquisition cancelled by caller", url=url)

# === NAVMAP v1 ===
# {
#   "module": "SiteGraph.FileSource.download",
#   "purpose": "Bounded-concurrency remote fetches with stall recovery and atomic cache commits",
#   "sections": [
#     {"id": "acquisitionrequest", "name": "AcquisitionRequest", "anchor": "class-acquisitionrequest", "kind": "class"},
#     {"id": "fetchinstrumentation", "name": "FetchInstrumentation", "anchor": "class-fetchinstrumentation", "kind": "class"},
#     {"id": "inflightgauge", "name": "InflightGauge", "anchor": "class-inflightgauge", "kind": "class"},
#     {"id": "fetchresult", "name": "FetchResult", "anchor": "class-fetchresult", "kind": "class"},
#     {"id": "downloadcoordinator", "name": "DownloadCoordinator", "anchor": "class-downloadcoordinator", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Download coordinator for remote file acquisition.

Responsibilities
----------------
- Resolve the local file name for a request (explicit name/extension, then
  the URL, then the payload's magic bytes, then ``Content-Type``).
- Admit at most ``max_concurrent_downloads`` network fetches at a time
  through a bounded semaphore shared by every caller of one coordinator.
- Stream each attempt into a ``.part`` file under the cache's ``tmp/``
  directory while monitoring forward progress. No bytes for longer than the
  stall window aborts the attempt; tenacity drives the retries.
- Promote the finished file into ``files/``, fingerprint it, and commit the
  cache reservation. Every failure path removes the temporary file and aborts
  the reservation so the key can be fetched again later.
- Collapse concurrent requests for one cache key onto a single fetch via the
  cache's in-flight registry.

Design Notes
------------
- Exact fingerprints are accumulated while streaming, so a committed file is
  never read back just to hash it.
- Timeouts are per attempt: ``connect_timeout_s`` bounds connection setup and
  ``stall_timeout_s`` bounds the gap between received chunks.
"""

from __future__ import annotations

import contextlib
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import (
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Set,
    Tuple,
    Union,
    runtime_checkable,
)

import httpx

from SiteGraph.concurrency import create_executor
from SiteGraph.FileSource.cache import (
    CacheEntry,
    CacheHit,
    CachePending,
    ContentCache,
    Reservation,
    derive_cache_key,
)
from SiteGraph.FileSource.cancellation import CancellationToken
from SiteGraph.FileSource.config.models import FileSourceConfig
from SiteGraph.FileSource.errors import (
    AuthError,
    DownloadCancelled,
    FileSourceError,
    NetworkError,
    RetryableStatusError,
    StallError,
    StorageIOError,
    get_actionable_error_message,
)
from SiteGraph.FileSource.fingerprint import (
    ExactDigest,
    Fingerprint,
    FingerprintMode,
    HashAccumulator,
    fingerprint_path,
)
from SiteGraph.FileSource.http_client import build_http_client
from SiteGraph.FileSource.io_utils import SizeMismatchError, discard_part_file, open_part_file
from SiteGraph.FileSource.logging_utils import mask_sensitive_data
from SiteGraph.FileSource.naming import (
    SNIFF_BYTES,
    extension_from_content_type,
    resolve_name,
    sniff_extension,
)
from SiteGraph.FileSource.retry import build_retrying, is_retryable, parse_retry_after

__all__ = [
    "AcquisitionRequest",
    "FetchInstrumentation",
    "InflightGauge",
    "FetchResult",
    "DownloadCoordinator",
]

LOGGER = logging.getLogger(__name__)

_ADMISSION_POLL_S = 0.05

AuthCredentials = Union[Tuple[str, str], Mapping[str, str], str, httpx.Auth]


@dataclass(frozen=True)
class AcquisitionRequest:
    """Immutable description of one remote resource to acquire.

    ``auth`` accepts a ``(username, password)`` pair, a mapping with
    ``username``/``password`` or ``token`` keys, a raw ``Authorization``
    header value, or any :class:`httpx.Auth`. Credentials are passed through
    unchanged and never logged.
    """

    url: str
    parent_identity: Optional[str] = None
    name: Optional[str] = None
    ext: Optional[str] = None
    auth: Optional[AuthCredentials] = field(default=None, repr=False, hash=False)
    headers: Mapping[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        if not self.url or not isinstance(self.url, str):
            raise ValueError("AcquisitionRequest.url must be a non-empty string")
        scheme = self.url.split(":", 1)[0].lower()
        if scheme not in {"http", "https"}:
            raise ValueError(f"Unsupported URL scheme for remote acquisition: {self.url!r}")
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers or {})))

    @property
    def cache_key(self) -> str:
        return derive_cache_key(self.url, name=self.name, ext=self.ext)


def _resolve_auth(
    auth: Optional[AuthCredentials],
) -> Tuple[Optional[Union[Tuple[str, str], httpx.Auth]], Dict[str, str]]:
    """Translate pass-through credentials into httpx ``auth`` plus headers."""

    if auth is None:
        return None, {}
    if isinstance(auth, httpx.Auth):
        return auth, {}
    if isinstance(auth, str):
        return None, {"Authorization": auth}
    if isinstance(auth, Mapping):
        if "token" in auth:
            return None, {"Authorization": f"Bearer {auth['token']}"}
        if "username" in auth:
            return (str(auth["username"]), str(auth.get("password", ""))), {}
        raise ValueError("auth mapping needs 'username'/'password' or 'token'")
    if isinstance(auth, (tuple, list)) and len(auth) == 2:
        return (str(auth[0]), str(auth[1])), {}
    raise ValueError(f"Unsupported auth credentials of type {type(auth).__name__}")


# ============================================================================
# Instrumentation
# ============================================================================


@runtime_checkable
class FetchInstrumentation(Protocol):
    """Observer notified when a network fetch holds or releases a slot."""

    def on_fetch_start(self, url: str) -> None: ...

    def on_fetch_end(self, url: str, ok: bool) -> None: ...


class InflightGauge:
    """Thread-safe counters of fetches currently holding a concurrency slot."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.current = 0
        self.peak = 0
        self.started = 0
        self.failed = 0

    def on_fetch_start(self, url: str) -> None:
        with self._lock:
            self.current += 1
            self.started += 1
            self.peak = max(self.peak, self.current)

    def on_fetch_end(self, url: str, ok: bool) -> None:
        with self._lock:
            self.current -= 1
            if not ok:
                self.failed += 1

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {
                "current": self.current,
                "peak": self.peak,
                "started": self.started,
                "failed": self.failed,
            }


@dataclass(frozen=True)
class FetchResult:
    """Outcome of :meth:`DownloadCoordinator.acquire`.

    ``from_cache`` is set for hits from an earlier commit and for callers
    that waited on another caller's fetch (``shared``).
    """

    entry: CacheEntry
    request: AcquisitionRequest
    attempts: int
    from_cache: bool
    bytes_written: int
    shared: bool = False
    content_type: Optional[str] = None

    @property
    def local_path(self) -> Path:
        return Path(self.entry.local_path)


@dataclass
class _Download:
    tmp_path: Path
    bytes_written: int
    head: bytes
    content_type: Optional[str]
    digest: Optional[ExactDigest]
    attempts: int = 0


def _expected_length(response: httpx.Response) -> Optional[int]:
    encoding = response.headers.get("Content-Encoding", "identity").strip().lower()
    if encoding not in {"", "identity"}:
        return None
    raw = response.headers.get("Content-Length")
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value >= 0 else None


# ============================================================================
# Coordinator
# ============================================================================


class DownloadCoordinator:
    """Fetch remote resources into a :class:`ContentCache`.

    Args:
        config: Effective configuration (download policy, HTTP, fingerprint).
        cache: Content cache that owns reservations and the on-disk layout.
        client: Optional pre-built :class:`httpx.Client`; one is built from
            ``config`` (and closed by :meth:`close`) when omitted.
        instrumentation: Observer of slot usage; defaults to :class:`InflightGauge`.
        sleep: Replacement for the backoff sleep between attempts.
    """

    def __init__(
        self,
        config: FileSourceConfig,
        cache: ContentCache,
        *,
        client: Optional[httpx.Client] = None,
        instrumentation: Optional[FetchInstrumentation] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.config = config
        self.policy = config.download
        self.cache = cache
        self._owns_client = client is None
        self.client = client if client is not None else build_http_client(config)
        self.instrumentation: FetchInstrumentation = instrumentation or InflightGauge()
        self._sleep = sleep
        self._slots = threading.BoundedSemaphore(self.policy.max_concurrent_downloads)
        self.fingerprint_mode = FingerprintMode(config.fingerprint.mode)
        self.algorithm = config.fingerprint.algorithm

    # -- public API -----------------------------------------------------

    def acquire(
        self,
        request: AcquisitionRequest,
        *,
        cancel_token: Optional[CancellationToken] = None,
        force_suffix: bool = False,
    ) -> FetchResult:
        """Return the committed cache entry for ``request``, fetching if needed.

        Raises:
            NetworkError: Retries exhausted or a non-retryable HTTP failure.
            AuthError: The endpoint rejected the credentials (401/403).
            NamingConflict: No free local file name remained.
            StorageIOError: A local disk operation failed.
            DownloadCancelled: ``cancel_token`` fired before the outcome settled.
        """

        key = request.cache_key
        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled(request.url)
            outcome = self.cache.lookup_or_reserve(key)

            if isinstance(outcome, CacheHit):
                LOGGER.debug(
                    "cache hit",
                    extra={"stage": "cache", "url": request.url, "cache_key": key},
                )
                return FetchResult(
                    entry=outcome.entry,
                    request=request,
                    attempts=0,
                    from_cache=True,
                    bytes_written=0,
                )

            if isinstance(outcome, CachePending):
                try:
                    entry = self.cache.wait(outcome.reservation, cancel_token=cancel_token)
                except DownloadCancelled:
                    if cancel_token is not None and cancel_token.is_cancelled():
                        raise DownloadCancelled(
                            "Acquisition cancelled by caller", url=request.url
                        ) from None
                    # The owner was cancelled; race the other waiters for the key.
                    continue
                return FetchResult(
                    entry=entry,
                    request=request,
                    attempts=0,
                    from_cache=True,
                    bytes_written=0,
                    shared=True,
                )

            return self._fetch_and_commit(
                request, outcome.reservation, cancel_token=cancel_token, force_suffix=force_suffix
            )

    def acquire_many(
        self,
        requests: Iterable[AcquisitionRequest],
        *,
        max_workers: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[Union[FetchResult, FileSourceError]]:
        """Acquire ``requests`` concurrently; results keep the input order.

        Failures are returned in place of results rather than raised, so one
        broken resource does not hide the outcome of the others. Distinct
        resources whose names collide within the batch all get suffixed names.
        """

        batch = list(requests)
        if not batch:
            return []
        forced = self._plan_suffixes(batch)
        workers = max_workers or min(len(batch), self.policy.max_concurrent_downloads)

        def run(index: int) -> Union[FetchResult, FileSourceError]:
            request = batch[index]
            try:
                return self.acquire(
                    request, cancel_token=cancel_token, force_suffix=index in forced
                )
            except FileSourceError as exc:
                return exc

        executor, needs_shutdown = create_executor(
            "io", workers, thread_name_prefix="filesource-fetch"
        )
        if executor is None:
            return [run(index) for index in range(len(batch))]
        try:
            pending = [executor.submit(run, index) for index in range(len(batch))]
            return [future.result() for future in pending]
        finally:
            if needs_shutdown:
                executor.shutdown(wait=True)

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "DownloadCoordinator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- planning -------------------------------------------------------

    @staticmethod
    def _plan_suffixes(batch: List[AcquisitionRequest]) -> Set[int]:
        owners: Dict[str, Set[str]] = {}
        indices: Dict[str, List[int]] = {}
        for index, request in enumerate(batch):
            key = request.cache_key
            resolved = resolve_name(request.url, cache_key=key, name=request.name, ext=request.ext)
            owners.setdefault(resolved.file_name, set()).add(key)
            indices.setdefault(resolved.file_name, []).append(index)
        forced: Set[int] = set()
        for file_name, keys in owners.items():
            if len(keys) > 1:
                forced.update(indices[file_name])
        return forced

    # -- fetch pipeline -------------------------------------------------

    def _fetch_and_commit(
        self,
        request: AcquisitionRequest,
        reservation: Reservation,
        *,
        cancel_token: Optional[CancellationToken],
        force_suffix: bool,
    ) -> FetchResult:
        key = reservation.key
        resolved = resolve_name(request.url, cache_key=key, name=request.name, ext=request.ext)
        download: Optional[_Download] = None
        final_path: Optional[Path] = None
        try:
            with self._admission(request.url, cancel_token):
                download = self._download_with_retries(request, cancel_token)

            extension = resolved.extension
            if resolved.needs_sniff:
                extension = (
                    sniff_extension(download.head)
                    or extension_from_content_type(download.content_type)
                    or ""
                )
                LOGGER.debug(
                    "inferred extension %r",
                    extension,
                    extra={"stage": "naming", "url": request.url, "cache_key": key},
                )

            previous = reservation.previous.local_path if reservation.previous else None
            final_path = self.cache.promote(
                download.tmp_path,
                f"{resolved.stem}{extension}",
                key,
                force_suffix=force_suffix,
                replace=previous,
                url=request.url,
            )
            fingerprint = self._fingerprint(final_path, download)
            entry = self.cache.commit(
                reservation,
                final_path,
                fingerprint,
                source_url=request.url,
                size_bytes=download.bytes_written,
            )
        except FileSourceError as exc:
            exc.url = exc.url or request.url
            self._cleanup(download, final_path)
            self.cache.abort(reservation, exc)
            self._log_failure(request, exc)
            raise
        except OSError as exc:
            self._cleanup(download, final_path)
            error = StorageIOError(f"Local write failed for {request.url}: {exc}", url=request.url)
            self.cache.abort(reservation, error)
            self._log_failure(request, error)
            raise error from exc
        except Exception as exc:
            self._cleanup(download, final_path)
            self.cache.abort(reservation, exc)
            raise
        except BaseException:
            self._cleanup(download, final_path)
            self.cache.abort(reservation, DownloadCancelled("Acquisition interrupted", url=request.url))
            raise

        LOGGER.info(
            "downloaded %s",
            request.url,
            extra={
                "stage": "fetch",
                "cache_key": key,
                "path": entry.local_path,
                "bytes": download.bytes_written,
                "attempts": download.attempts,
            },
        )
        return FetchResult(
            entry=entry,
            request=request,
            attempts=download.attempts,
            from_cache=False,
            bytes_written=download.bytes_written,
            content_type=download.content_type,
        )

    def _fingerprint(self, final_path: Path, download: _Download) -> Fingerprint:
        if self.fingerprint_mode is FingerprintMode.EXACT and download.digest is not None:
            return download.digest
        return fingerprint_path(final_path, self.fingerprint_mode, algorithm=self.algorithm)

    @staticmethod
    def _cleanup(download: Optional[_Download], final_path: Optional[Path]) -> None:
        if download is not None:
            discard_part_file(download.tmp_path)
        if final_path is not None:
            with contextlib.suppress(FileNotFoundError):
                final_path.unlink()

    @contextlib.contextmanager
    def _admission(
        self, url: str, cancel_token: Optional[CancellationToken]
    ) -> Iterator[None]:
        """Hold one concurrency slot for the duration of a network fetch."""

        if cancel_token is None:
            self._slots.acquire()
        else:
            while not self._slots.acquire(timeout=_ADMISSION_POLL_S):
                cancel_token.raise_if_cancelled(url)
            if cancel_token.is_cancelled():
                self._slots.release()
                cancel_token.raise_if_cancelled(url)

        ok = False
        self.instrumentation.on_fetch_start(url)
        try:
            yield
            ok = True
        finally:
            self.instrumentation.on_fetch_end(url, ok)
            self._slots.release()

    def _backoff_sleep(self, cancel_token: Optional[CancellationToken], url: str) -> Callable[[float], None]:
        def sleep(seconds: float) -> None:
            if self._sleep is not None:
                self._sleep(seconds)
            elif cancel_token is not None:
                cancel_token.wait(seconds)
            else:
                time.sleep(seconds)
            if cancel_token is not None:
                cancel_token.raise_if_cancelled(url)

        return sleep

    def _download_with_retries(
        self, request: AcquisitionRequest, cancel_token: Optional[CancellationToken]
    ) -> _Download:
        auth, auth_headers = _resolve_auth(request.auth)
        headers = {**dict(request.headers), **auth_headers}
        retrying = build_retrying(self.policy, sleep=self._backoff_sleep(cancel_token, request.url))

        attempts = 0
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if cancel_token is not None:
                        cancel_token.raise_if_cancelled(request.url)
                    LOGGER.debug(
                        "fetch attempt %d",
                        attempts,
                        extra={
                            "stage": "fetch",
                            "url": request.url,
                            "headers": mask_sensitive_data(headers),
                        },
                    )
                    download = self._attempt(request, headers, auth, cancel_token)
        except NetworkError as exc:
            exc.attempts = attempts
            raise
        except (StallError, RetryableStatusError, SizeMismatchError, httpx.HTTPError, httpx.InvalidURL) as exc:
            raise self._terminal_error(request, exc, attempts) from exc

        download.attempts = attempts
        return download

    def _terminal_error(
        self, request: AcquisitionRequest, exc: BaseException, attempts: int
    ) -> NetworkError:
        status = getattr(exc, "status_code", None)
        if isinstance(exc, StallError):
            kind = "stall"
        elif isinstance(exc, httpx.TimeoutException):
            kind = "timeout"
        else:
            kind = None
        summary, hint = get_actionable_error_message(status, kind)
        retryable = is_retryable(exc)
        message = (
            f"{summary} for {request.url} after {attempts} attempt(s): {exc}"
            if retryable
            else f"{summary} for {request.url}: {exc}"
        )
        return NetworkError(
            message,
            url=request.url,
            status_code=status,
            attempts=attempts,
            retryable=retryable,
            details={"cause": type(exc).__name__, "hint": hint},
        )

    def _check_status(self, url: str, response: httpx.Response) -> None:
        status = response.status_code
        if status < 300:
            return
        summary, hint = get_actionable_error_message(status)
        if status in (401, 403):
            raise AuthError(
                f"{summary} for {url}",
                url=url,
                status_code=status,
                details={"hint": hint},
            )
        if status in self.policy.retry_statuses:
            raise RetryableStatusError(
                url, status, retry_after=parse_retry_after(response.headers.get("Retry-After"))
            )
        raise NetworkError(
            f"{summary} for {url}",
            url=url,
            status_code=status,
            retryable=False,
            details={"hint": hint},
        )

    def _attempt(
        self,
        request: AcquisitionRequest,
        headers: Mapping[str, str],
        auth: Optional[Union[Tuple[str, str], httpx.Auth]],
        cancel_token: Optional[CancellationToken],
    ) -> _Download:
        """Run one fetch attempt into a fresh ``.part`` file."""

        url = request.url
        stall_window = self.policy.stall_timeout_s
        accumulator = (
            HashAccumulator(self.algorithm)
            if self.fingerprint_mode is FingerprintMode.EXACT
            else None
        )
        if accumulator is not None:
            accumulator.init()

        handle, tmp_path = open_part_file(self.cache.tmp_dir)
        bytes_written = 0
        head = b""
        try:
            with handle:
                stream_kwargs = {"headers": dict(headers)}
                if auth is not None:
                    stream_kwargs["auth"] = auth
                with self.client.stream("GET", url, **stream_kwargs) as response:
                    self._check_status(url, response)
                    expected = (
                        _expected_length(response) if self.policy.verify_content_length else None
                    )
                    content_type = response.headers.get("Content-Type")
                    last_progress = time.monotonic()
                    for chunk in response.iter_bytes(chunk_size=self.policy.chunk_size_bytes):
                        now = time.monotonic()
                        if now - last_progress > stall_window:
                            raise StallError(url, stall_window, bytes_written)
                        if cancel_token is not None:
                            cancel_token.raise_if_cancelled(url)
                        if not chunk:
                            continue
                        handle.write(chunk)
                        if accumulator is not None:
                            accumulator.update(chunk)
                        if len(head) < SNIFF_BYTES:
                            head += chunk[: SNIFF_BYTES - len(head)]
                        bytes_written += len(chunk)
                        last_progress = now
                handle.flush()
                os.fsync(handle.fileno())

            if expected is not None and bytes_written != expected:
                raise SizeMismatchError(expected, bytes_written)
        except BaseException:
            discard_part_file(tmp_path)
            raise

        return _Download(
            tmp_path=tmp_path,
            bytes_written=bytes_written,
            head=head,
            content_type=content_type,
            digest=accumulator.finalize() if accumulator is not None else None,
        )

    def _log_failure(self, request: AcquisitionRequest, exc: FileSourceError) -> None:
        if isinstance(exc, DownloadCancelled):
            LOGGER.info("acquisition cancelled", extra={"stage": "fetch", "url": request.url})
            return
        LOGGER.error(
            "acquisition failed: %s",
            exc,
            extra={"stage": "fetch", "url": request.url, "kind": exc.kind, "error": exc.to_dict()},
        )

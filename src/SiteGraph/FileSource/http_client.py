"""HTTPX client factory for remote file acquisition.

Responsibilities
----------------
- Construct an :class:`httpx.Client` whose timeout budget mirrors the
  download policy: ``connect`` bounds connection establishment and ``read``
  is the stall window (no bytes for that long aborts the attempt).
- Use a Certifi-backed SSL context so TLS verification does not depend on the
  host's certificate store.
- Accept an injected transport (e.g. :class:`httpx.MockTransport`) so tests
  never touch the network.

Design Notes
------------
- The client is owned by a :class:`~SiteGraph.FileSource.download.DownloadCoordinator`
  rather than a module singleton; every source instance gets its own pool.
- Connection pool size follows ``http.max_connections`` and is kept at or
  above ``download.max_concurrent_downloads`` so admission, not the pool,
  is the limiting factor.
"""

from __future__ import annotations

import logging
import ssl
import time
from typing import Dict, Iterable, Mapping, MutableMapping, Optional, Union

import certifi
import httpx

from SiteGraph.FileSource.config.models import FileSourceConfig

LOGGER = logging.getLogger("SiteGraph.FileSource.network")

__all__ = ["build_http_client", "build_timeout"]


def _build_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.load_verify_locations(certifi.where())
    return context


def build_timeout(config: FileSourceConfig) -> httpx.Timeout:
    """Return the per-attempt timeout budget for ``config``."""

    policy = config.download
    return httpx.Timeout(
        connect=policy.connect_timeout_s,
        read=policy.stall_timeout_s,
        write=policy.stall_timeout_s,
        pool=policy.connect_timeout_s,
    )


def _request_hook(request: httpx.Request) -> None:
    meta: MutableMapping[str, object] = request.extensions.setdefault("filesource_meta", {})  # type: ignore[assignment]
    meta["start_time"] = time.perf_counter()


def _response_hook(response: httpx.Response) -> None:
    meta: MutableMapping[str, object] = response.request.extensions.setdefault(  # type: ignore[assignment]
        "filesource_meta", {}
    )
    start_time = meta.get("start_time")
    elapsed = None
    if isinstance(start_time, (int, float)):
        elapsed = time.perf_counter() - start_time
        meta["elapsed"] = elapsed
    LOGGER.debug(
        "httpx-response",
        extra={
            "stage": "fetch",
            "url": str(response.request.url),
            "status": response.status_code,
            "elapsed_s": elapsed,
        },
    )


def _build_event_hooks(extra_hooks: Optional[Mapping[str, Iterable]]) -> Dict[str, list]:
    hooks: Dict[str, list] = {
        "request": [_request_hook],
        "response": [_response_hook],
    }
    if extra_hooks:
        for name, values in extra_hooks.items():
            if values:
                hooks.setdefault(name, []).extend(values)
    return hooks


def build_http_client(
    config: FileSourceConfig,
    *,
    transport: Optional[httpx.BaseTransport] = None,
    event_hooks: Optional[Mapping[str, Iterable]] = None,
) -> httpx.Client:
    """Create the HTTPX client used by a download coordinator.

    Args:
        config: Effective configuration.
        transport: Optional transport override (tests use ``httpx.MockTransport``).
        event_hooks: Extra request/response hooks appended after the defaults.
    """

    http = config.http
    max_connections = max(http.max_connections, config.download.max_concurrent_downloads)
    limits = httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=min(64, max_connections),
        keepalive_expiry=15.0,
    )
    verify: Union[ssl.SSLContext, bool] = _build_ssl_context() if http.verify_tls else False

    client_kwargs = {
        "timeout": build_timeout(config),
        "limits": limits,
        "verify": verify,
        "follow_redirects": http.follow_redirects,
        "max_redirects": http.max_redirects,
        "headers": {"User-Agent": http.user_agent},
        "event_hooks": _build_event_hooks(event_hooks),
    }
    if transport is not None:
        client_kwargs["transport"] = transport

    client = httpx.Client(**client_kwargs)
    LOGGER.debug(
        "http client created",
        extra={
            "stage": "setup",
            "max_connections": max_connections,
            "connect_timeout_s": config.download.connect_timeout_s,
            "stall_timeout_s": config.download.stall_timeout_s,
        },
    )
    return client

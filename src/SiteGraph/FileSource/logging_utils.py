"""Structured logging helpers shared across FileSource components."""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Mapping, Optional

__all__ = ["JSONFormatter", "setup_logging", "mask_sensitive_data", "LOGGER_NAME"]

LOGGER_NAME = "SiteGraph.FileSource"

_SENSITIVE_KEYS = {
    "authorization",
    "proxy-authorization",
    "cookie",
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "auth",
}
_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9+/=_-]{32,}$")
# Cache keys and content digests are lowercase hex and stay readable.
_DIGEST_PATTERN = re.compile(r"^[0-9a-f]+$")
_MASK = "***masked***"

_RESERVED_RECORD_ATTRS = set(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


def mask_sensitive_data(payload: Any) -> Any:
    """Return a copy of ``payload`` with credential-like values masked.

    Examples:
        >>> mask_sensitive_data({"Authorization": "Bearer abc", "Accept": "*/*"})
        {'Authorization': '***masked***', 'Accept': '*/*'}
    """

    def _mask(value: Any, key_hint: Optional[str] = None) -> Any:
        if key_hint is not None and key_hint.lower() in _SENSITIVE_KEYS:
            return _MASK if value is not None else None
        if isinstance(value, Mapping):
            return {key: _mask(item, str(key)) for key, item in value.items()}
        if isinstance(value, list):
            return [_mask(item) for item in value]
        if isinstance(value, tuple):
            if len(value) == 2 and isinstance(value[0], str):
                return (value[0], _mask(value[1], value[0]))
            return tuple(_mask(item) for item in value)
        if (
            isinstance(value, str)
            and _TOKEN_PATTERN.match(value)
            and not _DIGEST_PATTERN.match(value)
        ):
            return _MASK
        return value

    return _mask(payload)


class JSONFormatter(logging.Formatter):
    """Formatter emitting masked JSON log entries for file acquisition."""

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "stage": getattr(record, "stage", None),
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_ATTRS or key in payload:
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(payload), default=str)


def setup_logging(
    *,
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    json_console: bool = False,
    max_log_size_mb: int = 50,
    propagate: bool = False,
) -> logging.Logger:
    """Configure FileSource logging.

    Console output goes to stderr so command output on stdout stays parseable.
    When ``log_dir`` is given, a rotating JSON-lines file is written there as
    well. Handlers installed by earlier calls are replaced, not duplicated.
    """

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_filesource_managed", False):
            logger.removeHandler(handler)
            if isinstance(handler, logging.StreamHandler):
                stream = getattr(handler, "stream", None)
                if stream in (sys.stdout, sys.stderr):
                    continue
            handler.close()

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(
        JSONFormatter() if json_console else logging.Formatter("%(levelname)s: %(message)s")
    )
    stream_handler._filesource_managed = True  # type: ignore[attr-defined]
    logger.addHandler(stream_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        file_handler = RotatingFileHandler(
            log_dir / f"filesource-{today}.jsonl",
            maxBytes=int(max_log_size_mb * 1024 * 1024),
            backupCount=5,
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler._filesource_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    logger.propagate = propagate
    return logger

"""File name and extension resolution for remote resources.

Resolution order
----------------
1. An explicitly supplied name / extension always wins.
2. Otherwise the URL path component supplies both (percent-decoded).
3. If the URL carries no recognizable extension, the payload's leading bytes
   are sniffed after download (:func:`sniff_extension`), then the response
   ``Content-Type`` is consulted.

Names are sanitised for the target filesystem. Collisions between distinct
resources are settled by the content cache, which appends
:func:`disambiguate` suffixes derived from the cache key.
"""

from __future__ import annotations

import logging
import mimetypes
import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import unquote, urlsplit

__all__ = [
    "ResolvedName",
    "SNIFF_BYTES",
    "get_remote_file_extension",
    "get_remote_file_name",
    "is_recognizable_extension",
    "normalize_extension",
    "sniff_extension",
    "extension_from_content_type",
    "media_type_from_content_type",
    "sanitize_file_name",
    "disambiguate",
    "resolve_name",
]

LOGGER = logging.getLogger(__name__)

SNIFF_BYTES = 64
SUFFIX_LENGTH = 8
_PLACEHOLDER = "-"
_UNSAFE_CHARS = re.compile(r'[/\\?%*:|"<>\x00-\x1f\x7f]')
_EXTENSION_RE = re.compile(r"^\.(?=[0-9]*[A-Za-z])[A-Za-z0-9]{1,8}$")
_MAX_NAME_LENGTH = 200

# Windows rejects these as bare names regardless of extension.
_RESERVED_NAMES = {
    "con", "prn", "aux", "nul",
    *(f"com{i}" for i in range(1, 10)),
    *(f"lpt{i}" for i in range(1, 10)),
}

# (offset, magic, extension); checked in order, first match wins.
_MAGIC_TABLE = (
    (0, b"\xff\xd8\xff", ".jpg"),
    (0, b"\x89PNG\r\n\x1a\n", ".png"),
    (0, b"GIF87a", ".gif"),
    (0, b"GIF89a", ".gif"),
    (0, b"%PDF", ".pdf"),
    (0, b"BM", ".bmp"),
    (0, b"II*\x00", ".tif"),
    (0, b"MM\x00*", ".tif"),
    (0, b"\x00\x00\x01\x00", ".ico"),
    (0, b"PK\x03\x04", ".zip"),
    (0, b"\x1f\x8b", ".gz"),
    (0, b"ID3", ".mp3"),
    (0, b"OggS", ".ogg"),
    (0, b"wOFF", ".woff"),
    (0, b"wOF2", ".woff2"),
    (0, b"\x1aE\xdf\xa3", ".webm"),
)

_RIFF_FORMATS = {b"WEBP": ".webp", b"WAVE": ".wav", b"AVI ": ".avi"}
_FTYP_BRANDS = {
    b"avif": ".avif",
    b"avis": ".avif",
    b"heic": ".heic",
    b"heix": ".heic",
    b"mif1": ".heic",
    b"qt  ": ".mov",
}


@dataclass(frozen=True)
class ResolvedName:
    """Outcome of name resolution before the payload is available."""

    stem: str
    extension: str
    needs_sniff: bool
    sanitized: bool = False

    @property
    def file_name(self) -> str:
        return f"{self.stem}{self.extension}"


def _url_path(url: str) -> PurePosixPath:
    return PurePosixPath(urlsplit(url).path or "/")


def get_remote_file_extension(url: str) -> str:
    """Return the extension of the URL path, with its leading dot, or ``""``."""

    return unquote(_url_path(url).suffix)


def get_remote_file_name(url: str) -> str:
    """Return the percent-decoded file stem of the URL path."""

    path = _url_path(url)
    return unquote(path.stem if path.suffix else path.name)


def is_recognizable_extension(ext: Optional[str]) -> bool:
    return bool(ext) and bool(_EXTENSION_RE.match(ext))


def normalize_extension(ext: Optional[str]) -> str:
    """Return ``ext`` with exactly one leading dot, or ``""`` when empty."""

    if not ext:
        return ""
    ext = ext.strip()
    if not ext:
        return ""
    return ext if ext.startswith(".") else f".{ext}"


def sniff_extension(head: bytes) -> Optional[str]:
    """Infer a file extension from the first bytes of a payload.

    Examples:
        >>> sniff_extension(b"\\xff\\xd8\\xff\\xe0\\x00\\x10JFIF")
        '.jpg'
        >>> sniff_extension(b"plain text") is None
        True
    """

    if not head:
        return None
    for offset, magic, ext in _MAGIC_TABLE:
        if head[offset : offset + len(magic)] == magic:
            return ext
    if head[:4] == b"RIFF" and len(head) >= 12:
        return _RIFF_FORMATS.get(head[8:12])
    if head[4:8] == b"ftyp" and len(head) >= 12:
        return _FTYP_BRANDS.get(head[8:12], ".mp4")
    stripped = head.lstrip()[:SNIFF_BYTES].lower()
    if stripped.startswith(b"<svg") or (stripped.startswith(b"<?xml") and b"<svg" in head.lower()):
        return ".svg"
    return None


def media_type_from_content_type(content_type: Optional[str]) -> Optional[str]:
    """Return the bare media type of a ``Content-Type`` header, parameters dropped."""

    if not content_type:
        return None
    return content_type.split(";", 1)[0].strip().lower() or None


def extension_from_content_type(content_type: Optional[str]) -> Optional[str]:
    """Map a ``Content-Type`` header to an extension, ignoring generic types."""

    media_type = media_type_from_content_type(content_type)
    if not media_type or media_type in {"application/octet-stream", "binary/octet-stream"}:
        return None
    if media_type in {"image/jpeg", "image/jpg", "image/pjpeg"}:
        return ".jpg"
    return mimetypes.guess_extension(media_type, strict=False)


def sanitize_file_name(name: str, *, fallback: str = "file") -> str:
    """Replace characters that are unsafe on common filesystems with ``-``."""

    safe = _UNSAFE_CHARS.sub(_PLACEHOLDER, name)
    safe = safe.strip(" .")
    if not safe:
        safe = fallback
    if safe.lower() in _RESERVED_NAMES:
        safe = f"{safe}{_PLACEHOLDER}"
    if len(safe) > _MAX_NAME_LENGTH:
        safe = safe[:_MAX_NAME_LENGTH]
    return safe


def disambiguate(file_name: str, cache_key: str) -> str:
    """Append a short suffix derived from ``cache_key`` before the extension.

    Examples:
        >>> disambiguate("a-file.jpg", "0123456789abcdef")
        'a-file-01234567.jpg'
    """

    path = PurePosixPath(file_name)
    suffix = cache_key[:SUFFIX_LENGTH]
    if path.suffix and is_recognizable_extension(path.suffix):
        return f"{path.stem}-{suffix}{path.suffix}"
    return f"{file_name}-{suffix}"


def resolve_name(
    url: str,
    *,
    cache_key: str,
    name: Optional[str] = None,
    ext: Optional[str] = None,
) -> ResolvedName:
    """Resolve the stem and extension for ``url`` before downloading.

    ``needs_sniff`` is set when neither the caller nor the URL supplied an
    extension; the download coordinator then inspects the payload.
    """

    explicit_ext = normalize_extension(ext)
    url_ext = get_remote_file_extension(url)
    if not is_recognizable_extension(url_ext):
        url_ext = ""

    if name:
        raw_stem = name
    else:
        raw_stem = get_remote_file_name(url) if url_ext else unquote(_url_path(url).name)

    stem = sanitize_file_name(raw_stem, fallback=cache_key[:SUFFIX_LENGTH])
    sanitized = stem != raw_stem
    if sanitized:
        LOGGER.debug(
            "sanitized remote file name",
            extra={"stage": "naming", "original": raw_stem, "sanitized": stem, "url": url},
        )

    extension = explicit_ext or url_ext
    if explicit_ext:
        extension = sanitize_file_name(explicit_ext, fallback="")
        extension = normalize_extension(extension.lstrip("."))
    return ResolvedName(
        stem=stem,
        extension=extension,
        needs_sniff=not extension,
        sanitized=sanitized,
    )

from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

OCTET_STREAM = "application/octet-stream"


@dataclass(frozen=True, slots=True)
class SniffResult:
    """Outcome of content sniffing.

    Security notes:
    - Derived from the leading bytes only; filename and claimed type are ignored.

    """

    mime_type: str
    confidence: str  # "high" | "medium" | "low"
    is_binary: bool


def sniff_mime(path: Union[str, Path], *, prefix_bytes: int = 512) -> SniffResult:
    """Detect the real MIME type of a file from its content.

    Order:
    1) magic numbers (high confidence)
    2) structured text heuristics: JSON, XML (medium)
    3) text/plain vs application/octet-stream (low)

    Security notes:
    - Reads at most prefix_bytes from the file.
    - Never trusts the filename or a caller supplied type.

    Time:  O(prefix_bytes)
    Space: O(prefix_bytes)
    """

    with open(path, "rb") as f:
        head = f.read(prefix_bytes)
    return sniff_bytes(head)


def sniff_bytes(head: bytes) -> SniffResult:
    """Sniff a bounded prefix already held in memory."""

    magic = _magic_mime(head)
    if magic is not None:
        return SniffResult(mime_type=magic, confidence="high", is_binary=True)

    text = _as_text(head)
    if text is None:
        return SniffResult(mime_type=OCTET_STREAM, confidence="low", is_binary=True)

    structured = _structured_text_mime(text)
    if structured is not None:
        return SniffResult(mime_type=structured, confidence="medium", is_binary=False)

    return SniffResult(mime_type="text/plain", confidence="low", is_binary=False)


def _magic_mime(prefix: bytes) -> Optional[str]:
    """Detect mime from common magic headers."""

    if prefix.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if prefix.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if len(prefix) >= 12 and prefix[:4] == b"RIFF" and prefix[8:12] == b"WEBP":
        return "image/webp"
    if prefix.startswith(b"GIF87a") or prefix.startswith(b"GIF89a"):
        return "image/gif"
    if prefix.startswith(b"BM"):
        return "image/bmp"
    if prefix.startswith(b"II*\x00") or prefix.startswith(b"MM\x00*"):
        return "image/tiff"
    if prefix.startswith(b"%PDF-"):
        return "application/pdf"
    if prefix.startswith(b"PK\x03\x04"):
        return "application/zip"
    if prefix.startswith(b"\x1f\x8b"):
        return "application/gzip"
    if prefix.startswith(b"\x7fELF"):
        return "application/x-elf"
    if prefix.startswith(b"MZ"):
        return "application/x-msdownload"
    return None


def _as_text(prefix: bytes) -> Optional[str]:
    """Return the prefix as text if it looks like UTF-8 text, else None."""

    if b"\x00" in prefix:
        return None
    p = prefix[3:] if prefix.startswith(b"\xef\xbb\xbf") else prefix
    try:
        return p.decode("utf-8")
    except UnicodeDecodeError as e:
        # A multi-byte sequence cut by the prefix bound is still text.
        if e.start >= len(p) - 3:
            return p[: e.start].decode("utf-8", errors="strict")
        return None


def _structured_text_mime(text: str) -> Optional[str]:
    """Heuristic JSON / XML detection.

    Security notes:
    - Does not parse; only looks at the first non-whitespace characters.

    """

    t = text.lstrip()
    if not t:
        return None
    if t.startswith("{") or t.startswith("["):
        return "application/json"
    if t.startswith("<?xml") or (t.startswith("<") and not t.lower().startswith("<!doctype html")):
        if t.lower().startswith("<svg") or "<svg" in t[:256].lower():
            return "image/svg+xml"
        if t.lower().startswith("<html"):
            return "text/html"
        return "application/xml"
    if t.lower().startswith("<!doctype html"):
        return "text/html"
    return None


def mime_matches(pattern: str, mime: str) -> bool:
    """Match a mime against a simple pattern.

    Supported patterns:
    - "*" or "*/*" matches all
    - "type/*" matches any subtype
    - exact match

    """

    pat = pattern.strip().lower()
    m = mime.strip().lower()

    if pat in {"*", "*/*"}:
        return True
    if "*" in pat:
        return fnmatch.fnmatchcase(m, pat)
    return pat == m

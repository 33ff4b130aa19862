from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from safeingest.core.sniffing import mime_matches
from safeingest.core.state.context import FileContext

from .base import FileFilter

TEXT_MIMES = ("text/*", "application/json", "application/xml")


def _is_text(mime: str) -> bool:
    return any(mime_matches(p, mime) for p in TEXT_MIMES)


def _dimensions(context: FileContext) -> Optional[Tuple[int, int]]:
    w = context.get_meta("width")
    h = context.get_meta("height")
    if not isinstance(w, int) or not isinstance(h, int):
        return None
    return w, h


@dataclass(frozen=True)
class AllowedMimes(FileFilter):
    mimes: Tuple[str, ...]
    rule_id: str = "allowed-mimes"

    def check(self, context: FileContext) -> Optional[str]:
        if any(mime_matches(p, context.trusted_mime) for p in self.mimes):
            return None
        return f"type {context.trusted_mime} is not allowed"


@dataclass(frozen=True)
class DenyMimes(FileFilter):
    mimes: Tuple[str, ...]
    rule_id: str = "deny-mimes"

    def check(self, context: FileContext) -> Optional[str]:
        if any(mime_matches(p, context.trusted_mime) for p in self.mimes):
            return f"type {context.trusted_mime} is denied"
        return None


@dataclass(frozen=True)
class AllowedExtensions(FileFilter):
    extensions: Tuple[str, ...]
    rule_id: str = "allowed-extensions"

    def check(self, context: FileContext) -> Optional[str]:
        if context.trusted_extension.lower() in {e.lower().lstrip(".") for e in self.extensions}:
            return None
        return f"extension {context.trusted_extension} is not allowed"


@dataclass(frozen=True)
class DenyExtensions(FileFilter):
    extensions: Tuple[str, ...]
    rule_id: str = "deny-extensions"

    def check(self, context: FileContext) -> Optional[str]:
        if context.trusted_extension.lower() in {e.lower().lstrip(".") for e in self.extensions}:
            return f"extension {context.trusted_extension} is denied"
        return None


@dataclass(frozen=True)
class MaxFileSize(FileFilter):
    max_bytes: int
    rule_id: str = "max-file-size"

    def check(self, context: FileContext) -> Optional[str]:
        if context.normalized_size > self.max_bytes:
            return f"file is {context.normalized_size} bytes, maximum is {self.max_bytes}"
        return None


@dataclass(frozen=True)
class MinFileSize(FileFilter):
    min_bytes: int
    rule_id: str = "min-file-size"

    def check(self, context: FileContext) -> Optional[str]:
        if context.normalized_size < self.min_bytes:
            return f"file is {context.normalized_size} bytes, minimum is {self.min_bytes}"
        return None


@dataclass(frozen=True)
class FilenameLength(FileFilter):
    """Bounds the sanitized display name (the only client name that is kept)."""

    max_length: int = 120
    min_length: int = 1
    rule_id: str = "filename-length"

    def check(self, context: FileContext) -> Optional[str]:
        n = len(context.display_name)
        if n < self.min_length or n > self.max_length:
            return f"filename length {n} outside [{self.min_length}, {self.max_length}]"
        return None


@dataclass(frozen=True)
class BinaryOnly(FileFilter):
    rule_id: str = "binary-only"

    def check(self, context: FileContext) -> Optional[str]:
        if _is_text(context.trusted_mime):
            return "text content is not accepted"
        return None


@dataclass(frozen=True)
class TextOnly(FileFilter):
    rule_id: str = "text-only"

    def check(self, context: FileContext) -> Optional[str]:
        if not _is_text(context.trusted_mime):
            return "binary content is not accepted"
        return None


@dataclass(frozen=True)
class MaxDimensions(FileFilter):
    max_width: Optional[int] = None
    max_height: Optional[int] = None
    rule_id: str = "max-dimensions"

    def check(self, context: FileContext) -> Optional[str]:
        dims = _dimensions(context)
        if dims is None:
            return "image dimensions are unknown"
        w, h = dims
        if self.max_width is not None and w > self.max_width:
            return f"width {w} exceeds {self.max_width}"
        if self.max_height is not None and h > self.max_height:
            return f"height {h} exceeds {self.max_height}"
        return None


@dataclass(frozen=True)
class MinDimensions(FileFilter):
    min_width: Optional[int] = None
    min_height: Optional[int] = None
    rule_id: str = "min-dimensions"

    def check(self, context: FileContext) -> Optional[str]:
        dims = _dimensions(context)
        if dims is None:
            return "image dimensions are unknown"
        w, h = dims
        if self.min_width is not None and w < self.min_width:
            return f"width {w} is below {self.min_width}"
        if self.min_height is not None and h < self.min_height:
            return f"height {h} is below {self.min_height}"
        return None


@dataclass(frozen=True)
class AspectRatioRange(FileFilter):
    """Accepts width / height within [min_ratio, max_ratio]."""

    min_ratio: float = 0.0
    max_ratio: float = float("inf")
    rule_id: str = "aspect-ratio"

    def check(self, context: FileContext) -> Optional[str]:
        dims = _dimensions(context)
        if dims is None:
            return "image dimensions are unknown"
        ratio = dims[0] / dims[1]
        if ratio < self.min_ratio or ratio > self.max_ratio:
            return f"aspect ratio {ratio:.3f} outside [{self.min_ratio}, {self.max_ratio}]"
        return None

from __future__ import annotations

import re
from dataclasses import dataclass, replace

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*$")
_DRIVE_RE = re.compile(r"^[a-zA-Z]:")

RESERVED_NAMES = frozenset(
    {"con", "prn", "aux", "nul"}
    | {f"com{i}" for i in range(1, 10)}
    | {f"lpt{i}" for i in range(1, 10)}
)


class InvalidPathError(ValueError):
    pass


def normalize_relative_path(path: str) -> str:
    """Normalize a storage-relative path to "a/b/c" form.

    Security notes:
    - Rejects NUL bytes, absolute paths, drive letters, UNC prefixes and "..".
    - Rejects reserved device names (con, nul, com1, ...) in any segment.
    - Empty and "." segments are dropped; backslashes count as separators.

    """

    if "\x00" in path:
        raise InvalidPathError("path contains a NUL byte")
    p = path.replace("\\", "/")
    if p.startswith("/") or _DRIVE_RE.match(p):
        raise InvalidPathError(f"path must be relative: {path!r}")

    parts = []
    for seg in p.split("/"):
        if seg in ("", "."):
            continue
        if seg == "..":
            raise InvalidPathError(f"path traversal in {path!r}")
        if seg.split(".", 1)[0].lower() in RESERVED_NAMES:
            raise InvalidPathError(f"reserved name {seg!r} in path")
        parts.append(seg)
    return "/".join(parts)


@dataclass(frozen=True)
class Uri:
    """scheme://path/filename, e.g. local://images/ab/abcd.png"""

    scheme: str
    path: str = ""
    filename: str = ""

    def __post_init__(self) -> None:
        if not _SCHEME_RE.match(self.scheme or ""):
            raise InvalidPathError(f"invalid scheme: {self.scheme!r}")
        if "/" in self.filename or "\\" in self.filename:
            raise InvalidPathError("filename must not contain separators")
        if self.filename in (".", ".."):
            raise InvalidPathError("invalid filename")
        object.__setattr__(self, "path", normalize_relative_path(self.path))
        if self.filename:
            normalize_relative_path(self.filename)

    @classmethod
    def from_string(cls, value: str) -> "Uri":
        scheme, sep, rest = value.partition("://")
        if not sep:
            raise InvalidPathError(f"not a URI: {value!r}")
        rel = normalize_relative_path(rest)
        directory, _, filename = rel.rpartition("/")
        return cls(scheme=scheme, path=directory, filename=filename)

    @classmethod
    def from_parts(cls, scheme: str, path: str, filename: str = "") -> "Uri":
        return cls(scheme=scheme, path=path, filename=filename)

    @property
    def relative(self) -> str:
        if self.path and self.filename:
            return f"{self.path}/{self.filename}"
        return self.path or self.filename

    def with_path(self, path: str) -> "Uri":
        return replace(self, path=path)

    def with_filename(self, filename: str) -> "Uri":
        return replace(self, filename=filename)

    def __str__(self) -> str:
        return f"{self.scheme}://{self.relative}"

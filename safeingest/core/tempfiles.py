from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from threading import Lock
from typing import Any, List, Optional

from safeingest.core.errors import MissingPayloadError, SizeViolation, UnsupportedSourceError

log = logging.getLogger("safeingest.tempfiles")

_CHUNK = 1024 * 1024


class TempScope:
    """Owns every temporary file created while processing one upload.

    Use as a context manager; all files are removed on exit, whether the upload
    succeeded, was rejected by a filter, or failed with an error.

    Security notes:
    - Files are created in a private directory (mkdtemp, mode 0700).
    - Names are random; client filenames never reach the filesystem.

    """

    def __init__(self, base_dir: Optional[str] = None, *, prefix: str = "safeingest_") -> None:
        self._base_dir = base_dir
        self._prefix = prefix
        self._dir: Optional[Path] = None
        self._lock = Lock()
        self._closed = False

    @property
    def directory(self) -> Path:
        with self._lock:
            if self._closed:
                raise RuntimeError("TempScope is closed")
            if self._dir is None:
                if self._base_dir:
                    os.makedirs(self._base_dir, exist_ok=True)
                self._dir = Path(tempfile.mkdtemp(prefix=self._prefix, dir=self._base_dir))
            return self._dir

    def new_path(self, suffix: str = "") -> Path:
        """Reserve a fresh empty file inside the scope and return its path."""
        fd, name = tempfile.mkstemp(suffix=suffix, dir=str(self.directory))
        os.close(fd)
        return Path(name)

    def cleanup(self) -> None:
        with self._lock:
            self._closed = True
            d, self._dir = self._dir, None
        if d is not None:
            shutil.rmtree(d, ignore_errors=True)
            log.debug("temp_scope_cleaned", extra={"temp_dir": str(d)})

    def __enter__(self) -> "TempScope":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.cleanup()


def materialize(source: Any, scope: TempScope, *, max_bytes: Optional[int] = None) -> Path:
    """Return an addressable path for a payload source.

    - str / Path: used in place (must be a regular file)
    - bytes: written to a scoped temp file
    - readable binary stream: copied in chunks to a scoped temp file

    Security notes:
    - Copies are bounded by max_bytes; overflow raises SizeViolation without
      buffering the rest of the stream.

    """

    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.is_file():
            raise MissingPayloadError("payload source is not a readable file", rule="source_path")
        return path

    if isinstance(source, (bytes, bytearray, memoryview)):
        data = bytes(source)
        if max_bytes is not None and len(data) > max_bytes:
            raise SizeViolation("payload exceeds size ceiling", rule="actual_size")
        out = scope.new_path(".upload")
        out.write_bytes(data)
        return out

    read = getattr(source, "read", None)
    if callable(read):
        seekable = getattr(source, "seekable", None)
        if callable(seekable) and seekable():
            source.seek(0)
        out = scope.new_path(".upload")
        copy_stream(source, out, max_bytes=max_bytes)
        return out

    raise UnsupportedSourceError(f"cannot materialize source of type {type(source).__name__}")


def copy_stream(stream: Any, out: Path, *, max_bytes: Optional[int] = None) -> int:
    total = 0
    with out.open("wb") as f:
        while True:
            chunk = stream.read(_CHUNK)
            if not chunk:
                break
            total += len(chunk)
            if max_bytes is not None and total > max_bytes:
                raise SizeViolation("payload exceeds size ceiling", rule="actual_size")
            f.write(chunk)
    return total


def list_temp_files(scope: TempScope) -> List[Path]:
    """List files currently owned by a scope (used by diagnostics and tests)."""
    d = scope._dir
    if d is None or not d.exists():
        return []
    return sorted(p for p in d.iterdir() if p.is_file())

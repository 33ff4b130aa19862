from __future__ import annotations

import os
import shutil
import stat as stat_mod
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Protocol, Union

from safeingest.core.errors import StorageFailure
from safeingest.core.state.context import FileContext

PathLike = Union[str, Path]


@dataclass(frozen=True, slots=True)
class StoreStats:
    name: str
    extension: str
    path: str
    type: str  # "file" | "dir" | "other"
    size: int
    modified: datetime
    created: datetime
    accessed: datetime
    permissions: str  # octal, e.g. "0644"
    inode: int


class Store(Protocol):
    """Byte storage over absolute paths. No scheme parsing happens here."""

    def write(self, context: FileContext, path: PathLike) -> None: ...

    def read(self, path: PathLike) -> bytes: ...

    def exists(self, path: PathLike) -> bool: ...

    def delete(self, path: PathLike) -> None: ...

    def copy(self, source: PathLike, destination: PathLike) -> None: ...

    def rename(self, source: PathLike, destination: PathLike) -> None: ...

    def append(self, path: PathLike, data: bytes) -> None: ...

    def list(self, directory: PathLike) -> List[str]: ...

    def stats(self, path: PathLike) -> StoreStats: ...


def _absolute(path: PathLike) -> Path:
    p = Path(path)
    if not p.is_absolute():
        raise StorageFailure(f"store paths must be absolute: {path}", rule="relative_path")
    return p


def _ts(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class LocalStore:
    """Store backed by the local filesystem.

    Security notes:
    - Only absolute paths are accepted; relative paths are refused, never resolved
      against the working directory.
    - write() copies the canonical file of a proved context; bytes land under a
      temporary name and are moved into place atomically.

    """

    def write(self, context: FileContext, path: PathLike) -> None:
        context.assert_proved()
        dest = _absolute(path)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".incoming_", dir=str(dest.parent))
            os.close(fd)
            try:
                shutil.copyfile(context.normalized_path, tmp)
                os.replace(tmp, dest)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageFailure(f"failed to write {dest}: {e.strerror or e}", rule="write") from e

    def read(self, path: PathLike) -> bytes:
        p = _absolute(path)
        if not p.is_file():
            raise StorageFailure(f"file not found: {p}", rule="not_found")
        try:
            return p.read_bytes()
        except OSError as e:
            raise StorageFailure(f"failed to read {p}: {e.strerror or e}", rule="read") from e

    def exists(self, path: PathLike) -> bool:
        return _absolute(path).is_file()

    def delete(self, path: PathLike) -> None:
        p = _absolute(path)
        try:
            p.unlink(missing_ok=True)
        except OSError as e:
            raise StorageFailure(f"failed to delete {p}: {e.strerror or e}", rule="delete") from e

    def copy(self, source: PathLike, destination: PathLike) -> None:
        src, dst = _absolute(source), _absolute(destination)
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, dst)
        except OSError as e:
            raise StorageFailure(f"failed to copy {src}: {e.strerror or e}", rule="copy") from e

    def rename(self, source: PathLike, destination: PathLike) -> None:
        src, dst = _absolute(source), _absolute(destination)
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            os.replace(src, dst)
        except OSError as e:
            raise StorageFailure(f"failed to rename {src}: {e.strerror or e}", rule="rename") from e

    def append(self, path: PathLike, data: bytes) -> None:
        p = _absolute(path)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            with p.open("ab") as f:
                f.write(data)
        except OSError as e:
            raise StorageFailure(f"failed to append to {p}: {e.strerror or e}", rule="append") from e

    def list(self, directory: PathLike) -> List[str]:
        d = _absolute(directory)
        if not d.is_dir():
            return []
        try:
            return sorted(entry.name for entry in d.iterdir())
        except OSError as e:
            raise StorageFailure(f"failed to list {d}: {e.strerror or e}", rule="list") from e

    def stats(self, path: PathLike) -> StoreStats:
        p = _absolute(path)
        try:
            st = p.stat()
        except OSError as e:
            raise StorageFailure(f"failed to stat {p}: {e.strerror or e}", rule="stats") from e

        if stat_mod.S_ISREG(st.st_mode):
            kind = "file"
        elif stat_mod.S_ISDIR(st.st_mode):
            kind = "dir"
        else:
            kind = "other"

        return StoreStats(
            name=p.name,
            extension=p.suffix.lstrip("."),
            path=str(p),
            type=kind,
            size=int(st.st_size),
            modified=_ts(st.st_mtime),
            created=_ts(getattr(st, "st_birthtime", st.st_ctime)),
            accessed=_ts(st.st_atime),
            permissions=format(stat_mod.S_IMODE(st.st_mode), "04o"),
            inode=int(st.st_ino),
        )

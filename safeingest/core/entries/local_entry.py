from __future__ import annotations

import io
import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from safeingest.core.errors import MissingPayloadError, UnsupportedSourceError
from safeingest.core.state.payload import DEFAULT_CLAIMED_MIME, Payload


@dataclass(frozen=True)
class LocalEntry:
    """Entry adapter for in-process sources: a path, raw bytes or a binary stream.

    The claimed MIME defaults to an extension-based guess. It stays advisory.

    """

    claimed_name: Optional[str] = None
    claimed_mime: Optional[str] = None

    def to_payload(self, raw: Any) -> Payload:
        if raw is None:
            raise MissingPayloadError("no source provided")

        if isinstance(raw, (str, Path)):
            path = Path(raw)
            if not path.is_file():
                raise MissingPayloadError("source path is not a file", rule="path")
            name = self.claimed_name or path.name
            return Payload(
                claimed_name=name,
                claimed_mime=self._claimed_mime(name),
                claimed_size=int(os.stat(path).st_size),
                source=str(path),
            )

        if isinstance(raw, (bytes, bytearray, memoryview)):
            data = bytes(raw)
            name = self.claimed_name or "upload"
            return Payload(
                claimed_name=name,
                claimed_mime=self._claimed_mime(name),
                claimed_size=len(data),
                source=data,
            )

        if isinstance(raw, io.IOBase) or hasattr(raw, "read"):
            name = self.claimed_name or str(getattr(raw, "name", "") or "upload")
            return Payload(
                claimed_name=os.path.basename(name),
                claimed_mime=self._claimed_mime(name),
                claimed_size=0,
                source=raw,
            )

        raise UnsupportedSourceError(f"unsupported source: {type(raw).__name__}", rule="input_type")

    def _claimed_mime(self, name: str) -> str:
        if self.claimed_mime:
            return self.claimed_mime
        guessed, _enc = mimetypes.guess_type(name)
        return guessed or DEFAULT_CLAIMED_MIME

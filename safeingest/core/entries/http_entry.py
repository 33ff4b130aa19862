from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional

from safeingest.core.errors import MissingPayloadError, UnsupportedSourceError
from safeingest.core.state.payload import DEFAULT_CLAIMED_MIME, Payload

# Transfer-protocol status code for a complete upload.
UPLOAD_OK = 0

_UNSET: Any = object()


def _looks_like_upload(obj: Any) -> bool:
    return hasattr(obj, "filename") and hasattr(obj, "file")


def _coerce_size(raw: Any) -> int:
    try:
        size = int(raw)
    except (TypeError, ValueError):
        return 0
    return size if size >= 0 else 0


@dataclass(frozen=True)
class HttpEntry:
    """Entry adapter for HTTP uploads.

    Accepts either a raw transfer record (a mapping with name/type/size/tmp_name
    and an optional error code) or a wrapped upload object exposing
    filename/content_type/size/file (e.g. a FastAPI UploadFile).

    Security notes:
    - Never reads or validates file content; it only repackages claims.
    - Sizes that cannot be parsed are reported as 0 and rejected later by proof.

    """

    raw: Any = None

    def with_input(self, raw: Any) -> "HttpEntry":
        return replace(self, raw=raw)

    def to_payload(self, raw: Any = _UNSET) -> Payload:
        value = self.raw if raw is _UNSET else raw

        if value is None:
            raise MissingPayloadError("no uploaded file provided")
        if isinstance(value, Mapping):
            return self._from_transfer_record(value)
        if _looks_like_upload(value):
            return self._from_upload(value)

        raise UnsupportedSourceError(
            f"unsupported upload input: {type(value).__name__}", rule="input_type"
        )

    def _from_transfer_record(self, record: Mapping[str, Any]) -> Payload:
        error = record.get("error")
        if error is not None:
            try:
                error = int(error)
            except (TypeError, ValueError):
                raise MissingPayloadError("transfer record has an unreadable error code", rule="transfer_error")
            if error != UPLOAD_OK:
                raise MissingPayloadError(f"upload failed with transfer error {error}", rule="transfer_error")

        tmp_name = record.get("tmp_name")
        if not tmp_name:
            raise MissingPayloadError("transfer record has no temporary location", rule="tmp_name")

        return Payload(
            claimed_name=str(record.get("name") or ""),
            claimed_mime=str(record.get("type") or DEFAULT_CLAIMED_MIME),
            claimed_size=_coerce_size(record.get("size")),
            source=str(tmp_name),
            upload_error=error,
        )

    def _from_upload(self, upload: Any) -> Payload:
        stream = getattr(upload, "file", None)
        if stream is None:
            raise MissingPayloadError("upload object has no attached stream", rule="stream")

        size: Optional[int] = getattr(upload, "size", None)
        return Payload(
            claimed_name=str(getattr(upload, "filename", None) or ""),
            claimed_mime=str(getattr(upload, "content_type", None) or DEFAULT_CLAIMED_MIME),
            claimed_size=_coerce_size(size),
            source=stream,
        )

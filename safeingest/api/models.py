from __future__ import annotations

from pydantic import BaseModel, Field
from typing import Any, Dict, Optional

from safeingest.core.state.record import FileRecord


class ApiError(BaseModel):
    """Standard API error payload."""

    error: str
    detail: Optional[str] = None
    stage: Optional[str] = None


class VariantOut(BaseModel):
    name: str
    uri: str
    storage_path: str
    mime: str
    extension: str
    size: int
    content_hash: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class FileRecordOut(BaseModel):
    """A stored file as exposed over HTTP.

    `ref` is the id in URL form (scheme/path), usable in /files/{ref}.

    """

    id: str
    ref: str
    namespace: str
    storage_path: str
    mime: str
    extension: str
    size: int
    content_hash: str
    original_name: str
    created_at: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    variants: Dict[str, VariantOut] = Field(default_factory=dict)
    variant_errors: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_record(cls, record: FileRecord) -> "FileRecordOut":
        data = record.to_dict()
        data["ref"] = record.id.replace("://", "/", 1)
        return cls(**data)

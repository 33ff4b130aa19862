from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from .context import FileContext


@dataclass(frozen=True)
class VariantRecord:
    """Persisted description of one derived artifact."""

    name: str
    uri: str
    storage_path: str
    mime: str
    extension: str
    size: int
    content_hash: str
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata or {})))

    @classmethod
    def from_context(cls, name: str, context: FileContext, *, uri: str, storage_path: str) -> "VariantRecord":
        context.assert_proved()
        return cls(
            name=name,
            uri=uri,
            storage_path=storage_path,
            mime=str(context.trusted_mime),
            extension=str(context.trusted_extension),
            size=int(context.normalized_size or 0),
            content_hash=str(context.content_hash),
            metadata=dict(context.metadata),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "uri": self.uri,
            "storage_path": self.storage_path,
            "mime": self.mime,
            "extension": self.extension,
            "size": self.size,
            "content_hash": self.content_hash,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VariantRecord":
        return cls(
            name=str(data["name"]),
            uri=str(data["uri"]),
            storage_path=str(data["storage_path"]),
            mime=str(data["mime"]),
            extension=str(data["extension"]),
            size=int(data["size"]),
            content_hash=str(data["content_hash"]),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class FileRecord:
    """
    Persisted metadata for an ingested file. The only artifact exposed outside the core.

    Security invariants
    - Built from a proved FileContext only (trusted mime/extension/size/hash)
    - id is the canonical storage URI, stable for identical canonical bytes
    - original_name is a display stem; it never addresses storage
    """

    id: str
    namespace: str
    storage_path: str
    mime: str
    extension: str
    size: int
    content_hash: str
    original_name: str
    created_at: datetime
    metadata: Mapping[str, Any] = field(default_factory=dict)
    variants: Mapping[str, VariantRecord] = field(default_factory=dict)
    variant_errors: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata or {})))
        object.__setattr__(self, "variants", MappingProxyType(dict(self.variants or {})))
        object.__setattr__(self, "variant_errors", MappingProxyType(dict(self.variant_errors or {})))

    @classmethod
    def from_context(
        cls,
        context: FileContext,
        *,
        uri: str,
        storage_path: str,
        namespace: str,
        created_at: Optional[datetime] = None,
    ) -> "FileRecord":
        context.assert_proved()
        return cls(
            id=uri,
            namespace=namespace,
            storage_path=storage_path,
            mime=str(context.trusted_mime),
            extension=str(context.trusted_extension),
            size=int(context.normalized_size or 0),
            content_hash=str(context.content_hash),
            original_name=context.display_name,
            created_at=created_at or datetime.now(timezone.utc),
            metadata=dict(context.metadata),
        )

    def with_variants(
        self,
        variants: Mapping[str, VariantRecord],
        errors: Optional[Mapping[str, str]] = None,
    ) -> "FileRecord":
        return replace(self, variants=dict(variants), variant_errors=dict(errors or {}))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "namespace": self.namespace,
            "storage_path": self.storage_path,
            "mime": self.mime,
            "extension": self.extension,
            "size": self.size,
            "content_hash": self.content_hash,
            "original_name": self.original_name,
            "created_at": self.created_at.isoformat(),
            "metadata": dict(self.metadata),
            "variants": {k: v.to_dict() for k, v in sorted(self.variants.items())},
            "variant_errors": dict(sorted(self.variant_errors.items())),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FileRecord":
        """Rebuild a record from to_dict() output.

        Security notes:
        - Input may come from a database or a file; required keys are validated.

        """

        required = {"id", "namespace", "storage_path", "mime", "extension", "size", "content_hash", "created_at"}
        missing = required - set(data.keys())
        if missing:
            raise ValueError(f"record missing keys: {sorted(missing)}")

        variants = {
            str(name): VariantRecord.from_dict(v) for name, v in (data.get("variants") or {}).items()
        }
        return cls(
            id=str(data["id"]),
            namespace=str(data["namespace"]),
            storage_path=str(data["storage_path"]),
            mime=str(data["mime"]),
            extension=str(data["extension"]),
            size=int(data["size"]),
            content_hash=str(data["content_hash"]),
            original_name=str(data.get("original_name") or ""),
            created_at=datetime.fromisoformat(str(data["created_at"])),
            metadata=dict(data.get("metadata") or {}),
            variants=variants,
            variant_errors={str(k): str(v) for k, v in (data.get("variant_errors") or {}).items()},
        )

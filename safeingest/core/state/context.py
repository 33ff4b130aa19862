from __future__ import annotations

import os
import unicodedata
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from safeingest.core.errors import UnprovedContextError

from .payload import Payload

_SCALAR_TYPES = (str, int, float, bool, type(None))


def _freeze_metadata(metadata: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in (metadata or {}).items():
        if not isinstance(v, _SCALAR_TYPES):
            raise TypeError(f"metadata value for {k!r} must be a scalar, got {type(v).__name__}")
        out[str(k)] = v
    return MappingProxyType(out)


def _freeze_variants(variants: Optional[Mapping[str, "FileContext"]]) -> Mapping[str, "FileContext"]:
    out: Dict[str, FileContext] = {}
    for name, ctx in (variants or {}).items():
        if not isinstance(ctx, FileContext):
            raise TypeError("variants must map names to FileContext instances")
        out[str(name)] = ctx
    return MappingProxyType(out)


def display_name(claimed_name: str, *, max_len: int = 120) -> str:
    """Reduce a client-supplied filename to a safe display stem.

    The result is never used to build storage paths; it is kept for humans only.

    Security notes:
    - Strips directories (both separator styles), control characters and the extension.

    """

    base = (claimed_name or "").replace("\\", "/").rsplit("/", 1)[-1]
    base = unicodedata.normalize("NFC", base)
    base = "".join(ch for ch in base if unicodedata.category(ch)[0] != "C")
    stem, _ext = os.path.splitext(base)
    stem = stem.strip().strip(".")
    return (stem or "file")[:max_len]


@dataclass(frozen=True)
class FileContext:
    """
    Immutable value carried through the whole ingestion pipeline.

    A context accumulates data in layers:
    - claimed: name, mime and size as reported by the origin
    - proved: trusted mime/extension plus the canonical re-encoded file
    - normalized: canonical file committed and re-verified
    - variants: named derived contexts

    Security invariants
    - Every change returns a new instance (dataclasses.replace)
    - trusted_* fields are only populated by a strategy proof
    - a proved context always carries the canonical path, size and hash
    - claimed_* fields are advisory and must not drive storage decisions
    """

    claimed_name: str
    claimed_mime: str
    claimed_size: int
    source: Any

    proved: bool = False
    normalized: bool = False
    trusted_mime: Optional[str] = None
    trusted_extension: Optional[str] = None
    normalized_path: Optional[Path] = None
    normalized_size: Optional[int] = None
    content_hash: Optional[str] = None

    metadata: Mapping[str, Any] = field(default_factory=dict)
    variants: Mapping[str, "FileContext"] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", _freeze_metadata(self.metadata))
        object.__setattr__(self, "variants", _freeze_variants(self.variants))
        if self.normalized_path is not None:
            object.__setattr__(self, "normalized_path", Path(self.normalized_path))

        if self.proved:
            missing = [
                name
                for name in (
                    "trusted_mime",
                    "trusted_extension",
                    "normalized_path",
                    "normalized_size",
                    "content_hash",
                )
                if getattr(self, name) is None
            ]
            if missing:
                raise ValueError(f"proved FileContext is missing trusted fields: {missing}")
        elif self.normalized:
            raise ValueError("an unproved FileContext cannot be normalized")

    @classmethod
    def from_payload(cls, payload: Payload) -> "FileContext":
        return cls(
            claimed_name=payload.claimed_name,
            claimed_mime=payload.claimed_mime,
            claimed_size=payload.claimed_size,
            source=payload.source,
        )

    def assert_proved(self) -> "FileContext":
        """Return self if proved, otherwise raise UnprovedContextError."""
        if not self.proved:
            raise UnprovedContextError("FileContext is not proved")
        return self

    @property
    def display_name(self) -> str:
        return display_name(self.claimed_name)

    def with_proof(
        self,
        *,
        trusted_mime: str,
        trusted_extension: str,
        normalized_path: Path,
        normalized_size: int,
        content_hash: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> "FileContext":
        """Return a proved successor. Only strategies call this."""

        merged = dict(self.metadata)
        merged.update(metadata or {})
        return replace(
            self,
            proved=True,
            normalized=False,
            trusted_mime=trusted_mime,
            trusted_extension=trusted_extension,
            normalized_path=Path(normalized_path),
            normalized_size=int(normalized_size),
            content_hash=content_hash,
            metadata=merged,
        )

    def with_normalized(self) -> "FileContext":
        self.assert_proved()
        if self.normalized:
            return self
        return replace(self, normalized=True)

    def with_canonical(
        self,
        *,
        normalized_path: Path,
        normalized_size: int,
        content_hash: str,
        trusted_mime: Optional[str] = None,
        trusted_extension: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> "FileContext":
        """Return a successor pointing at a new canonical file.

        Used by transformers: the output is produced by a trusted encoder from an
        already proved context, so it stays proved. Variants of the input are not
        carried over to the output.

        """

        self.assert_proved()
        merged = dict(self.metadata)
        merged.update(metadata or {})
        return replace(
            self,
            normalized=True,
            trusted_mime=trusted_mime or self.trusted_mime,
            trusted_extension=trusted_extension or self.trusted_extension,
            normalized_path=Path(normalized_path),
            normalized_size=int(normalized_size),
            content_hash=content_hash,
            metadata=merged,
            variants={},
        )

    def with_meta(self, key: str, value: Any) -> "FileContext":
        merged = dict(self.metadata)
        merged[str(key)] = value
        return replace(self, metadata=merged)

    def with_variant(self, name: str, variant: "FileContext") -> "FileContext":
        self.assert_proved()
        variant.assert_proved()
        merged = dict(self.variants)
        merged[str(name)] = variant
        return replace(self, variants=merged)

    def get_meta(self, key: str, default: Any = None) -> Any:
        return self.metadata.get(key, default)

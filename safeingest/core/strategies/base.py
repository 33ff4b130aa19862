from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple

from safeingest.core.errors import DecodeError, SizeViolation, SpoofedTypeError
from safeingest.core.hashing import sha256_file
from safeingest.core.sniffing import sniff_mime
from safeingest.core.state.context import FileContext
from safeingest.core.tempfiles import TempScope, materialize

log = logging.getLogger("safeingest.strategies")


class FileStrategy:
    """Trust boundary for one file family.

    prove() runs a fixed sequence:
      (a) claimed size sanity check against the family ceiling
      (b) materialize the source to an addressable path (scoped temp file)
      (c) sniff the real MIME type from the bytes
      (d) reject sniffed types outside the allow-list (defeats MIME spoofing)
      (e) + (f) family specific structural checks, full decode and re-encode
          into a fresh canonical file (subclass hook: _canonicalize)
      (g) size and sha256 of the canonical output
      (h) return a proved FileContext

    Security notes:
    - The original bytes are never forwarded; only re-encoded output is.
    - Subclasses must build the canonical file from decoded values, never by
      copying input bytes.

    """

    family: str = "file"
    allowed_mimes: Mapping[str, str] = {}

    def __init__(self, *, max_bytes: int) -> None:
        if int(max_bytes) <= 0:
            raise ValueError("max_bytes must be positive")
        self.max_bytes = int(max_bytes)

    def prove(self, context: FileContext, *, scope: TempScope) -> FileContext:
        if context.proved:
            return context

        # 0 means the origin could not report a size; the actual size decides.
        claimed = context.claimed_size
        if claimed > self.max_bytes:
            raise SizeViolation(
                f"claimed size {claimed} exceeds {self.max_bytes} for {self.family}",
                rule="claimed_size",
            )

        path = materialize(context.source, scope, max_bytes=self.max_bytes)

        actual = path.stat().st_size
        if actual <= 0 or actual > self.max_bytes:
            raise SizeViolation(
                f"actual size {actual} outside (0, {self.max_bytes}] for {self.family}",
                rule="actual_size",
            )

        sniffed = sniff_mime(path).mime_type
        extension = self.allowed_mimes.get(sniffed)
        if extension is None:
            log.info(
                "spoofed_type_rejected",
                extra={"family": self.family, "sniffed_mime": sniffed},
            )
            raise SpoofedTypeError(
                f"content type {sniffed} is not accepted by the {self.family} strategy",
                rule="sniffed_mime",
            )

        canonical, metadata = self._canonicalize(path, sniffed, scope)

        return context.with_proof(
            trusted_mime=sniffed,
            trusted_extension=extension,
            normalized_path=canonical,
            normalized_size=canonical.stat().st_size,
            content_hash=sha256_file(canonical),
            metadata=metadata,
        )

    def normalize(self, context: FileContext) -> FileContext:
        """Commit the canonical form produced by prove().

        Proof and canonicalization are fused for every built-in family, so this
        re-verifies the canonical file against its hash and marks the context.
        Idempotent for the same proved context.

        """

        context.assert_proved()
        path = context.normalized_path
        if path is None or not Path(path).is_file():
            raise DecodeError("canonical artifact is missing", rule="canonical_integrity")
        if sha256_file(path) != context.content_hash:
            raise DecodeError("canonical artifact changed after proof", rule="canonical_integrity")
        return context.with_normalized()

    def _canonicalize(self, path: Path, mime: str, scope: TempScope) -> Tuple[Path, Dict[str, Any]]:
        raise NotImplementedError

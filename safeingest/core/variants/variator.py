from __future__ import annotations

import logging
import posixpath
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from safeingest.core.errors import IngestError, VariantError
from safeingest.core.filters import apply_filters
from safeingest.core.state.context import FileContext
from safeingest.core.tempfiles import TempScope

from .profile import VariantProfile

log = logging.getLogger("safeingest.variants")


@dataclass(frozen=True)
class VariantOutcome:
    name: str
    context: Optional[FileContext] = None
    error: Optional[IngestError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.context is not None


def variant_storage_path(primary_path: str, profile: VariantProfile, variant: FileContext) -> str:
    """images/ab/abcd.png + Thumbnail -> images/ab/thumbnail/abcd_thumb.png"""

    directory, filename = posixpath.split(primary_path)
    stem = filename.rsplit(".", 1)[0]
    name = f"{stem}_{profile.name_suffix()}.{variant.trusted_extension}"
    return posixpath.join(directory, profile.path(), name)


class Variator:
    """Runs variant chains against one proved primary context.

    Chains are independent: each runs on its own worker and a failure in one
    is reported in its VariantOutcome without touching the others. Untyped
    exceptions from a chain become VariantError(rule="transform").

    """

    def __init__(self, *, max_workers: int = 2, decode_slots: Optional[threading.BoundedSemaphore] = None) -> None:
        self.max_workers = max(1, int(max_workers))
        self._slots = decode_slots

    def run(
        self,
        context: FileContext,
        profiles: Mapping[str, VariantProfile],
        *,
        scope: TempScope,
    ) -> Dict[str, VariantOutcome]:
        context.assert_proved()
        if not profiles:
            return {}

        workers = min(self.max_workers, len(profiles))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="safeingest-variant") as pool:
            futures = {
                name: pool.submit(self._run_one, name, profile, context, scope)
                for name, profile in profiles.items()
            }
            return {name: fut.result() for name, fut in futures.items()}

    def _run_one(self, name: str, profile: VariantProfile, context: FileContext, scope: TempScope) -> VariantOutcome:
        try:
            if self._slots is not None:
                with self._slots:
                    out = self._chain(profile, context, scope)
            else:
                out = self._chain(profile, context, scope)
        except IngestError as e:
            log.warning(
                "variant_failed",
                extra={"variant": name, "error": e.code, "rule": e.rule, "content_hash": context.content_hash},
            )
            return VariantOutcome(name=name, error=e)
        except Exception as e:
            log.exception(
                "variant_crashed",
                extra={"variant": name, "error": type(e).__name__, "content_hash": context.content_hash},
            )
            err = VariantError(f"variant {name} failed: {type(e).__name__}", rule="transform")
            err.__cause__ = e
            return VariantOutcome(name=name, error=err)
        return VariantOutcome(name=name, context=out)

    @staticmethod
    def _chain(profile: VariantProfile, context: FileContext, scope: TempScope) -> FileContext:
        apply_filters(context, profile.filters(context))
        current = context
        for transformer in profile.transformers(context):
            current = transformer.transform(current, scope=scope)
        return current

from __future__ import annotations

import copy
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from safeingest.core.errors import PolicyConfigurationError
from safeingest.core.filters import AllowedMimes, FileFilter, MaxDimensions, MinDimensions
from safeingest.core.state.context import FileContext
from safeingest.core.storage.store import Store
from safeingest.core.storage.uri import InvalidPathError, normalize_relative_path
from safeingest.core.strategies import FileStrategy, ImageStrategy, JsonDocumentStrategy, XmlDocumentStrategy
from safeingest.core.transformers import FileTransformer
from safeingest.core.variants import Thumbnail, VariantProfile, WebpCopy

from .options import _MISSING, merge_options, value_at

_NAMESPACE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
_PLACEHOLDERS = ("namespace", "hash", "hash2", "ext", "yyyy", "mm", "dd")

STORAGE_DEFAULTS: Dict[str, Any] = {
    "scheme": "local",
    "namespace": "files",
    "path": "{namespace}/{hash2}/{hash}.{ext}",
}


def render_store_path(template: str, *, namespace: str, content_hash: str, extension: str, now: datetime) -> str:
    """Render a storage path template and normalize the result.

    Placeholders: {namespace} {hash} {hash2} {ext} {yyyy} {mm} {dd}

    """

    values = {
        "namespace": namespace,
        "hash": content_hash,
        "hash2": content_hash[:2],
        "ext": extension,
        "yyyy": f"{now.year:04d}",
        "mm": f"{now.month:02d}",
        "dd": f"{now.day:02d}",
    }
    try:
        rendered = template.format_map(values)
    except (KeyError, IndexError, ValueError) as e:
        raise PolicyConfigurationError(
            f"bad storage path template {template!r}; placeholders are {', '.join(_PLACEHOLDERS)}",
            rule="storage.path",
        ) from e
    try:
        path = normalize_relative_path(rendered)
    except InvalidPathError as e:
        raise PolicyConfigurationError(str(e), rule="storage.path") from e
    if not path:
        raise PolicyConfigurationError("storage path renders empty", rule="storage.path")
    return path


class FilePolicy:
    """Binds a strategy, MIME whitelist, filters, variants and storage layout.

    Policies are immutable: with_options() and with_storage() return new
    instances and leave the receiver untouched.

    Options are a nested mapping. defaults() defines every accepted key;
    overrides are merged with merge_options and unknown keys are rejected.

    """

    name: str = "file"

    def __init__(self, options: Optional[Mapping[str, Any]] = None, *, store: Optional[Store] = None) -> None:
        self._options = merge_options(self.defaults(), options or {})
        self._store = store
        self._validate()

    @classmethod
    def defaults(cls) -> Dict[str, Any]:
        return {
            "mimes": [],
            "variants": {"mandatory": []},
            "storage": dict(STORAGE_DEFAULTS),
        }

    # Options

    def options(self) -> Dict[str, Any]:
        return copy.deepcopy(self._options)

    def option(self, dotted: str, default: Any = _MISSING) -> Any:
        return value_at(self._options, dotted, default)

    def with_options(self, overrides: Optional[Mapping[str, Any]]) -> "FilePolicy":
        if not overrides:
            return self
        return type(self)(merge_options(self._options, overrides), store=self._store)

    def with_storage(self, store: Store) -> "FilePolicy":
        return type(self)(self._options, store=store)

    # Contract

    def strategy(self, context: FileContext) -> FileStrategy:
        raise NotImplementedError

    def mimes(self) -> Tuple[str, ...]:
        return tuple(self.option("mimes"))

    def filters(self, context: FileContext) -> List[FileFilter]:
        return [AllowedMimes(self.mimes())]

    def variants(self, context: FileContext) -> Dict[str, VariantProfile]:
        return {}

    def transformers(self, context: FileContext) -> Dict[str, List[FileTransformer]]:
        return {name: profile.transformers(context) for name, profile in self.variants(context).items()}

    def mandatory_variants(self) -> Tuple[str, ...]:
        return tuple(self.option("variants.mandatory"))

    def scheme(self) -> str:
        return str(self.option("storage.scheme"))

    def namespace(self) -> str:
        return str(self.option("storage.namespace"))

    def store(self, context: FileContext) -> Optional[Store]:
        """Explicitly bound store, or None to use the one mounted for scheme()."""
        return self._store

    def store_path(self, context: FileContext, *, now: Optional[datetime] = None) -> str:
        context.assert_proved()
        return render_store_path(
            str(self.option("storage.path")),
            namespace=self.namespace(),
            content_hash=str(context.content_hash),
            extension=str(context.trusted_extension),
            now=now or datetime.now(timezone.utc),
        )

    # Validation

    def _validate(self) -> None:
        if not _NAMESPACE_RE.match(self.namespace()):
            raise PolicyConfigurationError(f"invalid namespace {self.namespace()!r}", rule="storage.namespace")
        render_store_path(
            str(self.option("storage.path")),
            namespace=self.namespace(),
            content_hash="0" * 64,
            extension="bin",
            now=datetime(2000, 1, 1, tzinfo=timezone.utc),
        )
        mimes = self.option("mimes")
        if not isinstance(mimes, (list, tuple)) or not all(isinstance(m, str) for m in mimes):
            raise PolicyConfigurationError("mimes must be a list of strings", rule="mimes")

        mandatory = self.option("variants.mandatory")
        if not isinstance(mandatory, (list, tuple)):
            raise PolicyConfigurationError("variants.mandatory must be a list", rule="variants.mandatory")
        available = set(self._declared_variants())
        unknown = [m for m in mandatory if m not in available]
        if unknown:
            raise PolicyConfigurationError(
                f"mandatory variants are not enabled: {unknown}", rule="variants.mandatory"
            )

    def _declared_variants(self) -> Tuple[str, ...]:
        return ()

    def _positive_int(self, dotted: str, *, optional: bool = False) -> Optional[int]:
        value = self.option(dotted)
        if value is None and optional:
            return None
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise PolicyConfigurationError(f"{dotted} must be a positive integer", rule=dotted)
        return value

    def __repr__(self) -> str:
        return f"{type(self).__name__}(namespace={self.namespace()!r}, mimes={list(self.mimes())!r})"


class ImagePolicy(FilePolicy):
    """Raster images: JPEG, PNG and WebP, with optional thumbnail and WebP copy."""

    name = "images"

    @classmethod
    def defaults(cls) -> Dict[str, Any]:
        return {
            "mimes": ["image/jpeg", "image/png", "image/webp"],
            "limits": {
                "max_bytes": 5_000_000,
                "max_pixels": 40_000_000,
                "max_width": None,
                "max_height": None,
                "min_width": None,
                "min_height": None,
            },
            "encoding": {"jpeg_quality": 90, "webp_quality": 85},
            "thumbnail": {"enabled": True, "max_width": 300, "max_height": 300},
            "webp": {"enabled": False, "quality": 85},
            "variants": {"mandatory": []},
            "storage": {**STORAGE_DEFAULTS, "namespace": "images"},
        }

    def _validate(self) -> None:
        super()._validate()
        for key in ("limits.max_bytes", "limits.max_pixels", "thumbnail.max_width", "thumbnail.max_height"):
            self._positive_int(key)
        for key in ("limits.max_width", "limits.max_height", "limits.min_width", "limits.min_height"):
            self._positive_int(key, optional=True)
        for key in ("encoding.jpeg_quality", "encoding.webp_quality", "webp.quality"):
            q = self._positive_int(key)
            if q > 100:
                raise PolicyConfigurationError(f"{key} must be within 1..100", rule=key)

    def strategy(self, context: FileContext) -> FileStrategy:
        return ImageStrategy(
            max_bytes=self.option("limits.max_bytes"),
            max_pixels=self.option("limits.max_pixels"),
            jpeg_quality=self.option("encoding.jpeg_quality"),
            webp_quality=self.option("encoding.webp_quality"),
        )

    def filters(self, context: FileContext) -> List[FileFilter]:
        out = super().filters(context)
        max_w, max_h = self.option("limits.max_width"), self.option("limits.max_height")
        if max_w is not None or max_h is not None:
            out.append(MaxDimensions(max_w, max_h))
        min_w, min_h = self.option("limits.min_width"), self.option("limits.min_height")
        if min_w is not None or min_h is not None:
            out.append(MinDimensions(min_w, min_h))
        return out

    def _declared_variants(self) -> Tuple[str, ...]:
        names = []
        if self.option("thumbnail.enabled"):
            names.append("thumbnail")
        if self.option("webp.enabled"):
            names.append("webp")
        return tuple(names)

    def variants(self, context: FileContext) -> Dict[str, VariantProfile]:
        mandatory = set(self.mandatory_variants())
        out: Dict[str, VariantProfile] = {}
        if self.option("thumbnail.enabled"):
            out["thumbnail"] = Thumbnail(
                max_width=self.option("thumbnail.max_width"),
                max_height=self.option("thumbnail.max_height"),
                quality=self.option("encoding.jpeg_quality"),
                mandatory="thumbnail" in mandatory,
            )
        if self.option("webp.enabled"):
            out["webp"] = WebpCopy(quality=self.option("webp.quality"), mandatory="webp" in mandatory)
        return out


DOCUMENT_FAMILIES: Dict[str, Tuple[str, ...]] = {
    "json": ("application/json",),
    "xml": ("application/xml",),
}

# Parsers and serializers recurse per nesting level.
MAX_DOCUMENT_DEPTH = 512


class DocumentPolicy(FilePolicy):
    """Structured text documents; `family` selects the JSON or XML strategy."""

    name = "documents"

    @classmethod
    def defaults(cls) -> Dict[str, Any]:
        return {
            "family": "json",
            "mimes": [],
            "limits": {
                "max_bytes": 2_000_000,
                "max_depth": 64,
                "max_nodes": 200_000,
                "max_elements": 100_000,
            },
            "variants": {"mandatory": []},
            "storage": {**STORAGE_DEFAULTS, "namespace": "documents"},
        }

    def _validate(self) -> None:
        super()._validate()
        if self.option("family") not in DOCUMENT_FAMILIES:
            raise PolicyConfigurationError(
                f"family must be one of {sorted(DOCUMENT_FAMILIES)}", rule="family"
            )
        for key in ("limits.max_bytes", "limits.max_depth", "limits.max_nodes", "limits.max_elements"):
            self._positive_int(key)
        if self.option("limits.max_depth") > MAX_DOCUMENT_DEPTH:
            raise PolicyConfigurationError(
                f"limits.max_depth must not exceed {MAX_DOCUMENT_DEPTH}", rule="limits.max_depth"
            )

    def mimes(self) -> Tuple[str, ...]:
        configured = tuple(self.option("mimes"))
        return configured or DOCUMENT_FAMILIES[self.option("family")]

    def strategy(self, context: FileContext) -> FileStrategy:
        if self.option("family") == "xml":
            return XmlDocumentStrategy(
                max_bytes=self.option("limits.max_bytes"),
                max_elements=self.option("limits.max_elements"),
                max_depth=self.option("limits.max_depth"),
            )
        return JsonDocumentStrategy(
            max_bytes=self.option("limits.max_bytes"),
            max_depth=self.option("limits.max_depth"),
            max_nodes=self.option("limits.max_nodes"),
        )

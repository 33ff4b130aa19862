from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from PIL import Image

from safeingest.core.errors import VariantError
from safeingest.core.hashing import sha256_file
from safeingest.core.state.context import FileContext
from safeingest.core.strategies.image import PIL_FORMATS, decode_image, encode_image, has_alpha, rebuild_image
from safeingest.core.tempfiles import TempScope

from .base import FileTransformer

# Target name -> (mime, extension, Pillow format).
CONVERT_TARGETS = {
    "webp": ("image/webp", "webp", "WEBP"),
    "png": ("image/png", "png", "PNG"),
    "jpeg": ("image/jpeg", "jpg", "JPEG"),
}


def compute_resize_dimensions(
    width: int,
    height: int,
    max_width: int,
    max_height: int,
    *,
    preserve_aspect_ratio: bool = True,
) -> Tuple[int, int]:
    """Target size for fitting (width, height) inside (max_width, max_height).

    Never upscales. With aspect ratio preserved both sides scale by
    min(max_w / w, max_h / h, 1.0) and are rounded; each side is at least 1.

    """

    if width <= 0 or height <= 0:
        raise ValueError("source dimensions must be positive")
    if max_width <= 0 or max_height <= 0:
        raise ValueError("bounds must be positive")

    if not preserve_aspect_ratio:
        return min(width, max_width), min(height, max_height)

    ratio = min(max_width / width, max_height / height, 1.0)
    new_w = max(1, min(max_width, int(round(width * ratio))))
    new_h = max(1, min(max_height, int(round(height * ratio))))
    return new_w, new_h


def _load_canonical(context: FileContext) -> Image.Image:
    context.assert_proved()
    if context.trusted_mime not in PIL_FORMATS:
        raise VariantError(f"{context.trusted_mime} is not an image", rule="mime")
    try:
        with Image.open(context.normalized_path) as img:
            return decode_image(img).copy()
    except OSError as e:
        raise VariantError("canonical image could not be reopened", rule="source") from e


def _write(
    context: FileContext,
    img: Image.Image,
    scope: TempScope,
    *,
    mime: str,
    extension: str,
    pil_format: str,
    jpeg_quality: int = 90,
    webp_quality: int = 85,
) -> FileContext:
    clean = rebuild_image(img, pil_format)
    out = scope.new_path("." + extension)
    try:
        encode_image(clean, out, pil_format, jpeg_quality=jpeg_quality, webp_quality=webp_quality)
    except (OSError, ValueError) as e:
        raise VariantError(f"could not encode {pil_format}", rule="encode") from e
    return context.with_canonical(
        normalized_path=out,
        normalized_size=out.stat().st_size,
        content_hash=sha256_file(out),
        trusted_mime=mime,
        trusted_extension=extension,
        metadata={
            "width": clean.width,
            "height": clean.height,
            "mode": clean.mode,
            "has_alpha": clean.mode == "RGBA",
        },
    )


@dataclass(frozen=True)
class ResizeImage(FileTransformer):
    """Fit an image inside a bounding box. Output keeps the input format."""

    max_width: int
    max_height: int
    preserve_aspect_ratio: bool = True
    quality: int = 90

    name = "resize"

    def transform(self, context: FileContext, *, scope: TempScope) -> FileContext:
        img = _load_canonical(context)
        size = compute_resize_dimensions(
            img.width,
            img.height,
            self.max_width,
            self.max_height,
            preserve_aspect_ratio=self.preserve_aspect_ratio,
        )
        if size != img.size:
            if has_alpha(img) and img.mode != "RGBA":
                img = img.convert("RGBA")
            img = img.resize(size, Image.Resampling.LANCZOS)

        mime = context.trusted_mime
        return _write(
            context,
            img,
            scope,
            mime=mime,
            extension=context.trusted_extension,
            pil_format=PIL_FORMATS[mime],
            jpeg_quality=self.quality,
        )

    def describe(self) -> str:
        return f"resize({self.max_width}x{self.max_height})"


@dataclass(frozen=True)
class ConvertImage(FileTransformer):
    """Re-encode an image into another canonical format."""

    target: str = "webp"
    quality: int = 85

    name = "convert"

    def __post_init__(self) -> None:
        if self.target not in CONVERT_TARGETS:
            raise ValueError(f"unsupported conversion target: {self.target}")

    def transform(self, context: FileContext, *, scope: TempScope) -> FileContext:
        img = _load_canonical(context)
        mime, extension, pil_format = CONVERT_TARGETS[self.target]
        return _write(
            context,
            img,
            scope,
            mime=mime,
            extension=extension,
            pil_format=pil_format,
            jpeg_quality=self.quality,
            webp_quality=self.quality,
        )

    def describe(self) -> str:
        return f"convert({self.target})"

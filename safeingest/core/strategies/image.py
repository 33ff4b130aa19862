from __future__ import annotations

import warnings
from pathlib import Path
from typing import Any, Dict, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from safeingest.core.errors import DecodeError, StructuralValidationError
from safeingest.core.tempfiles import TempScope

from .base import FileStrategy

# Sniffed mime -> Pillow format name.
PIL_FORMATS: Dict[str, str] = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
}

_ALPHA_MODES = {"RGBA", "LA", "PA", "RGBa", "La"}


def has_alpha(img: "Image.Image") -> bool:
    if img.mode in _ALPHA_MODES:
        return True
    return "transparency" in img.info


def canonical_mode(img: "Image.Image", pil_format: str) -> str:
    """Pick the pixel mode an image is rebuilt in for a target format."""

    alpha = has_alpha(img) and pil_format in {"PNG", "WEBP"}
    if alpha:
        return "RGBA"
    if img.mode in {"1", "L"} and pil_format in {"PNG", "JPEG"}:
        return "L"
    return "RGB"


def rebuild_image(img: "Image.Image", pil_format: str) -> "Image.Image":
    """Rebuild an image from raw decoded pixels.

    The result carries no info dictionary, EXIF, ICC profile, text chunks or
    trailing data; only pixels survive.

    """

    mode = canonical_mode(img, pil_format)
    converted = img if img.mode == mode else img.convert(mode)
    return Image.frombytes(mode, converted.size, converted.tobytes())


def encode_image(img: "Image.Image", out: Path, pil_format: str, *, jpeg_quality: int, webp_quality: int) -> None:
    if pil_format == "JPEG":
        img.save(out, format="JPEG", quality=int(jpeg_quality), optimize=True)
    elif pil_format == "PNG":
        img.save(out, format="PNG", optimize=True)
    elif pil_format == "WEBP":
        img.save(out, format="WEBP", quality=int(webp_quality), method=4)
    else:
        raise ValueError(f"unsupported canonical format: {pil_format}")


def open_image(path: Path, *, max_pixels: int) -> "Image.Image":
    """Open an image header with decompression-bomb protection.

    Raises StructuralValidationError when the header cannot be parsed, when the
    dimensions are non-positive or when the pixel count exceeds max_pixels.

    """

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("error", Image.DecompressionBombWarning)
            img = Image.open(path)
    except (Image.DecompressionBombError, Image.DecompressionBombWarning) as e:
        raise StructuralValidationError("image exceeds the pixel ceiling", rule="max_pixels") from e
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise StructuralValidationError("image header could not be decoded", rule="header") from e

    width, height = img.size
    if width <= 0 or height <= 0:
        img.close()
        raise StructuralValidationError("image has non-positive dimensions", rule="dimensions")
    if width * height > max_pixels:
        img.close()
        raise StructuralValidationError(
            f"image has {width * height} pixels, ceiling is {max_pixels}", rule="max_pixels"
        )
    return img


def decode_image(img: "Image.Image") -> "Image.Image":
    """Fully decode pixel data (first frame) and apply EXIF orientation."""

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("error", Image.DecompressionBombWarning)
            img.load()
            oriented = ImageOps.exif_transpose(img)
    except (OSError, SyntaxError, ValueError, EOFError, Image.DecompressionBombError) as e:
        raise DecodeError("image data could not be decoded", rule="pixels") from e
    return oriented if oriented is not None else img


class ImageStrategy(FileStrategy):
    """Raster image strategy backed by Pillow.

    Accepted: JPEG, PNG, WebP. Output keeps the sniffed format.

    Security notes:
    - Header checks run before any pixel is decoded (decompression bombs).
    - The canonical image is rebuilt from raw pixels, so metadata, appended
      payloads and ancillary chunks cannot survive.
    - Animated inputs are reduced to their first frame.

    """

    family = "image"
    allowed_mimes = {
        "image/jpeg": "jpg",
        "image/png": "png",
        "image/webp": "webp",
    }

    def __init__(
        self,
        *,
        max_bytes: int = 5_000_000,
        max_pixels: int = 40_000_000,
        jpeg_quality: int = 90,
        webp_quality: int = 85,
    ) -> None:
        super().__init__(max_bytes=max_bytes)
        self.max_pixels = int(max_pixels)
        self.jpeg_quality = int(jpeg_quality)
        self.webp_quality = int(webp_quality)

    def _canonicalize(self, path: Path, mime: str, scope: TempScope) -> Tuple[Path, Dict[str, Any]]:
        pil_format = PIL_FORMATS[mime]

        with open_image(path, max_pixels=self.max_pixels) as img:
            if img.format != pil_format:
                raise StructuralValidationError(
                    f"decoder reports {img.format}, content sniffed as {mime}", rule="format"
                )
            decoded = decode_image(img)
            try:
                clean = rebuild_image(decoded, pil_format)
            except (OSError, ValueError) as e:
                raise DecodeError("image pixels could not be converted", rule="pixels") from e

        out = scope.new_path("." + self.allowed_mimes[mime])
        try:
            encode_image(
                clean,
                out,
                pil_format,
                jpeg_quality=self.jpeg_quality,
                webp_quality=self.webp_quality,
            )
        except (OSError, ValueError) as e:
            raise DecodeError("canonical image could not be encoded", rule="encode") from e

        return out, {
            "width": clean.width,
            "height": clean.height,
            "mode": clean.mode,
            "has_alpha": clean.mode == "RGBA",
        }

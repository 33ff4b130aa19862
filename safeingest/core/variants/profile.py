from __future__ import annotations

from dataclasses import dataclass
from typing import List

from safeingest.core.filters import AllowedMimes, FileFilter
from safeingest.core.state.context import FileContext
from safeingest.core.transformers import ConvertImage, FileTransformer, ResizeImage

IMAGE_MIMES = ("image/jpeg", "image/png", "image/webp")


class VariantProfile:
    """A named derived output: filters to qualify, then a transformer chain."""

    mandatory: bool = False

    def name_suffix(self) -> str:
        raise NotImplementedError

    def path(self) -> str:
        """Sub-directory, relative to the primary file, the variant is stored in."""
        raise NotImplementedError

    def transformers(self, context: FileContext) -> List[FileTransformer]:
        raise NotImplementedError

    def filters(self, context: FileContext) -> List[FileFilter]:
        return []


@dataclass(frozen=True)
class Thumbnail(VariantProfile):
    max_width: int = 300
    max_height: int = 300
    quality: int = 90
    mandatory: bool = False

    def name_suffix(self) -> str:
        return "thumb"

    def path(self) -> str:
        return "thumbnail"

    def transformers(self, context: FileContext) -> List[FileTransformer]:
        return [ResizeImage(self.max_width, self.max_height, quality=self.quality)]

    def filters(self, context: FileContext) -> List[FileFilter]:
        return [AllowedMimes(IMAGE_MIMES)]


@dataclass(frozen=True)
class WebpCopy(VariantProfile):
    quality: int = 85
    mandatory: bool = False

    def name_suffix(self) -> str:
        return "webp"

    def path(self) -> str:
        return "webp"

    def transformers(self, context: FileContext) -> List[FileTransformer]:
        return [ConvertImage("webp", quality=self.quality)]

    def filters(self, context: FileContext) -> List[FileFilter]:
        return [AllowedMimes(IMAGE_MIMES)]

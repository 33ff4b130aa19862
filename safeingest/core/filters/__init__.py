from .base import FileFilter, apply_filters
from .builtin import (
    AllowedExtensions,
    AllowedMimes,
    AspectRatioRange,
    BinaryOnly,
    DenyExtensions,
    DenyMimes,
    FilenameLength,
    MaxDimensions,
    MaxFileSize,
    MinDimensions,
    MinFileSize,
    TextOnly,
)

__all__ = [
    "FileFilter",
    "apply_filters",
    "AllowedMimes",
    "DenyMimes",
    "AllowedExtensions",
    "DenyExtensions",
    "MaxFileSize",
    "MinFileSize",
    "FilenameLength",
    "BinaryOnly",
    "TextOnly",
    "MaxDimensions",
    "MinDimensions",
    "AspectRatioRange",
]

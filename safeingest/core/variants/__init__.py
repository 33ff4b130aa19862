from .profile import Thumbnail, VariantProfile, WebpCopy
from .variator import VariantOutcome, Variator, variant_storage_path

__all__ = ["VariantProfile", "Thumbnail", "WebpCopy", "Variator", "VariantOutcome", "variant_storage_path"]

from .catalog import PolicyCatalog, default_catalog
from .options import merge_options, value_at
from .policy import DocumentPolicy, FilePolicy, ImagePolicy, render_store_path

__all__ = [
    "FilePolicy",
    "ImagePolicy",
    "DocumentPolicy",
    "PolicyCatalog",
    "default_catalog",
    "merge_options",
    "value_at",
    "render_store_path",
]

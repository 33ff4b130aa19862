from .base import FileTransformer
from .image import ConvertImage, ResizeImage, compute_resize_dimensions

__all__ = ["FileTransformer", "ResizeImage", "ConvertImage", "compute_resize_dimensions"]

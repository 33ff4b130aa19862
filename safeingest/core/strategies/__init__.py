from .base import FileStrategy
from .image import ImageStrategy
from .json_document import JsonDocumentStrategy
from .xml_document import XmlDocumentStrategy

__all__ = [
    "FileStrategy",
    "ImageStrategy",
    "JsonDocumentStrategy",
    "XmlDocumentStrategy",
]

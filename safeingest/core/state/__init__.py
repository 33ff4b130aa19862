from .context import FileContext, display_name
from .payload import Payload
from .record import FileRecord, VariantRecord

__all__ = [
    "Payload",
    "FileContext",
    "FileRecord",
    "VariantRecord",
    "display_name",
]

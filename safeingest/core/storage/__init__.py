from .record_store import InMemoryRecordStore, NullRecordStore, RecordStore, SQLiteRecordStore
from .registry import Mount, StorageRegistry
from .store import LocalStore, Store, StoreStats
from .uri import InvalidPathError, Uri, normalize_relative_path

__all__ = [
    "Store",
    "LocalStore",
    "StoreStats",
    "RecordStore",
    "NullRecordStore",
    "InMemoryRecordStore",
    "SQLiteRecordStore",
    "StorageRegistry",
    "Mount",
    "Uri",
    "InvalidPathError",
    "normalize_relative_path",
]

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from safeingest.core.errors import StorageFailure
from safeingest.core.state.record import FileRecord


class RecordStore(Protocol):
    """Persistence for FileRecord metadata, keyed by record id."""

    def save(self, record: FileRecord) -> None: ...

    def update(self, record: FileRecord) -> None: ...

    def delete(self, record_id: str) -> None: ...

    def find(self, record_id: str) -> Optional[FileRecord]: ...

    def exists(self, record_id: str) -> bool: ...


class NullRecordStore:
    """Drop-in default that persists nothing."""

    def save(self, record: FileRecord) -> None:
        return None

    def update(self, record: FileRecord) -> None:
        return None

    def delete(self, record_id: str) -> None:
        return None

    def find(self, record_id: str) -> Optional[FileRecord]:
        return None

    def exists(self, record_id: str) -> bool:
        return False


class InMemoryRecordStore:
    """Thread-safe dict store, used by tests and short-lived processes."""

    def __init__(self) -> None:
        self._records: Dict[str, FileRecord] = {}
        self._lock = threading.Lock()

    def save(self, record: FileRecord) -> None:
        with self._lock:
            if record.id in self._records:
                raise StorageFailure(f"record already exists: {record.id}", rule="duplicate")
            self._records[record.id] = record

    def update(self, record: FileRecord) -> None:
        with self._lock:
            if record.id not in self._records:
                raise StorageFailure(f"record not found: {record.id}", rule="not_found")
            self._records[record.id] = record

    def delete(self, record_id: str) -> None:
        with self._lock:
            self._records.pop(record_id, None)

    def find(self, record_id: str) -> Optional[FileRecord]:
        with self._lock:
            return self._records.get(record_id)

    def exists(self, record_id: str) -> bool:
        with self._lock:
            return record_id in self._records

    def list_records(self, *, limit: int = 100, offset: int = 0, namespace: Optional[str] = None) -> List[FileRecord]:
        with self._lock:
            items = sorted(self._records.values(), key=lambda r: (r.created_at, r.id))
        if namespace is not None:
            items = [r for r in items if r.namespace == namespace]
        return items[offset : offset + limit]


def _json_dumps(obj: Any) -> str:
    """Deterministic JSON serialization (record payloads are JSON-safe)."""

    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


@dataclass(slots=True)
class SQLiteRecordStore:
    """SQLite persistence for FileRecords.

    One row per record; the full record is kept as JSON next to a few indexed
    columns used for listing.

    Security notes:
    - Treat all values read from the database as untrusted; rows are rebuilt
      through FileRecord.from_dict, which validates required keys.
    - This store does NOT encrypt data at rest.

    Complexity
    - save/update/delete/find: O(1) statements
    - list_records: O(limit) rows

    """

    db_path: Path

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        self.init_schema()

    def connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(str(self.db_path), timeout=10)

    def init_schema(self) -> None:
        self._execute_script(
            """
            CREATE TABLE IF NOT EXISTS file_records (
                record_id TEXT PRIMARY KEY,
                namespace TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                mime TEXT NOT NULL,
                created_at TEXT NOT NULL,
                record_json TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_file_records_namespace
                ON file_records(namespace, created_at);
            """
        )

    def _execute_script(self, script: str) -> None:
        try:
            with closing(self.connect()) as con, con:
                con.executescript(script)
        except sqlite3.Error as e:
            raise StorageFailure(f"record database error: {e}", rule="schema") from e

    def _execute(self, sql: str, params: tuple, *, rule: str) -> int:
        try:
            with closing(self.connect()) as con, con:
                return con.execute(sql, params).rowcount
        except sqlite3.IntegrityError as e:
            raise StorageFailure(f"record constraint failed: {e}", rule=rule) from e
        except sqlite3.Error as e:
            raise StorageFailure(f"record database error: {e}", rule=rule) from e

    def _query(self, sql: str, params: tuple) -> List[tuple]:
        try:
            with closing(self.connect()) as con:
                return con.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageFailure(f"record database error: {e}", rule="query") from e

    def save(self, record: FileRecord) -> None:
        self._execute(
            "INSERT INTO file_records(record_id, namespace, content_hash, mime, created_at, record_json) "
            "VALUES(?,?,?,?,?,?)",
            (
                record.id,
                record.namespace,
                record.content_hash,
                record.mime,
                record.created_at.isoformat(),
                _json_dumps(record.to_dict()),
            ),
            rule="duplicate",
        )

    def update(self, record: FileRecord) -> None:
        n = self._execute(
            "UPDATE file_records SET namespace = ?, content_hash = ?, mime = ?, record_json = ? WHERE record_id = ?",
            (record.namespace, record.content_hash, record.mime, _json_dumps(record.to_dict()), record.id),
            rule="update",
        )
        if n == 0:
            raise StorageFailure(f"record not found: {record.id}", rule="not_found")

    def delete(self, record_id: str) -> None:
        self._execute("DELETE FROM file_records WHERE record_id = ?", (record_id,), rule="delete")

    def find(self, record_id: str) -> Optional[FileRecord]:
        rows = self._query("SELECT record_json FROM file_records WHERE record_id = ?", (record_id,))
        if not rows:
            return None
        return FileRecord.from_dict(json.loads(rows[0][0]))

    def exists(self, record_id: str) -> bool:
        return bool(self._query("SELECT 1 FROM file_records WHERE record_id = ?", (record_id,)))

    def list_records(self, *, limit: int = 100, offset: int = 0, namespace: Optional[str] = None) -> List[FileRecord]:
        """Newest-last listing, optionally restricted to one namespace."""

        limit = max(0, min(int(limit), 1000))
        offset = max(0, int(offset))
        if namespace is None:
            rows = self._query(
                "SELECT record_json FROM file_records ORDER BY created_at, record_id LIMIT ? OFFSET ?",
                (limit, offset),
            )
        else:
            rows = self._query(
                "SELECT record_json FROM file_records WHERE namespace = ? "
                "ORDER BY created_at, record_id LIMIT ? OFFSET ?",
                (namespace, limit, offset),
            )
        return [FileRecord.from_dict(json.loads(r[0])) for r in rows]

import hashlib
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Union


def sha256_file(path: Union[str, Path], *, chunk_size: int = 1024 * 1024) -> str:
    """
    Streaming sha256 of a file (no full-file load).
    """
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _json_safe(value: Any) -> Any:
    """
    Convert values into a deterministic, JSON-serializable form.
    """
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(v) for v in value]
    return value


def canonical_json_bytes(payload: Any) -> bytes:
    """
    Stable key ordering and separators, used for signing and record digests.
    """
    return json.dumps(
        _json_safe(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")

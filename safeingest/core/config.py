from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_STORAGE_ROOT = "./safeingest_data"


@dataclass(frozen=True, slots=True)
class IngestConfig:
    """Runtime configuration for the pipeline, API and CLI.

    Security notes:
    - storage_root is where canonical bytes land; it should not be web-served
      directly from an executable location.
    - db_path is optional. Without it records are kept in memory only.

    """

    storage_root: Path = Path(DEFAULT_STORAGE_ROOT)
    db_path: Optional[Path] = None
    temp_dir: Optional[Path] = None
    max_upload_bytes: int = 25 * 1024 * 1024
    prove_timeout_sec: int = 30
    max_concurrent_decodes: int = 4
    variant_workers: int = 2
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "IngestConfig":
        """Read SAFEINGEST_* environment variables.

        Invalid or non-positive integers fall back to the defaults.

        """

        db = os.environ.get("SAFEINGEST_DB_PATH", "").strip()
        tmp = os.environ.get("SAFEINGEST_TEMP_DIR", "").strip()
        return cls(
            storage_root=Path(os.environ.get("SAFEINGEST_STORAGE_ROOT", "").strip() or DEFAULT_STORAGE_ROOT),
            db_path=Path(db) if db else None,
            temp_dir=Path(tmp) if tmp else None,
            max_upload_bytes=_env_int("SAFEINGEST_MAX_UPLOAD_BYTES", 25 * 1024 * 1024),
            prove_timeout_sec=_env_int("SAFEINGEST_PROVE_TIMEOUT_SEC", 30),
            max_concurrent_decodes=_env_int("SAFEINGEST_MAX_CONCURRENT_DECODES", 4),
            variant_workers=_env_int("SAFEINGEST_VARIANT_WORKERS", 2),
            log_level=(os.environ.get("SAFEINGEST_LOG_LEVEL", "").strip() or "INFO").upper(),
        )


def _env_int(name: str, default: int) -> int:
    """Read a positive integer environment variable.

    Security notes:
    - Env vars are treated as trusted server configuration.

    """

    raw = os.environ.get(name, "").strip()
    if not raw:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return value if value > 0 else int(default)


def configure_logging(level: str = "INFO") -> None:
    """Set the level of the safeingest logger tree; handlers belong to the host."""

    logging.getLogger("safeingest").setLevel(level.upper())

from __future__ import annotations

import io
from pathlib import Path
from typing import Callable

import pytest
from PIL import Image

from safeingest.core.entries import LocalEntry
from safeingest.core.pipeline import IngestPipeline
from safeingest.core.state import FileContext
from safeingest.core.storage import InMemoryRecordStore, StorageRegistry


def _image_bytes(fmt: str = "PNG", size=(10, 10), mode: str = "RGB", color=None, **save) -> bytes:
    if color is None:
        color = {"RGB": (200, 30, 30), "RGBA": (10, 20, 30, 128), "L": 128}.get(mode, 0)
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format=fmt, **save)
    return buf.getvalue()


def _claimed(data: bytes, name: str = "upload.bin", mime: str = "application/octet-stream") -> FileContext:
    return FileContext.from_payload(LocalEntry(claimed_name=name, claimed_mime=mime).to_payload(data))


@pytest.fixture
def image_bytes() -> Callable[..., bytes]:
    return _image_bytes


@pytest.fixture
def claimed() -> Callable[..., FileContext]:
    return _claimed


@pytest.fixture
def storage_root(tmp_path: Path) -> Path:
    root = tmp_path / "storage"
    root.mkdir()
    return root


@pytest.fixture
def pipeline(tmp_path: Path, storage_root: Path):
    registry = StorageRegistry()
    registry.mount("local", storage_root)
    p = IngestPipeline(
        registry=registry,
        records=InMemoryRecordStore(),
        temp_dir=tmp_path / "tmp",
        prove_timeout_sec=30,
    )
    yield p
    p.close()


def stored_files(root: Path):
    return sorted(p for p in root.rglob("*") if p.is_file())

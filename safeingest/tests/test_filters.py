from __future__ import annotations

from pathlib import Path

import pytest

from safeingest.core.errors import PolicyViolationError, UnprovedContextError
from safeingest.core.filters import (
    AllowedExtensions,
    AllowedMimes,
    AspectRatioRange,
    BinaryOnly,
    DenyExtensions,
    DenyMimes,
    FilenameLength,
    MaxDimensions,
    MaxFileSize,
    MinDimensions,
    MinFileSize,
    TextOnly,
    apply_filters,
)
from safeingest.core.state import FileContext


def _proved(tmp_path: Path, *, mime: str = "image/png", ext: str = "png", size: int = 100, name: str = "a.png", **meta):
    f = tmp_path / f"canonical.{ext}"
    f.write_bytes(b"x" * size)
    return FileContext(claimed_name=name, claimed_mime="application/octet-stream", claimed_size=size, source=str(f)).with_proof(
        trusted_mime=mime,
        trusted_extension=ext,
        normalized_path=f,
        normalized_size=size,
        content_hash="0" * 64,
        metadata=meta,
    )


def test_allowed_and_denied_mimes(tmp_path: Path) -> None:
    ctx = _proved(tmp_path)
    assert AllowedMimes(("image/*",)).check(ctx) is None
    assert AllowedMimes(("image/jpeg",)).check(ctx) is not None
    assert DenyMimes(("image/png",)).check(ctx) is not None
    assert DenyMimes(("application/*",)).check(ctx) is None


def test_filter_rejection_names_the_rule(tmp_path: Path) -> None:
    ctx = _proved(tmp_path)
    with pytest.raises(PolicyViolationError) as exc:
        AllowedMimes(("image/jpeg",)).apply(ctx)
    assert exc.value.rule == "allowed-mimes"
    assert exc.value.stage == "filter"


def test_extension_filters_use_the_trusted_extension(tmp_path: Path) -> None:
    ctx = _proved(tmp_path, name="invoice.exe")
    assert AllowedExtensions((".PNG",)).check(ctx) is None
    assert DenyExtensions(("exe",)).check(ctx) is None
    assert DenyExtensions(("png",)).check(ctx) is not None


def test_size_filters(tmp_path: Path) -> None:
    ctx = _proved(tmp_path, size=100)
    assert MaxFileSize(100).check(ctx) is None
    assert MaxFileSize(99).check(ctx) is not None
    assert MinFileSize(100).check(ctx) is None
    assert MinFileSize(101).check(ctx) is not None


def test_filename_length_uses_display_name(tmp_path: Path) -> None:
    ctx = _proved(tmp_path, name="../../" + "n" * 50 + ".png")
    assert FilenameLength(max_length=50).check(ctx) is None
    assert FilenameLength(max_length=49).check(ctx) is not None


def test_text_and_binary_filters(tmp_path: Path) -> None:
    image = _proved(tmp_path)
    doc = _proved(tmp_path, mime="application/json", ext="json")
    assert BinaryOnly().check(image) is None
    assert BinaryOnly().check(doc) is not None
    assert TextOnly().check(doc) is None
    assert TextOnly().check(image) is not None


def test_dimension_filters(tmp_path: Path) -> None:
    ctx = _proved(tmp_path, width=800, height=600)
    assert MaxDimensions(800, 600).check(ctx) is None
    assert MaxDimensions(max_width=799).check(ctx) is not None
    assert MinDimensions(min_height=601).check(ctx) is not None
    assert MinDimensions(100, 100).check(ctx) is None
    assert AspectRatioRange(1.0, 2.0).check(ctx) is None
    assert AspectRatioRange(min_ratio=1.5).check(ctx) is not None


def test_dimension_filters_reject_files_without_dimensions(tmp_path: Path) -> None:
    doc = _proved(tmp_path, mime="application/json", ext="json")
    assert MaxDimensions(10, 10).check(doc) is not None


def test_apply_filters_runs_in_order_and_returns_context_unchanged(tmp_path: Path) -> None:
    ctx = _proved(tmp_path, width=10, height=10)
    assert apply_filters(ctx, [AllowedMimes(("image/png",)), MaxFileSize(1000)]) is ctx

    with pytest.raises(PolicyViolationError) as exc:
        apply_filters(ctx, [MaxFileSize(1), AllowedMimes(("image/jpeg",))])
    assert exc.value.rule == "max-file-size"


def test_filters_require_a_proved_context() -> None:
    ctx = FileContext(claimed_name="a.png", claimed_mime="image/png", claimed_size=1, source=b"x")
    with pytest.raises(UnprovedContextError):
        AllowedMimes(("image/png",)).apply(ctx)

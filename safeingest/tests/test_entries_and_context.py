from __future__ import annotations

import io
from pathlib import Path
from types import SimpleNamespace

import pytest

from safeingest.core.entries import HttpEntry, LocalEntry
from safeingest.core.errors import MissingPayloadError, SizeViolation, UnprovedContextError, UnsupportedSourceError
from safeingest.core.state import FileContext, Payload, display_name
from safeingest.core.tempfiles import TempScope, list_temp_files, materialize


def test_http_entry_transfer_record(tmp_path: Path) -> None:
    tmp = tmp_path / "php123"
    tmp.write_bytes(b"data")
    payload = HttpEntry().to_payload(
        {"name": "cat.jpg", "type": "image/jpeg", "size": "4", "tmp_name": str(tmp), "error": 0}
    )
    assert payload == Payload(
        claimed_name="cat.jpg", claimed_mime="image/jpeg", claimed_size=4, source=str(tmp), upload_error=0
    )


def test_http_entry_transfer_error_is_rejected(tmp_path: Path) -> None:
    record = {"name": "a", "size": 1, "tmp_name": str(tmp_path / "x"), "error": 3}
    with pytest.raises(MissingPayloadError) as exc:
        HttpEntry().to_payload(record)
    assert exc.value.rule == "transfer_error"

    with pytest.raises(MissingPayloadError):
        HttpEntry().to_payload({**record, "error": "partial"})


def test_http_entry_requires_a_location() -> None:
    with pytest.raises(MissingPayloadError) as exc:
        HttpEntry().to_payload({"name": "a", "size": 1})
    assert exc.value.rule == "tmp_name"
    with pytest.raises(MissingPayloadError):
        HttpEntry().to_payload(None)


def test_http_entry_unparseable_size_becomes_zero(tmp_path: Path) -> None:
    payload = HttpEntry().to_payload({"name": "a", "size": "lots", "tmp_name": str(tmp_path / "x")})
    assert payload.claimed_size == 0
    assert payload.claimed_mime == "application/octet-stream"


def test_http_entry_upload_object() -> None:
    stream = io.BytesIO(b"bytes")
    upload = SimpleNamespace(filename="a.png", content_type="image/png", size=5, file=stream)

    entry = HttpEntry().with_input(upload)
    payload = entry.to_payload()
    assert (payload.claimed_name, payload.claimed_mime, payload.claimed_size) == ("a.png", "image/png", 5)
    assert payload.source is stream


def test_http_entry_unsupported_input() -> None:
    with pytest.raises(UnsupportedSourceError):
        HttpEntry().to_payload(42)


def test_local_entry_sources(tmp_path: Path) -> None:
    f = tmp_path / "report.json"
    f.write_bytes(b"{}")

    from_path = LocalEntry().to_payload(f)
    assert (from_path.claimed_name, from_path.claimed_mime, from_path.claimed_size) == ("report.json", "application/json", 2)

    from_bytes = LocalEntry(claimed_name="x.png").to_payload(b"abc")
    assert (from_bytes.claimed_mime, from_bytes.claimed_size) == ("image/png", 3)

    from_stream = LocalEntry(claimed_mime="text/plain").to_payload(io.BytesIO(b"abc"))
    assert (from_stream.claimed_name, from_stream.claimed_size) == ("upload", 0)

    with pytest.raises(MissingPayloadError):
        LocalEntry().to_payload(tmp_path / "missing")
    with pytest.raises(UnsupportedSourceError):
        LocalEntry().to_payload(3.5)


def test_payload_validates_size() -> None:
    with pytest.raises(ValueError):
        Payload(claimed_name="a", claimed_mime="b", claimed_size=-1, source=b"")
    with pytest.raises(TypeError):
        Payload(claimed_name="a", claimed_mime="b", claimed_size=True, source=b"")


def test_display_name_strips_paths_and_controls() -> None:
    assert display_name("../../etc/passwd") == "passwd"
    assert display_name("C:\\Users\\me\\photo.final.JPG") == "photo.final"
    assert display_name("bad\x00name\n.png") == "badname"
    assert display_name("") == "file"


def test_context_layers_are_immutable(tmp_path: Path) -> None:
    f = tmp_path / "c.png"
    f.write_bytes(b"x")
    ctx = FileContext.from_payload(LocalEntry(claimed_name="a.png").to_payload(b"x"))
    proved = ctx.with_proof(
        trusted_mime="image/png",
        trusted_extension="png",
        normalized_path=f,
        normalized_size=1,
        content_hash="0" * 64,
        metadata={"width": 1},
    )

    assert not ctx.proved and ctx.trusted_mime is None
    assert proved.proved and not proved.normalized
    assert proved.with_normalized().normalized
    tagged = proved.with_meta("policy", "images")
    assert tagged.get_meta("policy") == "images"
    assert proved.get_meta("policy") is None
    with pytest.raises(TypeError):
        proved.metadata["width"] = 2

    parent = proved.with_variant("thumb", proved)
    assert set(parent.variants) == {"thumb"}
    assert proved.variants == {}


def test_context_invariants() -> None:
    with pytest.raises(ValueError):
        FileContext(claimed_name="a", claimed_mime="b", claimed_size=1, source=b"x", proved=True)
    with pytest.raises(ValueError):
        FileContext(claimed_name="a", claimed_mime="b", claimed_size=1, source=b"x", normalized=True)
    with pytest.raises(TypeError):
        FileContext(claimed_name="a", claimed_mime="b", claimed_size=1, source=b"x", metadata={"k": [1]})

    ctx = FileContext(claimed_name="a", claimed_mime="b", claimed_size=1, source=b"x")
    with pytest.raises(UnprovedContextError):
        ctx.with_normalized()
    with pytest.raises(UnprovedContextError):
        ctx.assert_proved()


def test_temp_scope_removes_everything(tmp_path: Path) -> None:
    base = tmp_path / "tmp"
    with TempScope(str(base)) as scope:
        a = materialize(b"bytes", scope)
        b = materialize(io.BytesIO(b"stream"), scope)
        assert a.read_bytes() == b"bytes"
        assert b.read_bytes() == b"stream"
        assert list_temp_files(scope) == sorted([a, b])
        directory = scope.directory

    assert not directory.exists()
    assert list(base.iterdir()) == []
    with pytest.raises(RuntimeError):
        scope.new_path()


def test_materialize_bounds_streams(tmp_path: Path) -> None:
    with TempScope(str(tmp_path / "tmp")) as scope:
        with pytest.raises(SizeViolation):
            materialize(io.BytesIO(b"x" * 100), scope, max_bytes=10)


def test_materialize_uses_paths_in_place(tmp_path: Path) -> None:
    f = tmp_path / "in.bin"
    f.write_bytes(b"x")
    with TempScope(str(tmp_path / "tmp")) as scope:
        assert materialize(str(f), scope) == f
        assert list_temp_files(scope) == []

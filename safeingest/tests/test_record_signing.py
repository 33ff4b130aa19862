from __future__ import annotations

import os
import stat
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from safeingest.core.state import FileRecord
from safeingest.records.signing import (
    generate_ed25519_keypair,
    load_public_key_pem,
    read_signature,
    record_digest,
    sign_record,
    verify_record_signature,
    write_signature,
)


def _record() -> FileRecord:
    h = "ab" + "0" * 62
    return FileRecord(
        id=f"local://images/ab/{h}.png",
        namespace="images",
        storage_path=f"images/ab/{h}.png",
        mime="image/png",
        extension="png",
        size=1234,
        content_hash=h,
        original_name="cat",
        created_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
        metadata={"width": 10, "height": 10, "policy": "images"},
    )


def test_sign_and_verify(tmp_path: Path) -> None:
    kp = generate_ed25519_keypair(str(tmp_path / "keys"))
    assert stat.S_IMODE(os.stat(kp.private_key_path).st_mode) == 0o600

    rec = _record()
    doc = sign_record(kp.private_key_path, rec, signer_id="ops")
    assert doc["record_id"] == rec.id
    assert doc["record_sha256"] == record_digest(rec)
    assert doc["signer_id"] == "ops"

    sig_path = tmp_path / "rec.sig.json"
    write_signature(str(sig_path), doc)
    assert verify_record_signature(load_public_key_pem(kp.public_key_path), rec, read_signature(str(sig_path)))


def test_verify_fails_for_altered_record(tmp_path: Path) -> None:
    kp = generate_ed25519_keypair(str(tmp_path))
    rec = _record()
    doc = sign_record(kp.private_key_path, rec)
    pub = load_public_key_pem(kp.public_key_path)

    assert not verify_record_signature(pub, replace(rec, size=1), doc)
    assert not verify_record_signature(pub, replace(rec, id="local://images/ab/other.png"), doc)


def test_verify_fails_for_wrong_key_and_bad_documents(tmp_path: Path) -> None:
    signer = generate_ed25519_keypair(str(tmp_path / "a"))
    other = generate_ed25519_keypair(str(tmp_path / "b"))
    rec = _record()
    doc = sign_record(signer.private_key_path, rec)

    assert not verify_record_signature(load_public_key_pem(other.public_key_path), rec, doc)

    pub = load_public_key_pem(signer.public_key_path)
    assert not verify_record_signature(pub, rec, {**doc, "signature": "not base64!"})
    assert not verify_record_signature(pub, rec, {**doc, "algorithm": "RSA"})
    assert not verify_record_signature(pub, rec, {**doc, "signature": None})

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from safeingest.core.hashing import canonical_json_bytes
from safeingest.core.state.record import FileRecord

SIGNATURE_SCHEMA = {"name": "safeingest.record_signature", "version": "1.0"}


@dataclass(frozen=True)
class KeyPairPaths:
    """Generated key locations."""

    private_key_path: str
    public_key_path: str


def generate_ed25519_keypair(out_dir: str, *, prefix: str = "safeingest_ed25519") -> KeyPairPaths:
    """Generate an Ed25519 keypair on disk (PEM).

    Security notes:
    - The private key is written unencrypted with mode 0600; protect the directory.

    """

    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)

    priv = Ed25519PrivateKey.generate()
    pub = priv.public_key()

    priv_path = out / f"{prefix}_private.pem"
    pub_path = out / f"{prefix}_public.pem"

    priv_path.write_bytes(
        priv.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    priv_path.chmod(0o600)
    pub_path.write_bytes(
        pub.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )
    return KeyPairPaths(private_key_path=str(priv_path), public_key_path=str(pub_path))


def load_private_key_pem(path: str) -> Ed25519PrivateKey:
    key = serialization.load_pem_private_key(Path(path).read_bytes(), password=None)
    if not isinstance(key, Ed25519PrivateKey):
        raise TypeError("not an Ed25519 private key")
    return key


def load_public_key_pem(path: str) -> Ed25519PublicKey:
    key = serialization.load_pem_public_key(Path(path).read_bytes())
    if not isinstance(key, Ed25519PublicKey):
        raise TypeError("not an Ed25519 public key")
    return key


def record_digest(record: FileRecord) -> str:
    """sha256 over the canonical JSON of a record."""

    return hashlib.sha256(canonical_json_bytes(record.to_dict())).hexdigest()


def sign_record(private_key_path: str, record: FileRecord, *, signer_id: Optional[str] = None) -> Dict[str, Any]:
    """Create a detached Ed25519 signature document for a FileRecord.

    Security notes:
    - Only the canonical record JSON is signed; the surrounding fields
      (signer_id, signed_at) are informational.

    """

    priv = load_private_key_pem(private_key_path)
    sig = priv.sign(canonical_json_bytes(record.to_dict()))
    return {
        "schema": dict(SIGNATURE_SCHEMA),
        "algorithm": "Ed25519",
        "signed_at": datetime.now(timezone.utc).isoformat(),
        "signer_id": signer_id,
        "record_id": record.id,
        "record_sha256": record_digest(record),
        "signature": base64.b64encode(sig).decode("ascii"),
    }


def verify_record_signature(
    public_key: Ed25519PublicKey, record: FileRecord, signature_doc: Mapping[str, Any]
) -> bool:
    """Verify a signature document against a record.

    Returns False for any mismatch: a different record id, altered record
    content or a malformed/invalid signature.

    """

    if signature_doc.get("algorithm") != "Ed25519":
        return False
    if signature_doc.get("record_id") != record.id:
        return False

    raw = signature_doc.get("signature")
    if not isinstance(raw, str):
        return False
    try:
        sig = base64.b64decode(raw.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError):
        return False

    try:
        public_key.verify(sig, canonical_json_bytes(record.to_dict()))
    except InvalidSignature:
        return False
    return True


def write_signature(path: str, signature_doc: Mapping[str, Any]) -> None:
    Path(path).write_text(json.dumps(dict(signature_doc), indent=2, sort_keys=True), encoding="utf-8")


def read_signature(path: str) -> Dict[str, Any]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("signature document must be a JSON object")
    return data

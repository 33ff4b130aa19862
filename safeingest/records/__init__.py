"""Record integrity tools.

Detached Ed25519 signatures over the canonical JSON of a FileRecord, so a
record exported from one deployment can be checked by another.

Security notes
- A valid signature proves the record was not altered after signing; it says
  nothing about the stored bytes beyond the content_hash the record names.
"""

from .signing import (  # noqa: F401
    KeyPairPaths,
    generate_ed25519_keypair,
    load_private_key_pem,
    load_public_key_pem,
    read_signature,
    record_digest,
    sign_record,
    verify_record_signature,
    write_signature,
)

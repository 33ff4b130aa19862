from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List

from safeingest.core.config import IngestConfig, configure_logging
from safeingest.core.entries import LocalEntry
from safeingest.core.errors import IngestError
from safeingest.core.pipeline import IngestPipeline
from safeingest.records.signing import (
    generate_ed25519_keypair,
    load_public_key_pem,
    read_signature,
    sign_record,
    verify_record_signature,
    write_signature,
)


def _config(args: argparse.Namespace) -> IngestConfig:
    """Environment config with command-line overrides applied on top."""

    cfg = IngestConfig.from_env()
    if getattr(args, "storage_root", None):
        cfg = replace(cfg, storage_root=Path(args.storage_root))
    if getattr(args, "db", None):
        cfg = replace(cfg, db_path=Path(args.db))
    return cfg


def _pipeline(args: argparse.Namespace, *, need_db: bool = False) -> IngestPipeline:
    cfg = _config(args)
    if need_db and cfg.db_path is None:
        print("error: this command needs --db or SAFEINGEST_DB_PATH", file=sys.stderr)
        raise SystemExit(2)
    configure_logging(cfg.log_level)
    return IngestPipeline.from_config(cfg)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def parse_option_overrides(items: List[str]) -> Dict[str, Any]:
    """Turn ["thumbnail.max_width=120", "webp.enabled=true"] into nested overrides.

    Values are parsed as JSON when possible, otherwise kept as strings.

    """

    out: Dict[str, Any] = {}
    for item in items or []:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            print(f"error: --option expects KEY=VALUE, got {item!r}", file=sys.stderr)
            raise SystemExit(2)
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        node = out
        parts = key.strip().split(".")
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
    return out


def cmd_ingest(args: argparse.Namespace) -> int:
    """Ingest a local file and print its FileRecord.

    Security notes:
    - The file is treated as untrusted exactly like an HTTP upload; the policy
      decides, never the extension.

    """

    path = Path(args.path)
    if not path.exists():
        print(f"error: file not found: {path}", file=sys.stderr)
        return 2
    if not path.is_file():
        print(f"error: not a regular file: {path}", file=sys.stderr)
        return 2

    payload = LocalEntry(claimed_name=args.name or path.name, claimed_mime=args.mime).to_payload(path)
    with _pipeline(args) as pipeline:
        record = pipeline.ingest(payload, args.policy, overrides=parse_option_overrides(args.option))
    _print_json(record.to_dict())
    return 0


def cmd_show_record(args: argparse.Namespace) -> int:
    with _pipeline(args, need_db=True) as pipeline:
        record = pipeline.get(args.record_id)
    _print_json(record.to_dict())
    return 0


def cmd_list_records(args: argparse.Namespace) -> int:
    with _pipeline(args, need_db=True) as pipeline:
        records = pipeline.list_records(limit=int(args.limit), offset=int(args.offset), namespace=args.namespace)
    _print_json({"records": [r.to_dict() for r in records]})
    return 0


def cmd_remove(args: argparse.Namespace) -> int:
    """Remove a record together with its stored bytes and variants."""

    with _pipeline(args, need_db=True) as pipeline:
        record = pipeline.remove(args.record_id)
    _print_json({"removed": record.id})
    return 0


def cmd_regenerate_variants(args: argparse.Namespace) -> int:
    with _pipeline(args, need_db=True) as pipeline:
        record = pipeline.regenerate_variants(
            args.record_id,
            policy=args.policy,
            overrides=parse_option_overrides(args.option),
        )
    _print_json(record.to_dict())
    return 0


def cmd_keygen(args: argparse.Namespace) -> int:
    """Generate an Ed25519 keypair for signing records.

    Security notes:
    - Store the private key securely. Anyone with it can forge signatures.

    """

    kp = generate_ed25519_keypair(os.path.abspath(args.out_dir), prefix=args.prefix)
    _print_json({"private_key": kp.private_key_path, "public_key": kp.public_key_path})
    return 0


def cmd_sign_record(args: argparse.Namespace) -> int:
    with _pipeline(args, need_db=True) as pipeline:
        record = pipeline.get(args.record_id)
    doc = sign_record(args.key, record, signer_id=args.signer_id)
    if args.out:
        write_signature(args.out, doc)
    _print_json(doc)
    return 0


def cmd_verify_record(args: argparse.Namespace) -> int:
    """Verify a signature document against the stored record it names."""

    doc = read_signature(args.signature)
    with _pipeline(args, need_db=True) as pipeline:
        record = pipeline.get(str(doc.get("record_id") or ""))
    ok = verify_record_signature(load_public_key_pem(args.pubkey), record, doc)
    _print_json({"ok": ok, "record_id": record.id})
    return 0 if ok else 3


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the safeingest API server.

    Security notes:
    - If SAFEINGEST_API_KEYS is set, requests must send X-SafeIngest-API-Key.
    - Binds to 127.0.0.1 by default.

    """

    import uvicorn

    from safeingest.api.server import create_app

    app = create_app(config=_config(args))
    uvicorn.run(app, host=args.host, port=int(args.port), log_level=args.log_level)
    return 0


def _add_storage_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--db", default=None, help="SQLite record database (default: SAFEINGEST_DB_PATH)")
    p.add_argument(
        "--storage-root", default=None, help="Root directory for stored bytes (default: SAFEINGEST_STORAGE_ROOT)"
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI parser."""
    p = argparse.ArgumentParser(prog="safeingest", description="safeingest CLI")
    sub = p.add_subparsers(dest="cmd", required=True)

    ig = sub.add_parser("ingest", help="Prove, normalize and store a local file")
    ig.add_argument("path", help="Path to file")
    ig.add_argument("--policy", default="images", help="Policy name (images, json, xml)")
    ig.add_argument("--name", default=None, help="Claimed display name (default: file name)")
    ig.add_argument("--mime", default=None, help="Claimed MIME type (advisory only)")
    ig.add_argument("--option", action="append", default=[], help="Policy override KEY=VALUE (dotted key)")
    _add_storage_args(ig)
    ig.set_defaults(func=cmd_ingest)

    sr = sub.add_parser("show-record", help="Show a stored FileRecord")
    sr.add_argument("record_id", help="Record id (e.g. local://images/ab/<hash>.png)")
    _add_storage_args(sr)
    sr.set_defaults(func=cmd_show_record)

    lr = sub.add_parser("list-records", help="List stored FileRecords")
    lr.add_argument("--limit", type=int, default=50, help="Max records to show")
    lr.add_argument("--offset", type=int, default=0, help="Records to skip")
    lr.add_argument("--namespace", default=None, help="Only records in this namespace")
    _add_storage_args(lr)
    lr.set_defaults(func=cmd_list_records)

    rm = sub.add_parser("remove", help="Remove a record and its stored bytes")
    rm.add_argument("record_id", help="Record id")
    _add_storage_args(rm)
    rm.set_defaults(func=cmd_remove)

    rv = sub.add_parser("regenerate-variants", help="Re-derive the variants of a stored record")
    rv.add_argument("record_id", help="Record id")
    rv.add_argument("--policy", default=None, help="Policy name (default: the one recorded at ingest)")
    rv.add_argument("--option", action="append", default=[], help="Policy override KEY=VALUE (dotted key)")
    _add_storage_args(rv)
    rv.set_defaults(func=cmd_regenerate_variants)

    kg = sub.add_parser("keygen", help="Generate an Ed25519 keypair for signing records")
    kg.add_argument("out_dir", help="Directory to write keys into")
    kg.add_argument("--prefix", default="safeingest_ed25519", help="Filename prefix for the key files")
    kg.set_defaults(func=cmd_keygen)

    sg = sub.add_parser("sign-record", help="Sign a stored FileRecord (detached Ed25519)")
    sg.add_argument("record_id", help="Record id")
    sg.add_argument("--key", required=True, help="Path to Ed25519 PRIVATE key PEM")
    sg.add_argument("--signer-id", default=None, help="Optional signer id")
    sg.add_argument("--out", default=None, help="Write the signature document to this path")
    _add_storage_args(sg)
    sg.set_defaults(func=cmd_sign_record)

    vr = sub.add_parser("verify-record", help="Verify a record signature document")
    vr.add_argument("signature", help="Path to signature JSON")
    vr.add_argument("--pubkey", required=True, help="Path to Ed25519 PUBLIC key PEM")
    _add_storage_args(vr)
    vr.set_defaults(func=cmd_verify_record)

    sv = sub.add_parser("serve", help="Run the safeingest FastAPI server")
    sv.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    sv.add_argument("--port", type=int, default=8080, help="Bind port (default: 8080)")
    sv.add_argument("--log-level", default="info", help="Uvicorn log level")
    _add_storage_args(sv)
    sv.set_defaults(func=cmd_serve)

    return p


def main(argv: List[str] | None = None) -> int:
    """CLI entry."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args))
    except IngestError as e:
        print(f"error: {e.code}: {e.reason}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple, Union

from safeingest.core.config import IngestConfig
from safeingest.core.entries import HttpEntry, LocalEntry
from safeingest.core.errors import (
    DecodeError,
    IngestError,
    RecordNotFoundError,
    SizeViolation,
    StorageFailure,
    VariantError,
)
from safeingest.core.filters import apply_filters
from safeingest.core.hashing import sha256_file
from safeingest.core.policy import FilePolicy, PolicyCatalog, default_catalog
from safeingest.core.state import FileContext, FileRecord, Payload, VariantRecord
from safeingest.core.storage import (
    InMemoryRecordStore,
    RecordStore,
    SQLiteRecordStore,
    StorageRegistry,
    Store,
    Uri,
)
from safeingest.core.strategies import FileStrategy
from safeingest.core.tempfiles import TempScope
from safeingest.core.variants import VariantOutcome, VariantProfile, Variator, variant_storage_path

log = logging.getLogger("safeingest.pipeline")

PolicyRef = Union[str, FilePolicy]

_SCALARS = (str, int, float, bool, type(None))


def payload_for(raw: Any) -> Payload:
    """Route a raw input to the Entry adapter that understands it."""

    if isinstance(raw, Payload):
        return raw
    if isinstance(raw, Mapping) or (hasattr(raw, "filename") and hasattr(raw, "file")):
        return HttpEntry().to_payload(raw)
    return LocalEntry().to_payload(raw)


class _KeyedLocks:
    """One lock per key; an entry lives only while someone holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, List[Any]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class _StagedWrites:
    """Byte writes of one commit, undoable until the record is persisted.

    A target that already holds bytes is copied into the TempScope before it
    is overwritten; rollback restores it. Targets created by this commit are
    deleted on rollback unless released to a committed record.

    """

    def __init__(self, store: Store, scope: TempScope) -> None:
        self.store = store
        self.scope = scope
        self._created: List[Path] = []
        self._backups: List[Tuple[Path, Path]] = []
        self._seen: Set[Path] = set()

    def write(self, context: FileContext, target: Path) -> None:
        if target not in self._seen:
            self._seen.add(target)
            if self.store.exists(target):
                backup = self.scope.new_path(".bak").resolve()
                self.store.copy(target, backup)
                self._backups.append((target, backup))
            else:
                self._created.append(target)
        self.store.write(context, target)

    def release(self, paths: Iterable[Path]) -> None:
        keep = set(paths)
        self._created = [p for p in self._created if p not in keep]

    def rollback(self) -> None:
        for path in reversed(self._created):
            try:
                self.store.delete(path)
            except StorageFailure as e:
                log.error("rollback_delete_failed", extra={"path": str(path), "rule": e.rule})
        for target, backup in reversed(self._backups):
            try:
                self.store.copy(backup, target)
            except StorageFailure as e:
                log.error("rollback_restore_failed", extra={"path": str(target), "rule": e.rule})


class IngestPipeline:
    """Orchestrates Entry -> prove -> normalize -> filters -> variants -> store.

    One call handles one upload. Every temporary file lives in a TempScope
    that is removed on every exit path.

    Commit is all-or-nothing:
    - if a byte write fails, no record is saved and bytes already written by
      this call are deleted
    - if the record save fails, the bytes written by this call are deleted and
      files it overwrote are restored
    - commits for one record id are serialized; a save that loses a race to
      another writer becomes an update of the winner's record

    Security notes:
    - Storage paths derive from the content hash and trusted extension only.
    - Proof runs under a timeout; a timed out proof rejects the upload. The
      worker thread is not interrupted and keeps its decode slot until done.

    """

    def __init__(
        self,
        *,
        registry: StorageRegistry,
        records: Optional[RecordStore] = None,
        catalog: Optional[PolicyCatalog] = None,
        temp_dir: Optional[Path] = None,
        max_upload_bytes: int = 25 * 1024 * 1024,
        prove_timeout_sec: float = 30,
        max_concurrent_decodes: int = 4,
        variant_workers: int = 2,
    ) -> None:
        self.registry = registry
        self.records: RecordStore = records if records is not None else InMemoryRecordStore()
        self.catalog = catalog or default_catalog()
        self.temp_dir = Path(temp_dir) if temp_dir else None
        self.max_upload_bytes = int(max_upload_bytes)
        self.prove_timeout_sec = float(prove_timeout_sec)

        self._decode_slots = threading.BoundedSemaphore(max(1, int(max_concurrent_decodes)))
        self._prove_pool = ThreadPoolExecutor(
            max_workers=max(1, int(max_concurrent_decodes)), thread_name_prefix="safeingest-prove"
        )
        self.variator = Variator(max_workers=variant_workers, decode_slots=self._decode_slots)
        self._record_locks = _KeyedLocks()

    @classmethod
    def from_config(cls, cfg: IngestConfig, *, catalog: Optional[PolicyCatalog] = None) -> "IngestPipeline":
        registry = StorageRegistry()
        registry.mount("local", cfg.storage_root)
        records: RecordStore = SQLiteRecordStore(cfg.db_path) if cfg.db_path else InMemoryRecordStore()
        return cls(
            registry=registry,
            records=records,
            catalog=catalog,
            temp_dir=cfg.temp_dir,
            max_upload_bytes=cfg.max_upload_bytes,
            prove_timeout_sec=cfg.prove_timeout_sec,
            max_concurrent_decodes=cfg.max_concurrent_decodes,
            variant_workers=cfg.variant_workers,
        )

    def close(self) -> None:
        self._prove_pool.shutdown(wait=False)

    def __enter__(self) -> "IngestPipeline":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # Public operations

    def resolve_policy(self, policy: PolicyRef, overrides: Optional[Mapping[str, Any]] = None) -> FilePolicy:
        if isinstance(policy, FilePolicy):
            return policy.with_options(overrides)
        return self.catalog.resolve(policy, overrides)

    def ingest(
        self,
        raw: Any,
        policy: PolicyRef,
        *,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> FileRecord:
        """Ingest one untrusted input under a policy and return its FileRecord."""

        policy_name = policy if isinstance(policy, str) else policy.name
        try:
            resolved = self.resolve_policy(policy, overrides)
            payload = payload_for(raw)
            if payload.claimed_size > self.max_upload_bytes:
                raise SizeViolation(
                    f"claimed size exceeds the upload ceiling of {self.max_upload_bytes}", rule="max_upload"
                )
            with TempScope(str(self.temp_dir) if self.temp_dir else None) as scope:
                record = self._ingest(FileContext.from_payload(payload), resolved, policy_name, scope)
        except IngestError as e:
            log.info(
                "ingest_rejected",
                extra={"policy": policy_name, "error": e.code, "stage": e.stage, "rule": e.rule},
            )
            raise

        log.info(
            "ingest_accepted",
            extra={
                "policy": policy_name,
                "record_id": record.id,
                "content_hash": record.content_hash,
                "mime": record.mime,
                "size": record.size,
                "variants": sorted(record.variants),
                "variant_errors": sorted(record.variant_errors),
            },
        )
        return record

    def find(self, record_id: str) -> Optional[FileRecord]:
        return self.records.find(record_id)

    def get(self, record_id: str) -> FileRecord:
        record = self.records.find(record_id)
        if record is None:
            raise RecordNotFoundError(f"no record {record_id}", rule="record_id")
        return record

    def list_records(self, *, limit: int = 100, offset: int = 0, namespace: Optional[str] = None) -> List[FileRecord]:
        lister = getattr(self.records, "list_records", None)
        if lister is None:
            return []
        return lister(limit=limit, offset=offset, namespace=namespace)

    def regenerate_variants(
        self,
        record_id: str,
        *,
        policy: Optional[PolicyRef] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> FileRecord:
        """Re-derive every variant of a stored record under its (or a given) policy.

        The stored canonical bytes are re-hashed first; a mismatch with the
        record raises StorageFailure instead of deriving from altered bytes.

        """

        with self._record_locks.hold(record_id):
            record = self.get(record_id)
            policy_ref = policy or str(record.metadata.get("policy") or "")
            if not policy_ref:
                raise VariantError("record does not name its policy; pass one explicitly", rule="policy")
            resolved = self.resolve_policy(policy_ref, overrides)
            policy_name = policy_ref if isinstance(policy_ref, str) else policy_ref.name

            uri = Uri.from_string(record.id)
            with TempScope(str(self.temp_dir) if self.temp_dir else None) as scope:
                context = self._context_from_record(record, uri, resolved, scope)
                profiles = resolved.variants(context)
                outcomes = self.variator.run(context, profiles, scope=scope)
                self._raise_for_mandatory(resolved, outcomes)

                store = self._store_for(resolved, context, uri)
                staged = _StagedWrites(store, scope)
                try:
                    variants, errors = self._write_variants(
                        staged, uri.scheme, record.storage_path, profiles, outcomes
                    )
                    updated = record.with_variants(variants, errors)
                    self.records.update(updated)
                except Exception:
                    staged.rollback()
                    raise

                self._delete_stale_variants(store, record, updated)

        log.info(
            "variants_regenerated",
            extra={"policy": policy_name, "record_id": record.id, "variants": sorted(variants)},
        )
        return updated

    def remove(self, record_id: str) -> FileRecord:
        """Delete a record and its bytes (variants first, then the primary file)."""

        with self._record_locks.hold(record_id):
            record = self.get(record_id)
            uri = Uri.from_string(record.id)
            store = self.registry.get(uri.scheme).store
            policy_name = record.metadata.get("policy")
            if isinstance(policy_name, str) and policy_name in self.catalog.names():
                bound = self.catalog.resolve(policy_name).store(None)
                store = bound or store

            for variant in record.variants.values():
                store.delete(self.registry.absolute_path(Uri.from_string(variant.uri)))
            store.delete(self.registry.absolute_path(uri))
            self.records.delete(record.id)

        log.info("record_removed", extra={"record_id": record.id, "content_hash": record.content_hash})
        return record

    # Stages

    def _ingest(self, context: FileContext, policy: FilePolicy, policy_name: str, scope: TempScope) -> FileRecord:
        strategy = policy.strategy(context)
        proved = self._prove(strategy, context, scope)
        normalized = strategy.normalize(proved).with_meta("policy", policy_name)
        apply_filters(normalized, policy.filters(normalized))

        profiles = policy.variants(normalized)
        outcomes = self.variator.run(normalized, profiles, scope=scope)
        self._raise_for_mandatory(policy, outcomes)
        return self._commit(policy, normalized, profiles, outcomes, scope)

    def _prove(self, strategy: FileStrategy, context: FileContext, scope: TempScope) -> FileContext:
        def guarded() -> FileContext:
            with self._decode_slots:
                return strategy.prove(context, scope=scope)

        future = self._prove_pool.submit(guarded)
        try:
            return future.result(timeout=self.prove_timeout_sec)
        except FuturesTimeout as e:
            future.cancel()
            raise DecodeError(
                f"proof did not finish within {self.prove_timeout_sec:g}s", rule="timeout"
            ) from e

    @staticmethod
    def _raise_for_mandatory(policy: FilePolicy, outcomes: Mapping[str, VariantOutcome]) -> None:
        for name in policy.mandatory_variants():
            outcome = outcomes.get(name)
            if outcome is None:
                raise VariantError(f"mandatory variant {name} was not produced", rule=name)
            if not outcome.ok:
                reason = outcome.error.reason if outcome.error else "unknown error"
                raise VariantError(f"mandatory variant {name} failed: {reason}", rule=name)

    def _store_for(self, policy: FilePolicy, context: FileContext, uri: Uri) -> Store:
        return policy.store(context) or self.registry.get(uri.scheme).store

    def _commit(
        self,
        policy: FilePolicy,
        context: FileContext,
        profiles: Mapping[str, VariantProfile],
        outcomes: Mapping[str, VariantOutcome],
        scope: TempScope,
    ) -> FileRecord:
        now = datetime.now(timezone.utc)
        storage_path = policy.store_path(context, now=now)
        uri = Uri.from_string(f"{policy.scheme()}://{storage_path}")
        store = self._store_for(policy, context, uri)
        primary = self.registry.absolute_path(uri)

        with self._record_locks.hold(str(uri)):
            existing = self.records.find(str(uri))
            staged = _StagedWrites(store, scope)
            try:
                staged.write(context, primary)
                variants, errors = self._write_variants(staged, uri.scheme, storage_path, profiles, outcomes)

                record = FileRecord.from_context(
                    context,
                    uri=str(uri),
                    storage_path=storage_path,
                    namespace=policy.namespace(),
                    created_at=now,
                ).with_variants(variants, errors)

                if existing is None:
                    existing = self._save_or_find(record)
                    if existing is not None:
                        staged.release(self._record_paths(existing))
                if existing is not None:
                    record = replace(record, created_at=existing.created_at, original_name=existing.original_name)
                    self.records.update(record)
            except Exception:
                staged.rollback()
                raise

            if existing is not None:
                self._delete_stale_variants(store, existing, record)
        return record

    def _save_or_find(self, record: FileRecord) -> Optional[FileRecord]:
        """Save a new record; return the stored one when another writer saved it first."""

        try:
            self.records.save(record)
        except StorageFailure as e:
            if e.rule != "duplicate":
                raise
            winner = self.records.find(record.id)
            if winner is None:
                raise
            log.info("record_save_raced", extra={"record_id": record.id})
            return winner
        return None

    def _write_variants(
        self,
        staged: _StagedWrites,
        scheme: str,
        storage_path: str,
        profiles: Mapping[str, VariantProfile],
        outcomes: Mapping[str, VariantOutcome],
    ):
        variants: Dict[str, VariantRecord] = {}
        errors: Dict[str, str] = {}
        for name in sorted(outcomes):
            outcome = outcomes[name]
            if not outcome.ok:
                errors[name] = outcome.error.reason if outcome.error else "unknown error"
                continue
            vpath = variant_storage_path(storage_path, profiles[name], outcome.context)
            vuri = Uri.from_string(f"{scheme}://{vpath}")
            staged.write(outcome.context, self.registry.absolute_path(vuri))
            variants[name] = VariantRecord.from_context(name, outcome.context, uri=str(vuri), storage_path=vpath)
        return variants, errors

    def _record_paths(self, record: FileRecord) -> List[Path]:
        paths = [self.registry.absolute_path(Uri.from_string(record.id))]
        paths.extend(self.registry.absolute_path(Uri.from_string(v.uri)) for v in record.variants.values())
        return paths

    def _delete_stale_variants(self, store: Store, old: FileRecord, new: FileRecord) -> None:
        stale = {v.uri for v in old.variants.values()} - {v.uri for v in new.variants.values()}
        for uri in sorted(stale):
            store.delete(self.registry.absolute_path(Uri.from_string(uri)))

    def _context_from_record(self, record: FileRecord, uri: Uri, policy: FilePolicy, scope: TempScope) -> FileContext:
        """Rebuild a proved context from stored canonical bytes.

        The bytes are copied into the scope and must hash to the recorded
        content_hash; the record itself was produced by a strategy proof.

        """

        store = self._store_for(policy, None, uri)
        data = store.read(self.registry.absolute_path(uri))
        local = scope.new_path("." + record.extension)
        local.write_bytes(data)
        digest = sha256_file(local)
        if digest != record.content_hash:
            raise StorageFailure("stored bytes do not match the record hash", rule="integrity")

        metadata = {k: v for k, v in record.metadata.items() if isinstance(v, _SCALARS)}
        base = FileContext(
            claimed_name=record.original_name,
            claimed_mime=record.mime,
            claimed_size=record.size,
            source=str(local),
        )
        return base.with_proof(
            trusted_mime=record.mime,
            trusted_extension=record.extension,
            normalized_path=local,
            normalized_size=len(data),
            content_hash=digest,
            metadata=metadata,
        ).with_normalized()

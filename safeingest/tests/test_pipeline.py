from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List

import pytest
from PIL import Image

from conftest import stored_files
from safeingest.core.entries import LocalEntry
from safeingest.core.errors import (
    DecodeError,
    PolicyConfigurationError,
    PolicyViolationError,
    RecordNotFoundError,
    SizeViolation,
    SpoofedTypeError,
    StorageFailure,
    VariantError,
)
from safeingest.core.pipeline import IngestPipeline
from safeingest.core.policy import ImagePolicy
from safeingest.core.state import FileContext
from safeingest.core.storage import InMemoryRecordStore, LocalStore, StorageRegistry, Uri
from safeingest.core.strategies import ImageStrategy
from safeingest.core.tempfiles import TempScope
from safeingest.core.transformers import FileTransformer
from safeingest.core.variants import VariantProfile


class FailingStore(LocalStore):
    def write(self, context, path) -> None:
        raise StorageFailure("disk full", rule="write")


class FailingRecords(InMemoryRecordStore):
    def save(self, record) -> None:
        raise StorageFailure("database is locked", rule="duplicate")


class RacedRecords(InMemoryRecordStore):
    """Another writer saves the same record just before this one does."""

    def save(self, record) -> None:
        super().save(replace(record, original_name="winner"))
        super().save(record)


class FlakyUpdates(InMemoryRecordStore):
    fail_updates = False

    def update(self, record) -> None:
        if self.fail_updates:
            raise StorageFailure("database is locked", rule="update")
        super().update(record)


@dataclass(frozen=True)
class Explode(FileTransformer):
    name = "explode"

    def transform(self, context: FileContext, *, scope: TempScope) -> FileContext:
        raise VariantError("encoder crashed", rule="encode")


@dataclass(frozen=True)
class BrokenVariant(VariantProfile):
    mandatory: bool = False

    def name_suffix(self) -> str:
        return "broken"

    def path(self) -> str:
        return "broken"

    def transformers(self, context: FileContext) -> List[FileTransformer]:
        return [Explode()]


class BrokenVariantPolicy(ImagePolicy):
    """Thumbnail plus a variant that always fails; `broken_mandatory` decides if it is fatal."""

    broken_mandatory = False

    def variants(self, context: FileContext) -> Dict[str, VariantProfile]:
        out = super().variants(context)
        out["broken"] = BrokenVariant(mandatory=self.broken_mandatory)
        return out

    def mandatory_variants(self):
        return ("broken",) if self.broken_mandatory else ()


class MandatoryBrokenPolicy(BrokenVariantPolicy):
    broken_mandatory = True


@dataclass(frozen=True)
class Buggy(FileTransformer):
    name = "buggy"

    def transform(self, context: FileContext, *, scope: TempScope) -> FileContext:
        raise RuntimeError("transformer bug")


class CrashingVariant(BrokenVariant):
    def name_suffix(self) -> str:
        return "crash"

    def transformers(self, context: FileContext) -> List[FileTransformer]:
        return [Buggy()]


class CrashingVariantPolicy(ImagePolicy):
    def variants(self, context: FileContext) -> Dict[str, VariantProfile]:
        out = super().variants(context)
        out["crash"] = CrashingVariant()
        return out


class SlowImageStrategy(ImageStrategy):
    def prove(self, context, *, scope):
        time.sleep(0.5)
        return super().prove(context, scope=scope)


class SlowPolicy(ImagePolicy):
    def strategy(self, context):
        return SlowImageStrategy()


def test_large_jpeg_keeps_primary_and_gets_thumbnail(pipeline: IngestPipeline, storage_root: Path, image_bytes) -> None:
    data = image_bytes("JPEG", size=(4000, 3000))
    record = pipeline.ingest(LocalEntry(claimed_name="big.jpg").to_payload(data), "images")

    assert record.mime == "image/jpeg"
    assert record.extension == "jpg"
    assert (record.metadata["width"], record.metadata["height"]) == (4000, 3000)
    assert record.metadata["policy"] == "images"
    assert record.original_name == "big"
    assert record.id == f"local://images/{record.content_hash[:2]}/{record.content_hash}.jpg"

    thumb = record.variants["thumbnail"]
    assert (thumb.metadata["width"], thumb.metadata["height"]) == (300, 225)
    assert thumb.storage_path == f"images/{record.content_hash[:2]}/thumbnail/{record.content_hash}_thumb.jpg"

    primary = storage_root / record.storage_path
    with Image.open(primary) as img:
        assert img.size == (4000, 3000)
    with Image.open(storage_root / thumb.storage_path) as img:
        assert img.size == (300, 225)
    assert pipeline.get(record.id) == record


def test_trust_comes_from_bytes_not_claims(pipeline: IngestPipeline, image_bytes) -> None:
    data = image_bytes("PNG", size=(20, 20))
    a = pipeline.ingest(LocalEntry(claimed_name="a.png", claimed_mime="image/png").to_payload(data), "images")
    b = pipeline.ingest(LocalEntry(claimed_name="../../b.exe", claimed_mime="text/html").to_payload(data), "images")

    assert a.content_hash == b.content_hash
    assert a.storage_path == b.storage_path
    assert a.mime == b.mime == "image/png"
    assert b.original_name == "a"


def test_reingesting_same_content_updates_the_record(pipeline: IngestPipeline, storage_root: Path, image_bytes) -> None:
    data = image_bytes("PNG", size=(50, 40))
    first = pipeline.ingest(data, "images")
    second = pipeline.ingest(data, "images", overrides={"thumbnail": {"max_width": 10, "max_height": 10}})

    assert second.id == first.id
    assert second.created_at == first.created_at
    assert second.variants["thumbnail"].metadata["width"] == 10
    assert len(pipeline.list_records()) == 1
    assert len(stored_files(storage_root)) == 2


def test_spoofed_upload_stores_nothing(pipeline: IngestPipeline, storage_root: Path, tmp_path: Path) -> None:
    payload = LocalEntry(claimed_name="x.png", claimed_mime="image/png").to_payload(b"#!/bin/sh\nrm -rf /\n")
    with pytest.raises(SpoofedTypeError):
        pipeline.ingest(payload, "images")

    assert stored_files(storage_root) == []
    assert pipeline.list_records() == []
    assert list((tmp_path / "tmp").iterdir()) == []


def test_store_write_failure_leaves_no_record_and_no_temp_files(tmp_path: Path, storage_root: Path, image_bytes) -> None:
    registry = StorageRegistry()
    registry.mount("local", storage_root)
    records = InMemoryRecordStore()
    policy = ImagePolicy().with_storage(FailingStore())

    with IngestPipeline(registry=registry, records=records, temp_dir=tmp_path / "tmp") as pipeline:
        with pytest.raises(StorageFailure):
            pipeline.ingest(image_bytes("PNG"), policy)

    assert records.list_records() == []
    assert stored_files(storage_root) == []
    assert list((tmp_path / "tmp").iterdir()) == []


def test_record_save_failure_rolls_back_written_bytes(tmp_path: Path, storage_root: Path, image_bytes) -> None:
    registry = StorageRegistry()
    registry.mount("local", storage_root)

    with IngestPipeline(registry=registry, records=FailingRecords(), temp_dir=tmp_path / "tmp") as pipeline:
        with pytest.raises(StorageFailure):
            pipeline.ingest(image_bytes("PNG", size=(40, 40)), "images")

    assert stored_files(storage_root) == []


def test_optional_variant_failure_is_recorded(pipeline: IngestPipeline, storage_root: Path, image_bytes) -> None:
    record = pipeline.ingest(image_bytes("PNG", size=(30, 30)), BrokenVariantPolicy())

    assert set(record.variants) == {"thumbnail"}
    assert record.variant_errors == {"broken": "encoder crashed"}
    assert len(stored_files(storage_root)) == 2


def test_mandatory_variant_failure_rejects_the_upload(pipeline: IngestPipeline, storage_root: Path, image_bytes) -> None:
    with pytest.raises(VariantError) as exc:
        pipeline.ingest(image_bytes("PNG", size=(30, 30)), MandatoryBrokenPolicy())

    assert exc.value.rule == "broken"
    assert stored_files(storage_root) == []
    assert pipeline.list_records() == []


def test_filters_run_after_proof(pipeline: IngestPipeline, image_bytes) -> None:
    with pytest.raises(PolicyViolationError) as exc:
        pipeline.ingest(image_bytes("PNG", size=(30, 30)), "images", overrides={"limits": {"max_width": 20}})
    assert exc.value.rule == "max-dimensions"

    with pytest.raises(PolicyViolationError):
        pipeline.ingest(image_bytes("PNG"), "images", overrides={"mimes": ["image/jpeg"]})


def test_upload_ceiling_and_unknown_policy(tmp_path: Path, storage_root: Path, image_bytes) -> None:
    registry = StorageRegistry()
    registry.mount("local", storage_root)
    with IngestPipeline(registry=registry, max_upload_bytes=10, temp_dir=tmp_path / "tmp") as pipeline:
        with pytest.raises(SizeViolation) as exc:
            pipeline.ingest(image_bytes("PNG"), "images")
        assert exc.value.rule == "max_upload"

        with pytest.raises(PolicyConfigurationError):
            pipeline.ingest(b"{}", "videos")
        with pytest.raises(PolicyConfigurationError):
            pipeline.ingest(b"{}", "json", overrides={"nope": 1})


def test_json_document_is_stored_canonically(pipeline: IngestPipeline, storage_root: Path) -> None:
    record = pipeline.ingest(LocalEntry(claimed_name="cfg.txt").to_payload(b'{"b": 1, "a": [true]}'), "json")

    assert record.namespace == "json"
    assert record.storage_path.startswith("json/") and record.storage_path.endswith(".json")
    assert (storage_root / record.storage_path).read_bytes() == b'{"a":[true],"b":1}'
    assert record.variants == {}
    assert record.metadata["top_level"] == "object"


def test_canonical_bytes_reingest_to_the_same_record(pipeline: IngestPipeline, storage_root: Path, image_bytes) -> None:
    record = pipeline.ingest(image_bytes("PNG", size=(16, 9)), "images")
    canonical = (storage_root / record.storage_path).read_bytes()
    assert pipeline.ingest(canonical, "images").content_hash == record.content_hash


def test_proof_timeout_is_a_decode_error(tmp_path: Path, storage_root: Path, image_bytes) -> None:
    registry = StorageRegistry()
    registry.mount("local", storage_root)
    with IngestPipeline(registry=registry, prove_timeout_sec=0.05, temp_dir=tmp_path / "tmp") as pipeline:
        with pytest.raises(DecodeError) as exc:
            pipeline.ingest(image_bytes("PNG"), SlowPolicy())
    assert exc.value.rule == "timeout"
    assert stored_files(storage_root) == []


def test_regenerate_variants_with_new_options(pipeline: IngestPipeline, storage_root: Path, image_bytes) -> None:
    record = pipeline.ingest(image_bytes("PNG", size=(400, 200)), "images")
    old_thumb = storage_root / record.variants["thumbnail"].storage_path

    updated = pipeline.regenerate_variants(
        record.id, overrides={"thumbnail": {"enabled": False}, "webp": {"enabled": True}}
    )

    assert set(updated.variants) == {"webp"}
    assert updated.variants["webp"].mime == "image/webp"
    assert not old_thumb.exists()
    assert (storage_root / updated.variants["webp"].storage_path).is_file()
    assert pipeline.get(record.id) == updated
    assert updated.content_hash == record.content_hash


def test_regenerate_refuses_tampered_bytes(pipeline: IngestPipeline, storage_root: Path, image_bytes) -> None:
    record = pipeline.ingest(image_bytes("PNG", size=(20, 20)), "images")
    (storage_root / record.storage_path).write_bytes(b"tampered")

    with pytest.raises(StorageFailure) as exc:
        pipeline.regenerate_variants(record.id)
    assert exc.value.rule == "integrity"


def test_remove_deletes_bytes_and_record(pipeline: IngestPipeline, storage_root: Path, image_bytes) -> None:
    record = pipeline.ingest(image_bytes("PNG", size=(20, 20)), "images")
    assert len(stored_files(storage_root)) == 2

    removed = pipeline.remove(record.id)

    assert removed.id == record.id
    assert stored_files(storage_root) == []
    assert pipeline.find(record.id) is None
    with pytest.raises(RecordNotFoundError):
        pipeline.remove(record.id)


def test_primary_lives_below_the_mount_root(pipeline: IngestPipeline, storage_root: Path, image_bytes) -> None:
    record = pipeline.ingest(image_bytes("PNG"), "images")
    path = pipeline.registry.absolute_path(Uri.from_string(record.id))
    assert storage_root.resolve() in path.parents


def _pipeline_with(records, tmp_path: Path, storage_root: Path) -> IngestPipeline:
    registry = StorageRegistry()
    registry.mount("local", storage_root)
    return IngestPipeline(registry=registry, records=records, temp_dir=tmp_path / "tmp")


def test_untyped_transformer_crash_only_fails_its_variant(pipeline: IngestPipeline, storage_root: Path, image_bytes) -> None:
    record = pipeline.ingest(image_bytes("PNG", size=(30, 30)), CrashingVariantPolicy())

    assert set(record.variants) == {"thumbnail"}
    assert record.variant_errors == {"crash": "variant crash failed: RuntimeError"}
    assert len(stored_files(storage_root)) == 2


def test_parallel_uploads_of_one_image_commit_once(pipeline: IngestPipeline, storage_root: Path, image_bytes) -> None:
    data = image_bytes("PNG", size=(40, 40))
    other = image_bytes("PNG", size=(40, 40), color=(0, 90, 0))
    barrier = threading.Barrier(4)

    def upload(raw: bytes):
        barrier.wait()
        return pipeline.ingest(raw, "images")

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(upload, [data, data, data, other]))

    same = {r.id for r in results[:3]}
    assert len(same) == 1
    assert results[3].id not in same
    assert len(pipeline.list_records()) == 2
    for rec in pipeline.list_records():
        assert (storage_root / rec.storage_path).is_file()
        assert (storage_root / rec.variants["thumbnail"].storage_path).is_file()
    assert len(stored_files(storage_root)) == 4


def test_lost_save_race_keeps_the_committed_bytes(tmp_path: Path, storage_root: Path, image_bytes) -> None:
    records = RacedRecords()
    with _pipeline_with(records, tmp_path, storage_root) as p:
        record = p.ingest(image_bytes("PNG", size=(40, 40)), "images")

    assert record.original_name == "winner"
    assert records.find(record.id) == record
    assert (storage_root / record.storage_path).is_file()
    assert (storage_root / record.variants["thumbnail"].storage_path).is_file()


def test_failed_record_update_restores_overwritten_files(tmp_path: Path, storage_root: Path, image_bytes) -> None:
    records = FlakyUpdates()
    data = image_bytes("PNG", size=(400, 300))
    with _pipeline_with(records, tmp_path, storage_root) as p:
        record = p.ingest(data, "images")
        thumb = storage_root / record.variants["thumbnail"].storage_path
        before = thumb.read_bytes()

        records.fail_updates = True
        with pytest.raises(StorageFailure):
            p.regenerate_variants(record.id, overrides={"thumbnail": {"max_width": 50, "max_height": 50}})
        assert thumb.read_bytes() == before

        with pytest.raises(StorageFailure):
            p.ingest(data, "images", overrides={"thumbnail": {"max_width": 50, "max_height": 50}})
        assert thumb.read_bytes() == before

        assert p.get(record.id) == record
    assert len(stored_files(storage_root)) == 2


def test_reingest_with_fewer_variants_removes_stale_files(pipeline: IngestPipeline, storage_root: Path, image_bytes) -> None:
    data = image_bytes("PNG", size=(60, 60))
    first = pipeline.ingest(data, "images", overrides={"webp": {"enabled": True}})
    webp = storage_root / first.variants["webp"].storage_path
    assert webp.is_file()

    second = pipeline.ingest(data, "images")

    assert set(second.variants) == {"thumbnail"}
    assert not webp.exists()
    assert len(stored_files(storage_root)) == 2

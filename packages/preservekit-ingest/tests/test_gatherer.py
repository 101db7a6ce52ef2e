"""Tests for preservekit_ingest.gatherer -- the first ingest stage."""

from __future__ import annotations

import hashlib
import io
import sys
from pathlib import Path

import pytest

from preservekit_core.errors import ErrorCode
from preservekit_core.models import ChecksumSource
from preservekit_ingest.gatherer import MetadataGatherer

_tests_dir = str(Path(__file__).resolve().parent)
if _tests_dir not in sys.path:
    sys.path.insert(0, _tests_dir)

from conftest import (  # noqa: E402
    BAG_KEY,
    OBJECT_IDENTIFIER,
    PAYLOAD,
    RECEIVING_BUCKET,
    SCRATCH_FILES,
    WORK_ITEM_ID,
    build_tar,
    make_bag_files,
)


def _submit(object_stores, files: dict[str, bytes]) -> None:
    tar_bytes = build_tar(files)
    object_stores["aws"].put_object(RECEIVING_BUCKET, BAG_KEY, io.BytesIO(tar_bytes), len(tar_bytes))


@pytest.fixture()
def gatherer(applier, object_stores, config) -> MetadataGatherer:
    return MetadataGatherer(applier, object_stores, config)


@pytest.mark.unit
class TestMetadataGatherer:
    def test_builds_records(self, gatherer, submitted_bag, metadata_store):
        count, errors = gatherer.run(WORK_ITEM_ID, submitted_bag)
        assert errors == []
        assert count == 16
        files, _ = metadata_store.list_ingest_files(WORK_ITEM_ID, 0, 100)
        assert len(files) == 16
        assert all(f.needs_save for f in files)
        obj = metadata_store.ingest_object_get(WORK_ITEM_ID, OBJECT_IDENTIFIER)
        assert obj is not None
        assert obj.file_count == 16

    def test_object_metadata(self, gatherer, submitted_bag, metadata_store):
        gatherer.run(WORK_ITEM_ID, submitted_bag)
        obj = metadata_store.ingest_object_get(WORK_ITEM_ID, OBJECT_IDENTIFIER)
        assert obj.manifests == ["md5", "sha256"]
        assert obj.tag_manifests == ["md5", "sha256"]
        assert sorted(obj.parsable_tag_files) == ["aptrust-info.txt", "bag-info.txt", "bagit.txt"]
        assert obj.title() == "Sample Good Bag"
        assert obj.access() == "institution"
        assert obj.storage_option == "Standard"
        assert obj.has_fetch_txt is False
        assert obj.best_available_description() == "A bag used for ingest tests"

    def test_scratch_files_copied_to_staging(self, gatherer, submitted_bag, object_stores, config):
        gatherer.run(WORK_ITEM_ID, submitted_bag)
        keys = list(object_stores["aws"].list_objects(config.staging_bucket, f"{WORK_ITEM_ID}/"))
        assert sorted(keys) == sorted(f"{WORK_ITEM_ID}/{name}" for name in SCRATCH_FILES)

    def test_manifest_digests_merged(self, gatherer, submitted_bag, metadata_store):
        gatherer.run(WORK_ITEM_ID, submitted_bag)
        f = metadata_store.ingest_file_get(WORK_ITEM_ID, f"{OBJECT_IDENTIFIER}/data/files/notes.txt")
        expected = hashlib.sha256(PAYLOAD["data/files/notes.txt"]).hexdigest()
        assert f.get_checksum(ChecksumSource.MANIFEST, "sha256").digest == expected
        assert f.get_checksum(ChecksumSource.INGEST, "sha256").digest == expected
        tag = metadata_store.ingest_file_get(WORK_ITEM_ID, f"{OBJECT_IDENTIFIER}/bag-info.txt")
        assert tag.get_checksum(ChecksumSource.TAG_MANIFEST, "md5") is not None

    def test_rerun_keeps_uuids(self, gatherer, submitted_bag, metadata_store):
        gatherer.run(WORK_ITEM_ID, submitted_bag)
        first = {f.identifier: f.uuid for f in metadata_store.list_ingest_files(WORK_ITEM_ID, 0, 100)[0]}
        count, errors = gatherer.run(WORK_ITEM_ID, submitted_bag)
        assert (count, errors) == (16, [])
        second = {f.identifier: f.uuid for f in metadata_store.list_ingest_files(WORK_ITEM_ID, 0, 100)[0]}
        assert first == second
        obj = metadata_store.ingest_object_get(WORK_ITEM_ID, OBJECT_IDENTIFIER)
        assert obj.manifests == ["md5", "sha256"]

    def test_missing_source_is_fatal(self, gatherer, ingest_object, metadata_store):
        count, errors = gatherer.run(WORK_ITEM_ID, ingest_object)
        assert count == 0
        assert [e.code for e in errors] == [ErrorCode.E_SOURCE_NOT_FOUND]
        assert errors[0].is_fatal
        assert metadata_store.ingest_object_get(WORK_ITEM_ID, OBJECT_IDENTIFIER) is None

    def test_manifest_entry_not_in_bag(self, gatherer, ingest_object, object_stores, metadata_store):
        files = make_bag_files()
        files["manifest-md5.txt"] += b"0123456789abcdef0123456789abcdef  data/ghost.txt\n"
        _submit(object_stores, files)
        count, errors = gatherer.run(WORK_ITEM_ID, ingest_object)
        assert errors == []
        assert count == 16
        ghost = metadata_store.ingest_file_get(WORK_ITEM_ID, f"{OBJECT_IDENTIFIER}/data/ghost.txt")
        assert ghost is not None
        assert ghost.uuid
        assert ghost.size == 0
        md5 = ghost.get_checksum(ChecksumSource.MANIFEST, "md5")
        assert md5.digest == "0123456789abcdef0123456789abcdef"
        assert ghost.get_checksum(ChecksumSource.INGEST, "md5") is None
        assert metadata_store.ingest_object_get(WORK_ITEM_ID, OBJECT_IDENTIFIER) is not None

    def test_unparsable_tag_file(self, gatherer, ingest_object, object_stores):
        _submit(object_stores, make_bag_files(extra_tag_files={"bag-info.txt": b"  orphan continuation\n"}))
        _, errors = gatherer.run(WORK_ITEM_ID, ingest_object)
        assert [e.code for e in errors] == [ErrorCode.E_BAG_TAG_PARSE]
        assert errors[0].is_fatal

    def test_default_storage_option(self, gatherer, ingest_object, object_stores, metadata_store, caplog):
        _submit(object_stores, make_bag_files(storage_option=None))
        with caplog.at_level("WARNING", logger="preservekit_ingest"):
            _, errors = gatherer.run(WORK_ITEM_ID, ingest_object)
        assert errors == []
        obj = metadata_store.ingest_object_get(WORK_ITEM_ID, OBJECT_IDENTIFIER)
        assert obj.storage_option == "Standard"
        assert "W_DEFAULT_STORAGE_OPTION" in caplog.text

    def test_storage_option_propagated_to_files(self, gatherer, ingest_object, object_stores, metadata_store):
        _submit(object_stores, make_bag_files(storage_option="Glacier-OH"))
        _, errors = gatherer.run(WORK_ITEM_ID, ingest_object)
        assert errors == []
        files, _ = metadata_store.list_ingest_files(WORK_ITEM_ID, 0, 100)
        assert {f.storage_option for f in files} == {"Glacier-OH"}

    def test_fetch_txt_flagged(self, gatherer, ingest_object, object_stores, metadata_store):
        _submit(object_stores, make_bag_files(extra_tag_files={"fetch.txt": b"https://x.edu/f 10 data/f\n"}))
        count, errors = gatherer.run(WORK_ITEM_ID, ingest_object)
        assert errors == []
        assert count == 17
        assert metadata_store.ingest_object_get(WORK_ITEM_ID, OBJECT_IDENTIFIER).has_fetch_txt

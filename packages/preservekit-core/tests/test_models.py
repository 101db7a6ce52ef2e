"""Tests for preservekit_core.models -- records, name helpers and catalog payloads."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from preservekit_core.models import (
    ChecksumSource,
    EventType,
    FileType,
    IngestChecksum,
    IngestFile,
    IngestObject,
    PremisEvent,
    StorageRecord,
    Tag,
    clean_bag_name,
    file_type_for,
    looks_like_manifest,
    looks_like_tag_manifest,
    manifest_algorithm,
)

T0 = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def _obj(**overrides) -> IngestObject:
    fields = dict(s3_bucket="aptrust.receiving.test.edu", s3_key="example.edu.bag1.tar", institution="test.edu")
    fields.update(overrides)
    return IngestObject(**fields)


def _file(path: str = "data/file.txt", **overrides) -> IngestFile:
    return IngestFile(object_identifier="test.edu/example.edu.bag1", path_in_bag=path, **overrides)


def _checksum(alg: str, digest: str, source: ChecksumSource = ChecksumSource.INGEST) -> IngestChecksum:
    return IngestChecksum(algorithm=alg, digest=digest, date_time=T0, source=source)


@pytest.mark.unit
class TestNameHelpers:
    @pytest.mark.parametrize("key,expected", [
        ("bag.tar", "bag"),
        ("bag.b01.of12.tar", "bag"),
        ("bag.b1.of2", "bag"),
        ("bag", "bag"),
    ])
    def test_clean_bag_name(self, key: str, expected: str):
        assert clean_bag_name(key) == expected

    def test_manifest_names(self):
        assert looks_like_manifest("manifest-sha256.txt")
        assert not looks_like_manifest("tagmanifest-sha256.txt")
        assert looks_like_tag_manifest("tagmanifest-md5.txt")
        assert manifest_algorithm("manifest-sha512.txt") == "sha512"
        assert manifest_algorithm("tagmanifest-md5.txt") == "md5"
        assert manifest_algorithm("bag-info.txt") is None

    @pytest.mark.parametrize("path,expected", [
        ("data/a.txt", FileType.PAYLOAD),
        ("manifest-md5.txt", FileType.MANIFEST),
        ("tagmanifest-sha256.txt", FileType.TAG_MANIFEST),
        ("fetch.txt", FileType.FETCH_TXT),
        ("bag-info.txt", FileType.TAG_FILE),
        ("custom_tags/tracked.txt", FileType.TAG_FILE),
    ])
    def test_file_type_for(self, path: str, expected: FileType):
        assert file_type_for(path) is expected


@pytest.mark.unit
class TestIngestFile:
    def test_identifier(self):
        assert _file("data/x.pdf").identifier == "test.edu/example.edu.bag1/data/x.pdf"

    @pytest.mark.parametrize("path,preservable", [
        ("data/x.pdf", True),
        ("bag-info.txt", True),
        ("aptrust-info.txt", True),
        ("bagit.txt", False),
        ("fetch.txt", False),
        ("manifest-md5.txt", False),
        ("tagmanifest-sha256.txt", False),
    ])
    def test_has_preservable_name(self, path: str, preservable: bool):
        assert _file(path).has_preservable_name() is preservable

    @pytest.mark.parametrize("path", ["data/legal.txt", "data/caf\u00e9.txt", "data/a b.txt"])
    def test_identifier_is_legal(self, path: str):
        assert _file(path).identifier_is_legal()

    @pytest.mark.parametrize("path", [
        "data/illegal_\u007f.txt",
        "data/tab\there.txt",
        "data/bell\x07.txt",
        "data/c1\x85.txt",
        "data/nb\u00a0space.txt",
        "data/escaped\\u0007.txt",
        "data/escaped\\U007F.txt",
    ])
    def test_identifier_with_control_characters_is_illegal(self, path: str):
        assert not _file(path).identifier_is_legal()

    def test_parsable_tag_file(self):
        assert _file("bag-info.txt").is_parsable_tag_file()
        assert not _file("custom_tag_file.txt").is_parsable_tag_file()

    def test_set_checksum_replaces_same_source_and_algorithm(self):
        f = _file()
        f.set_checksum(_checksum("md5", "aaa"))
        f.set_checksum(_checksum("md5", "bbb"))
        f.set_checksum(_checksum("md5", "ccc", ChecksumSource.MANIFEST))
        assert len(f.checksums) == 2
        assert f.get_checksum(ChecksumSource.INGEST, "md5").digest == "bbb"
        assert f.get_checksum(ChecksumSource.MANIFEST, "md5").digest == "ccc"
        assert f.get_checksum(ChecksumSource.INGEST, "sha256") is None

    def test_set_storage_record_unique_per_provider_and_bucket(self):
        f = _file()
        f.set_storage_record(StorageRecord(provider="aws", bucket="b1", url="u1"))
        f.set_storage_record(StorageRecord(provider="aws", bucket="b1", url="u1", stored_at=T0))
        f.set_storage_record(StorageRecord(provider="wasabi", bucket="b1", url="u2"))
        assert len(f.storage_records) == 2
        assert f.get_storage_record("aws", "b1").stored_at == T0

    def test_needs_save_at(self):
        f = _file()
        assert f.needs_save_at("aws", "b1")
        f.set_storage_record(StorageRecord(provider="aws", bucket="b1", url="u1"))
        assert f.needs_save_at("aws", "b1")
        f.set_storage_record(StorageRecord(provider="aws", bucket="b1", url="u1", stored_at=T0))
        assert not f.needs_save_at("aws", "b1")

    def test_to_catalog_file_filters_submitted_data(self):
        f = _file(id=5, uuid="u-1", size=10)
        f.set_checksum(_checksum("md5", "aaa"))
        f.set_checksum(_checksum("md5", "aaa", ChecksumSource.MANIFEST))
        f.storage_records = [
            StorageRecord(provider="aws", bucket="b1", url="https://old", stored_at=T0),
            StorageRecord(provider="aws", bucket="b2", url="https://new", stored_at=T0),
        ]
        f.registry_urls = ["https://old"]
        f.premis_events = [
            PremisEvent(identifier="e1", event_type=EventType.INGESTION, date_time=T0, detail="d", id=9),
            PremisEvent(identifier="e2", event_type=EventType.REPLICATION, date_time=T0, detail="d"),
        ]
        cf = f.to_catalog_file()
        assert cf.id == 5
        assert [c.digest for c in cf.checksums] == ["aaa"]
        assert cf.storage_records == ["https://new"]
        assert [e.identifier for e in cf.premis_events] == ["e2"]


@pytest.mark.unit
class TestIngestObject:
    def test_identifier_strips_tar_suffix(self):
        obj = _obj(s3_key="example.edu.bag1.b01.of03.tar")
        assert obj.bag_name == "example.edu.bag1"
        assert obj.identifier == "test.edu/example.edu.bag1"
        assert obj.file_identifier("data/a") == "test.edu/example.edu.bag1/data/a"

    def test_tag_lookup_is_case_insensitive_on_label(self):
        obj = _obj(tags=[
            Tag(source_file="aptrust-info.txt", label="Access", value="Consortia"),
            Tag(source_file="aptrust-info.txt", label="Storage-Option", value=" Glacier-OH "),
            Tag(source_file="bag-info.txt", label="Internal-Sender-Description", value="sender desc"),
        ])
        assert obj.access() == "consortia"
        assert obj.storage_option_tag() == "Glacier-OH"
        assert obj.get_tag_value("aptrust-info.txt", "access") == "Consortia"
        assert obj.best_available_description() == "sender desc"

    def test_defaults_without_tags(self):
        obj = _obj()
        assert obj.access() == "institution"
        assert obj.title() == ""
        assert obj.storage_option_tag() == ""

    def test_to_catalog_object(self):
        obj = _obj(id=3, institution_id=2, tags=[
            Tag(source_file="aptrust-info.txt", label="Title", value="A Title"),
            Tag(source_file="bag-info.txt", label="Source-Organization", value="Test U"),
        ])
        co = obj.to_catalog_object()
        assert co.id == 3
        assert co.identifier == "test.edu/example.edu.bag1"
        assert co.title == "A Title"
        assert co.source_organization == "Test U"
        assert co.bag_name == "example.edu.bag1"


@pytest.mark.unit
class TestRoundTrip:
    """Persisted JSON must load back to an identical record."""

    def test_file_round_trip_keeps_unset_timestamps(self):
        f = _file(size=12, uuid="u-1")
        f.set_checksum(_checksum("sha256", "abc"))
        f.storage_records.append(StorageRecord(provider="aws", bucket="b", url="u", stored_at=T0))
        restored = IngestFile.model_validate_json(f.model_dump_json())
        assert restored == f
        assert restored.copied_to_staging_at is None
        assert restored.saved_to_registry_at is None
        assert restored.storage_records[0].verified_at is None
        assert restored.storage_records[0].stored_at == T0

    def test_object_round_trip_keeps_unset_timestamps(self):
        obj = _obj(manifests=["manifest-md5.txt"], tags=[Tag(source_file="bagit.txt", label="BagIt-Version", value="0.97")])
        restored = IngestObject.model_validate_json(obj.model_dump_json())
        assert restored == obj
        assert restored.copied_to_staging_at is None
        assert restored.deleted_from_receiving_at is None

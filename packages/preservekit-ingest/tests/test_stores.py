"""Tests for the in-memory collaborators in preservekit_ingest.stores."""

from __future__ import annotations

import io
import uuid

import pytest

from preservekit_core.errors import CatalogConflictError, ObjectNotFoundError
from preservekit_core.models import CatalogFile, CatalogObject, EventType, IngestFile, IngestObject, PremisEvent, utcnow
from preservekit_core.protocols import CatalogClient, CopySource, MetadataStore, ObjectStore
from preservekit_ingest.stores import InMemoryCatalog, InMemoryMetadataStore, InMemoryObjectStore


def _file(path: str) -> IngestFile:
    return IngestFile(object_identifier="test.edu/bag", path_in_bag=path)


def _event() -> PremisEvent:
    return PremisEvent(
        identifier=str(uuid.uuid4()),
        event_type=EventType.INGESTION,
        date_time=utcnow(),
        detail="Copied",
        intellectual_object_identifier="test.edu/bag",
    )


@pytest.mark.unit
class TestProtocolConformance:
    def test_in_memory_collaborators(self):
        assert isinstance(InMemoryMetadataStore(), MetadataStore)
        assert isinstance(InMemoryObjectStore(), ObjectStore)
        assert isinstance(InMemoryCatalog(), CatalogClient)


@pytest.mark.unit
class TestInMemoryMetadataStore:
    def test_object_round_trip(self):
        store = InMemoryMetadataStore()
        obj = IngestObject(s3_bucket="r", s3_key="bag.tar", institution="test.edu")
        assert store.ingest_object_get(1, obj.identifier) is None
        store.ingest_object_save(1, obj)
        assert store.ingest_object_get(1, obj.identifier) == obj
        assert store.ingest_object_get(2, obj.identifier) is None
        store.ingest_object_delete(1, obj.identifier)
        assert store.ingest_object_get(1, obj.identifier) is None

    def test_reads_return_copies(self):
        store = InMemoryMetadataStore()
        f = _file("data/a.txt")
        store.ingest_file_save(1, f)
        loaded = store.ingest_file_get(1, f.identifier)
        loaded.size = 99
        assert store.ingest_file_get(1, f.identifier).size == 0

    def test_paging(self):
        store = InMemoryMetadataStore()
        for i in range(5):
            store.ingest_file_save(1, _file(f"data/{i}.txt"))
        store.ingest_object_save(1, IngestObject(s3_bucket="r", s3_key="bag.tar", institution="test.edu"))

        page, offset = store.list_ingest_files(1, 0, 2)
        seen = [f.path_in_bag for f in page]
        assert offset == 2
        while offset:
            page, offset = store.list_ingest_files(1, offset, 2)
            seen.extend(f.path_in_bag for f in page)
        assert seen == [f"data/{i}.txt" for i in range(5)]

    def test_empty_listing(self):
        assert InMemoryMetadataStore().list_ingest_files(7, 0, 100) == ([], 0)

    def test_work_item_delete(self):
        store = InMemoryMetadataStore()
        store.ingest_file_save(1, _file("data/a.txt"))
        store.ingest_file_save(1, _file("data/b.txt"))
        store.ingest_file_save(2, _file("data/a.txt"))
        assert store.work_item_delete(1) == 2
        assert store.keys(1) == []
        assert len(store.keys(2)) == 1
        assert store.work_item_delete(1) == 0


@pytest.mark.unit
class TestInMemoryObjectStore:
    def test_put_get_stat(self):
        store = InMemoryObjectStore("aws")
        written = store.put_object("b", "k", io.BytesIO(b"hello world"), 5, metadata={"md5": "x"}, content_type="text/plain")
        assert written == 5
        assert store.get_object("b", "k").read() == b"hello"
        info = store.stat_object("b", "k")
        assert (info.size, info.content_type, info.metadata) == (5, "text/plain", {"md5": "x"})

    def test_short_stream(self):
        store = InMemoryObjectStore()
        assert store.put_object("b", "k", io.BytesIO(b"abc"), 10) == 3

    def test_missing_key(self):
        store = InMemoryObjectStore()
        with pytest.raises(ObjectNotFoundError, match="No such key: b/k"):
            store.stat_object("b", "k")

    def test_copy_keeps_metadata_unless_replaced(self):
        store = InMemoryObjectStore()
        store.put_object("b", "k", io.BytesIO(b"data"), 4, metadata={"a": "1"})
        store.copy_object("b", "k", "c", "k1")
        store.copy_object("b", "k", "c", "k2", metadata={"b": "2"})
        assert store.stat_object("c", "k1").metadata == {"a": "1"}
        assert store.stat_object("c", "k2").metadata == {"b": "2"}

    def test_compose(self):
        store = InMemoryObjectStore()
        store.put_object("b", "k", io.BytesIO(b"0123456789"), 10)
        store.compose_object("c", "k", [CopySource(bucket="b", key="k", start=0, end=3), CopySource(bucket="b", key="k", start=4, end=9)])
        assert store.get_object("c", "k").read() == b"0123456789"

    def test_list_and_remove(self):
        store = InMemoryObjectStore()
        for key in ("1/a", "1/b", "2/a"):
            store.put_object("b", key, io.BytesIO(b"x"), 1)
        assert list(store.list_objects("b", "1/")) == ["1/a", "1/b"]
        store.remove_object("b", "1/a")
        store.remove_object("b", "1/a")
        assert not store.exists("b", "1/a")


@pytest.mark.unit
class TestInMemoryCatalog:
    def test_object_conflict(self):
        catalog = InMemoryCatalog()
        saved = catalog.object_save(CatalogObject(identifier="test.edu/bag"))
        assert saved.id > 0
        with pytest.raises(CatalogConflictError) as exc_info:
            catalog.object_save(CatalogObject(identifier="test.edu/bag"))
        assert exc_info.value.status_code == 409
        assert catalog.object_save(saved).id == saved.id

    def test_file_url_uniqueness(self):
        catalog = InMemoryCatalog()
        catalog.file_save(CatalogFile(identifier="test.edu/bag/a", storage_records=["https://h/b/1"]))
        with pytest.raises(CatalogConflictError, match="Storage URL"):
            catalog.file_save(CatalogFile(identifier="test.edu/bag/b", storage_records=["https://h/b/1"]))

    def test_file_update_appends(self):
        catalog = InMemoryCatalog()
        saved = catalog.file_save(CatalogFile(identifier="test.edu/bag/a", storage_records=["https://h/b/1"]))
        saved.storage_records = ["https://h/c/1"]
        catalog.file_save(saved)
        assert catalog.storage_record_list("test.edu/bag/a") == ["https://h/b/1", "https://h/c/1"]
        saved.storage_records = ["https://h/c/1"]
        with pytest.raises(CatalogConflictError):
            catalog.file_save(saved)

    def test_event_save_is_idempotent(self):
        catalog = InMemoryCatalog()
        event = _event()
        first = catalog.event_save(event)
        second = catalog.event_save(event)
        assert first.id == second.id
        assert len(catalog.events) == 1
        assert catalog.event_get(event.identifier).id == first.id
        assert catalog.events_for("test.edu/bag") == [catalog.events[event.identifier]]

    def test_file_events_saved_with_file(self):
        catalog = InMemoryCatalog()
        event = _event()
        event.generic_file_identifier = "test.edu/bag/a"
        saved = catalog.file_save(CatalogFile(identifier="test.edu/bag/a", premis_events=[event]))
        assert saved.premis_events[0].id > 0
        assert catalog.events_for("test.edu/bag/a")[0].identifier == event.identifier

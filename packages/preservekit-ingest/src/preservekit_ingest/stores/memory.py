"""In-memory implementations of the collaborator protocols.

``InMemoryMetadataStore``, ``InMemoryObjectStore`` and ``InMemoryCatalog``
satisfy ``MetadataStore``, ``ObjectStore`` and ``CatalogClient`` via
structural subtyping.  They back local runs and tests; every instance is
independent, so each test builds its own.

The metadata store keeps records as JSON strings, the same persisted form
the Redis store uses.
"""

from __future__ import annotations

import hashlib
import io
import itertools
import threading
from typing import BinaryIO, Iterator

from pydantic import BaseModel, Field

from preservekit_core.errors import CatalogConflictError, ObjectNotFoundError
from preservekit_core.models import (
    CatalogChecksum,
    CatalogFile,
    CatalogObject,
    IngestFile,
    IngestObject,
    PremisEvent,
)
from preservekit_core.protocols import CopySource, ObjectInfo

_READ_CHUNK = 64 * 1024


class InMemoryMetadataStore:
    """MetadataStore backed by one dict of JSON strings per WorkItem.

    Field names follow the Redis layout: ``object:<identifier>`` and
    ``file:<identifier>``.  File listing is ordered by identifier.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[int, dict[str, str]] = {}

    def _put(self, work_item_id: int, field: str, value: str) -> None:
        with self._lock:
            self._items.setdefault(work_item_id, {})[field] = value

    def _get(self, work_item_id: int, field: str) -> str | None:
        with self._lock:
            return self._items.get(work_item_id, {}).get(field)

    def _delete(self, work_item_id: int, field: str) -> None:
        with self._lock:
            self._items.get(work_item_id, {}).pop(field, None)

    def ingest_object_get(self, work_item_id: int, identifier: str) -> IngestObject | None:
        data = self._get(work_item_id, f"object:{identifier}")
        return IngestObject.model_validate_json(data) if data is not None else None

    def ingest_object_save(self, work_item_id: int, obj: IngestObject) -> None:
        self._put(work_item_id, f"object:{obj.identifier}", obj.model_dump_json())

    def ingest_object_delete(self, work_item_id: int, identifier: str) -> None:
        self._delete(work_item_id, f"object:{identifier}")

    def ingest_file_get(self, work_item_id: int, identifier: str) -> IngestFile | None:
        data = self._get(work_item_id, f"file:{identifier}")
        return IngestFile.model_validate_json(data) if data is not None else None

    def ingest_file_save(self, work_item_id: int, ingest_file: IngestFile) -> None:
        self._put(work_item_id, f"file:{ingest_file.identifier}", ingest_file.model_dump_json())

    def ingest_file_delete(self, work_item_id: int, identifier: str) -> None:
        self._delete(work_item_id, f"file:{identifier}")

    def list_ingest_files(
        self, work_item_id: int, offset: int, limit: int
    ) -> tuple[list[IngestFile], int]:
        with self._lock:
            fields = sorted(
                k for k in self._items.get(work_item_id, {}) if k.startswith("file:")
            )
            page = [self._items[work_item_id][k] for k in fields[offset:offset + limit]]
            next_offset = offset + limit if offset + limit < len(fields) else 0
        return [IngestFile.model_validate_json(v) for v in page], next_offset

    def work_item_delete(self, work_item_id: int) -> int:
        with self._lock:
            return len(self._items.pop(work_item_id, {}))

    def keys(self, work_item_id: int) -> list[str]:
        with self._lock:
            return sorted(self._items.get(work_item_id, {}))


class _StoredObject(BaseModel):
    data: bytes
    etag: str
    content_type: str = ""
    metadata: dict[str, str] = Field(default_factory=dict)


class InMemoryObjectStore:
    """ObjectStore for one provider, holding blobs in a dict of buckets."""

    def __init__(self, provider: str = "local") -> None:
        self.provider = provider
        self._lock = threading.Lock()
        self._buckets: dict[str, dict[str, _StoredObject]] = {}

    def _store(
        self,
        bucket: str,
        key: str,
        data: bytes,
        metadata: dict[str, str] | None,
        content_type: str,
    ) -> None:
        stored = _StoredObject(
            data=data,
            etag=f'"{hashlib.md5(data).hexdigest()}"',
            content_type=content_type,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._buckets.setdefault(bucket, {})[key] = stored

    def _load(self, bucket: str, key: str) -> _StoredObject:
        with self._lock:
            stored = self._buckets.get(bucket, {}).get(key)
        if stored is None:
            raise ObjectNotFoundError(bucket, key)
        return stored

    def get_object(self, bucket: str, key: str) -> BinaryIO:
        return io.BytesIO(self._load(bucket, key).data)

    def put_object(
        self,
        bucket: str,
        key: str,
        stream: BinaryIO,
        size: int,
        metadata: dict[str, str] | None = None,
        content_type: str = "",
    ) -> int:
        buf = bytearray()
        while len(buf) < size:
            chunk = stream.read(min(_READ_CHUNK, size - len(buf)))
            if not chunk:
                break
            buf.extend(chunk)
        self._store(bucket, key, bytes(buf), metadata, content_type)
        return len(buf)

    def fput_object(self, bucket: str, key: str, path: str, content_type: str = "") -> int:
        with open(path, "rb") as fh:
            data = fh.read()
        self._store(bucket, key, data, None, content_type)
        return len(data)

    def stat_object(self, bucket: str, key: str) -> ObjectInfo:
        stored = self._load(bucket, key)
        return ObjectInfo(
            bucket=bucket,
            key=key,
            size=len(stored.data),
            etag=stored.etag,
            content_type=stored.content_type,
            metadata=dict(stored.metadata),
        )

    def copy_object(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        metadata: dict[str, str] | None = None,
        content_type: str = "",
    ) -> None:
        source = self._load(src_bucket, src_key)
        self._store(
            dst_bucket,
            dst_key,
            source.data,
            metadata if metadata is not None else source.metadata,
            content_type or source.content_type,
        )

    def compose_object(
        self,
        dst_bucket: str,
        dst_key: str,
        sources: list[CopySource],
        metadata: dict[str, str] | None = None,
        content_type: str = "",
    ) -> None:
        parts = [self._load(s.bucket, s.key).data[s.start:s.end + 1] for s in sources]
        self._store(dst_bucket, dst_key, b"".join(parts), metadata, content_type)

    def remove_object(self, bucket: str, key: str) -> None:
        with self._lock:
            self._buckets.get(bucket, {}).pop(key, None)

    def list_objects(self, bucket: str, prefix: str) -> Iterator[str]:
        with self._lock:
            keys = sorted(k for k in self._buckets.get(bucket, {}) if k.startswith(prefix))
        yield from keys

    def exists(self, bucket: str, key: str) -> bool:
        with self._lock:
            return key in self._buckets.get(bucket, {})


class InMemoryCatalog:
    """CatalogClient holding objects, files and events in dicts.

    Enforces the catalog's uniqueness rules: one record per identifier for
    new objects and files, one file per storage URL, and saving an event
    whose identifier is already stored returns the stored event.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.objects: dict[str, CatalogObject] = {}
        self.files: dict[str, CatalogFile] = {}
        self.events: dict[str, PremisEvent] = {}
        self._url_owner: dict[str, str] = {}

    def object_get(self, identifier: str) -> CatalogObject | None:
        with self._lock:
            obj = self.objects.get(identifier)
            return obj.model_copy(deep=True) if obj else None

    def object_save(self, obj: CatalogObject) -> CatalogObject:
        with self._lock:
            existing = self.objects.get(obj.identifier)
            if obj.id == 0 and existing is not None:
                raise CatalogConflictError(
                    f"Identifier {obj.identifier} has already been taken"
                )
            saved = obj.model_copy(deep=True)
            if saved.id == 0:
                saved.id = next(self._ids)
            saved.premis_events = []
            self.objects[saved.identifier] = saved
            return saved.model_copy(deep=True)

    def file_get(self, identifier: str) -> CatalogFile | None:
        with self._lock:
            f = self.files.get(identifier)
            return f.model_copy(deep=True) if f else None

    def file_save(self, catalog_file: CatalogFile) -> CatalogFile:
        with self._lock:
            existing = self.files.get(catalog_file.identifier)
            if catalog_file.id == 0 and existing is not None:
                raise CatalogConflictError(
                    f"Identifier {catalog_file.identifier} has already been taken"
                )
            for url in catalog_file.storage_records:
                owner = self._url_owner.get(url)
                already_listed = existing is not None and url in existing.storage_records
                if owner is not None and (owner != catalog_file.identifier or already_listed):
                    raise CatalogConflictError(f"Storage URL {url} has already been taken")

            saved = catalog_file.model_copy(deep=True)
            if saved.id == 0:
                saved.id = next(self._ids)
            if existing is not None:
                saved.checksums = existing.checksums + saved.checksums
                saved.storage_records = existing.storage_records + saved.storage_records
            for url in catalog_file.storage_records:
                self._url_owner[url] = saved.identifier
            saved.premis_events = [self._save_event(e) for e in catalog_file.premis_events]
            self.files[saved.identifier] = saved
            return saved.model_copy(deep=True)

    def checksum_list(self, file_identifier: str) -> list[CatalogChecksum]:
        with self._lock:
            f = self.files.get(file_identifier)
            return [c.model_copy() for c in f.checksums] if f else []

    def storage_record_list(self, file_identifier: str) -> list[str]:
        with self._lock:
            f = self.files.get(file_identifier)
            return list(f.storage_records) if f else []

    def event_save(self, event: PremisEvent) -> PremisEvent:
        with self._lock:
            return self._save_event(event)

    def event_get(self, identifier: str) -> PremisEvent | None:
        with self._lock:
            event = self.events.get(identifier)
            return event.model_copy() if event else None

    def _save_event(self, event: PremisEvent) -> PremisEvent:
        existing = self.events.get(event.identifier)
        if existing is not None:
            return existing.model_copy()
        saved = event.model_copy()
        saved.id = next(self._ids)
        self.events[saved.identifier] = saved
        return saved.model_copy()

    def events_for(self, identifier: str) -> list[PremisEvent]:
        """Every stored event whose object or file identifier is *identifier*."""
        with self._lock:
            return [
                e for e in self.events.values()
                if e.generic_file_identifier == identifier
                or (not e.generic_file_identifier and e.intellectual_object_identifier == identifier)
            ]

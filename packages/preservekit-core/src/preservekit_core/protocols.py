"""Protocols for the external collaborators of the ingest pipeline.

All protocols use ``typing.Protocol`` with ``@runtime_checkable`` so that
concrete backends satisfy them via structural subtyping -- no inheritance
required.  Collaborators report structured failures with the exception
classes in :mod:`preservekit_core.errors`.
"""

from __future__ import annotations

from typing import BinaryIO, Iterator, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from preservekit_core.models import (
    CatalogChecksum,
    CatalogFile,
    CatalogObject,
    IngestFile,
    IngestObject,
    PremisEvent,
)

__all__ = [
    "MetadataStore",
    "ObjectStore",
    "CatalogClient",
    "FormatIdentifierBackend",
    "ObjectInfo",
    "CopySource",
    "FormatMatch",
]


# ---------------------------------------------------------------------------
# Result Models
# ---------------------------------------------------------------------------


class ObjectInfo(BaseModel):
    """Result of a stat call against an object store."""

    bucket: str
    key: str
    size: int
    etag: str = ""
    content_type: str = ""
    metadata: dict[str, str] = Field(default_factory=dict)


class CopySource(BaseModel):
    """An inclusive byte range of a source object, used by multipart compose."""

    bucket: str
    key: str
    start: int
    end: int


class FormatMatch(BaseModel):
    """A format identification result."""

    mime_type: str
    match_type: str


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class MetadataStore(Protocol):
    """Durable per-WorkItem record store.

    Records are addressed by ``(work_item_id, identifier)``; objects and
    files live in separate namespaces.  Getters return ``None`` for a
    missing record and raise ``MetadataStoreError`` when the store itself
    fails.
    """

    def ingest_object_get(self, work_item_id: int, identifier: str) -> IngestObject | None:
        ...

    def ingest_object_save(self, work_item_id: int, obj: IngestObject) -> None:
        ...

    def ingest_object_delete(self, work_item_id: int, identifier: str) -> None:
        ...

    def ingest_file_get(self, work_item_id: int, identifier: str) -> IngestFile | None:
        ...

    def ingest_file_save(self, work_item_id: int, ingest_file: IngestFile) -> None:
        ...

    def ingest_file_delete(self, work_item_id: int, identifier: str) -> None:
        ...

    def list_ingest_files(
        self, work_item_id: int, offset: int, limit: int
    ) -> tuple[list[IngestFile], int]:
        """Return one page of file records and the next offset (``0`` when done)."""
        ...

    def work_item_delete(self, work_item_id: int) -> int:
        """Delete every record for the WorkItem; return how many were removed."""
        ...


@runtime_checkable
class ObjectStore(Protocol):
    """Blob storage for one provider (receiving, staging or preservation).

    ``get_object`` returns a readable binary stream the caller must close.
    Missing keys raise ``ObjectNotFoundError``.
    """

    def get_object(self, bucket: str, key: str) -> BinaryIO:
        ...

    def put_object(
        self,
        bucket: str,
        key: str,
        stream: BinaryIO,
        size: int,
        metadata: dict[str, str] | None = None,
        content_type: str = "",
    ) -> int:
        """Store *size* bytes read from *stream*; return bytes written."""
        ...

    def fput_object(
        self, bucket: str, key: str, path: str, content_type: str = ""
    ) -> int:
        ...

    def stat_object(self, bucket: str, key: str) -> ObjectInfo:
        ...

    def copy_object(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        metadata: dict[str, str] | None = None,
        content_type: str = "",
    ) -> None:
        """Server-side copy within this provider."""
        ...

    def compose_object(
        self,
        dst_bucket: str,
        dst_key: str,
        sources: list[CopySource],
        metadata: dict[str, str] | None = None,
        content_type: str = "",
    ) -> None:
        """Server-side multipart copy assembling *sources* in order."""
        ...

    def remove_object(self, bucket: str, key: str) -> None:
        ...

    def list_objects(self, bucket: str, prefix: str) -> Iterator[str]:
        ...


@runtime_checkable
class CatalogClient(Protocol):
    """System of record for finalized objects, files and events.

    Getters return ``None`` for a missing record.  Writers raise
    ``CatalogConflictError`` when a unique attribute is already taken and
    ``CatalogError`` for any other failure.  Saving an event whose
    ``identifier`` the catalog already holds returns the stored event.
    """

    def object_get(self, identifier: str) -> CatalogObject | None:
        ...

    def object_save(self, obj: CatalogObject) -> CatalogObject:
        ...

    def file_get(self, identifier: str) -> CatalogFile | None:
        ...

    def file_save(self, catalog_file: CatalogFile) -> CatalogFile:
        ...

    def checksum_list(self, file_identifier: str) -> list[CatalogChecksum]:
        ...

    def storage_record_list(self, file_identifier: str) -> list[str]:
        ...

    def event_save(self, event: PremisEvent) -> PremisEvent:
        ...

    def event_get(self, identifier: str) -> PremisEvent | None:
        ...


@runtime_checkable
class FormatIdentifierBackend(Protocol):
    """Third-party file-format identification engine."""

    def identify(self, sample: bytes, filename: str) -> FormatMatch | None:
        ...

    def engine_name(self) -> str:
        ...

"""Pydantic record models and enumerations for the preservekit pipeline.

``IngestObject`` and ``IngestFile`` are the durable per-WorkItem records
every stage reads from and writes back to the metadata store.  They
serialize with ``model_dump_json()`` and load with ``model_validate_json()``;
unset timestamps are ``None`` and stay ``None`` through a round trip.

The catalog models at the bottom describe what the catalog client accepts
and returns.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current time, used for every lifecycle stamp."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations and constants
# ---------------------------------------------------------------------------


class FileType(str, Enum):
    """What role a file plays inside a bag."""

    PAYLOAD = "payload_file"
    MANIFEST = "manifest"
    TAG_MANIFEST = "tag_manifest"
    FETCH_TXT = "fetch.txt"
    TAG_FILE = "tag_file"


class ChecksumSource(str, Enum):
    """Where a digest came from."""

    INGEST = "ingest"
    MANIFEST = "manifest"
    TAG_MANIFEST = "tag_manifest"
    REGISTRY = "registry"


class EventType(str, Enum):
    """Fixed taxonomy of provenance events."""

    ACCESS_ASSIGNMENT = "access assignment"
    CREATION = "creation"
    DIGEST_CALCULATION = "message digest calculation"
    FIXITY_CHECK = "fixity check"
    IDENTIFIER_ASSIGNMENT = "identifier assignment"
    INGESTION = "ingestion"
    REPLICATION = "replication"


class EventOutcome(str, Enum):
    SUCCESS = "Success"
    FAILURE = "Failure"


# Tag files whose contents are parsed into IngestObject.tags.
PARSABLE_TAG_FILES = ("bagit.txt", "bag-info.txt", "aptrust-info.txt")

# Strongest first; reingest comparison walks this order.
PREFERRED_ALGORITHMS = ("sha512", "sha256", "sha1", "md5")

STORAGE_OPTION_STANDARD = "Standard"
STATE_ACTIVE = "A"

_MANIFEST_ALGORITHM = re.compile(r"manifest-(?P<alg>[^.]+)\.txt$")
_TAR_SUFFIX = re.compile(r"\.tar$")
_MULTIPART_SUFFIX = re.compile(r"\.b\d+\.of\d+$")
# C0 and C1 controls, DEL and the non-breaking space
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f\u00a0]")
_ESCAPED_CONTROL = re.compile(r"\\[Uu]00[0189][0-9A-Fa-f]|\\[Uu]007[Ff]")


# ---------------------------------------------------------------------------
# Name helpers
# ---------------------------------------------------------------------------


def clean_bag_name(key: str) -> str:
    """Strip ``.tar`` and any ``.bNN.ofNN`` multipart suffix from a key."""
    name = _TAR_SUFFIX.sub("", key)
    return _MULTIPART_SUFFIX.sub("", name)


def looks_like_manifest(name: str) -> bool:
    return name.startswith("manifest-") and name.endswith(".txt")


def looks_like_tag_manifest(name: str) -> bool:
    return name.startswith("tagmanifest-") and name.endswith(".txt")


def manifest_algorithm(name: str) -> str | None:
    """Digest algorithm named by a manifest or tag manifest, e.g. ``sha256``."""
    match = _MANIFEST_ALGORITHM.search(name)
    return match.group("alg") if match else None


def file_type_for(path_in_bag: str) -> FileType:
    if path_in_bag.startswith("tagmanifest-"):
        return FileType.TAG_MANIFEST
    if path_in_bag.startswith("manifest-"):
        return FileType.MANIFEST
    if path_in_bag == "fetch.txt":
        return FileType.FETCH_TXT
    if not path_in_bag.startswith("data/"):
        return FileType.TAG_FILE
    return FileType.PAYLOAD


# ---------------------------------------------------------------------------
# Leaf records
# ---------------------------------------------------------------------------


class Tag(BaseModel):
    """One label/value pair parsed from a tag file."""

    source_file: str
    label: str
    value: str


class IngestChecksum(BaseModel):
    algorithm: str
    digest: str
    date_time: datetime
    source: ChecksumSource


class StorageRecord(BaseModel):
    """One physical placement of one file's bytes.

    Created by the preservation uploader with ``stored_at`` set; the
    verifier fills in ``size``, ``etag`` and ``verified_at``.
    """

    provider: str
    bucket: str
    url: str
    stored_at: datetime | None = None
    verified_at: datetime | None = None
    size: int = 0
    etag: str = ""
    error: str = ""

    @property
    def is_verified(self) -> bool:
        return self.verified_at is not None


class PremisEvent(BaseModel):
    """A provenance event.

    ``identifier`` is generated once and never changes, so resubmitting
    the event is idempotent.  ``id`` is assigned by the catalog and is
    non-zero once the catalog has accepted the event.
    """

    identifier: str
    event_type: EventType
    date_time: datetime
    detail: str
    outcome: EventOutcome = EventOutcome.SUCCESS
    outcome_detail: str = ""
    outcome_information: str = ""
    object: str = ""
    agent: str = ""
    intellectual_object_identifier: str = ""
    generic_file_identifier: str = ""
    id: int = 0


# ---------------------------------------------------------------------------
# Catalog records
# ---------------------------------------------------------------------------


class CatalogChecksum(BaseModel):
    algorithm: str
    digest: str
    date_time: datetime


class CatalogObject(BaseModel):
    """Intellectual object as the catalog stores it."""

    id: int = 0
    identifier: str
    institution_id: int = 0
    bag_name: str = ""
    title: str = ""
    description: str = ""
    access: str = "institution"
    alt_identifier: str = ""
    bag_group_identifier: str = ""
    source_organization: str = ""
    bagit_profile_identifier: str = ""
    storage_option: str = STORAGE_OPTION_STANDARD
    state: str = STATE_ACTIVE
    premis_events: list[PremisEvent] = Field(default_factory=list)


class CatalogFile(BaseModel):
    """Generic file as the catalog stores it.

    ``storage_records`` holds URLs only; the catalog enforces uniqueness
    on each URL.
    """

    id: int = 0
    identifier: str
    uuid: str = ""
    intellectual_object_id: int = 0
    institution_id: int = 0
    file_format: str = ""
    size: int = 0
    storage_option: str = STORAGE_OPTION_STANDARD
    state: str = STATE_ACTIVE
    file_modified: datetime | None = None
    checksums: list[CatalogChecksum] = Field(default_factory=list)
    storage_records: list[str] = Field(default_factory=list)
    premis_events: list[PremisEvent] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Ingest records
# ---------------------------------------------------------------------------


class IngestFile(BaseModel):
    """One regular file inside a bag, tracked across every stage."""

    object_identifier: str
    path_in_bag: str
    size: int = 0
    uuid: str = ""
    id: int = 0
    institution_id: int = 0
    intellectual_object_id: int = 0
    checksums: list[IngestChecksum] = Field(default_factory=list)
    storage_records: list[StorageRecord] = Field(default_factory=list)
    premis_events: list[PremisEvent] = Field(default_factory=list)
    registry_urls: list[str] = Field(default_factory=list)
    file_format: str = ""
    format_identified_by: str = ""
    format_identified_at: datetime | None = None
    format_match_type: str = ""
    file_modified: datetime | None = None
    copied_to_staging_at: datetime | None = None
    saved_to_registry_at: datetime | None = None
    needs_save: bool = True
    is_reingest: bool = False
    storage_option: str = STORAGE_OPTION_STANDARD
    error_message: str = ""

    @property
    def identifier(self) -> str:
        return f"{self.object_identifier}/{self.path_in_bag}"

    def file_type(self) -> FileType:
        return file_type_for(self.path_in_bag)

    def is_parsable_tag_file(self) -> bool:
        return self.path_in_bag in PARSABLE_TAG_FILES

    def identifier_is_legal(self) -> bool:
        """False when the identifier holds a control character or an escaped one."""
        identifier = self.identifier
        return not (_CONTROL_CHARS.search(identifier) or _ESCAPED_CONTROL.search(identifier))

    def has_preservable_name(self) -> bool:
        """False for the bag declaration, manifests and fetch.txt."""
        if self.path_in_bag in ("bagit.txt", "fetch.txt"):
            return False
        return self.file_type() not in (FileType.MANIFEST, FileType.TAG_MANIFEST)

    # ------------------------------------------------------------------
    # Checksums
    # ------------------------------------------------------------------

    def get_checksum(self, source: ChecksumSource, algorithm: str) -> IngestChecksum | None:
        for checksum in self.checksums:
            if checksum.source == source and checksum.algorithm == algorithm:
                return checksum
        return None

    def set_checksum(self, checksum: IngestChecksum) -> None:
        """Add *checksum*, replacing any entry with the same source and algorithm."""
        for i, existing in enumerate(self.checksums):
            if existing.source == checksum.source and existing.algorithm == checksum.algorithm:
                self.checksums[i] = checksum
                return
        self.checksums.append(checksum)

    def checksums_from(self, source: ChecksumSource) -> list[IngestChecksum]:
        return [c for c in self.checksums if c.source == source]

    # ------------------------------------------------------------------
    # Storage records
    # ------------------------------------------------------------------

    def get_storage_record(self, provider: str, bucket: str) -> StorageRecord | None:
        for record in self.storage_records:
            if record.provider == provider and record.bucket == bucket:
                return record
        return None

    def set_storage_record(self, record: StorageRecord) -> None:
        """Add *record*, replacing any placement at the same provider and bucket."""
        for i, existing in enumerate(self.storage_records):
            if existing.provider == record.provider and existing.bucket == record.bucket:
                self.storage_records[i] = record
                return
        self.storage_records.append(record)

    def needs_save_at(self, provider: str, bucket: str) -> bool:
        record = self.get_storage_record(provider, bucket)
        return record is None or record.stored_at is None

    def has_registry_url(self, url: str) -> bool:
        return url in self.registry_urls

    def find_event(self, identifier: str) -> PremisEvent | None:
        for event in self.premis_events:
            if event.identifier == identifier:
                return event
        return None

    def to_catalog_file(self) -> CatalogFile:
        """Catalog payload for this file.

        Only ingest digests are submitted; storage URLs the catalog already
        knows about are left out.
        """
        return CatalogFile(
            id=self.id,
            identifier=self.identifier,
            uuid=self.uuid,
            intellectual_object_id=self.intellectual_object_id,
            institution_id=self.institution_id,
            file_format=self.file_format,
            size=self.size,
            storage_option=self.storage_option,
            file_modified=self.file_modified,
            checksums=[
                CatalogChecksum(algorithm=c.algorithm, digest=c.digest, date_time=c.date_time)
                for c in self.checksums_from(ChecksumSource.INGEST)
            ],
            storage_records=[
                r.url for r in self.storage_records if not self.has_registry_url(r.url)
            ],
            premis_events=[e for e in self.premis_events if e.id == 0],
        )


class IngestObject(BaseModel):
    """One submitted bag, tracked across every stage."""

    s3_bucket: str
    s3_key: str
    etag: str = ""
    institution: str
    institution_id: int = 0
    id: int = 0
    size: int = 0
    serialization: str = "application/tar"
    file_count: int = 0
    storage_option: str = STORAGE_OPTION_STANDARD
    has_fetch_txt: bool = False
    is_reingest: bool = False
    manifests: list[str] = Field(default_factory=list)
    tag_manifests: list[str] = Field(default_factory=list)
    parsable_tag_files: list[str] = Field(default_factory=list)
    tags: list[Tag] = Field(default_factory=list)
    premis_events: list[PremisEvent] = Field(default_factory=list)
    copied_to_staging_at: datetime | None = None
    saved_to_registry_at: datetime | None = None
    deleted_from_receiving_at: datetime | None = None
    should_delete_from_receiving: bool = False
    recheck_catalog_identifiers: bool = False
    error_message: str = ""

    @property
    def bag_name(self) -> str:
        return clean_bag_name(self.s3_key)

    @property
    def identifier(self) -> str:
        return f"{self.institution}/{self.bag_name}"

    def file_identifier(self, path_in_bag: str) -> str:
        return f"{self.identifier}/{path_in_bag}"

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def get_tags(self, source_file: str, label: str) -> list[Tag]:
        wanted = label.lower()
        return [
            t for t in self.tags
            if t.source_file == source_file and t.label.lower() == wanted
        ]

    def get_tag_value(self, source_file: str, label: str, default: str = "") -> str:
        """First value of *label* in *source_file*, or *default*."""
        tags = self.get_tags(source_file, label)
        return tags[0].value if tags else default

    def access(self) -> str:
        return self.get_tag_value("aptrust-info.txt", "Access", "institution").lower()

    def title(self) -> str:
        return self.get_tag_value("aptrust-info.txt", "Title")

    def storage_option_tag(self) -> str:
        return self.get_tag_value("aptrust-info.txt", "Storage-Option").strip()

    def best_available_description(self) -> str:
        description = self.get_tag_value("aptrust-info.txt", "Description")
        if not description:
            description = self.get_tag_value("bag-info.txt", "Internal-Sender-Description")
        return description

    def to_catalog_object(self) -> CatalogObject:
        return CatalogObject(
            id=self.id,
            identifier=self.identifier,
            institution_id=self.institution_id,
            bag_name=self.bag_name,
            title=self.title(),
            description=self.best_available_description(),
            access=self.access(),
            alt_identifier=self.get_tag_value("bag-info.txt", "Internal-Sender-Identifier"),
            bag_group_identifier=self.get_tag_value("bag-info.txt", "Bag-Group-Identifier"),
            source_organization=self.get_tag_value("bag-info.txt", "Source-Organization"),
            bagit_profile_identifier=self.get_tag_value("bag-info.txt", "BagIt-Profile-Identifier"),
            storage_option=self.storage_option,
        )

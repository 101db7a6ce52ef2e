"""Shared test fixtures for preservekit-ingest tests.

Builds tarred BagIt fixtures in memory and wires fresh in-memory
collaborators for every test.  The default bag holds 16 regular files:
bagit.txt, bag-info.txt, aptrust-info.txt, two manifests, two tag
manifests, custom_tag_file.txt and eight payload files, plus directory
and symlink entries the scanner must skip.
"""

from __future__ import annotations

import hashlib
import io
import tarfile
import time

import pytest

from preservekit_core.errors import MetadataStoreError
from preservekit_core.models import IngestFile, IngestObject
from preservekit_core.protocols import FormatMatch
from preservekit_ingest.apply import BatchApplier
from preservekit_ingest.config import IngestConfig
from preservekit_ingest.gatherer import MetadataGatherer
from preservekit_ingest.staging import StagingUploader
from preservekit_ingest.stores import InMemoryCatalog, InMemoryMetadataStore, InMemoryObjectStore

RECEIVING_BUCKET = "aptrust.receiving.test.edu"
INSTITUTION = "test.edu"
BAG_NAME = "example.edu.tagsample_good"
BAG_KEY = f"{BAG_NAME}.tar"
OBJECT_IDENTIFIER = f"{INSTITUTION}/{BAG_NAME}"
WORK_ITEM_ID = 3344

PAYLOAD = {
    "data/datastream-DC": b"<dc>Dublin Core record</dc>\n",
    "data/datastream-descMetadata": b"<mods>descriptive metadata</mods>\n",
    "data/datastream-MARC": b"MARC21 record body\n" * 3,
    "data/datastream-RELS-EXT": b"<rdf>relationships</rdf>\n",
    "data/files/document.pdf": b"%PDF-1.4 fake pdf body\n" * 20,
    "data/files/image.jpg": b"\xff\xd8\xff\xe0 fake jpeg" * 10,
    "data/files/notes.txt": b"plain text notes\n",
    "data/files/raw.xyzzy": bytes(range(256)),
}

SCRATCH_FILES = (
    "bagit.txt",
    "bag-info.txt",
    "aptrust-info.txt",
    "manifest-md5.txt",
    "manifest-sha256.txt",
    "tagmanifest-md5.txt",
    "tagmanifest-sha256.txt",
)

NON_PRESERVABLE = (
    "bagit.txt",
    "manifest-md5.txt",
    "manifest-sha256.txt",
    "tagmanifest-md5.txt",
    "tagmanifest-sha256.txt",
)


def _manifest(files: dict[str, bytes], algorithm: str) -> bytes:
    lines = [f"{hashlib.new(algorithm, data).hexdigest()}  {path}\n" for path, data in sorted(files.items())]
    return "".join(lines).encode("utf-8")


def make_bag_files(
    payload: dict[str, bytes] | None = None,
    storage_option: str | None = "Standard",
    extra_tag_files: dict[str, bytes] | None = None,
) -> dict[str, bytes]:
    """Return ``{path_in_bag: bytes}`` for a complete bag with valid manifests."""
    payload = dict(PAYLOAD if payload is None else payload)
    aptrust_info = "Title: Sample Good Bag\nAccess: Institution\n"
    if storage_option is not None:
        aptrust_info += f"Storage-Option: {storage_option}\n"
    tag_files = {
        "bagit.txt": b"BagIt-Version: 0.97\nTag-File-Character-Encoding: UTF-8\n",
        "bag-info.txt": (
            b"Source-Organization: virginia.edu\n"
            b"Bagging-Date: 2024-01-02\n"
            b"Bag-Count: 1 of 1\n"
            b"Internal-Sender-Description: A bag used\n"
            b"  for ingest tests\n"
            b"Internal-Sender-Identifier: uva-internal-id-0001\n"
        ),
        "aptrust-info.txt": aptrust_info.encode("utf-8"),
        "custom_tag_file.txt": b"Custom-Tag: custom value\n",
    }
    tag_files.update(extra_tag_files or {})

    files: dict[str, bytes] = dict(payload)
    files.update(tag_files)
    for algorithm in ("md5", "sha256"):
        files[f"manifest-{algorithm}.txt"] = _manifest(payload, algorithm)
    tagged = {k: v for k, v in files.items() if not k.startswith("data/")}
    for algorithm in ("md5", "sha256"):
        files[f"tagmanifest-{algorithm}.txt"] = _manifest(tagged, algorithm)
    return files


def build_tar(files: dict[str, bytes], bag_name: str = BAG_NAME, top_level: bool = True) -> bytes:
    """Serialize *files* as a tar with directory and symlink entries."""
    buf = io.BytesIO()
    mtime = int(time.time())
    with tarfile.open(fileobj=buf, mode="w") as tar:
        prefix = f"{bag_name}/" if top_level else ""
        if top_level:
            root = tarfile.TarInfo(bag_name)
            root.type = tarfile.DIRTYPE
            root.mtime = mtime
            tar.addfile(root)
        data_dir = tarfile.TarInfo(f"{prefix}data")
        data_dir.type = tarfile.DIRTYPE
        data_dir.mtime = mtime
        tar.addfile(data_dir)
        for path, data in files.items():
            info = tarfile.TarInfo(prefix + path)
            info.size = len(data)
            info.mtime = mtime
            tar.addfile(info, io.BytesIO(data))
        link = tarfile.TarInfo(f"{prefix}data/link-to-notes")
        link.type = tarfile.SYMTYPE
        link.linkname = "files/notes.txt"
        tar.addfile(link)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Mock Backends
# ---------------------------------------------------------------------------


class MockFormatBackend:
    """FormatIdentifierBackend that maps filename extensions to MIME types."""

    def __init__(self, formats: dict[str, str] | None = None, name: str = "mock-engine") -> None:
        self._formats = formats or {".txt": "text/plain", ".pdf": "application/pdf"}
        self._name = name
        self.calls: list[str] = []

    def identify(self, sample: bytes, filename: str) -> FormatMatch | None:
        self.calls.append(filename)
        for suffix, mime_type in self._formats.items():
            if filename.endswith(suffix):
                return FormatMatch(mime_type=mime_type, match_type="signature")
        return None

    def engine_name(self) -> str:
        return self._name


class FlakyMetadataStore(InMemoryMetadataStore):
    """Fails the first *failures* file saves and hides the first *missing_reads* file reads."""

    def __init__(self, failures: int = 0, missing_reads: int = 0) -> None:
        super().__init__()
        self.failures = failures
        self.missing_reads = missing_reads
        self.save_calls = 0

    def ingest_file_save(self, work_item_id: int, ingest_file: IngestFile) -> None:
        self.save_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise MetadataStoreError("connection reset")
        super().ingest_file_save(work_item_id, ingest_file)

    def ingest_file_get(self, work_item_id: int, identifier: str) -> IngestFile | None:
        if self.missing_reads > 0:
            self.missing_reads -= 1
            return None
        return super().ingest_file_get(work_item_id, identifier)


def no_sleep(seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def config(tmp_path) -> IngestConfig:
    return IngestConfig(scratch_dir=str(tmp_path))


@pytest.fixture()
def metadata_store() -> InMemoryMetadataStore:
    return InMemoryMetadataStore()


@pytest.fixture()
def object_stores() -> dict[str, InMemoryObjectStore]:
    return {"aws": InMemoryObjectStore("aws"), "wasabi": InMemoryObjectStore("wasabi")}


@pytest.fixture()
def catalog() -> InMemoryCatalog:
    return InMemoryCatalog()


@pytest.fixture()
def applier(metadata_store, config) -> BatchApplier:
    return BatchApplier(metadata_store, config, sleep=no_sleep)


@pytest.fixture()
def bag_files() -> dict[str, bytes]:
    return make_bag_files()


@pytest.fixture()
def ingest_object() -> IngestObject:
    return IngestObject(
        s3_bucket=RECEIVING_BUCKET,
        s3_key=BAG_KEY,
        institution=INSTITUTION,
        institution_id=9,
    )


@pytest.fixture()
def submitted_bag(object_stores, bag_files, ingest_object) -> IngestObject:
    """Put the default bag in the receiving bucket and return its object record."""
    tar_bytes = build_tar(bag_files)
    object_stores["aws"].put_object(RECEIVING_BUCKET, BAG_KEY, io.BytesIO(tar_bytes), len(tar_bytes))
    ingest_object.size = len(tar_bytes)
    return ingest_object


@pytest.fixture()
def format_backend() -> MockFormatBackend:
    return MockFormatBackend()


@pytest.fixture()
def gathered(applier, object_stores, config, submitted_bag) -> IngestObject:
    """The default bag after the gather stage."""
    _, errors = MetadataGatherer(applier, object_stores, config).run(WORK_ITEM_ID, submitted_bag)
    assert errors == []
    return submitted_bag


@pytest.fixture()
def staged(applier, object_stores, config, gathered) -> IngestObject:
    """The default bag after the gather and stage stages."""
    _, errors = StagingUploader(applier, object_stores, config).run(WORK_ITEM_ID, gathered)
    assert errors == []
    return gathered

"""Single-pass scanner for tar-serialized bags.

``TarredBagScanner`` reads a non-seekable tar stream exactly once and
yields one ``IngestFile`` per regular entry, with every configured digest
computed in the same pass.  Manifests, tag manifests and the parsable tag
files are also written to scratch files for the metadata gatherer to parse.

Use the scanner as a context manager so ``finish()`` always runs::

    with TarredBagScanner(stream, ingest_object) as scanner:
        for ingest_file in scanner.scan():
            ...
"""

from __future__ import annotations

import hashlib
import logging
import mimetypes
import os
import shutil
import tarfile
import tempfile
import uuid
from datetime import datetime, timezone
from typing import BinaryIO, Callable, Iterable, Iterator

from preservekit_core.errors import ErrorCode, IngestException
from preservekit_core.models import (
    ChecksumSource,
    FileType,
    IngestChecksum,
    IngestFile,
    IngestObject,
    utcnow,
)
from preservekit_ingest.bagit import tar_path_to_bag_path

logger = logging.getLogger("preservekit_ingest")

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_MIME_TYPE = "application/binary"


class MultiWriter:
    """Fans every chunk written to it out to several sinks."""

    def __init__(self, sinks: Iterable[Callable[[bytes], object]]) -> None:
        self._sinks = list(sinks)
        self.bytes_written = 0

    def write(self, chunk: bytes) -> int:
        for sink in self._sinks:
            sink(chunk)
        self.bytes_written += len(chunk)
        return len(chunk)


class TarredBagScanner:
    """Stream a tarred bag once, emitting an ``IngestFile`` per regular file."""

    def __init__(
        self,
        reader: BinaryIO,
        ingest_object: IngestObject,
        scratch_dir: str | None = None,
        algorithms: Iterable[str] = ("md5", "sha256"),
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._reader = reader
        self._ingest_object = ingest_object
        self._algorithms = tuple(algorithms)
        self._chunk_size = chunk_size
        self._tar: tarfile.TarFile | None = None
        self._finished = False
        self._scratch_dir = tempfile.mkdtemp(prefix="preservekit-", dir=scratch_dir)
        self._scratch_files: dict[str, str] = {}

    def __enter__(self) -> TarredBagScanner:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.finish()

    @property
    def scratch_dir(self) -> str:
        return self._scratch_dir

    @property
    def scratch_files(self) -> dict[str, str]:
        """Map of path in bag to local scratch file path."""
        return dict(self._scratch_files)

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def scan(self) -> Iterator[IngestFile]:
        """Yield one record per regular tar entry, in archive order.

        Raises ``IngestException`` (fatal) on an illegal entry path or any
        read error other than the normal end of the archive.
        """
        if self._finished:
            raise RuntimeError("scanner already finished")
        try:
            self._tar = tarfile.open(fileobj=self._reader, mode="r|*")
        except (tarfile.TarError, OSError) as exc:
            raise IngestException(
                code=ErrorCode.E_BAG_CORRUPT,
                message=f"Cannot open tar stream: {exc}",
                stage="scan",
                identifier=self._ingest_object.identifier,
                is_fatal=True,
            ) from exc

        while True:
            try:
                member = self._tar.next()
            except (tarfile.TarError, OSError, EOFError) as exc:
                raise self._read_error(exc) from exc
            if member is None:
                return
            if not member.isreg():
                continue
            yield self._process_entry(member)

    def _process_entry(self, member: tarfile.TarInfo) -> IngestFile:
        path_in_bag = tar_path_to_bag_path(member.name)
        ingest_file = self._new_ingest_file(path_in_bag, member)
        if not ingest_file.identifier_is_legal():
            raise IngestException(
                code=ErrorCode.E_BAG_ILLEGAL_PATH,
                message=f"File name {path_in_bag!r} contains one or more illegal control characters",
                stage="scan",
                identifier=ingest_file.identifier,
                is_fatal=True,
            )

        hashes = {alg: hashlib.new(alg) for alg in self._algorithms}
        sinks: list[Callable[[bytes], object]] = [h.update for h in hashes.values()]

        scratch = None
        if self._needs_scratch_file(ingest_file):
            local_path = os.path.join(self._scratch_dir, os.path.basename(path_in_bag))
            try:
                scratch = open(local_path, "wb")
            except OSError as exc:
                raise IngestException(
                    code=ErrorCode.E_SCRATCH_IO,
                    message=f"Cannot create scratch file for {path_in_bag}: {exc}",
                    stage="scan",
                    identifier=ingest_file.identifier,
                    is_fatal=True,
                ) from exc
            self._scratch_files[path_in_bag] = local_path
            sinks.append(scratch.write)

        writer = MultiWriter(sinks)
        try:
            source = self._tar.extractfile(member)  # type: ignore[union-attr]
            if source is not None:
                while True:
                    chunk = source.read(self._chunk_size)
                    if not chunk:
                        break
                    writer.write(chunk)
        except (tarfile.TarError, OSError, EOFError) as exc:
            raise self._read_error(exc, ingest_file.identifier) from exc
        finally:
            if scratch is not None:
                scratch.close()

        if writer.bytes_written != member.size:
            raise IngestException(
                code=ErrorCode.E_BAG_CORRUPT,
                message=(
                    f"Read {writer.bytes_written} of {member.size} bytes "
                    f"for {path_in_bag}"
                ),
                stage="scan",
                identifier=ingest_file.identifier,
                is_fatal=True,
            )

        now = utcnow()
        for alg, digest in hashes.items():
            ingest_file.set_checksum(IngestChecksum(
                algorithm=alg,
                digest=digest.hexdigest(),
                date_time=now,
                source=ChecksumSource.INGEST,
            ))
        return ingest_file

    def _new_ingest_file(self, path_in_bag: str, member: tarfile.TarInfo) -> IngestFile:
        obj = self._ingest_object
        mime_type, _ = mimetypes.guess_type(path_in_bag, strict=False)
        return IngestFile(
            object_identifier=obj.identifier,
            path_in_bag=path_in_bag,
            size=member.size,
            uuid=str(uuid.uuid4()),
            institution_id=obj.institution_id,
            intellectual_object_id=obj.id,
            file_format=mime_type or DEFAULT_MIME_TYPE,
            format_identified_by="ext map",
            format_identified_at=utcnow(),
            format_match_type="extension",
            file_modified=datetime.fromtimestamp(member.mtime, tz=timezone.utc),
            storage_option=obj.storage_option,
        )

    @staticmethod
    def _needs_scratch_file(ingest_file: IngestFile) -> bool:
        return ingest_file.is_parsable_tag_file() or ingest_file.file_type() in (
            FileType.MANIFEST,
            FileType.TAG_MANIFEST,
        )

    def _read_error(self, exc: BaseException, identifier: str | None = None) -> IngestException:
        return IngestException(
            code=ErrorCode.E_BAG_CORRUPT,
            message=f"Error reading tar stream: {exc}",
            stage="scan",
            identifier=identifier or self._ingest_object.identifier,
            is_fatal=True,
        )

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def finish(self) -> None:
        """Close the source stream and delete every scratch file."""
        if self._finished:
            return
        self._finished = True
        if self._tar is not None:
            self._tar.close()
        self._reader.close()
        try:
            shutil.rmtree(self._scratch_dir)
        except OSError as exc:
            logger.warning(
                "preservekit_ingest | scan | scratch_dir=%s | detail=cleanup failed: %s",
                self._scratch_dir,
                exc,
            )
        self._scratch_files.clear()

"""Preservation uploader and verifier.

``PreservationUploader`` copies each staged file to every bucket its
storage option requires, using a server-side copy when staging and target
share a provider and region, and streaming the bytes through this process
otherwise.  Each successful copy adds a ``StorageRecord`` stamped
``stored_at``.

``PreservationVerifier`` stats every placement and stamps ``verified_at``
when the stored size matches the file's size.
"""

from __future__ import annotations

import logging
from typing import Mapping
from urllib.parse import quote

from preservekit_core.errors import (
    CollaboratorError,
    ErrorCode,
    ObjectNotFoundError,
    ProcessingError,
)
from preservekit_core.models import (
    ChecksumSource,
    IngestFile,
    IngestObject,
    StorageRecord,
    utcnow,
)
from preservekit_core.protocols import CopySource, ObjectStore
from preservekit_ingest.apply import ApplyOptions, BatchApplier
from preservekit_ingest.config import IngestConfig, PreservationBucket
from preservekit_ingest.errors import stage_error
from preservekit_ingest.staging import staging_key

logger = logging.getLogger("preservekit_ingest")

STORE_STAGE = "store"
VERIFY_STAGE = "verify"


def put_metadata(
    obj: IngestObject,
    ingest_file: IngestFile,
    provider: str,
    encoded_path_providers: list[str],
) -> dict[str, str]:
    """Metadata attached to every preserved object.

    Providers listed in *encoded_path_providers* reject non-ASCII header
    values, so they get the path URL-encoded under ``bagpath-encoded``.
    """
    metadata = {"institution": obj.institution, "bag": obj.identifier}
    path = ingest_file.path_in_bag
    if provider in encoded_path_providers and not path.isascii():
        metadata["bagpath-encoded"] = quote(path)
    else:
        metadata["bagpath"] = path
    for algorithm in ("md5", "sha256"):
        checksum = ingest_file.get_checksum(ChecksumSource.INGEST, algorithm)
        if checksum is not None:
            metadata[algorithm] = checksum.digest
    return metadata


def copy_ranges(bucket: str, key: str, size: int, part_size: int) -> list[CopySource]:
    """Split *size* bytes into inclusive ranges of at most *part_size*."""
    return [
        CopySource(bucket=bucket, key=key, start=start, end=min(start + part_size, size) - 1)
        for start in range(0, size, part_size)
    ]


def is_fully_preserved(ingest_file: IngestFile, targets: list[PreservationBucket]) -> bool:
    """True when every target holds a verified placement of *ingest_file*."""
    for target in targets:
        record = ingest_file.get_storage_record(target.provider, target.bucket)
        if record is None or not record.is_verified:
            return False
    return True


def _needs_preservation(ingest_file: IngestFile) -> bool:
    return ingest_file.has_preservable_name() and ingest_file.needs_save


class PreservationUploader:
    """Copy staged files to their preservation buckets."""

    def __init__(
        self,
        applier: BatchApplier,
        object_stores: Mapping[str, ObjectStore],
        config: IngestConfig,
    ) -> None:
        self._applier = applier
        self._object_stores = object_stores
        self._config = config

    def run(self, work_item_id: int, ingest_object: IngestObject) -> tuple[int, list[ProcessingError]]:
        obj = ingest_object
        if not self._config.targets_for(obj.storage_option):
            return 0, [stage_error(
                STORE_STAGE, work_item_id, obj.identifier, ErrorCode.E_NO_STORAGE_TARGETS,
                f"Storage option {obj.storage_option!r} has no preservation buckets",
                is_fatal=True,
            )]
        return self._applier.apply(
            work_item_id,
            lambda f: self.upload(work_item_id, obj, f),
            ApplyOptions.from_limits(STORE_STAGE, self._config.upload_limits, persist_changes=True),
        )

    def upload(self, work_item_id: int, obj: IngestObject, ingest_file: IngestFile) -> list[ProcessingError]:
        if not _needs_preservation(ingest_file):
            return []
        targets = self._config.targets_for(ingest_file.storage_option)
        if not targets:
            return [stage_error(
                STORE_STAGE, work_item_id, ingest_file.identifier, ErrorCode.E_NO_STORAGE_TARGETS,
                f"Storage option {ingest_file.storage_option!r} has no preservation buckets",
                is_fatal=True,
            )]

        errors: list[ProcessingError] = []
        for target in targets:
            if not ingest_file.needs_save_at(target.provider, target.bucket):
                continue
            error = self._copy_to_target(work_item_id, obj, ingest_file, target)
            if error is not None:
                errors.append(error)
                continue
            ingest_file.set_storage_record(StorageRecord(
                provider=target.provider,
                bucket=target.bucket,
                url=target.url_for(ingest_file.uuid),
                stored_at=utcnow(),
            ))
            logger.debug(
                "ingest.store.copied",
                extra={
                    "work_item_id": work_item_id,
                    "identifier": ingest_file.identifier,
                    "provider": target.provider,
                    "bucket": target.bucket,
                },
            )
        return errors

    def _copy_to_target(
        self,
        work_item_id: int,
        obj: IngestObject,
        ingest_file: IngestFile,
        target: PreservationBucket,
    ) -> ProcessingError | None:
        config = self._config
        src_key = staging_key(work_item_id, ingest_file)
        metadata = put_metadata(obj, ingest_file, target.provider, config.encoded_path_providers)
        destination = self._object_stores[target.provider]
        try:
            if target.provider == config.staging_provider and target.region == config.staging_region:
                if ingest_file.size <= config.max_single_copy_bytes:
                    destination.copy_object(
                        config.staging_bucket, src_key, target.bucket, ingest_file.uuid,
                        metadata, ingest_file.file_format,
                    )
                else:
                    destination.compose_object(
                        target.bucket,
                        ingest_file.uuid,
                        copy_ranges(
                            config.staging_bucket, src_key, ingest_file.size,
                            config.multipart_part_size,
                        ),
                        metadata,
                        ingest_file.file_format,
                    )
                return None

            staging = self._object_stores[config.staging_provider]
            stream = staging.get_object(config.staging_bucket, src_key)
            try:
                written = destination.put_object(
                    target.bucket, ingest_file.uuid, stream, ingest_file.size,
                    metadata, ingest_file.file_format,
                )
            finally:
                stream.close()
        except ObjectNotFoundError as exc:
            return stage_error(
                STORE_STAGE, work_item_id, ingest_file.identifier, ErrorCode.E_OBJECT_MISSING,
                f"Staged copy is missing: {exc}",
            )
        except (CollaboratorError, OSError) as exc:
            return stage_error(
                STORE_STAGE, work_item_id, ingest_file.identifier, ErrorCode.E_OBJECT_COPY,
                f"Cannot copy to {target.provider}:{target.bucket}: {exc}",
            )

        if written != ingest_file.size:
            return stage_error(
                STORE_STAGE, work_item_id, ingest_file.identifier, ErrorCode.E_OBJECT_SHORT_WRITE,
                f"Copied only {written} of {ingest_file.size} bytes from staging "
                f"to {target.provider}:{target.bucket}",
            )
        return None


class PreservationVerifier:
    """Confirm every placement made by the uploader."""

    def __init__(
        self,
        applier: BatchApplier,
        object_stores: Mapping[str, ObjectStore],
        config: IngestConfig,
    ) -> None:
        self._applier = applier
        self._object_stores = object_stores
        self._config = config

    def run(self, work_item_id: int, ingest_object: IngestObject) -> tuple[int, list[ProcessingError]]:
        return self._applier.apply(
            work_item_id,
            lambda f: self.verify(work_item_id, f),
            ApplyOptions.from_limits(VERIFY_STAGE, self._config.verify_limits, persist_changes=True),
        )

    def verify(self, work_item_id: int, ingest_file: IngestFile) -> list[ProcessingError]:
        if not _needs_preservation(ingest_file):
            return []
        errors: list[ProcessingError] = []
        for target in self._config.targets_for(ingest_file.storage_option):
            if ingest_file.needs_save_at(target.provider, target.bucket):
                errors.append(stage_error(
                    VERIFY_STAGE, work_item_id, ingest_file.identifier,
                    ErrorCode.E_VERIFY_NOT_STORED,
                    f"Not stored at required target {target.provider}:{target.bucket}",
                ))

        for record in ingest_file.storage_records:
            if record.is_verified:
                continue
            error = self._verify_record(work_item_id, ingest_file, record)
            if error is not None:
                errors.append(error)
        return errors

    def _verify_record(
        self, work_item_id: int, ingest_file: IngestFile, record: StorageRecord
    ) -> ProcessingError | None:
        store = self._object_stores[record.provider]
        try:
            info = store.stat_object(record.bucket, ingest_file.uuid)
        except ObjectNotFoundError as exc:
            record.error = str(exc)
            return stage_error(
                VERIFY_STAGE, work_item_id, ingest_file.identifier, ErrorCode.E_OBJECT_MISSING,
                f"Placement at {record.url} does not exist", is_fatal=True,
            )
        except CollaboratorError as exc:
            return stage_error(
                VERIFY_STAGE, work_item_id, ingest_file.identifier, ErrorCode.E_OBJECT_GET,
                f"Cannot stat {record.url}: {exc}",
            )

        record.etag = info.etag.strip('"')
        record.size = info.size
        if info.size != ingest_file.size:
            record.error = (
                f"Preservation size {info.size} does not match recorded file size "
                f"{ingest_file.size}"
            )
            return stage_error(
                VERIFY_STAGE, work_item_id, ingest_file.identifier,
                ErrorCode.E_VERIFY_SIZE_MISMATCH, f"{record.url}: {record.error}", is_fatal=True,
            )
        record.error = ""
        record.verified_at = utcnow()
        return None

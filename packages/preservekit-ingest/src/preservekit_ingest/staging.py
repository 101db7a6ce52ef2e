"""Staging uploader: copy every file in the bag to the staging bucket.

Re-reads the submitted tar and puts each regular entry to
``{staging_bucket}/{work_item_id}/{uuid}``, stamping the file record's
``copied_to_staging_at``.  Files already stamped are skipped, so a rerun
only copies what an earlier run missed.
"""

from __future__ import annotations

import logging
import tarfile
import time
from typing import Mapping

from preservekit_core.errors import (
    CollaboratorError,
    ErrorCode,
    IngestException,
    MetadataStoreError,
    ObjectNotFoundError,
    ProcessingError,
)
from preservekit_core.models import IngestFile, IngestObject, utcnow
from preservekit_core.protocols import ObjectStore
from preservekit_ingest.apply import BatchApplier
from preservekit_ingest.bagit import tar_path_to_bag_path
from preservekit_ingest.config import IngestConfig
from preservekit_ingest.errors import stage_error, with_context

logger = logging.getLogger("preservekit_ingest")

STAGE = "stage"


def staging_key(work_item_id: int, ingest_file: IngestFile) -> str:
    return f"{work_item_id}/{ingest_file.uuid}"


class StagingUploader:
    """Stream a bag's files into the staging bucket."""

    def __init__(
        self,
        applier: BatchApplier,
        object_stores: Mapping[str, ObjectStore],
        config: IngestConfig,
    ) -> None:
        self._applier = applier
        self._store = applier.store
        self._object_stores = object_stores
        self._config = config

    def run(self, work_item_id: int, ingest_object: IngestObject) -> tuple[int, list[ProcessingError]]:
        """Return ``(files_copied, errors)``."""
        obj = ingest_object
        max_errors = self._config.staging_limits.max_errors
        receiving = self._object_stores[self._config.receiving_provider]
        try:
            reader = receiving.get_object(obj.s3_bucket, obj.s3_key)
        except ObjectNotFoundError as exc:
            return 0, [stage_error(
                STAGE, work_item_id, obj.identifier, ErrorCode.E_SOURCE_NOT_FOUND,
                f"Source bag not found: {exc}", is_fatal=True,
            )]
        except CollaboratorError as exc:
            return 0, [stage_error(
                STAGE, work_item_id, obj.identifier, ErrorCode.E_SOURCE_UNREADABLE,
                f"Cannot open {obj.s3_bucket}/{obj.s3_key}: {exc}",
            )]

        t0 = time.monotonic()
        copied = 0
        errors: list[ProcessingError] = []
        try:
            with tarfile.open(fileobj=reader, mode="r|*") as tar:
                for member in tar:
                    if not member.isreg():
                        continue
                    file_errors, did_copy = self._copy_entry(work_item_id, obj, tar, member)
                    copied += did_copy
                    errors.extend(file_errors)
                    if len(errors) > max_errors or any(e.is_fatal for e in file_errors):
                        return copied, errors
        except IngestException as exc:
            errors.append(with_context(exc.error, STAGE, work_item_id))
            return copied, errors
        except (tarfile.TarError, OSError, EOFError) as exc:
            errors.append(stage_error(
                STAGE, work_item_id, obj.identifier, ErrorCode.E_BAG_CORRUPT,
                f"Error reading tar stream: {exc}", is_fatal=True,
            ))
            return copied, errors
        finally:
            reader.close()

        if not errors:
            obj.copied_to_staging_at = utcnow()
            try:
                self._store.ingest_object_save(work_item_id, obj)
            except MetadataStoreError as exc:
                errors.append(stage_error(
                    STAGE, work_item_id, obj.identifier, ErrorCode.E_STORE_WRITE,
                    f"Cannot save object record: {exc}",
                ))

        logger.info(
            "ingest.staging.completed",
            extra={
                "work_item_id": work_item_id,
                "identifier": obj.identifier,
                "files_copied": copied,
                "error_count": len(errors),
                "duration_ms": (time.monotonic() - t0) * 1000.0,
            },
        )
        return copied, errors

    def _copy_entry(
        self,
        work_item_id: int,
        obj: IngestObject,
        tar: tarfile.TarFile,
        member: tarfile.TarInfo,
    ) -> tuple[list[ProcessingError], int]:
        identifier = obj.file_identifier(tar_path_to_bag_path(member.name))
        try:
            ingest_file = self._store.ingest_file_get(work_item_id, identifier)
        except MetadataStoreError as exc:
            return [stage_error(
                STAGE, work_item_id, identifier, ErrorCode.E_STORE_READ,
                f"Cannot read file record: {exc}",
            )], 0
        if ingest_file is None:
            return [stage_error(
                STAGE, work_item_id, identifier, ErrorCode.E_STORE_RECORD_MISSING,
                "No file record for tar entry; the bag changed after it was scanned",
                is_fatal=True,
            )], 0
        if ingest_file.copied_to_staging_at is not None:
            return [], 0

        key = staging_key(work_item_id, ingest_file)
        staging = self._object_stores[self._config.staging_provider]
        source = tar.extractfile(member)
        if source is None:
            return [], 0
        try:
            written = staging.put_object(
                self._config.staging_bucket,
                key,
                source,
                ingest_file.size,
                metadata={"institution": obj.institution, "bag": obj.identifier},
                content_type=ingest_file.file_format,
            )
        except CollaboratorError as exc:
            return [stage_error(
                STAGE, work_item_id, identifier, ErrorCode.E_OBJECT_PUT,
                f"Cannot put staging key {key}: {exc}",
            )], 0
        if written != ingest_file.size:
            return [stage_error(
                STAGE, work_item_id, identifier, ErrorCode.E_OBJECT_SHORT_WRITE,
                f"Copied only {written} of {ingest_file.size} bytes to staging",
            )], 0

        ingest_file.copied_to_staging_at = utcnow()
        return self._applier.persist(work_item_id, ingest_file, STAGE), 1

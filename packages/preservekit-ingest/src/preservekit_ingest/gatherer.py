"""Metadata gatherer: the first stage of an ingest.

Streams the submitted bag through ``TarredBagScanner``, saving one file
record per entry as it goes, then copies the manifests and tag files to
staging, merges manifest digests onto the file records, attaches parsed
tags to the object and resolves the object's storage option.
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from typing import Mapping

from preservekit_core.errors import (
    CollaboratorError,
    ErrorCode,
    IngestException,
    MetadataStoreError,
    ObjectNotFoundError,
    ProcessingError,
)
from preservekit_core.models import (
    ChecksumSource,
    FileType,
    IngestChecksum,
    IngestFile,
    IngestObject,
    file_type_for,
    manifest_algorithm,
    utcnow,
)
from preservekit_core.protocols import ObjectStore
from preservekit_ingest.apply import ApplyOptions, BatchApplier
from preservekit_ingest.bagit import parse_manifest, parse_tag_file
from preservekit_ingest.config import IngestConfig
from preservekit_ingest.errors import stage_error, with_context
from preservekit_ingest.scanner import TarredBagScanner

logger = logging.getLogger("preservekit_ingest")

STAGE = "gather"


class MetadataGatherer:
    """Scan a bag and build its object and file records."""

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
        """Gather metadata for *ingest_object*; return ``(file_count, errors)``.

        The object record is saved only when every step succeeds.
        """
        t0 = time.monotonic()
        obj = ingest_object
        obj.manifests = []
        obj.tag_manifests = []
        obj.parsable_tag_files = []
        obj.tags = []
        obj.has_fetch_txt = False

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

        try:
            scanner = TarredBagScanner(
                reader, obj, self._config.scratch_dir, self._config.digest_algorithms
            )
        except OSError as exc:
            reader.close()
            return 0, [stage_error(
                STAGE, work_item_id, obj.identifier, ErrorCode.E_SCRATCH_IO,
                f"Cannot create scratch directory: {exc}", is_fatal=True,
            )]

        file_count = 0
        with scanner:
            try:
                for ingest_file in scanner.scan():
                    self._keep_existing_uuid(work_item_id, ingest_file)
                    if ingest_file.file_type() == FileType.FETCH_TXT:
                        obj.has_fetch_txt = True
                    errors = self._applier.persist(work_item_id, ingest_file, STAGE)
                    if errors:
                        return file_count, errors
                    file_count += 1
            except IngestException as exc:
                return file_count, [with_context(exc.error, STAGE, work_item_id)]
            except MetadataStoreError as exc:
                return file_count, [stage_error(
                    STAGE, work_item_id, obj.identifier, ErrorCode.E_STORE_READ,
                    f"Cannot read file records: {exc}",
                )]
            obj.file_count = file_count

            errors = self._copy_scratch_files(work_item_id, scanner.scratch_files)
            if errors:
                return file_count, errors
            errors = self._parse_scratch_files(work_item_id, obj, scanner.scratch_files)
            if errors:
                return file_count, errors

        self._resolve_storage_option(work_item_id, obj)
        _, errors = self._applier.apply(
            work_item_id,
            lambda f: self._apply_storage_option(work_item_id, obj, f),
            ApplyOptions.from_limits(STAGE, self._config.upload_limits, persist_changes=False),
        )
        if errors:
            return file_count, errors

        try:
            self._store.ingest_object_save(work_item_id, obj)
        except MetadataStoreError as exc:
            return file_count, [stage_error(
                STAGE, work_item_id, obj.identifier, ErrorCode.E_STORE_WRITE,
                f"Cannot save object record: {exc}",
            )]

        logger.info(
            "ingest.gather.completed",
            extra={
                "work_item_id": work_item_id,
                "identifier": obj.identifier,
                "file_count": file_count,
                "storage_option": obj.storage_option,
                "has_fetch_txt": obj.has_fetch_txt,
                "duration_ms": (time.monotonic() - t0) * 1000.0,
            },
        )
        return file_count, []

    # ------------------------------------------------------------------
    # Scan helpers
    # ------------------------------------------------------------------

    def _keep_existing_uuid(self, work_item_id: int, ingest_file: IngestFile) -> None:
        existing = self._store.ingest_file_get(work_item_id, ingest_file.identifier)
        if existing is not None and existing.uuid:
            ingest_file.uuid = existing.uuid

    def _copy_scratch_files(
        self, work_item_id: int, scratch_files: dict[str, str]
    ) -> list[ProcessingError]:
        staging = self._object_stores[self._config.staging_provider]
        errors: list[ProcessingError] = []
        for path_in_bag, local_path in scratch_files.items():
            key = f"{work_item_id}/{os.path.basename(path_in_bag)}"
            try:
                staging.fput_object(
                    self._config.staging_bucket, key, local_path, content_type="text/plain"
                )
            except (CollaboratorError, OSError) as exc:
                errors.append(stage_error(
                    STAGE, work_item_id, path_in_bag, ErrorCode.E_OBJECT_PUT,
                    f"Cannot copy {path_in_bag} to staging key {key}: {exc}",
                ))
        return errors

    def _parse_scratch_files(
        self, work_item_id: int, obj: IngestObject, scratch_files: dict[str, str]
    ) -> list[ProcessingError]:
        errors: list[ProcessingError] = []
        for path_in_bag, local_path in sorted(scratch_files.items()):
            file_type = file_type_for(path_in_bag)
            try:
                if file_type in (FileType.MANIFEST, FileType.TAG_MANIFEST):
                    errors.extend(self._merge_manifest(
                        work_item_id, obj, path_in_bag, local_path, file_type
                    ))
                else:
                    obj.parsable_tag_files.append(path_in_bag)
                    with open(local_path, encoding="utf-8") as fh:
                        obj.tags.extend(parse_tag_file(fh, path_in_bag))
            except ValueError as exc:
                code = (
                    ErrorCode.E_BAG_TAG_PARSE
                    if file_type == FileType.TAG_FILE
                    else ErrorCode.E_BAG_MANIFEST_PARSE
                )
                errors.append(stage_error(
                    STAGE, work_item_id, obj.file_identifier(path_in_bag), code,
                    f"Cannot parse {path_in_bag}: {exc}", is_fatal=True,
                ))
            except OSError as exc:
                errors.append(stage_error(
                    STAGE, work_item_id, obj.file_identifier(path_in_bag), ErrorCode.E_SCRATCH_IO,
                    f"Cannot read scratch copy of {path_in_bag}: {exc}", is_fatal=True,
                ))
            except MetadataStoreError as exc:
                errors.append(stage_error(
                    STAGE, work_item_id, obj.file_identifier(path_in_bag), ErrorCode.E_STORE_READ,
                    f"Cannot read file records for {path_in_bag}: {exc}",
                ))
        return errors

    def _merge_manifest(
        self,
        work_item_id: int,
        obj: IngestObject,
        path_in_bag: str,
        local_path: str,
        file_type: FileType,
    ) -> list[ProcessingError]:
        algorithm = manifest_algorithm(path_in_bag)
        if algorithm is None:
            raise ValueError(f"no digest algorithm in manifest name {path_in_bag!r}")
        if file_type == FileType.MANIFEST:
            source = ChecksumSource.MANIFEST
            obj.manifests.append(algorithm)
        else:
            source = ChecksumSource.TAG_MANIFEST
            obj.tag_manifests.append(algorithm)

        with open(local_path, encoding="utf-8") as fh:
            entries = parse_manifest(fh)

        errors: list[ProcessingError] = []
        now = utcnow()
        for digest, listed_path in entries:
            identifier = obj.file_identifier(listed_path)
            ingest_file = self._applier.lookup(work_item_id, identifier)
            if ingest_file is None:
                ingest_file = self._listed_only_file(work_item_id, obj, listed_path, path_in_bag)
            ingest_file.set_checksum(IngestChecksum(
                algorithm=algorithm, digest=digest, date_time=now, source=source,
            ))
            errors.extend(self._applier.persist(work_item_id, ingest_file, STAGE))
        return errors

    def _listed_only_file(
        self, work_item_id: int, obj: IngestObject, listed_path: str, manifest: str
    ) -> IngestFile:
        """New record for a path a manifest lists but the tar does not contain."""
        logger.info(
            "ingest.gather.manifest_only_entry",
            extra={
                "work_item_id": work_item_id,
                "identifier": obj.file_identifier(listed_path),
                "manifest": manifest,
            },
        )
        return IngestFile(
            object_identifier=obj.identifier,
            path_in_bag=listed_path,
            uuid=str(uuid.uuid4()),
            institution_id=obj.institution_id,
            intellectual_object_id=obj.id,
            storage_option=obj.storage_option,
        )

    # ------------------------------------------------------------------
    # Storage option
    # ------------------------------------------------------------------

    def _resolve_storage_option(self, work_item_id: int, obj: IngestObject) -> None:
        option = obj.storage_option_tag()
        if option:
            obj.storage_option = option
            return
        obj.storage_option = self._config.default_storage_option
        logger.warning(
            "preservekit_ingest | %s | work_item=%s | identifier=%s | code=%s | detail=%s",
            STAGE,
            work_item_id,
            obj.identifier,
            ErrorCode.W_DEFAULT_STORAGE_OPTION.value,
            f"no Storage-Option tag; using {obj.storage_option}",
        )

    def _apply_storage_option(
        self, work_item_id: int, obj: IngestObject, ingest_file: IngestFile
    ) -> list[ProcessingError]:
        if ingest_file.storage_option == obj.storage_option:
            return []
        ingest_file.storage_option = obj.storage_option
        return self._applier.persist(work_item_id, ingest_file, STAGE)


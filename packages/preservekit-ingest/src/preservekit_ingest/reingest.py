"""Reingest manager: decide, per file, what a resubmitted bag changes.

When the catalog already holds an object with this bag's identifier, each
file that the catalog also knows keeps the catalog's UUID and storage
option, and is marked ``needs_save`` when any newly computed digest
differs from the catalog's most recent digest for the same algorithm.
Storage URLs the catalog already records are noted so the recorder never
submits them again.
"""

from __future__ import annotations

import logging
from typing import Iterable

from preservekit_core.errors import CatalogError, ErrorCode, MetadataStoreError, ProcessingError
from preservekit_core.models import (
    PREFERRED_ALGORITHMS,
    STATE_ACTIVE,
    CatalogChecksum,
    CatalogFile,
    ChecksumSource,
    IngestFile,
    IngestObject,
)
from preservekit_core.protocols import CatalogClient
from preservekit_ingest.apply import ApplyOptions, BatchApplier
from preservekit_ingest.config import IngestConfig
from preservekit_ingest.errors import stage_error

logger = logging.getLogger("preservekit_ingest")

STAGE = "reingest"


def newest_checksums(checksums: Iterable[CatalogChecksum]) -> dict[str, CatalogChecksum]:
    """Most recent catalog checksum per algorithm."""
    newest: dict[str, CatalogChecksum] = {}
    for checksum in checksums:
        current = newest.get(checksum.algorithm)
        if current is None or checksum.date_time > current.date_time:
            newest[checksum.algorithm] = checksum
    return newest


def checksum_changed(ingest_file: IngestFile, catalog_checksums: Iterable[CatalogChecksum]) -> bool:
    """True when *ingest_file*'s content differs from what the catalog holds.

    Every algorithm present on both sides is compared, strongest first, and
    any mismatch counts as a change.  With no algorithm in common nothing
    is compared and the file is treated as unchanged.
    """
    newest = newest_checksums(catalog_checksums)
    for algorithm in PREFERRED_ALGORITHMS:
        ingest_checksum = ingest_file.get_checksum(ChecksumSource.INGEST, algorithm)
        catalog_checksum = newest.get(algorithm)
        if ingest_checksum is None or catalog_checksum is None:
            continue
        if ingest_checksum.digest.lower() != catalog_checksum.digest.lower():
            return True
    return False


class ReingestManager:
    """Compare a bag against the catalog's record of a previous ingest."""

    def __init__(
        self,
        applier: BatchApplier,
        catalog: CatalogClient,
        config: IngestConfig,
    ) -> None:
        self._applier = applier
        self._store = applier.store
        self._catalog = catalog
        self._config = config

    def run(self, work_item_id: int, ingest_object: IngestObject) -> tuple[int, list[ProcessingError]]:
        """Return ``(1 if reingest else 0, errors)``."""
        obj = ingest_object
        try:
            catalog_object = self._catalog.object_get(obj.identifier)
        except CatalogError as exc:
            return 0, [stage_error(
                STAGE, work_item_id, obj.identifier, ErrorCode.E_CATALOG_READ,
                f"Cannot look up object in catalog: {exc}",
            )]
        if catalog_object is None:
            logger.info(
                "ingest.reingest.new_object",
                extra={"work_item_id": work_item_id, "identifier": obj.identifier},
            )
            return 0, []

        obj.id = catalog_object.id
        obj.is_reingest = True
        if catalog_object.state == STATE_ACTIVE and catalog_object.storage_option:
            obj.storage_option = catalog_object.storage_option
        errors = self._save_object(work_item_id, obj)
        if errors:
            return 1, errors

        changed = 0

        def process(ingest_file: IngestFile) -> list[ProcessingError]:
            nonlocal changed
            file_errors = self._process_file(work_item_id, obj, ingest_file)
            if not file_errors and ingest_file.is_reingest and ingest_file.needs_save:
                changed += 1
            return file_errors

        _, errors = self._applier.apply(
            work_item_id,
            process,
            ApplyOptions.from_limits(STAGE, self._config.reingest_limits, persist_changes=True),
        )
        logger.info(
            "ingest.reingest.completed",
            extra={
                "work_item_id": work_item_id,
                "identifier": obj.identifier,
                "object_id": obj.id,
                "changed_files": changed,
                "error_count": len(errors),
            },
        )
        return 1, errors

    def _save_object(self, work_item_id: int, obj: IngestObject) -> list[ProcessingError]:
        try:
            self._store.ingest_object_save(work_item_id, obj)
        except MetadataStoreError as exc:
            return [stage_error(
                STAGE, work_item_id, obj.identifier, ErrorCode.E_STORE_WRITE,
                f"Cannot save object record: {exc}",
            )]
        return []

    def _process_file(
        self, work_item_id: int, obj: IngestObject, ingest_file: IngestFile
    ) -> list[ProcessingError]:
        try:
            catalog_file = self._catalog.file_get(ingest_file.identifier)
            if catalog_file is None:
                # New in this version of the bag.
                ingest_file.intellectual_object_id = obj.id
                return []
            catalog_checksums = self._catalog.checksum_list(ingest_file.identifier)
            catalog_urls = self._catalog.storage_record_list(ingest_file.identifier)
        except CatalogError as exc:
            return [stage_error(
                STAGE, work_item_id, ingest_file.identifier, ErrorCode.E_CATALOG_READ,
                f"Cannot look up file in catalog: {exc}",
            )]

        self._pin_storage_option(ingest_file, catalog_file)
        ingest_file.id = catalog_file.id
        ingest_file.intellectual_object_id = obj.id
        ingest_file.uuid = catalog_file.uuid
        ingest_file.is_reingest = True
        ingest_file.needs_save = checksum_changed(ingest_file, catalog_checksums)
        for url in catalog_urls:
            if not ingest_file.has_registry_url(url):
                ingest_file.registry_urls.append(url)
        return []

    @staticmethod
    def _pin_storage_option(ingest_file: IngestFile, catalog_file: CatalogFile) -> None:
        if catalog_file.state != STATE_ACTIVE:
            return
        if catalog_file.storage_option and catalog_file.storage_option != ingest_file.storage_option:
            ingest_file.storage_option = catalog_file.storage_option

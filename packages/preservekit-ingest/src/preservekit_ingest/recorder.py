"""Recorder: write the ingested object, files and events to the catalog.

Each step is guarded by a stamp or id on the local record, so a rerun
after a partial failure only submits what the catalog has not accepted:

* the object is saved once (``saved_to_registry_at``);
* object and file events are generated once and each is submitted until
  the catalog assigns it an ``id``;
* a file is saved once per ingest (``saved_to_registry_at``).

A conflict from the catalog means an earlier run wrote more than it
recorded locally.  The object is then flagged and the next run copies the
catalog's ids back onto the local records before submitting anything.
"""

from __future__ import annotations

import logging
import threading

from preservekit_core.errors import (
    CatalogConflictError,
    CatalogError,
    ErrorCode,
    MetadataStoreError,
    ProcessingError,
)
from preservekit_core.models import IngestFile, IngestObject, utcnow
from preservekit_core.protocols import CatalogClient
from preservekit_ingest.apply import ApplyOptions, BatchApplier
from preservekit_ingest.config import IngestConfig
from preservekit_ingest.errors import stage_error
from preservekit_ingest.events import file_events, object_events

logger = logging.getLogger("preservekit_ingest")

STAGE = "record"


class Recorder:
    """Record an ingest in the catalog."""

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
        """Return ``(files_recorded, errors)``."""
        obj = ingest_object
        if obj.recheck_catalog_identifiers:
            errors = self._recheck_identifiers(work_item_id, obj)
            if errors:
                return 0, errors

        errors = self._record_object(work_item_id, obj)
        if errors:
            return 0, errors
        errors = self._record_object_events(work_item_id, obj)
        if errors:
            return 0, errors

        conflict = threading.Event()
        recorded, errors = self._applier.apply(
            work_item_id,
            lambda f: self._record_file(work_item_id, obj, f, conflict),
            ApplyOptions.from_limits(STAGE, self._config.record_limits, persist_changes=True),
        )
        if conflict.is_set():
            obj.recheck_catalog_identifiers = True
        elif not errors:
            obj.should_delete_from_receiving = self._config.delete_from_receiving
        errors.extend(self._save_object(work_item_id, obj))

        logger.info(
            "ingest.record.completed",
            extra={
                "work_item_id": work_item_id,
                "identifier": obj.identifier,
                "object_id": obj.id,
                "files_recorded": recorded,
                "error_count": len(errors),
            },
        )
        return recorded, errors

    # ------------------------------------------------------------------
    # Object
    # ------------------------------------------------------------------

    def _record_object(self, work_item_id: int, obj: IngestObject) -> list[ProcessingError]:
        if obj.saved_to_registry_at is not None:
            return []
        try:
            saved = self._catalog.object_save(obj.to_catalog_object())
        except CatalogConflictError as exc:
            obj.recheck_catalog_identifiers = True
            self._save_object(work_item_id, obj)
            return [stage_error(
                STAGE, work_item_id, obj.identifier, ErrorCode.E_CATALOG_CONFLICT,
                f"Catalog already holds this object: {exc}",
            )]
        except CatalogError as exc:
            return [stage_error(
                STAGE, work_item_id, obj.identifier, ErrorCode.E_CATALOG_WRITE,
                f"Cannot save object to catalog: {exc}",
            )]
        obj.id = saved.id
        obj.saved_to_registry_at = utcnow()
        return self._save_object(work_item_id, obj)

    def _record_object_events(self, work_item_id: int, obj: IngestObject) -> list[ProcessingError]:
        if not obj.premis_events:
            obj.premis_events = object_events(obj, self._config.event_agent)
            errors = self._save_object(work_item_id, obj)
            if errors:
                return errors

        errors: list[ProcessingError] = []
        for event in obj.premis_events:
            if event.id != 0:
                continue
            try:
                event.id = self._catalog.event_save(event).id
            except CatalogError as exc:
                errors.append(stage_error(
                    STAGE, work_item_id, obj.identifier, ErrorCode.E_CATALOG_WRITE,
                    f"Cannot save {event.event_type.value} event {event.identifier}: {exc}",
                ))
        return errors + self._save_object(work_item_id, obj)

    def _save_object(self, work_item_id: int, obj: IngestObject) -> list[ProcessingError]:
        try:
            self._store.ingest_object_save(work_item_id, obj)
        except MetadataStoreError as exc:
            return [stage_error(
                STAGE, work_item_id, obj.identifier, ErrorCode.E_STORE_WRITE,
                f"Cannot save object record: {exc}",
            )]
        return []

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def _record_file(
        self,
        work_item_id: int,
        obj: IngestObject,
        ingest_file: IngestFile,
        conflict: threading.Event,
    ) -> list[ProcessingError]:
        f = ingest_file
        if not f.has_preservable_name() or not f.needs_save or f.saved_to_registry_at is not None:
            return []
        f.intellectual_object_id = obj.id
        if not f.premis_events:
            f.premis_events = file_events(f, self._config.event_agent)

        submitted = f.to_catalog_file()
        try:
            saved = self._catalog.file_save(submitted)
        except CatalogConflictError as exc:
            conflict.set()
            return [stage_error(
                STAGE, work_item_id, f.identifier, ErrorCode.E_CATALOG_CONFLICT,
                f"Catalog already holds part of this file record: {exc}",
            )]
        except CatalogError as exc:
            return [stage_error(
                STAGE, work_item_id, f.identifier, ErrorCode.E_CATALOG_WRITE,
                f"Cannot save file to catalog: {exc}",
            )]

        f.id = saved.id
        for event in saved.premis_events:
            local = f.find_event(event.identifier)
            if local is not None:
                local.id = event.id
        for url in submitted.storage_records:
            if not f.has_registry_url(url):
                f.registry_urls.append(url)
        f.saved_to_registry_at = utcnow()
        return []

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def _recheck_identifiers(self, work_item_id: int, obj: IngestObject) -> list[ProcessingError]:
        """Copy catalog ids for anything an earlier run saved but did not record."""
        try:
            catalog_object = self._catalog.object_get(obj.identifier)
            if catalog_object is not None and obj.id == 0:
                obj.id = catalog_object.id
                obj.saved_to_registry_at = obj.saved_to_registry_at or utcnow()
            for event in obj.premis_events:
                if event.id == 0:
                    stored = self._catalog.event_get(event.identifier)
                    if stored is not None:
                        event.id = stored.id
        except CatalogError as exc:
            return [stage_error(
                STAGE, work_item_id, obj.identifier, ErrorCode.E_CATALOG_READ,
                f"Cannot recheck object identifiers: {exc}",
            )]

        _, errors = self._applier.apply(
            work_item_id,
            lambda f: self._recheck_file(work_item_id, f),
            ApplyOptions.from_limits(STAGE, self._config.record_limits, persist_changes=True),
        )
        if errors:
            return errors
        obj.recheck_catalog_identifiers = False
        return self._save_object(work_item_id, obj)

    def _recheck_file(self, work_item_id: int, ingest_file: IngestFile) -> list[ProcessingError]:
        f = ingest_file
        if f.saved_to_registry_at is not None or not f.needs_save:
            return []
        try:
            catalog_file = self._catalog.file_get(f.identifier)
            if catalog_file is None:
                return []
            f.id = catalog_file.id
            for url in self._catalog.storage_record_list(f.identifier):
                if not f.has_registry_url(url):
                    f.registry_urls.append(url)
            for event in f.premis_events:
                if event.id == 0:
                    stored = self._catalog.event_get(event.identifier)
                    if stored is not None:
                        event.id = stored.id
        except CatalogError as exc:
            return [stage_error(
                STAGE, work_item_id, f.identifier, ErrorCode.E_CATALOG_READ,
                f"Cannot recheck file identifiers: {exc}",
            )]
        placed = {r.url for r in f.storage_records}
        if f.premis_events and all(e.id for e in f.premis_events) and placed <= set(f.registry_urls):
            f.saved_to_registry_at = utcnow()
        return []

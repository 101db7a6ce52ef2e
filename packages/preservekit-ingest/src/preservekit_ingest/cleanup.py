"""Cleanup: remove everything an ingest left behind once it is recorded.

Deletes the WorkItem's staging objects and metadata-store records, then,
if the recorder flagged the object and nothing has failed so far, the
original bag in the receiving bucket.  Deletion is refused for any bucket
whose name lacks a ``staging`` or ``receiving`` marker.
"""

from __future__ import annotations

import logging
from typing import Mapping

from preservekit_core.errors import CollaboratorError, ErrorCode, MetadataStoreError, ProcessingError
from preservekit_core.models import IngestObject, utcnow
from preservekit_core.protocols import MetadataStore, ObjectStore
from preservekit_ingest.config import IngestConfig
from preservekit_ingest.errors import stage_error

logger = logging.getLogger("preservekit_ingest")

STAGE = "cleanup"


def bucket_unsafe_for_deletion(bucket: str) -> bool:
    """True unless *bucket* names a staging or receiving bucket (case-sensitive)."""
    return "staging" not in bucket and "receiving" not in bucket


class Cleanup:
    """Delete staging copies, WorkItem records and the received bag."""

    def __init__(
        self,
        store: MetadataStore,
        object_stores: Mapping[str, ObjectStore],
        config: IngestConfig,
    ) -> None:
        self._store = store
        self._object_stores = object_stores
        self._config = config

    def run(self, work_item_id: int, ingest_object: IngestObject) -> tuple[int, list[ProcessingError]]:
        """Return ``(objects_deleted, errors)``."""
        obj = ingest_object
        deleted, errors = self._delete_staging_files(work_item_id, obj)
        if errors:
            return deleted, errors

        try:
            records = self._store.work_item_delete(work_item_id)
        except MetadataStoreError as exc:
            return deleted, [stage_error(
                STAGE, work_item_id, obj.identifier, ErrorCode.E_STORE_WRITE,
                f"Cannot delete WorkItem records: {exc}",
            )]

        if obj.should_delete_from_receiving:
            errors = self._delete_from_receiving(work_item_id, obj)
            if not errors:
                deleted += 1

        logger.info(
            "ingest.cleanup.completed",
            extra={
                "work_item_id": work_item_id,
                "identifier": obj.identifier,
                "objects_deleted": deleted,
                "records_deleted": records,
                "deleted_from_receiving": obj.deleted_from_receiving_at is not None,
            },
        )
        return deleted, errors

    def _delete_staging_files(
        self, work_item_id: int, obj: IngestObject
    ) -> tuple[int, list[ProcessingError]]:
        bucket = self._config.staging_bucket
        if bucket_unsafe_for_deletion(bucket):
            return 0, [stage_error(
                STAGE, work_item_id, obj.identifier, ErrorCode.E_BUCKET_UNSAFE,
                f"Refusing to delete from bucket {bucket!r}", is_fatal=True,
            )]

        staging = self._object_stores[self._config.staging_provider]
        prefix = f"{work_item_id}/"
        deleted = 0
        errors: list[ProcessingError] = []
        try:
            keys = list(staging.list_objects(bucket, prefix))
        except CollaboratorError as exc:
            return 0, [stage_error(
                STAGE, work_item_id, obj.identifier, ErrorCode.E_OBJECT_GET,
                f"Cannot list staging prefix {prefix}: {exc}",
            )]
        for key in keys:
            try:
                staging.remove_object(bucket, key)
                deleted += 1
            except CollaboratorError as exc:
                errors.append(stage_error(
                    STAGE, work_item_id, obj.identifier, ErrorCode.E_OBJECT_DELETE,
                    f"Cannot delete staging key {key}: {exc}",
                ))
                if len(errors) > self._config.cleanup_max_errors:
                    break
        return deleted, errors

    def _delete_from_receiving(self, work_item_id: int, obj: IngestObject) -> list[ProcessingError]:
        if bucket_unsafe_for_deletion(obj.s3_bucket):
            return [stage_error(
                STAGE, work_item_id, obj.identifier, ErrorCode.E_BUCKET_UNSAFE,
                f"Refusing to delete from bucket {obj.s3_bucket!r}", is_fatal=True,
            )]
        receiving = self._object_stores[self._config.receiving_provider]
        try:
            receiving.remove_object(obj.s3_bucket, obj.s3_key)
        except CollaboratorError as exc:
            return [stage_error(
                STAGE, work_item_id, obj.identifier, ErrorCode.E_OBJECT_DELETE,
                f"Cannot delete {obj.s3_bucket}/{obj.s3_key}: {exc}",
            )]
        obj.deleted_from_receiving_at = utcnow()
        return []

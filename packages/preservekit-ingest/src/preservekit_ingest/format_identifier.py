"""Format identification stage.

Reads the head of each staged file and asks a ``FormatIdentifierBackend``
for its MIME type.  Files the backend already identified are skipped; when
the backend finds no match the extension-based format from the scan stays.
"""

from __future__ import annotations

import logging
from typing import Mapping

from preservekit_core.errors import CollaboratorError, ErrorCode, ProcessingError
from preservekit_core.models import IngestFile, IngestObject, utcnow
from preservekit_core.protocols import FormatIdentifierBackend, ObjectStore
from preservekit_ingest.apply import ApplyOptions, BatchApplier
from preservekit_ingest.config import IngestConfig
from preservekit_ingest.errors import stage_error
from preservekit_ingest.staging import staging_key

logger = logging.getLogger("preservekit_ingest")

STAGE = "identify_formats"


class FormatIdentifier:
    """Resolve the MIME type of every staged file."""

    def __init__(
        self,
        applier: BatchApplier,
        object_stores: Mapping[str, ObjectStore],
        backend: FormatIdentifierBackend,
        config: IngestConfig,
    ) -> None:
        self._applier = applier
        self._object_stores = object_stores
        self._backend = backend
        self._config = config

    def run(self, work_item_id: int, ingest_object: IngestObject) -> tuple[int, list[ProcessingError]]:
        return self._applier.apply(
            work_item_id,
            lambda f: self.identify(work_item_id, f),
            ApplyOptions.from_limits(STAGE, self._config.format_limits, persist_changes=True),
        )

    def identify(self, work_item_id: int, ingest_file: IngestFile) -> list[ProcessingError]:
        engine = self._backend.engine_name()
        if ingest_file.format_identified_by == engine:
            return []

        key = staging_key(work_item_id, ingest_file)
        staging = self._object_stores[self._config.staging_provider]
        try:
            stream = staging.get_object(self._config.staging_bucket, key)
            try:
                sample = stream.read(self._config.format_sample_bytes)
            finally:
                stream.close()
        except (CollaboratorError, OSError) as exc:
            return [stage_error(
                STAGE, work_item_id, ingest_file.identifier, ErrorCode.E_OBJECT_GET,
                f"Cannot read staging key {key}: {exc}",
            )]

        try:
            match = self._backend.identify(sample, ingest_file.path_in_bag)
        except (CollaboratorError, OSError, ValueError) as exc:
            return [stage_error(
                STAGE, work_item_id, ingest_file.identifier, ErrorCode.E_FORMAT_IDENTIFY,
                f"{engine} failed: {exc}",
            )]

        if match is None:
            logger.debug(
                "ingest.format.no_match",
                extra={
                    "work_item_id": work_item_id,
                    "identifier": ingest_file.identifier,
                    "file_format": ingest_file.file_format,
                },
            )
            return []

        ingest_file.file_format = match.mime_type
        ingest_file.format_match_type = match.match_type
        ingest_file.format_identified_by = engine
        ingest_file.format_identified_at = utcnow()
        return []

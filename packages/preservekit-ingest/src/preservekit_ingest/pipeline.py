"""Pipeline driver: run the ingest stages for one WorkItem in order.

``IngestPipeline`` holds an ordered tuple of ``StageSpec`` descriptors and
runs them one after another, reloading the object record from the
metadata store before every stage after the first.  It stops at the first
stage that reports any error, leaving all durable state in place so the
WorkItem can be resumed later with ``start_at``.

Use ``create_default_pipeline()`` to wire the standard stage sequence.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Mapping

from pydantic import BaseModel, Field

from preservekit_core.errors import ErrorCode, MetadataStoreError, ProcessingError
from preservekit_core.models import IngestObject
from preservekit_core.protocols import (
    CatalogClient,
    FormatIdentifierBackend,
    MetadataStore,
    ObjectStore,
)
from preservekit_ingest.apply import BatchApplier
from preservekit_ingest.cleanup import Cleanup
from preservekit_ingest.config import IngestConfig
from preservekit_ingest.errors import stage_error
from preservekit_ingest.format_identifier import FormatIdentifier
from preservekit_ingest.gatherer import MetadataGatherer
from preservekit_ingest.preservation import PreservationUploader, PreservationVerifier
from preservekit_ingest.recorder import Recorder
from preservekit_ingest.reingest import ReingestManager
from preservekit_ingest.staging import StagingUploader

logger = logging.getLogger("preservekit_ingest")

StageRunner = Callable[[int, IngestObject], tuple[int, list[ProcessingError]]]


@dataclass(frozen=True)
class StageSpec:
    """One named step of the pipeline."""

    name: str
    run: StageRunner


class StageResult(BaseModel):
    name: str
    count: int
    errors: list[ProcessingError] = Field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return not self.errors


class PipelineResult(BaseModel):
    """Outcome of one ``IngestPipeline.run`` call."""

    work_item_id: int
    identifier: str
    stages: list[StageResult] = Field(default_factory=list)
    completed: bool = False

    @property
    def errors(self) -> list[ProcessingError]:
        return [e for stage in self.stages for e in stage.errors]

    @property
    def has_fatal_error(self) -> bool:
        return any(e.is_fatal for e in self.errors)

    @property
    def last_stage(self) -> str | None:
        return self.stages[-1].name if self.stages else None


class IngestPipeline:
    """Run a fixed sequence of stages for a WorkItem."""

    def __init__(self, store: MetadataStore, stages: tuple[StageSpec, ...]) -> None:
        if not stages:
            raise ValueError("a pipeline needs at least one stage")
        names = [s.name for s in stages]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate stage names: {names}")
        self._store = store
        self._stages = stages

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self._stages]

    def run(
        self,
        work_item_id: int,
        ingest_object: IngestObject,
        start_at: str | None = None,
    ) -> PipelineResult:
        """Run every stage from *start_at* (default: the first) until one reports errors."""
        names = self.stage_names
        if start_at is not None and start_at not in names:
            raise ValueError(f"unknown stage {start_at!r}; expected one of {names}")
        first = names.index(start_at) if start_at is not None else 0

        obj = ingest_object
        result = PipelineResult(work_item_id=work_item_id, identifier=obj.identifier)
        for position, spec in enumerate(self._stages[first:], start=first):
            if position > 0:
                reloaded, error = self._reload(work_item_id, obj, spec.name)
                if error is not None:
                    result.stages.append(StageResult(name=spec.name, count=0, errors=[error]))
                    return result
                obj = reloaded

            t0 = time.monotonic()
            count, errors = spec.run(work_item_id, obj)
            stage_result = StageResult(
                name=spec.name,
                count=count,
                errors=errors,
                duration_seconds=time.monotonic() - t0,
            )
            result.stages.append(stage_result)
            logger.info(
                "ingest.stage.completed",
                extra={
                    "work_item_id": work_item_id,
                    "identifier": obj.identifier,
                    "stage": spec.name,
                    "count": count,
                    "error_count": len(errors),
                    "duration_ms": stage_result.duration_seconds * 1000.0,
                },
            )
            if errors:
                logger.warning(
                    "preservekit_ingest | pipeline | work_item=%s | identifier=%s | "
                    "detail=stopped at %s with %d error(s), fatal=%s",
                    work_item_id,
                    obj.identifier,
                    spec.name,
                    len(errors),
                    any(e.is_fatal for e in errors),
                )
                return result

        result.completed = True
        return result

    def _reload(
        self, work_item_id: int, obj: IngestObject, stage: str
    ) -> tuple[IngestObject, ProcessingError | None]:
        try:
            reloaded = self._store.ingest_object_get(work_item_id, obj.identifier)
        except MetadataStoreError as exc:
            return obj, stage_error(
                stage, work_item_id, obj.identifier, ErrorCode.E_STORE_READ,
                f"Cannot reload object record: {exc}",
            )
        if reloaded is None:
            return obj, stage_error(
                stage, work_item_id, obj.identifier, ErrorCode.E_STORE_RECORD_MISSING,
                "No object record; run the gather stage first", is_fatal=True,
            )
        return reloaded, None


def create_default_pipeline(
    *,
    store: MetadataStore | None = None,
    object_stores: Mapping[str, ObjectStore] | None = None,
    catalog: CatalogClient | None = None,
    format_backend: FormatIdentifierBackend | None = None,
    config: IngestConfig | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> IngestPipeline:
    """Create an IngestPipeline with the standard stage sequence.

    Required collaborators: ``store``, ``object_stores`` (keyed by provider
    name, covering the receiving, staging and every preservation provider)
    and ``catalog``.  Without a ``format_backend`` the format identification
    stage is left out and files keep their extension-based format.

    Raises:
        ValueError: If a required collaborator is missing or a configured
            provider has no object store.
    """
    missing: list[str] = []
    if store is None:
        missing.append("store")
    if object_stores is None:
        missing.append("object_stores")
    if catalog is None:
        missing.append("catalog")
    if missing:
        raise ValueError(
            f"Required collaborator(s) not provided: {', '.join(missing)}. "
            "Pass all required collaborators explicitly."
        )

    config = config or IngestConfig()
    providers = {config.receiving_provider, config.staging_provider}
    providers.update(b.provider for b in config.preservation_buckets)
    unknown = sorted(p for p in providers if p not in object_stores)
    if unknown:
        raise ValueError(f"No object store for provider(s): {', '.join(unknown)}")

    applier = BatchApplier(store, config, sleep=sleep)  # type: ignore[arg-type]
    gatherer = MetadataGatherer(applier, object_stores, config)
    reingest = ReingestManager(applier, catalog, config)
    staging = StagingUploader(applier, object_stores, config)
    uploader = PreservationUploader(applier, object_stores, config)
    verifier = PreservationVerifier(applier, object_stores, config)
    recorder = Recorder(applier, catalog, config)
    cleanup = Cleanup(store, object_stores, config)

    stages: list[StageSpec] = [
        StageSpec("gather", gatherer.run),
        StageSpec("reingest", reingest.run),
        StageSpec("stage", staging.run),
    ]
    if format_backend is not None:
        identifier = FormatIdentifier(applier, object_stores, format_backend, config)
        stages.append(StageSpec("identify_formats", identifier.run))
    else:
        logger.warning(
            "preservekit_ingest | pipeline | detail=no FormatIdentifierBackend; "
            "format identification will be skipped"
        )
    stages.extend([
        StageSpec("store", uploader.run),
        StageSpec("verify", verifier.run),
        StageSpec("record", recorder.run),
        StageSpec("cleanup", cleanup.run),
    ])
    return IngestPipeline(store, tuple(stages))

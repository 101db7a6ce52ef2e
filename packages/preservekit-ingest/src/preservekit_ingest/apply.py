"""Batch apply engine: run a function over every file record of a WorkItem.

``BatchApplier.apply`` pages through the metadata store, calls a
per-file function, retries failures, persists mutations and aborts once
the stage's error budget is spent.  Every file-level stage is one call to
``apply`` with a different function and ``ApplyOptions``.

``BatchApplier.persist`` is the single write path for file records.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable

from pydantic import BaseModel, Field

from preservekit_core.errors import (
    ErrorCode,
    IngestException,
    MetadataStoreError,
    ProcessingError,
)
from preservekit_core.models import IngestFile
from preservekit_core.protocols import MetadataStore
from preservekit_ingest.config import IngestConfig, StageLimits
from preservekit_ingest.errors import stage_error, with_context

logger = logging.getLogger("preservekit_ingest")

FileFunction = Callable[[IngestFile], list[ProcessingError]]


class ApplyOptions(BaseModel):
    """How one ``apply`` call retries, persists and gives up."""

    stage: str
    max_errors: int = Field(default=30, ge=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=1.0, ge=0.0)
    persist_changes: bool = False
    workers: int = Field(default=1, ge=1)

    @classmethod
    def from_limits(cls, stage: str, limits: StageLimits, persist_changes: bool) -> ApplyOptions:
        return cls(
            stage=stage,
            max_errors=limits.max_errors,
            max_retries=limits.max_retries,
            retry_delay_seconds=limits.retry_delay_seconds,
            persist_changes=persist_changes,
            workers=limits.workers,
        )


class ErrorAccumulator:
    """Thread-safe error list for one ``apply`` call.

    ``count`` tracks every error added; at most ``cap`` are retained.
    """

    def __init__(self, cap: int) -> None:
        self._lock = threading.Lock()
        self._cap = cap
        self._errors: list[ProcessingError] = []
        self._count = 0

    def add(self, errors: list[ProcessingError]) -> int:
        """Record *errors*; return the new cumulative count."""
        with self._lock:
            self._count += len(errors)
            room = self._cap - len(self._errors)
            if room > 0:
                self._errors.extend(errors[:room])
            return self._count

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def errors(self) -> list[ProcessingError]:
        with self._lock:
            return list(self._errors)


class BatchApplier:
    """Apply per-file functions across a WorkItem's file records."""

    def __init__(
        self,
        store: MetadataStore,
        config: IngestConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._config = config
        self._sleep = sleep

    @property
    def store(self) -> MetadataStore:
        return self._store

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def apply(
        self,
        work_item_id: int,
        fn: FileFunction,
        options: ApplyOptions,
    ) -> tuple[int, list[ProcessingError]]:
        """Run *fn* over every file record of *work_item_id*.

        Returns the number of records processed without error and the
        errors collected.  Stops early once more than
        ``options.max_errors`` errors have accumulated.
        """
        accumulator = ErrorAccumulator(cap=options.max_errors + options.workers)
        succeeded = 0
        offset = 0
        t0 = time.monotonic()
        executor = (
            ThreadPoolExecutor(max_workers=options.workers, thread_name_prefix="preservekit-apply")
            if options.workers > 1
            else None
        )
        try:
            while True:
                try:
                    files, next_offset = self._store.list_ingest_files(
                        work_item_id, offset, self._config.page_size
                    )
                except MetadataStoreError as exc:
                    accumulator.add([stage_error(
                        options.stage, work_item_id, None, ErrorCode.E_STORE_READ,
                        f"Cannot list file records at offset {offset}: {exc}",
                    )])
                    break

                if executor is None:
                    page_ok, aborted = self._run_sequential(
                        work_item_id, files, fn, options, accumulator
                    )
                else:
                    page_ok, aborted = self._run_parallel(
                        executor, work_item_id, files, fn, options, accumulator
                    )
                succeeded += page_ok
                if aborted:
                    logger.warning(
                        "preservekit_ingest | %s | work_item=%s | code=%s | detail=%s",
                        options.stage,
                        work_item_id,
                        ErrorCode.W_ERROR_BUDGET_EXCEEDED.value,
                        f"aborting after {accumulator.count} errors (max {options.max_errors})",
                    )
                    break
                if next_offset == 0:
                    break
                offset = next_offset
        finally:
            if executor is not None:
                executor.shutdown(wait=True, cancel_futures=True)

        logger.info(
            "ingest.apply.completed",
            extra={
                "stage": options.stage,
                "work_item_id": work_item_id,
                "succeeded": succeeded,
                "error_count": accumulator.count,
                "duration_ms": (time.monotonic() - t0) * 1000.0,
            },
        )
        return succeeded, accumulator.errors

    def _run_sequential(
        self,
        work_item_id: int,
        files: list[IngestFile],
        fn: FileFunction,
        options: ApplyOptions,
        accumulator: ErrorAccumulator,
    ) -> tuple[int, bool]:
        succeeded = 0
        for ingest_file in files:
            errors = self._process_one(work_item_id, ingest_file, fn, options)
            if not errors:
                succeeded += 1
            elif accumulator.add(errors) > options.max_errors:
                return succeeded, True
        return succeeded, False

    def _run_parallel(
        self,
        executor: ThreadPoolExecutor,
        work_item_id: int,
        files: list[IngestFile],
        fn: FileFunction,
        options: ApplyOptions,
        accumulator: ErrorAccumulator,
    ) -> tuple[int, bool]:
        succeeded = 0
        pending: set[Future[list[ProcessingError]]] = {
            executor.submit(self._process_one, work_item_id, f, fn, options) for f in files
        }
        while pending:
            done, pending = wait(pending, return_when=FIRST_COMPLETED)
            for future in done:
                errors = future.result()
                if not errors:
                    succeeded += 1
                elif accumulator.add(errors) > options.max_errors:
                    for other in pending:
                        other.cancel()
                    # in-flight files still finish; their errors are counted
                    for other in pending:
                        if not other.cancelled():
                            accumulator.add(other.result())
                    return succeeded, True
        return succeeded, False

    def _process_one(
        self,
        work_item_id: int,
        ingest_file: IngestFile,
        fn: FileFunction,
        options: ApplyOptions,
    ) -> list[ProcessingError]:
        attempts = 1 + options.max_retries
        errors: list[ProcessingError] = []
        for attempt in range(attempts):
            try:
                errors = fn(ingest_file)
            except IngestException as exc:
                errors = [with_context(exc.error, options.stage, work_item_id)]
            if not errors or any(e.is_fatal for e in errors):
                break
            if attempt < attempts - 1:
                logger.info(
                    "ingest.apply.retry",
                    extra={
                        "stage": options.stage,
                        "work_item_id": work_item_id,
                        "identifier": ingest_file.identifier,
                        "attempt": attempt + 1,
                        "max_attempts": attempts,
                    },
                )
                if options.retry_delay_seconds:
                    self._sleep(options.retry_delay_seconds)
        if options.persist_changes:
            errors = errors + self.persist(work_item_id, ingest_file, options.stage)
        return errors

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def persist(self, work_item_id: int, ingest_file: IngestFile, stage: str) -> list[ProcessingError]:
        """Save *ingest_file*, retrying store failures a bounded number of times."""
        attempts = self._config.persist_attempts
        for attempt in range(attempts):
            try:
                self._store.ingest_file_save(work_item_id, ingest_file)
                return []
            except MetadataStoreError as exc:
                if attempt == attempts - 1:
                    return [stage_error(
                        stage, work_item_id, ingest_file.identifier, ErrorCode.E_STORE_WRITE,
                        f"Cannot save file record after {attempts} attempts: {exc}",
                    )]
                logger.warning(
                    "preservekit_ingest | %s | work_item=%s | identifier=%s | "
                    "detail=save failed (attempt %d/%d): %s",
                    stage,
                    work_item_id,
                    ingest_file.identifier,
                    attempt + 1,
                    attempts,
                    exc,
                )
                self._sleep(self._config.persist_delay_seconds)
        return []

    def lookup(self, work_item_id: int, identifier: str) -> IngestFile | None:
        """Read a file record, re-reading a few times if it is not yet visible."""
        attempts = self._config.manifest_lookup_attempts
        for attempt in range(attempts):
            ingest_file = self._store.ingest_file_get(work_item_id, identifier)
            if ingest_file is not None:
                return ingest_file
            if attempt < attempts - 1:
                self._sleep(self._config.manifest_lookup_delay_seconds)
        return None

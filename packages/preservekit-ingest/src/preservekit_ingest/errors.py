"""Stage-side helpers for creating and logging ``ProcessingError`` records.

Every error a stage reports goes through :func:`stage_error` (or
:func:`log_error` for errors built elsewhere, such as those carried by an
``IngestException``), so each one is logged with its WorkItem and
identifier at the point it is created.
"""

from __future__ import annotations

import logging
import sys

from preservekit_core.errors import ErrorCode, ProcessingError

logger = logging.getLogger("preservekit_ingest")


def log_error(error: ProcessingError) -> ProcessingError:
    """Log *error* with its context and return it unchanged."""
    level = logging.ERROR if error.is_fatal else logging.WARNING
    logger.log(
        level,
        "preservekit_ingest | %s | work_item=%s | identifier=%s | code=%s | fatal=%s | detail=%s",
        error.stage,
        error.work_item_id,
        error.identifier,
        error.code.value,
        error.is_fatal,
        error.message,
        extra={
            "stage": error.stage,
            "work_item_id": error.work_item_id,
            "identifier": error.identifier,
            "error_code": error.code.value,
            "error_source": error.source,
        },
    )
    return error


def stage_error(
    stage: str,
    work_item_id: int,
    identifier: str | None,
    code: ErrorCode,
    message: str,
    is_fatal: bool = False,
) -> ProcessingError:
    """Create, log and return a ``ProcessingError`` stamped with the caller's location."""
    frame = sys._getframe(1)
    return log_error(ProcessingError(
        code=code,
        message=message,
        stage=stage,
        work_item_id=work_item_id,
        identifier=identifier,
        is_fatal=is_fatal,
        source=f"{frame.f_code.co_filename}:{frame.f_lineno}",
    ))


def with_context(error: ProcessingError, stage: str, work_item_id: int) -> ProcessingError:
    """Fill in stage/WorkItem on an error raised below the stage boundary, then log it."""
    updated = error.model_copy(update={
        "stage": error.stage or stage,
        "work_item_id": work_item_id if error.work_item_id is None else error.work_item_id,
    })
    return log_error(updated)

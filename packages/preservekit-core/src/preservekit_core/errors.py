"""Error codes, the structured processing error, and collaborator exceptions.

``ErrorCode`` enumerates every error/warning code a stage can report.
``ProcessingError`` is a Pydantic model (not an exception) that stages
return in their ``(count, errors)`` result.  ``IngestException`` wraps one
for raising inside a stage.

Collaborators (metadata store, object store, catalog) signal structured
conditions with the exception classes at the bottom of this module, so no
stage ever has to inspect an error message to decide what happened.
"""

from __future__ import annotations

import sys
from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Normalized error codes for the preservekit pipeline.

    Values equal their names so they are stable strings suitable for
    metrics and alerting.  ``E_`` codes are errors, ``W_`` codes warnings.
    """

    # Source / bag errors
    E_SOURCE_NOT_FOUND = "E_SOURCE_NOT_FOUND"
    E_SOURCE_UNREADABLE = "E_SOURCE_UNREADABLE"
    E_BAG_ILLEGAL_PATH = "E_BAG_ILLEGAL_PATH"
    E_BAG_CORRUPT = "E_BAG_CORRUPT"
    E_BAG_MANIFEST_PARSE = "E_BAG_MANIFEST_PARSE"
    E_BAG_TAG_PARSE = "E_BAG_TAG_PARSE"
    E_SCRATCH_IO = "E_SCRATCH_IO"

    # Metadata store errors
    E_STORE_READ = "E_STORE_READ"
    E_STORE_WRITE = "E_STORE_WRITE"
    E_STORE_RECORD_MISSING = "E_STORE_RECORD_MISSING"

    # Object store errors
    E_OBJECT_GET = "E_OBJECT_GET"
    E_OBJECT_PUT = "E_OBJECT_PUT"
    E_OBJECT_COPY = "E_OBJECT_COPY"
    E_OBJECT_SHORT_WRITE = "E_OBJECT_SHORT_WRITE"
    E_OBJECT_DELETE = "E_OBJECT_DELETE"
    E_OBJECT_MISSING = "E_OBJECT_MISSING"
    E_BUCKET_UNSAFE = "E_BUCKET_UNSAFE"

    # Preservation errors
    E_NO_STORAGE_TARGETS = "E_NO_STORAGE_TARGETS"
    E_VERIFY_SIZE_MISMATCH = "E_VERIFY_SIZE_MISMATCH"
    E_VERIFY_NOT_STORED = "E_VERIFY_NOT_STORED"

    # Catalog errors
    E_CATALOG_READ = "E_CATALOG_READ"
    E_CATALOG_WRITE = "E_CATALOG_WRITE"
    E_CATALOG_CONFLICT = "E_CATALOG_CONFLICT"

    # Format identification
    E_FORMAT_IDENTIFY = "E_FORMAT_IDENTIFY"

    # Warnings (non-fatal)
    W_DEFAULT_STORAGE_OPTION = "W_DEFAULT_STORAGE_OPTION"
    W_ERROR_BUDGET_EXCEEDED = "W_ERROR_BUDGET_EXCEEDED"


class ProcessingError(BaseModel):
    """Structured error reported by a pipeline stage.

    ``is_fatal`` marks conditions that will recur identically on retry
    (malformed bag, missing source, illegal path).  Non-fatal errors are
    expected to clear when the stage runs again.

    Note: This is a Pydantic model (data structure), not a Python Exception.
    To raise errors, use ``IngestException`` which wraps this model.
    """

    code: ErrorCode
    message: str
    stage: str | None = None
    work_item_id: int | None = None
    identifier: str | None = None
    is_fatal: bool = False
    source: str | None = None

    def __str__(self) -> str:
        severity = "fatal" if self.is_fatal else "transient"
        return (
            f"[{self.code.value}] {severity} work_item={self.work_item_id} "
            f"identifier={self.identifier}: {self.message}"
        )


class IngestException(Exception):
    """Raisable exception wrapping a ProcessingError data model.

    Carries the structured ``ProcessingError`` as the ``.error`` attribute.
    Stages catch it at their boundary and return ``.error`` in their result.
    """

    def __init__(self, **kwargs: object) -> None:
        if "source" not in kwargs:
            frame = sys._getframe(1)
            kwargs["source"] = f"{frame.f_code.co_filename}:{frame.f_lineno}"
        self.error = ProcessingError(**kwargs)  # type: ignore[arg-type]
        super().__init__(self.error.message)

    @property
    def code(self) -> ErrorCode:
        return self.error.code

    @property
    def message(self) -> str:
        return self.error.message

    @property
    def is_fatal(self) -> bool:
        return self.error.is_fatal


# ---------------------------------------------------------------------------
# Collaborator exceptions
# ---------------------------------------------------------------------------


class CollaboratorError(Exception):
    """Base class for failures reported by an external collaborator."""


class ObjectNotFoundError(CollaboratorError, LookupError):
    """The requested bucket/key does not exist in the object store."""

    def __init__(self, bucket: str, key: str) -> None:
        self.bucket = bucket
        self.key = key
        super().__init__(f"No such key: {bucket}/{key}")


class ObjectStoreError(CollaboratorError):
    """The object store failed a request for a reason other than a missing key."""


class MetadataStoreError(CollaboratorError):
    """The metadata store could not complete a read or write."""


class CatalogError(CollaboratorError):
    """The catalog rejected or failed a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class CatalogConflictError(CatalogError):
    """The catalog already holds a record with a unique attribute of this one."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=409)

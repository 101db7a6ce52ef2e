"""preservekit-core -- Shared records and collaborator contracts for preservekit.

Re-exports all public types: errors, models, and protocols.
"""

from preservekit_core.errors import (
    CatalogConflictError,
    CatalogError,
    CollaboratorError,
    ErrorCode,
    IngestException,
    MetadataStoreError,
    ObjectNotFoundError,
    ObjectStoreError,
    ProcessingError,
)
from preservekit_core.models import (
    CatalogChecksum,
    CatalogFile,
    CatalogObject,
    ChecksumSource,
    EventOutcome,
    EventType,
    FileType,
    IngestChecksum,
    IngestFile,
    IngestObject,
    PremisEvent,
    StorageRecord,
    Tag,
)
from preservekit_core.protocols import (
    CatalogClient,
    CopySource,
    FormatIdentifierBackend,
    FormatMatch,
    MetadataStore,
    ObjectInfo,
    ObjectStore,
)

__all__ = [
    # Errors
    "ErrorCode",
    "ProcessingError",
    "IngestException",
    "CollaboratorError",
    "ObjectNotFoundError",
    "ObjectStoreError",
    "MetadataStoreError",
    "CatalogError",
    "CatalogConflictError",
    # Models
    "FileType",
    "ChecksumSource",
    "EventType",
    "EventOutcome",
    "Tag",
    "IngestChecksum",
    "StorageRecord",
    "PremisEvent",
    "IngestFile",
    "IngestObject",
    "CatalogChecksum",
    "CatalogObject",
    "CatalogFile",
    # Protocols
    "MetadataStore",
    "ObjectStore",
    "CatalogClient",
    "FormatIdentifierBackend",
    "ObjectInfo",
    "CopySource",
    "FormatMatch",
]

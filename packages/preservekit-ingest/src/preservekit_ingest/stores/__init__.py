"""In-memory collaborator implementations."""

from preservekit_ingest.stores.memory import (
    InMemoryCatalog,
    InMemoryMetadataStore,
    InMemoryObjectStore,
)

__all__ = ["InMemoryMetadataStore", "InMemoryObjectStore", "InMemoryCatalog"]

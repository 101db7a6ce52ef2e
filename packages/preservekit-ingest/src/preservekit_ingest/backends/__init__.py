"""Concrete collaborator backends for preservekit-ingest.

``RedisMetadataStore`` needs ``redis`` and ``S3ObjectStore`` needs
``boto3``.  Both modules import their client library inside the
constructor, so this package always imports; instantiating a backend
without its library raises ``ImportError`` with an install hint.
"""

from __future__ import annotations

from preservekit_ingest.backends.redis_store import RedisMetadataStore
from preservekit_ingest.backends.s3 import S3ObjectStore

__all__ = [
    "RedisMetadataStore",
    "S3ObjectStore",
]

"""Redis backend for the MetadataStore protocol.

Each WorkItem is one Redis hash named after its id.  Object records live
under ``object:<identifier>`` fields and file records under
``file:<identifier>``, both as pydantic JSON.  ``list_ingest_files`` pages
with ``HSCAN`` and hands the Redis cursor back as the next offset, so a
returned offset of ``0`` means the scan is complete.

``redis`` is an optional dependency -- importing this module without it
installed raises ``ImportError`` at class instantiation time only.
"""

from __future__ import annotations

import logging
from typing import Any

from preservekit_core.errors import MetadataStoreError
from preservekit_core.models import IngestFile, IngestObject

logger = logging.getLogger("preservekit_ingest")

OBJECT_PREFIX = "object:"
FILE_PREFIX = "file:"


class RedisMetadataStore:
    """Redis-backed metadata store.

    Satisfies :class:`~preservekit_core.protocols.MetadataStore` via
    structural subtyping.

    Parameters
    ----------
    url:
        Redis connection URL (e.g. ``"redis://localhost:6379/0"``).
    key_prefix:
        Optional prefix for the per-WorkItem hash names, for sharing one
        Redis database between deployments.
    client:
        An existing ``redis.Redis`` client; when given, *url* is ignored.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        key_prefix: str = "",
        client: Any | None = None,
    ) -> None:
        try:
            import redis
        except ImportError as exc:
            raise ImportError(
                "redis is required for RedisMetadataStore. "
                "Install it with: pip install 'preservekit[redis]'"
            ) from exc

        self._redis_error: type[Exception] = redis.RedisError
        self._prefix = key_prefix
        self._client = client if client is not None else redis.Redis.from_url(url)

    def _hash_name(self, work_item_id: int) -> str:
        return f"{self._prefix}{work_item_id}"

    def _call(self, op: str, work_item_id: int, fn, *args):  # noqa: ANN001, ANN002, ANN202
        try:
            return fn(*args)
        except self._redis_error as exc:
            logger.warning(
                "preservekit_ingest | redis | work_item=%s | detail=%s failed: %s",
                work_item_id,
                op,
                exc,
            )
            raise MetadataStoreError(f"Redis {op} failed for WorkItem {work_item_id}: {exc}") from exc

    def _hget(self, work_item_id: int, field: str) -> str | None:
        value = self._call("HGET", work_item_id, self._client.hget, self._hash_name(work_item_id), field)
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else value

    def _hset(self, work_item_id: int, field: str, value: str) -> None:
        self._call("HSET", work_item_id, self._client.hset, self._hash_name(work_item_id), field, value)

    def _hdel(self, work_item_id: int, field: str) -> None:
        self._call("HDEL", work_item_id, self._client.hdel, self._hash_name(work_item_id), field)

    # ------------------------------------------------------------------
    # Protocol methods
    # ------------------------------------------------------------------

    def ingest_object_get(self, work_item_id: int, identifier: str) -> IngestObject | None:
        data = self._hget(work_item_id, OBJECT_PREFIX + identifier)
        return IngestObject.model_validate_json(data) if data is not None else None

    def ingest_object_save(self, work_item_id: int, obj: IngestObject) -> None:
        self._hset(work_item_id, OBJECT_PREFIX + obj.identifier, obj.model_dump_json())

    def ingest_object_delete(self, work_item_id: int, identifier: str) -> None:
        self._hdel(work_item_id, OBJECT_PREFIX + identifier)

    def ingest_file_get(self, work_item_id: int, identifier: str) -> IngestFile | None:
        data = self._hget(work_item_id, FILE_PREFIX + identifier)
        return IngestFile.model_validate_json(data) if data is not None else None

    def ingest_file_save(self, work_item_id: int, ingest_file: IngestFile) -> None:
        self._hset(work_item_id, FILE_PREFIX + ingest_file.identifier, ingest_file.model_dump_json())

    def ingest_file_delete(self, work_item_id: int, identifier: str) -> None:
        self._hdel(work_item_id, FILE_PREFIX + identifier)

    def list_ingest_files(
        self, work_item_id: int, offset: int, limit: int
    ) -> tuple[list[IngestFile], int]:
        """One ``HSCAN`` step; *limit* is a hint and a page may hold more or fewer."""
        cursor, fields = self._call(
            "HSCAN",
            work_item_id,
            lambda: self._client.hscan(
                self._hash_name(work_item_id), cursor=offset, match=FILE_PREFIX + "*", count=limit
            ),
        )
        files = [IngestFile.model_validate_json(value) for value in fields.values()]
        return files, int(cursor)

    def work_item_delete(self, work_item_id: int) -> int:
        name = self._hash_name(work_item_id)
        count = self._call("HLEN", work_item_id, self._client.hlen, name)
        self._call("DEL", work_item_id, self._client.delete, name)
        return int(count)

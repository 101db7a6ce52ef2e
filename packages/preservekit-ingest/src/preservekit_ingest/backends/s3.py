"""S3 backend for the ObjectStore protocol.

Works against AWS S3 and S3-compatible providers (Wasabi, MinIO) through
``boto3``.  One ``S3ObjectStore`` serves one provider; the pipeline is given
a mapping of provider name to store.

``boto3`` is an optional dependency -- importing this module without it
installed raises ``ImportError`` at class instantiation time only.
"""

from __future__ import annotations

import logging
import os
from typing import Any, BinaryIO, Iterator

from preservekit_core.errors import ObjectNotFoundError, ObjectStoreError
from preservekit_core.protocols import CopySource, ObjectInfo

logger = logging.getLogger("preservekit_ingest")

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class _LimitedReader:
    """Read at most *limit* bytes from *stream* and count what was read."""

    def __init__(self, stream: BinaryIO, limit: int) -> None:
        self._stream = stream
        self._remaining = limit
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        if self._remaining <= 0:
            return b""
        if size is None or size < 0 or size > self._remaining:
            size = self._remaining
        data = self._stream.read(size)
        self._remaining -= len(data)
        self.bytes_read += len(data)
        return data


class S3ObjectStore:
    """boto3-backed object store for one provider.

    Satisfies :class:`~preservekit_core.protocols.ObjectStore` via
    structural subtyping.

    Parameters
    ----------
    region:
        Region for the client (e.g. ``"us-east-1"``).
    endpoint_url:
        Endpoint for S3-compatible providers; ``None`` for AWS.
    storage_classes:
        Optional ``{bucket: storage_class}`` applied to writes into that
        bucket (e.g. ``GLACIER`` or ``DEEP_ARCHIVE``).
    client:
        An existing boto3 S3 client; when given the other connection
        arguments are ignored.
    """

    def __init__(
        self,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        storage_classes: dict[str, str] | None = None,
        client: Any | None = None,
    ) -> None:
        try:
            import boto3
            from botocore.exceptions import BotoCoreError, ClientError
        except ImportError as exc:
            raise ImportError(
                "boto3 is required for S3ObjectStore. "
                "Install it with: pip install 'preservekit[s3]'"
            ) from exc

        self._client_error = ClientError
        self._boto_errors: tuple[type[Exception], ...] = (ClientError, BotoCoreError)
        self._storage_classes = dict(storage_classes or {})
        if client is None:
            logger.info(
                "ingest.s3.connect",
                extra={"region": region, "endpoint_url": endpoint_url or "aws"},
            )
            client = boto3.client("s3", region_name=region, endpoint_url=endpoint_url)
        self._client = client

    def _extra_args(
        self, bucket: str, metadata: dict[str, str] | None, content_type: str
    ) -> dict[str, Any]:
        extra: dict[str, Any] = {}
        if metadata:
            extra["Metadata"] = dict(metadata)
        if content_type:
            extra["ContentType"] = content_type
        storage_class = self._storage_classes.get(bucket)
        if storage_class:
            extra["StorageClass"] = storage_class
        return extra

    def _translate(self, op: str, bucket: str, key: str, exc: Exception) -> Exception:
        if isinstance(exc, self._client_error):
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES:
                return ObjectNotFoundError(bucket, key)
        logger.warning(
            "preservekit_ingest | s3 | identifier=%s/%s | detail=%s failed: %s",
            bucket,
            key,
            op,
            exc,
        )
        return ObjectStoreError(f"{op} {bucket}/{key} failed: {exc}")

    # ------------------------------------------------------------------
    # Protocol methods
    # ------------------------------------------------------------------

    def get_object(self, bucket: str, key: str) -> BinaryIO:
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
        except self._boto_errors as exc:
            raise self._translate("GetObject", bucket, key, exc) from exc
        return response["Body"]

    def put_object(
        self,
        bucket: str,
        key: str,
        stream: BinaryIO,
        size: int,
        metadata: dict[str, str] | None = None,
        content_type: str = "",
    ) -> int:
        reader = _LimitedReader(stream, size)
        try:
            self._client.upload_fileobj(
                reader, bucket, key, ExtraArgs=self._extra_args(bucket, metadata, content_type)
            )
        except self._boto_errors as exc:
            raise self._translate("PutObject", bucket, key, exc) from exc
        return reader.bytes_read

    def fput_object(self, bucket: str, key: str, path: str, content_type: str = "") -> int:
        try:
            self._client.upload_file(
                path, bucket, key, ExtraArgs=self._extra_args(bucket, None, content_type)
            )
        except self._boto_errors as exc:
            raise self._translate("PutObject", bucket, key, exc) from exc
        return os.path.getsize(path)

    def stat_object(self, bucket: str, key: str) -> ObjectInfo:
        try:
            response = self._client.head_object(Bucket=bucket, Key=key)
        except self._boto_errors as exc:
            raise self._translate("HeadObject", bucket, key, exc) from exc
        return ObjectInfo(
            bucket=bucket,
            key=key,
            size=int(response.get("ContentLength", 0)),
            etag=response.get("ETag", ""),
            content_type=response.get("ContentType", ""),
            metadata=dict(response.get("Metadata", {})),
        )

    def copy_object(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        metadata: dict[str, str] | None = None,
        content_type: str = "",
    ) -> None:
        extra = self._extra_args(dst_bucket, metadata, content_type)
        if metadata is not None:
            extra["MetadataDirective"] = "REPLACE"
        try:
            self._client.copy_object(
                Bucket=dst_bucket,
                Key=dst_key,
                CopySource={"Bucket": src_bucket, "Key": src_key},
                **extra,
            )
        except self._boto_errors as exc:
            raise self._translate("CopyObject", src_bucket, src_key, exc) from exc

    def compose_object(
        self,
        dst_bucket: str,
        dst_key: str,
        sources: list[CopySource],
        metadata: dict[str, str] | None = None,
        content_type: str = "",
    ) -> None:
        """Multipart upload built from ``UploadPartCopy`` ranges, aborted on failure."""
        try:
            upload = self._client.create_multipart_upload(
                Bucket=dst_bucket,
                Key=dst_key,
                **self._extra_args(dst_bucket, metadata, content_type),
            )
        except self._boto_errors as exc:
            raise self._translate("CreateMultipartUpload", dst_bucket, dst_key, exc) from exc
        upload_id = upload["UploadId"]

        parts: list[dict[str, Any]] = []
        try:
            for number, source in enumerate(sources, start=1):
                response = self._client.upload_part_copy(
                    Bucket=dst_bucket,
                    Key=dst_key,
                    UploadId=upload_id,
                    PartNumber=number,
                    CopySource={"Bucket": source.bucket, "Key": source.key},
                    CopySourceRange=f"bytes={source.start}-{source.end}",
                )
                parts.append({
                    "ETag": response["CopyPartResult"]["ETag"],
                    "PartNumber": number,
                })
            self._client.complete_multipart_upload(
                Bucket=dst_bucket,
                Key=dst_key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except self._boto_errors as exc:
            try:
                self._client.abort_multipart_upload(
                    Bucket=dst_bucket, Key=dst_key, UploadId=upload_id
                )
            except self._boto_errors as abort_exc:
                logger.warning(
                    "preservekit_ingest | s3 | identifier=%s/%s | detail=abort of upload %s failed: %s",
                    dst_bucket,
                    dst_key,
                    upload_id,
                    abort_exc,
                )
            raise self._translate("UploadPartCopy", dst_bucket, dst_key, exc) from exc

    def remove_object(self, bucket: str, key: str) -> None:
        try:
            self._client.delete_object(Bucket=bucket, Key=key)
        except self._boto_errors as exc:
            raise self._translate("DeleteObject", bucket, key, exc) from exc

    def list_objects(self, bucket: str, prefix: str) -> Iterator[str]:
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for entry in page.get("Contents", []):
                    yield entry["Key"]
        except self._boto_errors as exc:
            raise self._translate("ListObjectsV2", bucket, prefix, exc) from exc

"""IngestConfig and configuration defaults.

Provides ``IngestConfig`` with all tunable parameters for the ingest
pipeline and sensible defaults.  Supports loading overrides from YAML or
JSON files via the ``from_file()`` classmethod.

Also exports ``PreservationBucket`` (one storage target of a storage
option) and ``StageLimits`` (the error budget of one stage).
"""

from __future__ import annotations

import hashlib

from pydantic import BaseModel, Field, model_validator

_MIB = 1024 * 1024
_GIB = 1024 * _MIB


class PreservationBucket(BaseModel):
    """One storage target required by a storage option."""

    option_name: str
    provider: str
    bucket: str
    region: str
    host: str = ""
    storage_class: str = "STANDARD"
    description: str = ""

    def url_for(self, key: str) -> str:
        host = self.host or _default_host(self.provider, self.region)
        return f"https://{host}/{self.bucket}/{key}"


def _default_host(provider: str, region: str) -> str:
    if provider == "wasabi":
        return f"s3.{region}.wasabisys.com"
    return f"s3.{region}.amazonaws.com"


class StageLimits(BaseModel):
    """Error budget and retry policy for one stage's file loop."""

    max_errors: int = Field(default=30, ge=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=1.0, ge=0.0)
    workers: int = Field(
        default=1,
        ge=1,
        description="Threads per page of file records; 1 processes files sequentially.",
    )


def _default_preservation_buckets() -> list[PreservationBucket]:
    return [
        PreservationBucket(
            option_name="Standard", provider="aws", bucket="aptrust.preservation.storage",
            region="us-east-1", description="Primary S3 copy",
        ),
        PreservationBucket(
            option_name="Standard", provider="aws", bucket="aptrust.preservation.oregon",
            region="us-west-2", storage_class="GLACIER", description="Secondary Glacier copy",
        ),
        PreservationBucket(
            option_name="Glacier-OH", provider="aws", bucket="aptrust.preservation.glacier.oh",
            region="us-east-2", storage_class="GLACIER",
        ),
        PreservationBucket(
            option_name="Glacier-OR", provider="aws", bucket="aptrust.preservation.glacier.or",
            region="us-west-2", storage_class="GLACIER",
        ),
        PreservationBucket(
            option_name="Glacier-VA", provider="aws", bucket="aptrust.preservation.glacier.va",
            region="us-east-1", storage_class="GLACIER",
        ),
        PreservationBucket(
            option_name="Glacier-Deep-OH", provider="aws",
            bucket="aptrust.preservation.glacier-deep.oh", region="us-east-2",
            storage_class="DEEP_ARCHIVE",
        ),
        PreservationBucket(
            option_name="Glacier-Deep-OR", provider="aws",
            bucket="aptrust.preservation.glacier-deep.or", region="us-west-2",
            storage_class="DEEP_ARCHIVE",
        ),
        PreservationBucket(
            option_name="Glacier-Deep-VA", provider="aws",
            bucket="aptrust.preservation.glacier-deep.va", region="us-east-1",
            storage_class="DEEP_ARCHIVE",
        ),
        PreservationBucket(
            option_name="Wasabi-OR", provider="wasabi", bucket="aptrust.wasabi.or",
            region="us-west-1",
        ),
        PreservationBucket(
            option_name="Wasabi-VA", provider="wasabi", bucket="aptrust.wasabi.va",
            region="us-east-1",
        ),
    ]


class IngestConfig(BaseModel):
    """All tunable parameters for the ingest pipeline.

    Override individual values via constructor kwargs or load a complete
    config from a file with ``IngestConfig.from_file(path)``.
    """

    # --- Buckets ---
    receiving_provider: str = "aws"
    staging_bucket: str = "aptrust.staging"
    staging_provider: str = "aws"
    staging_region: str = "us-east-1"
    preservation_buckets: list[PreservationBucket] = Field(
        default_factory=_default_preservation_buckets,
        description="Storage targets; a storage option maps to every bucket with its name.",
    )
    default_storage_option: str = Field(
        default="Standard",
        description="Storage option used when the bag does not name one.",
    )

    # --- Scanning ---
    scratch_dir: str | None = Field(
        default=None,
        description="Parent directory for scanner scratch files; system temp dir when unset.",
    )
    digest_algorithms: list[str] = Field(
        default_factory=lambda: ["md5", "sha256"],
        description="Digests computed for every file in a single pass during the scan.",
    )
    manifest_lookup_attempts: int = Field(
        default=3,
        ge=1,
        description="Reads of a just-written file record before treating it as absent.",
    )
    manifest_lookup_delay_seconds: float = Field(default=0.25, ge=0.0)

    # --- Metadata store ---
    page_size: int = Field(
        default=100,
        ge=1,
        description="File records fetched per page when iterating a WorkItem.",
    )
    persist_attempts: int = Field(default=3, ge=1)
    persist_delay_seconds: float = Field(default=0.25, ge=0.0)

    # --- Stage limits ---
    reingest_limits: StageLimits = Field(
        default_factory=lambda: StageLimits(max_errors=10, max_retries=1, retry_delay_seconds=0.0)
    )
    staging_limits: StageLimits = Field(
        default_factory=lambda: StageLimits(max_errors=30, max_retries=0, retry_delay_seconds=0.0)
    )
    format_limits: StageLimits = Field(default_factory=StageLimits)
    upload_limits: StageLimits = Field(default_factory=StageLimits)
    verify_limits: StageLimits = Field(default_factory=StageLimits)
    record_limits: StageLimits = Field(
        default_factory=lambda: StageLimits(max_errors=10, max_retries=1, retry_delay_seconds=1.0)
    )
    cleanup_max_errors: int = Field(default=10, ge=0)

    # --- Copying ---
    max_single_copy_bytes: int = Field(
        default=5 * _GIB,
        ge=1,
        description="Largest object copied with one server-side copy call.",
    )
    multipart_part_size: int = Field(
        default=512 * _MIB,
        ge=1,
        description="Byte range per part when composing a large server-side copy.",
    )
    encoded_path_providers: list[str] = Field(
        default_factory=lambda: ["wasabi"],
        description="Providers that reject non-ASCII bagpath metadata and get bagpath-encoded.",
    )

    # --- Format identification ---
    format_sample_bytes: int = Field(default=64 * 1024, ge=1)

    # --- Recording ---
    event_agent: str = "preservekit ingest"
    delete_from_receiving: bool = Field(
        default=True,
        description="Flag the source bag for deletion once it is recorded in the catalog.",
    )

    @model_validator(mode="after")
    def _validate_fields(self) -> IngestConfig:
        if not self.preservation_buckets:
            raise ValueError("preservation_buckets must not be empty")
        if self.default_storage_option not in self.storage_options():
            raise ValueError(
                f"default_storage_option {self.default_storage_option!r} "
                "has no preservation buckets"
            )
        unknown = [a for a in self.digest_algorithms if a not in hashlib.algorithms_available]
        if unknown:
            raise ValueError(f"digest_algorithms contains unknown algorithms: {unknown}")
        if not self.digest_algorithms:
            raise ValueError("digest_algorithms must not be empty")
        if self.multipart_part_size > self.max_single_copy_bytes:
            raise ValueError("multipart_part_size must not exceed max_single_copy_bytes")
        return self

    def storage_options(self) -> set[str]:
        return {b.option_name for b in self.preservation_buckets}

    def targets_for(self, storage_option: str) -> list[PreservationBucket]:
        """Every preservation bucket a file with *storage_option* must reach."""
        return [b for b in self.preservation_buckets if b.option_name == storage_option]

    @classmethod
    def from_file(cls, path: str) -> IngestConfig:
        """Load configuration from a YAML or JSON file.

        File format is detected by extension: ``.yaml`` / ``.yml`` for YAML,
        ``.json`` for JSON.  Any keys present in the file override the
        corresponding defaults; keys not present retain their defaults.
        """
        import json as json_mod
        import pathlib

        file_path = pathlib.Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        suffix = file_path.suffix.lower()

        if suffix in (".yaml", ".yml"):
            try:
                import yaml  # type: ignore[import-untyped]
            except ImportError as exc:
                raise ImportError(
                    "pyyaml is required to load YAML config files. "
                    "Install it with: pip install pyyaml"
                ) from exc
            with open(file_path) as fh:
                data = yaml.safe_load(fh)
        elif suffix == ".json":
            with open(file_path) as fh:
                data = json_mod.load(fh)
        else:
            raise ValueError(
                f"Unsupported config file extension: {suffix!r}. "
                "Use .yaml, .yml, or .json"
            )

        return cls.model_validate(data or {})

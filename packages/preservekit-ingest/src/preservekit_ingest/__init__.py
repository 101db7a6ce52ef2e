"""preservekit-ingest -- resumable BagIt ingest into preservation storage.

Public API exports for the pipeline, its stages, configuration and the
in-memory collaborators.  Optional Redis and S3 backends live in
:mod:`preservekit_ingest.backends`.
"""

from preservekit_ingest.apply import ApplyOptions, BatchApplier, ErrorAccumulator
from preservekit_ingest.bagit import parse_manifest, parse_tag_file, tar_path_to_bag_path
from preservekit_ingest.cleanup import Cleanup, bucket_unsafe_for_deletion
from preservekit_ingest.config import IngestConfig, PreservationBucket, StageLimits
from preservekit_ingest.events import file_events, object_events
from preservekit_ingest.format_identifier import FormatIdentifier
from preservekit_ingest.gatherer import MetadataGatherer
from preservekit_ingest.pipeline import (
    IngestPipeline,
    PipelineResult,
    StageResult,
    StageSpec,
    create_default_pipeline,
)
from preservekit_ingest.preservation import (
    PreservationUploader,
    PreservationVerifier,
    is_fully_preserved,
)
from preservekit_ingest.recorder import Recorder
from preservekit_ingest.reingest import ReingestManager, checksum_changed
from preservekit_ingest.scanner import TarredBagScanner
from preservekit_ingest.staging import StagingUploader, staging_key
from preservekit_ingest.stores import InMemoryCatalog, InMemoryMetadataStore, InMemoryObjectStore

__all__: list[str] = [
    # Config
    "IngestConfig",
    "PreservationBucket",
    "StageLimits",
    # Pipeline
    "IngestPipeline",
    "PipelineResult",
    "StageResult",
    "StageSpec",
    "create_default_pipeline",
    # Engine
    "ApplyOptions",
    "BatchApplier",
    "ErrorAccumulator",
    # Stages
    "MetadataGatherer",
    "ReingestManager",
    "StagingUploader",
    "FormatIdentifier",
    "PreservationUploader",
    "PreservationVerifier",
    "Recorder",
    "Cleanup",
    # Helpers
    "TarredBagScanner",
    "tar_path_to_bag_path",
    "parse_manifest",
    "parse_tag_file",
    "staging_key",
    "checksum_changed",
    "is_fully_preserved",
    "bucket_unsafe_for_deletion",
    "object_events",
    "file_events",
    # In-memory collaborators
    "InMemoryMetadataStore",
    "InMemoryObjectStore",
    "InMemoryCatalog",
]

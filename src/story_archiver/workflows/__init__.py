"""High-level exports for the archiving workflows."""

from .archive_resolver import (
    ArchiveLocation,
    DestinationCollisionError,
    MetadataFetchError,
    RunContext,
    StoryNotSpecifiedError,
    resolve_archive,
)
from .asset_fetch import AssetFetcher, FetchConfig, FetchError, FetchResult, FetchTask, RunOutcome
from .extract_utils import AssetReference, extract_css_references, extract_html_references
from .pipeline import (
    ArchiveOptions,
    ErrorThresholdExceeded,
    PipelineResult,
    PipelineState,
    run_archive_pipeline,
)
from .rewrite_utils import rewrite_html, rewrite_references, scope_css

__all__ = [
    "ArchiveLocation",
    "ArchiveOptions",
    "AssetFetcher",
    "AssetReference",
    "DestinationCollisionError",
    "ErrorThresholdExceeded",
    "FetchConfig",
    "FetchError",
    "FetchResult",
    "FetchTask",
    "MetadataFetchError",
    "PipelineResult",
    "PipelineState",
    "RunContext",
    "RunOutcome",
    "StoryNotSpecifiedError",
    "extract_css_references",
    "extract_html_references",
    "resolve_archive",
    "rewrite_html",
    "rewrite_references",
    "run_archive_pipeline",
    "scope_css",
]

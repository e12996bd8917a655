"""Ingestion — archive extraction, workspaces, blob fetching and classification."""

from ferry.ingest.archive import (
    ArchiveEntry,
    ArchiveExtractor,
    ExtractionResult,
    is_archive,
    iter_workspace_files,
    normalize_member_path,
)
from ferry.ingest.blobs import (
    BlobFetcher,
    HttpBlobFetcher,
    LocalBlobFetcher,
    RoutingBlobFetcher,
    default_fetcher,
    fetch_with_retry,
)
from ferry.ingest.classifier import (
    Classification,
    LanguageClassifier,
    extension_for,
    is_binary,
    normalize_language,
)
from ferry.ingest.workspace import WorkspaceManager

__all__ = [
    "ArchiveEntry",
    "ArchiveExtractor",
    "BlobFetcher",
    "Classification",
    "ExtractionResult",
    "HttpBlobFetcher",
    "LanguageClassifier",
    "LocalBlobFetcher",
    "RoutingBlobFetcher",
    "WorkspaceManager",
    "default_fetcher",
    "extension_for",
    "fetch_with_retry",
    "is_archive",
    "is_binary",
    "iter_workspace_files",
    "normalize_language",
    "normalize_member_path",
]

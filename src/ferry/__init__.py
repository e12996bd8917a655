"""Ferry: code ingestion, semantic chunk search and model-assisted migration.

Upload a repository, let the background processor chunk and embed it,
then search the chunks or ask for a migration to another language.
"""

__version__ = "0.1.0"

from ferry._ferry import Ferry
from ferry._ferry_async import FerryAsync
from ferry.config import (
    ChunkerPolicy,
    Deadlines,
    EmbeddingPolicy,
    ExtractorPolicy,
    FerryConfig,
    ProcessorPolicy,
    RetrievalPolicy,
)
from ferry.embedding import EmbeddingProvider, OpenAIEmbedding
from ferry.events import EventBus, EventType, JobEvent
from ferry.exceptions import (
    ArchiveCorruptError,
    ChunkParseError,
    ConcurrentClaimError,
    DeadlineExceededError,
    EmbeddingUnavailableError,
    ErrorKind,
    FerryError,
    GenerationFailedError,
    InvalidTransitionError,
    JobCancelledError,
    JobNotFoundError,
    PolicyViolationError,
    QuotaExceededError,
    StorageIOError,
    UnrecognizedError,
    UnsupportedLanguageError,
)
from ferry.migration import (
    GenerationProvider,
    MigrationFileResult,
    MigrationResult,
    MigrationStats,
    OpenAIGeneration,
    ValidationSummary,
)
from ferry.models import Chunk, ChunkType, Job, JobStatus, StorageKind, StoredFile
from ferry.types import ChunkPage, ChunkView, DeleteJobResult, FileUpload, JobError, JobInfo

__all__ = [
    "ArchiveCorruptError",
    "Chunk",
    "ChunkPage",
    "ChunkParseError",
    "ChunkType",
    "ChunkView",
    "ChunkerPolicy",
    "ConcurrentClaimError",
    "Deadlines",
    "DeadlineExceededError",
    "DeleteJobResult",
    "EmbeddingPolicy",
    "EmbeddingProvider",
    "EmbeddingUnavailableError",
    "ErrorKind",
    "EventBus",
    "EventType",
    "ExtractorPolicy",
    "Ferry",
    "FerryAsync",
    "FerryConfig",
    "FerryError",
    "FileUpload",
    "GenerationFailedError",
    "GenerationProvider",
    "InvalidTransitionError",
    "Job",
    "JobCancelledError",
    "JobError",
    "JobEvent",
    "JobInfo",
    "JobNotFoundError",
    "JobStatus",
    "MigrationFileResult",
    "MigrationResult",
    "MigrationStats",
    "OpenAIEmbedding",
    "OpenAIGeneration",
    "PolicyViolationError",
    "ProcessorPolicy",
    "QuotaExceededError",
    "RetrievalPolicy",
    "StorageIOError",
    "StorageKind",
    "StoredFile",
    "UnrecognizedError",
    "UnsupportedLanguageError",
    "ValidationSummary",
    "__version__",
]

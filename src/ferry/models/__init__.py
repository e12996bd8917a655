"""SQLModel database models for Ferry."""

from ferry.models.chunks import Chunk, ChunkMetadata, ChunkType, Parameter
from ferry.models.files import StorageKind, StoredFile
from ferry.models.jobs import Job, JobStatus

__all__ = [
    "Chunk",
    "ChunkMetadata",
    "ChunkType",
    "Job",
    "JobStatus",
    "Parameter",
    "StorageKind",
    "StoredFile",
]

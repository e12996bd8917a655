"""Result types returned by the Ferry facade."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ferry.models.files import StorageKind

if TYPE_CHECKING:
    from datetime import datetime

    from ferry.models.chunks import Chunk
    from ferry.models.jobs import Job


@dataclass(frozen=True)
class JobError:
    """Structured failure recorded on a job."""

    kind: str
    message: str
    timestamp: datetime | None = None


@dataclass
class JobInfo:
    """Snapshot of a job for polling clients."""

    job_id: str
    session_id: str
    user_id: str
    status: str
    total_files: int = 0
    processed_files: int = 0
    total_chunks: int = 0
    dummy_chunks: int = 0
    embedding_dimension: int | None = None
    error: JobError | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: Job) -> JobInfo:
        error = None
        if job.error_kind is not None:
            error = JobError(kind=job.error_kind, message=job.error_message or "", timestamp=job.error_at)
        return cls(
            job_id=job.id,
            session_id=job.session_id,
            user_id=job.user_id,
            status=job.status,
            total_files=job.total_files,
            processed_files=job.processed_files,
            total_chunks=job.total_chunks,
            dummy_chunks=job.dummy_chunks,
            embedding_dimension=job.embedding_dimension,
            error=error,
            created_at=job.created_at,
            started_at=job.processing_started_at,
            completed_at=job.processing_completed_at,
        )


@dataclass
class ChunkView:
    """A stored chunk without its embedding."""

    id: str
    job_id: str
    file_path: str
    file_name: str
    language: str
    chunk_type: str
    chunk_name: str
    content: str
    start_line: int
    end_line: int
    start_byte: int
    end_byte: int
    metadata: dict[str, Any] = field(default_factory=dict)
    is_dummy: bool = False
    score: float | None = None

    @classmethod
    def from_chunk(cls, chunk: Chunk, score: float | None = None) -> ChunkView:
        return cls(
            id=chunk.id,
            job_id=chunk.job_id,
            file_path=chunk.file_path,
            file_name=chunk.file_name,
            language=chunk.language,
            chunk_type=chunk.chunk_type,
            chunk_name=chunk.chunk_name,
            content=chunk.content,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            start_byte=chunk.start_byte,
            end_byte=chunk.end_byte,
            metadata=dict(chunk.chunk_metadata or {}),
            is_dummy=chunk.is_dummy,
            score=score,
        )


@dataclass
class ChunkPage:
    """One page of a job's chunks."""

    chunks: list[ChunkView]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.chunks) < self.total


@dataclass
class DeleteJobResult:
    """Result of a job deletion."""

    success: bool
    message: str
    job_id: str | None = None
    chunks_deleted: int = 0
    workspace_removed: bool = False


@dataclass(frozen=True)
class FileUpload:
    """An uploaded blob to attach to a job."""

    filename: str
    locator: str
    size_bytes: int = 0
    mime_type: str = "application/octet-stream"
    storage_kind: StorageKind = StorageKind.LOCAL
    relative_path: str | None = None


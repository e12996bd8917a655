"""Job model — one durable coordinator record per session."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


class JobStatus(str, Enum):
    """Job lifecycle states.  ``ready`` and ``failed`` are terminal."""

    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.READY, JobStatus.FAILED)


class Job(SQLModel, table=True):
    """Ingestion job — ``ferry_jobs``.

    ``error_kind``, ``error_message`` and ``error_at`` are set iff the job
    is ``failed``.  ``claimed_by`` / ``claimed_at`` record the processor
    holding a ``processing`` job.
    """

    __tablename__ = "ferry_jobs"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    session_id: str = Field(index=True, unique=True)
    user_id: str = Field(index=True)
    status: str = Field(default=JobStatus.PENDING.value, index=True)
    total_files: int = Field(default=0)
    processed_files: int = Field(default=0)
    total_chunks: int = Field(default=0)
    dummy_chunks: int = Field(default=0)
    embedding_dimension: int | None = Field(default=None)
    error_kind: str | None = Field(default=None)
    error_message: str | None = Field(default=None)
    error_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    claimed_by: str | None = Field(default=None)
    claimed_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    processing_started_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    processing_completed_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

"""JobStore — the job state machine.

Every mutation is a conditional UPDATE on ``(id, status, claimed_by)``;
the affected row count decides whether the transition happened.  Callers
own the session and commit after each call.

::

    pending --claim--> processing --complete--> ready
       |                   |
       +--abort--> failed <+--fail
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, delete, or_, update
from sqlmodel import select

from ferry.exceptions import (
    ConcurrentClaimError,
    ErrorKind,
    FerryError,
    InvalidTransitionError,
    JobCancelledError,
    JobNotFoundError,
)
from ferry.models.chunks import Chunk
from ferry.models.files import StoredFile
from ferry.models.jobs import Job, JobStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_PENDING = JobStatus.PENDING.value
_PROCESSING = JobStatus.PROCESSING.value
_READY = JobStatus.READY.value
_FAILED = JobStatus.FAILED.value


def error_fields(error: BaseException | tuple[ErrorKind, str]) -> tuple[str, str]:
    """``(kind, message)`` recorded on a failed job."""
    if isinstance(error, tuple):
        kind, message = error
        return kind.value, message
    kind = error.kind if isinstance(error, FerryError) else ErrorKind.INTERNAL
    return kind.value, str(error) or type(error).__name__


class JobStore:
    """Stateless job transitions over ``ferry_jobs``."""

    def __init__(self, *, stale_claim_timeout: float = 30 * 60.0) -> None:
        self._stale_claim_timeout = stale_claim_timeout

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    async def create_job(self, session: AsyncSession, session_id: str, user_id: str) -> Job:
        """Create a ``pending`` job.  One job per session."""
        existing = await self.get_job(session, session_id)
        if existing is not None:
            msg = f"Session {session_id!r} already has job {existing.id}"
            raise InvalidTransitionError(msg)
        job = Job(session_id=session_id, user_id=user_id)
        session.add(job)
        await session.flush()
        logger.info("Created job %s for session %s", job.id, session_id)
        return job

    async def get_job(self, session: AsyncSession, session_id: str) -> Job | None:
        result = await session.execute(select(Job).where(Job.session_id == session_id))
        return result.scalars().first()

    async def get_job_by_id(self, session: AsyncSession, job_id: str) -> Job | None:
        result = await session.execute(select(Job).where(Job.id == job_id))
        job = result.scalars().first()
        if job is not None:
            await session.refresh(job)
        return job

    async def _require(self, session: AsyncSession, job_id: str) -> Job:
        job = await self.get_job_by_id(session, job_id)
        if job is None:
            msg = f"Job not found: {job_id}"
            raise JobNotFoundError(msg)
        return job

    def _stale_cutoff(self, now: datetime | None = None) -> datetime:
        return (now or datetime.now(UTC)) - timedelta(seconds=self._stale_claim_timeout)

    async def find_pending(
        self, session: AsyncSession, *, limit: int = 10, now: datetime | None = None
    ) -> list[Job]:
        """Claimable jobs, oldest first: pending, or processing with a stale claim."""
        cutoff = self._stale_cutoff(now)
        stmt = (
            select(Job)
            .where(
                or_(
                    Job.status == _PENDING,
                    and_(Job.status == _PROCESSING, Job.claimed_at < cutoff),  # type: ignore[operator]
                )
            )
            .order_by(Job.created_at)  # type: ignore[arg-type]
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _apply(self, session: AsyncSession, job_id: str, where: list[Any], values: dict[str, Any]) -> bool:
        stmt = update(Job).where(Job.id == job_id, *where).values(**values)  # type: ignore[arg-type]
        result = await session.execute(stmt)
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def claim(
        self,
        session: AsyncSession,
        job_id: str,
        processor_id: str,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Atomically take *job_id* for *processor_id*.

        Succeeds for a ``pending`` job, or a ``processing`` job whose claim
        is older than the stale-claim timeout.  Progress counters restart
        from zero under the new holder.  Returns False otherwise.
        """
        now = now or datetime.now(UTC)
        claimed = await self._apply(
            session,
            job_id,
            [
                or_(
                    Job.status == _PENDING,
                    and_(Job.status == _PROCESSING, Job.claimed_at < self._stale_cutoff(now)),  # type: ignore[operator]
                )
            ],
            {
                "status": _PROCESSING,
                "claimed_by": processor_id,
                "claimed_at": now,
                "processing_started_at": now,
                "total_files": 0,
                "processed_files": 0,
                "total_chunks": 0,
            },
        )
        if claimed:
            logger.info("Processor %s claimed job %s", processor_id, job_id)
        return claimed

    async def claim_or_raise(
        self,
        session: AsyncSession,
        job_id: str,
        processor_id: str,
        *,
        now: datetime | None = None,
    ) -> Job:
        """Like :meth:`claim`, but raise :class:`ConcurrentClaimError` when another holder has it."""
        if not await self.claim(session, job_id, processor_id, now=now):
            job = await self._require(session, job_id)
            msg = f"Job {job_id} is {job.status} under {job.claimed_by or 'no holder'}"
            raise ConcurrentClaimError(msg)
        return await self._require(session, job_id)

    async def _held(self, session: AsyncSession, job_id: str, holder: str) -> Job:
        """Load a job that must be ``processing`` under *holder*."""
        job = await self.get_job_by_id(session, job_id)
        if job is None:
            msg = f"Job {job_id} was deleted"
            raise JobCancelledError(msg)
        if job.status != _PROCESSING or job.claimed_by != holder:
            msg = f"Job {job_id} is no longer held by {holder}"
            raise JobCancelledError(msg)
        return job

    async def ensure_held(self, session: AsyncSession, job_id: str, holder: str) -> None:
        """Raise :class:`JobCancelledError` unless *holder* still owns the job."""
        await self._held(session, job_id, holder)

    def _holder_guard(self, holder: str) -> list[Any]:
        return [Job.status == _PROCESSING, Job.claimed_by == holder]

    async def set_total_files(
        self, session: AsyncSession, job_id: str, holder: str, total_files: int
    ) -> None:
        job = await self._held(session, job_id, holder)
        if total_files < job.processed_files:
            msg = f"total_files {total_files} is below processed_files {job.processed_files}"
            raise InvalidTransitionError(msg)
        if not await self._apply(
            session, job_id, self._holder_guard(holder), {"total_files": total_files}
        ):
            msg = f"Lost claim on job {job_id}"
            raise JobCancelledError(msg)

    async def update_progress(
        self,
        session: AsyncSession,
        job_id: str,
        holder: str,
        *,
        processed_files: int | None = None,
        total_chunks: int | None = None,
    ) -> None:
        """Advance progress counters.  Counters never decrease."""
        job = await self._held(session, job_id, holder)
        values: dict[str, Any] = {}
        guard = self._holder_guard(holder)
        if processed_files is not None:
            if processed_files < job.processed_files:
                msg = f"processed_files would decrease ({job.processed_files} -> {processed_files})"
                raise InvalidTransitionError(msg)
            values["processed_files"] = processed_files
            guard.append(Job.processed_files <= processed_files)
        if total_chunks is not None:
            if total_chunks < job.total_chunks:
                msg = f"total_chunks would decrease ({job.total_chunks} -> {total_chunks})"
                raise InvalidTransitionError(msg)
            values["total_chunks"] = total_chunks
            guard.append(Job.total_chunks <= total_chunks)
        if values and not await self._apply(session, job_id, guard, values):
            msg = f"Lost claim on job {job_id}"
            raise JobCancelledError(msg)

    async def complete(
        self,
        session: AsyncSession,
        job_id: str,
        holder: str,
        *,
        total_chunks: int,
        embedding_dimension: int | None = None,
        dummy_chunks: int = 0,
    ) -> None:
        """``processing -> ready``.  Requires every file to be processed."""
        job = await self._held(session, job_id, holder)
        if job.processed_files != job.total_files:
            msg = f"Job {job_id} processed {job.processed_files}/{job.total_files} files"
            raise InvalidTransitionError(msg)
        if total_chunks < job.total_chunks:
            msg = f"total_chunks would decrease ({job.total_chunks} -> {total_chunks})"
            raise InvalidTransitionError(msg)
        done = await self._apply(
            session,
            job_id,
            self._holder_guard(holder),
            {
                "status": _READY,
                "total_chunks": total_chunks,
                "embedding_dimension": embedding_dimension,
                "dummy_chunks": dummy_chunks,
                "processing_completed_at": datetime.now(UTC),
            },
        )
        if not done:
            msg = f"Lost claim on job {job_id}"
            raise JobCancelledError(msg)
        logger.info("Job %s ready: %d chunks (%d dummy)", job_id, total_chunks, dummy_chunks)

    async def fail(
        self,
        session: AsyncSession,
        job_id: str,
        error: BaseException | tuple[ErrorKind, str],
        *,
        holder: str | None = None,
    ) -> bool:
        """``processing -> failed``.  Returns False if the job is gone or not held."""
        kind, message = error_fields(error)
        guard: list[Any] = [Job.status == _PROCESSING]
        if holder is not None:
            guard.append(Job.claimed_by == holder)
        now = datetime.now(UTC)
        failed = await self._apply(
            session,
            job_id,
            guard,
            {
                "status": _FAILED,
                "error_kind": kind,
                "error_message": message,
                "error_at": now,
                "processing_completed_at": now,
            },
        )
        if failed:
            logger.warning("Job %s failed: %s: %s", job_id, kind, message)
        return failed

    async def abort(
        self,
        session: AsyncSession,
        job_id: str,
        error: BaseException | tuple[ErrorKind, str],
    ) -> None:
        """``pending -> failed``."""
        kind, message = error_fields(error)
        aborted = await self._apply(
            session,
            job_id,
            [Job.status == _PENDING],
            {"status": _FAILED, "error_kind": kind, "error_message": message, "error_at": datetime.now(UTC)},
        )
        if not aborted:
            job = await self._require(session, job_id)
            msg = f"Cannot abort job {job_id} in state {job.status}"
            raise InvalidTransitionError(msg)
        logger.warning("Job %s aborted: %s: %s", job_id, kind, message)

    # ------------------------------------------------------------------
    # Deletion and cleanup
    # ------------------------------------------------------------------

    async def delete_job(self, session: AsyncSession, session_id: str) -> tuple[Job, int] | None:
        """Delete the session's job and its chunks; unlink the session's files.

        Returns ``(job, chunks_deleted)`` or ``None`` when no job exists.
        Permitted in every state.
        """
        job = await self.get_job(session, session_id)
        if job is None:
            return None
        chunks = await session.execute(delete(Chunk).where(Chunk.job_id == job.id))  # type: ignore[arg-type]
        await session.execute(
            update(StoredFile).where(StoredFile.session_id == session_id).values(session_id=None)  # type: ignore[arg-type]
        )
        await session.execute(delete(Job).where(Job.id == job.id))  # type: ignore[arg-type]
        chunks_deleted = int(chunks.rowcount or 0)  # type: ignore[attr-defined]
        logger.info("Deleted job %s (%d chunks)", job.id, chunks_deleted)
        return job, chunks_deleted

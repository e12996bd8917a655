"""BackgroundProcessor — claims pending jobs and runs the ingestion pipeline.

One coordinator task polls for claimable jobs and spawns at most
``max_concurrent_jobs`` job tasks.  A job task:

1. acquires the session workspace (released on every path),
2. downloads the session's stored files, expanding archives,
3. walks the workspace in sorted order, classifying and chunking each
   whitelisted file and advancing ``processed_files`` per file,
4. embeds the collected chunks in batches,
5. persists the chunks and moves the job to ``ready``.

File and embedding-batch boundaries are cancellation points: if the job
was deleted or its claim lost, the task stops with
:class:`~ferry.exceptions.JobCancelledError`.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import posixpath
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ferry.chunking import block_chunk_for, decode_source
from ferry.config import Deadlines, ExtractorPolicy, ProcessorPolicy
from ferry.events import EventBus, EventType, JobEvent
from ferry.exceptions import (
    ChunkParseError,
    FerryError,
    JobCancelledError,
    StorageIOError,
    UnrecognizedError,
    UnsupportedLanguageError,
)
from ferry.ingest.archive import iter_workspace_files, normalize_member_path
from ferry.ingest.blobs import fetch_with_retry
from ferry.models.chunks import Chunk

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncSession

    from ferry.chunking import ChunkerRegistry, ChunkSpan
    from ferry.embedding import EmbeddingClient
    from ferry.ingest.archive import ArchiveExtractor
    from ferry.ingest.blobs import BlobFetcher, RoutingBlobFetcher
    from ferry.ingest.classifier import LanguageClassifier
    from ferry.ingest.workspace import WorkspaceManager
    from ferry.models.files import StoredFile
    from ferry.models.jobs import Job
    from ferry.store import ChunkStore, FileStore, JobStore

logger = logging.getLogger(__name__)

_SOURCE_DIR = "src"
_BLOB_DIR = "blobs"


@dataclass(slots=True)
class _FileOutcome:
    path: str
    chunks: int = 0
    skipped: str | None = None
    parse_error: bool = False


@dataclass(slots=True)
class JobRun:
    """Summary of one :meth:`BackgroundProcessor.process_job` call."""

    job_id: str
    total_files: int = 0
    processed_files: int = 0
    total_chunks: int = 0
    dummy_chunks: int = 0
    download_failures: int = 0
    files: list[_FileOutcome] = field(default_factory=list)


class BackgroundProcessor:
    """Process-wide ingestion worker.

    All collaborators are passed in; the processor owns no globals.  Every
    database interaction opens a short session from *session_factory* and
    commits before the next suspension point.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncSession],
        *,
        jobs: JobStore,
        chunks: ChunkStore,
        files: FileStore,
        workspaces: WorkspaceManager,
        extractor: ArchiveExtractor,
        classifier: LanguageClassifier,
        chunkers: ChunkerRegistry,
        embedder: EmbeddingClient,
        fetcher: BlobFetcher | RoutingBlobFetcher,
        policy: ProcessorPolicy | None = None,
        deadlines: Deadlines | None = None,
        event_bus: EventBus | None = None,
        processor_id: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._jobs = jobs
        self._chunks = chunks
        self._files = files
        self._workspaces = workspaces
        self._extractor = extractor
        self._classifier = classifier
        self._chunkers = chunkers
        self._embedder = embedder
        self._fetcher = fetcher
        self._policy = policy or ProcessorPolicy()
        self._deadlines = deadlines or Deadlines()
        self._event_bus = event_bus or EventBus()
        self.processor_id = processor_id or f"processor-{uuid.uuid4().hex[:12]}"

        self._tasks: dict[str, asyncio.Task[JobRun | None]] = {}
        self._loop_task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def extractor_policy(self) -> ExtractorPolicy:
        return self._extractor.policy

    @property
    def running_jobs(self) -> frozenset[str]:
        return frozenset(self._tasks)

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    # ------------------------------------------------------------------
    # Coordinator
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Sweep stale workspaces and start the polling loop."""
        if self.is_running:
            return
        self._stopping.clear()
        await self._workspaces.sweep_stale(self._policy.stale_claim_timeout)
        self._loop_task = asyncio.create_task(self._run_loop(), name=f"ferry-coordinator-{self.processor_id}")
        logger.info("Processor %s started", self.processor_id)

    async def stop(self) -> None:
        """Stop polling, cancel running jobs, and wait up to the grace period."""
        self._stopping.set()
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        pending: set[asyncio.Task[JobRun | None]] = set()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._policy.grace_period)
            if pending:
                logger.warning("%d job tasks did not stop within the grace period", len(pending))
        if not pending:
            self._stopping.clear()
        logger.info("Processor %s stopped", self.processor_id)

    async def _run_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Coordinator iteration failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._policy.poll_interval)
            except TimeoutError:
                pass

    async def run_once(self, *, wait: bool = False) -> list[str]:
        """Run one poll iteration.  Returns the ids of jobs spawned.

        With *wait*, block until the spawned job tasks finish.
        """
        free = self._policy.max_concurrent_jobs - len(self._tasks)
        if free <= 0:
            return []

        async with self._session_factory() as session:
            candidates = await self._jobs.find_pending(session, limit=min(free, self._policy.find_limit))
            await session.commit()

        spawned: list[str] = []
        spawned_tasks: list[asyncio.Task[JobRun | None]] = []
        for job in candidates:
            if len(self._tasks) >= self._policy.max_concurrent_jobs:
                break
            if job.id in self._tasks:
                continue
            async with self._session_factory() as session:
                claimed = await self._jobs.claim(session, job.id, self.processor_id)
                await session.commit()
            if not claimed:
                logger.debug("Job %s claimed elsewhere; skipping", job.id)
                continue
            await self._emit(EventType.JOB_CLAIMED, job)
            task = asyncio.create_task(self.process_job(job.id), name=f"ferry-job-{job.id}")
            self._tasks[job.id] = task
            task.add_done_callback(lambda _t, jid=job.id: self._tasks.pop(jid, None))
            spawned.append(job.id)
            spawned_tasks.append(task)

        if wait and spawned_tasks:
            await asyncio.gather(*spawned_tasks, return_exceptions=True)
        return spawned

    async def cancel(self, job_id: str) -> bool:
        """Cancel the running task for *job_id* and wait up to the grace period."""
        task = self._tasks.get(job_id)
        if task is None:
            return False
        task.cancel()
        await asyncio.wait([task], timeout=self._policy.grace_period)
        return True

    # ------------------------------------------------------------------
    # Job pipeline
    # ------------------------------------------------------------------

    async def process_job(self, job_id: str) -> JobRun | None:
        """Run the pipeline for a job this processor has claimed.

        Failures are folded into the job record; cancellation deletes any
        chunks the job left behind.  Returns ``None`` when the job did not
        reach ``ready``.
        """
        async with self._session_factory() as session:
            job = await self._jobs.get_job_by_id(session, job_id)
        if job is None:
            return None

        try:
            run = await self._process(job)
        except JobCancelledError as e:
            logger.info("Job %s cancelled: %s", job_id, e)
            await self._cleanup_cancelled(job_id)
            return None
        except asyncio.CancelledError:
            logger.info("Job %s task cancelled", job_id)
            await self._cleanup_cancelled(job_id)
            raise
        except FerryError as e:
            await self._fail(job, e)
            return None
        except Exception as e:
            logger.exception("Job %s failed unexpectedly", job_id)
            await self._fail(job, e)
            return None
        await self._emit(EventType.JOB_READY, job, processed=run.processed_files, total=run.total_files)
        return run

    async def _process(self, job: Job) -> JobRun:
        run = JobRun(job_id=job.id)
        async with self._workspaces.acquire(job.session_id) as workspace:
            source_root = workspace / _SOURCE_DIR
            source_root.mkdir()
            await self._materialize(job, workspace, source_root, run)

            include = self._extractor.policy.include_extensions
            paths = [
                p for p in iter_workspace_files(source_root)
                if posixpath.splitext(p.name)[1].lower() in include
            ]  # fmt: skip
            run.total_files = len(paths)
            async with self._session_factory() as session:
                await self._jobs.set_total_files(session, job.id, self.processor_id, run.total_files)
                await session.commit()

            collected: list[Chunk] = []
            for path in paths:
                await self._checkpoint(job.id)
                rel = path.relative_to(source_root).as_posix()
                outcome, spans, framework, language = await self._chunk_file(path, rel)
                collected.extend(self._to_rows(job, rel, language, framework, spans))
                run.files.append(outcome)
                run.processed_files += 1
                async with self._session_factory() as session:
                    await self._jobs.update_progress(
                        session, job.id, self.processor_id, processed_files=run.processed_files
                    )
                    await session.commit()
                await self._emit(EventType.JOB_PROGRESS, job, processed=run.processed_files, total=run.total_files)

            stats = await self._embedder.embed_chunks(
                collected,
                dimension=job.embedding_dimension,
                before_batch=lambda _i: self._checkpoint(job.id),
            )
            run.dummy_chunks = stats.dummy

            await self._checkpoint(job.id)
            async with self._session_factory() as session:
                await self._chunks.insert(session, collected)
                run.total_chunks = await self._chunks.count_by_job(session, job.id)
                await self._jobs.update_progress(
                    session, job.id, self.processor_id, total_chunks=run.total_chunks
                )
                await self._jobs.complete(
                    session,
                    job.id,
                    self.processor_id,
                    total_chunks=run.total_chunks,
                    embedding_dimension=stats.dimension,
                    dummy_chunks=stats.dummy,
                )
                await session.commit()
        logger.info(
            "Job %s ready: %d files, %d chunks (%d dummy, %d download failures)",
            job.id,
            run.processed_files,
            run.total_chunks,
            run.dummy_chunks,
            run.download_failures,
        )
        return run

    async def _materialize(self, job: Job, workspace: Path, source_root: Path, run: JobRun) -> None:
        """Download the session's stored files and expand archives into *source_root*."""
        async with self._session_factory() as session:
            stored = await self._files.list_for_session(session, job.session_id)
        if not stored:
            return

        blob_dir = workspace / _BLOB_DIR
        blob_dir.mkdir()
        semaphore = asyncio.Semaphore(self._policy.download_concurrency)

        async def download(index: int, record: StoredFile) -> Path | None:
            if record.is_archive:
                dest = blob_dir / f"{index:04d}-{posixpath.basename(record.original_filename) or 'archive'}"
            else:
                rel = normalize_member_path(record.relative_path or record.original_filename)
                dest = source_root / rel
                dest.parent.mkdir(parents=True, exist_ok=True)
            async with semaphore:
                try:
                    await fetch_with_retry(
                        self._fetcher,
                        record.blob_locator,
                        dest,
                        timeout=self._deadlines.download,
                        storage_kind=record.storage_kind,
                    )
                except StorageIOError as e:
                    logger.warning("Skipping %s: %s", record.original_filename, e)
                    return None
            return dest

        results = await asyncio.gather(*(download(i, r) for i, r in enumerate(stored)))
        run.download_failures = sum(1 for r in results if r is None)
        ratio = run.download_failures / len(stored)
        if ratio > self._policy.download_failure_ratio:
            msg = f"{run.download_failures}/{len(stored)} downloads failed"
            raise StorageIOError(msg)

        for record, dest in zip(stored, results, strict=True):
            if dest is None or not record.is_archive:
                continue
            await self._checkpoint(job.id)
            result = await self._extractor.extract_async(dest, source_root)
            logger.info(
                "Extracted %s: %d files (%d skipped)",
                record.original_filename,
                len(result.entries),
                len(result.skipped),
            )
            dest.unlink(missing_ok=True)

    async def _chunk_file(
        self, path: Path, rel: str
    ) -> tuple[_FileOutcome, list[ChunkSpan], str | None, str]:
        """Classify and chunk one file.  Never raises for per-file problems."""
        outcome = _FileOutcome(path=rel)
        data = await asyncio.to_thread(path.read_bytes)
        try:
            classification = self._classifier.classify(rel, data)
        except UnrecognizedError as e:
            outcome.skipped = e.kind.value
            logger.debug("Skipping %s: %s", rel, e)
            return outcome, [], None, ""

        language = classification.language
        try:
            spans = await asyncio.to_thread(self._chunkers.chunk, rel, data, language)
        except UnsupportedLanguageError as e:
            outcome.skipped = e.kind.value
            logger.debug("Skipping %s (%s): %s", rel, language, e)
            return outcome, [], classification.framework, language
        except ChunkParseError as e:
            logger.warning("Parse error in %s at byte %d; using block chunk", rel, e.byte_offset)
            outcome.parse_error = True
            spans = [block_chunk_for(rel, decode_source(data))]
        outcome.chunks = len(spans)
        return outcome, spans, classification.framework, language

    def _to_rows(
        self,
        job: Job,
        rel: str,
        language: str,
        framework: str | None,
        spans: list[ChunkSpan],
    ) -> list[Chunk]:
        file_name = posixpath.basename(rel)
        extension = posixpath.splitext(file_name)[1].lower()
        rows: list[Chunk] = []
        for span in spans:
            meta = span.metadata
            if framework is not None and meta.framework is None:
                meta = dataclasses.replace(meta, framework=framework)
            rows.append(
                Chunk(
                    job_id=job.id,
                    session_id=job.session_id,
                    user_id=job.user_id,
                    file_path=rel,
                    file_name=file_name,
                    file_extension=extension,
                    language=language,
                    chunk_type=span.chunk_type.value,
                    chunk_name=span.name,
                    content=span.content,
                    start_line=span.start_line,
                    end_line=span.end_line,
                    start_column=span.start_column,
                    end_column=span.end_column,
                    start_byte=span.start_byte,
                    end_byte=span.end_byte,
                    chunk_metadata=meta.to_dict(),
                )
            )
        return rows

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _checkpoint(self, job_id: str) -> None:
        """Cancellation point: raise if the job is gone or no longer ours."""
        if self._stopping.is_set():
            msg = f"Processor {self.processor_id} is stopping"
            raise JobCancelledError(msg)
        async with self._session_factory() as session:
            await self._jobs.ensure_held(session, job_id, self.processor_id)

    async def _cleanup_cancelled(self, job_id: str) -> None:
        async with self._session_factory() as session:
            if await self._jobs.get_job_by_id(session, job_id) is None:
                deleted = await self._chunks.delete_by_job(session, job_id)
                await session.commit()
                if deleted:
                    logger.info("Removed %d partial chunks of deleted job %s", deleted, job_id)

    async def _fail(self, job: Job, error: BaseException) -> None:
        async with self._session_factory() as session:
            failed = await self._jobs.fail(session, job.id, error, holder=self.processor_id)
            await session.commit()
        if failed:
            kind = error.kind.value if isinstance(error, FerryError) else "Internal"
            await self._emit(EventType.JOB_FAILED, job, error_kind=kind)

    async def _emit(
        self,
        event_type: EventType,
        job: Job,
        *,
        processed: int | None = None,
        total: int | None = None,
        error_kind: str | None = None,
    ) -> None:
        await self._event_bus.emit(
            JobEvent(
                event_type=event_type,
                job_id=job.id,
                session_id=job.session_id,
                processed_files=processed,
                total_files=total,
                error_kind=error_kind,
            )
        )

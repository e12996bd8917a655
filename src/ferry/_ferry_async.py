"""FerryAsync — primary async class wiring the ingestion and migration pipeline."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ferry.chunking import ChunkerRegistry
from ferry.config import FerryConfig
from ferry.embedding import CredentialPool, EmbeddingClient, openai_provider_factory
from ferry.events import EventBus, EventType, JobEvent
from ferry.ingest import ArchiveExtractor, LanguageClassifier, WorkspaceManager, default_fetcher
from ferry.migration import MigrationAgent, MigrationOptions, MigrationRequest, OpenAIGeneration
from ferry.models.chunks import Chunk
from ferry.models.files import StoredFile
from ferry.models.jobs import Job
from ferry.processor import BackgroundProcessor
from ferry.store import ChunkStore, FileStore, JobStore
from ferry.types import ChunkPage, ChunkView, DeleteJobResult, FileUpload, JobInfo

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from sqlalchemy.ext.asyncio import AsyncEngine

    from ferry.embedding import EmbeddingProvider
    from ferry.ingest import BlobFetcher, RoutingBlobFetcher
    from ferry.migration import GenerationProvider, MigrationResult

logger = logging.getLogger(__name__)

_TABLES = (Job.__table__, StoredFile.__table__, Chunk.__table__)  # type: ignore[attr-defined]


class FerryAsync:
    """Async facade over jobs, chunks, the background processor and migrations.

    Collaborators are constructed here from a :class:`FerryConfig`; any of
    them can be injected instead (tests pass fake providers)::

        ferry = FerryAsync(FerryConfig.from_env())
        await ferry.open()
        await ferry.create_job("session-1", "user-1", archive=FileUpload(...))
        await ferry.process_pending_once()
        page = await ferry.list_chunks("session-1")
    """

    def __init__(
        self,
        config: FerryConfig | None = None,
        *,
        engine: AsyncEngine | None = None,
        embedding_provider_factory: Callable[[str], EmbeddingProvider] | None = None,
        generation_provider: GenerationProvider | None = None,
        fetcher: BlobFetcher | RoutingBlobFetcher | None = None,
        event_bus: EventBus | None = None,
        processor_id: str | None = None,
    ) -> None:
        self._config = config or FerryConfig()
        self._engine = engine
        self._owns_engine = engine is None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._opened = False
        self._closed = False

        credentials = self._config.embedding_credentials
        if not credentials:
            if embedding_provider_factory is None:
                msg = "No embedding credentials configured (set FERRY_EMBEDDING_API_KEYS or OPENAI_API_KEY)"
                raise ValueError(msg)
            credentials = ("default",)
        factory = embedding_provider_factory or openai_provider_factory(
            model=self._config.embedding.model,
            dimensions=self._config.embedding.dimension,
            timeout=self._config.deadlines.embedding,
        )

        self._event_bus = event_bus or EventBus()
        self._jobs = JobStore(stale_claim_timeout=self._config.processor.stale_claim_timeout)
        self._chunks = ChunkStore(use_native_index=self._config.retrieval.use_native_index)
        self._files = FileStore()
        self._workspaces = WorkspaceManager(self._config.workspace_root)
        self._pool = CredentialPool(credentials)
        self._embedder = EmbeddingClient(
            self._pool,
            factory,
            self._config.embedding,
            deadline=self._config.deadlines.embedding,
        )
        self._fetcher = fetcher or default_fetcher()
        self._generator = generation_provider
        self._processor_id = processor_id
        self._processor: BackgroundProcessor | None = None
        self._agent: MigrationAgent | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Create the engine (unless injected) and ensure tables exist."""
        if self._opened:
            return
        if self._engine is None:
            self._engine = create_async_engine(self._config.database_url, echo=False)
        async with self._engine.begin() as conn:
            for table in _TABLES:
                await conn.run_sync(lambda c, t=table: t.create(c, checkfirst=True))
        self._session_factory = async_sessionmaker(
            self._engine, class_=AsyncSession, expire_on_commit=False
        )
        self._processor = BackgroundProcessor(
            self._session_factory,
            jobs=self._jobs,
            chunks=self._chunks,
            files=self._files,
            workspaces=self._workspaces,
            extractor=ArchiveExtractor(self._config.extractor),
            classifier=LanguageClassifier(),
            chunkers=ChunkerRegistry(self._config.chunker),
            embedder=self._embedder,
            fetcher=self._fetcher,
            policy=self._config.processor,
            deadlines=self._config.deadlines,
            event_bus=self._event_bus,
            processor_id=self._processor_id,
        )
        self._opened = True
        logger.info("Ferry opened on %s", self._engine.url)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._processor is not None:
            await self._processor.stop()
        await self._embedder.close()
        close_fetcher = getattr(self._fetcher, "close", None)
        if close_fetcher is not None:
            await close_fetcher()
        close_generator = getattr(self._generator, "close", None)
        if close_generator is not None:
            await close_generator()
        if self._engine is not None and self._owns_engine:
            await self._engine.dispose()

    async def __aenter__(self) -> FerryAsync:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            msg = "FerryAsync is not open; call open() first"
            raise RuntimeError(msg)
        return self._session_factory

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(
        self,
        session_id: str,
        user_id: str,
        *,
        archive: FileUpload | None = None,
        files: Sequence[FileUpload | str] | None = None,
    ) -> JobInfo:
        """Create a ``pending`` job and attach its inputs.

        *files* holds uploads or ids of previously stored files; an
        *archive* and *files* may be given together.
        """
        async with self._sessions()() as session:
            job = await self._jobs.create_job(session, session_id, user_id)
            if archive is not None:
                await self._store_upload(session, user_id, session_id, archive, is_archive=True)
            for item in files or ():
                if isinstance(item, str):
                    await self._files.attach(session, item, session_id)
                else:
                    await self._store_upload(session, user_id, session_id, item, is_archive=None)
            await session.commit()
            info = JobInfo.from_job(job)
        await self._event_bus.emit(JobEvent(EventType.JOB_CREATED, job_id=info.job_id, session_id=session_id))
        return info

    async def _store_upload(
        self,
        session: AsyncSession,
        user_id: str,
        session_id: str | None,
        upload: FileUpload,
        *,
        is_archive: bool | None,
    ) -> StoredFile:
        return await self._files.add_file(
            session,
            user_id=user_id,
            session_id=session_id,
            original_filename=upload.filename,
            blob_locator=upload.locator,
            size_bytes=upload.size_bytes,
            mime_type=upload.mime_type,
            storage_kind=upload.storage_kind,
            is_archive_file=is_archive,
            relative_path=upload.relative_path,
        )

    async def add_file(
        self, user_id: str, upload: FileUpload, *, session_id: str | None = None
    ) -> StoredFile:
        """Register an uploaded blob, optionally linked to a session."""
        async with self._sessions()() as session:
            record = await self._store_upload(session, user_id, session_id, upload, is_archive=None)
            await session.commit()
            return record

    async def get_job(self, session_id: str) -> JobInfo | None:
        async with self._sessions()() as session:
            job = await self._jobs.get_job(session, session_id)
            return JobInfo.from_job(job) if job is not None else None

    async def delete_job(self, session_id: str) -> DeleteJobResult:
        """Delete the job, its chunks and workspace; cancel it if running."""
        async with self._sessions()() as session:
            deleted = await self._jobs.delete_job(session, session_id)
            await session.commit()
        if deleted is None:
            return DeleteJobResult(success=False, message=f"No job for session {session_id}")

        job, chunks_deleted = deleted
        if self._processor is not None:
            await self._processor.cancel(job.id)
        # A task cancelled mid-insert may have persisted rows after the delete.
        async with self._sessions()() as session:
            chunks_deleted += await self._chunks.delete_by_job(session, job.id)
            await session.commit()
        removed = False
        if session_id not in self._workspaces.active:
            removed = await self._workspaces.release(session_id)
        await self._event_bus.emit(JobEvent(EventType.JOB_DELETED, job_id=job.id, session_id=session_id))
        return DeleteJobResult(
            success=True,
            message=f"Deleted job {job.id}",
            job_id=job.id,
            chunks_deleted=chunks_deleted,
            workspace_removed=removed,
        )

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def list_chunks(
        self,
        session_id: str,
        *,
        chunk_type: str | None = None,
        file_path: str | None = None,
        page_limit: int = 50,
        page_offset: int = 0,
    ) -> ChunkPage:
        """A page of the session's chunks, without embeddings."""
        async with self._sessions()() as session:
            job = await self._jobs.get_job(session, session_id)
            if job is None:
                return ChunkPage(chunks=[], total=0, limit=page_limit, offset=page_offset)
            rows = await self._chunks.list_by_job(
                session,
                job.id,
                chunk_type=chunk_type,
                file_path=file_path,
                limit=page_limit,
                offset=page_offset,
            )
            total = await self._chunks.count_by_job(
                session, job.id, chunk_type=chunk_type, file_path=file_path
            )
            return ChunkPage(
                chunks=[ChunkView.from_chunk(c) for c in rows],
                total=total,
                limit=page_limit,
                offset=page_offset,
            )

    async def search_chunks(
        self,
        user_id: str,
        query: str,
        *,
        session_id: str | None = None,
        limit: int = 20,
    ) -> list[ChunkView]:
        """Case-insensitive text search over a user's chunks."""
        async with self._sessions()() as session:
            job_id: str | None = None
            if session_id is not None:
                job = await self._jobs.get_job(session, session_id)
                if job is None:
                    return []
                job_id = job.id
            rows = await self._chunks.text_search(
                session, query, user_id=user_id, job_id=job_id, limit=limit
            )
            return [ChunkView.from_chunk(c) for c in rows]

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------

    def _migration_agent(self) -> MigrationAgent:
        if self._agent is None:
            if self._generator is None:
                credentials = self._config.embedding_credentials
                self._generator = OpenAIGeneration(
                    api_key=credentials[0] if credentials else None,
                    model=self._config.generation_model,
                    timeout=self._config.deadlines.generation,
                )
            self._agent = MigrationAgent(
                self._sessions(),
                jobs=self._jobs,
                chunks=self._chunks,
                embedder=self._embedder,
                generator=self._generator,
                policy=self._config.retrieval,
                deadlines=self._config.deadlines,
            )
        return self._agent

    async def migrate(
        self,
        session_id: str,
        *,
        command: str | None = None,
        from_lang: str | None = None,
        to_lang: str | None = None,
        k: int | None = None,
        threshold: float | None = None,
    ) -> MigrationResult:
        """Migrate the session's most relevant code.  Needs a command or *to_lang*."""
        return await self._migration_agent().migrate(
            session_id,
            MigrationRequest(command=command, from_lang=from_lang, to_lang=to_lang),
            MigrationOptions(k=k, threshold=threshold),
        )

    # ------------------------------------------------------------------
    # Background processing
    # ------------------------------------------------------------------

    def _require_processor(self) -> BackgroundProcessor:
        if self._processor is None:
            msg = "FerryAsync is not open; call open() first"
            raise RuntimeError(msg)
        return self._processor

    async def start(self) -> None:
        """Start the background processor's polling loop."""
        await self._require_processor().start()

    async def stop(self) -> None:
        await self._require_processor().stop()

    async def process_pending_once(self) -> list[str]:
        """Claim and fully process currently pending jobs.  Returns their ids."""
        return await self._require_processor().run_once(wait=True)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> FerryConfig:
        return self._config

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def processor(self) -> BackgroundProcessor:
        return self._require_processor()

    @property
    def credential_pool(self) -> CredentialPool:
        return self._pool

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._sessions()

    @property
    def workspaces(self) -> WorkspaceManager:
        return self._workspaces

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("open" if self._opened else "new")
        return f"FerryAsync(database_url={self._config.database_url!r}, state={state})"

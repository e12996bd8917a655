"""Ferry — synchronous wrapper over :class:`FerryAsync`."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Any

from ferry._ferry_async import FerryAsync

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from ferry.config import FerryConfig
    from ferry.embedding import EmbeddingProvider
    from ferry.events import EventBus
    from ferry.ingest import BlobFetcher, RoutingBlobFetcher
    from ferry.migration import GenerationProvider, MigrationResult
    from ferry.models.files import StoredFile
    from ferry.types import ChunkPage, ChunkView, DeleteJobResult, FileUpload, JobInfo

logger = logging.getLogger(__name__)


class Ferry:
    """Blocking facade for scripts and notebooks.

    Runs a :class:`FerryAsync` on a private event loop in a daemon thread,
    so it also works when the caller already has a running loop.

    Usage::

        with Ferry(FerryConfig.from_env()) as ferry:
            ferry.create_job("s1", "u1", archive=FileUpload("repo.zip", "/tmp/repo.zip"))
            ferry.process_pending_once()
            result = ferry.migrate("s1", to_lang="go")
    """

    def __init__(
        self,
        config: FerryConfig | None = None,
        *,
        embedding_provider_factory: Callable[[str], EmbeddingProvider] | None = None,
        generation_provider: GenerationProvider | None = None,
        fetcher: BlobFetcher | RoutingBlobFetcher | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._closed = False

        # Private event loop in a daemon thread
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, daemon=True)
        self._thread.start()

        try:
            self._async: FerryAsync = self._run(
                self._async_init(
                    config,
                    embedding_provider_factory=embedding_provider_factory,
                    generation_provider=generation_provider,
                    fetcher=fetcher,
                    event_bus=event_bus,
                )
            )
        except BaseException:
            self._stop_loop()
            raise

    async def _async_init(self, config: FerryConfig | None, **kwargs: Any) -> FerryAsync:
        # Built on the private loop so asyncio primitives bind to it.
        ferry = FerryAsync(config, **kwargs)
        await ferry.open()
        return ferry

    def _run(self, coro: Any) -> Any:
        """Submit *coro* to the private loop and block for the result."""
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()

    def _stop_loop(self) -> None:
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Stop the processor, release resources and join the loop thread."""
        if self._closed:
            return
        self._closed = True
        try:
            self._run(self._async.close())
        finally:
            self._stop_loop()

    def __enter__(self) -> Ferry:
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()

    @property
    def async_ferry(self) -> FerryAsync:
        return self._async

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(
        self,
        session_id: str,
        user_id: str,
        *,
        archive: FileUpload | None = None,
        files: Sequence[FileUpload | str] | None = None,
    ) -> JobInfo:
        return self._run(self._async.create_job(session_id, user_id, archive=archive, files=files))

    def add_file(self, user_id: str, upload: FileUpload, *, session_id: str | None = None) -> StoredFile:
        return self._run(self._async.add_file(user_id, upload, session_id=session_id))

    def get_job(self, session_id: str) -> JobInfo | None:
        return self._run(self._async.get_job(session_id))

    def delete_job(self, session_id: str) -> DeleteJobResult:
        return self._run(self._async.delete_job(session_id))

    # ------------------------------------------------------------------
    # Chunks and migration
    # ------------------------------------------------------------------

    def list_chunks(
        self,
        session_id: str,
        *,
        chunk_type: str | None = None,
        file_path: str | None = None,
        page_limit: int = 50,
        page_offset: int = 0,
    ) -> ChunkPage:
        return self._run(
            self._async.list_chunks(
                session_id,
                chunk_type=chunk_type,
                file_path=file_path,
                page_limit=page_limit,
                page_offset=page_offset,
            )
        )

    def search_chunks(
        self, user_id: str, query: str, *, session_id: str | None = None, limit: int = 20
    ) -> list[ChunkView]:
        return self._run(self._async.search_chunks(user_id, query, session_id=session_id, limit=limit))

    def migrate(
        self,
        session_id: str,
        *,
        command: str | None = None,
        from_lang: str | None = None,
        to_lang: str | None = None,
        k: int | None = None,
        threshold: float | None = None,
    ) -> MigrationResult:
        return self._run(
            self._async.migrate(
                session_id,
                command=command,
                from_lang=from_lang,
                to_lang=to_lang,
                k=k,
                threshold=threshold,
            )
        )

    # ------------------------------------------------------------------
    # Background processing
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start polling for pending jobs on the private loop."""
        self._run(self._async.start())

    def stop(self) -> None:
        self._run(self._async.stop())

    def process_pending_once(self) -> list[str]:
        """Claim and process currently pending jobs, blocking until done."""
        return self._run(self._async.process_pending_once())

"""MigrationAgent — retrieval-augmented code migration over a ready job."""

from __future__ import annotations

import asyncio
import logging
import posixpath
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

import openai

from ferry.config import Deadlines, RetrievalPolicy
from ferry.exceptions import (
    DeadlineExceededError,
    EmbeddingUnavailableError,
    GenerationFailedError,
    InvalidTransitionError,
    JobNotFoundError,
)
from ferry.ingest.classifier import normalize_language
from ferry.migration.parsing import parse_response
from ferry.migration.prompts import ContextSnippet, build_prompt, query_descriptor
from ferry.migration.results import MigrationFileResult, MigrationResult
from ferry.migration.validation import summarize, validate_file
from ferry.models.chunks import ChunkType
from ferry.models.jobs import JobStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from ferry.embedding import EmbeddingClient
    from ferry.migration.providers import GenerationProvider
    from ferry.models.chunks import Chunk
    from ferry.store import ChunkStore, JobStore

logger = logging.getLogger(__name__)

# Chunk kinds whose names count as a file's top-level structure.
_DECLARATION_TYPES = frozenset(
    {
        ChunkType.FUNCTION.value, ChunkType.METHOD.value, ChunkType.CLASS.value,
        ChunkType.INTERFACE.value, ChunkType.TYPE.value, ChunkType.ENUM.value,
        ChunkType.ARROW_FUNCTION.value, ChunkType.GENERATOR.value,
        ChunkType.ASYNC_FUNCTION.value,
    }
)  # fmt: skip


@dataclass(frozen=True, slots=True)
class MigrationRequest:
    command: str | None = None
    from_lang: str | None = None
    to_lang: str | None = None


@dataclass(frozen=True, slots=True)
class MigrationOptions:
    k: int | None = None
    threshold: float | None = None


class MigrationAgent:
    """Retrieves a job's most relevant chunks and asks a model to migrate them."""

    def __init__(
        self,
        session_factory: Callable[..., AsyncSession],
        *,
        jobs: JobStore,
        chunks: ChunkStore,
        embedder: EmbeddingClient,
        generator: GenerationProvider,
        policy: RetrievalPolicy | None = None,
        deadlines: Deadlines | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._jobs = jobs
        self._chunks = chunks
        self._embedder = embedder
        self._generator = generator
        self._policy = policy or RetrievalPolicy()
        self._deadlines = deadlines or Deadlines()

    async def migrate(
        self,
        session_id: str,
        request: MigrationRequest,
        options: MigrationOptions | None = None,
    ) -> MigrationResult:
        """Run one migration for the session's ``ready`` job.

        Raises :class:`JobNotFoundError`, :class:`InvalidTransitionError`
        when the job is not ready, :class:`EmbeddingUnavailableError` when
        the query cannot be embedded, and :class:`GenerationFailedError`
        when the model fails or declines.
        """
        started = time.monotonic()
        options = options or MigrationOptions()
        k = options.k if options.k is not None else self._policy.default_k
        threshold = options.threshold if options.threshold is not None else self._policy.default_threshold
        command = query_descriptor(request.command, request.from_lang, request.to_lang)
        target = normalize_language(request.to_lang) if request.to_lang else None

        async with self._session_factory() as session:
            job = await self._jobs.get_job(session, session_id)
            if job is None:
                msg = f"No job for session {session_id}"
                raise JobNotFoundError(msg)
            if job.status != JobStatus.READY.value:
                msg = f"Job {job.id} is {job.status}, not ready"
                raise InvalidTransitionError(msg)

            query_vec = await self._embedder.embed_query(command)
            if job.embedding_dimension and len(query_vec) != job.embedding_dimension:
                msg = (
                    f"Query embedding has {len(query_vec)} dimensions; "
                    f"job {job.id} is pinned to {job.embedding_dimension}"
                )
                raise EmbeddingUnavailableError(msg)

            hits = await self._chunks.vector_search(session, job.id, query_vec, k=k, threshold=threshold)
            context = await self._enrich(session, job.id, [h.chunk for h in hits])

        result = MigrationResult(
            migration_id=str(uuid.uuid4()),
            job_id=job.id,
            command=command,
            target=target,
        )
        result.stats.retrieved_chunks = len(hits)
        result.stats.context_chunks = sum(len(v) for v in context.values())
        result.stats.contributing_files = len(context)
        if not hits:
            logger.info("Migration for job %s retrieved no chunks above %.2f", job.id, threshold)
            result.stats.duration_seconds = time.monotonic() - started
            return result

        snippets = [_snippet(c) for chunks in context.values() for c in chunks]
        prompt = build_prompt(command, target or "", snippets)
        result.stats.prompt_chars = len(prompt)
        reply = await self._generate(prompt)

        default_original = sorted(context)[0]
        parsed = parse_response(reply, target=target or "", default_original=default_original)
        produced = [f.migrated_filename for f in parsed.files]

        for migrated in parsed.files:
            source_path = _match_source(migrated.original_filename, context)
            names = [
                c.chunk_name for c in context.get(source_path, []) if c.chunk_type in _DECLARATION_TYPES
            ] if source_path else []  # fmt: skip
            language = target or (context[source_path][0].language if source_path else "")
            validation = validate_file(
                migrated.content,
                language=language,
                filename=migrated.migrated_filename,
                original_names=names,
                produced=produced,
            )
            result.results.append(
                MigrationFileResult(
                    original_filename=migrated.original_filename,
                    migrated_filename=migrated.migrated_filename,
                    content=migrated.content,
                    validation=validation,
                )
            )

        result.validation = summarize([r.validation for r in result.results])
        result.summary = parsed.summary
        result.changes = parsed.changes
        result.stats.produced_files = len(result.results)
        result.stats.duration_seconds = time.monotonic() - started
        logger.info(
            "Migration %s for job %s: %d chunks, %d files, success rate %.2f",
            result.migration_id,
            job.id,
            len(hits),
            len(result.results),
            result.validation.success_rate,
        )
        return result

    async def _enrich(
        self, session: AsyncSession, job_id: str, hits: list[Chunk]
    ) -> dict[str, list[Chunk]]:
        """Hits plus up to ``neighbor_limit`` adjacent chunks per hit, keyed by file."""
        by_file: dict[str, list[Chunk]] = {}
        selected: dict[str, set[str]] = {}
        for hit in hits:
            by_file.setdefault(hit.file_path, [])
            selected.setdefault(hit.file_path, set()).add(hit.id)

        limit = self._policy.neighbor_limit
        for file_path in sorted(by_file):
            siblings = await self._chunks.list_by_file(session, job_id, file_path)
            position = {c.id: i for i, c in enumerate(siblings)}
            chosen = selected[file_path]
            for hit_id in list(chosen):
                idx = position.get(hit_id)
                if idx is None:
                    continue
                added = 0
                for offset in range(1, len(siblings)):
                    if added >= limit:
                        break
                    for j in (idx - offset, idx + offset):
                        if 0 <= j < len(siblings) and added < limit and siblings[j].id not in chosen:
                            chosen.add(siblings[j].id)
                            added += 1
            by_file[file_path] = [c for c in siblings if c.id in chosen]
        return by_file

    async def _generate(self, prompt: str) -> str:
        try:
            return await asyncio.wait_for(
                self._generator.generate(prompt), timeout=self._deadlines.generation
            )
        except TimeoutError as e:
            msg = f"Generation exceeded {self._deadlines.generation}s"
            raise DeadlineExceededError(msg) from e
        except openai.APIError as e:
            msg = f"Generation model failed: {e}"
            raise GenerationFailedError(msg) from e


def _snippet(chunk: Chunk) -> ContextSnippet:
    meta = chunk.chunk_metadata or {}
    return ContextSnippet(
        file_path=chunk.file_path,
        chunk_type=chunk.chunk_type,
        chunk_name=chunk.chunk_name,
        language=chunk.language,
        content=chunk.content,
        start_byte=chunk.start_byte,
        dependencies=tuple(meta.get("dependencies", ())),
    )


def _match_source(original: str, context: dict[str, list[Chunk]]) -> str | None:
    if original in context:
        return original
    base = posixpath.basename(original)
    for path in sorted(context):
        if posixpath.basename(path) == base:
            return path
    return None

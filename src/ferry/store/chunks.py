"""ChunkStore — chunk persistence and retrieval."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, or_
from sqlalchemy.orm import defer
from sqlmodel import select

from ferry.models.chunks import Chunk
from ferry.store.dialect import insert_ignore
from ferry.store.vectors import UsearchVectorIndex, rank

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy import ColumnElement
    from sqlalchemy.ext.asyncio import AsyncSession

    from ferry.store.vectors import ScoredChunk

logger = logging.getLogger(__name__)

_SPAN_KEY = ["job_id", "file_path", "start_byte", "end_byte"]


class ChunkStore:
    """Stateless helpers for chunk CRUD and search.

    Never creates, commits or closes sessions; callers own the
    session lifecycle.  Listing and text search defer the embedding
    column; callers must not touch ``Chunk.embedding`` on those rows.
    """

    def __init__(self, *, use_native_index: bool = False) -> None:
        self._use_native_index = use_native_index

    async def insert(self, session: AsyncSession, chunks: Sequence[Chunk]) -> int:
        """Insert *chunks*, ignoring spans already stored.  Returns count inserted."""
        if not chunks:
            return 0
        rows = [chunk.model_dump() for chunk in chunks]
        inserted = await insert_ignore(session, Chunk, rows, _SPAN_KEY)
        logger.debug("Inserted %d/%d chunks", inserted, len(rows))
        return inserted

    @staticmethod
    def _filtered(
        job_id: str, chunk_type: str | None, file_path: str | None
    ) -> list[ColumnElement[bool]]:
        conditions: list[ColumnElement[bool]] = [Chunk.job_id == job_id]
        if chunk_type:
            conditions.append(Chunk.chunk_type == chunk_type)
        if file_path:
            conditions.append(Chunk.file_path.contains(file_path, autoescape=True))  # type: ignore[attr-defined]
        return conditions

    async def list_by_job(
        self,
        session: AsyncSession,
        job_id: str,
        *,
        chunk_type: str | None = None,
        file_path: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Chunk]:
        """Page of a job's chunks ordered by file path, then source position."""
        stmt = (
            select(Chunk)
            .where(*self._filtered(job_id, chunk_type, file_path))
            .options(defer(Chunk.embedding))  # type: ignore[arg-type]
            .order_by(Chunk.file_path, Chunk.start_byte, Chunk.end_byte.desc())  # type: ignore[attr-defined]
            .offset(max(offset, 0))
            .limit(max(limit, 0))
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_job(
        self,
        session: AsyncSession,
        job_id: str,
        *,
        chunk_type: str | None = None,
        file_path: str | None = None,
    ) -> int:
        stmt = select(func.count()).select_from(Chunk).where(
            *self._filtered(job_id, chunk_type, file_path)
        )
        result = await session.execute(stmt)
        return int(result.scalar_one())

    async def list_by_file(
        self, session: AsyncSession, job_id: str, file_path: str
    ) -> list[Chunk]:
        """All chunks of one file in source order, embeddings deferred."""
        stmt = (
            select(Chunk)
            .where(Chunk.job_id == job_id, Chunk.file_path == file_path)
            .options(defer(Chunk.embedding))  # type: ignore[arg-type]
            .order_by(Chunk.start_byte, Chunk.end_byte.desc())  # type: ignore[attr-defined]
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def get(self, session: AsyncSession, chunk_id: str) -> Chunk | None:
        return await session.get(Chunk, chunk_id)

    async def text_search(
        self,
        session: AsyncSession,
        query: str,
        *,
        user_id: str,
        job_id: str | None = None,
        limit: int = 20,
    ) -> list[Chunk]:
        """Case-insensitive substring match on content, chunk name and file name."""
        if not query:
            return []
        pattern = query.lower()
        conditions = [
            Chunk.user_id == user_id,
            or_(
                func.lower(Chunk.content).contains(pattern, autoescape=True),
                func.lower(Chunk.chunk_name).contains(pattern, autoescape=True),
                func.lower(Chunk.file_name).contains(pattern, autoescape=True),
            ),
        ]
        if job_id is not None:
            conditions.append(Chunk.job_id == job_id)
        stmt = (
            select(Chunk)
            .where(*conditions)
            .options(defer(Chunk.embedding))  # type: ignore[arg-type]
            .order_by(Chunk.file_path, Chunk.start_byte)  # type: ignore[arg-type]
            .limit(max(limit, 0))
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def vector_search(
        self,
        session: AsyncSession,
        job_id: str,
        query_vec: Sequence[float],
        *,
        k: int = 20,
        threshold: float = 0.7,
    ) -> list[ScoredChunk]:
        """Up to *k* chunks of *job_id* with cosine >= *threshold*, best first."""
        result = await session.execute(select(Chunk).where(Chunk.job_id == job_id))
        candidates = list(result.scalars().all())
        if not candidates:
            return []
        if self._use_native_index:
            index = UsearchVectorIndex(candidates, dimension=len(query_vec))
            return index.search(query_vec, k=k, threshold=threshold)
        return rank(candidates, query_vec, k=k, threshold=threshold)

    async def delete_by_job(self, session: AsyncSession, job_id: str) -> int:
        """Delete every chunk of *job_id*.  Returns count deleted."""
        result = await session.execute(delete(Chunk).where(Chunk.job_id == job_id))  # type: ignore[arg-type]
        count = int(result.rowcount or 0)  # type: ignore[attr-defined]
        if count:
            logger.debug("Deleted %d chunks of job %s", count, job_id)
        return count

"""FileStore — upload records for sessions."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete
from sqlmodel import select

from ferry.ingest.archive import is_archive
from ferry.models.files import StorageKind, StoredFile

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class FileStore:
    """Stateless helpers over ``ferry_files``.  Callers own the session."""

    async def add_file(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        original_filename: str,
        blob_locator: str,
        session_id: str | None = None,
        size_bytes: int = 0,
        mime_type: str = "application/octet-stream",
        storage_kind: StorageKind | str = StorageKind.LOCAL,
        is_archive_file: bool | None = None,
        relative_path: str | None = None,
    ) -> StoredFile:
        """Record an uploaded blob.  Archive detection defaults from name and mime type."""
        archive = (
            is_archive(original_filename, mime_type) if is_archive_file is None else is_archive_file
        )
        suffix = original_filename.rsplit(".", 1)[-1].lower() if "." in original_filename else ""
        record = StoredFile(
            user_id=user_id,
            session_id=session_id,
            original_filename=original_filename,
            size_bytes=size_bytes,
            mime_type=mime_type,
            format=suffix,
            blob_locator=blob_locator,
            storage_kind=StorageKind(storage_kind).value,
            is_archive=archive,
            archive_name=original_filename if archive else None,
            relative_path=relative_path,
        )
        session.add(record)
        await session.flush()
        logger.debug("Stored file %s (%s) for session %s", record.id, original_filename, session_id)
        return record

    async def attach(self, session: AsyncSession, file_id: str, session_id: str) -> StoredFile:
        record = await session.get(StoredFile, file_id)
        if record is None:
            msg = f"Stored file not found: {file_id}"
            raise LookupError(msg)
        record.session_id = session_id
        session.add(record)
        await session.flush()
        return record

    async def list_for_session(self, session: AsyncSession, session_id: str) -> list[StoredFile]:
        """Files of a session, archives first, then by original filename."""
        result = await session.execute(
            select(StoredFile)
            .where(StoredFile.session_id == session_id)
            .order_by(StoredFile.is_archive.desc(), StoredFile.original_filename)  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def delete_file(self, session: AsyncSession, file_id: str) -> bool:
        result = await session.execute(delete(StoredFile).where(StoredFile.id == file_id))  # type: ignore[arg-type]
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def sweep_orphans(
        self, session: AsyncSession, *, older_than: float, now: datetime | None = None
    ) -> int:
        """Delete records no longer linked to a session and older than *older_than* seconds."""
        cutoff = (now or datetime.now(UTC)) - timedelta(seconds=older_than)
        result = await session.execute(
            delete(StoredFile).where(
                StoredFile.session_id.is_(None),  # type: ignore[union-attr]
                StoredFile.created_at < cutoff,  # type: ignore[operator]
            )
        )
        count = int(result.rowcount or 0)  # type: ignore[attr-defined]
        if count:
            logger.info("Swept %d orphaned file records", count)
        return count

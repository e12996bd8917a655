"""StoredFile model — uploaded artifacts owned by users.

A stored file is either an archive (expanded by the extractor) or a single
source file downloaded into the job workspace under its original name.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


class StorageKind(str, Enum):
    REMOTE_OBJECT = "remote-object"
    LOCAL = "local"


class StoredFile(SQLModel, table=True):
    """Uploaded blob record — ``ferry_files``."""

    __tablename__ = "ferry_files"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    session_id: str | None = Field(default=None, index=True)
    original_filename: str
    size_bytes: int = Field(default=0)
    mime_type: str = Field(default="application/octet-stream")
    format: str = Field(default="")
    blob_locator: str
    storage_kind: str = Field(default=StorageKind.LOCAL.value)
    is_archive: bool = Field(default=False)
    archive_name: str | None = Field(default=None)
    relative_path: str | None = Field(default=None)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )

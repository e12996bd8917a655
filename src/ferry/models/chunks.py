"""Chunk model and its declared metadata record.

Provides ``ChunkType`` (closed enumeration of chunk kinds), ``ChunkMetadata``
(the per-chunk metadata schema, stored as JSON) and ``Chunk`` (the table).
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Index, UniqueConstraint
from sqlmodel import Field, SQLModel


class ChunkType(str, Enum):
    FUNCTION = "function"
    METHOD = "method"
    CLASS = "class"
    INTERFACE = "interface"
    TYPE = "type"
    ENUM = "enum"
    VARIABLE = "variable"
    IMPORT = "import"
    EXPORT = "export"
    TRY_CATCH = "try-catch"
    CONDITIONAL = "conditional"
    LOOP = "loop"
    SWITCH = "switch"
    ARROW_FUNCTION = "arrow-function"
    GENERATOR = "generator"
    ASYNC_FUNCTION = "async-function"
    BLOCK = "block"


@dataclass(frozen=True, slots=True)
class Parameter:
    name: str
    type: str | None = None


@dataclass(frozen=True, slots=True)
class ChunkMetadata:
    """Syntax-derived facts about a chunk.

    ``from_dict`` rejects unknown keys so loosely shaped metadata never
    reaches storage.
    """

    complexity: int = 1
    is_async: bool = False
    is_generator: bool = False
    is_static: bool = False
    visibility: str = "public"
    parameters: tuple[Parameter, ...] = ()
    dependencies: tuple[str, ...] = ()
    exports: tuple[str, ...] = ()
    comments: tuple[str, ...] = ()
    return_type: str | None = None
    framework: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["parameters"] = [dict(p) for p in data["parameters"]]
        for key in ("dependencies", "exports", "comments"):
            data[key] = list(data[key])
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChunkMetadata:
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            msg = f"Unknown chunk metadata fields: {sorted(unknown)}"
            raise ValueError(msg)
        kwargs = dict(data)
        if "parameters" in kwargs:
            kwargs["parameters"] = tuple(
                p if isinstance(p, Parameter) else Parameter(**p) for p in kwargs["parameters"]
            )
        for key in ("dependencies", "exports", "comments"):
            if key in kwargs:
                kwargs[key] = tuple(kwargs[key])
        return cls(**kwargs)


class Chunk(SQLModel, table=True):
    """Persisted chunk with its embedding — ``ferry_chunks``.

    ``(job_id, file_path, start_byte, end_byte)`` is unique so repeated
    inserts of the same span collapse to one row.
    """

    __tablename__ = "ferry_chunks"
    __table_args__ = (
        UniqueConstraint("job_id", "file_path", "start_byte", "end_byte", name="uq_chunk_span"),
        Index("ix_chunks_job_type", "job_id", "chunk_type"),
        Index("ix_chunks_user_created", "user_id", "created_at"),
        Index("ix_chunks_text", "chunk_name", "file_name"),
    )

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    job_id: str = Field(index=True)
    session_id: str = Field(default="")
    user_id: str = Field(default="")
    file_path: str
    file_name: str = Field(default="")
    file_extension: str = Field(default="")
    language: str = Field(default="")
    chunk_type: str = Field(default=ChunkType.BLOCK.value)
    chunk_name: str = Field(default="")
    content: str = Field(default="")
    start_line: int = Field(default=1)
    end_line: int = Field(default=1)
    start_column: int = Field(default=0)
    end_column: int = Field(default=0)
    start_byte: int = Field(default=0)
    end_byte: int = Field(default=0)
    chunk_metadata: dict[str, Any] = Field(
        default_factory=dict,
        sa_type=JSON,  # type: ignore[invalid-argument-type]
    )
    embedding: list[float] | None = Field(
        default=None,
        sa_type=JSON,  # type: ignore[invalid-argument-type]
    )
    embedding_model: str | None = Field(default=None)
    embedding_generated_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    is_dummy: bool = Field(default=False)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )

    @property
    def metadata_record(self) -> ChunkMetadata:
        return ChunkMetadata.from_dict(self.chunk_metadata or {})

    @property
    def complexity(self) -> int:
        return int((self.chunk_metadata or {}).get("complexity", 1))

"""Chunker protocol and shared span helpers."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from ferry.exceptions import UnsupportedLanguageError
from ferry.ingest.classifier import is_binary
from ferry.models.chunks import ChunkMetadata, ChunkType

MAX_COMPLEXITY = 10


@dataclass(frozen=True, slots=True)
class ChunkSpan:
    """A contiguous source region produced by a chunker.

    ``content`` is exactly ``source_bytes[start_byte:end_byte]`` decoded as
    UTF-8.  Lines are 1-based; columns are 0-based byte columns.
    """

    chunk_type: ChunkType
    name: str
    content: str
    start_line: int
    end_line: int
    start_column: int
    end_column: int
    start_byte: int
    end_byte: int
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)

    @property
    def byte_range(self) -> tuple[int, int]:
        return (self.start_byte, self.end_byte)


@runtime_checkable
class Chunker(Protocol):
    """Protocol for language-specific chunkers.

    Chunkers are pure: they receive a path, decoded source, the language id
    and the syntax node kinds enabled for it, and return spans in any
    order.  Syntax errors raise :class:`~ferry.exceptions.ChunkParseError`.
    """

    @property
    def languages(self) -> frozenset[str]:
        """Language ids this chunker handles (e.g. ``{"python"}``)."""
        ...

    def chunk(
        self, path: str, source: str, language: str, kinds: frozenset[str]
    ) -> list[ChunkSpan]:
        """Split *source* of the file at *path* into spans."""
        ...


def decode_source(content: str | bytes) -> str:
    """Return *content* as text, rejecting binary or non-UTF-8 data."""
    if is_binary(content):
        msg = "Content is binary or not valid UTF-8"
        raise UnsupportedLanguageError(msg)
    if isinstance(content, bytes):
        return content.decode("utf-8")
    return content


def synth_name(chunk_type: ChunkType, line: int, column: int) -> str:
    """Name for chunks without an identifier, e.g. ``"import@3:0"``."""
    return f"{chunk_type.value}@{line}:{column}"


def cap_complexity(branches: int) -> int:
    return min(1 + branches, MAX_COMPLEXITY)


def visibility_from_name(name: str) -> str:
    """Underscore-convention visibility used by dynamic languages."""
    if name.startswith("__") and not name.endswith("__"):
        return "private"
    if name.startswith("#"):
        return "private"
    if name.startswith("_"):
        return "protected"
    return "public"


def block_chunk_for(path: str, source: str) -> ChunkSpan:
    """Whole-file ``block`` chunk, substituted when a file cannot be parsed."""
    data = source.encode("utf-8")
    lines = source.splitlines() or [""]
    last = lines[-1]
    return ChunkSpan(
        chunk_type=ChunkType.BLOCK,
        name=posixpath.basename(path),
        content=source,
        start_line=1,
        end_line=max(len(lines), 1),
        start_column=0,
        end_column=len(last.encode("utf-8")),
        start_byte=0,
        end_byte=len(data),
    )


def finalize(spans: list[ChunkSpan]) -> list[ChunkSpan]:
    """Order spans depth-first in source order and drop duplicate byte ranges.

    Sorting by ``(start_byte, -end_byte)`` puts an enclosing chunk before
    the chunks nested inside it.
    """
    seen: set[tuple[int, int]] = set()
    ordered: list[ChunkSpan] = []
    for span in sorted(spans, key=lambda s: (s.start_byte, -s.end_byte, s.chunk_type.value)):
        if span.byte_range in seen:
            continue
        seen.add(span.byte_range)
        ordered.append(span)
    return ordered


def line_offsets(data: bytes) -> list[int]:
    """Byte offset of the start of each line (index 0 is line 1)."""
    offsets = [0]
    for i, b in enumerate(data):
        if b == 0x0A:
            offsets.append(i + 1)
    return offsets


def strip_comment_markers(text: str) -> str:
    """Strip ``#``, ``//`` and ``/* */`` markers from a comment's text."""
    text = text.strip()
    if text.startswith("/*"):
        text = text[2:]
        if text.endswith("*/"):
            text = text[:-2]
        lines = [ln.strip().lstrip("*").strip() for ln in text.splitlines()]
        return "\n".join(ln for ln in lines if ln)
    for marker in ("//", "#"):
        if text.startswith(marker):
            return text[len(marker) :].strip()
    return text

"""Semantic chunkers — split source files into ordered, typed spans."""

from __future__ import annotations

import logging

from ferry.chunking._base import (
    ChunkSpan,
    Chunker,
    block_chunk_for,
    decode_source,
    finalize,
)
from ferry.chunking.go import GoChunker
from ferry.chunking.java import JavaChunker
from ferry.chunking.javascript import JavaScriptChunker
from ferry.chunking.python import PythonChunker
from ferry.chunking.text import TextChunker
from ferry.config import ChunkerPolicy

logger = logging.getLogger(__name__)


class ChunkerRegistry:
    """Maps language ids to chunkers and applies the chunking policy.

    :meth:`chunk` is deterministic: the same input always yields the same
    ordered spans with identical byte ranges.
    """

    def __init__(self, policy: ChunkerPolicy | None = None) -> None:
        self._policy = policy or ChunkerPolicy()
        self._by_language: dict[str, Chunker] = {}
        self._fallback = TextChunker(self._policy.text_window_lines)
        self._register_builtins()

    def _register_builtins(self) -> None:
        self.register(PythonChunker())
        self.register(JavaScriptChunker())
        self.register(GoChunker())
        self.register(JavaChunker())

    def register(self, chunker: Chunker) -> None:
        """Register *chunker* for each of its languages."""
        for language in chunker.languages:
            self._by_language[language] = chunker

    def get(self, language: str) -> Chunker | None:
        return self._by_language.get(language)

    def supported_languages(self) -> frozenset[str]:
        return frozenset(self._by_language)

    def chunk(self, path: str, content: str | bytes, language: str) -> list[ChunkSpan]:
        """Chunk *content* of *path* as *language*.

        Languages without a registered chunker go through
        :class:`TextChunker`.  Raises :class:`UnsupportedLanguageError`
        when the content is not text, and
        :class:`~ferry.exceptions.ChunkParseError` on syntax errors.  A
        parseable file without any chunkable node yields one ``block``
        chunk; an empty file yields none.
        """
        source = decode_source(content)
        if not source.strip():
            return []

        chunker = self.get(language)
        if chunker is None:
            logger.debug("No grammar for %s (%s); chunking as text", path, language)
            chunker = self._fallback
        kinds = self._policy.chunkable_types_by_language.get(language, frozenset())
        spans = finalize(chunker.chunk(path, source, language, kinds))
        if not spans:
            return [block_chunk_for(path, source)]
        logger.debug("Chunked %s (%s): %d chunks", path, language, len(spans))
        return spans


__all__ = [
    "ChunkSpan",
    "Chunker",
    "ChunkerRegistry",
    "GoChunker",
    "JavaChunker",
    "JavaScriptChunker",
    "PythonChunker",
    "TextChunker",
    "block_chunk_for",
    "decode_source",
]

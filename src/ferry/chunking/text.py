"""TextChunker — grammar-free chunking by markup sections and line windows."""

from __future__ import annotations

import bisect
import posixpath
import re

from ferry.chunking._base import ChunkSpan, line_offsets, synth_name
from ferry.models.chunks import ChunkType

DEFAULT_WINDOW_LINES = 500

# Top-level single-file-component sections; nested tags are indented.
_SECTION_RE = re.compile(rb"^<(template|script|style)\b[^>]*>.*?^</\1\s*>", re.MULTILINE | re.DOTALL)
_SECTIONED_LANGUAGES = frozenset({"vue"})


class TextChunker:
    """Chunks any decodable text without a parser.

    Vue single-file components split into their ``template``, ``script``
    and ``style`` sections.  Other files short enough to fit in one window
    become a single whole-file chunk; longer files are cut into windows of
    at most *window_lines* lines, breaking at a blank line where one falls
    in the second half of the window.  Every span is a ``block`` chunk.
    """

    def __init__(self, window_lines: int = DEFAULT_WINDOW_LINES) -> None:
        if window_lines < 1:
            msg = f"window_lines must be positive, got {window_lines}"
            raise ValueError(msg)
        self._window_lines = window_lines

    @property
    def languages(self) -> frozenset[str]:
        return frozenset()

    def chunk(
        self, path: str, source: str, language: str, kinds: frozenset[str]
    ) -> list[ChunkSpan]:
        data = source.encode("utf-8")
        offsets = line_offsets(data)
        if language in _SECTIONED_LANGUAGES:
            spans = [
                _span(data, offsets, m.start(), m.end(), m.group(1).decode("ascii"))
                for m in _SECTION_RE.finditer(data)
            ]
            if spans:
                return spans
        return self._windows(path, data, offsets)

    def _windows(self, path: str, data: bytes, offsets: list[int]) -> list[ChunkSpan]:
        lines = data.split(b"\n")
        if data.endswith(b"\n"):
            lines.pop()
        if len(lines) <= self._window_lines:
            end = len(data.rstrip(b"\n"))
            return [_span(data, offsets, 0, end, posixpath.basename(path))]

        spans: list[ChunkSpan] = []
        first = 0
        while first < len(lines):
            last = min(first + self._window_lines, len(lines))
            following = last
            if last < len(lines):
                for i in range(last - 1, first + self._window_lines // 2, -1):
                    if not lines[i].strip():
                        last, following = i, i + 1
                        break
            start = offsets[first]
            end = offsets[last - 1] + len(lines[last - 1])
            if data[start:end].strip():
                spans.append(_span(data, offsets, start, end, None))
            first = following
        return spans


def _span(data: bytes, offsets: list[int], start: int, end: int, name: str | None) -> ChunkSpan:
    start_line = bisect.bisect_right(offsets, start)
    end_line = bisect.bisect_right(offsets, max(end - 1, start))
    start_column = start - offsets[start_line - 1]
    return ChunkSpan(
        chunk_type=ChunkType.BLOCK,
        name=name or synth_name(ChunkType.BLOCK, start_line, start_column),
        content=data[start:end].decode("utf-8"),
        start_line=start_line,
        end_line=end_line,
        start_column=start_column,
        end_column=end - offsets[end_line - 1],
        start_byte=start,
        end_byte=end,
    )

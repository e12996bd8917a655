"""Tests for the chunker registry and the per-language chunkers."""

from __future__ import annotations

import pytest

from ferry.chunking import ChunkerRegistry, block_chunk_for, decode_source
from ferry.chunking._base import finalize
from ferry.config import ChunkerPolicy
from ferry.exceptions import ChunkParseError, UnsupportedLanguageError
from ferry.models.chunks import ChunkType

PYTHON_SOURCE = '''\
import os
from .models import User

LIMIT = 10


class Repo:
    """Stores users."""

    def add(self, user: User, *, force=False) -> None:
        # persist
        if force or user.ok:
            self.items.append(user)

    @staticmethod
    def empty():
        return []


async def load(path):
    return await read(path)


def walk(items):
    for item in items:
        yield item


def _helper():
    pass


if __name__ == "__main__":
    main()
'''

JS_SOURCE = """\
import express from 'express';

const PORT = 3000;

export function start(app) {
  if (!app) {
    return null;
  }
  return app.listen(PORT);
}

export const handler = async (req, res) => res.json({});

class Server {
  constructor(port) {
    this.port = port;
  }
  static create() {
    return new Server(PORT);
  }
}

for (const x of [1, 2]) {
  console.log(x);
}
"""

TS_SOURCE = """\
export interface User {
  id: number;
  name: string;
}

export type Id = string | number;

enum Color { Red, Green }

function greet(user: User): string {
  return `hi ${user.name}`;
}
"""

GO_SOURCE = """\
package main

import (
\t"fmt"
\t"os"
)

const Version = "1.0"

type Server struct {
\tPort int
}

type Handler interface {
\tServe() error
}

func (s *Server) Start() error {
\tif s.Port == 0 {
\t\treturn fmt.Errorf("no port")
\t}
\treturn nil
}

func main() {
\tos.Exit(0)
}
"""

JAVA_SOURCE = """\
package com.example;

import java.util.List;

public class Service {
    private static final int LIMIT = 5;

    public List<String> names(int count) {
        if (count > LIMIT) {
            return List.of();
        }
        return List.of("a");
    }

    interface Listener {
        void onEvent(String name);
    }
}
"""


def _by_name(spans):
    return {s.name: s for s in spans}


@pytest.fixture
def registry() -> ChunkerRegistry:
    return ChunkerRegistry()


# ==================================================================
# Registry
# ==================================================================


class TestRegistry:
    def test_supported_languages(self, registry: ChunkerRegistry):
        assert registry.supported_languages() >= {"python", "javascript", "typescript", "go", "java"}

    def test_language_without_grammar_chunked_as_text(self, registry: ChunkerRegistry):
        assert "rust" not in registry.supported_languages()
        spans = registry.chunk("main.rs", "fn main() {}\n", "rust")
        assert [(s.chunk_type, s.name, s.content) for s in spans] == [
            (ChunkType.BLOCK, "main.rs", "fn main() {}")
        ]

    def test_binary_without_grammar_rejected(self, registry: ChunkerRegistry):
        with pytest.raises(UnsupportedLanguageError):
            registry.chunk("lib.rb", b"\x00\x01\x02", "ruby")

    def test_binary_rejected(self, registry: ChunkerRegistry):
        with pytest.raises(UnsupportedLanguageError):
            registry.chunk("x.py", b"\x00\x01\x02", "python")

    def test_empty_file_has_no_chunks(self, registry: ChunkerRegistry):
        assert registry.chunk("empty.py", "   \n", "python") == []

    def test_no_chunkable_nodes_gives_block(self, registry: ChunkerRegistry):
        spans = registry.chunk("expr.py", "print('hi')\n", "python")
        assert len(spans) == 1
        assert spans[0].chunk_type is ChunkType.BLOCK
        assert spans[0].name == "expr.py"

    def test_policy_restricts_kinds(self):
        policy = ChunkerPolicy(chunkable_types_by_language={"python": frozenset({"ClassDef"})})
        spans = ChunkerRegistry(policy).chunk("m.py", PYTHON_SOURCE, "python")
        assert {s.chunk_type for s in spans} == {ChunkType.CLASS}

    def test_deterministic(self, registry: ChunkerRegistry):
        first = registry.chunk("m.py", PYTHON_SOURCE, "python")
        second = registry.chunk("m.py", PYTHON_SOURCE, "python")
        assert first == second

    @pytest.mark.parametrize(
        ("path", "source", "language"),
        [
            ("m.py", PYTHON_SOURCE, "python"),
            ("app.js", JS_SOURCE, "javascript"),
            ("types.ts", TS_SOURCE, "typescript"),
            ("main.go", GO_SOURCE, "go"),
            ("Service.java", JAVA_SOURCE, "java"),
        ],
    )
    def test_span_invariants(self, registry: ChunkerRegistry, path: str, source: str, language: str):
        data = source.encode("utf-8")
        spans = registry.chunk(path, source, language)
        assert spans
        keys = [(s.start_byte, -s.end_byte) for s in spans]
        assert keys == sorted(keys)
        assert len({s.byte_range for s in spans}) == len(spans)
        for span in spans:
            assert data[span.start_byte : span.end_byte].decode("utf-8") == span.content
            assert 1 <= span.start_line <= span.end_line
            assert 1 <= span.metadata.complexity <= 10
            assert span.name


class TestHelpers:
    def test_block_chunk_for(self):
        span = block_chunk_for("pkg/broken.py", "def x(:\n  pass\n")
        assert span.chunk_type is ChunkType.BLOCK
        assert span.name == "broken.py"
        assert span.start_byte == 0
        assert span.end_byte == len(b"def x(:\n  pass\n")
        assert span.end_line == 2

    def test_decode_source(self):
        assert decode_source(b"x = 1") == "x = 1"
        with pytest.raises(UnsupportedLanguageError):
            decode_source(b"\xff\xfe")

    def test_finalize_dedupes_and_orders(self, registry: ChunkerRegistry):
        spans = registry.chunk("m.py", PYTHON_SOURCE, "python")
        assert finalize(list(reversed(spans)) + spans[:2]) == spans


# ==================================================================
# Python
# ==================================================================


class TestPythonChunker:
    def test_kinds_and_names(self, registry: ChunkerRegistry):
        spans = registry.chunk("m.py", PYTHON_SOURCE, "python")
        named = _by_name(spans)
        assert named["os"].chunk_type is ChunkType.IMPORT
        assert named[".models"].metadata.dependencies == (".models",)
        assert named["LIMIT"].chunk_type is ChunkType.VARIABLE
        assert named["Repo"].chunk_type is ChunkType.CLASS
        assert named["add"].chunk_type is ChunkType.METHOD
        assert named["load"].chunk_type is ChunkType.ASYNC_FUNCTION
        assert named["walk"].chunk_type is ChunkType.GENERATOR
        assert named["_helper"].chunk_type is ChunkType.FUNCTION
        conditionals = [s for s in spans if s.chunk_type is ChunkType.CONDITIONAL]
        assert len(conditionals) == 1
        assert conditionals[0].name.startswith("conditional@")

    def test_class_precedes_its_methods(self, registry: ChunkerRegistry):
        names = [s.name for s in registry.chunk("m.py", PYTHON_SOURCE, "python")]
        assert names.index("Repo") < names.index("add") < names.index("empty")

    def test_metadata(self, registry: ChunkerRegistry):
        named = _by_name(registry.chunk("m.py", PYTHON_SOURCE, "python"))
        add = named["add"].metadata
        assert [p.name for p in add.parameters] == ["self", "user", "force"]
        assert add.parameters[1].type == "User"
        assert add.parameters[2].type == "bool"
        assert add.return_type == "None"
        assert add.complexity == 3
        assert "persist" in add.comments
        assert named["empty"].metadata.is_static
        assert named["Repo"].metadata.comments[0] == "Stores users."
        assert named["Repo"].metadata.exports == ("Repo",)
        assert named["_helper"].metadata.visibility == "protected"
        assert named["_helper"].metadata.exports == ()
        assert named["load"].metadata.is_async
        assert named["walk"].metadata.is_generator

    def test_decorator_included_in_span(self, registry: ChunkerRegistry):
        empty = _by_name(registry.chunk("m.py", PYTHON_SOURCE, "python"))["empty"]
        assert empty.content.lstrip().startswith("@staticmethod")

    def test_enum_and_protocol_bases(self, registry: ChunkerRegistry):
        source = "class Color(Enum):\n    RED = 1\n\n\nclass Reader(Protocol):\n    def read(self): ...\n"
        named = _by_name(registry.chunk("e.py", source, "python"))
        assert named["Color"].chunk_type is ChunkType.ENUM
        assert named["Reader"].chunk_type is ChunkType.INTERFACE

    def test_syntax_error(self, registry: ChunkerRegistry):
        with pytest.raises(ChunkParseError) as exc_info:
            registry.chunk("bad.py", "x = 1\ndef broken(:\n    pass\n", "python")
        assert exc_info.value.byte_offset >= len("x = 1\n")


# ==================================================================
# JavaScript / TypeScript
# ==================================================================


class TestJavaScriptChunker:
    def test_kinds(self, registry: ChunkerRegistry):
        named = _by_name(registry.chunk("app.js", JS_SOURCE, "javascript"))
        assert named["express"].chunk_type is ChunkType.IMPORT
        assert named["PORT"].chunk_type is ChunkType.VARIABLE
        assert named["start"].chunk_type is ChunkType.FUNCTION
        assert named["start"].metadata.exports == ("start",)
        assert named["start"].content.startswith("export function start")
        assert named["handler"].chunk_type is ChunkType.ARROW_FUNCTION
        assert named["handler"].metadata.is_async
        assert named["Server"].chunk_type is ChunkType.CLASS
        assert named["constructor"].chunk_type is ChunkType.METHOD
        assert named["create"].metadata.is_static

    def test_top_level_loop(self, registry: ChunkerRegistry):
        spans = registry.chunk("app.js", JS_SOURCE, "javascript")
        assert any(s.chunk_type is ChunkType.LOOP for s in spans)

    def test_complexity_counts_branches(self, registry: ChunkerRegistry):
        start = _by_name(registry.chunk("app.js", JS_SOURCE, "javascript"))["start"]
        assert start.metadata.complexity == 2

    def test_typescript_declarations(self, registry: ChunkerRegistry):
        named = _by_name(registry.chunk("types.ts", TS_SOURCE, "typescript"))
        assert named["User"].chunk_type is ChunkType.INTERFACE
        assert named["Id"].chunk_type is ChunkType.TYPE
        assert named["Color"].chunk_type is ChunkType.ENUM
        greet = named["greet"]
        assert greet.chunk_type is ChunkType.FUNCTION
        assert greet.metadata.parameters[0].name == "user"

    def test_syntax_error(self, registry: ChunkerRegistry):
        with pytest.raises(ChunkParseError):
            registry.chunk("bad.js", "function (( {\n", "javascript")


# ==================================================================
# Go / Java
# ==================================================================


class TestGoChunker:
    def test_kinds(self, registry: ChunkerRegistry):
        named = _by_name(registry.chunk("main.go", GO_SOURCE, "go"))
        assert named["Version"].chunk_type is ChunkType.VARIABLE
        assert named["Server"].chunk_type is ChunkType.CLASS
        assert named["Handler"].chunk_type is ChunkType.INTERFACE
        assert named["Server.Start"].chunk_type is ChunkType.METHOD
        assert named["main"].chunk_type is ChunkType.FUNCTION
        imports = [s for s in named.values() if s.chunk_type is ChunkType.IMPORT]
        assert imports[0].metadata.dependencies == ("fmt", "os")

    def test_visibility_by_case(self, registry: ChunkerRegistry):
        named = _by_name(registry.chunk("main.go", GO_SOURCE, "go"))
        assert named["Server"].metadata.visibility == "public"
        assert named["main"].metadata.visibility == "private"


class TestJavaChunker:
    def test_kinds(self, registry: ChunkerRegistry):
        spans = registry.chunk("Service.java", JAVA_SOURCE, "java")
        named = _by_name(spans)
        assert named["java.util.List"].chunk_type is ChunkType.IMPORT
        assert named["Service"].chunk_type is ChunkType.CLASS
        assert named["Service"].metadata.exports == ("Service",)
        assert named["LIMIT"].chunk_type is ChunkType.VARIABLE
        assert named["LIMIT"].metadata.is_static
        assert named["LIMIT"].metadata.visibility == "private"
        assert named["names"].chunk_type is ChunkType.METHOD
        assert named["names"].metadata.parameters[0].name == "count"
        assert named["Listener"].chunk_type is ChunkType.INTERFACE
        assert named["Listener"].metadata.visibility == "package"


# ==================================================================
# Text fallback
# ==================================================================

VUE_SOURCE = """\
<template>
  <div>
    <template v-if="ok">{{ msg }}</template>
  </div>
</template>

<script>
export default { data() { return { msg: "hi" } } }
</script>

<style scoped>
div { color: red; }
</style>
"""


class TestTextChunker:
    def test_vue_sections(self, registry: ChunkerRegistry):
        data = VUE_SOURCE.encode("utf-8")
        spans = registry.chunk("App.vue", VUE_SOURCE, "vue")
        assert [s.name for s in spans] == ["template", "script", "style"]
        assert all(s.chunk_type is ChunkType.BLOCK for s in spans)
        template, script, style = spans
        assert template.content.endswith("  </div>\n</template>")
        assert (template.start_line, template.end_line) == (1, 5)
        assert (script.start_line, script.end_line) == (7, 9)
        assert style.content.startswith("<style scoped>")
        for span in spans:
            assert data[span.start_byte : span.end_byte].decode("utf-8") == span.content

    def test_vue_without_sections_is_one_block(self, registry: ChunkerRegistry):
        spans = registry.chunk("Empty.vue", "just text\n", "vue")
        assert [s.name for s in spans] == ["Empty.vue"]

    def test_long_file_split_into_windows(self):
        source = "".join(f"puts {i}\n" for i in range(10))
        registry = ChunkerRegistry(ChunkerPolicy(text_window_lines=4))
        spans = registry.chunk("long.rb", source, "ruby")
        assert [(s.start_line, s.end_line) for s in spans] == [(1, 4), (5, 8), (9, 10)]
        assert [s.name for s in spans] == ["block@1:0", "block@5:0", "block@9:0"]
        assert spans[0].content == "puts 0\nputs 1\nputs 2\nputs 3"
        assert spans[-1].end_byte == len(source) - 1

    def test_window_breaks_at_blank_line(self):
        source = "a = 1\nb = 2\nc = 3\n\nd = 4\ne = 5\nf = 6\n"
        registry = ChunkerRegistry(ChunkerPolicy(text_window_lines=5))
        spans = registry.chunk("vars.rb", source, "ruby")
        assert [(s.start_line, s.end_line) for s in spans] == [(1, 3), (5, 7)]
        assert spans[0].content == "a = 1\nb = 2\nc = 3"
        assert spans[1].content == "d = 4\ne = 5\nf = 6"

    def test_windows_cover_multibyte_text(self):
        source = "é\n" * 6
        data = source.encode("utf-8")
        spans = ChunkerRegistry(ChunkerPolicy(text_window_lines=2)).chunk("notes.txt", source, "text")
        assert len(spans) == 3
        for span in spans:
            assert data[span.start_byte : span.end_byte].decode("utf-8") == span.content == "é\né"
            assert span.end_column == 2

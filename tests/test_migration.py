"""Tests for migration prompts, reply parsing, validation and the agent."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING

import openai
import pytest
from helpers import FAKE_DIM, FakeGenerator, fake_factory, hash_vector, make_chunk

from ferry.config import Deadlines, EmbeddingPolicy, RetrievalPolicy
from ferry.embedding import CredentialPool, EmbeddingClient, descriptor_for
from ferry.exceptions import (
    DeadlineExceededError,
    EmbeddingUnavailableError,
    GenerationFailedError,
    InvalidTransitionError,
    JobNotFoundError,
)
from ferry.migration import (
    ContextSnippet,
    MigrationAgent,
    MigrationOptions,
    MigrationRequest,
    brackets_balanced,
    build_prompt,
    display_name,
    migrated_name,
    parse_response,
    query_descriptor,
    structure_preserved,
    summarize,
    syntax_valid,
    validate_file,
)
from ferry.migration.prompts import render_context
from ferry.migration.validation import imports_resolve, local_imports
from ferry.store import ChunkStore, JobStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from ferry.models.chunks import Chunk


# ==================================================================
# Prompts
# ==================================================================


class TestQueryDescriptor:
    def test_command_wins(self):
        assert query_descriptor("  port to rust  ", "python", "go") == "port to rust"

    def test_from_and_to(self):
        assert query_descriptor(None, "python", "golang") == "Convert the following code from Python to Go."

    def test_to_only(self):
        assert query_descriptor("", None, "ts") == "Convert the following code to TypeScript."

    def test_needs_something(self):
        with pytest.raises(ValueError, match="target language"):
            query_descriptor(None, "python", None)

    def test_display_name_passthrough(self):
        assert display_name("Elixir") == "Elixir"


class TestBuildPrompt:
    def _snippets(self) -> list[ContextSnippet]:
        return [
            ContextSnippet("src/b.py", "function", "run", "python", "def run(): ...", 40),
            ContextSnippet("src/a.py", "function", "late", "python", "def late(): ...", 90, ("json",)),
            ContextSnippet("src/a.py", "import", "os", "python", "import os", 0, ("os",)),
        ]

    def test_context_grouped_by_file_in_source_order(self):
        text = render_context(self._snippets())
        assert text.index("File: src/a.py") < text.index("File: src/b.py")
        assert text.index("import os") < text.index("def late")
        assert "Dependencies: json, os" in text
        assert "Type: function (late)" in text

    def test_prompt_is_stable(self):
        first = build_prompt("Convert to Go", "go", self._snippets())
        second = build_prompt("Convert to Go", "go", list(reversed(self._snippets())))
        assert first == second
        assert "USER COMMAND: Convert to Go" in first
        assert "TARGET: Go" in first
        assert '"migratedFilename"' in first

    def test_prompt_without_target(self):
        assert "TARGET: the requested target" in build_prompt("Tidy up", "", [])


# ==================================================================
# Reply parsing
# ==================================================================


class TestParseResponse:
    def test_fenced_json_files(self):
        reply = "Here you go:\n```json\n" + json.dumps(
            {
                "summary": "Ported",
                "changes": ["renamed"],
                "files": [{"filename": "src/app.py", "migratedFilename": "src/app.go", "content": "package main"}],
            }
        ) + "\n```"
        parsed = parse_response(reply, target="go", default_original="src/app.py")
        assert [(f.original_filename, f.migrated_filename) for f in parsed.files] == [("src/app.py", "src/app.go")]
        assert parsed.summary == "Ported"
        assert parsed.changes == ["renamed"]

    def test_migrated_filename_defaulted(self):
        reply = json.dumps({"files": [{"filename": "lib/util.js", "content": "def util(): pass"}]})
        parsed = parse_response(reply, target="python", default_original="x")
        assert parsed.files[0].migrated_filename == "lib/util.py"

    def test_migrated_code_only(self):
        parsed = parse_response(
            json.dumps({"migratedCode": "fn main() {}"}), target="rust", default_original="main.go"
        )
        assert parsed.files[0].original_filename == "main.go"
        assert parsed.files[0].migrated_filename == "main.rs"

    def test_nested_fenced_json(self):
        inner = "```json\n" + json.dumps({"files": [{"filename": "a.py", "content": "package a"}]}) + "\n```"
        parsed = parse_response(json.dumps({"migratedCode": inner}), target="go", default_original="a.py")
        assert parsed.files[0].content == "package a"
        assert parsed.files[0].migrated_filename == "a.go"

    def test_code_block_fallback(self):
        reply = "Sure!\n```go\npackage main\n\nfunc main() {}\n```\nDone."
        parsed = parse_response(reply, target="go", default_original="main.py")
        assert parsed.files[0].content == "package main\n\nfunc main() {}"

    def test_skips_incomplete_file_entries(self):
        reply = json.dumps({"files": [{"filename": "a.py"}, {"content": "x"}, "junk"], "migratedCode": "x = 1"})
        parsed = parse_response(reply, target="python", default_original="a.js")
        assert [f.migrated_filename for f in parsed.files] == ["a.py"]

    def test_declined(self):
        reply = json.dumps({"error": "Unable to migrate", "reason": "not enough context"})
        with pytest.raises(GenerationFailedError, match="not enough context"):
            parse_response(reply, target="go", default_original="a.py")

    @pytest.mark.parametrize("reply", ["", "   ", "I cannot help with that."])
    def test_unusable(self, reply: str):
        with pytest.raises(GenerationFailedError):
            parse_response(reply, target="go", default_original="a.py")

    def test_migrated_name(self):
        assert migrated_name("src/app.py", "go") == "src/app.go"
        assert migrated_name("src/app.py", "klingon") == "src/app.py"
        assert migrated_name("Makefile", "") == "Makefile"


# ==================================================================
# Validation
# ==================================================================


class TestValidation:
    def test_brackets(self):
        assert brackets_balanced("f(a[1], {b: 2})")
        assert not brackets_balanced("f(a[1)]")
        assert brackets_balanced('s = "(" // )\n/* ] */ x()')
        assert brackets_balanced("x = '('  # )", hash_comments=True)
        assert not brackets_balanced("/* never closed")

    def test_syntax_valid(self):
        assert syntax_valid("def f():\n    return 1\n", "python")
        assert not syntax_valid("def f(:\n", "python")
        assert syntax_valid("package main\n\nfunc main() {}\n", "go")
        assert not syntax_valid("func main() {}\n", "go")
        assert syntax_valid("const a = () => { return [1]; };", "javascript")
        assert not syntax_valid("   ", "javascript")

    def test_local_imports(self):
        source = "import x from './util';\nimport React from 'react';\nconst y = require('../lib/y');\n"
        assert local_imports(source, "typescript") == ["./util", "../lib/y"]
        assert local_imports("from .models import User\nimport os\n", "python") == [".models"]

    def test_imports_resolve(self):
        ts = "import { add } from './util';\n"
        assert imports_resolve(ts, "typescript", "src/app.ts", ["src/app.ts", "src/util.ts"])
        assert not imports_resolve(ts, "typescript", "src/app.ts", ["src/app.ts"])
        py = "from .models import User\n"
        assert imports_resolve(py, "python", "pkg/app.py", ["pkg/app.py", "pkg/models.py"])
        assert not imports_resolve(py, "python", "pkg/app.py", ["pkg/app.py"])
        assert imports_resolve("import os\n", "python", "a.py", [])

    def test_structure_preserved(self):
        names = ["load", "Repo.save", "conditional@3:4"]
        assert structure_preserved(names, "func Load() {}\nfunc (r *Repo) Save() {}") == 1.0
        assert structure_preserved(names, "func Load() {}") == pytest.approx(0.5)
        assert structure_preserved([], "anything") == 1.0

    def test_validate_and_summarize(self):
        good = validate_file(
            "package main\nfunc Load() {}\n",
            language="go",
            filename="a.go",
            original_names=["load"],
            produced=["a.go"],
        )
        bad = validate_file("func (", language="go", filename="b.go", original_names=["x"], produced=["b.go"])
        assert good.success
        assert not bad.success
        summary = summarize([good, bad])
        assert summary.success_rate == pytest.approx(0.5)
        assert summary.syntax_valid_rate == pytest.approx(0.5)
        assert summarize([]).success_rate == 0.0


# ==================================================================
# MigrationAgent
# ==================================================================


_FAST = EmbeddingPolicy(inter_delay=0, backoff_base=0, backoff_max=0)

GO_REPLY = json.dumps(
    {
        "summary": "Ported the loader to Go",
        "changes": ["functions became exported"],
        "files": [
            {
                "filename": "src/app.py",
                "migratedFilename": "src/app.go",
                "content": "package app\n\nfunc Load(path string) string { return path }\n\nfunc Save() {}\n",
            }
        ],
    }
)


def _embedded(chunk: Chunk) -> Chunk:
    chunk.embedding = hash_vector(descriptor_for(chunk))
    return chunk


async def _ready_job(
    session_factory: async_sessionmaker[AsyncSession],
    chunks: list[Chunk],
    *,
    session_id: str = "s1",
    dimension: int = FAKE_DIM,
) -> str:
    jobs = JobStore()
    async with session_factory() as session:
        job = await jobs.create_job(session, session_id, "user-1")
        await jobs.claim(session, job.id, "proc")
        for chunk in chunks:
            chunk.job_id = job.id
        await ChunkStore().insert(session, chunks)
        await jobs.complete(session, job.id, "proc", total_chunks=len(chunks), embedding_dimension=dimension)
        await session.commit()
        return job.id


def _agent(
    session_factory: async_sessionmaker[AsyncSession],
    generator: FakeGenerator,
    *,
    deadlines: Deadlines | None = None,
    policy: RetrievalPolicy | None = None,
) -> MigrationAgent:
    return MigrationAgent(
        session_factory,
        jobs=JobStore(),
        chunks=ChunkStore(),
        embedder=EmbeddingClient(CredentialPool(["k1"]), fake_factory(), _FAST),
        generator=generator,
        policy=policy,
        deadlines=deadlines,
    )


def _source_chunks() -> list[Chunk]:
    return [
        _embedded(make_chunk(start_byte=0, end_byte=9, chunk_type="import", chunk_name="os", content="import os")),
        _embedded(make_chunk(start_byte=11, end_byte=60, chunk_name="load", content="def load(path): ...")),
        _embedded(make_chunk(start_byte=62, end_byte=99, chunk_name="save", content="def save(): ...")),
    ]


class TestMigrationAgent:
    async def test_missing_job(self, session_factory: async_sessionmaker[AsyncSession]):
        agent = _agent(session_factory, FakeGenerator(GO_REPLY))
        with pytest.raises(JobNotFoundError):
            await agent.migrate("nope", MigrationRequest(to_lang="go"))

    async def test_job_not_ready(self, session_factory: async_sessionmaker[AsyncSession]):
        async with session_factory() as session:
            await JobStore().create_job(session, "s1", "user-1")
            await session.commit()
        agent = _agent(session_factory, FakeGenerator(GO_REPLY))
        with pytest.raises(InvalidTransitionError, match="not ready"):
            await agent.migrate("s1", MigrationRequest(to_lang="go"))

    async def test_migrates_retrieved_context(self, session_factory: async_sessionmaker[AsyncSession]):
        job_id = await _ready_job(session_factory, _source_chunks())
        generator = FakeGenerator(GO_REPLY)
        agent = _agent(session_factory, generator)

        result = await agent.migrate(
            "s1",
            MigrationRequest(from_lang="python", to_lang="golang"),
            MigrationOptions(k=5, threshold=0.0),
        )

        assert result.job_id == job_id
        assert result.target == "go"
        assert result.command == "Convert the following code from Python to Go."
        assert result.stats.retrieved_chunks == 3
        assert result.stats.contributing_files == 1
        assert result.stats.produced_files == 1
        assert result.summary == "Ported the loader to Go"
        assert result.changes == ["functions became exported"]

        migrated = result.results[0]
        assert migrated.migrated_filename == "src/app.go"
        assert migrated.validation.syntax_valid
        assert migrated.validation.structure_preserved == 1.0
        assert migrated.validation.success
        assert result.validation.success_rate == 1.0

        prompt = generator.prompts[0]
        assert "USER COMMAND: Convert the following code from Python to Go." in prompt
        assert "File: src/app.py" in prompt
        assert "def load(path): ..." in prompt
        assert result.stats.prompt_chars == len(prompt)

    async def test_no_hits_skips_generation(self, session_factory: async_sessionmaker[AsyncSession]):
        await _ready_job(session_factory, _source_chunks())
        generator = FakeGenerator(GO_REPLY)
        agent = _agent(session_factory, generator)

        result = await agent.migrate("s1", MigrationRequest(command="port it"), MigrationOptions(threshold=1.0))

        assert result.results == []
        assert result.stats.retrieved_chunks == 0
        assert generator.prompts == []

    async def test_neighbors_added_around_hits(self, session_factory: async_sessionmaker[AsyncSession]):
        chunks = [
            _embedded(make_chunk(start_byte=i * 10, end_byte=i * 10 + 5, chunk_name=f"fn{i}", content=f"def fn{i}(): ..."))
            for i in range(6)
        ]
        command = descriptor_for(chunks[2])
        await _ready_job(session_factory, chunks)
        generator = FakeGenerator(GO_REPLY)
        agent = _agent(session_factory, generator, policy=RetrievalPolicy(neighbor_limit=3))

        result = await agent.migrate("s1", MigrationRequest(command=command), MigrationOptions(k=1, threshold=0.0))

        assert result.stats.retrieved_chunks == 1
        assert result.stats.context_chunks == 4
        prompt = generator.prompts[0]
        for name in ("fn0", "fn1", "fn2", "fn3"):
            assert f"({name})" in prompt
        assert "(fn4)" not in prompt
        assert "(fn5)" not in prompt

    async def test_dimension_mismatch(self, session_factory: async_sessionmaker[AsyncSession]):
        await _ready_job(session_factory, _source_chunks(), dimension=FAKE_DIM * 2)
        agent = _agent(session_factory, FakeGenerator(GO_REPLY))
        with pytest.raises(EmbeddingUnavailableError, match="pinned"):
            await agent.migrate("s1", MigrationRequest(to_lang="go"), MigrationOptions(threshold=0.0))

    async def test_declined_reply(self, session_factory: async_sessionmaker[AsyncSession]):
        await _ready_job(session_factory, _source_chunks())
        reply = json.dumps({"error": "Unable to migrate", "reason": "ambiguous"})
        agent = _agent(session_factory, FakeGenerator(reply))
        with pytest.raises(GenerationFailedError):
            await agent.migrate("s1", MigrationRequest(to_lang="go"), MigrationOptions(threshold=0.0))

    async def test_generation_deadline(self, session_factory: async_sessionmaker[AsyncSession]):
        class SlowGenerator(FakeGenerator):
            async def generate(self, prompt: str) -> str:
                await asyncio.sleep(1)
                return await super().generate(prompt)

        await _ready_job(session_factory, _source_chunks())
        agent = _agent(session_factory, SlowGenerator(GO_REPLY), deadlines=Deadlines(generation=0.01))
        with pytest.raises(DeadlineExceededError):
            await agent.migrate("s1", MigrationRequest(to_lang="go"), MigrationOptions(threshold=0.0))

    async def test_api_error_is_generation_failure(self, session_factory: async_sessionmaker[AsyncSession]):
        class BrokenGenerator(FakeGenerator):
            async def generate(self, prompt: str) -> str:
                raise openai.APIError("server exploded", request=None, body=None)  # type: ignore[arg-type]

        await _ready_job(session_factory, _source_chunks())
        agent = _agent(session_factory, BrokenGenerator())
        with pytest.raises(GenerationFailedError, match="server exploded"):
            await agent.migrate("s1", MigrationRequest(to_lang="go"), MigrationOptions(threshold=0.0))

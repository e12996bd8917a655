"""Tests for BackgroundProcessor — the ingestion pipeline end to end."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest
from helpers import FAKE_DIM, AlwaysFailing, FakeEmbedding, fake_factory, make_zip
from sqlalchemy import update

from ferry.chunking import ChunkerRegistry
from ferry.config import EmbeddingPolicy, ExtractorPolicy, ProcessorPolicy
from ferry.embedding import CredentialPool, EmbeddingClient
from ferry.events import EventBus, EventType, JobEvent
from ferry.exceptions import ErrorKind, QuotaExceededError
from ferry.ingest import (
    ArchiveExtractor,
    LanguageClassifier,
    LocalBlobFetcher,
    RoutingBlobFetcher,
    WorkspaceManager,
)
from ferry.models.jobs import Job, JobStatus
from ferry.processor import BackgroundProcessor
from ferry.store import ChunkStore, FileStore, JobStore

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

_FAST_EMBEDDING = EmbeddingPolicy(inter_delay=0, backoff_base=0, backoff_max=0)
_FAST_PROCESSOR = ProcessorPolicy(poll_interval=0.05, grace_period=2.0)

APP_PY = """\
import os


def load(path):
    return open(path).read()


def save(path, data):
    if not data:
        return None
    with open(path, "w") as fh:
        fh.write(data)
"""

UTIL_JS = """\
export function add(a, b) {
  return a + b;
}
"""

MAIN_GO = """\
package main

func main() {
}
"""


class Harness:
    """A processor wired to the test database, local blobs and fake embeddings."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tmp_path: Path,
        *,
        provider_factory: Callable[[str], FakeEmbedding] | None = None,
        embedding: EmbeddingPolicy = _FAST_EMBEDDING,
        extractor: ExtractorPolicy | None = None,
        policy: ProcessorPolicy = _FAST_PROCESSOR,
        processor_id: str = "proc-test",
    ) -> None:
        self.session_factory = session_factory
        self.blob_dir = tmp_path / "blobs"
        self.blob_dir.mkdir(exist_ok=True)
        self.workspace_root = tmp_path / "workspaces"
        self.jobs = JobStore(stale_claim_timeout=60)
        self.chunks = ChunkStore()
        self.files = FileStore()
        self.events: list[JobEvent] = []
        bus = EventBus()
        for event_type in EventType:
            bus.register(event_type, self.events.append)
        embedder = EmbeddingClient(
            CredentialPool(["k1"]),
            provider_factory or fake_factory(),
            embedding,
            deadline=5.0,
        )
        self.processor = BackgroundProcessor(
            session_factory,
            jobs=self.jobs,
            chunks=self.chunks,
            files=self.files,
            workspaces=WorkspaceManager(self.workspace_root),
            extractor=ArchiveExtractor(extractor),
            classifier=LanguageClassifier(),
            chunkers=ChunkerRegistry(),
            embedder=embedder,
            fetcher=RoutingBlobFetcher({"local": LocalBlobFetcher()}),
            policy=policy,
            event_bus=bus,
            processor_id=processor_id,
        )

    def blob(self, name: str, data: str | bytes) -> str:
        path = self.blob_dir / name
        path.write_bytes(data.encode() if isinstance(data, str) else data)
        return str(path)

    async def submit(self, session_id: str, uploads: dict[str, str | None]) -> str:
        """Create a pending job with one stored file per ``filename -> locator``."""
        async with self.session_factory() as session:
            job = await self.jobs.create_job(session, session_id, "user-1")
            for filename, locator in uploads.items():
                await self.files.add_file(
                    session,
                    user_id="user-1",
                    session_id=session_id,
                    original_filename=filename,
                    blob_locator=locator or str(self.blob_dir / f"missing-{filename}"),
                )
            await session.commit()
            return job.id

    async def job(self, job_id: str) -> Job:
        async with self.session_factory() as session:
            job = await self.jobs.get_job_by_id(session, job_id)
        assert job is not None
        return job

    async def stored_chunks(self, job_id: str):
        async with self.session_factory() as session:
            return await self.chunks.list_by_job(session, job_id, limit=1000)

    def event_types(self, job_id: str) -> list[EventType]:
        return [e.event_type for e in self.events if e.job_id == job_id]


@pytest.fixture
def harness(session_factory: async_sessionmaker[AsyncSession], tmp_path: Path) -> Harness:
    return Harness(session_factory, tmp_path)


# ==================================================================
# Successful ingestion
# ==================================================================


class TestIngestion:
    async def test_archive_job_becomes_ready(self, harness: Harness):
        locator = harness.blob(
            "repo.zip",
            make_zip(
                {
                    "repo/app.py": APP_PY,
                    "repo/util.js": UTIL_JS,
                    "repo/README.md": "# readme\n",
                    "repo/node_modules/dep/index.js": "module.exports = 1;\n",
                }
            ),
        )
        job_id = await harness.submit("s1", {"repo.zip": locator})

        spawned = await harness.processor.run_once(wait=True)

        assert spawned == [job_id]
        job = await harness.job(job_id)
        assert job.status == JobStatus.READY.value
        assert job.total_files == 3
        assert job.processed_files == 3
        assert job.embedding_dimension == FAKE_DIM
        assert job.dummy_chunks == 0
        assert job.error_kind is None

        rows = await harness.stored_chunks(job_id)
        assert job.total_chunks == len(rows)
        assert {r.file_path for r in rows} == {"repo/app.py", "repo/util.js", "repo/README.md"}
        names = {r.chunk_name for r in rows}
        assert {"load", "save", "add"} <= names
        assert all(r.user_id == "user-1" and r.session_id == "s1" for r in rows)
        assert {r.language for r in rows} == {"python", "javascript", "markdown"}

    async def test_workspace_released(self, harness: Harness):
        job_id = await harness.submit("s1", {"app.py": harness.blob("app.py", APP_PY)})
        await harness.processor.run_once(wait=True)
        assert (await harness.job(job_id)).status == JobStatus.READY.value
        assert not (harness.workspace_root / "s1").exists()

    async def test_single_file_job(self, harness: Harness):
        job_id = await harness.submit("s1", {"main.go": harness.blob("main.go", MAIN_GO)})
        await harness.processor.run_once(wait=True)

        job = await harness.job(job_id)
        assert job.status == JobStatus.READY.value
        assert job.total_files == 1
        rows = await harness.stored_chunks(job_id)
        assert [r.chunk_name for r in rows] == ["main"]
        assert rows[0].language == "go"

    async def test_events_in_order(self, harness: Harness):
        job_id = await harness.submit(
            "s1",
            {"a.py": harness.blob("a.py", APP_PY), "b.js": harness.blob("b.js", UTIL_JS)},
        )
        await harness.processor.run_once(wait=True)
        assert harness.event_types(job_id) == [
            EventType.JOB_CLAIMED,
            EventType.JOB_PROGRESS,
            EventType.JOB_PROGRESS,
            EventType.JOB_READY,
        ]
        progress = [e.processed_files for e in harness.events if e.event_type is EventType.JOB_PROGRESS]
        assert progress == [1, 2]
        counted = [e for e in harness.events if e.event_type is not EventType.JOB_CLAIMED]
        assert {e.total_files for e in counted} == {2}

    async def test_job_without_files(self, harness: Harness):
        job_id = await harness.submit("s1", {})
        await harness.processor.run_once(wait=True)
        job = await harness.job(job_id)
        assert job.status == JobStatus.READY.value
        assert job.total_files == 0
        assert job.total_chunks == 0

    async def test_parse_error_becomes_block_chunk(self, harness: Harness):
        broken = "def broken(:\n    pass\n"
        job_id = await harness.submit("s1", {"bad.py": harness.blob("bad.py", broken)})
        await harness.processor.run_once(wait=True)

        job = await harness.job(job_id)
        assert job.status == JobStatus.READY.value
        rows = await harness.stored_chunks(job_id)
        assert len(rows) == 1
        assert rows[0].chunk_type == "block"
        assert rows[0].content == broken

    async def test_languages_without_grammar_get_text_chunks(self, harness: Harness):
        vue = "<template>\n  <p>{{ msg }}</p>\n</template>\n\n<script>\nexport default {}\n</script>\n"
        job_id = await harness.submit(
            "s1",
            {
                "greet.rb": harness.blob("greet.rb", "def greet\n  puts 'hi'\nend\n"),
                "App.vue": harness.blob("App.vue", vue),
            },
        )
        await harness.processor.run_once(wait=True)

        job = await harness.job(job_id)
        assert job.status == JobStatus.READY.value
        rows = await harness.stored_chunks(job_id)
        by_file = {(r.file_path, r.chunk_name): r for r in rows}
        assert set(by_file) == {("App.vue", "template"), ("App.vue", "script"), ("greet.rb", "greet.rb")}
        ruby = by_file[("greet.rb", "greet.rb")]
        assert (ruby.language, ruby.chunk_type, ruby.start_byte) == ("ruby", "block", 0)
        assert by_file[("App.vue", "script")].start_line == 5

    async def test_framework_recorded_on_chunks(self, harness: Harness):
        source = "from flask import Flask\napp = Flask(__name__)\n\n@app.route('/')\ndef index():\n    return 'hi'\n"
        job_id = await harness.submit("s1", {"app.py": harness.blob("app.py", source)})
        await harness.processor.run_once(wait=True)
        rows = await harness.stored_chunks(job_id)
        assert {r.chunk_metadata.get("framework") for r in rows} == {"flask"}

    async def test_tolerates_few_download_failures(self, harness: Harness):
        uploads: dict[str, str | None] = {
            f"f{i}.py": harness.blob(f"f{i}.py", f"def f{i}():\n    return {i}\n") for i in range(3)
        }
        uploads["gone.py"] = None
        job_id = await harness.submit("s1", uploads)
        await harness.processor.run_once(wait=True)

        job = await harness.job(job_id)
        assert job.status == JobStatus.READY.value
        assert job.total_files == 3


# ==================================================================
# Failures
# ==================================================================


class TestFailures:
    async def test_corrupt_archive(self, harness: Harness):
        job_id = await harness.submit("s1", {"repo.zip": harness.blob("repo.zip", b"PK\x03\x04garbage")})
        await harness.processor.run_once(wait=True)

        job = await harness.job(job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.error_kind == ErrorKind.ARCHIVE_CORRUPT.value
        assert job.error_message
        assert job.error_at is not None
        assert harness.event_types(job_id)[-1] is EventType.JOB_FAILED
        assert not (harness.workspace_root / "s1").exists()

    async def test_policy_violation(self, session_factory: async_sessionmaker[AsyncSession], tmp_path: Path):
        harness = Harness(session_factory, tmp_path, extractor=ExtractorPolicy(max_files=1))
        locator = harness.blob("repo.zip", make_zip({"a.py": APP_PY, "b.py": APP_PY}))
        job_id = await harness.submit("s1", {"repo.zip": locator})
        await harness.processor.run_once(wait=True)

        job = await harness.job(job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.error_kind == ErrorKind.POLICY_VIOLATION.value
        assert await harness.stored_chunks(job_id) == []

    async def test_too_many_download_failures(self, harness: Harness):
        job_id = await harness.submit("s1", {"a.py": harness.blob("a.py", APP_PY), "gone.py": None})
        await harness.processor.run_once(wait=True)

        job = await harness.job(job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.error_kind == ErrorKind.IO_ERROR.value
        failed = [e for e in harness.events if e.event_type is EventType.JOB_FAILED]
        assert failed[0].error_kind == ErrorKind.IO_ERROR.value

    async def test_embedding_unavailable_without_fallback(
        self, session_factory: async_sessionmaker[AsyncSession], tmp_path: Path
    ):
        harness = Harness(
            session_factory,
            tmp_path,
            provider_factory=lambda secret: AlwaysFailing(secret, QuotaExceededError("quota")),
            embedding=EmbeddingPolicy(inter_delay=0, backoff_base=0, allow_dummy_fallback=False),
        )
        job_id = await harness.submit("s1", {"a.py": harness.blob("a.py", APP_PY)})
        await harness.processor.run_once(wait=True)

        job = await harness.job(job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.error_kind == ErrorKind.EMBEDDING_UNAVAILABLE.value
        assert await harness.stored_chunks(job_id) == []

    async def test_dummy_fallback_still_ready(
        self, session_factory: async_sessionmaker[AsyncSession], tmp_path: Path
    ):
        harness = Harness(
            session_factory,
            tmp_path,
            provider_factory=lambda secret: AlwaysFailing(secret, QuotaExceededError("quota")),
        )
        job_id = await harness.submit("s1", {"a.py": harness.blob("a.py", APP_PY)})
        await harness.processor.run_once(wait=True)

        job = await harness.job(job_id)
        assert job.status == JobStatus.READY.value
        assert job.dummy_chunks == job.total_chunks > 0
        assert job.embedding_dimension == 768


# ==================================================================
# Scheduling, claims and cancellation
# ==================================================================


class GatedEmbedding(FakeEmbedding):
    """Blocks every call until released."""

    def __init__(self, secret: str = "k1") -> None:
        super().__init__(secret)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def embed(self, text: str) -> list[float]:
        self.started.set()
        await self.release.wait()
        return await super().embed(text)


class TestScheduling:
    async def test_concurrency_cap(self, session_factory: async_sessionmaker[AsyncSession], tmp_path: Path):
        harness = Harness(
            session_factory, tmp_path, policy=ProcessorPolicy(max_concurrent_jobs=1, grace_period=2.0)
        )
        first = await harness.submit("s1", {"a.py": harness.blob("a.py", APP_PY)})
        second = await harness.submit("s2", {"b.py": harness.blob("b.py", APP_PY)})

        assert await harness.processor.run_once(wait=True) == [first]
        assert (await harness.job(second)).status == JobStatus.PENDING.value
        assert await harness.processor.run_once(wait=True) == [second]
        assert (await harness.job(second)).status == JobStatus.READY.value

    async def test_claimed_job_not_taken_twice(self, harness: Harness):
        job_id = await harness.submit("s1", {"a.py": harness.blob("a.py", APP_PY)})
        async with harness.session_factory() as session:
            assert await harness.jobs.claim(session, job_id, "someone-else")
            await session.commit()
        assert await harness.processor.run_once(wait=True) == []
        assert (await harness.job(job_id)).claimed_by == "someone-else"

    async def test_stale_claim_reprocessed(self, harness: Harness):
        job_id = await harness.submit("s1", {"a.py": harness.blob("a.py", APP_PY)})
        async with harness.session_factory() as session:
            await harness.jobs.claim(session, job_id, "crashed", now=datetime.now(UTC) - timedelta(minutes=10))
            await session.commit()

        assert await harness.processor.run_once(wait=True) == [job_id]
        job = await harness.job(job_id)
        assert job.status == JobStatus.READY.value
        assert job.claimed_by == "proc-test"

    async def test_long_queued_job_still_runs(self, harness: Harness):
        job_id = await harness.submit("s1", {"a.py": harness.blob("a.py", APP_PY)})
        async with harness.session_factory() as session:
            await session.execute(
                update(Job).where(Job.id == job_id).values(created_at=datetime.now(UTC) - timedelta(hours=2))
            )
            await session.commit()

        assert await harness.processor.run_once(wait=True) == [job_id]
        job = await harness.job(job_id)
        assert job.status == JobStatus.READY.value
        assert job.error_kind is None

    async def test_reclaim_with_fewer_files_restarts_progress(self, harness: Harness):
        names = ["a.py", "b.py", "c.py", "d.py"]
        job_id = await harness.submit("s1", {n: harness.blob(n, APP_PY) for n in names})
        async with harness.session_factory() as session:
            await harness.jobs.claim(session, job_id, "crashed", now=datetime.now(UTC) - timedelta(minutes=10))
            await harness.jobs.set_total_files(session, job_id, "crashed", 4)
            await harness.jobs.update_progress(session, job_id, "crashed", processed_files=4)
            await session.commit()
        (harness.blob_dir / "d.py").unlink()

        assert await harness.processor.run_once(wait=True) == [job_id]
        job = await harness.job(job_id)
        assert job.status == JobStatus.READY.value
        assert job.total_files == 3
        assert job.processed_files == 3
        assert {r.file_path for r in await harness.stored_chunks(job_id)} == {"a.py", "b.py", "c.py"}

    async def test_start_polls_until_ready(self, harness: Harness):
        job_id = await harness.submit("s1", {"a.py": harness.blob("a.py", APP_PY)})
        await harness.processor.start()
        try:
            assert harness.processor.is_running
            for _ in range(200):
                if (await harness.job(job_id)).status == JobStatus.READY.value:
                    break
                await asyncio.sleep(0.05)
            assert (await harness.job(job_id)).status == JobStatus.READY.value
        finally:
            await harness.processor.stop()
        assert not harness.processor.is_running

    async def test_deleted_job_stops_without_chunks(
        self, session_factory: async_sessionmaker[AsyncSession], tmp_path: Path
    ):
        gated = GatedEmbedding()
        harness = Harness(session_factory, tmp_path, provider_factory=lambda _secret: gated)
        job_id = await harness.submit("s1", {"a.py": harness.blob("a.py", APP_PY)})
        async with harness.session_factory() as session:
            await harness.jobs.claim(session, job_id, harness.processor.processor_id)
            await session.commit()

        task = asyncio.create_task(harness.processor.process_job(job_id))
        await asyncio.wait_for(gated.started.wait(), timeout=5)
        async with harness.session_factory() as session:
            await harness.jobs.delete_job(session, "s1")
            await session.commit()
        gated.release.set()

        assert await asyncio.wait_for(task, timeout=5) is None
        assert await harness.stored_chunks(job_id) == []
        assert not (harness.workspace_root / "s1").exists()
        assert EventType.JOB_READY not in harness.event_types(job_id)

    async def test_cancel_running_task(self, session_factory: async_sessionmaker[AsyncSession], tmp_path: Path):
        gated = GatedEmbedding()
        harness = Harness(session_factory, tmp_path, provider_factory=lambda _secret: gated)
        job_id = await harness.submit("s1", {"a.py": harness.blob("a.py", APP_PY)})

        assert await harness.processor.run_once() == [job_id]
        assert job_id in harness.processor.running_jobs
        await asyncio.wait_for(gated.started.wait(), timeout=5)

        assert await harness.processor.cancel(job_id)
        await asyncio.sleep(0)
        assert job_id not in harness.processor.running_jobs
        assert not await harness.processor.cancel(job_id)
        # The job stays claimed; a later processor reclaims it once stale.
        assert (await harness.job(job_id)).status == JobStatus.PROCESSING.value

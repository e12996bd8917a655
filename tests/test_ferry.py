"""Tests for the synchronous Ferry facade."""

from __future__ import annotations

import json
import time
from collections.abc import Iterator
from typing import TYPE_CHECKING

import pytest
from helpers import FakeGenerator, fake_factory, make_zip

from ferry import Ferry, FerryAsync, FileUpload
from ferry.config import EmbeddingPolicy, FerryConfig, ProcessorPolicy, RetrievalPolicy
from ferry.events import EventBus, EventType, JobEvent
from ferry.models.jobs import JobStatus

if TYPE_CHECKING:
    from pathlib import Path


SOURCE = """\
def handler(event):
    if event:
        return event
    return None
"""

REPLY = json.dumps(
    {
        "files": [
            {
                "filename": "handler.py",
                "migratedFilename": "handler.go",
                "content": "package handler\n\nfunc Handler() {}\n",
            }
        ]
    }
)


def _config(tmp_path: Path) -> FerryConfig:
    return FerryConfig(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ferry.db'}",
        workspace_root=tmp_path / "workspaces",
        embedding_credentials=("k1",),
        embedding=EmbeddingPolicy(inter_delay=0, backoff_base=0, backoff_max=0),
        retrieval=RetrievalPolicy(default_threshold=0.0),
        processor=ProcessorPolicy(poll_interval=0.05, grace_period=2.0),
    )


def _upload(tmp_path: Path, name: str, data: str | bytes) -> FileUpload:
    path = tmp_path / name
    path.write_bytes(data.encode() if isinstance(data, str) else data)
    return FileUpload(filename=name, locator=str(path))


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def ferry(tmp_path: Path, bus: EventBus) -> Iterator[Ferry]:
    f = Ferry(
        _config(tmp_path),
        embedding_provider_factory=fake_factory(),
        generation_provider=FakeGenerator(REPLY),
        event_bus=bus,
    )
    yield f
    f.close()


class TestSyncFacade:
    def test_async_ferry_exposed(self, ferry: Ferry):
        assert isinstance(ferry.async_ferry, FerryAsync)

    def test_full_cycle(self, ferry: Ferry, tmp_path: Path):
        info = ferry.create_job("s1", "u1", files=[_upload(tmp_path, "handler.py", SOURCE)])
        assert info.status == JobStatus.PENDING.value

        assert ferry.process_pending_once() == [info.job_id]
        ready = ferry.get_job("s1")
        assert ready is not None
        assert ready.status == JobStatus.READY.value

        page = ferry.list_chunks("s1")
        assert "handler" in {c.chunk_name for c in page.chunks}
        assert ferry.search_chunks("u1", "handler")

        result = ferry.migrate("s1", to_lang="go")
        assert result.results[0].migrated_filename == "handler.go"
        assert result.validation.success_rate == 1.0

        deleted = ferry.delete_job("s1")
        assert deleted.success
        assert ferry.get_job("s1") is None

    def test_archive_and_stored_file(self, ferry: Ferry, tmp_path: Path):
        record = ferry.add_file("u1", _upload(tmp_path, "extra.py", SOURCE))
        archive = _upload(tmp_path, "repo.zip", make_zip({"pkg/mod.py": SOURCE}))
        ferry.create_job("s1", "u1", archive=archive, files=[record.id])
        ferry.process_pending_once()

        info = ferry.get_job("s1")
        assert info is not None
        assert info.total_files == 2
        paths = {c.file_path for c in ferry.list_chunks("s1").chunks}
        assert paths == {"extra.py", "pkg/mod.py"}

    def test_background_start_stop(self, ferry: Ferry, tmp_path: Path, bus: EventBus):
        ready: list[JobEvent] = []
        bus.register(EventType.JOB_READY, ready.append)
        ferry.create_job("s1", "u1", files=[_upload(tmp_path, "handler.py", SOURCE)])

        ferry.start()
        try:
            deadline = time.monotonic() + 10
            while not ready and time.monotonic() < deadline:
                time.sleep(0.05)
        finally:
            ferry.stop()

        assert [e.session_id for e in ready] == ["s1"]

    def test_close_idempotent(self, tmp_path: Path):
        ferry = Ferry(_config(tmp_path), embedding_provider_factory=fake_factory())
        ferry.close()
        ferry.close()

    def test_context_manager(self, tmp_path: Path):
        with Ferry(_config(tmp_path), embedding_provider_factory=fake_factory()) as ferry:
            assert ferry.get_job("missing") is None

    def test_init_error_propagates(self, tmp_path: Path):
        config = FerryConfig(workspace_root=tmp_path)
        with pytest.raises(ValueError, match="No embedding credentials"):
            Ferry(config)

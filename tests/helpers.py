"""Fake providers and builders shared by the Ferry tests."""

from __future__ import annotations

import hashlib
import io
import math
import tarfile
import zipfile
from typing import TYPE_CHECKING

from ferry.models.chunks import Chunk

if TYPE_CHECKING:
    from collections.abc import Callable


FAKE_DIM = 32


# ------------------------------------------------------------------
# Fake providers
# ------------------------------------------------------------------


def hash_vector(text: str, dim: int = FAKE_DIM) -> list[float]:
    """Deterministic unit vector derived from *text*."""
    raw: list[float] = []
    counter = 0
    while len(raw) < dim:
        digest = hashlib.sha256(f"{counter}:{text}".encode()).digest()
        raw.extend(float(b) for b in digest)
        counter += 1
    raw = raw[:dim]
    norm = math.sqrt(sum(x * x for x in raw))
    return [x / norm for x in raw]


class FakeEmbedding:
    """Deterministic async embedding provider."""

    def __init__(self, secret: str = "test-key", dim: int = FAKE_DIM) -> None:
        self.secret = secret
        self.dim = dim
        self.calls: list[str] = []
        self.closed = False

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return hash_vector(text, self.dim)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(t) for t in texts]

    @property
    def dimensions(self) -> int:
        return self.dim

    @property
    def model_name(self) -> str:
        return "fake-embedding"

    async def close(self) -> None:
        self.closed = True


class ScriptedEmbedding(FakeEmbedding):
    """Raises the queued exceptions in order, then behaves like FakeEmbedding."""

    def __init__(self, secret: str = "test-key", errors: list[BaseException] | None = None, dim: int = FAKE_DIM) -> None:
        super().__init__(secret, dim)
        self.errors = list(errors or [])

    async def embed(self, text: str) -> list[float]:
        if self.errors:
            self.calls.append(text)
            raise self.errors.pop(0)
        return await super().embed(text)


class AlwaysFailing(FakeEmbedding):
    def __init__(self, secret: str, error: BaseException) -> None:
        super().__init__(secret)
        self.error = error

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        raise self.error


class FakeGenerator:
    """Generation provider returning a canned reply and recording prompts."""

    def __init__(self, reply: str = "") -> None:
        self.reply = reply
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.reply

    @property
    def model_name(self) -> str:
        return "fake-generator"


def fake_factory(registry: dict[str, FakeEmbedding] | None = None) -> Callable[[str], FakeEmbedding]:
    """Credential -> FakeEmbedding factory that remembers what it built."""
    built = registry if registry is not None else {}

    def factory(secret: str) -> FakeEmbedding:
        provider = FakeEmbedding(secret)
        built[secret] = provider
        return provider

    return factory


# ------------------------------------------------------------------
# Archive builders
# ------------------------------------------------------------------


def make_zip(files: dict[str, str | bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


def make_tar(files: dict[str, str | bytes], mode: str = "w:gz") -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode=mode) as tf:
        for name, content in files.items():
            data = content.encode() if isinstance(content, str) else content
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def make_chunk(
    job_id: str = "job-1",
    *,
    file_path: str = "src/app.py",
    start_byte: int = 0,
    end_byte: int = 10,
    chunk_type: str = "function",
    chunk_name: str = "handler",
    content: str = "def handler(): pass",
    embedding: list[float] | None = None,
    complexity: int = 1,
    user_id: str = "user-1",
    session_id: str = "session-1",
    language: str = "python",
) -> Chunk:
    return Chunk(
        job_id=job_id,
        session_id=session_id,
        user_id=user_id,
        file_path=file_path,
        file_name=file_path.rsplit("/", 1)[-1],
        file_extension="." + file_path.rsplit(".", 1)[-1],
        language=language,
        chunk_type=chunk_type,
        chunk_name=chunk_name,
        content=content,
        start_byte=start_byte,
        end_byte=end_byte,
        chunk_metadata={"complexity": complexity},
        embedding=embedding,
    )



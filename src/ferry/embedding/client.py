"""EmbeddingClient — batched, rate-limited embedding with credential failover.

Each chunk is embedded independently.  A quota signal marks the current
credential failed and rotates to the next one; other errors back off and
retry on the same rotation.  When every credential is exhausted the pool
is cleared and the rotation tried once more.  A chunk that still cannot
be embedded gets a dummy vector (uniform random in ``[0, 1)``) flagged
``is_dummy``, unless the policy forbids fallback.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import numpy as np
import openai

from ferry.config import EmbeddingPolicy
from ferry.embedding.descriptors import descriptor_for
from ferry.exceptions import (
    DeadlineExceededError,
    EmbeddingUnavailableError,
    FerryError,
    QuotaExceededError,
    StorageIOError,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from ferry.embedding.credentials import Credential, CredentialPool
    from ferry.embedding.protocols import EmbeddingProvider
    from ferry.models.chunks import Chunk

    type ProviderFactory = Callable[[str], EmbeddingProvider]
    type BatchHook = Callable[[int], Awaitable[None]]

logger = logging.getLogger(__name__)

_RETRYABLE = (
    openai.APIError,
    TimeoutError,
    ConnectionError,
    DeadlineExceededError,
    StorageIOError,
)


def is_quota_error(exc: BaseException) -> bool:
    """True when *exc* signals quota or rate-limit exhaustion."""
    if isinstance(exc, (QuotaExceededError, openai.RateLimitError)):
        return True
    if getattr(exc, "status_code", None) == 429:
        return True
    message = str(exc)
    return "quota" in message or "Quota" in message


def dummy_vector(dimension: int, rng: np.random.Generator | None = None) -> list[float]:
    """Uniform random vector in ``[0, 1)`` standing in for a real embedding."""
    gen = rng if rng is not None else np.random.default_rng()
    return gen.random(dimension).tolist()


@dataclass(slots=True)
class EmbeddingRunStats:
    """Outcome counters for one :meth:`EmbeddingClient.embed_chunks` call."""

    real: int = 0
    dummy: int = 0
    quota_failovers: int = 0
    retries: int = 0
    dimension: int | None = None
    model: str = ""

    @property
    def total(self) -> int:
        return self.real + self.dummy


class _Unavailable(Exception):
    """One chunk could not be embedded with any credential."""


class EmbeddingClient:
    """Embeds chunks through a shared :class:`CredentialPool`.

    *provider_factory* builds a provider for a credential secret; providers
    are cached per credential for the client's lifetime.
    """

    def __init__(
        self,
        pool: CredentialPool,
        provider_factory: ProviderFactory,
        policy: EmbeddingPolicy | None = None,
        *,
        deadline: float = 60.0,
        rng: np.random.Generator | None = None,
    ) -> None:
        self._pool = pool
        self._factory = provider_factory
        self._policy = policy or EmbeddingPolicy()
        self._deadline = deadline
        self._rng = rng or np.random.default_rng()
        self._providers: dict[int, EmbeddingProvider] = {}

    @property
    def policy(self) -> EmbeddingPolicy:
        return self._policy

    @property
    def pool(self) -> CredentialPool:
        return self._pool

    def _provider(self, credential: Credential) -> EmbeddingProvider:
        provider = self._providers.get(credential.index)
        if provider is None:
            provider = self._factory(credential.secret)
            self._providers[credential.index] = provider
        return provider

    # ------------------------------------------------------------------
    # Chunk embedding
    # ------------------------------------------------------------------

    async def embed_chunks(
        self,
        chunks: Sequence[Chunk],
        *,
        dimension: int | None = None,
        before_batch: BatchHook | None = None,
    ) -> EmbeddingRunStats:
        """Fill the embedding fields of every chunk in place.

        *dimension* pins the vector length (a job's recorded dimension);
        otherwise the policy's dimension, otherwise the first successful
        response decides.  *before_batch* is awaited with the batch index
        before each batch and may raise to cancel the run.
        """
        stats = EmbeddingRunStats(
            dimension=dimension or self._policy.dimension,
            model=self._policy.model,
        )
        if not chunks:
            return stats

        semaphore = asyncio.Semaphore(self._policy.effective_concurrency)
        size = max(1, self._policy.batch_size)
        dummies: list[Chunk] = []

        for batch_index, start in enumerate(range(0, len(chunks), size)):
            if before_batch is not None:
                await before_batch(batch_index)
            if batch_index > 0 and self._policy.inter_delay > 0:
                await asyncio.sleep(self._policy.inter_delay)

            batch = chunks[start : start + size]
            results = await asyncio.gather(
                *(self._embed_guarded(semaphore, chunk, stats) for chunk in batch),
                return_exceptions=True,
            )
            for chunk, result in zip(batch, results, strict=True):
                if isinstance(result, _Unavailable):
                    if not self._policy.allow_dummy_fallback:
                        msg = f"Embedding unavailable for {chunk.file_path}:{chunk.chunk_name}"
                        raise EmbeddingUnavailableError(msg) from result.__cause__
                    dummies.append(chunk)
                elif isinstance(result, BaseException):
                    raise result
                else:
                    self._assign(chunk, result, is_dummy=False)
                    stats.real += 1

        if dummies:
            dim = stats.dimension or self._policy.default_dimension
            stats.dimension = dim
            for chunk in dummies:
                self._assign(chunk, dummy_vector(dim, self._rng), is_dummy=True)
            stats.dummy = len(dummies)
            logger.warning(
                "Embedding fell back to dummy vectors for %d/%d chunks",
                stats.dummy,
                stats.total,
            )
        logger.info(
            "Embedded %d chunks (%d real, %d dummy, dim=%s)",
            stats.total,
            stats.real,
            stats.dummy,
            stats.dimension,
        )
        return stats

    def _assign(self, chunk: Chunk, vector: list[float], *, is_dummy: bool) -> None:
        chunk.embedding = vector
        chunk.embedding_model = self._policy.model
        chunk.embedding_generated_at = datetime.now(UTC)
        chunk.is_dummy = is_dummy

    async def _embed_guarded(
        self, semaphore: asyncio.Semaphore, chunk: Chunk, stats: EmbeddingRunStats
    ) -> list[float]:
        async with semaphore:
            return await self._embed_one(descriptor_for(chunk), stats)

    async def _embed_one(self, text: str, stats: EmbeddingRunStats) -> list[float]:
        cleared = False
        attempts = 0
        last_error: BaseException | None = None

        while True:
            credential = self._pool.acquire()
            if credential is None:
                if cleared:
                    raise _Unavailable from last_error
                self._pool.reset()
                cleared = True
                continue

            try:
                vector = await self._call(credential, text)
            except Exception as exc:
                if is_quota_error(exc):
                    last_error = exc
                    stats.quota_failovers += 1
                    await self._pool.mark_failed(credential)
                    continue
                if not isinstance(exc, _RETRYABLE):
                    raise
                last_error = exc
                attempts += 1
                if attempts >= self._policy.max_attempts:
                    logger.debug("Giving up after %d attempts: %s", attempts, exc)
                    raise _Unavailable from exc
                stats.retries += 1
                await asyncio.sleep(self._backoff(attempts))
                continue

            if stats.dimension is None:
                stats.dimension = len(vector)
            elif len(vector) != stats.dimension:
                last_error = ValueError(
                    f"Expected {stats.dimension}-dim vector, got {len(vector)}"
                )
                attempts += 1
                if attempts >= self._policy.max_attempts:
                    raise _Unavailable from last_error
                stats.retries += 1
                continue
            return vector

    async def _call(self, credential: Credential, text: str) -> list[float]:
        provider = self._provider(credential)
        try:
            return await asyncio.wait_for(provider.embed(text), timeout=self._deadline)
        except TimeoutError as exc:
            msg = f"Embedding call exceeded {self._deadline}s"
            raise DeadlineExceededError(msg) from exc

    def _backoff(self, attempt: int) -> float:
        return min(self._policy.backoff_max, self._policy.backoff_base * (2 ** (attempt - 1)))

    # ------------------------------------------------------------------
    # Query embedding
    # ------------------------------------------------------------------

    async def embed_query(self, text: str) -> list[float]:
        """Embed a retrieval query.  No dummy fallback.

        Quota errors rotate through the remaining credentials once; any
        other failure raises :class:`EmbeddingUnavailableError`.
        """
        for _ in range(len(self._pool)):
            credential = self._pool.acquire()
            if credential is None:
                break
            try:
                return await self._call(credential, text)
            except Exception as exc:
                if is_quota_error(exc):
                    await self._pool.mark_failed(credential)
                    continue
                if isinstance(exc, (*_RETRYABLE, FerryError)):
                    msg = f"Query embedding failed: {exc}"
                    raise EmbeddingUnavailableError(msg) from exc
                raise
        msg = "Query embedding failed: all credentials exhausted"
        raise EmbeddingUnavailableError(msg)

    async def close(self) -> None:
        """Close cached providers that hold network clients."""
        for provider in self._providers.values():
            close = getattr(provider, "close", None)
            if close is not None:
                await close()
        self._providers.clear()

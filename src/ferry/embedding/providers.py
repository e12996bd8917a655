"""OpenAIEmbedding — one embedding endpoint per pooled credential."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from openai import AsyncOpenAI

if TYPE_CHECKING:
    from collections.abc import Callable

    from openai.types import CreateEmbeddingResponse

_KNOWN_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


def _ordered_vectors(response: CreateEmbeddingResponse) -> list[list[float]]:
    # The API may return items out of input order; ``index`` is authoritative.
    return [item.embedding for item in sorted(response.data, key=lambda item: item.index)]


class OpenAIEmbedding:
    """Embedding provider bound to a single API key.

    SDK retries are off (``max_retries=0``); quota rotation and backoff
    happen in :class:`~ferry.embedding.EmbeddingClient`.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
    ) -> None:
        if not api_key:
            msg = "OpenAIEmbedding requires a non-empty api_key"
            raise ValueError(msg)
        self._request: dict[str, Any] = {"model": model}
        if dimensions is not None:
            self._request["dimensions"] = dimensions
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0, timeout=timeout)

    @property
    def model_name(self) -> str:
        return self._request["model"]

    @property
    def dimensions(self) -> int | None:
        return self._request.get("dimensions", _KNOWN_DIMENSIONS.get(self.model_name))

    async def embed(self, text: str) -> list[float]:
        (vector,) = await self.embed_batch([text])
        return vector

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        response = await self._client.embeddings.create(input=texts, **self._request)
        return _ordered_vectors(response)

    async def close(self) -> None:
        await self._client.close()


def openai_provider_factory(
    model: str = "text-embedding-3-small",
    dimensions: int | None = None,
    timeout: float = 60.0,
) -> Callable[[str], OpenAIEmbedding]:
    """Build a ``secret -> OpenAIEmbedding`` factory for the credential pool."""

    def factory(api_key: str) -> OpenAIEmbedding:
        return OpenAIEmbedding(api_key=api_key, model=model, dimensions=dimensions, timeout=timeout)

    return factory

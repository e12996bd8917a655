"""Embedding provider protocol."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Async protocol for text-to-vector embedding.

    ``dimensions`` is ``None`` when the provider does not know its output
    length until the first response.
    """

    async def embed(self, text: str) -> list[float]:
        """Embed a single text string into a vector."""
        ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed multiple texts into vectors."""
        ...

    @property
    def dimensions(self) -> int | None:
        """Number of dimensions in the embedding vectors, if known."""
        ...

    @property
    def model_name(self) -> str:
        """Name of the embedding model."""
        ...

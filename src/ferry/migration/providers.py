"""Generation providers for the migration agent."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from openai import AsyncOpenAI


@runtime_checkable
class GenerationProvider(Protocol):
    """Async protocol for prompt-to-text generation."""

    async def generate(self, prompt: str) -> str:
        """Return the model's reply to *prompt*."""
        ...

    @property
    def model_name(self) -> str: ...


class OpenAIGeneration:
    """Chat-completions generation via the OpenAI API."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        temperature: float = 0.2,
        timeout: float = 180.0,
    ) -> None:
        self._model = model
        self._temperature = temperature
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    async def generate(self, prompt: str) -> str:
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=[{"role": "user", "content": prompt}],
            temperature=self._temperature,
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    @property
    def model_name(self) -> str:
        return self._model

    async def close(self) -> None:
        await self._client.close()

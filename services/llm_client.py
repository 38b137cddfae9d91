# /services/llm_client.py
# This module defines an LLMClient class for any OpenAI-compatible chat endpoint (OpenAI itself,
# Nebius Token Factory, a local vLLM, ...). It supports plain completions and token streaming.
from __future__ import annotations

from typing import AsyncIterator, Dict, List

from openai import AsyncOpenAI

from settings import settings
from utils.errors import upstream_error

# We use async coding for all LLM interactions so that a streaming answer never blocks other
# requests. The AsyncOpenAI client works well with FastAPI's async nature.


class LLMClient:
    def __init__(self, client: AsyncOpenAI | None = None) -> None:
        if client is not None:
            self._client = client
            return
        if not settings.llm_api_key:
            # We'll still allow the service to run; the chat service streams a fallback message.
            self._client = None
            return

        self._client = AsyncOpenAI(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
        )

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def _require(self) -> AsyncOpenAI:
        if not self._client:
            raise upstream_error("LLM_API_KEY is not set; LLM call is disabled")
        return self._client

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        client = self._require()
        try:
            resp = await client.chat.completions.create(
                model=model or settings.llm_model,
                messages=messages,
                temperature=temperature if temperature is not None else settings.llm_temperature,
                max_tokens=max_tokens or settings.llm_max_tokens,
            )
            return resp.choices[0].message.content or ""
        except Exception as e:
            raise upstream_error(f"LLM call failed: {e}") from e

    async def stream_chat(
        self,
        messages: List[Dict[str, str]],
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[str]:
        client = self._require()
        try:
            stream = await client.chat.completions.create(
                model=model or settings.llm_model,
                messages=messages,
                temperature=temperature if temperature is not None else settings.llm_temperature,
                max_tokens=max_tokens or settings.llm_max_tokens,
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except Exception as e:
            raise upstream_error(f"LLM call failed: {e}") from e

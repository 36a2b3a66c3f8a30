"""
OpenAI-backed chat completion client for batch transaction classification.

The client forwards the request and hands the raw completion back. Provider
and network errors are not caught here.
"""

from __future__ import annotations

import logging
from typing import Any

from openai import AsyncOpenAI

from classification_provider import ChatCompletionRequest

logger = logging.getLogger(__name__)


class OpenAIChatClient:
    """ChatGPT-compatible client (any OpenAI-protocol endpoint via `api_base`)."""

    name = "openai"

    def __init__(self, settings: Any):
        if not settings or not settings.openai:
            raise RuntimeError("OpenAI client not configured. Check OPENAI_API_KEY, OPENAI_MODEL, OPENAI_API_BASE.")
        self._client = AsyncOpenAI(
            api_key=settings.openai.api_key,
            base_url=settings.openai.api_base,
            timeout=settings.timeout_seconds,
            # The batch queue owns retries.
            max_retries=0,
        )
        self.model = settings.openai.model

    async def send(self, request: ChatCompletionRequest) -> Any:
        return await self._client.chat.completions.create(
            model=request.model or self.model,
            messages=[{"role": message.role, "content": message.content} for message in request.messages],
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            stream=False,
        )

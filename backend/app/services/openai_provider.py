"""
MindNote Backend — OpenAI Provider
===================================

What:  ProviderCapability backed by the OpenAI API (chat completions + embeddings).
Why:   Second provider in the default fallback chain; used when Gemini is
       down, rate-limited, or its circuit is open.
How:   openai.AsyncOpenAI client with SDK-level retries disabled; retries are
       owned by tenacity (call_with_retry) so both providers back off the same way.
Who:   Registered in the AIDispatcher under id "openai".

Error classification (openai exceptions):
    retryable → RateLimitError, APITimeoutError, APIConnectionError,
                InternalServerError, any other APIError
    terminal  → AuthenticationError, PermissionDeniedError, BadRequestError,
                NotFoundError, UnprocessableEntityError
"""

import logging
import time
import uuid
from typing import List, Optional, Sequence

import openai
from openai import AsyncOpenAI

from app.exceptions import ProviderError
from app.schemas.ai import AIRequest, AIResponse, TokenUsage
from app.services.provider_base import (
    ProviderCapability,
    build_prompt,
    call_with_retry,
    estimate_cost,
    parse_structured_output,
)

logger = logging.getLogger(__name__)

# USD per 1K tokens
OPENAI_PRICING = {
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    "gpt-4o": {"input": 0.0025, "output": 0.01},
    "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
}

_TERMINAL_ERRORS = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.BadRequestError,
    openai.NotFoundError,
    openai.UnprocessableEntityError,
)

SYSTEM_PROMPT = "You are a concise assistant that analyzes personal notes."


class OpenAIProvider(ProviderCapability):
    name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o-mini",
        embedding_model: str = "text-embedding-3-small",
        request_timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_min_wait: float = 2.0,
        retry_max_wait: float = 30.0,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.api_key = api_key or None
        self.model = model
        self.embedding_model = embedding_model
        self._retry = {
            "attempts": retry_attempts,
            "min_wait": retry_min_wait,
            "max_wait": retry_max_wait,
        }
        self._client = client
        if self._client is None and self.api_key:
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                timeout=request_timeout,
                max_retries=0,
            )

        logger.info(
            "OpenAIProvider initialized with model=%s embedding_model=%s (key %s)",
            model,
            embedding_model,
            "set" if self.api_key else "missing",
        )

    async def probe(self) -> bool:
        """Retrieve the model's metadata; free, and fails fast on a bad key."""
        if self._client is None:
            return False
        try:
            await self._client.models.retrieve(self.model)
            return True
        except openai.OpenAIError as e:
            logger.warning("OpenAI probe failed for %s: %s", self.model, e)
            return False

    async def generate(self, request: AIRequest) -> AIResponse:
        client = self._require_client()
        call_id = str(uuid.uuid4())[:8]
        start_time = time.time()

        params = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(request)},
            ],
        }
        if request.temperature is not None:
            params["temperature"] = request.temperature
        if request.max_length is not None:
            params["max_tokens"] = request.max_length

        async def _call():
            try:
                return await client.chat.completions.create(**params)
            except openai.OpenAIError as e:
                raise self._classify(e, call_id) from e

        completion = await call_with_retry(_call, **self._retry)
        duration_ms = int((time.time() - start_time) * 1000)

        if not completion.choices:
            raise ProviderError(
                provider=self.name,
                message="OpenAI returned no choices",
                retryable=False,
                context={"call_id": call_id},
            )
        text = (completion.choices[0].message.content or "").strip()

        usage = None
        if completion.usage is not None:
            usage = TokenUsage(
                input=completion.usage.prompt_tokens or 0,
                output=completion.usage.completion_tokens or 0,
                total=completion.usage.total_tokens or 0,
            )

        logger.info("[%s] OpenAI generate completed in %dms (%d chars out)", call_id, duration_ms, len(text))

        structured = parse_structured_output(text) if request.include_metadata else {}
        return AIResponse(
            content=structured.get("answer", text),
            category=structured.get("category"),
            tags=structured.get("tags"),
            summary=structured.get("summary"),
            provider=self.name,
            model=completion.model or self.model,
            tokens_used=usage,
            cost=estimate_cost(OPENAI_PRICING, self.model, usage.input, usage.output) if usage else None,
            response_time_ms=duration_ms,
        )

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        client = self._require_client()
        call_id = str(uuid.uuid4())[:8]

        async def _call():
            try:
                return await client.embeddings.create(model=self.embedding_model, input=list(texts))
            except openai.OpenAIError as e:
                raise self._classify(e, call_id) from e

        response = await call_with_retry(_call, **self._retry)
        data = sorted(response.data, key=lambda item: item.index)
        logger.info("[%s] OpenAI embedded %d texts", call_id, len(data))
        return [list(item.embedding) for item in data]

    def _require_client(self) -> AsyncOpenAI:
        if self._client is None:
            raise ProviderError(
                provider=self.name,
                message="OpenAI API key is not configured",
                retryable=False,
            )
        return self._client

    def _classify(self, exc: Exception, call_id: str) -> ProviderError:
        retryable = not isinstance(exc, _TERMINAL_ERRORS)
        logger.warning(
            "[%s] OpenAI API call failed (%s, retryable=%s): %s",
            call_id,
            type(exc).__name__,
            retryable,
            exc,
        )
        return ProviderError(
            provider=self.name,
            message=f"OpenAI request failed: {type(exc).__name__}",
            retryable=retryable,
            context={"call_id": call_id, "error_type": type(exc).__name__},
        )

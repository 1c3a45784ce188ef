"""
MindNote Backend — Google Gemini Provider
==========================================

What:  ProviderCapability backed by Google Gemini (generation + embeddings).
Why:   Gemini's free tier makes it the default primary provider for
       summaries, classification, and note embeddings.
How:   google-generativeai SDK. Generation goes through
       GenerativeModel.generate_content_async; embeddings and the model probe
       use the SDK's synchronous helpers off the event loop. Every call runs
       under a tenacity retry limited to retryable failures.
Who:   Registered in the AIDispatcher under id "gemini".

Error classification (google.api_core exceptions):
    retryable → ResourceExhausted (429), ServiceUnavailable, DeadlineExceeded,
                InternalServerError, plain ConnectionError/TimeoutError
    terminal  → InvalidArgument, PermissionDenied, Unauthenticated, NotFound
    The SDK also raises bare exceptions for some API errors; those are
    treated as retryable.
"""

import asyncio
import logging
import time
import uuid
from typing import List, Optional, Sequence

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

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
GEMINI_PRICING = {
    "gemini-1.5-flash": {"input": 0.000075, "output": 0.0003},
    "gemini-1.5-pro": {"input": 0.00125, "output": 0.005},
}

_TERMINAL_ERRORS = (
    google_exceptions.InvalidArgument,
    google_exceptions.PermissionDenied,
    google_exceptions.Unauthenticated,
    google_exceptions.NotFound,
)

_PLACEHOLDER_KEYS = {"", "your_gemini_api_key_here"}


class GeminiProvider(ProviderCapability):
    """
    Google Gemini implementation of the provider capability.

    The API key is configured once on the SDK (module-level state in
    google-generativeai); the GenerativeModel object is reused across calls.
    """

    name = "gemini"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-1.5-flash",
        embedding_model: str = "models/text-embedding-004",
        request_timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_min_wait: float = 2.0,
        retry_max_wait: float = 30.0,
    ):
        self.api_key = api_key if api_key not in _PLACEHOLDER_KEYS else None
        self.model = model
        self.embedding_model = embedding_model
        self.request_timeout = request_timeout
        self._retry = {
            "attempts": retry_attempts,
            "min_wait": retry_min_wait,
            "max_wait": retry_max_wait,
        }

        if self.api_key:
            genai.configure(api_key=self.api_key)
        self._client = genai.GenerativeModel(model)

        logger.info(
            "GeminiProvider initialized with model=%s embedding_model=%s (key %s)",
            model,
            embedding_model,
            "set" if self.api_key else "missing",
        )

    # ── Capability ────────────────────────────────────────────────────────

    async def probe(self) -> bool:
        """Metadata lookup for the configured model; consumes no generation quota."""
        if not self.api_key:
            return False
        model_name = self.model if self.model.startswith("models/") else f"models/{self.model}"
        try:
            await asyncio.to_thread(genai.get_model, model_name)
            return True
        except Exception as e:
            logger.warning("Gemini probe failed for %s: %s", model_name, e)
            return False

    async def generate(self, request: AIRequest) -> AIResponse:
        call_id = str(uuid.uuid4())[:8]
        start_time = time.time()
        prompt = build_prompt(request)

        generation_config = {}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.max_length is not None:
            generation_config["max_output_tokens"] = request.max_length

        async def _call():
            try:
                return await self._client.generate_content_async(
                    prompt,
                    generation_config=generation_config or None,
                    request_options={"timeout": self.request_timeout},
                )
            except Exception as e:
                raise self._classify(e, call_id) from e

        response = await call_with_retry(_call, **self._retry)
        duration_ms = int((time.time() - start_time) * 1000)

        text = self._response_text(response, call_id)
        usage = self._token_usage(response)

        logger.info(
            "[%s] Gemini generate completed in %dms (%d chars in, %d chars out)",
            call_id,
            duration_ms,
            len(prompt),
            len(text),
        )
        return self._build_response(request, text, usage, duration_ms)

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        call_id = str(uuid.uuid4())[:8]
        contents = list(texts)

        async def _call():
            try:
                return await asyncio.to_thread(
                    genai.embed_content,
                    model=self.embedding_model,
                    content=contents,
                    task_type="retrieval_document",
                )
            except Exception as e:
                raise self._classify(e, call_id) from e

        result = await call_with_retry(_call, **self._retry)
        vectors = result["embedding"]
        # A single text may come back as a flat vector
        if vectors and not isinstance(vectors[0], list):
            vectors = [vectors]
        logger.info("[%s] Gemini embedded %d texts", call_id, len(contents))
        return [list(map(float, v)) for v in vectors]

    # ── Helpers ───────────────────────────────────────────────────────────

    def _classify(self, exc: Exception, call_id: str) -> ProviderError:
        retryable = not isinstance(exc, _TERMINAL_ERRORS)
        logger.warning(
            "[%s] Gemini API call failed (%s, retryable=%s): %s",
            call_id,
            type(exc).__name__,
            retryable,
            exc,
        )
        return ProviderError(
            provider=self.name,
            message=f"Gemini request failed: {type(exc).__name__}",
            retryable=retryable,
            context={"call_id": call_id, "error_type": type(exc).__name__},
        )

    def _response_text(self, response, call_id: str) -> str:
        # .text raises ValueError when the candidate was blocked by safety filters
        try:
            return (response.text or "").strip()
        except ValueError as e:
            raise ProviderError(
                provider=self.name,
                message="Gemini returned no text (response blocked)",
                retryable=False,
                context={"call_id": call_id},
            ) from e

    @staticmethod
    def _token_usage(response) -> Optional[TokenUsage]:
        meta = getattr(response, "usage_metadata", None)
        if meta is None:
            return None
        input_tokens = getattr(meta, "prompt_token_count", 0) or 0
        output_tokens = getattr(meta, "candidates_token_count", 0) or 0
        total = getattr(meta, "total_token_count", 0) or input_tokens + output_tokens
        return TokenUsage(input=input_tokens, output=output_tokens, total=total)

    def _build_response(
        self,
        request: AIRequest,
        text: str,
        usage: Optional[TokenUsage],
        duration_ms: int,
    ) -> AIResponse:
        structured = parse_structured_output(text) if request.include_metadata else {}
        cost = None
        if usage is not None:
            cost = estimate_cost(GEMINI_PRICING, self.model, usage.input, usage.output)
        return AIResponse(
            content=structured.get("answer", text),
            category=structured.get("category"),
            tags=structured.get("tags"),
            summary=structured.get("summary"),
            provider=self.name,
            model=self.model,
            tokens_used=usage,
            cost=cost,
            response_time_ms=duration_ms,
        )

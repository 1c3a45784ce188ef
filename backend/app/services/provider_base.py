"""
MindNote Backend — AI Provider Capability Interface
====================================================

What:  Abstract base class every AI/embedding backend implements.
Why:   The dispatcher treats providers as interchangeable capabilities:
       "given a request, return a response or fail". Swapping Gemini for
       OpenAI (or adding a third provider) never touches dispatch logic.
How:   Concrete adapters inherit from ProviderCapability and implement
       probe(), generate(), and embed(). Shared helpers here build prompts,
       parse structured output, and run SDK calls under a tenacity retry.
Who:   Implemented by GeminiProvider and OpenAIProvider; called by AIDispatcher.

Contract:
    - probe() is cheap, never raises, and returns False when the provider
      cannot be used right now (missing key, unreachable, unknown model)
    - generate()/embed() raise ProviderError on any failure; SDK exceptions
      never leak past an adapter
    - adapters retry only retryable ProviderErrors; terminal ones surface at once
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Sequence, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from app.exceptions import ProviderError
from app.schemas.ai import AIRequest, AIResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound on tags kept from a structured response
MAX_TAGS = 5


class ProviderCapability(ABC):
    """
    Abstract interface for a generation + embedding backend.

    Attributes:
        name:            Default registry id for this adapter
        model:           Chat/generation model identifier
        embedding_model: Embedding model identifier
    """

    name: str = "provider"
    model: str = "unknown"
    embedding_model: str = "unknown"

    @abstractmethod
    async def probe(self) -> bool:
        """Lightweight availability check; must not consume generation quota."""
        ...

    @abstractmethod
    async def generate(self, request: AIRequest) -> AIResponse:
        """
        Produce a response for `request`.

        Raises:
            ProviderError: transport, auth, quota, or timeout failure.
        """
        ...

    @abstractmethod
    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embed each text; the result is aligned positionally with `texts`.

        Raises:
            ProviderError: on any failure.
        """
        ...


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    min_wait: float,
    max_wait: float,
) -> T:
    """
    Run `fn` under tenacity: exponential backoff with jitter, retryable errors only.

    Why AsyncRetrying (not the @retry decorator):
        Each adapter instance carries its own retry settings, so tests can run
        with attempts=1 and zero waits without patching module globals.
    """
    async for attempt in AsyncRetrying(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential_jitter(initial=min_wait, max=max_wait, jitter=1 if max_wait else 0),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    ):
        with attempt:
            return await fn()
    raise AssertionError("unreachable: tenacity reraises on exhaustion")


def build_prompt(request: AIRequest) -> str:
    """
    Turn an AIRequest into a single prompt string.

    With include_metadata the model is asked for a JSON object carrying
    summary/category/tags next to its answer; parse_structured_output()
    reads it back.
    """
    parts = []
    if request.context:
        parts.append(request.context.strip())
    parts.append(request.content.strip())
    if request.max_length:
        parts.append(f"Keep the answer under {request.max_length} tokens.")
    if request.include_metadata:
        parts.append(
            "Respond with a JSON object of the form "
            '{"answer": "...", "summary": "...", "category": "...", "tags": ["...", "..."]}. '
            "The summary is at most two sentences; give 3 to 5 short tags."
        )
    return "\n\n".join(parts)


_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def parse_structured_output(text: str) -> Dict[str, Any]:
    """
    Extract answer/summary/category/tags from a model reply.

    Returns an empty dict when the reply holds no parseable JSON object;
    the caller then keeps the raw text as the answer.
    """
    match = _JSON_OBJECT.search(text or "")
    if not match:
        return {}
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        logger.debug("Structured output was not valid JSON (%d chars)", len(text))
        return {}
    if not isinstance(parsed, dict):
        return {}

    result: Dict[str, Any] = {}
    for field in ("answer", "summary", "category"):
        value = parsed.get(field)
        if isinstance(value, str) and value.strip():
            result[field] = value.strip()
    tags = parsed.get("tags")
    if isinstance(tags, list):
        result["tags"] = [str(t).strip() for t in tags if str(t).strip()][:MAX_TAGS]
    return result


def estimate_cost(pricing: Dict[str, Dict[str, float]], model: str, input_tokens: int, output_tokens: int):
    """Cost in USD from a per-1K-token price table; None for unknown models."""
    price = pricing.get(model)
    if price is None:
        return None
    return round((input_tokens * price["input"] + output_tokens * price["output"]) / 1000, 6)

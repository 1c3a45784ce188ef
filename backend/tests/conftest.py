"""
MindNote Backend — Test Configuration (conftest.py)
=====================================================

What:  Shared pytest fixtures and fakes for the whole suite.
Why:   Tests never touch real AI providers or PostgreSQL; they run against
       scripted providers, an in-memory embedding repository, and a fake clock.

Fixture Hierarchy (all function-scoped):
    ├── fake_clock:       manually advanced time source for cache TTL tests
    ├── make_dispatcher:  factory for AIDispatcher with zero pacing delays
    ├── repository:       InMemoryEmbeddingRepository preloaded with notes
    ├── test_settings:    Settings with zero delays, for build_components()
    └── test_client:      HTTPX AsyncClient over an app wired with fakes
"""

import asyncio
import os
from typing import Callable, Dict, List, Optional, Sequence, Tuple

# Override settings for testing BEFORE any app imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["GEMINI_API_KEY"] = ""
os.environ["OPENAI_API_KEY"] = ""
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["RATE_LIMIT_REQUESTS"] = "10000"

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from app.config import Settings
from app.exceptions import PersistenceError, ProviderError
from app.schemas.ai import AIRequest, AIResponse, ProviderDescriptor, TokenUsage
from app.services.dispatcher import AIDispatcher
from app.services.embedding_repository import EmbeddingRepository
from app.services.provider_base import ProviderCapability


# ══════════════════════════════════════════════════════════════════════════
# Fakes
# ══════════════════════════════════════════════════════════════════════════

class FakeClock:
    """Callable time source that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider(ProviderCapability):
    """
    Scripted provider.

    available:  value probe() returns
    error:      exception raised by every generate()/embed() call
    fail_when:  predicate; generate() raises a terminal ProviderError when true
    delay:      seconds generate() sleeps (for timeout and concurrency tests)
    vectors:    fixed embedding per text; others get a deterministic vector
    """

    def __init__(
        self,
        name: str,
        *,
        available: bool = True,
        error: Optional[Exception] = None,
        fail_when: Optional[Callable[[AIRequest], bool]] = None,
        delay: float = 0.0,
        vectors: Optional[Dict[str, List[float]]] = None,
    ):
        self.name = name
        self.model = f"{name}-model"
        self.embedding_model = f"{name}-embed"
        self.available = available
        self.error = error
        self.fail_when = fail_when
        self.delay = delay
        self.vectors = vectors or {}

        self.probe_calls = 0
        self.generate_calls: List[AIRequest] = []
        self.embed_calls: List[List[str]] = []
        self.active = 0
        self.max_active = 0

    async def probe(self) -> bool:
        self.probe_calls += 1
        return self.available

    async def generate(self, request: AIRequest) -> AIResponse:
        self.generate_calls.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            if self.fail_when is not None and self.fail_when(request):
                raise ProviderError(provider=self.name, message=f"{self.name} rejected request", retryable=False)
            return AIResponse(
                content=f"{self.name}: {request.content}",
                provider=self.name,
                model=self.model,
                tokens_used=TokenUsage(input=1, output=2, total=3),
                cost=0.001,
                response_time_ms=1,
            )
        finally:
            self.active -= 1

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.embed_calls.append(list(texts))
        if self.error is not None:
            raise self.error
        return [self.vectors.get(t, self._default_vector(t)) for t in texts]

    @staticmethod
    def _default_vector(text: str) -> List[float]:
        return [float(len(text)), float(sum(map(ord, text)) % 7 + 1), 1.0]


class InMemoryEmbeddingRepository(EmbeddingRepository):
    """Dict-backed persistence collaborator with injectable save failures."""

    def __init__(self, notes: Optional[Dict[str, str]] = None):
        self.notes: Dict[str, str] = dict(notes or {})
        self.embeddings: Dict[str, List[float]] = {}
        self.metadata: Dict[str, dict] = {}
        self.fail_save_for: set = set()
        self.save_calls: List[str] = []
        self.save_delay = 0.0

    async def has_embedding(self, entity_id: str) -> bool:
        return entity_id in self.embeddings

    async def save_embedding(self, entity_id: str, vector: List[float], metadata: dict) -> None:
        self.save_calls.append(entity_id)
        if self.save_delay:
            await asyncio.sleep(self.save_delay)
        if entity_id in self.fail_save_for:
            raise PersistenceError(message="disk full", entity_ids=[entity_id])
        self.embeddings[entity_id] = list(vector)
        self.metadata[entity_id] = dict(metadata)

    async def find_by_ids(self, entity_ids: Sequence[str]) -> Dict[str, str]:
        return {i: self.notes[i] for i in entity_ids if i in self.notes}

    async def load_embeddings(self) -> Dict[str, List[float]]:
        return dict(self.embeddings)


# ══════════════════════════════════════════════════════════════════════════
# Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_dispatcher():
    """
    Factory: make_dispatcher([(descriptor_kwargs, provider), ...], **dispatcher_kwargs).

    Pacing delay defaults to zero and the provider timeout to one second.
    """

    def _make(providers: Sequence[Tuple[dict, ProviderCapability]], **kwargs) -> AIDispatcher:
        kwargs.setdefault("inter_batch_delay", 0.0)
        kwargs.setdefault("provider_timeout", 1.0)
        dispatcher = AIDispatcher(**kwargs)
        for descriptor_kwargs, provider in providers:
            dispatcher.register_provider(ProviderDescriptor(**descriptor_kwargs), provider)
        return dispatcher

    return _make


@pytest.fixture
def repository() -> InMemoryEmbeddingRepository:
    return InMemoryEmbeddingRepository(
        notes={
            "n1": "Grocery list: milk, eggs, bread",
            "n2": "Meeting notes: quarterly planning",
            "n3": "Recipe: banana bread",
        }
    )


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        dispatcher={"inter_batch_delay_ms": 0, "provider_timeout_s": 1.0},
        embedding={"inter_batch_delay_ms": 0},
    )


@pytest_asyncio.fixture
async def test_client(test_settings, repository):
    """
    HTTPX client over a fresh app whose components use fake providers.

    ASGITransport does not run the lifespan handler, so components are
    installed on app.state directly. The app is yielded alongside the client
    as `client.app` for tests that need to reach the components.
    """
    from app.main import build_components, create_app, install_components

    providers = {"gemini": FakeProvider("gemini"), "openai": FakeProvider("openai")}
    app = create_app()
    install_components(app, build_components(test_settings, capabilities=providers, repository=repository))

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        client.app = app
        client.providers = providers
        yield client

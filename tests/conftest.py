"""
Pytest configuration for the Synthesis RAG test suite.

Configures:
- pytest-asyncio for async test support
- In-process store, settings and fake provider clients so no test needs a
  network, a model download or a database
"""
from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Optional

import pytest

from synthesis_rag.config import BudgetFlags, Settings
from synthesis_rag.embedding.providers import EmbeddingClient, EmbeddingProvider, EmbeddingResponse
from synthesis_rag.embedding.router import EmbeddingRouter
from synthesis_rag.retrieval.reranker import RerankClient, RerankProvider
from synthesis_rag.store.memory import InMemoryStore

pytest_plugins = ["pytest_asyncio"]

# Each keyword owns one axis; the last axis is a small constant so no vector is all zeros.
VOCABULARY = ["cache", "query", "state", "widget", "stream", "database", "test", "layout"]


def keyword_vector(text: str) -> list[float]:
    lower = text.lower()
    return [float(lower.count(word)) for word in VOCABULARY] + [0.01]


class FakeEmbeddingClient(EmbeddingClient):
    """Deterministic keyword vectors; optionally fails every call."""

    def __init__(
        self,
        provider: EmbeddingProvider = EmbeddingProvider.OLLAMA,
        fail: Optional[Exception] = None,
        tokens_used: Optional[int] = None,
    ) -> None:
        self.provider = provider
        self.fail = fail
        self.tokens_used = tokens_used
        self.calls: list[tuple[str, str]] = []

    async def embed(self, text: str, model: str) -> EmbeddingResponse:
        self.calls.append((text, model))
        if self.fail is not None:
            raise self.fail
        return EmbeddingResponse(embedding=keyword_vector(text), tokens_used=self.tokens_used)


class FakeRerankClient(RerankClient):
    def __init__(
        self,
        provider: RerankProvider,
        scores: Optional[list[float]] = None,
        fail: Optional[Exception] = None,
    ) -> None:
        self.provider = provider
        self.scores = scores
        self.fail = fail
        self.calls: list[tuple[str, list[str]]] = []

    async def score(self, query: str, documents: list[str]) -> list[float]:
        self.calls.append((query, documents))
        if self.fail is not None:
            raise self.fail
        if self.scores is not None:
            return list(self.scores[: len(documents)])
        # Shared-word count, so the doc that repeats the query wins
        query_words = set(query.lower().split())
        return [float(len(query_words & set(doc.lower().split()))) for doc in documents]


class FakeAnthropicMessages:
    def __init__(self, replies: list[str], fail: Optional[Exception] = None) -> None:
        self.replies = list(replies)
        self.fail = fail
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.fail is not None:
            raise self.fail
        text = self.replies.pop(0) if self.replies else '{"contradiction": false}'
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text=text)],
            usage=SimpleNamespace(input_tokens=120, output_tokens=40),
        )


class FakeAnthropic:
    """Quacks like AsyncAnthropic for `client.messages.create(...)`."""

    def __init__(self, replies: Optional[list[str]] = None, fail: Optional[Exception] = None) -> None:
        self.messages = FakeAnthropicMessages(replies or [], fail)

    async def close(self) -> None:
        return None


class MutableClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def settings() -> Settings:
    return Settings(enable_cost_alerts=False, log_file=None)


@pytest.fixture
def budget_flags() -> BudgetFlags:
    return BudgetFlags()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def ollama_client() -> FakeEmbeddingClient:
    return FakeEmbeddingClient(EmbeddingProvider.OLLAMA)


@pytest.fixture
def router(ollama_client, settings, budget_flags) -> EmbeddingRouter:
    return EmbeddingRouter({EmbeddingProvider.OLLAMA: ollama_client}, settings, budget_flags)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc))

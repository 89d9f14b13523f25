"""
Tests for synthesis_rag/embedding/providers.py and router.py
Provider clients, profile selection, fallback and usage tracking.
"""
import math

import httpx
import pytest

from conftest import FakeEmbeddingClient, keyword_vector
from synthesis_rag.config import BudgetFlags, Settings
from synthesis_rag.costs.tracker import CostTracker
from synthesis_rag.embedding.providers import (
    EmbeddingProvider,
    OllamaEmbeddingClient,
    OpenAIEmbeddingClient,
    VoyageEmbeddingClient,
    get_profile,
    validate_vector,
)
from synthesis_rag.embedding.router import (
    ContentContext,
    EmbedOptions,
    EmbeddingRouter,
    derive_context_from_metadata,
    is_code_content,
)
from synthesis_rag.errors import InvalidConfiguration, InvalidProviderResponse, ProviderUnavailable


def _mock_http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestValidateVector:

    def test_accepts_finite_numbers(self):
        assert validate_vector([1, 2.5, -3], "ollama") == [1.0, 2.5, -3.0]

    @pytest.mark.parametrize(
        "value",
        [None, [], "1,2", [1.0, math.nan], [1.0, math.inf], [True, 1.0], [1.0, "2"]],
    )
    def test_rejects_invalid(self, value):
        with pytest.raises(InvalidProviderResponse):
            validate_vector(value, "ollama")


class TestProfiles:

    def test_known_profiles(self):
        assert get_profile("ollama").dimensions == 768
        assert get_profile("OpenAI").model == "text-embedding-3-large"
        assert get_profile("voyage").dimensions == 1024

    def test_unknown_provider_resolves_to_default(self):
        assert get_profile("nope").provider is EmbeddingProvider.OLLAMA
        assert get_profile(None).provider is EmbeddingProvider.OLLAMA


class TestOllamaClient:

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"embedding": [0.1, 0.2, 0.3]})

        client = OllamaEmbeddingClient(max_retries=3, retry_delay=0, http_client=_mock_http(handler))
        response = await client.embed("hello", "nomic-embed-text")

        assert response.embedding == [0.1, 0.2, 0.3]
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(500)

        client = OllamaEmbeddingClient(max_retries=2, retry_delay=0, http_client=_mock_http(handler))
        with pytest.raises(httpx.HTTPStatusError):
            await client.embed("hello", "nomic-embed-text")
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_client_errors_not_retried(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(400)

        client = OllamaEmbeddingClient(max_retries=3, retry_delay=0, http_client=_mock_http(handler))
        with pytest.raises(httpx.HTTPStatusError):
            await client.embed("hello", "nomic-embed-text")
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_malformed_payload(self):
        client = OllamaEmbeddingClient(
            retry_delay=0,
            http_client=_mock_http(lambda r: httpx.Response(200, json={"embedding": []})),
        )
        with pytest.raises(InvalidProviderResponse):
            await client.embed("hello", "nomic-embed-text")

    def test_negative_settings_rejected(self):
        with pytest.raises(ValueError):
            OllamaEmbeddingClient(max_retries=-1)


class TestPaidClients:

    @pytest.mark.asyncio
    async def test_missing_keys_unavailable(self):
        with pytest.raises(ProviderUnavailable):
            await OpenAIEmbeddingClient(api_key=None).embed("x", "text-embedding-3-large")
        with pytest.raises(ProviderUnavailable):
            await VoyageEmbeddingClient(api_key=None).embed("x", "voyage-code-2")

    @pytest.mark.asyncio
    async def test_voyage_parses_usage(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "Bearer vk"
            return httpx.Response(
                200, json={"data": [{"embedding": [0.5, 0.5]}], "usage": {"total_tokens": 7}}
            )

        client = VoyageEmbeddingClient(api_key="vk", http_client=_mock_http(handler))
        response = await client.embed("def f(): pass", "voyage-code-2")
        assert response.embedding == [0.5, 0.5]
        assert response.tokens_used == 7


class TestContentClassification:

    @pytest.mark.parametrize(
        "text",
        [
            "import 'package:flutter/material.dart';",
            "class CacheService {\n}",
            "function load() {}",
            "const limit = 10;",
            "#include <stdio.h>",
            "x = 1 // counter",
        ],
    )
    def test_code_detected(self, text):
        assert is_code_content(text)

    def test_prose_and_urls_are_not_code(self):
        assert not is_code_content("See https://dart.dev for the caching guide.")
        assert not is_code_content("")

    def test_language_hint(self):
        assert is_code_content("plain words", "Python")

    def test_context_from_metadata(self):
        assert derive_context_from_metadata({"doc_type": "code_sample"}).type == "code"
        assert derive_context_from_metadata({"framework": "flutter"}).type == "code"
        assert derive_context_from_metadata({"doc_type": "personal_writing"}).type == "personal"
        assert derive_context_from_metadata({"language": "en"}).type == "docs"
        assert derive_context_from_metadata({}) is None


class TestProfileSelection:

    def _router(self, settings=None, flags=None) -> EmbeddingRouter:
        return EmbeddingRouter({}, settings or Settings(), flags or BudgetFlags())

    def test_explicit_provider_wins(self):
        profile = self._router().select_profile("import x", EmbedOptions(provider="openai"))
        assert profile.provider is EmbeddingProvider.OPENAI
        assert profile.selection == "explicit"

    def test_explicit_model_override(self):
        profile = self._router().select_profile("x", EmbedOptions(provider="openai", model="custom"))
        assert profile.model == "custom"

    def test_code_routes_to_voyage(self):
        profile = self._router().select_profile("class Foo {}")
        assert profile.provider is EmbeddingProvider.VOYAGE
        assert profile.selection == "content"

    def test_personal_routes_to_openai(self):
        options = EmbedOptions(context=ContentContext(type="personal"))
        assert self._router().select_profile("dear diary", options).provider is EmbeddingProvider.OPENAI

    def test_environment_override_for_docs(self):
        router = self._router(Settings(doc_embedding_provider="voyage"))
        profile = router.select_profile("plain documentation")
        assert profile.provider is EmbeddingProvider.VOYAGE
        assert profile.selection == "environment"

    def test_builtin_default(self):
        profile = self._router().select_profile("plain documentation")
        assert profile.provider is EmbeddingProvider.OLLAMA
        assert profile.selection == "default"

    def test_budget_forces_local_even_when_explicit(self):
        flags = BudgetFlags()
        flags.enable_fallback_mode()
        profile = self._router(flags=flags).select_profile("x", EmbedOptions(provider="openai"))
        assert profile.provider is EmbeddingProvider.OLLAMA
        assert profile.selection == "budget"


class TestRouterEmbedding:

    @pytest.mark.asyncio
    async def test_fallback_to_local(self, settings, budget_flags):
        ollama = FakeEmbeddingClient(EmbeddingProvider.OLLAMA)
        openai = FakeEmbeddingClient(EmbeddingProvider.OPENAI, fail=ProviderUnavailable("no key"))
        router = EmbeddingRouter(
            {EmbeddingProvider.OLLAMA: ollama, EmbeddingProvider.OPENAI: openai}, settings, budget_flags
        )

        result = await router.embed("cache", EmbedOptions(provider="openai"))

        assert result.used_fallback is True
        assert result.provider == "ollama"
        assert result.model == "nomic-embed-text"
        assert result.dimensions == len(keyword_vector("cache"))
        assert len(openai.calls) == 1 and len(ollama.calls) == 1

    @pytest.mark.asyncio
    async def test_local_failure_propagates(self, settings, budget_flags):
        ollama = FakeEmbeddingClient(EmbeddingProvider.OLLAMA, fail=RuntimeError("ollama down"))
        router = EmbeddingRouter({EmbeddingProvider.OLLAMA: ollama}, settings, budget_flags)

        with pytest.raises(RuntimeError, match="ollama down"):
            await router.embed("cache")
        assert len(ollama.calls) == 1

    @pytest.mark.asyncio
    async def test_batch_preserves_order(self, router):
        texts = ["cache", "query query", "state", "widget widget widget"]
        results = await router.embed_batch(texts, EmbedOptions(batch_size=3))
        assert [r.embedding for r in results] == [keyword_vector(t) for t in texts]

    @pytest.mark.asyncio
    async def test_batch_edge_cases(self, router):
        assert await router.embed_batch([]) == []
        with pytest.raises(InvalidConfiguration):
            await router.embed_batch(["x"], EmbedOptions(batch_size=0))

    @pytest.mark.asyncio
    async def test_paid_usage_recorded(self, store, settings, budget_flags):
        tracker = CostTracker(store, settings, budget_flags)
        openai = FakeEmbeddingClient(EmbeddingProvider.OPENAI)
        router = EmbeddingRouter({EmbeddingProvider.OPENAI: openai}, settings, budget_flags, tracker)

        await router.embed("a" * 10, EmbedOptions(provider="openai", collection_id="c1"))

        assert len(store.usage) == 1
        record = store.usage[0]
        assert record.provider == "openai"
        assert record.operation == "embedding"
        assert record.tokens_used == 3
        assert record.collection_id == "c1"

    @pytest.mark.asyncio
    async def test_local_usage_not_recorded(self, store, settings, budget_flags, ollama_client):
        tracker = CostTracker(store, settings, budget_flags)
        router = EmbeddingRouter({EmbeddingProvider.OLLAMA: ollama_client}, settings, budget_flags, tracker)
        await router.embed("cache")
        assert store.usage == []

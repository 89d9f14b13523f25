"""
Embedding Provider Clients
---------------------------
One client class per provider kind, all exposing the same coroutine:

    response = await client.embed(text, model)

  OllamaEmbeddingClient  -- local, free; retries transient failures (tenacity)
  OpenAIEmbeddingClient  -- text-embedding-3-large via the async OpenAI SDK
  VoyageEmbeddingClient  -- voyage-code-2 via the Voyage REST API (httpx)

Clients are created once by `build_embedding_clients()` and injected into the
EmbeddingRouter. A paid client constructed without an API key raises
ProviderUnavailable at call time, which the router treats like any other
provider failure and falls back to the local provider.
"""
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx
from loguru import logger
from openai import AsyncOpenAI
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from synthesis_rag.config import Settings
from synthesis_rag.errors import InvalidProviderResponse, ProviderUnavailable

HTTP_TIMEOUT_SECONDS = 30.0
VOYAGE_API_URL = "https://api.voyageai.com/v1/embeddings"


class EmbeddingProvider(str, Enum):
    OLLAMA = "ollama"
    OPENAI = "openai"
    VOYAGE = "voyage"

    @classmethod
    def parse(cls, value: Any) -> Optional["EmbeddingProvider"]:
        """Return the member for `value`, or None if it names no provider."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


PAID_PROVIDERS = frozenset({EmbeddingProvider.OPENAI, EmbeddingProvider.VOYAGE})
LOCAL_PROVIDER = EmbeddingProvider.OLLAMA


@dataclass(frozen=True)
class EmbeddingProfile:
    """Provider + model + vector size, tagged with how it was selected."""

    provider: EmbeddingProvider
    model: str
    dimensions: int
    selection: str = "default"     # explicit | content | environment | default | fallback | budget

    def tagged(self, selection: str) -> "EmbeddingProfile":
        return EmbeddingProfile(self.provider, self.model, self.dimensions, selection)


PROFILES: dict[EmbeddingProvider, EmbeddingProfile] = {
    EmbeddingProvider.OLLAMA: EmbeddingProfile(EmbeddingProvider.OLLAMA, "nomic-embed-text", 768),
    EmbeddingProvider.OPENAI: EmbeddingProfile(EmbeddingProvider.OPENAI, "text-embedding-3-large", 1536),
    EmbeddingProvider.VOYAGE: EmbeddingProfile(EmbeddingProvider.VOYAGE, "voyage-code-2", 1024),
}


def get_profile(provider: Any, fallback: EmbeddingProvider = LOCAL_PROVIDER) -> EmbeddingProfile:
    """Profile for `provider`; unknown or missing names resolve to `fallback`."""
    parsed = EmbeddingProvider.parse(provider)
    return PROFILES[parsed or fallback]


@dataclass
class EmbeddingResponse:
    embedding: list[float]
    tokens_used: Optional[int] = None      # As reported by the provider, when it reports usage


def validate_vector(value: Any, provider: str) -> list[float]:
    """
    Accept only a non-empty list of finite numbers (bools rejected).

    Raises InvalidProviderResponse otherwise.
    """
    if not isinstance(value, (list, tuple)):
        raise InvalidProviderResponse(f"{provider} embedding response missing embedding array")
    if len(value) == 0:
        raise InvalidProviderResponse(f"{provider} embedding array must contain at least one value")

    vector: list[float] = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (int, float)) or not math.isfinite(item):
            raise InvalidProviderResponse(f"{provider} embedding values must be finite numbers")
        vector.append(float(item))
    return vector


# --- Clients ------------------------------------------------------------------

class EmbeddingClient(ABC):
    """Single-text embedding call against one provider."""

    provider: EmbeddingProvider

    @abstractmethod
    async def embed(self, text: str, model: str) -> EmbeddingResponse:
        ...

    async def aclose(self) -> None:
        return None


def _is_transient(exc: BaseException) -> bool:
    """Network errors, 5xx and 429 are worth retrying; everything else is not."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status == 429
    return False


class OllamaEmbeddingClient(EmbeddingClient):
    """
    Local embedding server. Transient failures are retried with exponential
    backoff: 1 + max_retries attempts in total, waiting retry_delay seconds
    after the first failure and doubling after each further one.
    """

    provider = EmbeddingProvider.OLLAMA

    def __init__(
        self,
        host: str = "http://localhost:11434",
        max_retries: int = 3,
        retry_delay: float = 0.25,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if retry_delay < 0:
            raise ValueError("retry_delay cannot be negative")
        self.host = host.rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._http = http_client or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)

    async def embed(self, text: str, model: str) -> EmbeddingResponse:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(1 + self.max_retries),
            wait=wait_exponential(multiplier=self.retry_delay, min=0),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.debug(
                        f"[Ollama] Retry {attempt.retry_state.attempt_number - 1}"
                        f"/{self.max_retries} for model={model}"
                    )
                response = await self._http.post(
                    f"{self.host}/api/embeddings",
                    json={"model": model, "prompt": text},
                )
                response.raise_for_status()

        payload = response.json()
        embedding = payload.get("embedding") if isinstance(payload, dict) else None
        return EmbeddingResponse(embedding=validate_vector(embedding, "ollama"))

    async def aclose(self) -> None:
        await self._http.aclose()


class OpenAIEmbeddingClient(EmbeddingClient):
    provider = EmbeddingProvider.OPENAI

    def __init__(
        self,
        api_key: Optional[str] = None,
        dimensions: int = PROFILES[EmbeddingProvider.OPENAI].dimensions,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.api_key = api_key
        self.dimensions = dimensions
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.api_key:
                raise ProviderUnavailable("OPENAI_API_KEY is not configured")
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=HTTP_TIMEOUT_SECONDS)
        return self._client

    async def embed(self, text: str, model: str) -> EmbeddingResponse:
        client = self._get_client()
        # Replace empty strings with a space to avoid API errors
        safe_text = text if text.strip() else " "
        response = await client.embeddings.create(
            model=model, input=safe_text, dimensions=self.dimensions
        )
        if not response.data:
            raise InvalidProviderResponse("openai embedding response contained no data")
        tokens = response.usage.total_tokens if response.usage else None
        return EmbeddingResponse(
            embedding=validate_vector(response.data[0].embedding, "openai"),
            tokens_used=tokens,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


class VoyageEmbeddingClient(EmbeddingClient):
    provider = EmbeddingProvider.VOYAGE

    def __init__(
        self,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        api_url: str = VOYAGE_API_URL,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self._http = http_client or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)

    async def embed(self, text: str, model: str) -> EmbeddingResponse:
        if not self.api_key:
            raise ProviderUnavailable("VOYAGE_API_KEY is not configured")

        response = await self._http.post(
            self.api_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={"input": [text], "model": model},
        )
        response.raise_for_status()
        payload = response.json()

        try:
            embedding = payload["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as exc:
            raise InvalidProviderResponse(f"voyage embedding response malformed: {exc}") from exc

        usage = payload.get("usage") or {}
        tokens = usage.get("total_tokens") if isinstance(usage, dict) else None
        return EmbeddingResponse(
            embedding=validate_vector(embedding, "voyage"),
            tokens_used=int(tokens) if isinstance(tokens, (int, float)) else None,
        )

    async def aclose(self) -> None:
        await self._http.aclose()


# --- Factory ------------------------------------------------------------------

def build_embedding_client(
    provider: EmbeddingProvider,
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> EmbeddingClient:
    if provider is EmbeddingProvider.OLLAMA:
        return OllamaEmbeddingClient(
            host=settings.ollama_host,
            max_retries=settings.embed_max_retries,
            retry_delay=settings.embed_retry_delay,
            http_client=http_client,
        )
    if provider is EmbeddingProvider.OPENAI:
        return OpenAIEmbeddingClient(api_key=settings.openai_api_key)
    if provider is EmbeddingProvider.VOYAGE:
        return VoyageEmbeddingClient(api_key=settings.voyage_api_key, http_client=http_client)
    raise ProviderUnavailable(f"No embedding client for provider {provider!r}")


def build_embedding_clients(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> dict[EmbeddingProvider, EmbeddingClient]:
    """One client per provider kind, sharing `http_client` when given."""
    clients = {
        provider: build_embedding_client(provider, settings, http_client)
        for provider in EmbeddingProvider
    }
    configured = [p.value for p in PAID_PROVIDERS if _has_key(p, settings)]
    logger.info(
        f"[Embedding] Clients ready | local={settings.ollama_host} | "
        f"paid with credentials: {sorted(configured) or 'none'}"
    )
    return clients


def _has_key(provider: EmbeddingProvider, settings: Settings) -> bool:
    if provider is EmbeddingProvider.OPENAI:
        return bool(settings.openai_api_key)
    if provider is EmbeddingProvider.VOYAGE:
        return bool(settings.voyage_api_key)
    return True

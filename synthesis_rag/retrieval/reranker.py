"""
Cross-Encoder Reranker
-----------------------
Re-scores retrieved chunks against the query with a cross-encoder, which
reads query and chunk together and is far more precise than the bi-encoder
similarity used for retrieval.

Providers:
  cohere  -- hosted rerank-english-v3.0 (paid, one request per call)
  bge     -- local BAAI/bge-reranker-base via sentence-transformers
  none    -- passthrough; rerank_score = retrieval similarity

Degradation: cohere failure -> bge once; bge failure -> passthrough tagged
`none`. Reranking never raises for provider problems.
"""
from __future__ import annotations

import asyncio
import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

import httpx
from langsmith import traceable
from loguru import logger
from sentence_transformers import CrossEncoder

from synthesis_rag.config import MAX_RERANK_CANDIDATES, BudgetFlags, Settings
from synthesis_rag.errors import InvalidProviderResponse, ProviderUnavailable
from synthesis_rag.schemas import SearchResult

if TYPE_CHECKING:
    from synthesis_rag.costs.tracker import CostTracker

COHERE_RERANK_URL = "https://api.cohere.com/v2/rerank"
COHERE_MODEL = "rerank-english-v3.0"
COHERE_TIMEOUT_SECONDS = 10.0
BGE_MODEL = "BAAI/bge-reranker-base"


class RerankProvider(str, Enum):
    COHERE = "cohere"
    BGE = "bge"
    NONE = "none"

    @classmethod
    def parse(cls, value: Any) -> Optional["RerankProvider"]:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass
class RerankOptions:
    provider: Optional[str] = None
    top_k: Optional[int] = None
    max_candidates: Optional[int] = None


def _finite(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    return score if math.isfinite(score) else 0.0


def _positive(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return None
    return value


# --- Clients -------------------------------------------------------------------

class RerankClient(ABC):
    provider: RerankProvider

    @abstractmethod
    async def score(self, query: str, documents: list[str]) -> list[float]:
        """One relevance score per document, in input order."""

    async def aclose(self) -> None:
        return None


class CohereRerankClient(RerankClient):
    provider = RerankProvider.COHERE

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = COHERE_MODEL,
        http_client: Optional[httpx.AsyncClient] = None,
        api_url: str = COHERE_RERANK_URL,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_url = api_url
        self._http = http_client or httpx.AsyncClient(timeout=COHERE_TIMEOUT_SECONDS)

    async def score(self, query: str, documents: list[str]) -> list[float]:
        if not self.api_key:
            raise ProviderUnavailable("COHERE_API_KEY is required for Cohere reranking")

        response = await self._http.post(
            self.api_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": self.model,
                "query": query,
                "documents": documents,
                "top_n": len(documents),
            },
            timeout=COHERE_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        payload = response.json()

        entries = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(entries, list):
            raise InvalidProviderResponse("cohere rerank response missing results")

        scores = [0.0] * len(documents)
        for entry in entries:
            index = entry.get("index") if isinstance(entry, dict) else None
            if isinstance(index, int) and 0 <= index < len(documents):
                scores[index] = _finite(entry.get("relevance_score"))
        return scores

    async def aclose(self) -> None:
        await self._http.aclose()


class BGERerankClient(RerankClient):
    """
    Local cross-encoder. The model is loaded on first use and inference runs
    in a worker thread so the event loop keeps serving other requests.
    """

    provider = RerankProvider.BGE

    def __init__(self, model_name: str = BGE_MODEL, batch_size: int = 8) -> None:
        self.model_name = model_name
        self.batch_size = max(1, batch_size)
        self._model: Optional[CrossEncoder] = None
        self._load_lock = threading.Lock()

    def _load(self) -> CrossEncoder:
        with self._load_lock:
            if self._model is None:
                logger.info(f"[Reranker] Loading cross-encoder {self.model_name}")
                self._model = CrossEncoder(self.model_name)
            return self._model

    async def score(self, query: str, documents: list[str]) -> list[float]:
        model = await asyncio.to_thread(self._load)
        scores: list[float] = []
        for i in range(0, len(documents), self.batch_size):
            pairs = [(query, doc) for doc in documents[i: i + self.batch_size]]
            batch_scores = await asyncio.to_thread(model.predict, pairs)
            scores.extend(_finite(s) for s in batch_scores)
        return scores


def build_rerank_clients(
    settings: Settings, http_client: Optional[httpx.AsyncClient] = None
) -> dict[RerankProvider, RerankClient]:
    return {
        RerankProvider.COHERE: CohereRerankClient(api_key=settings.cohere_api_key, http_client=http_client),
        RerankProvider.BGE: BGERerankClient(batch_size=settings.rerank_batch_size),
    }


# --- Reranker -------------------------------------------------------------------

class Reranker:
    """
    Usage:
        reranker = Reranker(build_rerank_clients(settings), settings, flags)
        top = await reranker.rerank(query, hybrid.results, RerankOptions(top_k=5))
    """

    def __init__(
        self,
        clients: dict[RerankProvider, RerankClient],
        settings: Optional[Settings] = None,
        budget_flags: Optional[BudgetFlags] = None,
        cost_tracker: Optional["CostTracker"] = None,
    ) -> None:
        self.clients = clients
        self.settings = settings or Settings()
        self.budget_flags = budget_flags or BudgetFlags()
        self.cost_tracker = cost_tracker

    def select_provider(self, requested: Optional[str] = None) -> RerankProvider:
        provider = (
            RerankProvider.parse(requested)
            or RerankProvider.parse(self.settings.reranker_provider)
            or RerankProvider.BGE
        )
        if provider is RerankProvider.COHERE:
            if self.budget_flags.force_local_rerank or not self.settings.cohere_api_key:
                return RerankProvider.BGE
        return provider

    @traceable(name="rerank", run_type="chain")
    async def rerank(
        self,
        query: str,
        candidates: list[SearchResult],
        options: Optional[RerankOptions] = None,
    ) -> list[SearchResult]:
        if not candidates:
            return []
        options = options or RerankOptions()

        provider = self.select_provider(options.provider)
        top_k = min(_positive(options.top_k) or self.settings.rerank_default_top_k, len(candidates))
        max_candidates = min(
            _positive(options.max_candidates) or self.settings.rerank_max_candidates,
            MAX_RERANK_CANDIDATES,
            len(candidates),
        )

        if provider is RerankProvider.NONE:
            return self._passthrough(candidates[:top_k])

        pool = candidates[:max_candidates]
        try:
            return (await self._rerank_with(provider, query, pool))[:top_k]
        except Exception as exc:
            logger.warning(f"[Reranker] {provider.value} failed: {exc}")

        if provider is RerankProvider.COHERE:
            try:
                return (await self._rerank_with(RerankProvider.BGE, query, pool))[:top_k]
            except Exception as exc:
                logger.warning(f"[Reranker] bge fallback failed: {exc}")

        logger.warning("[Reranker] Falling back to retrieval order")
        return self._passthrough(pool[:top_k])

    async def _rerank_with(
        self, provider: RerankProvider, query: str, candidates: list[SearchResult]
    ) -> list[SearchResult]:
        client = self.clients.get(provider)
        if client is None:
            raise ProviderUnavailable(f"No rerank client registered for {provider.value}")

        scores = await client.score(query, [c.text for c in candidates])
        if len(scores) != len(candidates):
            raise InvalidProviderResponse(
                f"{provider.value} returned {len(scores)} scores for {len(candidates)} candidates"
            )

        if provider is RerankProvider.COHERE:
            await self._record_usage()

        reranked = [
            c.model_copy(
                update={
                    "rerank_score": _finite(score),
                    "rerank_provider": provider.value,
                    "original_similarity": c.similarity,
                }
            )
            for c, score in zip(candidates, scores)
        ]
        reranked.sort(key=lambda r: r.rerank_score, reverse=True)

        logger.info(
            f"[Reranker] {provider.value} | {len(candidates)} candidates "
            f"| top score: {reranked[0].rerank_score:.3f}"
        )
        return reranked

    @staticmethod
    def _passthrough(items: list[SearchResult]) -> list[SearchResult]:
        return [
            item.model_copy(
                update={
                    "rerank_score": _finite(item.similarity),
                    "rerank_provider": RerankProvider.NONE.value,
                    "original_similarity": item.similarity,
                }
            )
            for item in items
        ]

    async def _record_usage(self) -> None:
        if self.cost_tracker is None:
            return
        try:
            # Cohere bills per request, not per token
            await self.cost_tracker.track(
                provider="cohere", operation="rerank", tokens_used=1, model=COHERE_MODEL
            )
        except Exception as exc:
            logger.error(f"[Reranker] Cost tracking failed: {exc}")

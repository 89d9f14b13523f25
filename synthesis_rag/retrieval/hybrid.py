"""
Hybrid Retriever
-----------------
Runs vector and lexical search concurrently and fuses the two rankings with
weighted Reciprocal Rank Fusion:

    fused(chunk) = sum over lists containing chunk of  weight / (k + rank)

with 1-based ranks. RRF only looks at positions, so it is robust to the two
searchers scoring on different scales. Each leg is asked for 3x top_k
candidates so fusion has enough overlap to work with.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Optional

from langsmith import traceable
from loguru import logger
from pydantic import BaseModel

from synthesis_rag.retrieval.lexical import LexicalSearcher, validate_query
from synthesis_rag.retrieval.vector import DEFAULT_MIN_SIMILARITY, VectorSearcher
from synthesis_rag.schemas import SearchResult

DEFAULT_TOP_K = 10
DEFAULT_RRF_K = 60
CANDIDATE_MULTIPLIER = 3
MAX_CANDIDATES = 150


@dataclass(frozen=True)
class FusionWeights:
    vector: float = 0.7
    lexical: float = 0.3


class HybridSearchResponse(BaseModel):
    results: list[SearchResult]
    elapsed_ms: int
    vector_count: int
    lexical_count: int


def fuse_results(
    vector_results: list[SearchResult],
    lexical_results: list[SearchResult],
    weights: FusionWeights = FusionWeights(),
    rrf_k: int = DEFAULT_RRF_K,
) -> list[SearchResult]:
    """
    Merge two ranked lists by chunk id. Results present in both lists keep
    their similarity and lexical score and are tagged `both`. Returned in
    descending fused score; ties keep first-seen order.
    """
    fused: dict[int, SearchResult] = {}

    for position, result in enumerate(vector_results, start=1):
        fused[result.chunk_id] = result.model_copy(
            update={
                "fused_score": weights.vector / (rrf_k + position),
                "source": "vector",
            }
        )

    for position, result in enumerate(lexical_results, start=1):
        contribution = weights.lexical / (rrf_k + position)
        existing = fused.get(result.chunk_id)
        if existing is not None:
            existing.lexical_score = result.lexical_score
            existing.rank = result.rank
            existing.fused_score = (existing.fused_score or 0.0) + contribution
            existing.source = "both"
        else:
            fused[result.chunk_id] = result.model_copy(
                update={"fused_score": contribution, "source": "lexical", "similarity": 0.0}
            )

    return sorted(fused.values(), key=lambda r: r.fused_score or 0.0, reverse=True)


class HybridRetriever:
    """
    Usage:
        retriever = HybridRetriever(vector_searcher, lexical_searcher)
        response = await retriever.search("state management", collection_id)
    """

    def __init__(self, vector: VectorSearcher, lexical: LexicalSearcher) -> None:
        self.vector = vector
        self.lexical = lexical

    @traceable(name="hybrid_search", run_type="retriever")
    async def search(
        self,
        query: str,
        collection_id: str,
        top_k: int = DEFAULT_TOP_K,
        weights: Optional[FusionWeights] = None,
        rrf_k: int = DEFAULT_RRF_K,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
    ) -> HybridSearchResponse:
        trimmed = validate_query(query, top_k)
        weights = weights or FusionWeights()
        candidates = min(max(top_k * CANDIDATE_MULTIPLIER, top_k), MAX_CANDIDATES)

        start = time.perf_counter()
        vector_response, lexical_results = await asyncio.gather(
            self.vector.search(trimmed, collection_id, top_k=candidates, min_similarity=min_similarity),
            self.lexical.search(trimmed, collection_id, top_k=candidates),
        )

        fused = fuse_results(vector_response.results, lexical_results, weights, rrf_k)[:top_k]
        elapsed_ms = round((time.perf_counter() - start) * 1000)

        logger.info(
            f"[HybridRetriever] {len(fused)} results "
            f"(vector={len(vector_response.results)}, lexical={len(lexical_results)}) | {elapsed_ms}ms"
        )
        return HybridSearchResponse(
            results=fused,
            elapsed_ms=elapsed_ms,
            vector_count=len(vector_response.results),
            lexical_count=len(lexical_results),
        )

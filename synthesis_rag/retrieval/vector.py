"""
Vector Searcher
----------------
Embeds the query through the EmbeddingRouter and asks the store for the
nearest chunks by cosine similarity, dropping anything below
`min_similarity`. Query embedding failures propagate to the caller.
"""
from __future__ import annotations

import time
from typing import Optional

from langsmith import traceable
from loguru import logger

from synthesis_rag.embedding.router import EmbedOptions, EmbeddingRouter
from synthesis_rag.retrieval.lexical import validate_query
from synthesis_rag.schemas import SearchResponse, SearchResult
from synthesis_rag.store.base import DocumentStore

DEFAULT_TOP_K = 5
DEFAULT_MIN_SIMILARITY = 0.5


class VectorSearcher:

    def __init__(self, store: DocumentStore, router: EmbeddingRouter) -> None:
        self.store = store
        self.router = router

    @traceable(name="vector_search", run_type="retriever")
    async def search(
        self,
        query: str,
        collection_id: str,
        top_k: int = DEFAULT_TOP_K,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
        options: Optional[EmbedOptions] = None,
    ) -> SearchResponse:
        trimmed = validate_query(query, top_k)
        start = time.perf_counter()

        embed_options = options or EmbedOptions(collection_id=collection_id)
        embedded = await self.router.embed(trimmed, embed_options)

        hits = await self.store.vector_search(
            collection_id, embedded.embedding, top_k, min_similarity
        )
        results = [SearchResult.from_hit(hit, similarity=hit.score) for hit in hits]
        elapsed_ms = round((time.perf_counter() - start) * 1000)

        logger.debug(
            f"[VectorSearch] {len(results)} results | provider={embedded.provider} "
            f"| {elapsed_ms}ms"
        )
        return SearchResponse(
            query=trimmed,
            results=results,
            total_results=len(results),
            search_time_ms=elapsed_ms,
        )

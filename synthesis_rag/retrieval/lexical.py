"""
Lexical Searcher
-----------------
Keyword search over chunk text. Every query term must appear (as a prefix)
in a result; scores are the store's raw rank normalised by the top hit, so
the best match always scores 1.0.
"""
from __future__ import annotations

import re
from typing import Optional

from langsmith import traceable
from loguru import logger

from synthesis_rag.errors import InvalidQuery, InvalidTopK
from synthesis_rag.schemas import SearchResult
from synthesis_rag.store.base import DocumentStore

DEFAULT_TOP_K = 30
DEFAULT_LANGUAGE = "english"


def query_terms(query: str) -> list[str]:
    """Split on whitespace after replacing anything that is not a word character."""
    return re.sub(r"[^\w]", " ", query).split()


def validate_query(query: str, top_k: int) -> str:
    """Return the trimmed query, or raise InvalidQuery / InvalidTopK."""
    trimmed = (query or "").strip()
    if not trimmed:
        raise InvalidQuery("Query must not be empty")
    if isinstance(top_k, bool) or not isinstance(top_k, int) or top_k <= 0:
        raise InvalidTopK("top_k must be a positive integer")
    return trimmed


class LexicalSearcher:

    def __init__(self, store: DocumentStore, language: Optional[str] = None) -> None:
        self.store = store
        self.language = (language or "").strip() or DEFAULT_LANGUAGE

    @traceable(name="lexical_search", run_type="retriever")
    async def search(
        self,
        query: str,
        collection_id: str,
        top_k: int = DEFAULT_TOP_K,
        language: Optional[str] = None,
    ) -> list[SearchResult]:
        trimmed = validate_query(query, top_k)
        terms = query_terms(trimmed)
        if not terms:
            raise InvalidQuery("Query must contain alphanumeric characters")

        hits = await self.store.lexical_search(
            collection_id, terms, top_k, language or self.language
        )
        if not hits:
            logger.debug(f"[LexicalSearch] No results for {trimmed[:80]!r}")
            return []

        max_rank = max(h.score for h in hits)
        divisor = max_rank if max_rank > 0 else 1.0

        results = [
            SearchResult.from_hit(hit, lexical_score=hit.score / divisor, rank=position)
            for position, hit in enumerate(hits, start=1)
        ]
        logger.debug(f"[LexicalSearch] {len(results)} results for {trimmed[:80]!r}")
        return results

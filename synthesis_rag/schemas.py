"""
Core Pydantic schemas shared by the engine.

Document and StoredChunk mirror the persisted row shapes that routing, UI and
agent layers outside this package depend on; do not rename their fields.
SearchResult is the transient record that flows from the searchers through
fusion and reranking to the caller.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Enumerations ------------------------------------------------------------

class DocumentStatus(str, Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    COMPLETE = "complete"
    ERROR = "error"


class AlertType(str, Enum):
    WARNING = "warning"
    LIMIT_REACHED = "limit_reached"


# --- Persisted Records ---------------------------------------------------------

class Collection(BaseModel):
    """A named, isolated namespace of documents."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Document(BaseModel):
    """A unit of ingested content, owned by a Collection."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    collection_id: str
    title: str

    # File info
    file_path: Optional[str] = None
    content_type: Optional[str] = None
    file_size: Optional[int] = None
    source_url: Optional[str] = None

    # Processing status
    status: DocumentStatus = DocumentStatus.PENDING
    error_message: Optional[str] = None

    metadata: dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


class ChunkWrite(BaseModel):
    """Upsert payload keyed by (doc_id, chunk_index)."""

    doc_id: str
    chunk_index: int
    text: str
    token_count: int
    embedding: Optional[list[float]] = None
    embedding_model: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class StoredChunk(BaseModel):
    """A chunk row as persisted."""

    id: int
    doc_id: str
    chunk_index: int
    text: str
    token_count: Optional[int] = None
    embedding: Optional[list[float]] = None
    embedding_model: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class UsageRecord(BaseModel):
    """Append-only log row for one paid API call."""

    id: Optional[int] = None
    provider: str
    operation: str
    tokens_used: int
    cost_usd: float
    model: Optional[str] = None
    collection_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class BudgetAlert(BaseModel):
    id: Optional[int] = None
    alert_type: AlertType
    threshold_usd: float
    current_spend_usd: float
    period: Literal["daily", "monthly"] = "monthly"
    triggered_at: datetime = Field(default_factory=utcnow)
    acknowledged: bool = False


class CostBreakdown(BaseModel):
    provider: str
    operation: str
    request_count: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    avg_cost_per_request: float = 0.0


# --- Search --------------------------------------------------------------------

class StoreHit(BaseModel):
    """Raw row returned by a store search primitive, before scoring."""

    chunk_id: int
    text: str
    doc_id: str
    doc_title: Optional[str] = None
    source_url: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    score: float = 0.0                    # ts_rank_cd / BM25 raw rank, or cosine similarity


class Citation(BaseModel):
    title: Optional[str] = None
    page: Optional[Any] = None
    section: Optional[Any] = None


class SearchResult(BaseModel):
    """
    One retrieved chunk. Which score fields are populated depends on how far
    the result has travelled: vector search sets `similarity`, lexical search
    sets `lexical_score` and `rank`, fusion sets `fused_score` and `source`,
    reranking sets `rerank_score`.
    """

    chunk_id: int
    text: str
    doc_id: str
    doc_title: Optional[str] = None
    source_url: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    citation: Citation = Field(default_factory=Citation)

    similarity: float = 0.0
    lexical_score: float = 0.0
    rank: Optional[int] = None
    fused_score: Optional[float] = None
    source: Optional[Literal["vector", "lexical", "both"]] = None

    rerank_score: Optional[float] = None
    rerank_provider: Optional[str] = None
    original_similarity: Optional[float] = None

    @classmethod
    def from_hit(cls, hit: StoreHit, **scores: Any) -> "SearchResult":
        metadata = hit.metadata if isinstance(hit.metadata, dict) else None
        return cls(
            chunk_id=hit.chunk_id,
            text=hit.text,
            doc_id=hit.doc_id,
            doc_title=hit.doc_title,
            source_url=hit.source_url,
            metadata=metadata,
            citation=Citation(
                title=hit.doc_title,
                page=(metadata or {}).get("page"),
                section=(metadata or {}).get("heading"),
            ),
            **scores,
        )


class SearchResponse(BaseModel):
    query: str
    results: list[SearchResult]
    total_results: int
    search_time_ms: int

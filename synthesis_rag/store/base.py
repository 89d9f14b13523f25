"""
Relational + vector store contract.

Everything the engine persists goes through DocumentStore: collections,
documents, chunks (with embeddings), API usage records and budget alerts.
Chunk writes happen inside `transaction()`, which yields a StoreSession;
leaving the block normally commits, raising rolls every write back.

Two implementations ship with the package:
  InMemoryStore  (store/memory.py)   -- faiss + rank_bm25, for tests and local runs
  PostgresStore  (store/postgres.py) -- pgvector + full-text search via SQLAlchemy async
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Optional

from synthesis_rag.schemas import (
    AlertType,
    BudgetAlert,
    Collection,
    CostBreakdown,
    Document,
    DocumentStatus,
    StoredChunk,
    StoreHit,
    ChunkWrite,
    UsageRecord,
)


class StoreSession(ABC):
    """Write handle shared by every upsert of one transaction."""

    @abstractmethod
    async def delete_document_chunks(self, doc_id: str) -> int:
        """Remove every chunk of `doc_id`. Returns the number removed."""

    @abstractmethod
    async def upsert_chunk(self, chunk: ChunkWrite) -> None:
        """Insert or replace the chunk keyed by (doc_id, chunk_index)."""


class DocumentStore(ABC):

    async def migrate(self) -> None:
        """Create the schema if the backend needs one."""
        return None

    async def close(self) -> None:
        return None

    # --- Collections ----------------------------------------------------------

    @abstractmethod
    async def create_collection(
        self, name: str, description: Optional[str] = None, collection_id: Optional[str] = None
    ) -> Collection:
        ...

    @abstractmethod
    async def get_collection(self, collection_id: str) -> Optional[Collection]:
        ...

    @abstractmethod
    async def list_collections(self) -> list[Collection]:
        ...

    # --- Documents ------------------------------------------------------------

    @abstractmethod
    async def create_document(self, document: Document) -> Document:
        ...

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    async def list_documents(self, collection_id: str) -> list[Document]:
        ...

    @abstractmethod
    async def update_document_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_message: Optional[str] = None,
    ) -> None:
        """
        Persist a status transition. `complete` stamps processed_at; any
        status other than `error` clears the error message.
        """

    @abstractmethod
    async def update_document_metadata(self, document_id: str, metadata: dict[str, Any]) -> None:
        """Replace the document's metadata."""

    @abstractmethod
    async def delete_document(self, document_id: str) -> bool:
        """Delete the document and, by cascade, its chunks."""

    # --- Chunks ---------------------------------------------------------------

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[StoreSession]:
        ...

    @abstractmethod
    async def list_chunks(self, doc_id: str) -> list[StoredChunk]:
        """Chunks of one document ordered by chunk_index."""

    @abstractmethod
    async def lexical_search(
        self,
        collection_id: str,
        terms: list[str],
        limit: int,
        language: str = "english",
    ) -> list[StoreHit]:
        """
        Chunks containing every term as a prefix match, highest raw rank
        first. `score` is the backend's raw relevance rank.
        """

    @abstractmethod
    async def vector_search(
        self,
        collection_id: str,
        embedding: list[float],
        limit: int,
        min_similarity: float,
    ) -> list[StoreHit]:
        """
        Nearest chunks by cosine similarity, restricted to embeddings of the
        same dimension as the query; `score` is the similarity.
        """

    # --- Usage and alerts ------------------------------------------------------

    @abstractmethod
    async def insert_usage(self, record: UsageRecord) -> UsageRecord:
        ...

    @abstractmethod
    async def sum_spend(self, start: datetime, end: Optional[datetime] = None) -> float:
        """Total cost_usd of usage records created in [start, end)."""

    @abstractmethod
    async def cost_breakdown(
        self, start: datetime, end: Optional[datetime] = None
    ) -> list[CostBreakdown]:
        """Spend grouped by (provider, operation), most expensive first."""

    @abstractmethod
    async def insert_alert(self, alert: BudgetAlert) -> BudgetAlert:
        ...

    @abstractmethod
    async def latest_alert(
        self, alert_type: AlertType, period: str, since: datetime
    ) -> Optional[BudgetAlert]:
        """Most recent alert of this type and period triggered at or after `since`."""

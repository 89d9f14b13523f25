"""
In-Process Store
-----------------
A DocumentStore kept in Python dicts, for tests and for running the engine
without Postgres.

  Dense path  : faiss.IndexFlatIP over L2-normalised vectors (inner product == cosine)
  Sparse path : rank_bm25.BM25Plus over lowercased word tokens, AND-ed prefix terms
  Transactions: writes go to a staged copy of the chunk table, swapped in on
                commit and dropped on rollback, so readers never observe a
                half-written document

Persistence (optional, when `persist_path` is given):
  - The whole store -> a single JSON file, rewritten after every mutation
"""
from __future__ import annotations

import asyncio
import itertools
import re
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import faiss
import numpy as np
from loguru import logger
from rank_bm25 import BM25Plus

from synthesis_rag.schemas import (
    AlertType,
    BudgetAlert,
    ChunkWrite,
    Collection,
    CostBreakdown,
    Document,
    DocumentStatus,
    StoredChunk,
    StoreHit,
    UsageRecord,
    utcnow,
)
from synthesis_rag.store.base import DocumentStore, StoreSession
from synthesis_rag.utils.helpers import load_json, save_json

ChunkKey = tuple[str, int]


def _bm25_tokens(text: str) -> list[str]:
    """Lowercase, strip punctuation, split on whitespace."""
    return re.sub(r"[^\w\s]", " ", text.lower()).split()


class _MemorySession(StoreSession):
    def __init__(self, store: "InMemoryStore", staged: dict[ChunkKey, StoredChunk]) -> None:
        self._store = store
        self.staged = staged

    async def delete_document_chunks(self, doc_id: str) -> int:
        keys = [key for key in self.staged if key[0] == doc_id]
        for key in keys:
            del self.staged[key]
        return len(keys)

    async def upsert_chunk(self, chunk: ChunkWrite) -> None:
        key = (chunk.doc_id, chunk.chunk_index)
        existing = self.staged.get(key)
        self.staged[key] = StoredChunk(
            id=existing.id if existing else self._store._next_chunk_id(),
            doc_id=chunk.doc_id,
            chunk_index=chunk.chunk_index,
            text=chunk.text,
            token_count=chunk.token_count,
            embedding=list(chunk.embedding) if chunk.embedding is not None else None,
            embedding_model=chunk.embedding_model,
            metadata=dict(chunk.metadata),
        )


class InMemoryStore(DocumentStore):
    """
    Usage:
        store = InMemoryStore()                               # ephemeral
        store = InMemoryStore.load("storage/store.json")      # persisted between runs
    """

    def __init__(self, persist_path: Optional[str | Path] = None) -> None:
        self.persist_path = Path(persist_path) if persist_path else None
        self.collections: dict[str, Collection] = {}
        self.documents: dict[str, Document] = {}
        self.chunks: dict[ChunkKey, StoredChunk] = {}
        self.usage: list[UsageRecord] = []
        self.alerts: list[BudgetAlert] = []
        self._chunk_ids = itertools.count(1)
        self._record_ids = itertools.count(1)
        self._write_lock = asyncio.Lock()

    def _next_chunk_id(self) -> int:
        return next(self._chunk_ids)

    # --- Persistence ------------------------------------------------------------

    def save(self) -> None:
        if self.persist_path is None:
            return
        save_json(
            {
                "collections": [c.model_dump(mode="json") for c in self.collections.values()],
                "documents": [d.model_dump(mode="json") for d in self.documents.values()],
                "chunks": [c.model_dump(mode="json") for c in self.chunks.values()],
                "usage": [u.model_dump(mode="json") for u in self.usage],
                "alerts": [a.model_dump(mode="json") for a in self.alerts],
            },
            self.persist_path,
        )

    @classmethod
    def load(cls, persist_path: str | Path) -> "InMemoryStore":
        """Open a persisted store, or start an empty one at that path."""
        store = cls(persist_path)
        path = Path(persist_path)
        if not path.exists():
            logger.info(f"[InMemoryStore] No store at {path}, starting empty")
            return store

        data = load_json(path)
        for raw in data.get("collections", []):
            collection = Collection.model_validate(raw)
            store.collections[collection.id] = collection
        for raw in data.get("documents", []):
            document = Document.model_validate(raw)
            store.documents[document.id] = document
        for raw in data.get("chunks", []):
            chunk = StoredChunk.model_validate(raw)
            store.chunks[(chunk.doc_id, chunk.chunk_index)] = chunk
        store.usage = [UsageRecord.model_validate(raw) for raw in data.get("usage", [])]
        store.alerts = [BudgetAlert.model_validate(raw) for raw in data.get("alerts", [])]

        max_chunk = max((c.id for c in store.chunks.values()), default=0)
        max_record = max(
            (r.id or 0 for r in [*store.usage, *store.alerts]), default=0
        )
        store._chunk_ids = itertools.count(max_chunk + 1)
        store._record_ids = itertools.count(max_record + 1)

        logger.info(
            f"[InMemoryStore] Loaded {len(store.documents)} documents, "
            f"{len(store.chunks)} chunks from {path}"
        )
        return store

    # --- Collections ------------------------------------------------------------

    async def create_collection(
        self, name: str, description: Optional[str] = None, collection_id: Optional[str] = None
    ) -> Collection:
        collection = Collection(name=name, description=description)
        if collection_id:
            collection.id = collection_id
        self.collections[collection.id] = collection
        self.save()
        return collection

    async def get_collection(self, collection_id: str) -> Optional[Collection]:
        return self.collections.get(collection_id)

    async def list_collections(self) -> list[Collection]:
        return sorted(self.collections.values(), key=lambda c: c.created_at, reverse=True)

    # --- Documents --------------------------------------------------------------

    async def create_document(self, document: Document) -> Document:
        self.documents[document.id] = document.model_copy(deep=True)
        self.save()
        return document

    async def get_document(self, document_id: str) -> Optional[Document]:
        document = self.documents.get(document_id)
        return document.model_copy(deep=True) if document else None

    async def list_documents(self, collection_id: str) -> list[Document]:
        return sorted(
            (d.model_copy(deep=True) for d in self.documents.values() if d.collection_id == collection_id),
            key=lambda d: d.created_at,
            reverse=True,
        )

    async def update_document_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_message: Optional[str] = None,
    ) -> None:
        document = self.documents.get(document_id)
        if document is None:
            return
        now = utcnow()
        document.status = status
        document.error_message = error_message if status is DocumentStatus.ERROR else None
        document.updated_at = now
        if status is DocumentStatus.COMPLETE:
            document.processed_at = now
        self.save()

    async def update_document_metadata(self, document_id: str, metadata: dict[str, Any]) -> None:
        document = self.documents.get(document_id)
        if document is None:
            return
        document.metadata = dict(metadata)
        document.updated_at = utcnow()
        self.save()

    async def delete_document(self, document_id: str) -> bool:
        if self.documents.pop(document_id, None) is None:
            return False
        async with self._write_lock:
            self.chunks = {k: v for k, v in self.chunks.items() if k[0] != document_id}
        self.save()
        return True

    # --- Chunks -----------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreSession]:
        async with self._write_lock:
            session = _MemorySession(self, dict(self.chunks))
            yield session
            # Only reached when the block exits cleanly
            self.chunks = session.staged
        self.save()

    async def list_chunks(self, doc_id: str) -> list[StoredChunk]:
        return sorted(
            (c for c in self.chunks.values() if c.doc_id == doc_id),
            key=lambda c: c.chunk_index,
        )

    def _collection_chunks(self, collection_id: str) -> list[StoredChunk]:
        doc_ids = {d.id for d in self.documents.values() if d.collection_id == collection_id}
        return [c for c in self.chunks.values() if c.doc_id in doc_ids]

    def _to_hit(self, chunk: StoredChunk, score: float) -> StoreHit:
        document = self.documents.get(chunk.doc_id)
        return StoreHit(
            chunk_id=chunk.id,
            text=chunk.text,
            doc_id=chunk.doc_id,
            doc_title=document.title if document else None,
            source_url=document.source_url if document else None,
            metadata=dict(chunk.metadata),
            score=score,
        )

    async def lexical_search(
        self,
        collection_id: str,
        terms: list[str],
        limit: int,
        language: str = "english",
    ) -> list[StoreHit]:
        candidates = self._collection_chunks(collection_id)
        prefixes = [t.lower() for t in terms if t]
        if not candidates or not prefixes:
            return []

        corpus = [_bm25_tokens(c.text) for c in candidates]
        matching = [
            i for i, tokens in enumerate(corpus)
            if all(any(tok.startswith(p) for tok in tokens) for p in prefixes)
        ]
        if not matching:
            return []

        # Expand prefixes to the concrete vocabulary so BM25 can score them
        vocabulary = {tok for tokens in corpus for tok in tokens}
        expanded = sorted(tok for tok in vocabulary if any(tok.startswith(p) for p in prefixes))

        bm25 = BM25Plus(corpus)
        scores = bm25.get_scores(expanded)

        ranked = sorted(matching, key=lambda i: (-float(scores[i]), candidates[i].id))[:limit]
        return [self._to_hit(candidates[i], float(scores[i])) for i in ranked]

    async def vector_search(
        self,
        collection_id: str,
        embedding: list[float],
        limit: int,
        min_similarity: float,
    ) -> list[StoreHit]:
        dims = len(embedding)
        candidates = [
            c for c in self._collection_chunks(collection_id)
            if c.embedding is not None and len(c.embedding) == dims
        ]
        if not candidates or dims == 0 or limit <= 0:
            return []

        matrix = np.ascontiguousarray([c.embedding for c in candidates], dtype=np.float32)
        faiss.normalize_L2(matrix)
        query = np.ascontiguousarray([embedding], dtype=np.float32)
        faiss.normalize_L2(query)

        index = faiss.IndexFlatIP(dims)
        index.add(matrix)
        scores, ids = index.search(query, min(limit, len(candidates)))

        hits: list[StoreHit] = []
        for score, idx in zip(scores[0], ids[0]):
            if idx < 0:          # FAISS returns -1 for empty slots
                continue
            if float(score) < min_similarity:
                continue
            hits.append(self._to_hit(candidates[idx], float(score)))
        return hits

    # --- Usage and alerts --------------------------------------------------------

    async def insert_usage(self, record: UsageRecord) -> UsageRecord:
        stored = record.model_copy(update={"id": next(self._record_ids)})
        self.usage.append(stored)
        self.save()
        return stored

    def _usage_between(self, start: datetime, end: Optional[datetime]) -> list[UsageRecord]:
        return [
            u for u in self.usage
            if u.created_at >= start and (end is None or u.created_at < end)
        ]

    async def sum_spend(self, start: datetime, end: Optional[datetime] = None) -> float:
        return float(sum(u.cost_usd for u in self._usage_between(start, end)))

    async def cost_breakdown(
        self, start: datetime, end: Optional[datetime] = None
    ) -> list[CostBreakdown]:
        groups: dict[tuple[str, str], CostBreakdown] = {}
        for record in self._usage_between(start, end):
            key = (record.provider, record.operation)
            row = groups.setdefault(key, CostBreakdown(provider=record.provider, operation=record.operation))
            row.request_count += 1
            row.total_tokens += record.tokens_used
            row.total_cost += record.cost_usd
        for row in groups.values():
            row.avg_cost_per_request = row.total_cost / row.request_count if row.request_count else 0.0
        return sorted(groups.values(), key=lambda r: r.total_cost, reverse=True)

    async def insert_alert(self, alert: BudgetAlert) -> BudgetAlert:
        stored = alert.model_copy(update={"id": next(self._record_ids)})
        self.alerts.append(stored)
        self.save()
        return stored

    async def latest_alert(
        self, alert_type: AlertType, period: str, since: datetime
    ) -> Optional[BudgetAlert]:
        matches = [
            a for a in self.alerts
            if a.alert_type == alert_type and a.period == period and a.triggered_at >= since
        ]
        return max(matches, key=lambda a: a.triggered_at, default=None)

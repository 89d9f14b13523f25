"""
Chunk Store
------------
Atomically replaces the stored chunk set of one document.

Inside a single store transaction:
  1. delete every existing chunk of the document
  2. upsert each new chunk from a bounded pool of workers that pull the next
     unclaimed index from a shared cursor

Each upsert is retried (3 attempts in total, 100 ms backoff doubling). If an
upsert still fails the remaining workers are cancelled, the transaction
rolls back and the previously stored chunks stay visible.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

from loguru import logger
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from synthesis_rag.chunking.schemas import Chunk
from synthesis_rag.errors import LengthMismatch
from synthesis_rag.schemas import ChunkWrite
from synthesis_rag.store.base import DocumentStore, StoreSession
from synthesis_rag.utils.helpers import estimate_tokens

DEFAULT_MAX_CONCURRENT_UPSERTS = 10
DEFAULT_EMBEDDING_MODEL = "nomic-embed-text"
UPSERT_ATTEMPTS = 3
UPSERT_BACKOFF_SECONDS = 0.1


@dataclass
class StoreChunksOptions:
    """Defaults used when a chunk's own metadata does not name its embedding."""

    embedding_model: Optional[str] = None
    embedding_provider: Optional[str] = None
    embedding_dimensions: Optional[int] = None
    max_concurrent_upserts: Optional[int] = None


def resolve_concurrency(requested: Optional[int], chunk_count: int) -> int:
    """Invalid or missing -> default; then clamp to [1, chunk_count]."""
    limit = requested if isinstance(requested, int) and requested > 0 else DEFAULT_MAX_CONCURRENT_UPSERTS
    return max(1, min(limit, chunk_count))


class ChunkStore:

    def __init__(
        self,
        store: DocumentStore,
        default_embedding_model: str = DEFAULT_EMBEDDING_MODEL,
        upsert_backoff: float = UPSERT_BACKOFF_SECONDS,
    ) -> None:
        self.store = store
        self.default_embedding_model = default_embedding_model
        self.upsert_backoff = upsert_backoff

    async def store_chunks(
        self,
        document_id: str,
        chunks: list[Chunk],
        embeddings: list[list[float]],
        options: Optional[StoreChunksOptions] = None,
    ) -> None:
        """
        Replace the chunks of `document_id`.

        An empty `chunks` list deletes the document's chunks and writes none.
        `embeddings` may be empty (chunks stored without vectors) or must
        match `chunks` one-to-one.
        """
        if embeddings and len(embeddings) != len(chunks):
            raise LengthMismatch(
                f"Chunks and embeddings length mismatch: {len(chunks)} chunks vs {len(embeddings)} embeddings"
            )
        options = options or StoreChunksOptions()

        async with self.store.transaction() as session:
            removed = await session.delete_document_chunks(document_id)

            if not chunks:
                logger.debug(f"[ChunkStore] {document_id} | cleared {removed} chunk(s)")
                return

            writes = [
                self._build_write(document_id, chunk, embeddings[i] if embeddings else None, options)
                for i, chunk in enumerate(chunks)
            ]
            concurrency = resolve_concurrency(options.max_concurrent_upserts, len(writes))
            cursor = iter(range(len(writes)))

            async def worker() -> None:
                # next() on a shared iterator hands each index to exactly one worker
                for index in cursor:
                    await self._upsert_with_retry(session, writes[index])

            tasks = [asyncio.create_task(worker()) for _ in range(concurrency)]
            try:
                await asyncio.gather(*tasks)
            finally:
                # No worker may touch the session once the transaction exits.
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

        logger.info(
            f"[ChunkStore] {document_id} | replaced {removed} chunk(s) with {len(chunks)} "
            f"| workers={concurrency}"
        )

    def _build_write(
        self,
        document_id: str,
        chunk: Chunk,
        embedding: Optional[list[float]],
        options: StoreChunksOptions,
    ) -> ChunkWrite:
        metadata: dict[str, Any] = dict(chunk.metadata)

        if embedding:
            model = metadata.get("embedding_model")
            if not (isinstance(model, str) and model):
                model = options.embedding_model or self.default_embedding_model
            metadata["embedding_model"] = model

            provider = metadata.get("embedding_provider")
            if not (isinstance(provider, str) and provider):
                provider = options.embedding_provider
            if provider:
                metadata["embedding_provider"] = provider

            dimensions = metadata.get("embedding_dimensions")
            if not isinstance(dimensions, int) or isinstance(dimensions, bool):
                dimensions = options.embedding_dimensions
            if isinstance(dimensions, int):
                metadata["embedding_dimensions"] = dimensions

        return ChunkWrite(
            doc_id=document_id,
            chunk_index=chunk.index,
            text=chunk.text,
            token_count=estimate_tokens(chunk.text),
            embedding=embedding or None,
            embedding_model=metadata.get("embedding_model") if embedding else None,
            metadata=metadata,
        )

    async def _upsert_with_retry(self, session: StoreSession, write: ChunkWrite) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(UPSERT_ATTEMPTS),
            wait=wait_exponential(multiplier=self.upsert_backoff, min=0),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        f"[ChunkStore] Retrying upsert {write.doc_id}#{write.chunk_index} "
                        f"(attempt {attempt.retry_state.attempt_number}/{UPSERT_ATTEMPTS})"
                    )
                await session.upsert_chunk(write)

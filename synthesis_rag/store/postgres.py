"""
Postgres Store
---------------
DocumentStore backed by Postgres with the pgvector extension, using the
SQLAlchemy async engine over asyncpg.

  Vector search  : 1 - (embedding <=> query) cosine similarity
  Lexical search : ts_rank_cd over to_tsvector(language, text), prefix tsquery
  Schema         : store/migrations/*.sql, applied in filename order by migrate()

JSONB and vector values travel as text and are cast in SQL, so no
driver-level type registration is needed.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import orjson
from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

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
)
from synthesis_rag.store.base import DocumentStore, StoreSession

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


def to_async_url(database_url: str) -> str:
    """postgres://... -> postgresql+asyncpg://..."""
    for prefix in ("postgresql+asyncpg://", "postgres://", "postgresql://"):
        if database_url.startswith(prefix):
            return "postgresql+asyncpg://" + database_url[len(prefix):]
    return database_url


def _vector_literal(vector: list[float]) -> str:
    return "[" + ",".join(repr(float(v)) for v in vector) + "]"


def _parse_vector(value: Any) -> Optional[list[float]]:
    if value is None:
        return None
    if isinstance(value, str):
        inner = value.strip().lstrip("[").rstrip("]")
        return [float(v) for v in inner.split(",") if v.strip()]
    return [float(v) for v in value]


def _json(value: Any) -> str:
    return orjson.dumps(value or {}).decode()


def _parse_json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, (str, bytes)):
        parsed = orjson.loads(value)
        return parsed if isinstance(parsed, dict) else {}
    return dict(value)


def _row_to_document(row: Any) -> Document:
    return Document(
        id=str(row.id),
        collection_id=str(row.collection_id),
        title=row.title,
        file_path=row.file_path,
        content_type=row.content_type,
        file_size=row.file_size,
        source_url=row.source_url,
        status=DocumentStatus(row.status),
        error_message=row.error_message,
        metadata=_parse_json(row.metadata),
        created_at=row.created_at,
        processed_at=row.processed_at,
        updated_at=row.updated_at,
    )


def _row_to_hit(row: Any, score: Any) -> StoreHit:
    return StoreHit(
        chunk_id=int(row.chunk_id),
        text=row.text,
        doc_id=str(row.doc_id),
        doc_title=row.doc_title,
        source_url=row.source_url,
        metadata=_parse_json(row.metadata),
        score=float(score or 0.0),
    )


class _PostgresSession(StoreSession):
    """
    One connection shared by concurrent upserts. asyncpg runs one statement
    at a time per connection, so statements are serialised here.
    Each upsert runs in its own SAVEPOINT so a failed statement can be retried
    without aborting the enclosing transaction.
    """

    def __init__(self, conn: AsyncConnection) -> None:
        self._conn = conn
        self._lock = asyncio.Lock()

    async def delete_document_chunks(self, doc_id: str) -> int:
        async with self._lock:
            result = await self._conn.execute(
                text("DELETE FROM chunks WHERE doc_id = CAST(:doc_id AS uuid)"),
                {"doc_id": doc_id},
            )
        return result.rowcount or 0

    async def upsert_chunk(self, chunk: ChunkWrite) -> None:
        params = {
            "doc_id": chunk.doc_id,
            "chunk_index": chunk.chunk_index,
            "text": chunk.text,
            "token_count": chunk.token_count,
            "embedding": _vector_literal(chunk.embedding) if chunk.embedding else None,
            "embedding_model": chunk.embedding_model,
            "metadata": _json(chunk.metadata),
        }
        async with self._lock, self._conn.begin_nested():
            await self._conn.execute(
                text(
                    """
                    INSERT INTO chunks (doc_id, chunk_index, text, token_count,
                                        embedding, embedding_model, metadata)
                    VALUES (CAST(:doc_id AS uuid), :chunk_index, :text, :token_count,
                            CAST(:embedding AS vector), :embedding_model, CAST(:metadata AS jsonb))
                    ON CONFLICT (doc_id, chunk_index) DO UPDATE SET
                        text = EXCLUDED.text,
                        token_count = EXCLUDED.token_count,
                        embedding = EXCLUDED.embedding,
                        embedding_model = EXCLUDED.embedding_model,
                        metadata = EXCLUDED.metadata
                    """
                ),
                params,
            )


class PostgresStore(DocumentStore):
    """
    Usage:
        store = PostgresStore(settings.database_url)
        await store.migrate()
    """

    def __init__(self, database_url: str, echo: bool = False, engine: Optional[AsyncEngine] = None) -> None:
        self.engine = engine or create_async_engine(to_async_url(database_url), echo=echo, future=True)

    async def close(self) -> None:
        await self.engine.dispose()

    async def migrate(self) -> None:
        """Apply every migration file in order. Files are written to be re-runnable."""
        files = sorted(MIGRATIONS_DIR.glob("*.sql"))
        async with self.engine.begin() as conn:
            for path in files:
                sql = path.read_text(encoding="utf-8")
                for statement in _split_statements(sql):
                    await conn.exec_driver_sql(statement)
                logger.info(f"[PostgresStore] Applied migration {path.name}")

    # --- Collections ------------------------------------------------------------

    async def create_collection(
        self, name: str, description: Optional[str] = None, collection_id: Optional[str] = None
    ) -> Collection:
        collection = Collection(name=name, description=description)
        if collection_id:
            collection.id = collection_id
        async with self.engine.begin() as conn:
            await conn.execute(
                text(
                    "INSERT INTO collections (id, name, description, created_at, updated_at) "
                    "VALUES (CAST(:id AS uuid), :name, :description, :created_at, :updated_at)"
                ),
                collection.model_dump(),
            )
        return collection

    async def get_collection(self, collection_id: str) -> Optional[Collection]:
        async with self.engine.connect() as conn:
            row = (
                await conn.execute(
                    text("SELECT * FROM collections WHERE id = CAST(:id AS uuid)"),
                    {"id": collection_id},
                )
            ).first()
        if row is None:
            return None
        return Collection(
            id=str(row.id), name=row.name, description=row.description,
            created_at=row.created_at, updated_at=row.updated_at,
        )

    async def list_collections(self) -> list[Collection]:
        async with self.engine.connect() as conn:
            rows = (await conn.execute(text("SELECT * FROM collections ORDER BY created_at DESC"))).all()
        return [
            Collection(
                id=str(r.id), name=r.name, description=r.description,
                created_at=r.created_at, updated_at=r.updated_at,
            )
            for r in rows
        ]

    # --- Documents --------------------------------------------------------------

    async def create_document(self, document: Document) -> Document:
        params = document.model_dump()
        params["status"] = document.status.value
        params["metadata"] = _json(document.metadata)
        async with self.engine.begin() as conn:
            await conn.execute(
                text(
                    """
                    INSERT INTO documents (id, collection_id, title, file_path, content_type,
                                           file_size, source_url, status, error_message,
                                           metadata, created_at, processed_at, updated_at)
                    VALUES (CAST(:id AS uuid), CAST(:collection_id AS uuid), :title, :file_path,
                            :content_type, :file_size, :source_url, :status, :error_message,
                            CAST(:metadata AS jsonb), :created_at, :processed_at, :updated_at)
                    """
                ),
                params,
            )
        return document

    async def get_document(self, document_id: str) -> Optional[Document]:
        async with self.engine.connect() as conn:
            row = (
                await conn.execute(
                    text("SELECT * FROM documents WHERE id = CAST(:id AS uuid)"),
                    {"id": document_id},
                )
            ).first()
        return _row_to_document(row) if row else None

    async def list_documents(self, collection_id: str) -> list[Document]:
        async with self.engine.connect() as conn:
            rows = (
                await conn.execute(
                    text(
                        "SELECT * FROM documents WHERE collection_id = CAST(:cid AS uuid) "
                        "ORDER BY created_at DESC"
                    ),
                    {"cid": collection_id},
                )
            ).all()
        return [_row_to_document(r) for r in rows]

    async def update_document_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_message: Optional[str] = None,
    ) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(
                text(
                    """
                    UPDATE documents
                    SET status = :status,
                        error_message = :error_message,
                        processed_at = CASE WHEN :status = 'complete' THEN NOW() ELSE processed_at END,
                        updated_at = NOW()
                    WHERE id = CAST(:id AS uuid)
                    """
                ),
                {
                    "id": document_id,
                    "status": status.value,
                    "error_message": error_message if status is DocumentStatus.ERROR else None,
                },
            )

    async def update_document_metadata(self, document_id: str, metadata: dict[str, Any]) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(
                text(
                    "UPDATE documents SET metadata = CAST(:metadata AS jsonb), updated_at = NOW() "
                    "WHERE id = CAST(:id AS uuid)"
                ),
                {"id": document_id, "metadata": _json(metadata)},
            )

    async def delete_document(self, document_id: str) -> bool:
        async with self.engine.begin() as conn:
            result = await conn.execute(
                text("DELETE FROM documents WHERE id = CAST(:id AS uuid)"),
                {"id": document_id},
            )
        return bool(result.rowcount)

    # --- Chunks -----------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreSession]:
        async with self.engine.begin() as conn:
            yield _PostgresSession(conn)

    async def list_chunks(self, doc_id: str) -> list[StoredChunk]:
        async with self.engine.connect() as conn:
            rows = (
                await conn.execute(
                    text(
                        """
                        SELECT id, doc_id, chunk_index, text, token_count,
                               embedding::text AS embedding, embedding_model, metadata, created_at
                        FROM chunks WHERE doc_id = CAST(:doc_id AS uuid)
                        ORDER BY chunk_index
                        """
                    ),
                    {"doc_id": doc_id},
                )
            ).all()
        return [
            StoredChunk(
                id=int(r.id),
                doc_id=str(r.doc_id),
                chunk_index=r.chunk_index,
                text=r.text,
                token_count=r.token_count,
                embedding=_parse_vector(r.embedding),
                embedding_model=r.embedding_model,
                metadata=_parse_json(r.metadata),
                created_at=r.created_at,
            )
            for r in rows
        ]

    async def lexical_search(
        self,
        collection_id: str,
        terms: list[str],
        limit: int,
        language: str = "english",
    ) -> list[StoreHit]:
        ts_query = " & ".join(f"{t}:*" for t in terms if t)
        if not ts_query:
            return []
        async with self.engine.connect() as conn:
            rows = (
                await conn.execute(
                    text(
                        """
                        SELECT ch.id AS chunk_id, ch.text, ch.metadata, ch.doc_id,
                               d.title AS doc_title, d.source_url,
                               ts_rank_cd(to_tsvector(CAST(:language AS regconfig), ch.text),
                                          to_tsquery(CAST(:language AS regconfig), :query)) AS rank
                        FROM chunks ch
                        JOIN documents d ON d.id = ch.doc_id
                        WHERE d.collection_id = CAST(:cid AS uuid)
                          AND to_tsvector(CAST(:language AS regconfig), ch.text)
                              @@ to_tsquery(CAST(:language AS regconfig), :query)
                        ORDER BY rank DESC
                        LIMIT :limit
                        """
                    ),
                    {"language": language, "query": ts_query, "cid": collection_id, "limit": limit},
                )
            ).all()
        return [_row_to_hit(r, r.rank) for r in rows]

    async def vector_search(
        self,
        collection_id: str,
        embedding: list[float],
        limit: int,
        min_similarity: float,
    ) -> list[StoreHit]:
        async with self.engine.connect() as conn:
            rows = (
                await conn.execute(
                    text(
                        """
                        SELECT ch.id AS chunk_id, ch.text, ch.metadata, ch.doc_id,
                               d.title AS doc_title, d.source_url,
                               (1 - (ch.embedding <=> CAST(:vec AS vector))) AS similarity
                        FROM chunks ch
                        JOIN documents d ON d.id = ch.doc_id
                        WHERE d.collection_id = CAST(:cid AS uuid)
                          AND ch.embedding IS NOT NULL
                          AND vector_dims(ch.embedding) = :dims
                          AND (1 - (ch.embedding <=> CAST(:vec AS vector))) >= :min_similarity
                        ORDER BY ch.embedding <=> CAST(:vec AS vector)
                        LIMIT :limit
                        """
                    ),
                    {
                        "vec": _vector_literal(embedding),
                        "dims": len(embedding),
                        "cid": collection_id,
                        "min_similarity": min_similarity,
                        "limit": limit,
                    },
                )
            ).all()
        return [_row_to_hit(r, r.similarity) for r in rows]

    # --- Usage and alerts --------------------------------------------------------

    async def insert_usage(self, record: UsageRecord) -> UsageRecord:
        async with self.engine.begin() as conn:
            row = (
                await conn.execute(
                    text(
                        """
                        INSERT INTO api_usage (provider, operation, tokens_used, cost_usd, model,
                                               collection_id, user_id, metadata, created_at)
                        VALUES (:provider, :operation, :tokens_used, :cost_usd, :model,
                                CAST(:collection_id AS uuid), :user_id, CAST(:metadata AS jsonb),
                                :created_at)
                        RETURNING id
                        """
                    ),
                    {
                        "provider": record.provider,
                        "operation": record.operation,
                        "tokens_used": record.tokens_used,
                        "cost_usd": record.cost_usd,
                        "model": record.model,
                        "collection_id": record.collection_id,
                        "user_id": record.user_id,
                        "metadata": _json(record.metadata),
                        "created_at": record.created_at,
                    },
                )
            ).first()
        return record.model_copy(update={"id": int(row.id)})

    async def sum_spend(self, start: datetime, end: Optional[datetime] = None) -> float:
        async with self.engine.connect() as conn:
            value = (
                await conn.execute(
                    text(
                        "SELECT COALESCE(SUM(cost_usd), 0) FROM api_usage "
                        "WHERE created_at >= :start AND (CAST(:end AS timestamptz) IS NULL "
                        "OR created_at < CAST(:end AS timestamptz))"
                    ),
                    {"start": start, "end": end},
                )
            ).scalar_one()
        return float(value or 0)

    async def cost_breakdown(
        self, start: datetime, end: Optional[datetime] = None
    ) -> list[CostBreakdown]:
        async with self.engine.connect() as conn:
            rows = (
                await conn.execute(
                    text(
                        """
                        SELECT provider, operation,
                               COUNT(*) AS request_count,
                               COALESCE(SUM(tokens_used), 0) AS total_tokens,
                               COALESCE(SUM(cost_usd), 0) AS total_cost,
                               COALESCE(AVG(cost_usd), 0) AS avg_cost_per_request
                        FROM api_usage
                        WHERE created_at >= :start
                          AND (CAST(:end AS timestamptz) IS NULL OR created_at < CAST(:end AS timestamptz))
                        GROUP BY provider, operation
                        ORDER BY total_cost DESC
                        """
                    ),
                    {"start": start, "end": end},
                )
            ).all()
        return [
            CostBreakdown(
                provider=r.provider,
                operation=r.operation,
                request_count=int(r.request_count),
                total_tokens=int(r.total_tokens),
                total_cost=float(r.total_cost),
                avg_cost_per_request=float(r.avg_cost_per_request),
            )
            for r in rows
        ]

    async def insert_alert(self, alert: BudgetAlert) -> BudgetAlert:
        async with self.engine.begin() as conn:
            row = (
                await conn.execute(
                    text(
                        """
                        INSERT INTO budget_alerts (alert_type, threshold_usd, current_spend_usd,
                                                   period, triggered_at, acknowledged)
                        VALUES (:alert_type, :threshold_usd, :current_spend_usd,
                                :period, :triggered_at, :acknowledged)
                        RETURNING id
                        """
                    ),
                    {
                        "alert_type": alert.alert_type.value,
                        "threshold_usd": alert.threshold_usd,
                        "current_spend_usd": alert.current_spend_usd,
                        "period": alert.period,
                        "triggered_at": alert.triggered_at,
                        "acknowledged": alert.acknowledged,
                    },
                )
            ).first()
        return alert.model_copy(update={"id": int(row.id)})

    async def latest_alert(
        self, alert_type: AlertType, period: str, since: datetime
    ) -> Optional[BudgetAlert]:
        async with self.engine.connect() as conn:
            row = (
                await conn.execute(
                    text(
                        """
                        SELECT * FROM budget_alerts
                        WHERE alert_type = :alert_type AND period = :period AND triggered_at >= :since
                        ORDER BY triggered_at DESC
                        LIMIT 1
                        """
                    ),
                    {"alert_type": alert_type.value, "period": period, "since": since},
                )
            ).first()
        if row is None:
            return None
        return BudgetAlert(
            id=int(row.id),
            alert_type=AlertType(row.alert_type),
            threshold_usd=float(row.threshold_usd or 0),
            current_spend_usd=float(row.current_spend_usd or 0),
            period=row.period,
            triggered_at=row.triggered_at,
            acknowledged=bool(row.acknowledged),
        )


def _split_statements(sql: str) -> list[str]:
    """Split a migration file on `;` line endings, dropping comment-only pieces."""
    statements = []
    for piece in sql.split(";\n"):
        lines = [ln for ln in piece.splitlines() if not ln.strip().startswith("--")]
        statement = "\n".join(lines).strip().rstrip(";")
        if statement:
            statements.append(statement)
    return statements

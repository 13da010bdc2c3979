"""Namespaced vector index on PostgreSQL + pgvector.

Each assistant owns one namespace (``assistant_<id>``) inside a single table;
similarity is cosine (score = 1 - cosine distance).

Provides:
- VectorRecord / Match: upsert input and query output shapes
- PgVectorIndex: ensure_index, upsert, search, delete_stale, delete_namespace
- get_vector_index / set_vector_index: process-wide index instance

ensure_index creates the pgvector extension, the table and an ivfflat index built
CONCURRENTLY, then polls pg_index until the index is valid and ready.

delete_namespace is best-effort by policy: deleting zero rows is success, and
database failures are logged and swallowed so assistant deletion never fails on
index cleanup. Leftover rows can be removed by calling it again.

delete_stale prunes vectors written by earlier crawls (metadata ``crawl_id``
differs) once a new crawl's vectors are in place. Unlike delete_namespace it
raises, so the ingestion job fails before the old Documents are removed.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy import delete, or_, select, text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError

from docchat.config import settings
from docchat.db import VectorBase, engine, session_scope
from docchat.errors import IndexProvisioningTimeout
from docchat.models import ChunkVector

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass
class VectorRecord:
    """One chunk embedding to write into a namespace."""
    id: str
    values: List[float]
    metadata: Dict[str, Any]


@dataclass
class Match:
    """One similarity hit.

    Attributes:
        id: Vector id (doc_<i>_chunk_<j>).
        score: Current ranking score (similarity, or rerank score after reranking).
        metadata: Vector metadata (title, source_url, preview, document_id, ...).
        similarity: Original cosine similarity, kept after reranking for diagnostics.
    """
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    similarity: Optional[float] = None


class VectorIndex(Protocol):
    async def ensure_index(self) -> None: ...

    async def upsert(
        self, namespace: str, vectors: List[VectorRecord], on_progress: Optional[ProgressCallback] = None
    ) -> None: ...

    async def search(
        self,
        namespace: str,
        query_vector: List[float],
        top_k: int,
        min_score: Optional[float] = None,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[Match]: ...

    async def delete_stale(self, namespace: str, crawl_id: str) -> None: ...

    async def delete_namespace(self, namespace: str) -> None: ...


class PgVectorIndex:
    """pgvector-backed implementation of VectorIndex."""

    def __init__(self, table: str = settings.VECTOR_TABLE, index_name: str = settings.VECTOR_INDEX_NAME):
        self.table = table
        self.index_name = index_name
        self._ready = False

    # -- provisioning -------------------------------------------------------

    def _create_index(self) -> None:
        with engine.connect() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            conn.commit()
        VectorBase.metadata.create_all(bind=engine)
        # CONCURRENTLY cannot run inside a transaction block
        with engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            conn.execute(
                text(
                    f"CREATE INDEX CONCURRENTLY IF NOT EXISTS {self.index_name} "
                    f"ON {self.table} USING ivfflat (embedding vector_cosine_ops) WITH (lists = 100)"
                )
            )

    def _index_is_ready(self) -> bool:
        with engine.connect() as conn:
            row = conn.execute(
                text(
                    "SELECT i.indisvalid AND i.indisready FROM pg_index i "
                    "JOIN pg_class c ON c.oid = i.indexrelid WHERE c.relname = :name"
                ),
                {"name": self.index_name},
            ).first()
        return bool(row and row[0])

    async def ensure_index(self) -> None:
        """Create the table and cosine index if absent and wait until it is usable.

        Raises:
            IndexProvisioningTimeout: if the index is not ready after
                settings.INDEX_READY_MAX_ATTEMPTS polls.
        """
        if self._ready:
            return
        await asyncio.to_thread(self._create_index)
        for attempt in range(settings.INDEX_READY_MAX_ATTEMPTS):
            if await asyncio.to_thread(self._index_is_ready):
                self._ready = True
                logger.info("Vector index %s ready (dim=%d)", self.index_name, settings.EMBEDDING_DIM)
                return
            logger.debug("Vector index %s not ready (attempt %d)", self.index_name, attempt + 1)
            await asyncio.sleep(settings.INDEX_READY_POLL_SECONDS)
        raise IndexProvisioningTimeout(f"Index creation timeout for {self.index_name}")

    # -- writes -------------------------------------------------------------

    def _upsert_batch(self, namespace: str, batch: List[VectorRecord]) -> None:
        rows = [
            {"namespace": namespace, "vector_id": v.id, "embedding": v.values, "metadata": v.metadata}
            for v in batch
        ]
        stmt = insert(ChunkVector.__table__).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["namespace", "vector_id"],
            set_={"embedding": stmt.excluded.embedding, "metadata": stmt.excluded.metadata},
        )
        with session_scope() as db:
            db.execute(stmt)

    async def upsert(
        self, namespace: str, vectors: List[VectorRecord], on_progress: Optional[ProgressCallback] = None
    ) -> None:
        """Write vectors into a namespace in sequential batches of MAX_CONCURRENT_UPSERTS."""
        await self.ensure_index()
        batch_size = max(1, settings.MAX_CONCURRENT_UPSERTS)
        total = len(vectors)
        for start in range(0, total, batch_size):
            await asyncio.to_thread(self._upsert_batch, namespace, vectors[start:start + batch_size])
            if on_progress is not None:
                on_progress(min(start + batch_size, total), total)

    # -- reads --------------------------------------------------------------

    def _search(
        self,
        namespace: str,
        query_vector: List[float],
        top_k: int,
        filter: Optional[Dict[str, Any]],
    ) -> List[Match]:
        distance = ChunkVector.embedding.cosine_distance(query_vector)
        stmt = (
            select(ChunkVector.vector_id, ChunkVector.metadata_, distance.label("distance"))
            .where(ChunkVector.namespace == namespace)
            .order_by(distance)
            .limit(top_k)
        )
        for key, value in (filter or {}).items():
            stmt = stmt.where(ChunkVector.metadata_[key].astext == str(value))
        with session_scope() as db:
            rows = db.execute(stmt).all()
        return [
            Match(id=r.vector_id, score=max(0.0, 1.0 - float(r.distance)), metadata=dict(r.metadata_))
            for r in rows
        ]

    async def search(
        self,
        namespace: str,
        query_vector: List[float],
        top_k: int,
        min_score: Optional[float] = None,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[Match]:
        """Similarity query within a namespace, ordered by descending score.

        Args:
            namespace: Assistant namespace.
            query_vector: Query embedding.
            top_k: Number of candidates to return (callers oversample for reranking).
            min_score: Optional similarity floor applied to the results.
            filter: Optional exact-match metadata filter.
        """
        await self.ensure_index()
        matches = await asyncio.to_thread(self._search, namespace, query_vector, top_k, filter)
        if min_score is not None:
            matches = [m for m in matches if m.score >= min_score]
        return matches

    # -- cleanup ------------------------------------------------------------

    def _delete_stale(self, namespace: str, crawl_id: str) -> int:
        crawl = ChunkVector.metadata_["crawl_id"].astext
        with session_scope() as db:
            result = db.execute(
                delete(ChunkVector).where(
                    ChunkVector.namespace == namespace,
                    or_(crawl.is_(None), crawl != crawl_id),
                )
            )
            return result.rowcount or 0

    async def delete_stale(self, namespace: str, crawl_id: str) -> None:
        """Remove vectors in a namespace that were not written by ``crawl_id``."""
        deleted = await asyncio.to_thread(self._delete_stale, namespace, crawl_id)
        logger.info("Pruned %d stale vectors from namespace %s", deleted, namespace)

    def _delete_namespace(self, namespace: str) -> int:
        with session_scope() as db:
            result = db.execute(delete(ChunkVector).where(ChunkVector.namespace == namespace))
            return result.rowcount or 0

    async def delete_namespace(self, namespace: str) -> None:
        """Remove every vector in a namespace. Never raises."""
        try:
            deleted = await asyncio.to_thread(self._delete_namespace, namespace)
        except SQLAlchemyError:
            logger.exception("Failed to delete vector namespace %s", namespace)
            return
        logger.info("Deleted %d vectors from namespace %s", deleted, namespace)


_index: Optional[VectorIndex] = None


def get_vector_index() -> VectorIndex:
    """Return the process-wide vector index (PgVectorIndex unless overridden)."""
    global _index
    if _index is None:
        _index = PgVectorIndex()
    return _index


def set_vector_index(index: Optional[VectorIndex]) -> None:
    """Override the process-wide vector index; None restores the default."""
    global _index
    _index = index

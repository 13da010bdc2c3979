"""Database ORM models.

Defines persistent entities used by the ingestion and chat pipelines:
- Assistant: one documentation knowledge base and its crawl lifecycle.
- Document: one crawled page with its full cleaned text (kept out of the vector store).
- QueueItem: the single pending/active ingestion job of an assistant.
- Message: one chat turn, with cited sources for assistant replies.
- UsageCounter: per-user, per-calendar-month question count.
- ChunkVector: pgvector row holding one chunk embedding inside an assistant namespace.
  Lives on VectorBase so relational tables can be created without pgvector.
"""
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from pgvector.sqlalchemy import Vector

from docchat.config import settings
from docchat.db import Base, VectorBase, utcnow
from docchat.lifecycle import AssistantStatus, QueueStatus


def _uuid() -> str:
    return uuid.uuid4().hex


def namespace_for(assistant_id: str) -> str:
    """Deterministic vector namespace for an assistant."""
    return f"assistant_{assistant_id}"


class Assistant(Base):
    """A documentation knowledge base owned by one user.

    ``pinecone_namespace`` is only set once the assistant reaches ``ready`` and
    always equals ``namespace_for(id)``; the column name is kept for parity with
    the vector index partition naming.
    """
    __tablename__ = "assistants"

    id = Column(String(32), primary_key=True, default=_uuid)
    user_id = Column(String(128), nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    docs_url = Column(String(2048), nullable=False)
    status = Column(String(16), nullable=False, default=AssistantStatus.CREATING.value)
    error_message = Column(Text, nullable=True)
    pinecone_namespace = Column(String(64), nullable=True)
    total_pages = Column(Integer, nullable=True)
    processed_pages = Column(Integer, nullable=True)
    is_public = Column(Boolean, nullable=False, default=False)
    public_share_id = Column(String(64), nullable=True, unique=True)
    last_crawled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (Index("idx_assistants_user", "user_id"),)


class Document(Base):
    """One crawled page. Never mutated after creation; deleted with its assistant."""
    __tablename__ = "documents"

    id = Column(String(32), primary_key=True, default=_uuid)
    assistant_id = Column(String(32), ForeignKey("assistants.id", ondelete="CASCADE"), nullable=False)
    source_url = Column(String(2048), nullable=False)
    title = Column(String(512), nullable=False, default="Untitled")
    content = Column(Text, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("idx_documents_assistant", "assistant_id"),)


class QueueItem(Base):
    """Ingestion job for an assistant. At most one row per assistant."""
    __tablename__ = "crawl_queue"

    id = Column(String(32), primary_key=True, default=_uuid)
    assistant_id = Column(String(32), ForeignKey("assistants.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(16), nullable=False, default=QueueStatus.PENDING.value)
    priority = Column(Integer, nullable=False, default=0)  # lower = served first
    user_plan = Column(String(8), nullable=False, default="free")
    retry_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    next_attempt_at = Column(DateTime, nullable=False, default=utcnow)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("assistant_id", name="uq_crawl_queue_assistant"),
        # Composite selection key: (status, priority, created_at)
        Index("idx_crawl_queue_status_priority", "status", "priority", "created_at"),
    )


class Message(Base):
    """One immutable chat message scoped to an assistant."""
    __tablename__ = "messages"

    id = Column(String(32), primary_key=True, default=_uuid)
    assistant_id = Column(String(32), ForeignKey("assistants.id", ondelete="CASCADE"), nullable=False)
    role = Column(String(16), nullable=False)  # "user" | "assistant"
    content = Column(Text, nullable=False)
    sources = Column(JSON, nullable=True)  # [{"url", "title", "preview"}]

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("idx_messages_assistant_date", "assistant_id", "created_at"),)


class UsageCounter(Base):
    """Question count for one user in one calendar month ("YYYY-MM")."""
    __tablename__ = "usage_counters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False)
    period = Column(String(7), nullable=False)
    questions = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "period", name="uq_usage_user_period"),)


class ChunkVector(VectorBase):
    """Vector-embedded chunk stored in an assistant namespace.

    Metadata is kept small: title, source URL, position indices, a short preview
    and the id of the Document holding the full text.

    Notes:
        The embedding dimension is derived from settings.EMBEDDING_DIM and should
        match the embedding model configured in docchat.config.Settings.
    """
    __tablename__ = settings.VECTOR_TABLE

    id = Column(Integer, primary_key=True, autoincrement=True)
    namespace = Column(String(64), nullable=False)
    vector_id = Column(String(128), nullable=False)  # doc_<i>_chunk_<j>
    embedding = Column(Vector(dim=settings.EMBEDDING_DIM), nullable=False)
    metadata_ = Column("metadata", JSONB, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("namespace", "vector_id", name="uq_chunk_vectors_namespace_id"),
        Index("idx_chunk_vectors_namespace", "namespace"),
    )

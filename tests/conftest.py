"""Shared pytest fixtures for all test suites.

The relational store is an in-memory SQLite database; the vector index, OpenAI
client and cross-encoder are replaced by the fakes in tests/fakes.py.
"""

import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ["QUEUE_WORKER_ENABLED"] = "false"
os.environ["OPENAI_API_KEY"] = "test-key"
os.environ["LANGFUSE_HOST"] = ""
os.environ["LANGFUSE_PUBLIC_KEY"] = ""
os.environ["LANGFUSE_SECRET_KEY"] = ""

from typing import Callable, Dict, Iterator, List, Optional

import pytest

from docchat import embedding, generation, reranker
from docchat.db import Base, engine, session_scope, utcnow
from docchat.lifecycle import AssistantStatus
from docchat.models import Assistant, Document, namespace_for
from docchat.utils import preview
from docchat.vector_index import VectorRecord, set_vector_index
from tests.fakes import FakeOpenAI, InMemoryVectorIndex, fake_embedding


@pytest.fixture(autouse=True)
def fresh_db() -> Iterator[None]:
    """Recreate every relational table for each test."""
    from docchat import models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def vector_index() -> Iterator[InMemoryVectorIndex]:
    index = InMemoryVectorIndex()
    set_vector_index(index)
    yield index
    set_vector_index(None)


@pytest.fixture(autouse=True)
def openai_client(monkeypatch: pytest.MonkeyPatch) -> FakeOpenAI:
    client = FakeOpenAI()
    monkeypatch.setattr(embedding, "get_client", lambda: client)
    monkeypatch.setattr(generation, "get_client", lambda: client)
    return client


@pytest.fixture(autouse=True)
def rerank_calls(monkeypatch: pytest.MonkeyPatch) -> List[Dict]:
    """Replace the cross-encoder: later passages score higher, calls are recorded."""
    calls: List[Dict] = []

    def score_pairs(query: str, passages: List[str]) -> List[float]:
        calls.append({"query": query, "passages": list(passages)})
        return [float(i) for i in range(len(passages))]

    monkeypatch.setattr(reranker, "score_pairs", score_pairs)
    return calls


@pytest.fixture
def make_assistant() -> Callable[..., str]:
    """Insert an assistant row directly and return its id."""

    def _make(
        user_id: str = "user-1",
        status: AssistantStatus = AssistantStatus.QUEUED,
        docs_url: str = "https://docs.example.com",
        name: str = "Example Docs",
        ready: bool = False,
    ) -> str:
        with session_scope() as db:
            assistant = Assistant(user_id=user_id, name=name, docs_url=docs_url, status=status.value)
            db.add(assistant)
            db.flush()
            if ready:
                assistant.status = AssistantStatus.READY.value
                assistant.pinecone_namespace = namespace_for(assistant.id)
                assistant.last_crawled_at = utcnow()
            return assistant.id

    return _make


@pytest.fixture
def index_documents(vector_index: InMemoryVectorIndex) -> Callable[..., List[str]]:
    """Store documents and one vector per chunk text for a ready assistant."""

    async def _index(assistant_id: str, pages: List[Dict], store_documents: bool = True) -> List[str]:
        doc_ids: List[Optional[str]] = []
        with session_scope() as db:
            for page in pages:
                if store_documents:
                    doc = Document(
                        assistant_id=assistant_id,
                        source_url=page["url"],
                        title=page["title"],
                        content=page.get("content", " ".join(page["chunks"])),
                    )
                    db.add(doc)
                    db.flush()
                    doc_ids.append(doc.id)
                else:
                    doc_ids.append(f"missing-{len(doc_ids)}")
        records = []
        for i, (page, doc_id) in enumerate(zip(pages, doc_ids)):
            for j, text in enumerate(page["chunks"]):
                records.append(
                    VectorRecord(
                        id=f"doc_{i}_chunk_{j}",
                        values=fake_embedding(text),
                        metadata={
                            "title": page["title"],
                            "source_url": page["url"],
                            "doc_index": i,
                            "chunk_index": j,
                            "total_chunks": len(page["chunks"]),
                            "document_id": doc_id,
                            "preview": preview(text, 200),
                        },
                    )
                )
        await vector_index.upsert(namespace_for(assistant_id), records)
        return doc_ids

    return _index

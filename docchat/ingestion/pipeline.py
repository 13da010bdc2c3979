"""Ingestion job executor: crawl, persist, chunk, embed and index one assistant.

Phases run strictly in order and each one moves the assistant's status forward:

  queued -> crawling -> processing -> ready

Any exception moves the assistant to ``error`` with the message and is re-raised
so the crawl queue can decide whether to retry. Status updates for an assistant
that has been deleted mid-job are no-ops; the job then stops at the next phase.

Vector ids are ``doc_<i>_chunk_<j>``. Vector metadata holds the title, source
URL, position indices, a short preview, the Document id and the run's
``crawl_id``; full text stays in the documents table.

A re-crawl replaces the previous run only once it has succeeded. Crawling,
chunking, the token ceiling check and embedding all finish before anything is
written; the new vectors then overwrite the namespace, vectors from earlier runs
are pruned by ``crawl_id``, and the old Documents are deleted in the same
transaction that marks the assistant ready. A run that fails before the upsert
leaves the previous Documents and vectors untouched. One that fails during or
after the upsert keeps both Document sets, so every vector still resolves to
full text, and the next successful run prunes the leftovers.
"""
import asyncio
import logging
import uuid
from typing import Dict, List, Optional, Sequence

from docchat.assistants import update_assistant_status
from docchat.chunker import chunk_text, estimate_tokens
from docchat.config import settings
from docchat.db import session_scope, utcnow
from docchat.documents import create_documents, delete_documents_by_assistant
from docchat.embedding import embed_texts
from docchat.errors import (
    CRAWL_TIMEOUT_MESSAGE,
    AssistantNotFound,
    CrawlTimeout,
    DocumentationTooLarge,
    NoDocumentsFound,
)
from docchat.ingestion.crawler import CrawlPage, crawl_documentation
from docchat.lifecycle import AssistantStatus
from docchat.models import namespace_for
from docchat.obs import Trace, span
from docchat.utils import preview
from docchat.vector_index import VectorRecord, get_vector_index

logger = logging.getLogger(__name__)


def build_chunks(
    pages: Sequence[CrawlPage],
    document_ids: Optional[Sequence[str]] = None,
    crawl_id: Optional[str] = None,
) -> List[Dict]:
    """Chunk every page and attach vector ids and metadata.

    A page too short to yield a chunk is indexed as a single chunk so every
    Document has at least one vector. ``document_id`` stays None until the
    Documents exist; see attach_document_ids.

    Raises:
        DocumentationTooLarge: a page's chunks exceed MAX_TOKENS_PER_DOCUMENT.
    """
    chunks: List[Dict] = []
    for i, page in enumerate(pages):
        pieces = chunk_text(page.content) or [page.content.strip()]
        tokens = sum(estimate_tokens(p) for p in pieces)
        if tokens > settings.MAX_TOKENS_PER_DOCUMENT:
            raise DocumentationTooLarge(page.url, tokens, settings.MAX_TOKENS_PER_DOCUMENT)
        for j, text in enumerate(pieces):
            chunks.append(
                {
                    "id": f"doc_{i}_chunk_{j}",
                    "text": text,
                    "metadata": {
                        "title": page.title,
                        "source_url": page.url,
                        "doc_index": i,
                        "chunk_index": j,
                        "total_chunks": len(pieces),
                        "document_id": document_ids[i] if document_ids else None,
                        "crawl_id": crawl_id,
                        "preview": preview(text, settings.CHUNK_PREVIEW_CHARS),
                    },
                }
            )
    return chunks


def attach_document_ids(chunks: List[Dict], document_ids: Sequence[str]) -> None:
    for chunk in chunks:
        chunk["metadata"]["document_id"] = document_ids[chunk["metadata"]["doc_index"]]


def _set_status(assistant_id: str, status: AssistantStatus, **fields) -> None:
    with session_scope() as db:
        if update_assistant_status(db, assistant_id, status, **fields) is None:
            raise AssistantNotFound(f"Assistant {assistant_id} not found")


async def _crawl(url: str, plan: str) -> List[CrawlPage]:
    try:
        return await asyncio.wait_for(crawl_documentation(url, plan), timeout=settings.CRAWL_TIMEOUT_SECONDS)
    except asyncio.TimeoutError as e:
        raise CrawlTimeout(CRAWL_TIMEOUT_MESSAGE) from e


async def _ingest(assistant_id: str, user_plan: str, trace: Trace) -> int:
    with session_scope() as db:
        assistant = update_assistant_status(db, assistant_id, AssistantStatus.CRAWLING)
        if assistant is None:
            raise AssistantNotFound(f"Assistant {assistant_id} not found")
        docs_url = assistant.docs_url

    with span("ingest.crawl", {"assistant_id": assistant_id, "plan": user_plan}):
        pages = await _crawl(docs_url, user_plan)
    trace.event("crawled", {"pages": len(pages)})
    if not pages:
        raise NoDocumentsFound(f"No documents found at {docs_url}")

    total = len(pages)
    namespace = namespace_for(assistant_id)
    crawl_id = uuid.uuid4().hex[:12]
    _set_status(assistant_id, AssistantStatus.PROCESSING, total_pages=total, processed_pages=0)

    with span("ingest.chunk", {"documents": total}):
        chunks = build_chunks(pages, crawl_id=crawl_id)
    logger.info("Assistant %s: %d documents -> %d chunks (crawl %s)", assistant_id, total, len(chunks), crawl_id)

    with span("ingest.embed", {"chunks": len(chunks)}):
        vectors = await embed_texts(
            [c["text"] for c in chunks],
            on_progress=lambda done, n: logger.debug("Assistant %s embedded %d/%d", assistant_id, done, n),
        )

    # Nothing from a previous run has been touched before this point
    with session_scope() as db:
        document_ids = [d.id for d in create_documents(db, assistant_id, [p.as_dict() for p in pages])]
    attach_document_ids(chunks, document_ids)

    def on_upsert(done: int, n: int) -> None:
        _set_status(assistant_id, AssistantStatus.PROCESSING, processed_pages=(done * total) // n)

    index = get_vector_index()
    records = [VectorRecord(id=c["id"], values=v, metadata=c["metadata"]) for c, v in zip(chunks, vectors)]
    with span("ingest.upsert", {"vectors": len(records)}):
        await index.upsert(namespace, records, on_progress=on_upsert)
    await index.delete_stale(namespace, crawl_id)

    with session_scope() as db:
        assistant = update_assistant_status(
            db,
            assistant_id,
            AssistantStatus.READY,
            pinecone_namespace=namespace,
            total_pages=total,
            processed_pages=total,
            last_crawled_at=utcnow(),
            error_message=None,
        )
        if assistant is None:
            delete_documents_by_assistant(db, assistant_id)
        else:
            replaced = delete_documents_by_assistant(db, assistant_id, keep=document_ids)
    if assistant is None:
        await index.delete_namespace(namespace)
        raise AssistantNotFound(f"Assistant {assistant_id} not found")
    trace.event("indexed", {"documents": total, "vectors": len(records), "replaced_documents": replaced})
    return total


async def process_assistant_crawl(assistant_id: str, user_plan: str) -> None:
    """Run the full ingestion pipeline for one assistant.

    Raises:
        Exception: whatever failed, after the assistant was moved to ``error``.
    """
    trace = Trace("ingest", input={"assistant_id": assistant_id, "plan": user_plan})
    try:
        total = await _ingest(assistant_id, user_plan, trace)
    except Exception as e:
        message = str(e) or e.__class__.__name__
        logger.error("Ingestion failed for assistant %s: %s", assistant_id, message)
        with session_scope() as db:
            update_assistant_status(db, assistant_id, AssistantStatus.ERROR, error_message=message)
        trace.end(output={"status": "error", "error": message})
        raise
    logger.info("Assistant %s ready with %d documents", assistant_id, total)
    trace.end(output={"status": "ready", "documents": total})

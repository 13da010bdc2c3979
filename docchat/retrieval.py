"""Retrieval-augmented answering over one assistant namespace.

This module implements:
- select_candidates: oversampled similarity search, score floor, optional rerank
- resolve_passages: full text lookup by document id, degrading to previews
- dedupe_sources: one cited source per URL, first occurrence wins
- answer: full chat-turn answer (non-streaming)
- stream_answer: same retrieval path, text deltas instead of one completion

Vector search uses pgvector cosine similarity (score = 1 - distance). An empty
search result short-circuits to a fixed answer without calling the model.
"""
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from docchat.config import settings
from docchat.db import session_scope
from docchat.documents import get_documents_by_ids
from docchat.embedding import embed_query
from docchat.generation import build_context, build_messages, complete, stream_completion
from docchat.obs import Trace, span
from docchat.reranker import rerank
from docchat.vector_index import Match, get_vector_index

logger = logging.getLogger(__name__)

NO_RESULTS_ANSWER = (
    "I couldn't find relevant information to answer your question. "
    "Please try rephrasing or ask about something else."
)


@dataclass
class Answer:
    text: str
    sources: List[Dict] = field(default_factory=list)
    tokens_used: int = 0


async def select_candidates(namespace: str, query: str) -> List[Match]:
    """Search, apply the similarity floor and rerank down to FINAL_TOP_K.

    Returns an empty list only when the namespace search itself found nothing.
    """
    vector = await embed_query(query)
    with span("retrieve.search", {"namespace": namespace, "top_k": settings.TOP_K_BEFORE_RERANK}):
        matches = await get_vector_index().search(namespace, vector, settings.TOP_K_BEFORE_RERANK)
    if not matches:
        return []

    passing = [m for m in matches if m.score >= settings.MIN_SCORE_THRESHOLD]
    if not passing:
        logger.info("No match above %.2f in %s, using raw top results", settings.MIN_SCORE_THRESHOLD, namespace)
        return matches[:settings.FINAL_TOP_K]
    if len(passing) > settings.FINAL_TOP_K:
        with span("retrieve.rerank", {"candidates": len(passing)}):
            return await rerank(query, passing, settings.FINAL_TOP_K)
    return passing


def resolve_passages(matches: Sequence[Match]) -> List[Dict]:
    """Attach full document text to each match, falling back to its preview."""
    contents: Dict[str, str] = {}
    doc_ids = [m.metadata.get("document_id") for m in matches if m.metadata.get("document_id")]
    if doc_ids:
        try:
            with session_scope() as db:
                contents = {doc_id: d.content for doc_id, d in get_documents_by_ids(db, doc_ids).items()}
        except SQLAlchemyError:
            logger.warning("Full-content lookup failed, using previews", exc_info=True)

    passages: List[Dict] = []
    for m in matches:
        meta = m.metadata
        passages.append(
            {
                "text": contents.get(meta.get("document_id")) or meta.get("preview", ""),
                "title": meta.get("title"),
                "source_url": meta.get("source_url"),
                "preview": meta.get("preview", ""),
                "score": m.score if m.similarity is None else m.similarity,
            }
        )
    return passages


def dedupe_sources(passages: Sequence[Dict]) -> List[Dict]:
    """Collapse passages to one cited source per URL, keeping first-seen order."""
    seen = set()
    sources: List[Dict] = []
    for p in passages:
        url = p.get("source_url")
        if not url or url in seen:
            continue
        seen.add(url)
        sources.append({"url": url, "title": p.get("title"), "preview": p.get("preview", "")})
    return sources


async def _prepare(
    namespace: str, query: str, history: Optional[Sequence[Dict]]
) -> Tuple[Optional[List[Dict]], List[Dict]]:
    matches = await select_candidates(namespace, query)
    if not matches:
        return None, []
    passages = resolve_passages(matches)
    messages = build_messages(query, build_context(passages), history)
    return messages, dedupe_sources(passages)


async def answer(namespace: str, query: str, history: Optional[Sequence[Dict]] = None) -> Answer:
    """Answer a question grounded in one assistant's namespace.

    Args:
        namespace: Assistant vector namespace.
        query: The user's question.
        history: Prior turns ({"role", "content"}), oldest first.

    Returns:
        Answer: Generated text, deduplicated sources and token usage.
    """
    trace = Trace("chat.answer", input={"namespace": namespace, "question": query})
    messages, sources = await _prepare(namespace, query, history)
    if messages is None:
        trace.event("no_results")
        trace.end(output={"answer": NO_RESULTS_ANSWER})
        return Answer(text=NO_RESULTS_ANSWER)

    with span("generate", {"namespace": namespace}):
        completion = await complete(messages, settings.MAX_OUTPUT_TOKENS)
    trace.generation(
        "answer",
        prompt=messages,
        output=completion.text,
        metadata={"sources": len(sources)},
        usage={"total": completion.tokens_used},
    )
    trace.end(output={"sources": len(sources), "tokens_used": completion.tokens_used})
    return Answer(text=completion.text, sources=sources, tokens_used=completion.tokens_used)


async def stream_answer(
    namespace: str, query: str, history: Optional[Sequence[Dict]] = None
) -> Tuple[AsyncIterator[str], List[Dict]]:
    """Streaming variant of answer: returns (text delta iterator, sources)."""
    messages, sources = await _prepare(namespace, query, history)
    if messages is None:
        async def _fixed() -> AsyncIterator[str]:
            yield NO_RESULTS_ANSWER

        return _fixed(), []
    return stream_completion(messages, settings.MAX_OUTPUT_TOKENS), sources

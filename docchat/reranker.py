"""Cross-encoder reranking utilities.

Provides:
- _load_model: Lazy-load a sentence-transformers CrossEncoder for reranking.
- score_pairs: Score (query, passage) pairs; higher scores indicate stronger relevance.
- rerank: Reorder similarity matches by cross-encoder score, keeping the top N.

Candidates are represented by title + preview, since full chunk text is not held
in the vector index. Reranking is an enhancement only: any failure falls back to
the first N matches in similarity order.

The model name and enablement are configured via docchat.config.settings.
"""
import asyncio
import logging
from dataclasses import replace
from typing import List, Tuple

from docchat.config import settings
from docchat.vector_index import Match

logger = logging.getLogger(__name__)

_model = None  # lazy-loaded to avoid container cold start cost


def _load_model():
    """Load and cache the cross-encoder reranker model.

    Returns:
        Any: A sentence-transformers CrossEncoder instance.
    """
    global _model
    if _model is not None:
        return _model
    from sentence_transformers.cross_encoder import CrossEncoder

    name = settings.RERANKER_MODEL_NAME
    logger.info("Loading reranker model %s", name)
    _model = CrossEncoder(name, trust_remote_code=True)
    return _model


def score_pairs(query: str, passages: List[str]) -> List[float]:
    """Score (query, passage) pairs for relevance using a cross-encoder.

    Args:
        query: The user query to compare against passages.
        passages: List of passages to score.

    Returns:
        List[float]: Relevance scores aligned with the input passages; higher is better.
    """
    if not passages:
        return []
    model = _load_model()
    pairs: List[Tuple[str, str]] = [(query, p) for p in passages]
    scores: List[float] = model.predict(pairs, convert_to_numpy=True).tolist()
    return scores


def candidate_text(match: Match) -> str:
    title = match.metadata.get("title") or ""
    preview = match.metadata.get("preview") or ""
    return f"{title}\n{preview}".strip()


async def rerank(query: str, candidates: List[Match], top_n: int) -> List[Match]:
    """Return the top_n candidates reordered by cross-encoder score.

    Each returned Match carries the rerank score in ``score`` and the original
    similarity in ``similarity``. On failure, or when reranking is disabled, the
    first top_n candidates are returned unchanged.
    """
    if not candidates:
        return []
    if not settings.RERANKER_ENABLED:
        return candidates[:top_n]
    passages = [candidate_text(c) for c in candidates]
    try:
        scores = await asyncio.to_thread(score_pairs, query, passages)
    except Exception:
        logger.warning("Reranking failed, using similarity order", exc_info=True)
        return candidates[:top_n]
    if len(scores) != len(candidates):
        logger.warning("Reranker returned %d scores for %d candidates", len(scores), len(candidates))
        return candidates[:top_n]

    order = sorted(range(len(candidates)), key=lambda i: scores[i], reverse=True)[:top_n]
    return [
        replace(
            candidates[i],
            score=float(scores[i]),
            similarity=candidates[i].similarity if candidates[i].similarity is not None else candidates[i].score,
        )
        for i in order
    ]

"""Embedding utilities wrapping OpenAI's embeddings API.

Provides:
- get_client: Cached AsyncOpenAI client using the configured API key.
- embed_texts: Batched embedding for a list of strings with progress reporting.
- embed_query: Single query embedding, served from the Redis cache when possible.

Batches hold at most settings.MAX_CONCURRENT_EMBEDDINGS texts and are sent one
after another. Any OpenAI failure is raised as EmbeddingServiceError with the
upstream message preserved (so rate-limit responses stay recognizable).
"""
import logging
from typing import Callable, List, Optional

from openai import AsyncOpenAI, OpenAIError

from docchat.cache import get_cached_embedding, set_cached_embedding
from docchat.config import settings
from docchat.errors import EmbeddingServiceError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

_client: AsyncOpenAI | None = None


def get_client() -> AsyncOpenAI:
    """Return a cached OpenAI client initialized with the configured API key.

    Returns:
        AsyncOpenAI: A singleton-like client instance reused across calls.
    """
    global _client
    if _client is None:
        _client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
    return _client


async def _embed_batch(batch: List[str]) -> List[List[float]]:
    client = get_client()
    try:
        resp = await client.embeddings.create(model=settings.OPENAI_EMBEDDING_MODEL, input=batch)
    except OpenAIError as e:
        raise EmbeddingServiceError(f"Embedding request failed: {e}") from e
    return [d.embedding for d in resp.data]


async def embed_texts(texts: List[str], on_progress: Optional[ProgressCallback] = None) -> List[List[float]]:
    """Embed texts in sequential batches, preserving input order.

    Args:
        texts: Input strings to embed.
        on_progress: Called as (completed_count, total_count) after each batch.

    Returns:
        List[List[float]]: One embedding vector per input text.

    Raises:
        EmbeddingServiceError: If any batch request fails.
    """
    if not texts:
        return []
    batch_size = max(1, settings.MAX_CONCURRENT_EMBEDDINGS)
    vectors: List[List[float]] = []
    total = len(texts)
    for start in range(0, total, batch_size):
        batch = texts[start:start + batch_size]
        vectors.extend(await _embed_batch(batch))
        completed = min(start + batch_size, total)
        logger.debug("Embedded %d/%d texts", completed, total)
        if on_progress is not None:
            on_progress(completed, total)
    return vectors


async def embed_query(text: str) -> List[float]:
    """Embed a single query string and return its embedding vector.

    Args:
        text: The query to embed.

    Returns:
        List[float]: The embedding vector for the query.
    """
    cached = get_cached_embedding(text)
    if cached is not None:
        return cached
    vector = (await _embed_batch([text]))[0]
    set_cached_embedding(text, vector)
    return vector

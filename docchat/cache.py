"""Query-embedding cache backed by Redis.

Provides:
- get_redis: Cached Redis client from REDIS_URL with decode_responses, or None when
  REDIS_URL is empty.
- _key_for_query: Stable cache key derived from embedding model + normalized query.
- get_cached_embedding: Fetch a cached query vector.
- set_cached_embedding: Store a query vector with TTL from settings.CACHE_TTL_SECONDS.

The cache is best-effort: Redis errors are logged and treated as a miss.
"""
import hashlib
import json
import logging
from typing import List, Optional

import redis

from docchat.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis() -> Optional[redis.Redis]:
    """Return a cached Redis client configured from settings.REDIS_URL.

    Returns:
        Optional[redis.Redis]: Client with decode_responses=True, or None if disabled.
    """
    global _redis_client
    if not settings.REDIS_URL:
        return None
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


def _key_for_query(query: str) -> str:
    """Compute a stable cache key for a query under the configured embedding model."""
    norm_q = " ".join(query.strip().lower().split())
    h = hashlib.sha256(f"{settings.OPENAI_EMBEDDING_MODEL}|{norm_q}".encode("utf-8")).hexdigest()
    return f"docchat:qemb:v1:{h}"


def get_cached_embedding(query: str) -> Optional[List[float]]:
    """Get a cached query embedding if present.

    Returns:
        Optional[List[float]]: The vector, or None on miss, parse failure or Redis error.
    """
    r = get_redis()
    if r is None:
        return None
    try:
        raw = r.get(_key_for_query(query))
    except redis.RedisError:
        logger.warning("Embedding cache read failed", exc_info=True)
        return None
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def set_cached_embedding(query: str, vector: List[float]) -> None:
    """Store a query embedding under the computed cache key with TTL."""
    r = get_redis()
    if r is None:
        return
    try:
        r.setex(_key_for_query(query), settings.CACHE_TTL_SECONDS, json.dumps(vector))
    except redis.RedisError:
        logger.warning("Embedding cache write failed", exc_info=True)

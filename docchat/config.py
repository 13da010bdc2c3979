"""Application configuration and environment-driven settings.

Defines the Settings class based on pydantic-settings to centralize configuration for:
- API keys and model names (OpenAI, Firecrawl)
- Data stores (PostgreSQL with pgvector, optional Redis cache)
- Crawling limits per plan tier and crawl timeouts
- Chunking, embedding and upsert batch sizes
- Retrieval/reranking/generation knobs
- Crawl queue scheduling, retry and retention windows
- Plan limits for assistants and monthly questions
- Optional observability (Langfuse)

A warning is logged if OPENAI_API_KEY is not set when not running in Docker.
"""
import logging
import os
from typing import Dict

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Strongly-typed application settings loaded from environment variables.

    Uses pydantic-settings to populate fields from a .env file or process env.
    See individual field names for semantics and safe defaults.
    """
    # Required
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")
    FIRECRAWL_API_KEY: str = Field(default="", description="Firecrawl API key")
    FIRECRAWL_API_URL: str = "https://api.firecrawl.dev"

    # Models
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"  # 1536 dims

    # Data stores
    DATABASE_URL: str = "postgresql+psycopg2://rag_user:rag_pass@db:5432/rag_db"
    REDIS_URL: str = ""  # empty disables the query-embedding cache
    CACHE_TTL_SECONDS: int = 600

    # Vector index
    VECTOR_TABLE: str = "chunk_vectors"
    VECTOR_INDEX_NAME: str = "idx_chunk_vectors_embedding_ivfflat"
    INDEX_READY_MAX_ATTEMPTS: int = 30
    INDEX_READY_POLL_SECONDS: float = 2.0

    # Crawling
    CRAWL_TIMEOUT_SECONDS: int = 600
    CRAWL_POLL_INTERVAL_SECONDS: float = 1.0
    CRAWL_MAX_POLL_ATTEMPTS: int = 600
    CRAWL_REQUEST_TIMEOUT_SECONDS: int = 30
    MIN_PAGE_CONTENT_LENGTH: int = 100
    FREE_CRAWL_MAX_DEPTH: int = 3
    FREE_CRAWL_PAGE_LIMIT: int = 50
    PRO_CRAWL_MAX_DEPTH: int = 15
    PRO_CRAWL_PAGE_LIMIT: int = 500

    # Chunking / indexing
    CHUNK_SIZE: int = 1500
    CHUNK_OVERLAP: int = 200
    MIN_CHUNK_SIZE: int = 100
    CHUNK_PREVIEW_CHARS: int = 200
    MAX_TOKENS_PER_DOCUMENT: int = 50_000
    MAX_CONCURRENT_EMBEDDINGS: int = 20
    MAX_CONCURRENT_UPSERTS: int = 5

    # Retrieval/Generation
    TOP_K_BEFORE_RERANK: int = 20
    FINAL_TOP_K: int = 5
    MIN_SCORE_THRESHOLD: float = 0.5  # cosine similarity, 0-1
    RERANKER_ENABLED: bool = True
    RERANKER_MODEL_NAME: str = "BAAI/bge-reranker-base"
    MAX_OUTPUT_TOKENS: int = 1500
    CHAT_HISTORY_TURNS: int = 6

    # Crawl queue
    QUEUE_WORKER_ENABLED: bool = True
    QUEUE_TICK_SECONDS: int = 25
    QUEUE_STUCK_TIMEOUT_SECONDS: int = 10 * 60
    QUEUE_RETENTION_SECONDS: int = 60 * 60
    QUEUE_CLEANUP_INTERVAL_SECONDS: int = 60 * 60
    QUEUE_ITEM_ESTIMATE_MINUTES: int = 2
    PRO_QUEUE_PRIORITY: int = 0
    FREE_QUEUE_PRIORITY: int = 10

    # Plan limits
    FREE_MAX_ASSISTANTS: int = 3
    PRO_MAX_ASSISTANTS: int = 20
    FREE_QUESTIONS_PER_MONTH: int = 20

    # Observability (optional)
    LOG_LEVEL: str = "INFO"
    LANGFUSE_HOST: str = ""
    LANGFUSE_PUBLIC_KEY: str = ""
    LANGFUSE_SECRET_KEY: str = ""

    # Derived
    @property
    def EMBEDDING_DIM(self) -> int:
        """Embedding dimension for the configured embedding model.

        Returns:
            int: The vector dimension inferred from OPENAI_EMBEDDING_MODEL.
        """
        # Map common OpenAI embedding models to dimensions
        model = self.OPENAI_EMBEDDING_MODEL.lower()
        if "text-embedding-3-small" in model:
            return 1536
        if "text-embedding-3-large" in model:
            return 3072
        # Fallback
        return 1536

    def crawl_limits(self, plan: str) -> Dict[str, int]:
        """Crawl depth and page ceiling for a plan tier ("free" or "pro")."""
        if plan == "pro":
            return {"max_depth": self.PRO_CRAWL_MAX_DEPTH, "limit": self.PRO_CRAWL_PAGE_LIMIT}
        return {"max_depth": self.FREE_CRAWL_MAX_DEPTH, "limit": self.FREE_CRAWL_PAGE_LIMIT}

    def queue_priority(self, plan: str) -> int:
        """Queue priority for a plan tier; lower numbers are served first."""
        return self.PRO_QUEUE_PRIORITY if plan == "pro" else self.FREE_QUEUE_PRIORITY

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


settings = Settings()

# Safety check for local dev (inside API container this must be set)
if os.environ.get("RUNNING_IN_DOCKER", "0") == "0":
    if not settings.OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY not set. Set it in .env before crawling or chatting.")

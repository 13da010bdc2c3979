"""Documentation chat assistant: crawl a docs site, index it, answer questions over it.

Submodules overview:
- main: FastAPI application, routes and startup/shutdown hooks.
- config: Application settings and environment variable loading.
- db: Database engine/session management helpers.
- models: ORM models (assistants, documents, crawl queue, messages, usage, vectors).
- lifecycle: Status enumerations and allowed transitions.
- errors: Exception hierarchy and error-message classification.
- schemas: Pydantic request/response models for API contracts.
- domain_validator: Documentation URL blocklist and heuristics.
- cleaner: Crawled markdown cleanup.
- chunker: Sentence-aware, code-preserving chunking.
- embedding: OpenAI embedding batches and cached query embeddings.
- vector_index: Namespaced pgvector index.
- reranker: Cross-encoder reranking with similarity fallback.
- generation: Prompt assembly and OpenAI chat completions.
- retrieval: Search, rerank, context assembly and answering.
- documents, assistants, usage, chat: record-level operations.
- crawl_queue, scheduler: Retryable ingestion queue and its periodic ticks.
- ingestion: Crawler client and the ingestion job executor.
- cache: Redis query-embedding cache.
- obs: Observability utilities (tracing/spans).
- utils: General-purpose helper functions.
"""

"""Knowledge-base agent: conversational search over an article archive.

Submodules overview:
- main: FastAPI application factory and routes.
- services: Construction of clients, stores and the orchestrator from settings.
- config: Application settings and rate-limit definitions.
- errors: Exception taxonomy mapped to HTTP responses.
- db / models: SQLAlchemy engine, sessions and ORM models (pgvector).
- schemas: Pydantic request/response models and layer records.
- store / conversations: Article and thread storage interfaces with SQL implementations.
- vector_index / filters: Filtered nearest-neighbour queries and channel/status filter resolution.
- embedding: OpenAI embedding gateway.
- ranking: In-memory cosine ranking for sponsored search.
- retrieval: Organic and sponsored article retrievers.
- generation: OpenAI chat-completions tool loop.
- orchestrator: One agent turn (admission, tool loop, sponsored search, merge).
- rate_limit: Redis token-bucket limiter.
- articles / jobs / worker: Article ingestion and the embedding job queue.
- ingestion: Offline JSONL article import.
- cache: Redis client and read-through lookup cache.
- obs: Logging setup, Langfuse traces and OpenTelemetry spans.
"""

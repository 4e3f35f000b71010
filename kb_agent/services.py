"""Wiring of the application's collaborators from Settings.

build_services is the only place that constructs clients (Postgres, Redis, OpenAI);
everything else receives them. create_app and the worker both start from here, and
tests build a Services with fakes instead.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from kb_agent.articles import ArticleService
from kb_agent.cache import create_redis
from kb_agent.config import Settings
from kb_agent.conversations import SqlConversationStore
from kb_agent.db import create_session_factory
from kb_agent.embedding import EmbeddingGateway, create_openai_client
from kb_agent.generation import ToolCallingGenerator
from kb_agent.jobs import EmbeddingJobQueue, EmbeddingWorker
from kb_agent.orchestrator import AgentOrchestrator
from kb_agent.rate_limit import RateLimiter
from kb_agent.retrieval import ArticleRetriever, SponsoredRetriever
from kb_agent.store import SqlArticleStore


@dataclass
class Services:
    orchestrator: AgentOrchestrator
    limiter: RateLimiter
    articles: ArticleService
    worker: EmbeddingWorker
    session_factory: Optional[sessionmaker] = None  # None when not backed by a database


def build_services(settings: Settings) -> Services:
    session_factory = create_session_factory(settings.DATABASE_URL)
    r = create_redis(settings.REDIS_URL)
    client = create_openai_client(settings)

    store = SqlArticleStore(session_factory, cache=r, cache_ttl_seconds=settings.CACHE_TTL_SECONDS)
    conversations = SqlConversationStore(session_factory)
    embedder = EmbeddingGateway(
        client,
        model=settings.OPENAI_EMBEDDING_MODEL,
        dim=settings.EMBEDDING_DIM,
        timeout=settings.EMBEDDING_TIMEOUT_SECONDS,
    )
    generator = ToolCallingGenerator(
        client,
        model=settings.OPENAI_MODEL,
        temperature=settings.AGENT_TEMPERATURE,
        max_tokens=settings.MAX_OUTPUT_TOKENS,
        timeout=settings.GENERATION_TIMEOUT_SECONDS,
    )
    limiter = RateLimiter(r, settings.rate_limits())
    queue = EmbeddingJobQueue(r, settings.EMBEDDING_QUEUE_NAME)

    orchestrator = AgentOrchestrator(
        conversations=conversations,
        limiter=limiter,
        generator=generator,
        article_retriever=ArticleRetriever(store, embedder, settings.PUBLIC_SITE_BASE, settings.SEARCH_LIMIT),
        sponsored_retriever=SponsoredRetriever(store, embedder, settings.PUBLIC_SITE_BASE, settings.SPONSORED_LIMIT),
        max_steps=settings.AGENT_MAX_STEPS,
        recent_messages=settings.AGENT_RECENT_MESSAGES,
        thread_title=settings.THREAD_TITLE,
        snippet_chars=settings.SOURCE_SNIPPET_CHARS,
        generation_timeout=settings.GENERATION_TIMEOUT_SECONDS,
        sponsored_timeout=settings.SPONSORED_TIMEOUT_SECONDS,
    )
    return Services(
        orchestrator=orchestrator,
        limiter=limiter,
        articles=ArticleService(store, queue),
        worker=EmbeddingWorker(queue, store, embedder, settings.MAX_EMBEDDING_TEXT_CHARS),
        session_factory=session_factory,
    )

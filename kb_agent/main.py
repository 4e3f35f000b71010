"""FastAPI application factory and routes.

Exposes the agent conversation endpoint, direct article search, article reads and ingestion,
and rate-limit administration. Domain errors are mapped to HTTP responses by the
exception handlers registered in create_app:
- AdmissionRejected -> 429 with Retry-After
- ConversationResolutionFailed, GenerationFailed -> 502 (no internal detail)
- InputValidationError -> 422
- UnknownLimitError -> 404

Run with:
  uvicorn --factory kb_agent.main:create_app
"""
import logging
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from kb_agent.config import get_settings
from kb_agent.db import init_db
from kb_agent.errors import (
    AdmissionRejected,
    ConversationResolutionFailed,
    GenerationFailed,
    InputValidationError,
    UnknownLimitError,
)
from kb_agent.obs import configure_logging, configure_observability
from kb_agent.rate_limit import retry_after_seconds
from kb_agent.schemas import (
    ArticleCreated,
    ArticleIn,
    ArticlePage,
    ArticleResult,
    ArticleView,
    BackfillResult,
    ConsumeRequest,
    LimitResult,
    LimitValue,
    ResetRequest,
    SearchRequest,
    SendMessageRequest,
    SendMessageResponse,
)
from kb_agent.services import Services, build_services

logger = logging.getLogger(__name__)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AdmissionRejected)
    async def admission_rejected(request: Request, exc: AdmissionRejected):
        return JSONResponse(
            status_code=429,
            headers={"Retry-After": str(retry_after_seconds(exc.retry_after_ms))},
            content={"detail": "rate limit exceeded", "scope": exc.scope, "retry_after_ms": exc.retry_after_ms},
        )

    @app.exception_handler(ConversationResolutionFailed)
    @app.exception_handler(GenerationFailed)
    async def upstream_failed(request: Request, exc: Exception):
        logger.error("Request to %s failed: %s", request.url.path, exc)
        return JSONResponse(status_code=502, content={"detail": "request failed"})

    @app.exception_handler(InputValidationError)
    async def invalid_input(request: Request, exc: InputValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(UnknownLimitError)
    async def unknown_limit(request: Request, exc: UnknownLimitError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API around the given services, or production ones from Settings.

    The database schema is initialized at startup only when the services carry a
    session factory.
    """
    if services is None:
        settings = get_settings()
        configure_logging(settings.LOG_LEVEL)
        configure_observability(settings)
        services = build_services(settings)

    app = FastAPI(title="Knowledge Base Agent API", version="0.1.0")
    app.state.services = services
    _register_error_handlers(app)

    @app.on_event("startup")
    def on_startup() -> None:
        """Ensure DB schema and indexes exist."""
        if services.session_factory is not None:
            init_db(services.session_factory.kw["bind"])

    @app.get("/health")
    def health():
        """Liveness probe endpoint.

        Returns:
            dict: {"status": "ok"} when the service is running.
        """
        return {"status": "ok"}

    @app.post("/agent/messages", response_model=SendMessageResponse, response_model_exclude_none=True)
    async def send_message(req: SendMessageRequest) -> SendMessageResponse:
        """Answer a prompt within a conversation, with cited organic and sponsored sources."""
        return await services.orchestrator.send_message(
            prompt=req.prompt,
            conversation_id=req.conversation_id,
            owner_id=req.owner_id,
            sponsored_contributor_ids=req.sponsored_contributor_ids,
        )

    @app.post("/articles/search", response_model=List[ArticleResult], response_model_exclude_none=True)
    async def search_articles(req: SearchRequest) -> List[ArticleResult]:
        return await services.orchestrator.search_articles(
            req.query,
            filter_channel=req.filter_channel,
            filter_status=req.filter_status,
            limit=req.limit,
            conversation_id=req.conversation_id,
        )

    @app.get("/articles", response_model=ArticlePage)
    def list_articles(
        limit: int = Query(20, ge=1, le=100),
        cursor: Optional[str] = None,
        channel_id: Optional[int] = None,
        author_id: Optional[int] = None,
    ) -> ArticlePage:
        """Page through articles, newest first; pass continue_cursor back as cursor."""
        return services.articles.list_articles(limit=limit, cursor=cursor, channel_id=channel_id, author_id=author_id)

    @app.get("/articles/{article_id}", response_model=ArticleView)
    def get_article(article_id: str) -> ArticleView:
        article = services.articles.get_article(article_id)
        if article is None:
            raise HTTPException(status_code=404, detail="article not found")
        return article

    @app.post("/articles", response_model=ArticleCreated, status_code=201)
    def create_article(data: ArticleIn) -> ArticleCreated:
        return ArticleCreated(id=services.articles.create_article(data))

    @app.put("/articles/{article_id}", response_model=ArticleCreated)
    def update_article(article_id: str, data: ArticleIn) -> ArticleCreated:
        if not services.articles.update_article(article_id, data):
            raise HTTPException(status_code=404, detail="article not found")
        return ArticleCreated(id=article_id)

    @app.post("/articles/embeddings/backfill", response_model=BackfillResult)
    def backfill_embeddings(
        limit: int = Query(50, ge=1, le=500),
        cursor: Optional[str] = None,
    ) -> BackfillResult:
        return services.articles.backfill_missing_embeddings(limit=limit, cursor=cursor)

    @app.get("/rate-limits/{name}", response_model=LimitResult)
    def check_limit(name: str, key: Optional[str] = None, count: int = Query(1, ge=1)) -> LimitResult:
        return services.limiter.check(name, key, count)

    @app.get("/rate-limits/{name}/value", response_model=LimitValue)
    def limit_value(name: str, key: Optional[str] = None, shard: Optional[int] = None) -> LimitValue:
        """Token value of the whole limit (shards summed), or of one shard when given."""
        return services.limiter.get_value(name, key, shard)

    @app.post("/rate-limits/{name}/consume", response_model=LimitResult)
    def consume_limit(name: str, req: ConsumeRequest) -> LimitResult:
        return services.limiter.consume(name, req.key, req.count)

    @app.post("/rate-limits/{name}/reset")
    def reset_limit(name: str, req: ResetRequest):
        services.limiter.reset(name, req.key)
        return {"status": "ok"}

    return app

